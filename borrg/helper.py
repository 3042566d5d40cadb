# Stdlib imports
import datetime
import os
import pathlib
import re
import sys
import typing

# Vendor imports
import humanize
import mergedeep
import rich
import rich.markup
import sh
import yaml

# Local imports
from . import errors, model


def print(*args, file=None):
    rich.print(*args, file=file or sys.stdout)


def print_line(*args, file=None):
    print("-" * 8, *args, file=file)


def print_nested_line(*args):
    print("-" * 12, *args)


def print_warning(message: str):
    print_line(f"[yellow]{message}", file=sys.stderr)


def print_failure(message: str):
    print_line(f"[red]{message}", file=sys.stderr)


def print_error(message: str) -> typing.NoReturn:
    print_failure(message)
    sys.exit(1)


def print_kv(key: str, value: typing.Any = ""):
    print(f"[yellow]{key}[/]: {value}")


def print_config_data(data: typing.Any):
    serialized: str = yaml.safe_dump(data, sort_keys=False)
    print(
        "\n".join(
            "|  " + rich.markup.escape(line) for line in serialized.splitlines()
        )
    )


def human_readable(num):
    return humanize.naturalsize(num, binary=True)


def fully_qualified_path(
    path: typing.Union[str, pathlib.Path], ensure_exists: bool = False
) -> pathlib.Path:
    normalized = pathlib.Path(path).expanduser().absolute()
    if ensure_exists and not normalized.exists():
        print_error(f"File path '{normalized}' (from '{path}') does not exist")
    return normalized


def explicit_fields(section: model.Section) -> dict[str, typing.Any]:
    return {name: value for name, value in section if value is not None}


def merge_with_template(
    template: model.Section, section: model.Section
) -> model.Section:
    """This function returns the given section with the template's values applied beneath it."""
    # Serialize the template and the section to shallow dictionaries
    template_dict = explicit_fields(template)
    section_dict = explicit_fields(section)

    # Compression and credential values are models rather than mappings, so
    # they are replaced as a whole and never blended field by field
    merged_dict = mergedeep.merge(
        {}, template_dict, section_dict, strategy=mergedeep.Strategy.REPLACE
    )

    return model.Section(**merged_dict)


def get_target(
    config: model.RootConfiguration, selector: str
) -> model.ResolvedTarget:
    """Find a backup by its repository, or by its position in the config file."""
    for target in config.backups:
        if target.repository == selector:
            return target

    if selector.isdigit() and int(selector) < len(config.backups):
        return config.backups[int(selector)]

    print_error(f"Error: No backup found by repository or index '{selector}'")


def run_passcommand(repository: str, passcommand: str) -> str:
    try:
        output = sh.Command("sh")("-c", passcommand)
    except sh.ErrorReturnCode as err:
        raise errors.CredentialError(
            repository, f"passcommand exited with code {err.exit_code}"
        ) from err

    # Only the first line of output is used as the passphrase
    lines = str(output).splitlines()
    if not lines or not lines[0]:
        raise errors.CredentialError(
            repository, "passcommand produced no output"
        )
    return lines[0]


def get_credential_env(target: model.ResolvedTarget) -> dict[str, str]:
    credential = target.credential

    if isinstance(credential, model.PassphraseCredential):
        return {"BORG_PASSPHRASE": credential.passphrase}
    elif isinstance(credential, model.CommandCredential):
        passphrase = run_passcommand(target.repository, credential.command)
        return {"BORG_PASSPHRASE": passphrase}
    elif isinstance(credential, model.FileDescriptorCredential):
        return {"BORG_PASSPHRASE_FD": str(credential.fd)}

    return {}


def get_execution_env(target: model.ResolvedTarget) -> dict[str, str]:
    return {**dict(os.environ), **get_credential_env(target)}


def get_archive_name(
    target: model.ResolvedTarget,
    now: typing.Optional[datetime.datetime] = None,
) -> str:
    return (now or datetime.datetime.now()).strftime(target.archive_name)


def relative_to_first_path(
    file_path: str, paths: list[pathlib.Path]
) -> pathlib.Path:
    candidate = pathlib.Path(file_path).expanduser()
    if candidate.is_absolute():
        return candidate
    return paths[0] / candidate


def get_create_arguments(
    target: model.ResolvedTarget,
    dry_run: bool = False,
    log_json: bool = False,
    now: typing.Optional[datetime.datetime] = None,
) -> list[str]:
    paths = [fully_qualified_path(path) for path in target.path]

    args = ["create"]

    if target.progress:
        args.append("--progress")
    if target.stats:
        args.append("--stats")
    if log_json:
        args.append("--log-json")
    if dry_run:
        args.append("--dry-run")

    args += ["--comment", target.comment]
    args += ["--compression", str(target.compression)]

    if target.pattern_file:
        pattern_file = relative_to_first_path(target.pattern_file, paths)
        args += ["--patterns-from", str(pattern_file)]

    # The exclude file is optional, so it's skipped when it doesn't exist
    if target.exclude_file:
        exclude_file = relative_to_first_path(target.exclude_file, paths)
        if exclude_file.exists():
            args += ["--exclude-from", str(exclude_file)]

    args.append(f"{target.repository}::{get_archive_name(target, now)}")
    args += [str(path) for path in paths]

    return args


def get_init_arguments(
    target: model.ResolvedTarget,
    encryption: str,
    append_only: bool = False,
    storage_quota: typing.Optional[int] = None,
    make_parent_dirs: bool = False,
) -> list[str]:
    args = ["init", "--encryption", encryption]

    if append_only:
        args.append("--append-only")
    if storage_quota is not None:
        args += ["--storage-quota", str(storage_quota)]
    if make_parent_dirs:
        args.append("--make-parent-dirs")

    args.append(target.repository)
    return args


byte_size_factors = {
    "": 1,
    "K": 1024,
    "M": 1024**2,
    "G": 1024**3,
    "T": 1024**4,
    "P": 1024**5,
}


def parse_byte_size(size: str) -> int:
    match = re.fullmatch(r"(\d+)([A-Za-z]*)", size.strip())
    if not match:
        raise ValueError(f"Invalid byte size: {size}")

    number, suffix = match.groups()
    if suffix not in byte_size_factors:
        raise ValueError(f"Invalid byte suffix: {suffix}")

    return int(number) * byte_size_factors[suffix]


def maximize_niceness():
    os.nice(20)


def run_command_politely(
    command: sh.Command,
    args: list[typing.Any],
    env: typing.Optional[dict] = None,
    okCodes: typing.Optional[list[int]] = None,
    on_stderr: typing.Optional[typing.Callable[[str], typing.Any]] = None,
):
    # Start the command
    running_proc = command(
        *args,
        _preexec_fn=maximize_niceness,
        _bg=True,
        _env=env if env is not None else dict(os.environ),
        _out=sys.stdout,
        _err=on_stderr or sys.stderr,
        _tee=True,
        _ok_code=okCodes or [0],
    )

    # The running process should not be a string
    assert isinstance(running_proc, sh.RunningCommand)

    # Wait for it to finish and catch any keyboard interrupts
    try:
        running_proc.wait()
    except KeyboardInterrupt:
        print("---------- Keyboard interrupt detected")
        if running_proc.is_alive():
            print("---------- Killing the running process...")
            running_proc.kill()
        sys.exit(130)

    return running_proc
