# Stdlib imports
import datetime
import enum
import json
import pathlib
import shlex
import typing

# Vendor imports
import apscheduler.executors.pool
import apscheduler.schedulers.blocking
import apscheduler.triggers.cron
import rich.markup
import sh
import typer

# Local imports
from . import command, config as applicationConfig, errors, events, helper, model


# Create a subclass of the context with correct typing of the backup config object
class BackupCLIContext(typer.Context):
    obj: model.RootConfiguration


# Keys of the global flags in the context meta, which child contexts share
VERBOSE_KEY = "borrg.verbose"
DRY_RUN_KEY = "borrg.dry_run"


class Encryption(str, enum.Enum):
    none = "none"
    repokey = "repokey"
    repokey_blake2 = "repokey-blake2"
    keyfile = "keyfile"
    keyfile_blake2 = "keyfile-blake2"
    authenticated = "authenticated"
    authenticated_blake2 = "authenticated-blake2"


# Initialize the typer app
cli = typer.Typer()


# Main method that initializes the configuration and makes it available to all commands
@cli.callback()
def cli_main(
    ctx: BackupCLIContext,
    config: pathlib.Path = typer.Option(
        applicationConfig.default_config_path,
        "--config",
        "-c",
        envvar="BORRG_CONFIG",
        help="Path to borrg configuration file.",
    ),
    verbose: bool = typer.Option(
        False,
        "--verbose/",
        "-v/",
        envvar="BORRG_VERBOSE",
        help="Print the borg command lines being executed.",
    ),
    dry_run: bool = typer.Option(
        False,
        "--dry-run/",
        envvar="BORRG_DRY_RUN",
        help="Run borg in dry run mode.",
    ),
):
    # Load the config options and insert it into the context object
    try:
        ctx.obj = applicationConfig.load_config_values(config)
    except errors.ConfigError as err:
        helper.print_error(
            rich.markup.escape(f"Error in config file '{config}': {err}")
        )
    ctx.meta[VERBOSE_KEY] = verbose
    ctx.meta[DRY_RUN_KEY] = dry_run


def get_borg_env(target: model.ResolvedTarget) -> dict[str, str]:
    if target.credential is None:
        helper.print_warning(
            f"Warning: No 'passphrase' or 'passcommand' defined for repository '{target.repository}'"
        )
    return helper.get_execution_env(target)


def run_backup(
    ctx: BackupCLIContext, target: model.ResolvedTarget, dry_run: bool
) -> None:
    borg = command.get_borg()
    args = helper.get_create_arguments(target, dry_run=dry_run, log_json=True)
    env = get_borg_env(target)

    if ctx.meta.get(VERBOSE_KEY, False):
        helper.print_nested_line(rich.markup.escape(shlex.join(["borg", *args])))

    # Exit code 1 means borg finished with warnings
    try:
        proc = helper.run_command_politely(
            borg,
            args,
            env,
            [0, 1],
            on_stderr=events.make_stderr_handler(),
        )
    except sh.ErrorReturnCode as err:
        raise errors.InvocationError(target.repository, err.exit_code) from err

    if proc.exit_code == 1:
        helper.print_warning(
            f"Warning: borg reported warnings for repository '{target.repository}'"
        )


def run_backups(
    ctx: BackupCLIContext,
    targets: typing.Sequence[model.ResolvedTarget],
    progress: bool,
    dry_run: bool,
    stop_on_failure: bool,
) -> list[str]:
    """Run each backup in order and return the repositories that failed."""
    failures: list[str] = []

    helper.print_line(f"Starting at {datetime.datetime.now()}")
    for target in targets:
        if progress:
            target = target.model_copy(update={"progress": True})

        helper.print_line(
            f"Backing up to [yellow]{rich.markup.escape(target.repository)}[/]"
        )
        try:
            run_backup(ctx, target, dry_run or ctx.meta.get(DRY_RUN_KEY, False))
        except (errors.CredentialError, errors.InvocationError) as err:
            helper.print_failure(rich.markup.escape(f"Error: {err}"))
            failures.append(target.repository)
            if stop_on_failure:
                helper.print_warning("Stopping after the first failure")
                break

    helper.print_line(f"Finished at {datetime.datetime.now()}")
    return failures


@cli.command(name="run", help="Run all configured backups, or only the selected ones.")
def cli_run(
    ctx: BackupCLIContext,
    backups: typing.Optional[list[str]] = typer.Argument(
        None,
        metavar="[BACKUP]...",
        help="Repositories (or 0-based positions in the config file) of the backups to run. Runs every backup if omitted.",
    ),
    progress: bool = typer.Option(
        False,
        "--progress/",
        "-p/",
        help="Show progress for every backup, regardless of the config file.",
    ),
    dry_run: bool = typer.Option(
        False,
        "--dry-run/",
        "-n/",
        help="Run borg in dry run mode.",
    ),
    stop_on_failure: bool = typer.Option(
        False,
        "--stop-on-failure/",
        "-x/",
        help="Don't run the remaining backups once one has failed.",
    ),
):
    config = ctx.obj

    if backups:
        targets = [helper.get_target(config, selector) for selector in backups]
    else:
        targets = list(config.backups)

    if not targets:
        helper.print_warning(
            "No backups configured. Add a [\\[backup]] table to the config file."
        )
        return

    failures = run_backups(ctx, targets, progress, dry_run, stop_on_failure)
    if failures:
        helper.print_failure(
            f"{len(failures)} of {len(targets)} backups failed: {', '.join(failures)}"
        )
        raise typer.Exit(1)


@cli.command(
    name="list",
    help="List all templates and backups defined in the configuration file.",
)
def cli_list(ctx: BackupCLIContext):
    config = ctx.obj

    # Templates
    helper.print("Templates:")
    for template_name in config.templates:
        helper.print(f"  - {rich.markup.escape(template_name)}")

    helper.print()

    # Backups
    helper.print("Backups:")
    for index, target in enumerate(config.backups):
        helper.print(
            f"  {index}. {rich.markup.escape(target.repository)} "
            f"[dim]({rich.markup.escape(target.template)})"
        )

    helper.print()


@cli.command(
    name="info",
    help="Show information about the repository of a backup.",
)
def cli_info(
    ctx: BackupCLIContext,
    backup: str = typer.Argument(
        ..., help="Repository (or 0-based position) of the backup."
    ),
):
    config = ctx.obj
    target = helper.get_target(config, backup)

    try:
        output = command.get_borg()(
            "info", "--json", target.repository, _env=get_borg_env(target)
        )
    except errors.CredentialError as err:
        helper.print_error(f"Error: {err}")
    except sh.ErrorReturnCode as err:
        helper.print_error(
            f"Error querying repository '{target.repository}': "
            + err.stderr.decode(errors="replace").strip()
        )

    info = json.loads(str(output))
    repository = info.get("repository", {})
    helper.print_kv("Location", repository.get("location", target.repository))
    helper.print_kv("ID", repository.get("id", ""))
    helper.print_kv("Encryption", info.get("encryption", {}).get("mode", ""))

    stats = info.get("cache", {}).get("stats", {})
    for key, label in [
        ("total_size", "Original size"),
        ("total_csize", "Compressed size"),
        ("unique_csize", "Deduplicated size"),
    ]:
        if key in stats:
            helper.print_kv(label, helper.human_readable(stats[key]))
    if "total_unique_chunks" in stats:
        helper.print_kv("Unique chunks", stats["total_unique_chunks"])


@cli.command(name="init", help="Initialize the repository of a backup.")
def cli_init(
    ctx: BackupCLIContext,
    backup: str = typer.Argument(
        ..., help="Repository (or 0-based position) of the backup."
    ),
    encryption: Encryption = typer.Option(
        ..., "--encryption", "-e", help="Encryption key mode."
    ),
    append_only: bool = typer.Option(
        False,
        "--append-only/",
        help="Create an append-only mode repository.",
    ),
    storage_quota: typing.Optional[str] = typer.Option(
        None,
        "--storage-quota",
        help="Storage quota of the new repository (e.g. 5G, 1T). Default: no quota.",
    ),
    make_parent_dirs: bool = typer.Option(
        False,
        "--make-parent-dirs/",
        help="Create the parent directories of the repository directory, if they are missing.",
    ),
):
    config = ctx.obj
    target = helper.get_target(config, backup)

    quota_bytes = None
    if storage_quota is not None:
        try:
            quota_bytes = helper.parse_byte_size(storage_quota)
        except ValueError as err:
            helper.print_error(f"Error: {err}")

    args = helper.get_init_arguments(
        target,
        encryption.value,
        append_only=append_only,
        storage_quota=quota_bytes,
        make_parent_dirs=make_parent_dirs,
    )

    if ctx.meta.get(VERBOSE_KEY, False):
        helper.print_nested_line(rich.markup.escape(shlex.join(["borg", *args])))

    try:
        command.get_borg()(args, _env=get_borg_env(target), _fg=True)
    except errors.CredentialError as err:
        helper.print_error(f"Error: {err}")
    except sh.ErrorReturnCode as err:
        helper.print_error(
            f"Failed to initialize repository '{target.repository}' (exit code {err.exit_code})"
        )


@cli.command(
    name="execute",
    context_settings={
        "allow_extra_args": True,
        "ignore_unknown_options": True,
        "allow_interspersed_args": False,
    },
    help="Execute the borg command line application directly. The backup's passphrase is passed through the environment and its repository is available as BORG_REPO. Every argument after BACKUP will be passed directly to the borg command.",
)
def cli_execute(
    ctx: BackupCLIContext,
    backup: str = typer.Argument(
        ..., help="Repository (or 0-based position) of the backup."
    ),
):
    config = ctx.obj
    target = helper.get_target(config, backup)

    try:
        env = {**get_borg_env(target), "BORG_REPO": target.repository}
    except errors.CredentialError as err:
        helper.print_error(f"Error: {err}")

    # Execute the command
    try:
        command.get_borg()(ctx.args, _env=env, _fg=True)
    except sh.ErrorReturnCode as err:
        # Catch error codes and pass them through this tool's exit
        raise typer.Exit(err.exit_code)


@cli.command(
    name="debug",
    help="Validate the configuration file and print every resolved backup.",
)
def cli_debug(ctx: BackupCLIContext):
    config = ctx.obj

    helper.print_line(f"Schedule: {config.schedule or 'none'}")
    for index, target in enumerate(config.backups):
        helper.print_line(f"Backup {index}:")
        data = target.model_dump(mode="json", exclude={"credential"})
        data["credential"] = str(target.credential) if target.credential else None
        data["compression"] = str(target.compression)
        helper.print_config_data(data)


@cli.command(
    name="daemon", help="Run in daemon mode and execute backups on a schedule."
)
def cli_daemon(
    ctx: BackupCLIContext,
):
    config = ctx.obj

    if not config.schedule:
        helper.print_warning(
            "No schedule defined. Set the top-level 'schedule' cron string in the config file. Exiting..."
        )
        raise typer.Exit()
    if not config.backups:
        helper.print_warning(
            "No backups configured. Check your configuration and try again. Exiting..."
        )
        raise typer.Exit()

    try:
        trigger = apscheduler.triggers.cron.CronTrigger.from_crontab(
            config.schedule
        )
    except ValueError as err:
        helper.print_error(f"Error: Invalid schedule '{config.schedule}': {err}")

    helper.print_line(f"Scheduling backups: {config.schedule}")
    scheduler = apscheduler.schedulers.blocking.BlockingScheduler(
        executors={
            "default": apscheduler.executors.pool.ThreadPoolExecutor(1)
        },
        job_defaults={
            "misfire_grace_time": None,
            "coalesce": True,
        },
    )
    scheduler.add_job(
        id="borrg",
        trigger=trigger,
        func=run_backups,
        args=[ctx, config.backups],
        kwargs={
            "progress": False,
            "dry_run": False,
            "stop_on_failure": False,
        },
    )

    try:
        helper.print_warning("Starting scheduler...")
        scheduler.start()
    except KeyboardInterrupt:
        helper.print_warning("Scheduler stopping...")
        raise typer.Exit()
