# Stdlib imports
import pathlib
import tomllib
import typing

# Vendor imports
import pydantic
import typer

# Local imports
from . import errors, helper, model, schema

# Default configuration file path lives in the platform's config dir for borg
default_config_path = pathlib.Path(typer.get_app_dir("borg")) / "borrg.toml"

_default_config_contents = (
    f"""
# Values inherited by every backup that doesn't override them
[template.{model.DEFAULT_TEMPLATE}]
compression = "lz4"
progress = false
stats = false

# Declare one [[backup]] table per repository, for example:
#
# [[backup]]
# repository = "ssh://user@host/./backups"
# passcommand = "pass show borg"
# path = "~"
# compression = {{ algorithm = "zstd", level = 10 }}
""".strip()
    + "\n"
)


def _key(where: str, *parts: typing.Any) -> str:
    return ".".join(str(part) for part in (where, *parts) if part != "")


def _first_validation_error(
    err: pydantic.ValidationError,
) -> tuple[tuple[typing.Any, ...], str]:
    first = err.errors()[0]
    return first["loc"], first["msg"]


def parse_credential(
    table: schema.TemplateTable, where: str
) -> typing.Optional[model.Credential]:
    passphrase = table.get("passphrase")
    passcommand = table.get("passcommand")

    if passphrase is not None and passcommand is not None:
        raise errors.AmbiguousCredential(where)

    if passcommand is not None:
        if not isinstance(passcommand, str):
            raise errors.InvalidValue(
                _key(where, "passcommand"), "expected a string"
            )
        return model.CommandCredential(command=passcommand)

    if passphrase is None:
        return None

    # An integer passphrase names a file descriptor to read the passphrase from
    if isinstance(passphrase, str):
        return model.PassphraseCredential(passphrase=passphrase)
    if isinstance(passphrase, int) and not isinstance(passphrase, bool):
        if passphrase < 0:
            raise errors.InvalidValue(
                _key(where, "passphrase"), "file descriptor can't be negative"
            )
        return model.FileDescriptorCredential(fd=passphrase)

    raise errors.InvalidValue(
        _key(where, "passphrase"), "expected a string or an integer"
    )


def parse_compression(value: typing.Any, where: str) -> model.Compression:
    if not isinstance(value, (str, dict)):
        raise errors.InvalidCompression(where, "expected a string or a table")
    if isinstance(value, dict) and "algorithm" not in value:
        raise errors.InvalidCompression(where, 'missing key "algorithm"')

    try:
        return model.Compression.model_validate(value)
    except pydantic.ValidationError as err:
        loc, msg = _first_validation_error(err)
        raise errors.InvalidCompression(_key(where, *loc), msg) from err


def parse_paths(value: typing.Any, where: str) -> tuple[str, ...]:
    if isinstance(value, str):
        return (value,)
    if isinstance(value, list) and value:
        for index, entry in enumerate(value):
            if not isinstance(entry, str):
                raise errors.InvalidValue(_key(where, index), "expected a string")
        return tuple(value)
    raise errors.InvalidValue(
        where, "expected a string or a non-empty array of strings"
    )


def parse_section(table: typing.Any, where: str) -> model.Section:
    """Validate a single template table or backup entry without applying any defaults."""
    if not isinstance(table, dict):
        raise errors.InvalidValue(where, "expected a table")

    values = {
        key: value
        for key, value in table.items()
        if key not in ("passphrase", "passcommand")
    }

    if (credential := parse_credential(table, where)) is not None:
        values["credential"] = credential
    if "compression" in values:
        values["compression"] = parse_compression(
            values["compression"], _key(where, "compression")
        )
    # "paths" is the older spelling of "path"
    if "paths" in values:
        if "path" in values:
            raise errors.InvalidValue(
                _key(where, "paths"), '"path" and "paths" are exclusive'
            )
        values["path"] = parse_paths(values.pop("paths"), _key(where, "paths"))
    elif "path" in values:
        values["path"] = parse_paths(values["path"], _key(where, "path"))

    try:
        return model.Section(**values)
    except pydantic.ValidationError as err:
        loc, msg = _first_validation_error(err)
        raise errors.InvalidValue(_key(where, *loc), msg) from err


def parse_templates(document: schema.ConfigDocument) -> dict[str, model.Section]:
    raw_templates = document.get("template", {})
    if not isinstance(raw_templates, dict):
        raise errors.InvalidValue("template", "expected a table")

    templates: dict[str, model.Section] = {}
    for name, table in raw_templates.items():
        where = _key("template", name)
        if isinstance(table, dict) and "template" in table:
            raise errors.InvalidValue(
                _key(where, "template"), "templates can't inherit templates"
            )
        templates[name] = parse_section(table, where)

    # Older config files declare the default template as a top-level table
    if "default" in document:
        if model.DEFAULT_TEMPLATE in templates:
            raise errors.InvalidValue(
                "default",
                f'"default" and "template.{model.DEFAULT_TEMPLATE}" are exclusive',
            )
        templates[model.DEFAULT_TEMPLATE] = parse_section(
            document["default"], "default"
        )

    return templates


def resolve_backup(
    templates: dict[str, model.Section], entry: typing.Any, where: str
) -> model.ResolvedTarget:
    if not isinstance(entry, dict):
        raise errors.InvalidValue(where, "expected a table")

    # Pick the template; only an explicitly named template has to exist
    template_name = entry.get("template")
    if template_name is None:
        template_name = model.DEFAULT_TEMPLATE
        template = templates.get(template_name, model.Section())
    elif not isinstance(template_name, str):
        raise errors.InvalidValue(_key(where, "template"), "expected a string")
    elif template_name not in templates:
        raise errors.UnknownTemplate(
            _key(where, "template"), f"'{template_name}'"
        )
    else:
        template = templates[template_name]

    section = parse_section(
        {key: value for key, value in entry.items() if key != "template"},
        where,
    )
    merged = helper.merge_with_template(template, section)

    if not merged.repository:
        raise errors.MissingRepository(where)

    return model.ResolvedTarget(
        template=template_name, **helper.explicit_fields(merged)
    )


def parse(
    document: schema.ConfigDocument,
    templates: typing.Optional[dict[str, model.Section]] = None,
) -> list[model.ResolvedTarget]:
    """Resolve every backup entry against its template, in declaration order.

    Templates already parsed from the same document may be passed in to avoid
    parsing them twice.
    """
    if not isinstance(document, dict):
        raise errors.InvalidValue(detail="expected a table")

    if templates is None:
        templates = parse_templates(document)

    backups = document.get("backup", [])
    if not isinstance(backups, list):
        raise errors.InvalidValue("backup", "expected an array of tables")

    return [
        resolve_backup(templates, entry, _key("backup", index))
        for index, entry in enumerate(backups)
    ]


# Return the config values in the config file
def load_config_values(
    config_path: pathlib.Path,
) -> model.RootConfiguration:
    # Resolve the path string to a path object
    config_path = config_path.expanduser()

    # If the config file doesn't already exist, create it
    if not config_path.exists():
        config_path.parent.mkdir(parents=True, exist_ok=True)
        with config_path.open("w") as handle:
            handle.write(_default_config_contents)
        helper.print_warning(
            f'Created a new config file at "{config_path}". Add a [\\[backup]] table to it for each repository.'
        )

    # Open and decode the config file
    with config_path.open("rb") as handle:
        try:
            document: schema.ConfigDocument = tomllib.load(handle)
        except tomllib.TOMLDecodeError as err:
            raise errors.InvalidValue(detail=str(err)) from err

    schedule = document.get("schedule")
    if schedule is not None and not isinstance(schedule, str):
        raise errors.InvalidValue("schedule", "expected a cron string")

    templates = parse_templates(document)
    return model.RootConfiguration(
        templates=templates,
        backups=tuple(parse(document, templates)),
        schedule=schedule,
    )
