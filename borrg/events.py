"""Parsing and display of the JSON lines borg writes to stderr with --log-json."""

### stdlib imports
import typing

### vendor imports
import pydantic
import rich.markup

### local imports
from . import helper


class ArchiveProgress(pydantic.BaseModel):
    type: typing.Literal["archive_progress"]
    nfiles: int = 0
    original_size: int = 0
    compressed_size: int = 0
    deduplicated_size: int = 0
    path: str = ""
    finished: bool = False
    time: typing.Optional[float] = None


class ProgressMessage(pydantic.BaseModel):
    type: typing.Literal["progress_message"]
    message: typing.Optional[str] = None
    msgid: typing.Optional[str] = None
    operation: typing.Optional[int] = None
    finished: typing.Optional[bool] = None
    time: typing.Optional[float] = None


class ProgressPercent(pydantic.BaseModel):
    type: typing.Literal["progress_percent"]
    message: str = ""
    msgid: typing.Optional[str] = None
    operation: typing.Optional[int] = None
    current: int = 0
    total: int = 0
    finished: bool = False
    time: typing.Optional[float] = None


class LogMessage(pydantic.BaseModel):
    type: typing.Literal["log_message"]
    message: str = ""
    name: typing.Optional[str] = None
    levelname: typing.Optional[str] = None
    msgid: typing.Optional[str] = None
    time: typing.Optional[float] = None


class FileStatus(pydantic.BaseModel):
    type: typing.Literal["file_status"]
    status: str = ""
    path: str = ""


class Other(pydantic.BaseModel):
    """Any line that isn't a recognised JSON event, kept verbatim."""

    type: typing.Literal["other"] = "other"
    text: str


Event = typing.Annotated[
    typing.Union[
        ArchiveProgress,
        ProgressMessage,
        ProgressPercent,
        LogMessage,
        FileStatus,
    ],
    pydantic.Field(discriminator="type"),
]

_event_adapter: pydantic.TypeAdapter = pydantic.TypeAdapter(Event)


def parse_event(line: str) -> typing.Union[Event, Other]:
    line = line.rstrip("\r\n")
    try:
        return _event_adapter.validate_json(line)
    except pydantic.ValidationError:
        return Other(text=line)


def format_event(event: typing.Union[Event, Other]) -> typing.Optional[str]:
    if isinstance(event, ArchiveProgress):
        # Borg sends one last, empty progress event when it's done
        if event.finished:
            return None
        return (
            f"{helper.human_readable(event.original_size)} O "
            f"{helper.human_readable(event.compressed_size)} C "
            f"{helper.human_readable(event.deduplicated_size)} D "
            f"{event.nfiles} N {event.path}"
        )
    if isinstance(event, (ProgressMessage, ProgressPercent)):
        return event.message or None
    if isinstance(event, LogMessage):
        return event.message
    if isinstance(event, FileStatus):
        return f"{event.status} {event.path}"
    return event.text or None


def make_stderr_handler(
    prefix: str = "",
) -> typing.Callable[[str], None]:
    """Build an sh stderr callback that prints each borg event as it arrives."""

    def handle_line(line: str) -> None:
        message = format_event(parse_event(line))
        if message is None:
            return
        helper.print_nested_line(
            rich.markup.escape(f"{prefix}{message}")
        )

    return handle_line
