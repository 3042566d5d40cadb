### stdlib imports
import types
import typing

### vendor imports
import pydantic

DEFAULT_TEMPLATE = "default"
DEFAULT_COMMENT = "created using borrg"
DEFAULT_EXCLUDE_FILE = ".borgignore"
DEFAULT_ARCHIVE_NAME = "%Y-%m-%d"
DEFAULT_PATH = "~"

# Algorithms that take no level argument in borg's compression spec
LEVELLESS_ALGORITHMS = ("none", "lz4")


class Compression(pydantic.BaseModel):
    model_config = pydantic.ConfigDict(frozen=True, strict=True)

    algorithm: typing.Literal["none", "lz4", "zstd", "zlib", "lzma"]
    level: typing.Optional[int] = pydantic.Field(default=None, ge=0, le=22)
    auto: bool = False
    obfuscation: typing.Optional[int] = pydantic.Field(
        default=None, ge=1, le=250
    )

    @pydantic.model_validator(mode="before")
    @classmethod
    def expand_bare_name(cls, value: typing.Any) -> typing.Any:
        # A bare algorithm name is shorthand for a table with only the algorithm set
        if isinstance(value, str):
            value = {"algorithm": value}
        if isinstance(value, dict) and isinstance(value.get("algorithm"), str):
            value = {**value, "algorithm": value["algorithm"].lower()}
        return value

    def __str__(self) -> str:
        """Render as a borg compression spec, e.g. "obfuscate,3,auto,zstd,10"."""
        parts: list[str] = []
        if self.obfuscation:
            parts += ["obfuscate", str(self.obfuscation)]
        if self.auto and self.algorithm != "none":
            parts.append("auto")
        parts.append(self.algorithm)
        if self.level is not None and self.algorithm not in LEVELLESS_ALGORITHMS:
            parts.append(str(self.level))
        return ",".join(parts)


class PassphraseCredential(pydantic.BaseModel):
    model_config = pydantic.ConfigDict(frozen=True)

    kind: typing.Literal["passphrase"] = "passphrase"
    passphrase: str = pydantic.Field(repr=False)

    def __str__(self) -> str:
        return "passphrase"


class CommandCredential(pydantic.BaseModel):
    model_config = pydantic.ConfigDict(frozen=True)

    kind: typing.Literal["command"] = "command"
    command: str

    def __str__(self) -> str:
        return f"passcommand `{self.command}`"


class FileDescriptorCredential(pydantic.BaseModel):
    model_config = pydantic.ConfigDict(frozen=True)

    kind: typing.Literal["fd"] = "fd"
    fd: int = pydantic.Field(ge=0)

    def __str__(self) -> str:
        return f"passphrase from file descriptor {self.fd}"


Credential = typing.Annotated[
    typing.Union[
        PassphraseCredential, CommandCredential, FileDescriptorCredential
    ],
    pydantic.Field(discriminator="kind"),
]


class Section(pydantic.BaseModel):
    """A template table or a backup entry, holding only the values it sets explicitly."""

    model_config = pydantic.ConfigDict(
        frozen=True, strict=True, extra="forbid"
    )

    repository: typing.Optional[str] = None
    credential: typing.Optional[Credential] = None
    path: typing.Optional[tuple[str, ...]] = None
    compression: typing.Optional[Compression] = None
    progress: typing.Optional[bool] = None
    stats: typing.Optional[bool] = None
    comment: typing.Optional[str] = None
    exclude_file: typing.Optional[str] = None
    pattern_file: typing.Optional[str] = None
    archive_name: typing.Optional[str] = None


class ResolvedTarget(pydantic.BaseModel):
    model_config = pydantic.ConfigDict(frozen=True)

    repository: str
    credential: typing.Optional[Credential] = None
    path: tuple[str, ...] = (DEFAULT_PATH,)
    compression: Compression = Compression(algorithm="none")
    progress: bool = False
    stats: bool = False
    comment: str = DEFAULT_COMMENT
    exclude_file: typing.Optional[str] = DEFAULT_EXCLUDE_FILE
    pattern_file: typing.Optional[str] = None
    archive_name: str = DEFAULT_ARCHIVE_NAME

    # Name of the template the target was resolved against
    template: str = DEFAULT_TEMPLATE


class RootConfiguration(pydantic.BaseModel):
    model_config = pydantic.ConfigDict(frozen=True)

    templates: typing.Mapping[str, Section] = pydantic.Field(
        default={}, validate_default=True
    )
    backups: tuple[ResolvedTarget, ...] = ()
    schedule: typing.Optional[str] = None

    # Freezing the model does not freeze a dict field, so wrap it read-only
    @pydantic.field_validator("templates", mode="after")
    @classmethod
    def freeze_templates(
        cls, value: typing.Mapping[str, Section]
    ) -> typing.Mapping[str, Section]:
        return types.MappingProxyType(dict(value))
