import typing


class CompressionTable(typing.TypedDict, total=False):
    algorithm: str
    level: int
    auto: bool
    obfuscation: int


class TemplateTable(typing.TypedDict, total=False):
    repository: str
    passphrase: typing.Union[str, int]
    passcommand: str
    path: typing.Union[str, list[str]]
    paths: typing.Union[str, list[str]]
    compression: typing.Union[str, CompressionTable]
    progress: bool
    stats: bool
    comment: str
    exclude_file: str
    pattern_file: str
    archive_name: str


class BackupTable(TemplateTable, total=False):
    template: str


class ConfigDocument(typing.TypedDict, total=False):
    template: dict[str, TemplateTable]
    default: TemplateTable
    backup: list[BackupTable]
    schedule: str
