### stdlib imports
import typing


class BorrgError(Exception):
    pass


class ConfigError(BorrgError):
    """Base class of every configuration failure. Always fatal."""

    description = "Invalid configuration"

    def __init__(self, key: typing.Optional[str] = None, detail: str = ""):
        self.key = key
        self.detail = detail
        super().__init__(str(self))

    def __str__(self) -> str:
        message = self.description
        if self.detail:
            message += f": {self.detail}"
        if self.key:
            message += f" at {self.key}"
        return message


class InvalidValue(ConfigError):
    description = "Invalid value"


class MissingRepository(ConfigError):
    description = 'Missing key "repository"'


class AmbiguousCredential(ConfigError):
    description = '"passphrase" and "passcommand" are exclusive'


class InvalidCompression(ConfigError):
    description = "Invalid compression"


class UnknownTemplate(ConfigError):
    description = "Unknown template"


class CredentialError(BorrgError):
    """The passphrase for a single repository could not be obtained."""

    def __init__(self, repository: str, detail: str):
        self.repository = repository
        self.detail = detail
        super().__init__(f"Unable to get passphrase for '{repository}': {detail}")


class InvocationError(BorrgError):
    """borg exited with an error for a single repository."""

    def __init__(self, repository: str, exit_code: int):
        self.repository = repository
        self.exit_code = exit_code
        super().__init__(
            f"borg exited with code {exit_code} for repository '{repository}'"
        )
