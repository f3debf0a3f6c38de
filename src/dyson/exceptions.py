"""Exceptions raised by the image cleaner."""

__all__ = [
    "AuthenticationError",
    "CatalogError",
    "ConfigurationError",
    "DeletionBatchError",
    "DysonError",
    "NotificationError",
    "ProbeError",
]


class DysonError(Exception):
    """Base class for cleaner errors."""


class ConfigurationError(DysonError):
    """The configuration is missing, malformed, or unusable."""


class AuthenticationError(DysonError):
    """Credentials for a profile could not be established."""

    def __init__(self, target: str, message: str) -> None:
        super().__init__(f"{target}: {message}")
        self.target = target


class ProbeError(DysonError):
    """A usage probe could not list images for a scan target."""

    def __init__(self, target: str, kind: str, message: str) -> None:
        super().__init__(f"{target} [{kind}]: {message}")
        self.target = target
        self.kind = kind


class CatalogError(DysonError):
    """The registry catalog could not be read."""

    def __init__(self, registry: str, message: str) -> None:
        super().__init__(f"{registry}: {message}")
        self.registry = registry


class DeletionBatchError(DysonError):
    """A deletion batch failed after exhausting its attempts."""

    def __init__(
        self,
        repository: str,
        digests: list[str],
        attempts: int,
        message: str,
    ) -> None:
        super().__init__(
            f"{repository}: {len(digests)} image(s) after {attempts}"
            f" attempt(s): {message}"
        )
        self.repository = repository
        self.digests = digests
        self.attempts = attempts
        self.reason = message


class NotificationError(DysonError):
    """A notification could not be delivered."""
