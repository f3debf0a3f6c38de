"""Models for evidence of image usage gathered from scan targets."""

from dataclasses import dataclass, field
from enum import Enum

from .image import Image, ImageReference
from .patterns import match_any


class UsageKind(Enum):
    """Each kind of probe looks for image references in a different place."""

    COMPUTE_FUNCTION = "compute-function"
    SERVICE = "service"
    DEFINITION_REVISION = "definition-revision"


@dataclass(frozen=True)
class UsageRecord:
    """One workload's reference to a registry image."""

    kind: UsageKind
    target: str
    reference: ImageReference
    source: str = ""


@dataclass(frozen=True)
class ScanWarning:
    """A problem encountered while gathering usage for one scan target.

    `kind` is `None` when the problem is not specific to one probe (for
    instance, the target's credentials could not be established).
    """

    target: str
    message: str
    kind: UsageKind | None = None

    def __str__(self) -> str:
        if self.kind is None:
            return f"{self.target}: {self.message}"
        return f"{self.target} [{self.kind.value}]: {self.message}"


@dataclass(frozen=True)
class UnknownScope:
    """A set of repositories whose usage could not be determined.

    Images in repositories matching any of `patterns` must be kept.
    """

    source: str
    patterns: tuple[str, ...]
    reason: str


@dataclass(frozen=True)
class UsageSet:
    """Images known to be in use, plus repositories of unknown usage."""

    in_use: frozenset[tuple[str, str]] = field(default_factory=frozenset)
    unknown: tuple[UnknownScope, ...] = ()

    def __len__(self) -> int:
        return len(self.in_use)

    def __contains__(self, item: object) -> bool:
        if isinstance(item, Image):
            return item.key in self.in_use
        return item in self.in_use

    def is_in_use(self, image: Image) -> bool:
        return image.key in self.in_use

    def unknown_scope(self, repository: str) -> UnknownScope | None:
        """First unknown scope covering ``repository``, if any."""
        for scope in self.unknown:
            if match_any(scope.patterns, repository):
                return scope
        return None

    def is_unknown(self, repository: str) -> bool:
        return self.unknown_scope(repository) is not None


@dataclass(frozen=True)
class UsageReport:
    """Output of usage aggregation across all scan targets."""

    usage: UsageSet
    warnings: tuple[ScanWarning, ...] = ()
    records: int = 0
    interrupted: bool = False
