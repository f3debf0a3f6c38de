"""Models for deletion plans and their execution."""

import datetime
import hashlib
from dataclasses import dataclass
from enum import Enum

from .image import Image
from .usage import ScanWarning


class Decision(Enum):
    """What the plan will do with an image."""

    DELETE = "delete"
    KEEP = "keep"


class Reason(Enum):
    """Why an image was kept or deleted.

    Every reason implies exactly one decision, so a plan entry can never
    pair a reason with the wrong decision.
    """

    EXCLUDED_REPOSITORY = "excluded-repository"
    IN_USE = "in-use"
    USAGE_UNKNOWN = "usage-unknown"
    NO_MATCHING_FILTER = "no-matching-filter"
    TOO_RECENT = "too-recent"
    PROTECTED_TAG = "protected-tag"
    FILTER_MATCH = "filter-match"

    @property
    def decision(self) -> Decision:
        if self is Reason.FILTER_MATCH:
            return Decision.DELETE
        return Decision.KEEP


@dataclass(frozen=True)
class MatchedFilter:
    """The retention filter that decided an image's fate."""

    index: int
    pattern: str

    def __str__(self) -> str:
        return f"#{self.index} '{self.pattern}'"


@dataclass(frozen=True)
class PlanEntry:
    """The plan's decision for one image."""

    image: Image
    reason: Reason
    matched_filter: MatchedFilter | None = None
    note: str | None = None

    @property
    def decision(self) -> Decision:
        return self.reason.decision

    def __str__(self) -> str:
        text = f"{self.decision.value:<6} {self.image} ({self.reason.value}"
        if self.matched_filter is not None:
            text += f", filter {self.matched_filter}"
        if self.note:
            text += f", {self.note}"
        return text + ")"


def fingerprint_entries(registry: str, entries: tuple[PlanEntry, ...]) -> str:
    """Digest of a plan's decisions, in order."""
    hasher = hashlib.sha256(registry.encode())
    for entry in entries:
        img = entry.image
        line = "\t".join(
            [
                img.repository,
                img.digest,
                img.pushed_at.isoformat(),
                ",".join(sorted(img.tags)),
                entry.reason.value,
                str(entry.matched_filter or ""),
            ]
        )
        hasher.update(line.encode())
        hasher.update(b"\n")
    return hasher.hexdigest()


@dataclass(frozen=True)
class Plan:
    """An ordered, reviewable set of per-image decisions for one registry.

    Plans are built by `PlanBuilder`, which stamps a fingerprint over the
    entries; the deletion executor will not act on a plan whose
    fingerprint does not verify.
    """

    registry: str
    created_at: datetime.datetime
    entries: tuple[PlanEntry, ...]
    warnings: tuple[ScanWarning, ...] = ()
    excluded_repositories: tuple[str, ...] = ()
    fingerprint: str = ""
    interrupted: bool = False

    @property
    def deletions(self) -> list[PlanEntry]:
        return [x for x in self.entries if x.decision == Decision.DELETE]

    def verify(self) -> bool:
        if not self.fingerprint:
            return False
        return self.fingerprint == fingerprint_entries(
            self.registry, self.entries
        )


class Outcome(Enum):
    """Result of applying one plan entry."""

    DELETED = "deleted"
    FAILED = "failed"
    SKIPPED = "skipped"


@dataclass(frozen=True)
class DeletionResult:
    """Result of applying one plan entry."""

    entry: PlanEntry
    outcome: Outcome
    reason: str | None = None
    already_absent: bool = False


@dataclass(frozen=True)
class ApplyResult:
    """Results of applying a plan, one per plan entry, in plan order."""

    results: tuple[DeletionResult, ...]
    interrupted: bool = False

    def by_outcome(self, outcome: Outcome) -> list[DeletionResult]:
        return [x for x in self.results if x.outcome == outcome]

    @property
    def failures(self) -> list[DeletionResult]:
        return self.by_outcome(Outcome.FAILED)
