"""Retention rules: decide, per image, whether it may be deleted."""

import datetime

from ..config import RepositoryFilterConfig
from ..models.image import Image
from ..models.patterns import glob_match, match_any
from ..models.plan import MatchedFilter, PlanEntry, Reason
from ..models.usage import UsageSet


def is_too_recent(
    pushed_at: datetime.datetime,
    days_after: int | None,
    now: datetime.datetime,
) -> bool:
    """Whether an image is younger than ``days_after`` days.

    An image exactly ``days_after`` days old is old enough.  With no
    ``days_after``, no image is too recent.
    """
    if days_after is None:
        return False
    return now - pushed_at < datetime.timedelta(days=days_after)


def protected_tag(image: Image, patterns: list[str]) -> str | None:
    """Return the first of the image's tags matching any pattern."""
    for tag in sorted(image.tags):
        if match_any(patterns, tag):
            return tag
    return None


class FilterEngine:
    """Evaluate a registry's retention rules against single images.

    Evaluation is a pure function of the image, the usage set, and the
    rules; the current time is fixed when the engine is built.

    Checks run in this order, and the first that applies decides:

    #. repository matches an exclude pattern: keep
    #. image is in use: keep
    #. repository is in the scope of a target whose usage is unknown: keep
    #. no filter matches the repository: keep
    #. first matching filter says the image is too recent: keep
    #. first matching filter protects one of the image's tags: keep
    #. otherwise: delete

    Registry clients already skip excluded repositories when reading the
    catalog, so the first check only fires for images that reach the
    engine some other way.  It stays first so that no later rule can
    mark such an image for deletion.
    """

    def __init__(
        self,
        excludes: list[str],
        filters: list[RepositoryFilterConfig],
        now: datetime.datetime,
    ) -> None:
        self._excludes = list(excludes)
        self._filters = list(filters)
        self._now = now

    @property
    def now(self) -> datetime.datetime:
        return self._now

    def is_excluded(self, repository: str) -> bool:
        return match_any(self._excludes, repository)

    def match_filter(
        self, repository: str
    ) -> tuple[int, RepositoryFilterConfig] | None:
        """First filter, in declared order, whose pattern matches."""
        for idx, filt in enumerate(self._filters):
            if glob_match(filt.pattern, repository):
                return idx, filt
        return None

    def evaluate(self, image: Image, usage: UsageSet) -> PlanEntry:
        if self.is_excluded(image.repository):
            return PlanEntry(image=image, reason=Reason.EXCLUDED_REPOSITORY)

        if usage.is_in_use(image):
            return PlanEntry(image=image, reason=Reason.IN_USE)

        scope = usage.unknown_scope(image.repository)
        if scope is not None:
            return PlanEntry(
                image=image,
                reason=Reason.USAGE_UNKNOWN,
                note=f"{scope.source}: {scope.reason}",
            )

        found = self.match_filter(image.repository)
        if found is None:
            return PlanEntry(image=image, reason=Reason.NO_MATCHING_FILTER)
        idx, filt = found
        matched = MatchedFilter(index=idx, pattern=filt.pattern)

        if is_too_recent(image.pushed_at, filt.days_after, self._now):
            return PlanEntry(
                image=image,
                reason=Reason.TOO_RECENT,
                matched_filter=matched,
                note=f"younger than {filt.days_after} days",
            )

        tag = protected_tag(image, filt.ignore_tag_patterns)
        if tag is not None:
            return PlanEntry(
                image=image,
                reason=Reason.PROTECTED_TAG,
                matched_filter=matched,
                note=f"tag '{tag}'",
            )

        return PlanEntry(
            image=image, reason=Reason.FILTER_MATCH, matched_filter=matched
        )
