"""Combine the catalog, usage, and retention rules into a plan."""

import structlog

from ..models.plan import Decision, Plan, PlanEntry, fingerprint_entries
from ..models.usage import UsageReport
from ..storage.registry import Catalog
from .filters import FilterEngine


class PlanBuilder:
    """Build deletion plans for one registry.

    Plans are ordered by repository name, then by push date (oldest
    first), then by digest, so the same inputs always produce the same
    plan.
    """

    def __init__(self, registry: str, engine: FilterEngine) -> None:
        self._registry = registry
        self._engine = engine
        self._logger = structlog.get_logger(__name__).bind(registry=registry)

    def build(self, catalog: Catalog, report: UsageReport) -> Plan:
        entries: list[PlanEntry] = [
            self._engine.evaluate(img, report.usage)
            for img in sorted(catalog, key=lambda x: x.sort_key)
        ]
        frozen = tuple(entries)
        plan = Plan(
            registry=self._registry,
            created_at=self._engine.now,
            entries=frozen,
            warnings=report.warnings,
            excluded_repositories=tuple(catalog.excluded_repositories),
            fingerprint=fingerprint_entries(self._registry, frozen),
            interrupted=report.interrupted,
        )
        deletions = len(plan.deletions)
        self._logger.info(
            "Built plan",
            images=len(frozen),
            delete=deletions,
            keep=len(frozen) - deletions,
            warnings=len(plan.warnings),
        )
        for entry in frozen:
            if entry.decision == Decision.DELETE:
                self._logger.debug("Planned deletion", image=str(entry.image))
        return plan
