"""Human-readable summaries of plans and their results."""

from dataclasses import dataclass, field
from typing import Self

from safir.datetime import format_datetime_for_logging

from ..models.plan import (
    ApplyResult,
    Decision,
    Outcome,
    Plan,
    PlanEntry,
    Reason,
)


@dataclass
class Summary:
    """Counts, planned deletions, failures, and warnings for one run."""

    registry: str
    created_at: str
    images: int
    decisions: dict[str, int]
    reasons: dict[str, int]
    deletions: dict[str, list[PlanEntry]]
    excluded_repositories: list[str]
    warnings: list[str]
    applied: bool = False
    outcomes: dict[str, int] = field(default_factory=dict)
    already_absent: int = 0
    failures: list[str] = field(default_factory=list)
    interrupted: bool = False

    @classmethod
    def from_plan(
        cls, plan: Plan, apply_result: ApplyResult | None = None
    ) -> Self:
        decisions = {x.value: 0 for x in Decision}
        reasons = {x.value: 0 for x in Reason}
        deletions: dict[str, list[PlanEntry]] = {}
        for entry in plan.entries:
            decisions[entry.decision.value] += 1
            reasons[entry.reason.value] += 1
            if entry.decision == Decision.DELETE:
                deletions.setdefault(entry.image.repository, []).append(entry)
        summary = cls(
            registry=plan.registry,
            created_at=format_datetime_for_logging(plan.created_at),
            images=len(plan.entries),
            decisions=decisions,
            reasons={k: v for k, v in reasons.items() if v},
            deletions=deletions,
            excluded_repositories=list(plan.excluded_repositories),
            warnings=[str(x) for x in plan.warnings],
            interrupted=plan.interrupted,
        )
        if apply_result is not None:
            summary.applied = True
            summary.outcomes = {
                x.value: len(apply_result.by_outcome(x)) for x in Outcome
            }
            summary.already_absent = len(
                [x for x in apply_result.results if x.already_absent]
            )
            summary.failures = [
                f"{x.entry.image}: {x.reason}" for x in apply_result.failures
            ]
            if apply_result.interrupted:
                summary.interrupted = True
        return summary

    @property
    def title(self) -> str:
        verb = "Deleted" if self.applied else "Planned deletion of"
        count = (
            self.outcomes.get(Outcome.DELETED.value, 0)
            if self.applied
            else self.decisions[Decision.DELETE.value]
        )
        return f"{verb} {count} image(s) from {self.registry}"

    @property
    def has_problems(self) -> bool:
        return bool(self.warnings or self.failures or self.interrupted)

    def deletion_table(self) -> str:
        """Planned deletions per repository, with their tags."""
        if not self.deletions:
            return "(no images to delete)"
        rows = [("Repository", "Tags", "Total")]
        for repo, entries in self.deletions.items():
            tags = sorted({t for x in entries for t in x.image.tags})
            untagged = len([x for x in entries if not x.image.tags])
            if untagged:
                tags.append(f"<untagged> x{untagged}")
            rows.append((repo, ", ".join(tags), str(len(entries))))
        widths = [max(len(r[i]) for r in rows) for i in range(2)]
        lines = [
            f"{r[0]:<{widths[0]}}  {r[1]:<{widths[1]}}  {r[2]}" for r in rows
        ]
        lines.insert(1, "-" * len(lines[0]))
        return "\n".join(lines)

    def render(self) -> str:
        headline = f"{self.title} ({self.created_at})"
        lines = [headline, "-" * len(headline), self.deletion_table(), ""]
        lines.append(f"Images considered: {self.images}")
        for decision, count in self.decisions.items():
            lines.append(f"  {decision}: {count}")
        lines.append("Reasons:")
        for reason, count in self.reasons.items():
            lines.append(f"  {reason}: {count}")
        if self.excluded_repositories:
            lines.append(
                "Excluded repositories: "
                + ", ".join(self.excluded_repositories)
            )
        if self.applied:
            lines.append("Results:")
            for outcome, count in self.outcomes.items():
                lines.append(f"  {outcome}: {count}")
            if self.already_absent:
                lines.append(f"  (already absent: {self.already_absent})")
        if self.warnings:
            lines.append(f"Warnings ({len(self.warnings)}):")
            lines.extend(f"  {x}" for x in self.warnings)
        if self.failures:
            lines.append(f"Failures ({len(self.failures)}):")
            lines.extend(f"  {x}" for x in self.failures)
        if self.interrupted:
            lines.append("Run was interrupted; results are partial.")
        return "\n".join(lines) + "\n"
