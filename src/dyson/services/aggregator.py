"""Gather image usage from every scan target into one usage set."""

import time
from concurrent.futures import (
    FIRST_COMPLETED,
    Future,
    ThreadPoolExecutor,
    wait,
)
from dataclasses import dataclass

import structlog

from ..exceptions import AuthenticationError, ProbeError
from ..models.usage import (
    ScanWarning,
    UnknownScope,
    UsageKind,
    UsageRecord,
    UsageReport,
    UsageSet,
)
from ..probes.base import UsageProbe
from ..storage.registry import Catalog
from ..storage.session import AwsContext


@dataclass(frozen=True)
class ScanTarget:
    """An account to scan, the probes to run there, and its scope.

    ``scope`` holds glob patterns for the repositories the target may
    use.  If any probe fails for the target, images in those repositories
    are kept for the rest of the run.
    """

    context: AwsContext
    probes: tuple[UsageProbe, ...]
    scope: tuple[str, ...] = ("*",)

    @property
    def name(self) -> str:
        return self.context.name


@dataclass(frozen=True)
class ProbeOutcome:
    """What one probe reported for one target.

    Exactly one of ``records`` (on success) or ``error`` is meaningful.
    """

    target: str
    kind: UsageKind
    records: frozenset[UsageRecord] = frozenset()
    error: str | None = None
    auth_failed: bool = False


class UsageAggregator:
    """Run every probe against every scan target, then merge the results.

    Each (target, probe) pair runs as one task in a bounded thread pool.
    Tasks only return immutable outcomes; the merge happens afterward, in
    the calling thread, and is the only place the usage set is built.

    Parameters
    ----------
    targets
        Scan targets, in configuration order.
    max_workers
        Upper bound on concurrent probe tasks.
    timeout
        Seconds each probe task may run, counted from when a worker
        starts it.  Tasks that have not finished by then are treated as
        failed probes.
    """

    def __init__(
        self,
        targets: list[ScanTarget],
        max_workers: int = 8,
        timeout: float = 300.0,
    ) -> None:
        if max_workers < 1:
            raise ValueError(f"max_workers must be >= 1, got {max_workers}")
        self._targets = list(targets)
        self._max_workers = max_workers
        self._timeout = timeout
        self._logger = structlog.get_logger(__name__)

    def aggregate(self, catalog: Catalog) -> UsageReport:
        outcomes, interrupted = self._collect()
        return self._merge(outcomes, catalog, interrupted=interrupted)

    def _run_probe(
        self, target: ScanTarget, probe: UsageProbe
    ) -> ProbeOutcome:
        try:
            target.context.verify()
            records = probe.scan(target.context)
        except AuthenticationError as e:
            return ProbeOutcome(
                target=target.name,
                kind=probe.kind,
                error=str(e),
                auth_failed=True,
            )
        except ProbeError as e:
            return ProbeOutcome(
                target=target.name, kind=probe.kind, error=str(e)
            )
        except Exception as e:
            # Anything unexpected still only means "usage unknown".
            self._logger.exception(
                "Probe failed unexpectedly",
                target=target.name,
                kind=probe.kind.value,
            )
            return ProbeOutcome(
                target=target.name,
                kind=probe.kind,
                error=f"unexpected {type(e).__name__}: {e}",
            )
        return ProbeOutcome(
            target=target.name, kind=probe.kind, records=records
        )

    def _collect(self) -> tuple[list[ProbeOutcome], bool]:
        tasks = [(t, p) for t in self._targets for p in t.probes]
        if not tasks:
            self._logger.info("No scan targets configured")
            return [], False
        self._logger.info(
            "Scanning for images in use",
            targets=len(self._targets),
            tasks=len(tasks),
            max_workers=self._max_workers,
        )
        pool = ThreadPoolExecutor(
            max_workers=self._max_workers, thread_name_prefix="probe"
        )
        futures: list[Future[ProbeOutcome]] = []
        started: dict[int, float] = {}
        expired: set[int] = set()
        starved: set[int] = set()
        interrupted = False
        try:
            for idx, (target, probe) in enumerate(tasks):
                futures.append(
                    pool.submit(self._timed, started, idx, target, probe)
                )
            self._wait(futures, started, expired, starved)
        except KeyboardInterrupt:
            interrupted = True
            self._logger.warning("Interrupted; reporting partial usage")
        finally:
            # Queued probes never start; running ones finish on their own.
            pool.shutdown(wait=False, cancel_futures=True)

        outcomes: list[ProbeOutcome] = []
        for idx, (target, probe) in enumerate(tasks):
            if idx >= len(futures):
                # Interrupted before the task was submitted.
                error = "interrupted"
            elif idx in expired:
                error = f"timed out after {self._timeout:g}s"
            elif idx in starved:
                error = "no worker free before other probes timed out"
            elif futures[idx].done() and not futures[idx].cancelled():
                exc = futures[idx].exception()
                if exc is None:
                    outcomes.append(futures[idx].result())
                    continue
                error = f"unexpected {type(exc).__name__}: {exc}"
            else:
                futures[idx].cancel()
                error = "interrupted"
            outcomes.append(
                ProbeOutcome(target=target.name, kind=probe.kind, error=error)
            )
        return outcomes, interrupted

    def _timed(
        self,
        started: dict[int, float],
        idx: int,
        target: ScanTarget,
        probe: UsageProbe,
    ) -> ProbeOutcome:
        started[idx] = time.monotonic()
        return self._run_probe(target, probe)

    def _wait(
        self,
        futures: list[Future[ProbeOutcome]],
        started: dict[int, float],
        expired: set[int],
        starved: set[int],
    ) -> None:
        """Wait for every task, giving each its own timeout.

        A task's clock starts when a worker picks it up, not when it is
        queued.  Tasks still running past their deadline are added to
        ``expired``.  If every worker is held by an expired task, queued
        tasks can never start and are added to ``starved``.
        """
        while True:
            now = time.monotonic()
            live: list[Future[ProbeOutcome]] = []
            queued: list[int] = []
            deadlines: list[float] = []
            for idx, future in enumerate(futures):
                if future.done() or idx in expired:
                    continue
                start = started.get(idx)
                if start is None:
                    queued.append(idx)
                    live.append(future)
                elif now >= start + self._timeout:
                    expired.add(idx)
                else:
                    deadlines.append(start + self._timeout)
                    live.append(future)
            stuck = sum(1 for x in expired if not futures[x].done())
            if queued and stuck >= self._max_workers:
                for idx in queued:
                    if futures[idx].cancel():
                        starved.add(idx)
                continue
            if not live:
                return
            # Queued tasks have no deadline yet; recheck within one timeout.
            remaining = min(
                (x - now for x in deadlines), default=self._timeout
            )
            wait(live, timeout=remaining, return_when=FIRST_COMPLETED)

    def _merge(
        self,
        outcomes: list[ProbeOutcome],
        catalog: Catalog,
        *,
        interrupted: bool = False,
    ) -> UsageReport:
        in_use: set[tuple[str, str]] = set()
        warnings: list[ScanWarning] = []
        unknown: list[UnknownScope] = []
        failed: list[str] = []
        auth_warned: set[str] = set()
        dangling: set[tuple[str, str]] = set()
        records = 0
        foreign = 0

        for outcome in outcomes:
            if outcome.error is not None:
                if outcome.auth_failed:
                    if outcome.target not in auth_warned:
                        auth_warned.add(outcome.target)
                        warnings.append(
                            self._warn(
                                ScanWarning(
                                    target=outcome.target,
                                    message=(
                                        "credentials could not be "
                                        f"established: {outcome.error}"
                                    ),
                                )
                            )
                        )
                else:
                    warnings.append(
                        self._warn(
                            ScanWarning(
                                target=outcome.target,
                                kind=outcome.kind,
                                message=f"probe failed: {outcome.error}",
                            )
                        )
                    )
                if outcome.target not in failed:
                    failed.append(outcome.target)
                continue

            # Sets iterate in hash order; sort so warnings are stable.
            for record in sorted(
                outcome.records, key=lambda r: (r.reference.uri, r.source)
            ):
                records += 1
                ref = record.reference
                if not catalog.owns(ref):
                    foreign += 1
                    continue
                if ref.repository in catalog.excluded_repositories:
                    continue
                if ref.digest is not None:
                    in_use.add((ref.repository, ref.digest))
                    continue
                tag = ref.tag or ""
                digest = catalog.resolve_tag(ref.repository, tag)
                if digest is not None:
                    in_use.add((ref.repository, digest))
                    continue
                if (ref.repository, tag) in dangling:
                    continue
                dangling.add((ref.repository, tag))
                warnings.append(
                    self._warn(
                        ScanWarning(
                            target=record.target,
                            kind=record.kind,
                            message=(
                                f"{record.source} refers to {ref.uri}, which "
                                "matches no image; keeping all of "
                                f"{ref.repository}"
                            ),
                        )
                    )
                )
                unknown.append(
                    UnknownScope(
                        source=record.target,
                        patterns=(ref.repository,),
                        reason=f"dangling reference {ref.uri}",
                    )
                )

        for target in self._targets:
            if target.name in failed:
                unknown.append(
                    UnknownScope(
                        source=target.name,
                        patterns=target.scope,
                        reason="usage could not be determined",
                    )
                )

        self._logger.info(
            "Aggregated usage",
            records=records,
            in_use=len(in_use),
            foreign=foreign,
            unknown_scopes=len(unknown),
            warnings=len(warnings),
        )
        return UsageReport(
            usage=UsageSet(in_use=frozenset(in_use), unknown=tuple(unknown)),
            warnings=tuple(warnings),
            records=records,
            interrupted=interrupted,
        )

    def _warn(self, warning: ScanWarning) -> ScanWarning:
        self._logger.warning(
            warning.message,
            target=warning.target,
            kind=warning.kind.value if warning.kind else None,
        )
        return warning
