"""Apply a deletion plan to the registry in batches."""

import threading

import structlog
from botocore.exceptions import (
    BotoCoreError,
    ClientError,
    ConnectionClosedError,
    ConnectTimeoutError,
    EndpointConnectionError,
    ReadTimeoutError,
)

from ..exceptions import DeletionBatchError
from ..models.plan import (
    ApplyResult,
    Decision,
    DeletionResult,
    Outcome,
    Plan,
    PlanEntry,
)
from ..storage.registry import BatchDeleteResponse, RegistryClient

TRANSIENT_CODES = frozenset(
    {
        "RequestLimitExceeded",
        "RequestThrottled",
        "ServiceUnavailable",
        "ServiceUnavailableException",
        "SlowDown",
        "Throttling",
        "ThrottlingException",
        "TooManyRequestsException",
    }
)

_TRANSIENT_ERRORS = (
    ConnectionClosedError,
    ConnectTimeoutError,
    EndpointConnectionError,
    ReadTimeoutError,
)


def is_transient(exc: BaseException) -> bool:
    """Whether an AWS error is worth retrying."""
    if isinstance(exc, ClientError):
        code = exc.response.get("Error", {}).get("Code", "")
        return code in TRANSIENT_CODES
    return isinstance(exc, _TRANSIENT_ERRORS)


def backoff_delay(attempt: int, base: float, maximum: float) -> float:
    """Seconds to wait after failed attempt number ``attempt`` (from 1)."""
    return min(maximum, base * 2 ** (attempt - 1))


class DeletionExecutor:
    """Delete the images a plan marks for deletion.

    Batches are issued one at a time, grouped by repository, so no two
    batches ever name the same image.  A batch that keeps failing is
    reported image by image and the next batch proceeds.

    Parameters
    ----------
    client
        Client for the registry the plan was built from.
    batch_size
        Maximum images per deletion request.
    max_attempts
        Attempts per batch when the registry reports throttling or the
        connection fails.
    backoff_base
        Seconds to wait after the first failed attempt; doubles after
        each further failure.
    backoff_max
        Longest wait between attempts.
    """

    def __init__(
        self,
        client: RegistryClient,
        batch_size: int = 100,
        max_attempts: int = 5,
        backoff_base: float = 1.0,
        backoff_max: float = 30.0,
    ) -> None:
        if batch_size < 1:
            raise ValueError(f"batch_size must be >= 1, got {batch_size}")
        if max_attempts < 1:
            raise ValueError(f"max_attempts must be >= 1, got {max_attempts}")
        self._client = client
        self._batch_size = batch_size
        self._max_attempts = max_attempts
        self._backoff_base = backoff_base
        self._backoff_max = backoff_max
        self._cancelled = threading.Event()
        self._logger = structlog.get_logger(__name__).bind(
            registry=client.name
        )

    def cancel(self) -> None:
        """Stop issuing batches; the one in flight completes."""
        self._cancelled.set()

    def batches(self, plan: Plan) -> list[tuple[str, list[PlanEntry]]]:
        """Split a plan's deletions into per-repository batches."""
        by_repo: dict[str, list[PlanEntry]] = {}
        for entry in plan.deletions:
            by_repo.setdefault(entry.image.repository, []).append(entry)
        retval: list[tuple[str, list[PlanEntry]]] = []
        for repo, entries in by_repo.items():
            for idx in range(0, len(entries), self._batch_size):
                retval.append((repo, entries[idx : idx + self._batch_size]))
        return retval

    def apply(self, plan: Plan) -> ApplyResult:
        """Delete every image the plan marks ``delete``, and nothing else.

        Raises
        ------
        ValueError
            Raised if the plan was not built by `PlanBuilder` (or has
            been altered since), or was built for a different registry.
        """
        if not plan.verify():
            raise ValueError("Plan fingerprint does not match its entries")
        if plan.registry != self._client.name:
            raise ValueError(
                f"Plan is for registry {plan.registry}, "
                f"not {self._client.name}"
            )

        outcomes: dict[tuple[str, str], DeletionResult] = {}
        batches = self.batches(plan)
        interrupted = False
        self._logger.info(
            "Applying plan",
            images=len(plan.deletions),
            batches=len(batches),
        )
        for num, (repo, entries) in enumerate(batches, start=1):
            if self._cancelled.is_set():
                interrupted = True
                for entry in entries:
                    outcomes[entry.image.key] = DeletionResult(
                        entry=entry, outcome=Outcome.FAILED, reason="cancelled"
                    )
                continue
            digests = [x.image.digest for x in entries]
            try:
                resp = self._delete_with_retry(repo, digests)
            except DeletionBatchError as e:
                self._logger.error(
                    "Deletion batch failed",
                    repository=repo,
                    batch=num,
                    images=len(digests),
                    attempts=e.attempts,
                    error=e.reason,
                )
                for entry in entries:
                    outcomes[entry.image.key] = DeletionResult(
                        entry=entry, outcome=Outcome.FAILED, reason=e.reason
                    )
                continue
            except KeyboardInterrupt:
                self._logger.warning(
                    "Interrupted during deletion batch",
                    repository=repo,
                    batch=num,
                )
                self.cancel()
                interrupted = True
                for entry in entries:
                    outcomes[entry.image.key] = DeletionResult(
                        entry=entry,
                        outcome=Outcome.FAILED,
                        reason="interrupted; outcome unknown",
                    )
                continue
            for entry in entries:
                outcomes[entry.image.key] = self._result_for(entry, resp)
            self._logger.info(
                "Deleted batch",
                repository=repo,
                batch=num,
                deleted=len(resp.deleted),
                absent=len(resp.absent),
                failed=len(resp.failures),
            )

        results: list[DeletionResult] = []
        for entry in plan.entries:
            if entry.decision == Decision.DELETE:
                results.append(outcomes[entry.image.key])
            else:
                results.append(
                    DeletionResult(
                        entry=entry,
                        outcome=Outcome.SKIPPED,
                        reason=entry.reason.value,
                    )
                )
        return ApplyResult(
            results=tuple(results),
            interrupted=interrupted or self._cancelled.is_set(),
        )

    def _result_for(
        self, entry: PlanEntry, resp: BatchDeleteResponse
    ) -> DeletionResult:
        digest = entry.image.digest
        if digest in resp.failures:
            return DeletionResult(
                entry=entry,
                outcome=Outcome.FAILED,
                reason=resp.failures[digest],
            )
        if digest in resp.deleted:
            return DeletionResult(entry=entry, outcome=Outcome.DELETED)
        if digest in resp.absent:
            return DeletionResult(
                entry=entry, outcome=Outcome.DELETED, already_absent=True
            )
        return DeletionResult(
            entry=entry,
            outcome=Outcome.FAILED,
            reason="not acknowledged by registry",
        )

    def _delete_with_retry(
        self, repository: str, digests: list[str]
    ) -> BatchDeleteResponse:
        attempt = 0
        while True:
            attempt += 1
            try:
                return self._client.delete_batch(repository, digests)
            except (BotoCoreError, ClientError) as e:
                if not is_transient(e):
                    raise DeletionBatchError(
                        repository, digests, attempt, str(e)
                    ) from e
                if attempt >= self._max_attempts:
                    raise DeletionBatchError(
                        repository,
                        digests,
                        attempt,
                        f"retries exhausted: {e}",
                    ) from e
                delay = backoff_delay(
                    attempt, self._backoff_base, self._backoff_max
                )
                self._logger.warning(
                    "Transient deletion error; retrying",
                    repository=repository,
                    attempt=attempt,
                    delay=delay,
                    error=str(e),
                )
                if self._cancelled.wait(delay):
                    raise DeletionBatchError(
                        repository, digests, attempt, "cancelled"
                    ) from e
