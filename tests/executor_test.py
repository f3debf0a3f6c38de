"""Test applying deletion plans."""

import dataclasses

import pytest
from botocore.exceptions import EndpointConnectionError
from support.aws import FakeEcr, FakeSession, client_error, digest
from support.clock import NOW, days_ago

from dyson.config import RepositoryFilterConfig
from dyson.models.plan import Outcome, Plan, Reason
from dyson.models.usage import UsageReport, UsageSet
from dyson.services.executor import (
    DeletionExecutor,
    backoff_delay,
    is_transient,
)
from dyson.services.filters import FilterEngine
from dyson.services.planner import PlanBuilder
from dyson.storage.ecr import EcrRegistryClient
from dyson.storage.registry import (
    BatchDeleteResponse,
    Catalog,
    RegistryClient,
)
from dyson.storage.session import AwsContext


@pytest.fixture
def registry() -> FakeEcr:
    fake = FakeEcr()
    for idx in range(5):
        fake.add_image("web", digest(f"web{idx}"), days_ago(100 + idx))
    fake.add_image("api", digest("api-old"), days_ago(60), ["v1"])
    fake.add_image("api", digest("api-new"), days_ago(1), ["v2"])
    return fake


def _client(registry: FakeEcr) -> EcrRegistryClient:
    context = AwsContext(
        "registry", "registry", session=FakeSession({"ecr": registry})
    )
    return EcrRegistryClient(context)


def _plan(client: RegistryClient) -> Plan:
    engine = FilterEngine(
        [], [RepositoryFilterConfig(pattern="*", days_after=30)], NOW
    )
    builder = PlanBuilder(client.name, engine)
    return builder.build(client.read_catalog(), UsageReport(usage=UsageSet()))


def _executor(
    client: RegistryClient, batch_size: int = 2, max_attempts: int = 3
) -> DeletionExecutor:
    return DeletionExecutor(
        client,
        batch_size=batch_size,
        max_attempts=max_attempts,
        backoff_base=0,
        backoff_max=0,
    )


def test_apply_batches(registry: FakeEcr) -> None:
    client = _client(registry)
    plan = _plan(client)
    result = _executor(client).apply(plan)

    assert [len(d) for _, d in registry.delete_calls] == [1, 2, 2, 1]
    seen = [x for _, digests in registry.delete_calls for x in digests]
    assert len(seen) == len(set(seen)) == 6
    assert len(result.by_outcome(Outcome.DELETED)) == 6
    assert [x.entry.image.key for x in result.results] == [
        x.image.key for x in plan.entries
    ]
    skipped = result.by_outcome(Outcome.SKIPPED)
    assert [x.entry.image.digest for x in skipped] == [digest("api-new")]
    assert skipped[0].reason == Reason.TOO_RECENT.value
    assert not result.interrupted
    assert [x["imageDigest"] for x in registry.images["api"]] == [
        digest("api-new")
    ]
    assert registry.images["web"] == []


def test_throttling_is_retried(registry: FakeEcr) -> None:
    client = _client(registry)
    plan = _plan(client)
    registry.delete_errors = [
        client_error("ThrottlingException", "BatchDeleteImage"),
        client_error("ThrottlingException", "BatchDeleteImage"),
    ]
    result = _executor(client).apply(plan)
    assert len(registry.delete_calls) == 6
    assert result.failures == []
    assert len(result.by_outcome(Outcome.DELETED)) == 6


def test_retries_exhausted_then_continue(registry: FakeEcr) -> None:
    client = _client(registry)
    plan = _plan(client)
    registry.delete_errors = [
        client_error("ThrottlingException", "BatchDeleteImage")
    ] * 3
    result = _executor(client, max_attempts=3).apply(plan)
    failures = result.failures
    assert len(failures) == 1
    assert failures[0].entry.image.repository == "api"
    assert failures[0].reason is not None
    assert failures[0].reason.startswith("retries exhausted")
    assert len(result.by_outcome(Outcome.DELETED)) == 5


def test_permanent_error_not_retried(registry: FakeEcr) -> None:
    client = _client(registry)
    plan = _plan(client)
    registry.delete_errors = [
        client_error("AccessDeniedException", "BatchDeleteImage")
    ]
    result = _executor(client).apply(plan)
    assert len(registry.delete_calls) == 4
    assert len(result.failures) == 1
    assert "AccessDeniedException" in (result.failures[0].reason or "")


def test_already_absent(registry: FakeEcr) -> None:
    client = _client(registry)
    plan = _plan(client)
    # Someone else deleted these between planning and applying.
    registry.images["web"] = registry.images["web"][1:]
    del registry.images["api"]
    result = _executor(client).apply(plan)
    assert result.failures == []
    absent = [x for x in result.results if x.already_absent]
    assert len(absent) == 2
    assert {x.outcome for x in absent} == {Outcome.DELETED}


def test_refuses_tampered_plan(registry: FakeEcr) -> None:
    client = _client(registry)
    plan = _plan(client)
    keep = [x for x in plan.entries if x.reason == Reason.TOO_RECENT]
    tampered = dataclasses.replace(
        plan, entries=tuple(x for x in plan.entries if x not in keep)
    )
    with pytest.raises(ValueError, match="fingerprint"):
        _executor(client).apply(tampered)
    assert registry.delete_calls == []


def test_refuses_other_registry(registry: FakeEcr) -> None:
    client = _client(registry)
    plan = _plan(client)
    other = AwsContext(
        "other", "other", session=FakeSession({"ecr": FakeEcr()})
    )
    with pytest.raises(ValueError, match="registry"):
        _executor(EcrRegistryClient(other)).apply(plan)


def test_cancel_before_apply(registry: FakeEcr) -> None:
    client = _client(registry)
    plan = _plan(client)
    executor = _executor(client)
    executor.cancel()
    result = executor.apply(plan)
    assert registry.delete_calls == []
    assert result.interrupted
    assert {x.reason for x in result.failures} == {"cancelled"}
    assert len(result.failures) == 6


class _ScriptedClient(RegistryClient):
    """Registry that reports scripted per-image failures."""

    def __init__(
        self, inner: RegistryClient, response: BatchDeleteResponse
    ) -> None:
        self.name = inner.name
        self._inner = inner
        self._response = response

    def read_catalog(self) -> Catalog:
        return self._inner.read_catalog()

    def delete_batch(
        self, repository: str, digests: list[str]
    ) -> BatchDeleteResponse:
        return self._response


def test_per_image_failures(registry: FakeEcr) -> None:
    response = BatchDeleteResponse(
        deleted=frozenset({digest("web0")}),
        failures={digest("web1"): "ImageReferencedByManifestList: in use"},
    )
    client = _ScriptedClient(_client(registry), response)
    plan = _plan(client)
    result = _executor(client, batch_size=100).apply(plan)
    outcomes = {x.entry.image.digest: x for x in result.results}
    assert outcomes[digest("web0")].outcome == Outcome.DELETED
    assert outcomes[digest("web1")].reason == (
        "ImageReferencedByManifestList: in use"
    )
    assert outcomes[digest("web2")].reason == "not acknowledged by registry"


def test_is_transient() -> None:
    assert is_transient(client_error("ThrottlingException"))
    assert is_transient(client_error("ServiceUnavailableException"))
    assert is_transient(EndpointConnectionError(endpoint_url="https://x"))
    assert not is_transient(client_error("AccessDeniedException"))
    assert not is_transient(ValueError("nope"))


def test_backoff_delay() -> None:
    assert [backoff_delay(n, 1.0, 30.0) for n in range(1, 8)] == [
        1.0,
        2.0,
        4.0,
        8.0,
        16.0,
        30.0,
        30.0,
    ]


class _InterruptingClient(RegistryClient):
    """Registry that is interrupted after a number of deletion batches."""

    def __init__(self, inner: RegistryClient, after: int) -> None:
        self.name = inner.name
        self.calls = 0
        self._inner = inner
        self._after = after

    def read_catalog(self) -> Catalog:
        return self._inner.read_catalog()

    def delete_batch(
        self, repository: str, digests: list[str]
    ) -> BatchDeleteResponse:
        self.calls += 1
        if self.calls > self._after:
            raise KeyboardInterrupt
        return self._inner.delete_batch(repository, digests)


def test_interrupt_during_batch(registry: FakeEcr) -> None:
    client = _InterruptingClient(_client(registry), after=1)
    plan = _plan(client)
    result = _executor(client).apply(plan)

    assert result.interrupted
    assert client.calls == 2
    assert registry.delete_calls == [("api", [digest("api-old")])]
    assert len(registry.images["web"]) == 5
    deleted = result.by_outcome(Outcome.DELETED)
    assert [x.entry.image.digest for x in deleted] == [digest("api-old")]
    reasons = [x.reason for x in result.failures]
    assert reasons == ["interrupted; outcome unknown"] * 2 + ["cancelled"] * 3
    assert len(result.results) == len(plan.entries)
