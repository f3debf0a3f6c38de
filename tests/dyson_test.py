"""Test planning and applying against fake accounts."""

from pathlib import Path
from typing import Any

import pytest
from pydantic import SecretStr
from support.aws import FakeEcr, FakeLambda, FakeSession, digest, uri
from support.clock import NOW

from dyson.config import DysonConfig, NotificationConfig, SlackNotifierConfig
from dyson.exceptions import AuthenticationError, ConfigurationError
from dyson.factory import Factory
from dyson.models.plan import Outcome, Reason
from dyson.services import aggregator
from dyson.services.dyson import Dyson
from dyson.services.notifier import SlackNotifier
from dyson.storage.snapshot import SnapshotRegistryClient


def test_plan(factory: Factory, lambda_client: FakeLambda) -> None:
    lambda_client.add_function("worker", uri("app/worker", "v2"))
    plan = Dyson(factory).plan(NOW)
    reasons = {x.image.digest: x.reason for x in plan.entries}
    assert reasons == {
        digest("web-old"): Reason.FILTER_MATCH,
        digest("web-latest"): Reason.PROTECTED_TAG,
        digest("web-untagged"): Reason.FILTER_MATCH,
        digest("web-new"): Reason.TOO_RECENT,
        digest("worker-1"): Reason.FILTER_MATCH,
        digest("worker-2"): Reason.IN_USE,
    }
    assert plan.excluded_repositories == ("exclude/foo",)
    assert plan.warnings == ()
    assert plan.registry == "test-registry"


def test_plan_does_not_delete(factory: Factory, ecr: FakeEcr) -> None:
    Dyson(factory).plan(NOW)
    assert ecr.delete_calls == []


def test_apply(
    factory: Factory, ecr: FakeEcr, lambda_client: FakeLambda
) -> None:
    lambda_client.add_function("worker", uri("app/worker", "v2"))
    dyson = Dyson(factory)
    plan, result = dyson.apply(NOW)
    assert result is not None
    deleted = {
        x.entry.image.digest for x in result.by_outcome(Outcome.DELETED)
    }
    assert deleted == {
        digest("web-old"),
        digest("web-untagged"),
        digest("worker-1"),
    }
    assert len(result.by_outcome(Outcome.SKIPPED)) == 3
    remaining = {x["imageDigest"] for x in ecr.images["app/web"]}
    assert remaining == {digest("web-latest"), digest("web-new")}
    assert ecr.images["exclude/foo"] != []

    summary = dyson.report(plan, result)
    assert summary.title == "Deleted 3 image(s) from test-registry"
    assert not summary.has_problems


def test_failed_scan_keeps_everything(
    factory: Factory, ecr: FakeEcr, lambda_client: FakeLambda
) -> None:
    lambda_client.error = "AccessDeniedException"
    plan, result = Dyson(factory).apply(NOW)
    assert plan.deletions == []
    assert len(plan.warnings) == 1
    assert result is not None
    assert result.by_outcome(Outcome.DELETED) == []
    assert ecr.delete_calls == []
    assert Reason.USAGE_UNKNOWN in {x.reason for x in plan.entries}


def test_registry_auth_failure(
    factory: Factory, registry_session: FakeSession
) -> None:
    registry_session.clients["sts"].error = "ExpiredToken"
    with pytest.raises(AuthenticationError):
        Dyson(factory).plan(NOW)


def test_dump_and_plan_snapshot(
    factory: Factory,
    sessions: dict[str, FakeSession],
    tmp_path: Path,
    lambda_client: FakeLambda,
) -> None:
    path = tmp_path / "snapshot.json"
    assert Dyson(factory).dump(path) == 6

    lambda_client.add_function("worker", uri("app/worker", "v2"))
    config = factory.config.model_copy(deep=True)
    config.registry.input_file = path
    with Factory.standalone(
        config, lambda profile, _: sessions[profile]
    ) as snapshot_factory:
        client = snapshot_factory.create_registry_client()
        assert isinstance(client, SnapshotRegistryClient)
        dyson = Dyson(snapshot_factory)
        plan = dyson.plan(NOW)
        assert len(plan.deletions) == 3
        assert plan.excluded_repositories == ("exclude/foo",)
        with pytest.raises(ConfigurationError):
            dyson.apply(NOW)


def test_interrupted_plan_deletes_nothing(
    factory: Factory, ecr: FakeEcr, monkeypatch: pytest.MonkeyPatch
) -> None:
    def interrupt(*args: Any, **kwargs: Any) -> None:
        raise KeyboardInterrupt

    monkeypatch.setattr(aggregator, "wait", interrupt)
    plan, result = Dyson(factory).apply(NOW)
    assert plan.interrupted
    assert result is None
    assert ecr.delete_calls == []


def test_notifier_client_closed(
    dyson_config: DysonConfig, sessions: dict[str, FakeSession]
) -> None:
    config = dyson_config.model_copy(deep=True)
    config.notification = NotificationConfig(
        slack=SlackNotifierConfig(
            webhook_url=SecretStr("https://hooks.slack.com/services/T/B/x")
        )
    )
    with Factory.standalone(
        config, lambda profile, _: sessions[profile]
    ) as factory:
        notifier = factory.create_notifier()
        assert isinstance(notifier, SlackNotifier)
        client = notifier._http_client
        assert not client.is_closed
    assert client.is_closed


def test_plan_uses_current_time(factory: Factory) -> None:
    plan = Dyson(factory).plan()
    assert plan.created_at.tzinfo is not None
    assert plan.created_at > NOW
