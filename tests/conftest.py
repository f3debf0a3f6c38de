"""Test fixtures for the ECR image cleaner."""

from collections.abc import Iterator
from pathlib import Path
from typing import Any

import pytest
from support.aws import FakeEcr, FakeEcs, FakeLambda, FakeSession, digest
from support.clock import days_ago

from dyson.config import (
    DysonConfig,
    ExecutionOptions,
    RegistryConfig,
    RepositoryFilterConfig,
    ScanConfig,
)
from dyson.factory import Factory
from dyson.services.dyson import configure_logging


@pytest.fixture(autouse=True, scope="session")
def _logging() -> None:
    configure_logging(debug=True)


@pytest.fixture
def support_dir() -> Path:
    return Path(__file__).parent / "support"


@pytest.fixture
def ecr() -> FakeEcr:
    """Registry with three repositories of assorted images."""
    fake = FakeEcr()
    fake.add_image("app/web", digest("web-old"), days_ago(100), ["v1"])
    fake.add_image("app/web", digest("web-latest"), days_ago(100), ["latest"])
    fake.add_image("app/web", digest("web-untagged"), days_ago(31))
    fake.add_image("app/web", digest("web-new"), days_ago(10), ["v3"])
    fake.add_image("app/worker", digest("worker-1"), days_ago(90), ["v1"])
    fake.add_image("app/worker", digest("worker-2"), days_ago(60), ["v2"])
    fake.add_image("exclude/foo", digest("foo-1"), days_ago(400))
    return fake


@pytest.fixture
def lambda_client() -> FakeLambda:
    return FakeLambda()


@pytest.fixture
def ecs() -> FakeEcs:
    return FakeEcs()


@pytest.fixture
def registry_session(ecr: FakeEcr) -> FakeSession:
    return FakeSession({"ecr": ecr})


@pytest.fixture
def target_session(lambda_client: FakeLambda, ecs: FakeEcs) -> FakeSession:
    return FakeSession({"lambda": lambda_client, "ecs": ecs})


@pytest.fixture
def sessions(
    registry_session: FakeSession, target_session: FakeSession
) -> dict[str, FakeSession]:
    """Fake sessions by profile name."""
    return {"registry": registry_session, "workloads": target_session}


@pytest.fixture
def dyson_config() -> DysonConfig:
    return DysonConfig(
        registry=RegistryConfig(
            name="test-registry",
            profile_name="registry",
            excludes=["exclude/*"],
            filters=[
                RepositoryFilterConfig(
                    pattern="*", days_after=30, ignore_tag_patterns=["latest"]
                )
            ],
        ),
        scans=[ScanConfig(name="workloads", profile_name="workloads")],
        options=ExecutionOptions(
            max_workers=4, probe_timeout=10, backoff_base=0, batch_size=2
        ),
    )


@pytest.fixture
def factory(
    dyson_config: DysonConfig, sessions: dict[str, FakeSession]
) -> Iterator[Factory]:
    def session_factory(profile_name: str, region: str | None) -> Any:
        return sessions[profile_name]

    with Factory.standalone(dyson_config, session_factory) as fac:
        yield fac
