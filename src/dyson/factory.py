"""Component factory."""

from __future__ import annotations

import datetime
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from typing import Any, Self, TypeAlias

import httpx
import structlog
from structlog.stdlib import BoundLogger

from .config import DysonConfig, RegistryConfig, ScanConfig
from .probes.base import UsageProbe
from .probes.ecs_service import EcsServiceProbe
from .probes.lambda_ import LambdaProbe
from .probes.task_definition import TaskDefinitionProbe
from .services.aggregator import ScanTarget, UsageAggregator
from .services.executor import DeletionExecutor
from .services.filters import FilterEngine
from .services.notifier import Notifier, SlackNotifier
from .services.planner import PlanBuilder
from .storage.ecr import EcrRegistryClient
from .storage.registry import RegistryClient
from .storage.session import AwsContext
from .storage.snapshot import SnapshotRegistryClient

SessionFactory: TypeAlias = Callable[[str, str | None], Any]


class Factory:
    """Build cleaner components from a configuration.

    Parameters
    ----------
    config
        Cleaner configuration.
    logger
        Logger to use for messages.
    session_factory
        Called with a profile name and region to build a boto3-style
        session.  If not given, each context builds a real
        `boto3.Session`.  Intended for the test suite.
    http_client
        HTTP client for notifications; one is created if needed.
    """

    @classmethod
    @contextmanager
    def standalone(
        cls,
        config: DysonConfig,
        session_factory: SessionFactory | None = None,
        http_client: httpx.Client | None = None,
    ) -> Iterator[Self]:
        """Context manager for cleaner components.

        Yields
        ------
        Factory
            Newly-created factory, closed on exit.
        """
        logger = structlog.get_logger(__name__)
        factory = cls(
            config,
            logger,
            session_factory=session_factory,
            http_client=http_client,
        )
        try:
            yield factory
        finally:
            factory.close()

    def __init__(
        self,
        config: DysonConfig,
        logger: BoundLogger,
        *,
        session_factory: SessionFactory | None = None,
        http_client: httpx.Client | None = None,
    ) -> None:
        self._config = config
        self._logger = logger
        self._session_factory = session_factory
        self._registry_context: AwsContext | None = None
        self._http_client = http_client

    @property
    def config(self) -> DysonConfig:
        return self._config

    def close(self) -> None:
        if self._http_client is not None:
            self._http_client.close()
            self._http_client = None

    def _create_context(
        self, name: str, profile_name: str, region: str | None
    ) -> AwsContext:
        session = None
        if self._session_factory is not None:
            session = self._session_factory(profile_name, region)
        return AwsContext(
            name=name,
            profile_name=profile_name,
            region=region,
            session=session,
        )

    def registry_context(self) -> AwsContext:
        if self._registry_context is None:
            reg: RegistryConfig = self._config.registry
            self._registry_context = self._create_context(
                reg.display_name, reg.profile_name, reg.region
            )
        return self._registry_context

    def create_registry_client(self) -> RegistryClient:
        reg = self._config.registry
        if reg.input_file is not None:
            return SnapshotRegistryClient(
                reg.display_name, reg.input_file, excludes=reg.excludes
            )
        return EcrRegistryClient(
            self.registry_context(),
            excludes=reg.excludes,
            max_workers=self._config.options.max_workers,
        )

    def create_probes(self) -> tuple[UsageProbe, ...]:
        return (
            LambdaProbe(),
            EcsServiceProbe(),
            TaskDefinitionProbe(
                revisions=self._config.options.definition_revisions
            ),
        )

    def create_scan_target(self, scan: ScanConfig) -> ScanTarget:
        return ScanTarget(
            context=self._create_context(
                scan.display_name, scan.profile_name, scan.region
            ),
            probes=self.create_probes(),
            scope=tuple(scan.repositories),
        )

    def create_aggregator(self) -> UsageAggregator:
        return UsageAggregator(
            [self.create_scan_target(x) for x in self._config.scans],
            max_workers=self._config.options.max_workers,
            timeout=self._config.options.probe_timeout,
        )

    def create_plan_builder(self, now: datetime.datetime) -> PlanBuilder:
        reg = self._config.registry
        engine = FilterEngine(reg.excludes, reg.filters, now)
        return PlanBuilder(reg.display_name, engine)

    def create_executor(self, client: RegistryClient) -> DeletionExecutor:
        opts = self._config.options
        return DeletionExecutor(
            client,
            batch_size=opts.batch_size,
            max_attempts=opts.max_attempts,
            backoff_base=opts.backoff_base,
            backoff_max=opts.backoff_max,
        )

    def create_notifier(self) -> Notifier | None:
        notification = self._config.notification
        if notification is None or notification.slack is None:
            return None
        if self._http_client is None:
            self._http_client = httpx.Client(timeout=30.0)
        return SlackNotifier(
            notification.slack, http_client=self._http_client
        )
