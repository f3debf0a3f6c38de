"""Provides plan and apply for a registry cleaning configuration."""

import datetime
import logging
from pathlib import Path

import structlog

from ..config import DysonConfig
from ..exceptions import ConfigurationError, NotificationError
from ..factory import Factory
from ..models.plan import ApplyResult, Plan
from .summary import Summary


def configure_logging(*, debug: bool = False) -> None:
    log_level = logging.DEBUG if debug else logging.INFO
    structlog.configure(
        wrapper_class=structlog.make_filtering_bound_logger(log_level)
    )


class Dyson:
    """Removes unused images from a registry.

    Parameters
    ----------
    factory
        Component factory for the configuration to run.
    """

    def __init__(self, factory: Factory) -> None:
        self._factory = factory
        self._config: DysonConfig = factory.config
        self.name = self._config.registry.display_name
        self._logger = structlog.get_logger(__name__).bind(registry=self.name)

    def plan(self, now: datetime.datetime | None = None) -> Plan:
        """Build a plan without touching the registry.

        Raises
        ------
        AuthenticationError
            Raised if the registry's credentials cannot be established.
        CatalogError
            Raised if the registry cannot be listed.
        """
        if now is None:
            now = datetime.datetime.now(tz=datetime.UTC)
        if self._config.registry.input_file is None:
            self._factory.registry_context().verify()
        client = self._factory.create_registry_client()
        catalog = client.read_catalog()
        report = self._factory.create_aggregator().aggregate(catalog)
        return self._factory.create_plan_builder(now).build(catalog, report)

    def apply(
        self, now: datetime.datetime | None = None
    ) -> tuple[Plan, ApplyResult | None]:
        """Build a plan, then delete what it marks for deletion.

        If planning was interrupted, nothing is deleted and the result is
        `None`.

        Raises
        ------
        ConfigurationError
            Raised if the registry catalog comes from a snapshot.
        """
        if self._config.registry.input_file is not None:
            raise ConfigurationError(
                "Refusing to apply a plan built from a catalog snapshot"
            )
        plan = self.plan(now)
        if plan.interrupted:
            self._logger.warning("Planning was interrupted; deleting nothing")
            return plan, None
        client = self._factory.create_registry_client()
        result = self._factory.create_executor(client).apply(plan)
        return plan, result

    def dump(self, outputfile: Path) -> int:
        """Write the registry catalog to a snapshot file.

        Returns
        -------
        int
            Number of images written.
        """
        if self._config.registry.input_file is None:
            self._factory.registry_context().verify()
        catalog = self._factory.create_registry_client().read_catalog()
        catalog.dump(outputfile)
        self._logger.info(
            "Wrote catalog snapshot",
            outputfile=str(outputfile),
            images=len(catalog),
        )
        return len(catalog)

    def report(
        self, plan: Plan, result: ApplyResult | None = None
    ) -> Summary:
        return Summary.from_plan(plan, result)

    def notify(self, summary: Summary) -> None:
        """Send the summary to the configured notifier, if any.

        Delivery failures are logged, never raised.
        """
        notifier = self._factory.create_notifier()
        if notifier is None:
            return
        try:
            notifier.notify(summary)
        except NotificationError as e:
            self._logger.warning("Notification failed", error=str(e))
