"""Deliver run summaries."""

from abc import abstractmethod
from typing import Any

import httpx
import structlog

from ..config import SlackNotifierConfig
from ..exceptions import NotificationError
from .summary import Summary

COLOR_OK = "#36a64f"
COLOR_PROBLEM = "#daa038"


class Notifier:
    """Something that can be told how a run went."""

    @abstractmethod
    def notify(self, summary: Summary) -> None:
        """Deliver the summary.

        Raises
        ------
        NotificationError
            Raised if delivery fails.
        """
        ...


class SlackNotifier(Notifier):
    """Post summaries to a Slack incoming webhook.

    The caller owns ``http_client`` and closes it.
    """

    def __init__(
        self, config: SlackNotifierConfig, http_client: httpx.Client
    ) -> None:
        self._config = config
        self._http_client = http_client
        self._logger = structlog.get_logger(__name__)

    def build_payload(self, summary: Summary) -> dict[str, Any]:
        totals = {**summary.decisions, **summary.outcomes}
        counts = "\n".join(f"{k}: {v}" for k, v in totals.items())
        fields: list[dict[str, Any]] = [
            {
                "title": summary.title,
                "value": f"```{summary.deletion_table()}```",
                "short": False,
            },
            {"title": "Counts", "value": f"```{counts}```", "short": False},
        ]
        if summary.warnings:
            fields.append(
                {
                    "title": f"Warnings ({len(summary.warnings)})",
                    "value": "\n".join(summary.warnings),
                    "short": False,
                }
            )
        if summary.failures:
            fields.append(
                {
                    "title": f"Failures ({len(summary.failures)})",
                    "value": "\n".join(summary.failures),
                    "short": False,
                }
            )
        payload: dict[str, Any] = {
            "attachments": [
                {
                    "color": (
                        COLOR_PROBLEM if summary.has_problems else COLOR_OK
                    ),
                    "fields": fields,
                }
            ]
        }
        if self._config.username:
            payload["username"] = self._config.username
        if self._config.channel:
            payload["channel"] = self._config.channel
        if self._config.icon_url:
            payload["icon_url"] = self._config.icon_url
        return payload

    def notify(self, summary: Summary) -> None:
        try:
            r = self._http_client.post(
                self._config.webhook_url.get_secret_value(),
                json=self.build_payload(summary),
            )
            r.raise_for_status()
        except httpx.HTTPStatusError as e:
            # The URL is a secret, so keep it out of the message.
            raise NotificationError(
                f"Slack webhook returned {e.response.status_code}"
            ) from e
        except httpx.HTTPError as e:
            raise NotificationError(
                f"Slack webhook request failed: {type(e).__name__}"
            ) from e
        self._logger.debug("Posted summary to Slack")
