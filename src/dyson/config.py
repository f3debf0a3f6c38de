"""Configuration for the ECR image cleaner."""

from __future__ import annotations

from pathlib import Path
from typing import Annotated, Any, Self

import yaml
from pydantic import (
    ConfigDict,
    Field,
    SecretStr,
    ValidationError,
    field_validator,
)
from safir.pydantic import CamelCaseModel

from .exceptions import ConfigurationError

DEFAULT_CONFIG_PATH = Path("dyson.yaml")


def _check_patterns(patterns: list[str]) -> list[str]:
    for pattern in patterns:
        if not pattern:
            raise ValueError("glob patterns must not be empty")
    return patterns


class BaseConfig(CamelCaseModel):
    """Common settings for configuration models."""

    model_config = ConfigDict(extra="forbid")


class RepositoryFilterConfig(BaseConfig):
    """A retention rule for the repositories matching a glob pattern.

    Filters are evaluated in declared order and only the first filter
    whose pattern matches a repository applies to it.
    """

    pattern: Annotated[
        str,
        Field(
            title="Pattern",
            description="Glob pattern for repository names.",
            examples=["*", "backend/*"],
            min_length=1,
        ),
    ]

    days_after: Annotated[
        int | None,
        Field(
            title="Days after",
            description=(
                "Images pushed fewer than this many days ago are kept. "
                "If unset, images of any age may be deleted."
            ),
            examples=[30],
            ge=0,
        ),
    ] = None

    ignore_tag_patterns: Annotated[
        list[str],
        Field(
            title="Ignore tag patterns",
            description=(
                "Glob patterns for tags; an image with any matching tag "
                "is never deleted by this filter."
            ),
            examples=[["latest", "release-*"]],
        ),
    ] = []

    _validate_tags = field_validator("ignore_tag_patterns")(_check_patterns)


class RegistryConfig(BaseConfig):
    """The registry to clean."""

    name: Annotated[
        str | None,
        Field(
            title="Name",
            description="Display name of the registry.",
            examples=["my-registry"],
        ),
    ] = None

    profile_name: Annotated[
        str,
        Field(
            title="Profile name",
            description="AWS profile used to read and clean the registry.",
            examples=["production"],
        ),
    ]

    region: Annotated[
        str | None,
        Field(
            title="Region",
            description="AWS region; defaults to the profile's region.",
            examples=["ap-northeast-1"],
        ),
    ] = None

    excludes: Annotated[
        list[str],
        Field(
            title="Excludes",
            description=(
                "Glob patterns for repositories that are never cleaned."
            ),
            examples=[["exclude/*"]],
        ),
    ] = []

    filters: Annotated[
        list[RepositoryFilterConfig],
        Field(
            title="Filters",
            description=(
                "Retention rules, first match wins. Repositories matching "
                "no filter are never cleaned."
            ),
        ),
    ] = []

    input_file: Annotated[
        Path | None,
        Field(
            title="Input file",
            description=(
                "If supplied, read the registry catalog from this snapshot "
                "rather than from ECR. Only valid for planning."
            ),
        ),
    ] = None

    _validate_excludes = field_validator("excludes")(_check_patterns)

    @property
    def display_name(self) -> str:
        return self.name or self.profile_name


class ScanConfig(BaseConfig):
    """An account whose workloads may use images from the registry."""

    name: Annotated[
        str | None,
        Field(
            title="Name",
            description="Display name of the scan target.",
            examples=["staging"],
        ),
    ] = None

    profile_name: Annotated[
        str,
        Field(
            title="Profile name",
            description="AWS profile used to scan the account.",
            examples=["staging"],
        ),
    ]

    region: Annotated[
        str | None,
        Field(
            title="Region",
            description="AWS region; defaults to the profile's region.",
        ),
    ] = None

    repositories: Annotated[
        list[str],
        Field(
            title="Repositories",
            description=(
                "Glob patterns for the repositories this target may use. "
                "If the target cannot be scanned, images in these "
                "repositories are kept."
            ),
            examples=[["*"], ["frontend/*"]],
            min_length=1,
        ),
    ] = ["*"]

    _validate_repositories = field_validator("repositories")(_check_patterns)

    @property
    def display_name(self) -> str:
        return self.name or self.profile_name


class SlackNotifierConfig(BaseConfig):
    """Slack incoming webhook settings."""

    webhook_url: Annotated[
        SecretStr,
        Field(
            title="Webhook URL",
            description="Slack incoming webhook URL.",
        ),
    ]

    username: Annotated[
        str | None,
        Field(title="Username", description="Name to post as."),
    ] = None

    channel: Annotated[
        str | None,
        Field(title="Channel", description="Channel to post to."),
    ] = None

    icon_url: Annotated[
        str | None,
        Field(title="Icon URL", description="Avatar image for the post."),
    ] = None


class NotificationConfig(BaseConfig):
    """Where to send run summaries."""

    slack: Annotated[
        SlackNotifierConfig | None,
        Field(title="Slack", description="Slack webhook notification."),
    ] = None


class ExecutionOptions(BaseConfig):
    """Tuning for concurrency, timeouts, and deletion batching."""

    max_workers: Annotated[
        int,
        Field(
            title="Max workers",
            description="Concurrent AWS API tasks while scanning.",
            ge=1,
            le=64,
        ),
    ] = 8

    probe_timeout: Annotated[
        float,
        Field(
            title="Probe timeout",
            description=(
                "Seconds to wait for scan targets to report before their "
                "usage is treated as unknown."
            ),
            gt=0,
        ),
    ] = 300.0

    batch_size: Annotated[
        int,
        Field(
            title="Batch size",
            description="Images per deletion request (ECR allows 100).",
            ge=1,
            le=100,
        ),
    ] = 100

    max_attempts: Annotated[
        int,
        Field(
            title="Max attempts",
            description="Attempts per deletion batch on throttling.",
            ge=1,
        ),
    ] = 5

    backoff_base: Annotated[
        float,
        Field(
            title="Backoff base",
            description="Seconds to wait before the first retry.",
            ge=0,
        ),
    ] = 1.0

    backoff_max: Annotated[
        float,
        Field(
            title="Backoff max",
            description="Longest wait between retries, in seconds.",
            ge=0,
        ),
    ] = 30.0

    definition_revisions: Annotated[
        int,
        Field(
            title="Definition revisions",
            description=(
                "Most recent task definition revisions per family that "
                "count as in use."
            ),
            ge=1,
        ),
    ] = 2


class DysonConfig(BaseConfig):
    """Configuration for one cleaning run."""

    registry: Annotated[
        RegistryConfig,
        Field(title="Registry", description="Registry to clean."),
    ]

    scans: Annotated[
        list[ScanConfig],
        Field(
            title="Scans",
            description="Accounts to scan for images in use.",
        ),
    ] = []

    notification: Annotated[
        NotificationConfig | None,
        Field(title="Notification", description="Summary delivery."),
    ] = None

    options: Annotated[
        ExecutionOptions,
        Field(title="Options", description="Execution tuning."),
    ] = ExecutionOptions()

    @classmethod
    def from_file(cls, path: Path) -> Self:
        """Load and validate a YAML configuration file.

        Raises
        ------
        ConfigurationError
            Raised if the file cannot be read, is not YAML, or does not
            describe a valid configuration.
        """
        try:
            data = yaml.safe_load(path.read_text())
        except OSError as e:
            raise ConfigurationError(f"cannot read {path}: {e}") from e
        except yaml.YAMLError as e:
            raise ConfigurationError(f"{path} is not valid YAML: {e}") from e
        if not isinstance(data, dict):
            raise ConfigurationError(f"{path} does not contain a mapping")
        try:
            return cls.model_validate(data)
        except ValidationError as e:
            raise ConfigurationError(f"{path}: {e}") from e

    @classmethod
    def example(cls) -> Self:
        """Configuration written by ``dyson init``."""
        return cls(
            registry=RegistryConfig(
                name="my-registry",
                profile_name="profile1",
                excludes=["exclude/*"],
                filters=[
                    RepositoryFilterConfig(
                        pattern="*",
                        days_after=30,
                        ignore_tag_patterns=["latest"],
                    )
                ],
            ),
            scans=[ScanConfig(name="scan-target", profile_name="profile2")],
            notification=NotificationConfig(
                slack=SlackNotifierConfig(
                    webhook_url=SecretStr(
                        "https://hooks.slack.com/services/xxx/yyy/zzz"
                    ),
                    username="dyson-bot",
                    channel="random",
                )
            ),
        )

    def to_yaml(self) -> str:
        data: dict[str, Any] = self.model_dump(
            mode="json", exclude_none=True, by_alias=False
        )
        if self.notification and self.notification.slack:
            data["notification"]["slack"]["webhook_url"] = (
                self.notification.slack.webhook_url.get_secret_value()
            )
        return yaml.safe_dump(data, sort_keys=False)
