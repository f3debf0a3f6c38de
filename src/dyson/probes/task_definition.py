"""Usage probe for recent ECS task definition revisions."""

from collections.abc import Iterator
from typing import Any

from ..models.usage import UsageKind
from ..storage.session import AwsContext
from .base import UsageProbe


def family_of(arn: str) -> str:
    """Family name from a task definition ARN or ``family:revision``."""
    name = arn.rsplit("/", 1)[-1]
    return name.rsplit(":", 1)[0]


def container_images(
    client: Any, task_definition: str, cache: dict[str, list[str]]
) -> list[str]:
    """Image URIs of every container in a task definition."""
    if task_definition not in cache:
        resp = client.describe_task_definition(taskDefinition=task_definition)
        containers = resp.get("taskDefinition", {}).get(
            "containerDefinitions", []
        )
        cache[task_definition] = [
            x["image"] for x in containers if x.get("image")
        ]
    return cache[task_definition]


class TaskDefinitionProbe(UsageProbe):
    """Images named by the newest revisions of each active family.

    Only the ``revisions`` most recent active revisions of a family are
    considered live; older ones are assumed retired even if they have not
    been deregistered.
    """

    kind = UsageKind.DEFINITION_REVISION

    def __init__(self, revisions: int = 2) -> None:
        if revisions < 1:
            raise ValueError(f"revisions must be >= 1, not {revisions}")
        self._revisions = revisions

    def list_image_uris(
        self, context: AwsContext
    ) -> Iterator[tuple[str, str]]:
        client = context.client("ecs")
        cache: dict[str, list[str]] = {}
        paginator = client.get_paginator("list_task_definition_families")
        for page in paginator.paginate(status="ACTIVE"):
            for family in page.get("families", []):
                for arn in self._latest_revisions(client, family):
                    for uri in container_images(client, arn, cache):
                        yield f"task-definition/{family_of(arn)}", uri

    def _latest_revisions(self, client: Any, family: str) -> list[str]:
        # familyPrefix is a prefix match: "web" also lists "web-worker".
        found: list[str] = []
        paginator = client.get_paginator("list_task_definitions")
        for page in paginator.paginate(
            familyPrefix=family, status="ACTIVE", sort="DESC"
        ):
            for arn in page.get("taskDefinitionArns", []):
                if family_of(arn) != family:
                    continue
                found.append(arn)
                if len(found) >= self._revisions:
                    return found
        return found
