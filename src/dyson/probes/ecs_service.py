"""Usage probe for running ECS services."""

from collections.abc import Iterator

from ..models.usage import UsageKind
from ..storage.session import AwsContext
from .base import UsageProbe
from .task_definition import container_images

# DescribeServices accepts at most ten services per call.
DESCRIBE_SERVICES_LIMIT = 10


class EcsServiceProbe(UsageProbe):
    """Images used by every deployment of every ECS service.

    A service mid-rollout runs tasks from more than one task definition,
    so each deployment's definition is considered as well as the
    service's primary one.
    """

    kind = UsageKind.SERVICE

    def list_image_uris(
        self, context: AwsContext
    ) -> Iterator[tuple[str, str]]:
        client = context.client("ecs")
        cache: dict[str, list[str]] = {}
        clusters: list[str] = []
        for page in client.get_paginator("list_clusters").paginate():
            clusters.extend(page.get("clusterArns", []))
        for cluster in clusters:
            services: list[str] = []
            paginator = client.get_paginator("list_services")
            for page in paginator.paginate(cluster=cluster):
                services.extend(page.get("serviceArns", []))
            for idx in range(0, len(services), DESCRIBE_SERVICES_LIMIT):
                chunk = services[idx : idx + DESCRIBE_SERVICES_LIMIT]
                resp = client.describe_services(
                    cluster=cluster, services=chunk
                )
                for svc in resp.get("services", []):
                    name = svc.get("serviceName", "")
                    tds = {svc.get("taskDefinition")}
                    tds.update(
                        x.get("taskDefinition")
                        for x in svc.get("deployments", [])
                    )
                    for td in sorted(x for x in tds if x):
                        for uri in container_images(client, td, cache):
                            yield f"service/{name}", uri
