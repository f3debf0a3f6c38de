"""Storage client for Amazon Elastic Container Registry."""

from concurrent.futures import ThreadPoolExecutor
from typing import Any

import structlog
from botocore.exceptions import BotoCoreError, ClientError

from ..exceptions import AuthenticationError, CatalogError
from ..models.image import Image
from ..models.patterns import match_any
from .registry import BatchDeleteResponse, Catalog, RegistryClient
from .session import AwsContext

ABSENT_CODES = frozenset({"ImageNotFound"})
REPO_ABSENT_CODE = "RepositoryNotFoundException"


class EcrRegistryClient(RegistryClient):
    """Storage client for communication with ECR.

    Parameters
    ----------
    context
        Credentials for the account that owns the registry.
    excludes
        Glob patterns for repositories that are never read.
    max_workers
        Repositories described concurrently.
    """

    def __init__(
        self,
        context: AwsContext,
        excludes: list[str] | None = None,
        max_workers: int = 8,
    ) -> None:
        self._context = context
        self._excludes = list(excludes or [])
        self._max_workers = max_workers
        self.name = context.name
        self._logger = structlog.get_logger(__name__).bind(registry=self.name)

    def read_catalog(self) -> Catalog:
        try:
            client = self._context.client("ecr")
            repos = self._list_repositories(client)
            region = self._context.region
        except (AuthenticationError, BotoCoreError, ClientError) as e:
            raise CatalogError(self.name, str(e)) from e

        registry_ids = {x["registryId"] for x in repos}
        if len(registry_ids) > 1:
            raise CatalogError(
                self.name, f"repositories span registries {registry_ids}"
            )
        if registry_ids:
            registry_id = registry_ids.pop()
        else:
            try:
                registry_id = self._context.verify()
            except AuthenticationError as e:
                raise CatalogError(self.name, str(e)) from e

        names = sorted(x["repositoryName"] for x in repos)
        excluded = [x for x in names if match_any(self._excludes, x)]
        included = [x for x in names if x not in excluded]
        self._logger.debug(
            "Listed repositories",
            included=len(included),
            excluded=len(excluded),
        )

        with ThreadPoolExecutor(max_workers=self._max_workers) as pool:
            futures = {
                name: pool.submit(self._describe_images, client, name)
                for name in included
            }
            repositories: dict[str, list[Image]] = {}
            for name, future in futures.items():
                try:
                    repositories[name] = future.result()
                except (BotoCoreError, ClientError) as e:
                    raise CatalogError(
                        self.name, f"cannot describe images in {name}: {e}"
                    ) from e

        catalog = Catalog(
            registry_id=registry_id,
            region=region,
            repositories=repositories,
            excluded_repositories=excluded,
        )
        self._logger.info(
            "Read registry catalog",
            repositories=len(repositories),
            images=len(catalog),
        )
        return catalog

    def _list_repositories(self, client: Any) -> list[dict[str, Any]]:
        results: list[dict[str, Any]] = []
        paginator = client.get_paginator("describe_repositories")
        for page in paginator.paginate():
            results.extend(page.get("repositories", []))
        return results

    def _describe_images(self, client: Any, repository: str) -> list[Image]:
        images: list[Image] = []
        paginator = client.get_paginator("describe_images")
        for page in paginator.paginate(repositoryName=repository):
            for detail in page.get("imageDetails", []):
                pushed_at = detail.get("imagePushedAt")
                if pushed_at is None:
                    self._logger.warning(
                        "Image has no push date; skipping",
                        repository=repository,
                        digest=detail.get("imageDigest"),
                    )
                    continue
                images.append(
                    Image(
                        repository=repository,
                        digest=detail["imageDigest"],
                        pushed_at=pushed_at,
                        tags=frozenset(detail.get("imageTags", [])),
                    )
                )
        self._logger.debug(
            "Described images", repository=repository, count=len(images)
        )
        return images

    def delete_batch(
        self, repository: str, digests: list[str]
    ) -> BatchDeleteResponse:
        client = self._context.client("ecr")
        try:
            resp = client.batch_delete_image(
                repositoryName=repository,
                imageIds=[{"imageDigest": x} for x in digests],
            )
        except ClientError as e:
            if e.response.get("Error", {}).get("Code") == REPO_ABSENT_CODE:
                # The repository is gone, and its images with it.
                return BatchDeleteResponse(absent=frozenset(digests))
            raise
        deleted = {
            x["imageDigest"]
            for x in resp.get("imageIds", [])
            if x.get("imageDigest")
        }
        absent: set[str] = set()
        failures: dict[str, str] = {}
        for failure in resp.get("failures", []):
            digest = failure.get("imageId", {}).get("imageDigest")
            if not digest:
                continue
            code = failure.get("failureCode", "Unknown")
            if code in ABSENT_CODES:
                absent.add(digest)
            else:
                reason = failure.get("failureReason", "no reason given")
                failures[digest] = f"{code}: {reason}"
        return BatchDeleteResponse(
            deleted=frozenset(deleted),
            absent=frozenset(absent),
            failures=failures,
        )
