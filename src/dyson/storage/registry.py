"""Abstract superclass for registry clients, and the catalog they read."""

import json
from abc import abstractmethod
from collections.abc import Iterator
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Self

from ..models.image import Image, ImageReference


@dataclass(frozen=True)
class BatchDeleteResponse:
    """What the registry said about one deletion request.

    Parameters
    ----------
    deleted
        Digests the registry reports as deleted.
    absent
        Digests the registry reports as not found; these were already
        gone, which counts as success.
    failures
        Digests the registry refused to delete, mapped to its reason.
    """

    deleted: frozenset[str] = field(default_factory=frozenset)
    absent: frozenset[str] = field(default_factory=frozenset)
    failures: dict[str, str] = field(default_factory=dict)


@dataclass
class Catalog:
    """Every image in a registry, as of the time it was read.

    Images are held per repository, sorted oldest first.  The tag index
    maps (repository, tag) to the digest currently carrying that tag.
    """

    registry_id: str
    region: str
    repositories: dict[str, list[Image]] = field(default_factory=dict)
    excluded_repositories: list[str] = field(default_factory=list)

    def __post_init__(self) -> None:
        self._tags: dict[tuple[str, str], str] = {}
        self._reindex()

    def _reindex(self) -> None:
        # Sort afterward: repositories may be read concurrently.
        self.repositories = {
            name: sorted(self.repositories[name])
            for name in sorted(self.repositories)
        }
        self.excluded_repositories = sorted(self.excluded_repositories)
        self._tags = {}
        for name, images in self.repositories.items():
            for img in images:
                for tag in img.tags:
                    self._tags[(name, tag)] = img.digest

    def __iter__(self) -> Iterator[Image]:
        for images in self.repositories.values():
            yield from images

    def __len__(self) -> int:
        return sum(len(x) for x in self.repositories.values())

    def owns(self, reference: ImageReference) -> bool:
        """Whether ``reference`` points into this registry."""
        return (
            reference.registry_id == self.registry_id
            and reference.region == self.region
        )

    def resolve_tag(self, repository: str, tag: str) -> str | None:
        """Return the digest currently tagged ``tag``, if there is one."""
        return self._tags.get((repository, tag))

    def to_dict(self) -> dict[str, Any]:
        return {
            "metadata": {
                "registry_id": self.registry_id,
                "region": self.region,
                "excluded_repositories": self.excluded_repositories,
            },
            "data": {
                name: [x.to_dict() for x in images]
                for name, images in self.repositories.items()
            },
        }

    def dump(self, outputfile: Path) -> None:
        """Write the catalog as JSON."""
        outputfile.write_text(json.dumps(self.to_dict(), indent=2))

    @classmethod
    def load(cls, inputfile: Path) -> Self:
        """Read a catalog written by `dump`."""
        inp = json.loads(inputfile.read_text())
        meta = inp["metadata"]
        return cls(
            registry_id=str(meta["registry_id"]),
            region=str(meta["region"]),
            repositories={
                name: [Image.from_dict(x) for x in images]
                for name, images in inp["data"].items()
            },
            excluded_repositories=list(meta.get("excluded_repositories", [])),
        )


class RegistryClient:
    """Collection of methods we expect any registry client to provide.

    These are synchronous.  You can't do anything until the catalog has
    been read, and deletion batches are issued one at a time so they never
    overlap; the registry rate-limits deletions in any event.
    """

    name: str

    @abstractmethod
    def read_catalog(self) -> Catalog:
        """Read every image in every non-excluded repository.

        Raises
        ------
        CatalogError
            Raised if the registry cannot be listed.
        """
        ...

    @abstractmethod
    def delete_batch(
        self, repository: str, digests: list[str]
    ) -> BatchDeleteResponse:
        """Delete up to one batch of images from a repository.

        Transport and throttling errors propagate as raised by the
        underlying client; the deletion executor decides what to retry.
        """
        ...
