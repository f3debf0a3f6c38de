"""Registry client backed by a catalog snapshot file."""

from pathlib import Path

import structlog

from ..exceptions import CatalogError
from ..models.patterns import match_any
from .registry import BatchDeleteResponse, Catalog, RegistryClient


class SnapshotRegistryClient(RegistryClient):
    """Read a catalog from a file written by ``dyson dump``.

    Snapshots are for planning only: deleting against one would act on
    stale data, so `delete_batch` always refuses.
    """

    def __init__(
        self, name: str, inputfile: Path, excludes: list[str] | None = None
    ) -> None:
        self.name = name
        self._inputfile = inputfile
        self._excludes = list(excludes or [])
        self._logger = structlog.get_logger(__name__).bind(registry=name)

    def read_catalog(self) -> Catalog:
        try:
            catalog = Catalog.load(self._inputfile)
        except (OSError, ValueError, KeyError, TypeError) as e:
            raise CatalogError(
                self.name, f"cannot load snapshot {self._inputfile}: {e}"
            ) from e
        excluded = [
            x for x in catalog.repositories if match_any(self._excludes, x)
        ]
        if excluded:
            catalog = Catalog(
                registry_id=catalog.registry_id,
                region=catalog.region,
                repositories={
                    k: v
                    for k, v in catalog.repositories.items()
                    if k not in excluded
                },
                excluded_repositories=[
                    *catalog.excluded_repositories,
                    *excluded,
                ],
            )
        count = len(catalog)
        self._logger.debug(
            f"Ingested {count} image{'s' if count != 1 else ''}",
            inputfile=str(self._inputfile),
        )
        return catalog

    def delete_batch(
        self, repository: str, digests: list[str]
    ) -> BatchDeleteResponse:
        raise NotImplementedError(
            f"Cannot delete from snapshot {self._inputfile}"
        )
