"""Model for necessary information about container images."""

import datetime
import re
from dataclasses import dataclass, field
from functools import total_ordering
from typing import Self, TypeAlias, cast

DATEFMT = "%Y-%m-%dT%H:%M:%S.%f%z"
DEFAULT_TAG = "latest"

JSONImage: TypeAlias = dict[str, str | list[str]]

_IMAGE_URI = re.compile(
    r"^(?P<registry_id>\d{12})\.dkr\.ecr\.(?P<region>[a-z0-9-]+)"
    r"\.amazonaws\.com(?:\.cn)?/(?P<repository>[^:@]+)"
    r"(?::(?P<tag>[^:@/]+))?(?:@(?P<digest>sha256:[a-f0-9]{64}))?$"
)


@total_ordering
@dataclass(frozen=True, eq=False)
class Image:
    """Class representing the things about an ECR image we care about.

    An image is identified by its repository and digest.  Tags move
    between images, so two Images with the same repository and digest
    are the same image no matter what tags they carry.
    """

    repository: str
    digest: str
    pushed_at: datetime.datetime
    tags: frozenset[str] = field(default_factory=frozenset)

    def __str__(self) -> str:
        """Humans care about tags, and digests not so much."""
        colon_pos = self.digest.find(":")
        dig = self.digest
        if colon_pos > -1:
            dig = self.digest[1 + colon_pos :]
        if len(dig) > 12:
            dig = dig[:12]
        tags = ",".join(sorted(self.tags)) if self.tags else "<untagged>"
        return f"{self.repository}@{dig} [{tags}]"

    def __hash__(self) -> int:
        return hash(self.key)

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, Image):
            return NotImplemented
        return self.key == other.key

    def __lt__(self, other: object) -> bool:
        if not isinstance(other, Image):
            return NotImplemented
        return self.sort_key < other.sort_key

    @property
    def key(self) -> tuple[str, str]:
        """Identity of the image: repository and digest."""
        return (self.repository, self.digest)

    @property
    def sort_key(self) -> tuple[str, datetime.datetime, str]:
        """Plan ordering: repository, then oldest first, then digest."""
        return (self.repository, self.pushed_at, self.digest)

    def to_dict(self) -> JSONImage:
        # Sets and datetimes aren't JSON-serializable, so we make them a
        # sorted list and a string.
        return {
            "repository": self.repository,
            "digest": self.digest,
            "pushed_at": self.pushed_at.astimezone(datetime.UTC).strftime(
                DATEFMT
            ),
            "tags": sorted(self.tags),
        }

    @classmethod
    def from_dict(cls, inp: JSONImage) -> Self:
        """Rebuild an Image from the output of `to_dict`."""
        for name in ("repository", "digest", "pushed_at"):
            if not isinstance(inp.get(name), str):
                raise TypeError(f"'{name}' field of {inp} must be a string")
        tags = inp.get("tags") or []
        if isinstance(tags, str):
            raise TypeError(f"'tags' field of {inp} must be a list")
        pushed_at = datetime.datetime.strptime(
            cast("str", inp["pushed_at"]), DATEFMT
        ).astimezone(datetime.UTC)
        return cls(
            repository=cast("str", inp["repository"]),
            digest=cast("str", inp["digest"]),
            pushed_at=pushed_at,
            tags=frozenset(tags),
        )


@dataclass(frozen=True)
class ImageReference:
    """A reference to an image in an ECR registry, as a workload names it.

    A reference may name an image by tag, by digest, or both.  When
    both are present the digest is authoritative.
    """

    registry_id: str
    region: str
    repository: str
    tag: str | None = None
    digest: str | None = None

    def __str__(self) -> str:
        return self.uri

    @property
    def uri(self) -> str:
        uri = (
            f"{self.registry_id}.dkr.ecr.{self.region}.amazonaws.com"
            f"/{self.repository}"
        )
        if self.tag:
            uri += f":{self.tag}"
        if self.digest:
            uri += f"@{self.digest}"
        return uri

    @classmethod
    def parse(cls, uri: str) -> Self | None:
        """Parse an image URI.

        Parameters
        ----------
        uri
            Image URI as it appears in a function or container definition.

        Returns
        -------
        ImageReference or None
            The parsed reference, or `None` if the URI does not name an
            image in a private ECR registry.
        """
        match = _IMAGE_URI.match(uri.strip())
        if match is None:
            return None
        tag = match.group("tag")
        digest = match.group("digest")
        if tag is None and digest is None:
            tag = DEFAULT_TAG
        return cls(
            registry_id=match.group("registry_id"),
            region=match.group("region"),
            repository=match.group("repository"),
            tag=tag,
            digest=digest,
        )
