"""Abstract superclass for usage probes."""

from abc import abstractmethod
from collections.abc import Iterator

import structlog
from botocore.exceptions import BotoCoreError, ClientError

from ..exceptions import AuthenticationError, ProbeError
from ..models.image import ImageReference
from ..models.usage import UsageKind, UsageRecord
from ..storage.session import AwsContext


class UsageProbe:
    """Find the registry images a scan target's workloads refer to.

    Subclasses yield ``(source, image_uri)`` pairs from `list_image_uris`;
    this class parses them, drops anything that is not a private ECR
    image, and turns AWS failures into `ProbeError`.  A probe never
    returns a partial answer: either every reference is found, or it
    raises.
    """

    kind: UsageKind

    @abstractmethod
    def list_image_uris(
        self, context: AwsContext
    ) -> Iterator[tuple[str, str]]: ...

    def scan(self, context: AwsContext) -> frozenset[UsageRecord]:
        """Return every image reference found in the target's account.

        Raises
        ------
        ProbeError
            Raised if any call to AWS fails.
        """
        logger = structlog.get_logger(__name__).bind(
            target=context.name, kind=self.kind.value
        )
        records: set[UsageRecord] = set()
        ignored = 0
        try:
            for source, uri in self.list_image_uris(context):
                ref = ImageReference.parse(uri)
                if ref is None:
                    ignored += 1
                    logger.debug(
                        "Ignoring non-ECR image", source=source, uri=uri
                    )
                    continue
                records.add(
                    UsageRecord(
                        kind=self.kind,
                        target=context.name,
                        reference=ref,
                        source=source,
                    )
                )
        except (AuthenticationError, BotoCoreError, ClientError) as e:
            raise ProbeError(context.name, self.kind.value, str(e)) from e
        logger.debug("Probe complete", records=len(records), ignored=ignored)
        return frozenset(records)
