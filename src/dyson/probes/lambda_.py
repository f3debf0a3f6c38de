"""Usage probe for container-image Lambda functions."""

from collections.abc import Iterator

from ..models.usage import UsageKind
from ..storage.session import AwsContext
from .base import UsageProbe


class LambdaProbe(UsageProbe):
    """Images deployed as Lambda function code.

    Every published version counts, not just ``$LATEST``: an alias may
    still route traffic to an older version and its image.
    """

    kind = UsageKind.COMPUTE_FUNCTION

    def list_image_uris(
        self, context: AwsContext
    ) -> Iterator[tuple[str, str]]:
        client = context.client("lambda")
        paginator = client.get_paginator("list_functions")
        for page in paginator.paginate(FunctionVersion="ALL"):
            for fn in page.get("Functions", []):
                if fn.get("PackageType") != "Image":
                    continue
                name = fn["FunctionName"]
                version = fn.get("Version", "$LATEST")
                resp = client.get_function(
                    FunctionName=name, Qualifier=version
                )
                code = resp.get("Code", {})
                # The resolved URI pins the digest the function runs.
                uri = code.get("ResolvedImageUri") or code.get("ImageUri")
                if uri:
                    yield f"function/{name}:{version}", uri
