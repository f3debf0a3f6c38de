"""Per-profile AWS credentials and client construction."""

import threading
from typing import Any

import boto3
import structlog
from botocore.config import Config as BotoConfig
from botocore.exceptions import BotoCoreError, ClientError

from ..exceptions import AuthenticationError

_CLIENT_CONFIG = BotoConfig(
    retries={"mode": "standard", "max_attempts": 3},
    user_agent_extra="dyson",
)


class AwsContext:
    """Credentials and clients for one AWS profile.

    Every component that talks to AWS receives one of these explicitly;
    there is no process-wide default session.

    Parameters
    ----------
    name
        Display name, used in logs and warnings.
    profile_name
        AWS profile to load credentials from.
    region
        AWS region, or `None` to use the profile's region.
    session
        Pre-built session; mostly useful for the test suite.
    """

    def __init__(
        self,
        name: str,
        profile_name: str | None,
        region: str | None = None,
        session: Any | None = None,
    ) -> None:
        self.name = name
        self.profile_name = profile_name
        self._region = region
        self._session = session
        self._account_id: str | None = None
        self._clients: dict[str, Any] = {}
        # boto3 sessions are not thread-safe; clients are.
        self._lock = threading.Lock()
        self._logger = structlog.get_logger(__name__).bind(target=name)

    @property
    def session(self) -> Any:
        if self._session is None:
            try:
                self._session = boto3.Session(
                    profile_name=self.profile_name, region_name=self._region
                )
            except BotoCoreError as e:
                raise AuthenticationError(self.name, str(e)) from e
        return self._session

    @property
    def region(self) -> str:
        region = self._region or self.session.region_name
        if not region:
            raise AuthenticationError(
                self.name, f"no region configured for {self.profile_name}"
            )
        return region

    @property
    def account_id(self) -> str:
        if self._account_id is None:
            self.verify()
        return self._account_id or ""

    def client(self, service: str) -> Any:
        """Return a (cached) boto3 client for ``service``."""
        with self._lock:
            if service not in self._clients:
                self._clients[service] = self.session.client(
                    service, region_name=self.region, config=_CLIENT_CONFIG
                )
            return self._clients[service]

    def verify(self) -> str:
        """Establish that the credentials work, and return the account ID.

        Raises
        ------
        AuthenticationError
            Raised if the profile cannot be loaded or STS rejects it.
        """
        if self._account_id is not None:
            return self._account_id
        try:
            identity = self.client("sts").get_caller_identity()
        except (BotoCoreError, ClientError) as e:
            raise AuthenticationError(self.name, str(e)) from e
        self._account_id = str(identity["Account"])
        self._logger.debug(
            "Established credentials",
            account=self._account_id,
            region=self.region,
        )
        return self._account_id
