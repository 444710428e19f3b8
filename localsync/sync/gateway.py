"""Remote gateway contract and its HTTP implementation."""

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Union

import httpx

from ..errors import NetworkFailure, RejectedByServer
from ..store.models import ChangeLogEntry, Record

logger = logging.getLogger(__name__)

# Request Timeout and Too Many Requests are worth retrying
TRANSIENT_STATUS_CODES = frozenset({408, 429})


@dataclass(frozen=True)
class Accepted:
    """The remote applied the change and returned its version of the record."""

    record: Record


@dataclass(frozen=True)
class Conflict:
    """The remote holds a divergent version of the record."""

    record: Record


PushOutcome = Union[Accepted, Conflict]


class RemoteGateway(ABC):
    """How the sync coordinator talks to the remote authority."""

    @abstractmethod
    async def push(self, entry: ChangeLogEntry) -> PushOutcome:
        """Send one change to the remote.

        Raises:
            NetworkFailure: if the remote could not be reached.
            RejectedByServer: if the remote refuses the change permanently.
        """

    @abstractmethod
    async def pull(self, since: int) -> list[Record]:
        """Fetch records changed on the remote after version ``since``.

        Raises:
            NetworkFailure: if the remote could not be reached.
        """

    async def close(self) -> None:
        """Release any resources held by the gateway."""


class HttpGateway(RemoteGateway):
    """JSON-over-HTTP gateway.

    Endpoints, relative to ``base_url``:
    - ``POST /sync/push``: 200 ``{"record": ...}`` accepted,
      409 ``{"record": ...}`` conflict.
    - ``GET /sync/pull?since=N``: ``{"records": [...]}``.

    Server errors, 408, 429, timeouts and connection errors raise
    NetworkFailure; any other non-success status raises RejectedByServer.
    """

    def __init__(
        self,
        base_url: str,
        timeout: float = 30.0,
        token: str | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        """Initialize the gateway.

        Args:
            base_url: Base URL of the remote (e.g., "https://api.example.com").
            timeout: Request timeout in seconds.
            token: Optional bearer token.
            transport: Optional httpx transport, used by tests.
        """
        self.base_url = base_url.rstrip("/")
        headers = {"Authorization": f"Bearer {token}"} if token else {}
        self._client = httpx.AsyncClient(
            base_url=self.base_url,
            timeout=timeout,
            headers=headers,
            transport=transport,
        )

    async def _request(
        self, method: str, path: str, **kwargs: Any
    ) -> httpx.Response:
        try:
            response = await self._client.request(method, path, **kwargs)
        except httpx.TimeoutException as e:
            raise NetworkFailure(f"Request timeout: {method} {path}") from e
        except httpx.TransportError as e:
            raise NetworkFailure(f"Connection failed: {e}") from e

        if response.status_code >= 500:
            raise NetworkFailure(f"Server error {response.status_code}")
        if response.status_code in TRANSIENT_STATUS_CODES:
            raise NetworkFailure(f"Remote busy: HTTP {response.status_code}")
        return response

    @staticmethod
    def _parse_record(response: httpx.Response) -> Record:
        try:
            return Record.from_dict(response.json()["record"])
        except (ValueError, KeyError, TypeError) as e:
            raise RejectedByServer(f"Malformed response: {e}") from e

    async def push(self, entry: ChangeLogEntry) -> PushOutcome:
        response = await self._request("POST", "/sync/push", json=entry.to_dict())

        if response.status_code == 200:
            return Accepted(self._parse_record(response))
        if response.status_code == 409:
            return Conflict(self._parse_record(response))

        raise RejectedByServer(f"HTTP {response.status_code}: {response.text}")

    async def pull(self, since: int) -> list[Record]:
        response = await self._request("GET", "/sync/pull", params={"since": since})

        if response.status_code != 200:
            raise NetworkFailure(f"HTTP {response.status_code}: {response.text}")

        data = response.json()
        return [Record.from_dict(r) for r in data.get("records", [])]

    async def health(self) -> bool:
        """Check whether the remote answers its health endpoint."""
        try:
            response = await self._client.get("/health")
        except httpx.HTTPError:
            return False
        return response.status_code == 200

    async def close(self) -> None:
        await self._client.aclose()
