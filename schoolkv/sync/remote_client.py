"""HTTP client for the shared remote key-value store.

Handles retry with exponential backoff; failures come back as result objects,
never as exceptions.
"""

import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Any
from urllib.parse import quote

import httpx

from .outbox import Outbox

logger = logging.getLogger(__name__)


class RemoteStatus(Enum):
    """Outcome of a single remote call."""

    OK = "ok"
    NOT_FOUND = "not_found"
    FAILED = "failed"
    OFFLINE = "offline"  # Remote unreachable
    REJECTED = "rejected"  # 4xx, retrying cannot help


class SyncStatus(Enum):
    """Outcome of an outbox flush."""

    SUCCESS = "success"
    PARTIAL = "partial"  # Some entries pushed
    FAILED = "failed"
    OFFLINE = "offline"


@dataclass
class RemoteResult:
    """Result of a remote get or upsert."""

    status: RemoteStatus
    value: Any = None
    updated_at: str | None = None
    error: str | None = None

    @property
    def ok(self) -> bool:
        return self.status == RemoteStatus.OK


@dataclass
class FlushResult:
    """Result of pushing pending outbox entries."""

    status: SyncStatus
    pushed: int = 0
    failed: int = 0
    rejected: int = 0
    error: str | None = None
    timestamp: datetime | None = None


class RemoteStoreClient:
    """Client for the remote store's JSON API.

    Supports:
    - get: read one row (404 is a definitive miss)
    - upsert: write one row, last write wins on the server
    - push_outbox: drain pending local writes
    """

    def __init__(
        self,
        base_url: str,
        timeout: float = 10.0,
        max_retries: int = 3,
        backoff_seconds: float = 0.5,
    ):
        """Initialize the client.

        Args:
            base_url: Base URL of the remote store (e.g. "http://school:8080").
            timeout: Request timeout in seconds.
            max_retries: Maximum attempts per request.
            backoff_seconds: Initial delay between attempts, doubled each time.
        """
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.max_retries = max_retries
        self.backoff_seconds = backoff_seconds
        self._client: httpx.AsyncClient | None = None
        self._last_push: datetime | None = None
        self._consecutive_failures = 0

    async def _get_client(self) -> httpx.AsyncClient:
        """Get or create HTTP client."""
        if self._client is None:
            self._client = httpx.AsyncClient(
                base_url=self.base_url,
                timeout=self.timeout,
            )
        return self._client

    async def close(self) -> None:
        """Close the HTTP client."""
        if self._client:
            await self._client.aclose()
            self._client = None

    @staticmethod
    def _key_path(key: str) -> str:
        return f"/api/kv/{quote(key, safe='')}"

    async def _request_with_retry(
        self,
        method: str,
        path: str,
        json_data: Any = None,
    ) -> tuple[httpx.Response | None, RemoteStatus | None, str | None]:
        """Make HTTP request with exponential backoff retry.

        Connection errors, timeouts and 5xx responses are retried. Any other
        response is returned to the caller as-is.

        Returns:
            Tuple of (response, failure_status, error_message). response is
            None when the request ultimately failed.
        """
        client = await self._get_client()
        backoff = self.backoff_seconds
        last_status = RemoteStatus.FAILED
        last_error = "No attempts made"

        for attempt in range(self.max_retries):
            try:
                response = await client.request(method, path, json=json_data)

                if response.status_code < 500:
                    self._consecutive_failures = 0
                    return response, None, None

                # Server error, retry
                last_status = RemoteStatus.FAILED
                last_error = f"HTTP {response.status_code}: {response.text}"
                logger.warning(
                    f"Server error {response.status_code}, "
                    f"attempt {attempt + 1}/{self.max_retries}"
                )

            except httpx.ConnectError as e:
                last_status = RemoteStatus.OFFLINE
                last_error = f"Connection failed: {e}"
                logger.warning(
                    f"Connection failed, attempt {attempt + 1}/{self.max_retries}"
                )
            except httpx.TimeoutException:
                last_status = RemoteStatus.OFFLINE
                last_error = "Request timed out"
                logger.warning(
                    f"Request timeout, attempt {attempt + 1}/{self.max_retries}"
                )
            except httpx.HTTPError as e:
                logger.error(f"Request error: {e}")
                self._consecutive_failures += 1
                return None, RemoteStatus.FAILED, str(e)

            if attempt < self.max_retries - 1:
                await asyncio.sleep(backoff)
                backoff *= 2

        self._consecutive_failures += 1
        return None, last_status, last_error

    async def get(self, key: str) -> RemoteResult:
        """Read a key from the remote store."""
        response, status, error = await self._request_with_retry(
            "GET", self._key_path(key)
        )

        if response is None:
            return RemoteResult(status=status, error=error)

        if response.status_code == 404:
            return RemoteResult(status=RemoteStatus.NOT_FOUND)

        if response.status_code != 200:
            return RemoteResult(
                status=RemoteStatus.FAILED,
                error=f"HTTP {response.status_code}: {response.text}",
            )

        try:
            data = response.json()
        except ValueError as e:
            logger.warning(f"Malformed remote value for {key}: {e}")
            return RemoteResult(status=RemoteStatus.FAILED, error=str(e))

        return RemoteResult(
            status=RemoteStatus.OK,
            value=data.get("value"),
            updated_at=data.get("updated_at"),
        )

    async def upsert(self, key: str, value: Any, origin: str) -> RemoteResult:
        """Write a key to the remote store."""
        response, status, error = await self._request_with_retry(
            "PUT", self._key_path(key), {"value": value, "origin": origin}
        )

        if response is None:
            return RemoteResult(status=status, error=error)

        if response.status_code != 200:
            return RemoteResult(
                status=(
                    RemoteStatus.REJECTED
                    if 400 <= response.status_code < 500
                    else RemoteStatus.FAILED
                ),
                error=f"HTTP {response.status_code}: {response.text}",
            )

        try:
            data = response.json()
        except ValueError:
            # Accepted but unparseable acknowledgement still counts as written
            return RemoteResult(status=RemoteStatus.OK, value=value)

        return RemoteResult(
            status=RemoteStatus.OK,
            value=data.get("value"),
            updated_at=data.get("updated_at"),
        )

    async def health_check(self) -> bool:
        """Check if the remote store is reachable and healthy."""
        try:
            client = await self._get_client()
            response = await client.get("/api/health")
            return response.status_code == 200
        except Exception as e:
            logger.debug(f"Health check failed: {e}")
            return False

    async def push_outbox(self, outbox: Outbox, limit: int = 100) -> FlushResult:
        """Push pending outbox entries in sequence order.

        Stops at the first entry that fails with the remote offline; the
        rest would fail the same way and stay pending for the next flush.
        Entries the remote store refuses with a 4xx are marked rejected and
        leave the queue; they do not count as failures.

        Returns:
            FlushResult with push statistics.
        """
        entries = outbox.get_pending(limit=limit)
        if not entries:
            return FlushResult(status=SyncStatus.SUCCESS, timestamp=datetime.now())

        pushed_ids: list[str] = []
        failed = 0
        rejected = 0
        last_error: str | None = None
        offline = False

        for entry in entries:
            result = await self.upsert(entry.key, entry.value, entry.origin)
            if result.ok:
                pushed_ids.append(entry.id)
                continue

            if result.status == RemoteStatus.REJECTED:
                rejected += 1
                last_error = result.error
                outbox.mark_rejected(entry.id, result.error or result.status.value)
                logger.error(
                    f"Remote store rejected {entry.key} (seq={entry.seq}): {result.error}"
                )
                continue

            failed += 1
            last_error = result.error
            outbox.mark_failed(entry.id, result.error or result.status.value)
            logger.warning(f"Failed to push {entry.key} (seq={entry.seq}): {result.error}")

            if result.status == RemoteStatus.OFFLINE:
                offline = True
                break

        outbox.mark_synced(pushed_ids)
        if pushed_ids:
            self._last_push = datetime.now()

        if not failed:
            status = SyncStatus.SUCCESS
        elif pushed_ids:
            status = SyncStatus.PARTIAL
        elif offline:
            status = SyncStatus.OFFLINE
        else:
            status = SyncStatus.FAILED

        return FlushResult(
            status=status,
            pushed=len(pushed_ids),
            failed=failed,
            rejected=rejected,
            error=last_error,
            timestamp=datetime.now(),
        )

    @property
    def last_push(self) -> datetime | None:
        """Get timestamp of last successful push."""
        return self._last_push

    @property
    def consecutive_failures(self) -> int:
        return self._consecutive_failures
