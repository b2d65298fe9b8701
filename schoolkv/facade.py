"""Sync facade: the get/set surface every manager talks to.

Reads are served from the local cache and fall back to the remote store.
Writes land in the local cache synchronously, then travel to the remote
store through the outbox in the background. Remote trouble is logged and
never surfaced to the caller.
"""

import asyncio
import logging
import sqlite3
from collections.abc import Iterable
from datetime import datetime
from typing import Any

from .broadcast import ChangeBroadcaster, ChangeListener, Subscription
from .cache import LocalCache, QuotaExceededError
from .config import Config
from .keys import is_sensitive, validate_key
from .sync import FlushResult, Outbox, RemoteStatus, RemoteStoreClient, SyncStatus

logger = logging.getLogger(__name__)


class SyncFacade:
    """Mediates between one context's local cache and the shared remote store.

    Supports:
    - get: local hit, else remote read that seeds the cache
    - set: local write, then queued remote upsert (last write wins)
    - subscribe: change notifications pushed by other contexts
    """

    def __init__(
        self,
        context_name: str,
        cache: LocalCache,
        outbox: Outbox | None = None,
        remote: RemoteStoreClient | None = None,
        broadcaster: ChangeBroadcaster | None = None,
        flush_interval_seconds: float = 5.0,
        batch_size: int = 100,
        extra_sensitive_keys: Iterable[str] = (),
    ):
        """Initialize the facade.

        Args:
            context_name: Name of this context, stamped on remote writes.
            cache: Local cache for this context.
            outbox: Queue of pending remote writes. None keeps writes local.
            remote: Remote store client. None keeps reads local.
            broadcaster: Change broadcaster for cross-context updates.
            flush_interval_seconds: Seconds between background flushes.
            batch_size: Maximum outbox entries pushed per flush.
            extra_sensitive_keys: Keys kept local on top of the built-in set.
        """
        self.context_name = context_name
        self.cache = cache
        self.outbox = outbox
        self.remote = remote
        self.broadcaster = broadcaster
        self.flush_interval_seconds = flush_interval_seconds
        self.batch_size = batch_size
        self._extra_sensitive = frozenset(extra_sensitive_keys)

        self._flush_lock = asyncio.Lock()
        self._flush_scheduled = False
        self._background_tasks: set[asyncio.Task] = set()
        self._flush_task: asyncio.Task | None = None
        self._stop_event: asyncio.Event | None = None
        self._last_flush: FlushResult | None = None

    @classmethod
    def from_config(cls, config: Config) -> "SyncFacade":
        """Build a facade and its collaborators from configuration."""
        name = config.context.name

        cache = LocalCache(config.cache.db_path, name, config.cache.quota_bytes)
        outbox = None
        remote = None
        if config.remote.url:
            outbox = Outbox(config.cache.outbox_db_path, name)
            remote = RemoteStoreClient(
                config.remote.url,
                timeout=config.remote.timeout_seconds,
                max_retries=config.remote.max_retries,
            )

        broadcaster = None
        if config.broadcast.enabled:
            broadcaster = ChangeBroadcaster(
                config.broadcast,
                name,
                cache=cache,
                extra_sensitive_keys=config.extra_sensitive_keys,
                outbox=outbox,
            )

        return cls(
            name,
            cache,
            outbox=outbox,
            remote=remote,
            broadcaster=broadcaster,
            flush_interval_seconds=config.remote.flush_interval_seconds,
            batch_size=config.remote.batch_size,
            extra_sensitive_keys=config.extra_sensitive_keys,
        )

    def is_sensitive(self, key: str) -> bool:
        return is_sensitive(key, self._extra_sensitive)

    # ==================== Reads and writes ====================

    async def get(self, key: str, fallback: Any = None) -> Any:
        """Read a key, falling back to the remote store on a local miss.

        A remote hit (or a definitive remote miss, as the fallback) seeds
        the local cache. A failed remote read returns the fallback without
        seeding, so the next read tries the remote again.

        Args:
            key: Key to read.
            fallback: Value returned when neither store has the key.

        Returns:
            The stored value or the fallback.
        """
        found, value = self.cache.get(key)
        if found:
            return value

        if self.remote is None or self.is_sensitive(key):
            return fallback

        result = await self.remote.get(key)
        if result.status == RemoteStatus.OK:
            seed = result.value
        elif result.status == RemoteStatus.NOT_FOUND:
            seed = fallback
        else:
            logger.warning(
                f"Remote read of {key} failed ({result.status.value}): {result.error}"
            )
            return fallback

        # A set() or broadcast may have landed while the remote read was in flight
        found, value = self.cache.get(key)
        if found:
            return value

        try:
            self.cache.set(key, seed)
        except (QuotaExceededError, TypeError, ValueError) as e:
            logger.error(f"Could not seed cache with {key}: {e}")

        return seed

    def set(self, key: str, value: Any) -> bool:
        """Write a key locally and queue it for the remote store.

        Returns:
            True if the local write succeeded, whatever happens remotely.
            False if the key is not usable remotely, the value is not JSON
            or the cache quota is exceeded; the previous value is then left
            intact.
        """
        try:
            validate_key(key)
        except ValueError as e:
            logger.error(f"Rejected write: {e}")
            return False

        try:
            self.cache.set(key, value)
        except QuotaExceededError as e:
            logger.error(f"Local write of {key} rejected: {e}")
            return False
        except (TypeError, ValueError) as e:
            logger.error(f"Value for {key} is not valid JSON: {e}")
            return False

        if self.outbox is None or self.is_sensitive(key):
            return True

        try:
            self.outbox.enqueue(key, value)
        except sqlite3.Error as e:
            logger.error(f"Could not queue {key} for the remote store: {e}")
            return True

        self._schedule_flush()
        return True

    # ==================== Remote propagation ====================

    def _schedule_flush(self) -> None:
        """Start a background flush if an event loop is running."""
        if self._flush_scheduled or self.remote is None:
            return

        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            return  # No loop: the entry waits for the next explicit flush

        self._flush_scheduled = True
        task = loop.create_task(self._scheduled_flush())
        self._background_tasks.add(task)
        task.add_done_callback(self._background_tasks.discard)

    async def _scheduled_flush(self) -> None:
        try:
            await self.flush()
        except Exception as e:
            logger.error(f"Background flush error: {e}", exc_info=True)

    async def flush(self) -> FlushResult:
        """Push pending writes to the remote store now.

        Flushes are serialized, so writes of one key reach the remote store
        in the order they were made here.
        """
        if self.remote is None or self.outbox is None:
            return FlushResult(status=SyncStatus.SUCCESS, timestamp=datetime.now())

        async with self._flush_lock:
            # Writes made from here on schedule their own flush
            self._flush_scheduled = False
            result = await self.remote.push_outbox(self.outbox, limit=self.batch_size)

        self._last_flush = result
        if result.pushed or result.failed or result.rejected:
            logger.info(
                f"Flush: {result.status.value}, pushed={result.pushed}, "
                f"failed={result.failed}, rejected={result.rejected}"
            )

        if self.broadcaster is not None:
            await self._refresh_deferred()

        return result

    async def _refresh_deferred(self) -> None:
        """Re-read keys whose broadcasts were held back by a pending write."""
        for key in self.broadcaster.deferred_keys():
            result = await self.remote.get(key)
            if result.status == RemoteStatus.NOT_FOUND:
                self.broadcaster.clear_deferred(key)
                continue
            if result.status != RemoteStatus.OK:
                continue  # Retried after the next flush
            if self.outbox.has_pending(key):
                continue

            self.broadcaster.clear_deferred(key)
            try:
                self.cache.set(key, result.value)
            except (QuotaExceededError, TypeError, ValueError) as e:
                logger.error(f"Could not refresh {key} from the remote store: {e}")

    async def wait_idle(self) -> None:
        """Wait for background flushes started by set() to finish."""
        while self._background_tasks:
            await asyncio.gather(*list(self._background_tasks), return_exceptions=True)

    async def flush_loop(
        self,
        stop_event: asyncio.Event | None = None,
    ) -> None:
        """Periodically retry pending writes.

        Args:
            stop_event: Event to signal loop should stop.
        """
        logger.info(f"Starting flush loop with {self.flush_interval_seconds}s interval")
        failures = 0

        while True:
            if stop_event and stop_event.is_set():
                break

            try:
                result = await self.flush()
                if result.status in (SyncStatus.OFFLINE, SyncStatus.FAILED):
                    failures += 1
                else:
                    failures = 0
            except Exception as e:
                logger.error(f"Flush loop error: {e}")
                failures += 1

            # Adaptive interval: back off while the remote keeps failing
            wait_time = self.flush_interval_seconds
            if failures > 0:
                wait_time = min(self.flush_interval_seconds * (2 ** failures), 300)
                logger.debug(f"Backing off flush for {wait_time}s")

            if stop_event:
                try:
                    await asyncio.wait_for(stop_event.wait(), timeout=wait_time)
                    break
                except asyncio.TimeoutError:
                    pass
            else:
                await asyncio.sleep(wait_time)

        logger.info("Flush loop stopped")

    # ==================== Change notifications ====================

    def subscribe(self, key: str, listener: ChangeListener) -> Subscription | None:
        """Listen for changes of a key made by other contexts.

        Returns:
            The subscription, or None when no broadcaster is configured.
        """
        if self.broadcaster is None:
            logger.warning(f"No broadcaster configured, cannot subscribe to {key}")
            return None
        return self.broadcaster.subscribe(key, listener)

    def subscribe_all(self, listener: ChangeListener) -> Subscription | None:
        if self.broadcaster is None:
            return None
        return self.broadcaster.subscribe_all(listener)

    def unsubscribe(self, subscription: Subscription) -> None:
        if self.broadcaster is not None:
            self.broadcaster.unsubscribe(subscription)

    # ==================== Lifecycle ====================

    async def start(self) -> None:
        """Open storage, connect the broadcaster and start the flush loop."""
        self.cache.connect()
        if self.outbox is not None:
            self.outbox.connect()

        if self.broadcaster is not None:
            if not await self.broadcaster.connect():
                logger.warning("Broadcaster unavailable, running without live updates")

        if self.remote is not None and self.outbox is not None:
            self._stop_event = asyncio.Event()
            self._flush_task = asyncio.create_task(self.flush_loop(self._stop_event))

        logger.info(f"SyncFacade for {self.context_name} started")

    async def stop(self) -> None:
        """Stop background work, try one last flush and release resources."""
        if self._stop_event is not None:
            self._stop_event.set()
        if self._flush_task is not None:
            await self._flush_task
            self._flush_task = None

        await self.wait_idle()

        if self.remote is not None:
            await self.flush()
            await self.remote.close()

        if self.broadcaster is not None and self.broadcaster.is_connected:
            await self.broadcaster.disconnect()

        if self.outbox is not None:
            self.outbox.close()
        self.cache.close()

        logger.info(f"SyncFacade for {self.context_name} stopped")

    def get_status(self) -> dict[str, Any]:
        """Get current sync status.

        Returns:
            Dictionary with cache, outbox and connection state.
        """
        status: dict[str, Any] = {
            "context": self.context_name,
            "cache": self.cache.get_stats(),
            "remote_url": self.remote.base_url if self.remote else None,
            "broadcaster_connected": (
                self.broadcaster.is_connected if self.broadcaster else False
            ),
        }

        if self.outbox is not None:
            status["pending_writes"] = self.outbox.pending_count()

        if self._last_flush is not None:
            status["last_flush"] = {
                "status": self._last_flush.status.value,
                "pushed": self._last_flush.pushed,
                "failed": self._last_flush.failed,
                "rejected": self._last_flush.rejected,
                "timestamp": (
                    self._last_flush.timestamp.isoformat()
                    if self._last_flush.timestamp
                    else None
                ),
            }

        return status
