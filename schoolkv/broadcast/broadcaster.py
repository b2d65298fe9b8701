"""MQTT fan-out of remote row changes to every subscribed context."""

import asyncio
import json
import logging
import uuid
from collections.abc import Callable, Iterable
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

import paho.mqtt.client as mqtt

from ..cache import LocalCache, QuotaExceededError
from ..config import BroadcastConfig
from ..keys import SensitiveKeyError, is_sensitive, key_from_topic, topic_for_key
from ..sync import Outbox

logger = logging.getLogger(__name__)


@dataclass
class ChangeEvent:
    """A row change published by the remote store."""

    key: str
    value: Any
    origin: str | None = None
    updated_at: datetime = field(default_factory=datetime.now)

    def to_payload(self) -> str:
        """Serialize for publishing."""
        return json.dumps(
            {
                "key": self.key,
                "value": self.value,
                "origin": self.origin,
                "updated_at": self.updated_at.isoformat(),
            }
        )

    @classmethod
    def from_payload(cls, payload: str | bytes) -> "ChangeEvent":
        """Parse a published change.

        Raises:
            ValueError: If the payload is not a change message.
        """
        data = json.loads(payload)
        if not isinstance(data, dict) or not isinstance(data.get("key"), str):
            raise ValueError("Change payload must be an object with a string key")
        if "value" not in data:
            raise ValueError("Change payload has no value")

        updated_at = datetime.now()
        raw_updated_at = data.get("updated_at")
        if raw_updated_at is not None:
            if not isinstance(raw_updated_at, str):
                raise ValueError("Change payload updated_at must be an ISO timestamp")
            updated_at = datetime.fromisoformat(raw_updated_at)

        return cls(
            key=data["key"],
            value=data["value"],
            origin=data.get("origin"),
            updated_at=updated_at,
        )


ChangeListener = Callable[[ChangeEvent], None]


@dataclass(eq=False)
class Subscription:
    """Handle returned by subscribe(); pass it back to unsubscribe()."""

    key: str | None  # None listens to every non-sensitive key
    listener: ChangeListener
    id: str = field(default_factory=lambda: uuid.uuid4().hex)
    active: bool = True


class ChangeBroadcaster:
    """Delivers remote changes to this context's cache and listeners.

    Each key maps to the topic '<prefix>/kv/<key>'. Delivery is at most once
    (QoS 0) with no ordering guarantee; a stale overwrite is corrected by the
    next change of the same key.
    """

    def __init__(
        self,
        config: BroadcastConfig,
        context_name: str,
        cache: LocalCache | None = None,
        extra_sensitive_keys: Iterable[str] = (),
        outbox: Outbox | None = None,
    ):
        """Initialize the broadcaster.

        Args:
            config: Broker connection and topic settings.
            context_name: Name of this context, compared with change origins.
            cache: Local cache updated on every accepted change.
            extra_sensitive_keys: Keys treated as sensitive on top of the
                built-in set.
            outbox: This context's outbox. While it holds a pending write of
                a key, incoming changes of that key are not applied.
        """
        self.config = config
        self.context_name = context_name
        self.cache = cache
        self.outbox = outbox
        self._extra_sensitive = frozenset(extra_sensitive_keys)

        self._subscriptions: dict[str, list[Subscription]] = {}
        self._wildcard: list[Subscription] = []
        # Keys whose incoming changes were held back by a pending local write
        self._deferred: set[str] = set()

        # Paho MQTT client
        self._client = mqtt.Client(
            mqtt.CallbackAPIVersion.VERSION2,
            client_id=f"schoolkv-{context_name}-{uuid.uuid4().hex[:8]}",
        )
        self._client.on_connect = self._handle_connect
        self._client.on_message = self._handle_message
        self._client.on_disconnect = self._handle_disconnect

        # Connection state
        self._connected = False
        self._loop: asyncio.AbstractEventLoop | None = None

    def _is_sensitive(self, key: str) -> bool:
        return is_sensitive(key, self._extra_sensitive)

    def _topic(self, key: str) -> str:
        return topic_for_key(self.config.topic_prefix, key)

    def _wildcard_topic(self) -> str:
        return topic_for_key(self.config.topic_prefix, "+")

    def _uses_wildcard(self) -> bool:
        """A cache must see every key; otherwise only what listeners need."""
        return self.cache is not None or bool(self._wildcard)

    # ==================== Paho callbacks (network thread) ====================

    def _handle_connect(
        self,
        client: mqtt.Client,
        userdata: Any,
        flags: Any,
        reason_code: Any,
        properties: Any = None,
    ) -> None:
        """Handle connection to broker and restore subscriptions."""
        if reason_code == 0:
            self._connected = True
            logger.info(
                f"Connected to MQTT broker at {self.config.broker}:{self.config.port}"
            )

            if self._uses_wildcard():
                client.subscribe(self._wildcard_topic())
            else:
                for key in self._subscriptions:
                    client.subscribe(self._topic(key))
        else:
            logger.error(f"Failed to connect to MQTT broker: {reason_code}")

    def _handle_message(
        self,
        client: mqtt.Client,
        userdata: Any,
        msg: mqtt.MQTTMessage,
    ) -> None:
        """Parse an incoming change and hand it to the event loop."""
        key = key_from_topic(self.config.topic_prefix, msg.topic)
        if key is None:
            logger.debug(f"Ignoring message on unrelated topic {msg.topic}")
            return

        try:
            event = ChangeEvent.from_payload(msg.payload)
        except (ValueError, TypeError) as e:
            logger.warning(f"Dropping malformed change on {msg.topic}: {e}")
            return

        if event.key != key:
            logger.warning(
                f"Dropping change for {event.key} published on topic of {key}"
            )
            return

        if self._loop and not self._loop.is_closed():
            self._loop.call_soon_threadsafe(self.deliver, event)
        else:
            self.deliver(event)

    def _handle_disconnect(
        self,
        client: mqtt.Client,
        userdata: Any,
        disconnect_flags: Any,
        reason_code: Any,
        properties: Any = None,
    ) -> None:
        """Handle disconnection from broker."""
        self._connected = False
        logger.warning(f"Disconnected from MQTT broker: {reason_code}")

    # ==================== Connection ====================

    async def connect(self) -> bool:
        """Connect to the MQTT broker.

        Returns:
            True if connection successful.
        """
        self._loop = asyncio.get_running_loop()

        if self.config.username and self.config.password:
            self._client.username_pw_set(self.config.username, self.config.password)

        try:
            self._client.connect(self.config.broker, self.config.port, keepalive=60)
            self._client.loop_start()

            # Wait for connection
            for _ in range(50):  # 5 second timeout
                if self._connected:
                    return True
                await asyncio.sleep(0.1)

            logger.error("Timeout waiting for MQTT connection")
            return False

        except Exception as e:
            logger.error(f"Failed to connect to MQTT broker: {e}")
            return False

    async def disconnect(self) -> None:
        """Disconnect from the MQTT broker."""
        self._client.loop_stop()
        self._client.disconnect()
        self._connected = False

    @property
    def is_connected(self) -> bool:
        """Check if connected to broker."""
        return self._connected

    async def check_connection(self) -> bool:
        """Check if broker is reachable."""
        if self._connected:
            return True

        try:
            test_client = mqtt.Client(mqtt.CallbackAPIVersion.VERSION2)
            test_client.connect(self.config.broker, self.config.port, keepalive=5)
            test_client.disconnect()
            return True
        except Exception:
            return False

    # ==================== Subscriptions ====================

    def subscribe(self, key: str, listener: ChangeListener) -> Subscription:
        """Register a listener for changes of one key.

        Raises:
            SensitiveKeyError: Sensitive keys are never broadcast.
        """
        if self._is_sensitive(key):
            raise SensitiveKeyError(key)

        subscription = Subscription(key=key, listener=listener)
        listeners = self._subscriptions.setdefault(key, [])
        listeners.append(subscription)

        if len(listeners) == 1 and self._connected and not self._uses_wildcard():
            self._client.subscribe(self._topic(key))
            logger.info(f"Subscribed to changes of {key}")

        return subscription

    def subscribe_all(self, listener: ChangeListener) -> Subscription:
        """Register a listener for changes of every non-sensitive key."""
        subscription = Subscription(key=None, listener=listener)
        self._wildcard.append(subscription)

        if len(self._wildcard) == 1 and self._connected and self.cache is None:
            self._client.subscribe(self._wildcard_topic())
            for key in self._subscriptions:
                self._client.unsubscribe(self._topic(key))

        return subscription

    def unsubscribe(self, subscription: Subscription) -> None:
        """Release a subscription; it receives nothing afterwards."""
        subscription.active = False

        if subscription.key is None:
            if subscription in self._wildcard:
                self._wildcard.remove(subscription)
                if self._connected and not self._uses_wildcard():
                    self._client.unsubscribe(self._wildcard_topic())
                    for key in self._subscriptions:
                        self._client.subscribe(self._topic(key))
            return

        listeners = self._subscriptions.get(subscription.key, [])
        if subscription in listeners:
            listeners.remove(subscription)

        if not listeners and subscription.key in self._subscriptions:
            del self._subscriptions[subscription.key]
            if self._connected and not self._uses_wildcard():
                self._client.unsubscribe(self._topic(subscription.key))
            logger.info(f"Unsubscribed from changes of {subscription.key}")

    def listener_count(self, key: str | None = None) -> int:
        """Number of active listeners for a key, or in total."""
        if key is None:
            return len(self._wildcard) + sum(len(s) for s in self._subscriptions.values())
        return len(self._subscriptions.get(key, []))

    # ==================== Delivery ====================

    def deliver(self, event: ChangeEvent) -> int:
        """Apply a change to the local cache and notify listeners.

        Runs on the event loop thread. Sensitive keys are dropped. A change
        of a key this context still has a pending write for is dropped too:
        that write reaches the remote store later and its echo brings every
        context to the same value. This context's own changes update the
        cache but, when configured, do not reach listeners.

        Returns:
            Number of listeners notified.
        """
        if self._is_sensitive(event.key):
            logger.warning(f"Dropping broadcast of sensitive key {event.key}")
            return 0

        if self.outbox is not None and self.outbox.has_pending(event.key):
            logger.debug(f"Keeping pending local write of {event.key} over broadcast")
            if event.origin != self.context_name:
                self._deferred.add(event.key)
            return 0

        if self.cache is not None:
            try:
                self.cache.set(event.key, event.value)
            except (QuotaExceededError, TypeError, ValueError) as e:
                logger.error(f"Could not cache broadcast change of {event.key}: {e}")

        if self.config.skip_own_changes and event.origin == self.context_name:
            return 0

        targets = list(self._subscriptions.get(event.key, [])) + list(self._wildcard)
        notified = 0
        for subscription in targets:
            if not subscription.active:
                continue
            try:
                subscription.listener(event)
                notified += 1
            except Exception as e:
                logger.error(f"Listener for {event.key} failed: {e}", exc_info=True)

        return notified

    def deferred_keys(self) -> list[str]:
        """Keys with held-back changes whose local write is no longer pending.

        The remote store may have accepted another context's write after
        this one's, so these keys should be re-read from it.
        """
        return sorted(
            key
            for key in self._deferred
            if self.outbox is None or not self.outbox.has_pending(key)
        )

    def clear_deferred(self, key: str) -> None:
        self._deferred.discard(key)

    async def publish_change(self, event: ChangeEvent) -> bool:
        """Publish a row change to every context.

        Returns:
            True if handed to the broker.

        Raises:
            SensitiveKeyError: Sensitive keys are never broadcast.
        """
        if self._is_sensitive(event.key):
            raise SensitiveKeyError(event.key)

        if not self._connected:
            logger.error("Cannot publish: not connected to broker")
            return False

        result = self._client.publish(self._topic(event.key), event.to_payload())
        return result.rc == mqtt.MQTT_ERR_SUCCESS
