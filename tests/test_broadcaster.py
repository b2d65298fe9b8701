"""Tests for the MQTT change broadcaster."""

import json
from datetime import datetime

import paho.mqtt.client as mqtt
import pytest
from unittest.mock import MagicMock, patch

from schoolkv.broadcast import ChangeBroadcaster, ChangeEvent
from schoolkv.cache import LocalCache
from schoolkv.config import BroadcastConfig
from schoolkv.keys import SensitiveKeyError
from schoolkv.sync import Outbox


@pytest.fixture
def cache():
    cache = LocalCache(":memory:", "teacher-portal")
    cache.connect()
    yield cache
    cache.close()


@pytest.fixture
def broadcaster(cache):
    """Create a broadcaster for the teacher portal, not connected."""
    return ChangeBroadcaster(BroadcastConfig(), "teacher-portal", cache=cache)


def _message(topic: str, payload) -> MagicMock:
    msg = MagicMock()
    msg.topic = topic
    msg.payload = payload if isinstance(payload, bytes) else json.dumps(payload).encode()
    return msg


class TestChangeEvent:
    """Tests for change payloads."""

    def test_payload_roundtrip(self):
        event = ChangeEvent(
            key="gallery",
            value=[{"title": "Sports day"}],
            origin="admin-console",
            updated_at=datetime(2026, 3, 1, 9, 30),
        )

        parsed = ChangeEvent.from_payload(event.to_payload())

        assert parsed == event

    @pytest.mark.parametrize(
        "payload",
        [
            '"just a string"',
            '{"value": 1}',
            '{"key": "gallery"}',
            "{not json",
            '{"key": "teachers", "value": [], "updated_at": 123}',
        ],
    )
    def test_malformed_payloads(self, payload):
        with pytest.raises(ValueError):
            ChangeEvent.from_payload(payload)


class TestDeliver:
    """Tests for applying changes locally."""

    def test_deliver_updates_cache_and_listener(self, broadcaster, cache):
        received = []
        broadcaster.subscribe("teachers", received.append)

        count = broadcaster.deliver(
            ChangeEvent(key="teachers", value=[{"name": "Ada"}], origin="admin-console")
        )

        assert count == 1
        assert received[0].value == [{"name": "Ada"}]
        assert cache.get("teachers") == (True, [{"name": "Ada"}])

    def test_deliver_other_key(self, broadcaster, cache):
        """Test listeners only hear their own key, the cache hears all."""
        received = []
        broadcaster.subscribe("teachers", received.append)

        count = broadcaster.deliver(ChangeEvent(key="gallery", value=[], origin="x"))

        assert count == 0
        assert received == []
        assert cache.get("gallery") == (True, [])

    def test_wildcard_listener(self, broadcaster):
        received = []
        broadcaster.subscribe_all(received.append)

        broadcaster.deliver(ChangeEvent(key="gallery", value=[], origin="x"))
        broadcaster.deliver(ChangeEvent(key="teachers", value=[], origin="x"))

        assert [e.key for e in received] == ["gallery", "teachers"]

    def test_sensitive_key_dropped(self, broadcaster, cache):
        received = []
        broadcaster.subscribe_all(received.append)

        count = broadcaster.deliver(
            ChangeEvent(key="admin-credentials", value={"password": "x"}, origin="x")
        )

        assert count == 0
        assert received == []
        assert cache.get("admin-credentials") == (False, None)

    def test_own_changes_skip_listeners_but_update_cache(self, broadcaster, cache):
        """Test an echo of this context's write reaches the cache only."""
        received = []
        broadcaster.subscribe("teachers", received.append)

        count = broadcaster.deliver(
            ChangeEvent(key="teachers", value=[], origin="teacher-portal")
        )

        assert count == 0
        assert received == []
        assert cache.get("teachers") == (True, [])

    def test_pending_write_holds_back_change(self, cache):
        """Test a queued local write wins over a broadcast until it is pushed."""
        outbox = Outbox(":memory:", "teacher-portal")
        outbox.connect()
        broadcaster = ChangeBroadcaster(
            BroadcastConfig(), "teacher-portal", cache=cache, outbox=outbox
        )
        received = []
        broadcaster.subscribe("teachers", received.append)
        cache.set("teachers", ["local"])
        entry = outbox.enqueue("teachers", ["local"])

        count = broadcaster.deliver(
            ChangeEvent(key="teachers", value=["admin"], origin="admin-console")
        )

        assert count == 0
        assert received == []
        assert cache.get("teachers") == (True, ["local"])
        assert broadcaster.deferred_keys() == []

        outbox.mark_synced([entry.id])
        assert broadcaster.deferred_keys() == ["teachers"]

        broadcaster.clear_deferred("teachers")
        assert broadcaster.deferred_keys() == []
        outbox.close()

    def test_own_echo_with_pending_write_not_deferred(self, cache):
        outbox = Outbox(":memory:", "teacher-portal")
        outbox.connect()
        broadcaster = ChangeBroadcaster(
            BroadcastConfig(), "teacher-portal", cache=cache, outbox=outbox
        )
        entry = outbox.enqueue("teachers", ["second"])

        broadcaster.deliver(
            ChangeEvent(key="teachers", value=["first"], origin="teacher-portal")
        )
        outbox.mark_synced([entry.id])

        assert cache.get("teachers") == (False, None)
        assert broadcaster.deferred_keys() == []
        outbox.close()

    def test_own_changes_delivered_when_configured(self, cache):
        broadcaster = ChangeBroadcaster(
            BroadcastConfig(skip_own_changes=False), "teacher-portal", cache=cache
        )
        received = []
        broadcaster.subscribe("teachers", received.append)

        broadcaster.deliver(ChangeEvent(key="teachers", value=[], origin="teacher-portal"))

        assert len(received) == 1

    def test_failing_listener_isolated(self, broadcaster):
        """Test one failing listener does not stop the others."""
        received = []

        def broken(event):
            raise RuntimeError("listener bug")

        broadcaster.subscribe("teachers", broken)
        broadcaster.subscribe("teachers", received.append)

        count = broadcaster.deliver(ChangeEvent(key="teachers", value=[], origin="x"))

        assert count == 1
        assert len(received) == 1

    def test_unsubscribe(self, broadcaster):
        received = []
        subscription = broadcaster.subscribe("teachers", received.append)

        broadcaster.unsubscribe(subscription)
        broadcaster.deliver(ChangeEvent(key="teachers", value=[], origin="x"))

        assert received == []
        assert subscription.active is False
        assert broadcaster.listener_count("teachers") == 0

    def test_listener_count(self, broadcaster):
        broadcaster.subscribe("teachers", lambda e: None)
        broadcaster.subscribe("teachers", lambda e: None)
        broadcaster.subscribe_all(lambda e: None)

        assert broadcaster.listener_count("teachers") == 2
        assert broadcaster.listener_count() == 3

    def test_subscribe_sensitive_key(self, broadcaster):
        with pytest.raises(SensitiveKeyError):
            broadcaster.subscribe("principal-auth", lambda e: None)

    def test_extra_sensitive_keys(self, cache):
        broadcaster = ChangeBroadcaster(
            BroadcastConfig(), "teacher-portal", cache=cache, extra_sensitive_keys=["fees"]
        )

        with pytest.raises(SensitiveKeyError):
            broadcaster.subscribe("fees", lambda e: None)


class TestIncomingMessages:
    """Tests for the paho message callback."""

    def test_message_delivered(self, broadcaster, cache):
        """Test a message without a running loop is delivered directly."""
        event = ChangeEvent(key="gallery", value=[{"title": "Fair"}], origin="admin-console")

        broadcaster._handle_message(
            None, None, _message("schoolkv/kv/gallery", event.to_payload().encode())
        )

        assert cache.get("gallery") == (True, [{"title": "Fair"}])

    def test_malformed_message_dropped(self, broadcaster, cache):
        broadcaster._handle_message(None, None, _message("schoolkv/kv/gallery", b"\xff\xfe"))
        broadcaster._handle_message(None, None, _message("schoolkv/kv/gallery", b"[1, 2]"))
        broadcaster._handle_message(
            None,
            None,
            _message("schoolkv/kv/gallery", {"key": "gallery", "value": [], "updated_at": 5}),
        )

        assert cache.keys() == []

    def test_key_mismatch_dropped(self, broadcaster, cache):
        broadcaster._handle_message(
            None,
            None,
            _message("schoolkv/kv/gallery", {"key": "teachers", "value": [], "origin": "x"}),
        )

        assert cache.keys() == []

    def test_unrelated_topic_ignored(self, broadcaster, cache):
        broadcaster._handle_message(
            None,
            None,
            _message("elsewhere/kv/gallery", {"key": "gallery", "value": [], "origin": "x"}),
        )

        assert cache.keys() == []


class TestSubscriptionTopics:
    """Tests for broker subscriptions."""

    def test_cache_uses_wildcard_on_connect(self, broadcaster):
        """Test a broadcaster with a cache subscribes to every key."""
        client = MagicMock()
        broadcaster.subscribe("teachers", lambda e: None)

        broadcaster._handle_connect(client, None, None, 0)

        client.subscribe.assert_called_once_with("schoolkv/kv/+")
        assert broadcaster.is_connected

    def test_listener_topics_without_cache(self):
        broadcaster = ChangeBroadcaster(BroadcastConfig(), "remote-store")
        client = MagicMock()
        broadcaster.subscribe("teachers", lambda e: None)
        broadcaster.subscribe("gallery", lambda e: None)

        broadcaster._handle_connect(client, None, None, 0)

        subscribed = [c.args[0] for c in client.subscribe.call_args_list]
        assert subscribed == ["schoolkv/kv/teachers", "schoolkv/kv/gallery"]

    def test_failed_connect(self, broadcaster):
        client = MagicMock()

        broadcaster._handle_connect(client, None, None, 5)

        assert not broadcaster.is_connected
        client.subscribe.assert_not_called()

    def test_disconnect_callback(self, broadcaster):
        broadcaster._connected = True

        broadcaster._handle_disconnect(None, None, None, 7)

        assert not broadcaster.is_connected


class TestPublish:
    """Tests for publishing changes."""

    @pytest.mark.asyncio
    async def test_publish_not_connected(self, broadcaster):
        assert await broadcaster.publish_change(ChangeEvent(key="gallery", value=[])) is False

    @pytest.mark.asyncio
    async def test_publish_sensitive_key(self, broadcaster):
        broadcaster._connected = True

        with pytest.raises(SensitiveKeyError):
            await broadcaster.publish_change(ChangeEvent(key="teacher-credentials", value={}))

    @pytest.mark.asyncio
    async def test_publish(self, broadcaster):
        broadcaster._connected = True
        event = ChangeEvent(key="gallery", value=[], origin="admin-console")

        with patch.object(
            broadcaster._client,
            "publish",
            return_value=MagicMock(rc=mqtt.MQTT_ERR_SUCCESS),
        ) as publish:
            assert await broadcaster.publish_change(event) is True

        topic, payload = publish.call_args.args
        assert topic == "schoolkv/kv/gallery"
        assert json.loads(payload)["origin"] == "admin-console"
