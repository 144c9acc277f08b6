"""Tests for the REST and WebSocket surface."""
from datetime import timedelta

import pytest
from fastapi.testclient import TestClient

from roomsync.config import AppConfig, set_config
from roomsync.datasource.memory import InMemoryDataService
from roomsync.engine import SyncEngine, set_engine
from roomsync.main import app
from roomsync.unread.store import WatermarkStore

from .conftest import BASE_TIME, ME


@pytest.fixture
def engine():
    """Engine over a seeded in-memory backend, installed before startup."""
    config = AppConfig(
        client={"user_id": ME, "display_name": "Me"},
        watermarks={"db_path": ":memory:"},
    )
    data = InMemoryDataService()
    data.add_room("general", "General", "Everything", created_at=BASE_TIME - timedelta(days=2))
    data.add_room("random", "Random", created_at=BASE_TIME - timedelta(days=1))
    data.seed_message("general", "alice", "hello", BASE_TIME)
    data.seed_message("general", "bob", "hey", BASE_TIME + timedelta(minutes=1))
    data.seed_message("general", ME, "mine", BASE_TIME + timedelta(minutes=2))
    data.set_profile("alice", "Alice")
    data.set_profile("bob", "Bob")

    WatermarkStore.reset_instance()
    sync_engine = SyncEngine(config, data_service=data)
    sync_engine.profiles.remember("alice", "Alice")
    sync_engine.profiles.remember("bob", "Bob")

    set_config(config)
    set_engine(sync_engine)
    yield sync_engine
    set_engine(None)
    set_config(None)
    WatermarkStore.reset_instance()


@pytest.fixture
def client(engine):
    with TestClient(app) as test_client:
        yield test_client


class TestHealth:
    """Tests for the health endpoint."""

    def test_health_reports_live_stream(self, client):
        response = client.get("/health")

        assert response.status_code == 200
        assert response.json() == {"status": "ok", "unreadStream": "live"}


class TestUnreadEndpoints:
    """Tests for the unread REST endpoints."""

    def test_initial_counts(self, client):
        response = client.get("/unread")

        assert response.status_code == 200
        assert response.json() == {"counts": {"general": 2, "random": 0}, "total": 2}

    def test_rooms_listed_in_creation_order(self, client):
        data = client.get("/rooms").json()

        assert [room["id"] for room in data["rooms"]] == ["general", "random"]
        general = data["rooms"][0]
        assert general["name"] == "General"
        assert general["description"] == "Everything"
        assert general["unreadCount"] == 2
        assert general["badge"] == "2"
        assert data["totalUnread"] == 2

    def test_mark_read_zeroes_room(self, client, engine):
        response = client.post("/rooms/general/read")

        assert response.status_code == 200
        assert response.json()["roomId"] == "general"
        assert engine.counter.count_for("general") == 0

        refreshed = client.post("/unread/refresh").json()
        assert refreshed["counts"]["general"] == 0
        assert refreshed["total"] == 0

    def test_room_list_failure_returns_503(self, client, engine):
        engine.data.fail_next("list_rooms")

        response = client.get("/rooms")

        assert response.status_code == 503


class TestRoomWebSocket:
    """Tests for the realtime room WebSocket."""

    def test_initial_feed_frame(self, client, engine):
        with client.websocket_connect("/ws/rooms/general") as ws:
            frame = ws.receive_json()

            assert frame["type"] == "feed"
            assert frame["roomId"] == "general"
            assert frame["stale"] is False
            assert [m["content"] for m in frame["messages"]] == ["hello", "hey", "mine"]
            assert [m["senderName"] for m in frame["messages"]] == ["Alice", "Bob", "Me"]
            assert [m["isOwn"] for m in frame["messages"]] == [False, False, True]
            assert engine.counter.count_for("general") == 0
            assert engine.counter.active_room == "general"

    def test_posted_message_comes_back_in_feed(self, client):
        with client.websocket_connect("/ws/rooms/general") as ws:
            ws.receive_json()

            ws.send_json({"type": "message", "content": "  new message  "})
            frame = ws.receive_json()

            assert frame["type"] == "feed"
            assert frame["messages"][-1]["content"] == "new message"
            assert frame["messages"][-1]["isOwn"] is True

    def test_empty_message_returns_error_frame(self, client):
        with client.websocket_connect("/ws/rooms/general") as ws:
            ws.receive_json()

            ws.send_json({"type": "message", "content": "   "})
            frame = ws.receive_json()

            assert frame["type"] == "error"
            assert "cannot be empty" in frame["error"]

    def test_resync_reports_live(self, client):
        with client.websocket_connect("/ws/rooms/general") as ws:
            ws.receive_json()

            ws.send_json({"type": "resync"})

            assert ws.receive_json() == {"type": "resync", "live": True}

    def test_non_object_frame_returns_error(self, client):
        with client.websocket_connect("/ws/rooms/general") as ws:
            ws.receive_json()

            ws.send_json([])
            assert ws.receive_json() == {"type": "error", "error": "Frame must be a JSON object"}

            ws.send_text("not json")
            assert ws.receive_json() == {"type": "error", "error": "Frame is not valid JSON"}

            ws.send_json({"type": "resync"})
            assert ws.receive_json() == {"type": "resync", "live": True}

    def test_typing_from_other_user_is_pushed(self, client, engine):
        with client.websocket_connect("/ws/rooms/general") as ws:
            ws.receive_json()

            presence = engine.rooms.session.presence
            client.portal.call(presence._on_broadcast, "user_typing", {"user_id": "alice", "name": "Alice"})

            frame = ws.receive_json()
            assert frame["type"] == "typing"
            assert frame["label"] == "Alice is typing..."

    def test_backfill_failure_sends_error(self, client, engine):
        engine.data.fail_next("fetch_messages")

        with client.websocket_connect("/ws/rooms/general") as ws:
            frame = ws.receive_json()

        assert frame["type"] == "error"
        assert frame["retryable"] is True
        assert engine.rooms.session is None


class TestEngineLifecycle:
    """Tests for the engine's ownership of the watermark store."""

    @pytest.mark.asyncio
    async def test_default_store_is_shared_and_reset_on_stop(self):
        WatermarkStore.reset_instance()
        config = AppConfig(client={"user_id": ME}, watermarks={"db_path": ":memory:"})
        sync_engine = SyncEngine(config, data_service=InMemoryDataService())
        try:
            assert sync_engine.store is WatermarkStore.get_instance()
            sync_engine.store.set(ME, "general", BASE_TIME)

            await sync_engine.stop()

            fresh = WatermarkStore.get_instance(":memory:")
            assert fresh is not sync_engine.store
            assert fresh.get(ME, "general") is None
        finally:
            WatermarkStore.reset_instance()

    @pytest.mark.asyncio
    async def test_injected_store_is_closed_not_shared(self, store):
        WatermarkStore.reset_instance()
        config = AppConfig(client={"user_id": ME})
        sync_engine = SyncEngine(config, data_service=InMemoryDataService(), store=store)

        await sync_engine.stop()

        assert WatermarkStore._instance is None
