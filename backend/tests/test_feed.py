"""Tests for message feed reconciliation (backfill + live stream)."""
import random
from datetime import timedelta

import pytest

from roomsync.chat.feed import FeedState, MessageFeedReconciler, merge_message, remove_message
from roomsync.chat.profiles import ProfileDirectory
from roomsync.datasource.memory import InMemoryDataService
from roomsync.datasource.schemas import MESSAGES_TABLE, ChangeEvent, EventType, Message
from roomsync.errors import TransientFetchError

from .conftest import BASE_TIME


def make_message(message_id: str, minute: int, room_id: str = "general", user_id: str = "alice") -> Message:
    return Message(
        id=message_id,
        room_id=room_id,
        user_id=user_id,
        body=f"body {message_id}",
        created_at=BASE_TIME + timedelta(minutes=minute),
    )


def insert_event(message: Message) -> ChangeEvent:
    return ChangeEvent(type=EventType.INSERT, table=MESSAGES_TABLE, new=message.to_record())


def delete_event(message_id: str, room_id: str = "general") -> ChangeEvent:
    return ChangeEvent(type=EventType.DELETE, table=MESSAGES_TABLE, old={"id": message_id, "room_id": room_id})


class RacingDataService(InMemoryDataService):
    """Commits and delivers live inserts while the backfill query is in flight."""

    def __init__(self, *args, racing=None, **kwargs):
        super().__init__(*args, **kwargs)
        self.racing = list(racing or [])

    async def fetch_messages(self, room_id, limit):
        for user_id, body in self.racing:
            await self.insert_message(room_id, user_id, body)
        self.racing = []
        return await super().fetch_messages(room_id, limit)


class TestMergeFunctions:
    """Tests for the pure feed transitions."""

    def test_merge_appends_newer_message(self):
        feed = (make_message("a", 1),)
        result = merge_message(feed, make_message("b", 2))
        assert [m.id for m in result] == ["a", "b"]

    def test_merge_inserts_older_message_in_order(self):
        feed = (make_message("a", 1), make_message("c", 3))
        result = merge_message(feed, make_message("b", 2))
        assert [m.id for m in result] == ["a", "b", "c"]

    def test_merge_duplicate_returns_same_tuple(self):
        feed = (make_message("a", 1),)
        assert merge_message(feed, make_message("a", 1)) is feed

    def test_merge_tie_keeps_arrival_order(self):
        feed = (make_message("a", 1), make_message("b", 1))
        result = merge_message(feed, make_message("c", 1))
        assert [m.id for m in result] == ["a", "b", "c"]

    def test_merge_does_not_mutate_previous_feed(self):
        feed = (make_message("a", 1),)
        merge_message(feed, make_message("b", 2))
        assert len(feed) == 1

    def test_remove_message(self):
        feed = (make_message("a", 1), make_message("b", 2))
        assert [m.id for m in remove_message(feed, "a")] == ["b"]

    def test_remove_absent_is_noop(self):
        feed = (make_message("a", 1),)
        assert remove_message(feed, "zzz") is feed


class TestReconcilerOpen:
    """Tests for opening a feed."""

    @pytest.mark.asyncio
    async def test_backfill_loads_ascending(self, service):
        service.seed_message("general", "bob", "second", BASE_TIME + timedelta(minutes=2))
        service.seed_message("general", "alice", "first", BASE_TIME + timedelta(minutes=1))
        service.seed_message("random", "alice", "elsewhere", BASE_TIME)

        feed = MessageFeedReconciler(service, "general")
        messages = await feed.open()

        assert [m.body for m in messages] == ["first", "second"]
        assert feed.state == FeedState.LIVE
        await feed.close()

    @pytest.mark.asyncio
    async def test_backfill_takes_most_recent_limit(self, service):
        for minute in range(150):
            service.seed_message("general", "alice", f"m{minute}", BASE_TIME + timedelta(minutes=minute))

        feed = MessageFeedReconciler(service, "general")
        messages = await feed.open()

        assert len(messages) == 100
        assert messages[0].body == "m50"
        assert messages[-1].body == "m149"
        await feed.close()

    @pytest.mark.asyncio
    async def test_live_insert_during_backfill_is_not_duplicated(self, clock):
        service = RacingDataService(clock=clock, racing=[("bob", "racing message")])
        service.seed_message("general", "alice", "old", BASE_TIME - timedelta(minutes=5))

        feed = MessageFeedReconciler(service, "general")
        messages = await feed.open()

        assert [m.body for m in messages] == ["old", "racing message"]
        assert len({m.id for m in messages}) == len(messages)
        await feed.close()

    @pytest.mark.asyncio
    async def test_live_insert_after_open_appends(self, service, clock):
        feed = MessageFeedReconciler(service, "general")
        await feed.open()

        clock.advance(minutes=1)
        await service.insert_message("general", "bob", "hello")

        assert [m.body for m in feed.messages] == ["hello"]
        await feed.close()

    @pytest.mark.asyncio
    async def test_other_room_inserts_are_ignored(self, service):
        feed = MessageFeedReconciler(service, "general")
        await feed.open()

        await service.insert_message("random", "bob", "not here")

        assert feed.messages == ()
        await feed.close()

    @pytest.mark.asyncio
    async def test_open_twice_raises(self, service):
        feed = MessageFeedReconciler(service, "general")
        await feed.open()
        with pytest.raises(RuntimeError):
            await feed.open()
        await feed.close()


class TestReconcilerEvents:
    """Tests for live event handling."""

    @pytest.mark.asyncio
    async def test_duplicate_insert_events_leave_one_entry(self, service):
        feed = MessageFeedReconciler(service, "general")
        await feed.open()
        message = make_message("dup-1", 1)

        await service.publish(insert_event(message))
        await service.publish(insert_event(message))

        assert [m.id for m in feed.messages] == ["dup-1"]
        await feed.close()

    @pytest.mark.asyncio
    async def test_delete_removes_message(self, service):
        seeded = service.seed_message("general", "alice", "bye", BASE_TIME)
        feed = MessageFeedReconciler(service, "general")
        await feed.open()

        await service.delete_message(seeded.id)

        assert feed.messages == ()
        await feed.close()

    @pytest.mark.asyncio
    async def test_delete_of_unknown_id_is_not_an_error(self, service):
        feed = MessageFeedReconciler(service, "general")
        await feed.open()

        await service.publish(delete_event("never-seen"))

        assert feed.messages == ()
        assert feed.state == FeedState.LIVE
        await feed.close()

    @pytest.mark.asyncio
    async def test_deleted_message_does_not_come_back_from_late_insert(self, service):
        feed = MessageFeedReconciler(service, "general")
        await feed.open()
        message = make_message("gone", 1)

        await service.publish(delete_event("gone"))
        await service.publish(insert_event(message))

        assert feed.messages == ()
        await feed.close()

    @pytest.mark.asyncio
    async def test_malformed_event_is_dropped(self, service):
        feed = MessageFeedReconciler(service, "general")
        await feed.open()

        await service.publish(ChangeEvent(
            type=EventType.INSERT, table=MESSAGES_TABLE, new={"room_id": "general", "message": "no id"}
        ))
        await service.publish(insert_event(make_message("ok", 1)))

        assert [m.id for m in feed.messages] == ["ok"]
        await feed.close()

    @pytest.mark.asyncio
    async def test_on_message_hook_skips_duplicates(self, service):
        landed = []
        feed = MessageFeedReconciler(service, "general", on_message=landed.append)
        await feed.open()
        message = make_message("m1", 1, user_id="bob")

        await service.publish(insert_event(message))
        await service.publish(insert_event(message))

        assert [m.id for m in landed] == ["m1"]
        await feed.close()

    @pytest.mark.asyncio
    async def test_listeners_receive_snapshots(self, service):
        snapshots = []
        feed = MessageFeedReconciler(service, "general")
        feed.add_listener(snapshots.append)
        await feed.open()

        await service.publish(insert_event(make_message("m1", 1)))

        assert snapshots[-1] == feed.messages
        assert [m.id for m in snapshots[-1]] == ["m1"]
        await feed.close()

    @pytest.mark.asyncio
    async def test_events_after_close_are_ignored(self, service):
        feed = MessageFeedReconciler(service, "general")
        await feed.open()
        await feed.close()
        await feed.close()

        await feed._on_change(insert_event(make_message("late", 1)))

        assert feed.messages == ()
        assert service.subscription_count == 0

    @pytest.mark.asyncio
    @pytest.mark.parametrize("seed", [1, 7, 42, 1234])
    async def test_interleaved_duplicates_converge(self, service, seed):
        """Any interleaving of duplicates and deletes yields a unique sorted feed."""
        rng = random.Random(seed)
        pool = [make_message(f"m{i}", rng.randint(0, 5)) for i in range(12)]
        backfilled = pool[:6]
        for message in backfilled:
            service.messages.append(message)

        feed = MessageFeedReconciler(service, "general")
        await feed.open()

        deleted = set(rng.sample([m.id for m in pool], 3))
        events = [insert_event(m) for m in pool for _ in range(rng.randint(1, 3))]
        events += [delete_event(message_id) for message_id in deleted]
        rng.shuffle(events)
        for event in events:
            await service.publish(event)

        ids = [m.id for m in feed.messages]
        assert len(ids) == len(set(ids))
        assert set(ids) == {m.id for m in pool} - deleted
        stamps = [m.created_at for m in feed.messages]
        assert stamps == sorted(stamps)
        await feed.close()


class TestReconcilerFailures:
    """Tests for backfill and subscription failures."""

    @pytest.mark.asyncio
    async def test_backfill_failure_leaves_feed_empty(self, service):
        service.seed_message("general", "alice", "x", BASE_TIME)
        service.fail_next("fetch_messages")
        feed = MessageFeedReconciler(service, "general")

        with pytest.raises(TransientFetchError) as exc_info:
            await feed.open()

        assert exc_info.value.retryable is True
        assert feed.messages == ()
        assert feed.state == FeedState.FAILED
        assert service.subscription_count == 0

    @pytest.mark.asyncio
    async def test_subscription_failure_marks_stale(self, service, clock):
        service.seed_message("general", "alice", "x", BASE_TIME)
        service.fail_next("subscribe")
        feed = MessageFeedReconciler(service, "general")

        messages = await feed.open()

        assert len(messages) == 1
        assert feed.stale is True

        clock.advance(minutes=1)
        await service.insert_message("general", "bob", "missed")
        assert len(feed.messages) == 1

        assert await feed.retry_subscription() is True
        assert feed.state == FeedState.LIVE
        await service.insert_message("general", "bob", "delivered")
        assert [m.body for m in feed.messages] == ["x", "delivered"]
        await feed.close()


class TestProfileLabels:
    """Tests for display-name resolution alongside the feed."""

    @pytest.mark.asyncio
    async def test_names_resolve_after_open(self, service):
        service.seed_message("general", "alice", "hi", BASE_TIME)
        profiles = ProfileDirectory(service)
        feed = MessageFeedReconciler(service, "general", profiles=profiles)
        await feed.open()

        assert await profiles.resolve("alice") == "Alice"
        assert profiles.name_for("alice") == "Alice"
        assert profiles.name_for("nobody") == "Unknown"
        await feed.close()
        await profiles.close()

    @pytest.mark.asyncio
    async def test_failed_lookup_falls_back_to_unknown(self, service):
        profiles = ProfileDirectory(service)
        service.fail_next("fetch_profile_name")

        assert await profiles.resolve("alice") == "Unknown"
        assert profiles.name_for("alice") == "Unknown"
        assert await profiles.resolve("alice") == "Alice"
