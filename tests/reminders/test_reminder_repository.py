"""Tests for ReminderRepository: add/remove/list and the pop_due algorithm."""

import json
import threading
from datetime import UTC, datetime, timedelta, timezone
from unittest.mock import MagicMock

import pytest
from structlog.testing import capture_logs

from chime.core.errors import StorageError, ValidationError
from chime.reminders.models import DIRECT, DeliveryTarget, ScheduledItem
from chime.reminders.repository import ReminderRepository
from chime.reminders.storage import JsonFileStore

SECOND = timedelta(seconds=1)
MINUTE = timedelta(minutes=1)


class TestAdd:
    def test_add_assigns_id_and_persists(self, repository, clock, store_path):
        item = repository.add("user-1", DIRECT, "stretch", clock.now() + 10 * MINUTE)

        assert item.id
        assert item.created_at == clock.now()
        assert repository.get(item.id) == item
        assert [r["id"] for r in json.loads(store_path.read_text())["items"]] == [item.id]

    def test_ids_are_unique(self, repository, clock):
        ids = {repository.add("u", DIRECT, "x", clock.now() + MINUTE).id for _ in range(20)}
        assert len(ids) == 20

    def test_due_at_normalized_to_utc(self, repository, clock):
        local = (clock.now() + MINUTE).astimezone(timezone(timedelta(hours=-5)))
        item = repository.add("u", DIRECT, "x", local)
        assert item.due_at == clock.now() + MINUTE
        assert item.due_at.utcoffset() == timedelta(0)

    def test_rejects_naive_due_at(self, repository):
        with pytest.raises(ValidationError, match="naive"):
            repository.add("u", DIRECT, "x", datetime(2025, 1, 1, 12, 0))

    def test_rejects_far_past_due_at(self, repository, clock):
        with pytest.raises(ValidationError, match="in the past"):
            repository.add("u", DIRECT, "x", clock.now() - timedelta(days=2))
        assert repository.count() == 0

    def test_accepts_recent_past_due_at(self, repository, clock):
        item = repository.add("u", DIRECT, "x", clock.now() - SECOND)
        assert item.due_at < clock.now()

    @pytest.mark.parametrize("interval", [timedelta(0), -MINUTE, 60])
    def test_rejects_bad_repeat_interval(self, repository, clock, interval):
        with pytest.raises(ValidationError, match="repeat_interval"):
            repository.add("u", DIRECT, "x", clock.now() + MINUTE, repeat_interval=interval)

    def test_rejects_repeat_interval_above_maximum(self, repository, clock):
        with pytest.raises(ValidationError, match="exceeds the maximum"):
            repository.add(
                "u", DIRECT, "x", clock.now() + MINUTE, repeat_interval=timedelta(days=999_999_999)
            )
        assert repository.count() == 0

    def test_rejects_out_of_range_due_at(self, repository):
        far = datetime(9999, 12, 31, 23, 0, tzinfo=timezone(timedelta(hours=-5)))
        with pytest.raises(ValidationError, match="out of range"):
            repository.add("u", DIRECT, "x", far)

    def test_rejects_recurring_due_at_without_next_occurrence(self, repository):
        last_minute = datetime.max.replace(tzinfo=UTC) - MINUTE
        with pytest.raises(ValidationError, match="no room"):
            repository.add("u", DIRECT, "x", last_minute, repeat_interval=timedelta(days=1))
        assert repository.count() == 0

    @pytest.mark.parametrize("owner", ["", "   ", None])
    def test_rejects_empty_owner(self, repository, clock, owner):
        with pytest.raises(ValidationError):
            repository.add(owner, DIRECT, "x", clock.now() + MINUTE)

    def test_failed_save_adds_nothing(self, clock):
        store = MagicMock()
        store.load.return_value = []
        store.save.side_effect = StorageError("disk full")
        repository = ReminderRepository(store, clock=clock)

        with pytest.raises(StorageError):
            repository.add("u", DIRECT, "x", clock.now() + MINUTE)
        assert repository.count() == 0


class TestListAndRemove:
    def test_list_for_is_ordered_and_scoped(self, repository, clock):
        later = repository.add("u1", DIRECT, "later", clock.now() + 10 * MINUTE)
        sooner = repository.add("u1", DIRECT, "sooner", clock.now() + MINUTE)
        repository.add("u2", DIRECT, "other", clock.now() + 5 * MINUTE)

        assert [i.id for i in repository.list_for("u1")] == [sooner.id, later.id]
        assert repository.list_for("nobody") == []

    def test_list_for_is_non_destructive(self, repository, clock):
        repository.add("u1", DIRECT, "x", clock.now() - SECOND)
        repository.list_for("u1")
        assert len(repository.list_for("u1")) == 1

    def test_remove_own_item(self, repository, clock, json_store):
        item = repository.add("u1", DIRECT, "x", clock.now() + MINUTE)
        assert repository.remove("u1", item.id) is True
        assert repository.get(item.id) is None
        assert json_store.load() == []

    def test_remove_requires_matching_owner(self, repository, clock):
        item = repository.add("u1", DIRECT, "x", clock.now() + MINUTE)
        assert repository.remove("u2", item.id) is False
        assert repository.get(item.id) is not None

    def test_owner_is_normalized_on_every_lookup(self, repository, clock):
        item = repository.add("u1 ", DIRECT, "x", clock.now() + MINUTE)

        assert item.owner_id == "u1"
        assert [i.id for i in repository.list_for("u1 ")] == [item.id]
        assert [i.id for i in repository.list_for("u1")] == [item.id]
        assert repository.remove(" u1 ", item.id) is True
        assert repository.count() == 0

    def test_remove_missing(self, repository):
        assert repository.remove("u1", "nope") is False

    def test_next_due_at(self, repository, clock):
        assert repository.next_due_at() is None
        repository.add("u", DIRECT, "x", clock.now() + 5 * MINUTE)
        repository.add("u", DIRECT, "y", clock.now() + MINUTE)
        assert repository.next_due_at() == clock.now() + MINUTE


class TestPopDue:
    def test_one_shot_due_item_popped_once(self, repository, clock):
        item = repository.add("u1", DIRECT, "ping", clock.now() - SECOND)

        assert repository.pop_due(clock.now()) == [item]
        assert repository.list_for("u1") == []
        assert repository.pop_due(clock.now()) == []

    def test_recurring_item_reschedules_without_backlog(self, repository, clock):
        now = clock.now()
        original = now - 90 * SECOND
        item = repository.add("u1", DIRECT, "tick", original, repeat_interval=MINUTE)

        popped = repository.pop_due(now)
        assert [p.id for p in popped] == [item.id]
        assert popped[0].due_at == original

        stored = repository.get(item.id)
        assert now < stored.due_at <= now + MINUTE
        assert (stored.due_at - original) % MINUTE == timedelta(0)
        assert repository.pop_due(now) == []

    def test_recurring_item_moves_past_lookahead_horizon(self, repository, clock):
        now = clock.now()
        item = repository.add("u1", DIRECT, "tick", now + SECOND, repeat_interval=2 * SECOND)

        assert len(repository.pop_due(now, lookahead=2 * SECOND)) == 1
        assert repository.get(item.id).due_at > now + 2 * SECOND

    def test_zero_lookahead_includes_exactly_now(self, repository, clock):
        now = clock.now()
        exact = repository.add("u1", DIRECT, "exact", now)
        repository.add("u1", DIRECT, "later", now + timedelta(microseconds=1))

        assert repository.pop_due(now, timedelta(0)) == [exact]

    def test_lookahead_catches_items_between_ticks(self, repository, clock):
        now = clock.now()
        item = repository.add("u1", DIRECT, "soon", now + 1500 * timedelta(milliseconds=1))
        assert repository.pop_due(now) == []
        assert repository.pop_due(now, lookahead=2 * SECOND) == [item]

    def test_returns_oldest_first(self, repository, clock):
        now = clock.now()
        c = repository.add("u", DIRECT, "c", now - 1 * SECOND)
        a = repository.add("u", DIRECT, "a", now - 30 * SECOND)
        b = repository.add("u", DeliveryTarget("g", "c"), "b", now - 10 * SECOND, repeat_interval=MINUTE)

        assert [i.payload for i in repository.pop_due(now)] == ["a", "b", "c"]
        assert {a.id, c.id}.isdisjoint(i.id for i in repository.all())
        assert repository.get(b.id) is not None

    def test_nothing_due_does_not_save(self, clock):
        store = MagicMock()
        store.load.return_value = []
        repository = ReminderRepository(store, clock=clock)

        assert repository.pop_due(clock.now()) == []
        store.save.assert_not_called()

    def test_one_save_per_pop(self, clock):
        store = MagicMock()
        store.load.return_value = []
        repository = ReminderRepository(store, clock=clock)
        for n in range(5):
            repository.add("u", DIRECT, str(n), clock.now() - SECOND)
        store.save.reset_mock()

        assert len(repository.pop_due(clock.now())) == 5
        assert store.save.call_count == 1

    def test_failed_save_pops_nothing(self, clock):
        store = MagicMock()
        store.load.return_value = []
        repository = ReminderRepository(store, clock=clock)
        item = repository.add("u", DIRECT, "x", clock.now() - SECOND)
        store.save.side_effect = StorageError("disk full")

        with pytest.raises(StorageError):
            repository.pop_due(clock.now())
        assert repository.get(item.id) == item

    def test_state_survives_reload(self, repository, clock, json_store):
        now = clock.now()
        repository.add("u1", DIRECT, "one-shot", now - SECOND)
        recurring = repository.add("u1", DIRECT, "daily", now - SECOND, repeat_interval=timedelta(days=1))
        future = repository.add("u2", DIRECT, "future", now + MINUTE)
        repository.pop_due(now)

        reloaded = ReminderRepository(json_store, clock=clock)
        assert {i.id: i for i in reloaded.all()} == {i.id: i for i in repository.all()}
        assert {i.id for i in reloaded.all()} == {recurring.id, future.id}

    def test_exhausted_recurring_item_does_not_block_batch(self, clock):
        now = clock.now()
        one_shot = ScheduledItem("ok", "u1", DIRECT, "ok", now - SECOND)
        endless = ScheduledItem(
            "endless", "u2", DIRECT, "far", now - 2 * SECOND, repeat_interval=timedelta(days=999_999_999)
        )
        store = MagicMock()
        store.load.return_value = [one_shot, endless]
        repository = ReminderRepository(store, clock=clock)

        with capture_logs() as logs:
            due = repository.pop_due(now)

        assert [item.id for item in due] == ["endless", "ok"]
        assert repository.count() == 0
        store.save.assert_called_once_with([])
        exhausted = [log for log in logs if log["event"] == "reminder_schedule_exhausted"]
        assert exhausted[0]["item_id"] == "endless"
        assert exhausted[0]["log_level"] == "error"

    def test_concurrent_pops_never_return_same_item(self, repository, clock):
        now = clock.now()
        for n in range(40):
            repository.add("u", DIRECT, str(n), now - SECOND)

        popped: list[ScheduledItem] = []
        popped_lock = threading.Lock()
        barrier = threading.Barrier(6)

        def worker() -> None:
            barrier.wait()
            for _ in range(5):
                items = repository.pop_due(now)
                with popped_lock:
                    popped.extend(items)

        threads = [threading.Thread(target=worker) for _ in range(6)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join(timeout=10)

        ids = [item.id for item in popped]
        assert len(ids) == 40
        assert len(set(ids)) == 40
        assert repository.count() == 0

    def test_add_remove_and_pop_are_mutually_exclusive(self, repository, clock, json_store):
        now = clock.now()
        contested = [repository.add("u1", DIRECT, f"due-{n}", now - SECOND).id for n in range(30)]
        doomed = [repository.add("u2", DIRECT, f"later-{n}", now + MINUTE).id for n in range(30)]

        popped: list[str] = []
        removed: list[str] = []
        doomed_removed: list[bool] = []
        added: list[str] = []
        results_lock = threading.Lock()
        barrier = threading.Barrier(4)

        def popper() -> None:
            barrier.wait()
            for _ in range(20):
                items = repository.pop_due(now)
                with results_lock:
                    popped.extend(item.id for item in items)

        def remover() -> None:
            barrier.wait()
            for item_id in contested:
                if repository.remove("u1", item_id):
                    with results_lock:
                        removed.append(item_id)
            for item_id in doomed:
                outcome = repository.remove("u2", item_id)
                with results_lock:
                    doomed_removed.append(outcome)

        def adder() -> None:
            barrier.wait()
            for n in range(30):
                item = repository.add("u3", DIRECT, f"new-{n}", now + 2 * MINUTE)
                with results_lock:
                    added.append(item.id)

        threads = [threading.Thread(target=fn) for fn in (popper, popper, remover, adder)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join(timeout=10)
        popped.extend(item.id for item in repository.pop_due(now))

        assert sorted(popped + removed) == sorted(contested)
        assert not set(popped) & set(removed)
        assert not set(popped) & set(doomed)
        assert doomed_removed == [True] * len(doomed)
        assert {item.id for item in repository.all()} == set(added)

        reloaded = ReminderRepository(json_store, clock=clock)
        assert reloaded.all() == repository.all()


class TestLoad:
    def test_loads_existing_items(self, json_store, clock):
        json_store.save([ScheduledItem("r-1", "u", DIRECT, "x", clock.now() + MINUTE)])
        assert ReminderRepository(json_store, clock=clock).count() == 1

    def test_duplicate_ids_keep_first(self, store_path, clock):
        record = ScheduledItem("dup", "u", DIRECT, "first", clock.now() + MINUTE).to_dict()
        second = dict(record, payload="second")
        store_path.write_text(json.dumps({"version": 1, "items": [record, second]}))

        with capture_logs() as logs:
            repository = ReminderRepository(JsonFileStore(store_path), clock=clock)

        assert repository.count() == 1
        assert repository.get("dup").payload == "first"
        assert any(log["event"] == "reminder_duplicate_id_dropped" for log in logs)

    def test_corrupt_store_starts_empty(self, store_path, clock):
        store_path.write_text("{truncated")
        repository = ReminderRepository(JsonFileStore(store_path), clock=clock)
        assert repository.count() == 0

    def test_flush_rewrites_store(self, repository, clock, store_path):
        repository.add("u", DIRECT, "x", clock.now() + MINUTE)
        store_path.unlink()
        repository.flush()
        assert len(json.loads(store_path.read_text())["items"]) == 1
