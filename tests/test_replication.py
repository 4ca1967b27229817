import tempfile
import unittest
from datetime import datetime, timezone
from pathlib import Path
from unittest.mock import Mock

from taskfeed.errors import RemoteError
from taskfeed.models import Event, StoreSnapshot, Task
from taskfeed.reconciler import add_task, toggle_task
from taskfeed.remote import MemoryRemoteRecord, RemoteRecord
from taskfeed.replication import MAX_PENDING_TAGS, ReplicationCoordinator
from taskfeed.state_store import StateStore


CUTOFF = datetime(2026, 1, 1)


class FixedClock:
    def __init__(self) -> None:
        self.value = datetime(2026, 2, 1, 12, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.value


class ReplicationTests(unittest.TestCase):
    def setUp(self) -> None:
        self.temp_dir = tempfile.TemporaryDirectory()
        self.store = StateStore(str(Path(self.temp_dir.name) / "state.db"))

    def tearDown(self) -> None:
        self.temp_dir.cleanup()

    def _coordinator(self, remote=None, **kwargs) -> ReplicationCoordinator:
        return ReplicationCoordinator(self.store, remote, cutoff=CUTOFF, **kwargs)

    def test_local_only_mutation_persists(self) -> None:
        coordinator = self._coordinator()
        coordinator.start()
        task = coordinator.mutate(lambda s: add_task(s, title="Read chapter 4"), action="add_task")

        self.assertEqual(coordinator.status()["state"], "local")
        self.assertEqual([item.id for item in self.store.load_snapshot().tasks], [task.id])
        self.assertEqual([item.id for item in coordinator.snapshot().tasks], [task.id])

    def test_replica_id_is_stable_across_restarts(self) -> None:
        first = self._coordinator()
        second = self._coordinator()
        self.assertTrue(first.replica_id.startswith("replica-"))
        self.assertEqual(first.replica_id, second.replica_id)

    def test_missing_remote_record_is_seeded(self) -> None:
        self.store.save_snapshot(StoreSnapshot(tasks=[Task(id="t1", title="Existing")]))
        remote = MemoryRemoteRecord()
        coordinator = self._coordinator(remote, replica_id="replica-a")
        coordinator.start()

        self.assertEqual(len(remote.writes), 1)
        stored = remote.read()
        self.assertEqual([task["id"] for task in stored["tasks"]], ["t1"])
        self.assertEqual(stored["writerId"], "replica-a")
        self.assertFalse(coordinator.awaiting_own_write)
        self.assertEqual(coordinator.status()["state"], "saved")

    def test_own_echo_is_not_written_back(self) -> None:
        remote = MemoryRemoteRecord({"tasks": []})
        coordinator = self._coordinator(remote)
        coordinator.start()
        self.assertEqual(remote.writes, [])

        coordinator.mutate(lambda s: add_task(s, title="Lab report"), action="add_task")

        self.assertEqual(len(remote.writes), 1)
        self.assertFalse(coordinator.awaiting_own_write)
        self.assertEqual([task.title for task in coordinator.snapshot().tasks], ["Lab report"])

    def test_pending_flag_covers_delayed_echo(self) -> None:
        remote = MemoryRemoteRecord({"tasks": []}, auto_notify=False)
        coordinator = self._coordinator(remote)
        coordinator.start()

        coordinator.mutate(lambda s: add_task(s, title="Essay"), action="add_task")
        self.assertTrue(coordinator.awaiting_own_write)
        self.assertTrue(coordinator.status()["awaitingOwnWrite"])

        remote.flush()

        self.assertFalse(coordinator.awaiting_own_write)
        self.assertEqual(len(remote.writes), 1)
        self.assertEqual([task.title for task in coordinator.snapshot().tasks], ["Essay"])

    def test_back_to_back_writes_each_consume_their_echo(self) -> None:
        clock = FixedClock()
        remote = MemoryRemoteRecord({"tasks": []}, auto_notify=False)
        coordinator = self._coordinator(remote, clock=clock)
        coordinator.start()

        task = coordinator.mutate(lambda s: add_task(s, title="Quiz prep"), action="add_task")
        coordinator.mutate(lambda s: toggle_task(s, task.id), action="toggle_task")

        tags = [write["lastUpdated"] for write in remote.writes]
        self.assertEqual(len(tags), 2)
        self.assertLess(tags[0], tags[1])

        remote.flush()

        self.assertFalse(coordinator.awaiting_own_write)
        self.assertEqual(len(remote.writes), 2)
        self.assertTrue(coordinator.snapshot().tasks[0].completed)

    def test_foreign_update_replaces_local_state_without_write(self) -> None:
        self.store.save_snapshot(StoreSnapshot(tasks=[Task(id="mine", title="Local only")]))
        remote = MemoryRemoteRecord({"tasks": [{"id": "mine", "title": "Local only"}]})
        coordinator = self._coordinator(remote)
        coordinator.start()

        remote.replace_from_peer(
            {
                "events": [{"id": "E1", "title": "Quiz", "date": "2026-04-01T09:00"}],
                "tasks": [{"id": "peer", "title": "From laptop", "completed": True}],
                "sources": [],
                "ignoredEventIds": ["E0"],
                "lastUpdated": "2026-04-01T08:00:00.000000+00:00",
                "writerId": "replica-laptop",
            }
        )

        snapshot = coordinator.snapshot()
        self.assertEqual([task.id for task in snapshot.tasks], ["peer"])
        self.assertEqual(snapshot.ignored_event_ids, ["E0"])
        self.assertEqual(remote.writes, [])
        self.assertEqual(coordinator.status()["state"], "synced")
        self.assertEqual([task.id for task in self.store.load_snapshot().tasks], ["peer"])

    def test_foreign_update_with_expired_records_is_pruned_and_pushed_once(self) -> None:
        remote = MemoryRemoteRecord({"tasks": []})
        coordinator = self._coordinator(remote)
        coordinator.start()

        remote.replace_from_peer(
            {
                "events": [
                    {"id": "old", "title": "Old quiz", "date": "2025-11-03T09:00"},
                    {"id": "new", "title": "New quiz", "date": "2026-03-03T09:00"},
                ],
                "tasks": [{"id": "task-old", "title": "Old", "dueDate": "2025-11-03T09:00", "fromCalendar": True}],
            }
        )

        snapshot = coordinator.snapshot()
        self.assertEqual([event.id for event in snapshot.events], ["new"])
        self.assertEqual(snapshot.tasks, [])
        self.assertEqual(len(remote.writes), 1)
        self.assertEqual([event["id"] for event in remote.read()["events"]], ["new"])
        self.assertFalse(coordinator.awaiting_own_write)

    def test_write_failure_keeps_local_change(self) -> None:
        remote = Mock(spec=RemoteRecord)
        remote.write.side_effect = RemoteError("Remote write failed: 503")
        coordinator = self._coordinator(remote)

        task = coordinator.mutate(lambda s: add_task(s, title="Offline task"), action="add_task")

        self.assertEqual(coordinator.status()["state"], "error")
        self.assertFalse(coordinator.awaiting_own_write)
        self.assertEqual([item.id for item in self.store.load_snapshot().tasks], [task.id])
        failures = self.store.recent_audit_events(action="remote_write_failed")
        self.assertEqual(len(failures), 1)

    def test_listener_error_is_reported(self) -> None:
        coordinator = self._coordinator(MemoryRemoteRecord())
        coordinator.handle_remote_error(RemoteError("auth_revoked"))
        self.assertEqual(coordinator.status()["state"], "error")
        self.assertEqual(len(self.store.recent_audit_events(action="remote_listen_failed")), 1)

    def test_local_only_start_cleans_expired_records(self) -> None:
        self.store.save_snapshot(
            StoreSnapshot(
                events=[Event(id="old", title="Old", date="2025-12-01")],
                tasks=[Task(id="undated", title="Someday")],
            )
        )
        coordinator = self._coordinator()
        coordinator.start()

        snapshot = self.store.load_snapshot()
        self.assertEqual(snapshot.events, [])
        self.assertEqual([task.id for task in snapshot.tasks], ["undated"])

    def test_failed_mutation_changes_nothing(self) -> None:
        remote = MemoryRemoteRecord({"tasks": []})
        coordinator = self._coordinator(remote)
        coordinator.start()

        with self.assertRaises(ValueError):
            coordinator.mutate(lambda s: add_task(s, title="  "), action="add_task")

        self.assertEqual(remote.writes, [])
        self.assertEqual(coordinator.snapshot().tasks, [])

    def test_pending_tags_do_not_pile_up_without_listener(self) -> None:
        remote = MemoryRemoteRecord({"tasks": []})
        coordinator = self._coordinator(remote)
        coordinator.start()
        coordinator.stop()

        for index in range(50):
            coordinator.mutate(lambda s, i=index: add_task(s, title=f"Task {i}"), action="add_task")

        self.assertEqual(len(remote.writes), 50)
        self.assertLessEqual(len(coordinator._pending_tags), MAX_PENDING_TAGS)

        coordinator.handle_remote_error(RemoteError("auth_revoked"))
        self.assertFalse(coordinator.awaiting_own_write)
        self.assertFalse(coordinator.status()["awaitingOwnWrite"])

    def test_stale_own_echo_after_tag_eviction_is_ignored(self) -> None:
        remote = MemoryRemoteRecord({"tasks": []}, auto_notify=False)
        coordinator = self._coordinator(remote, clock=FixedClock())
        coordinator.start()

        for index in range(MAX_PENDING_TAGS + 5):
            coordinator.mutate(lambda s, i=index: add_task(s, title=f"Task {i}"), action="add_task")
        remote.flush()

        self.assertEqual(len(coordinator.snapshot().tasks), MAX_PENDING_TAGS + 5)
        self.assertFalse(coordinator.awaiting_own_write)
        self.assertEqual(len(remote.writes), MAX_PENDING_TAGS + 5)

    def test_matching_tag_from_other_writer_is_applied(self) -> None:
        remote = MemoryRemoteRecord({"tasks": []}, auto_notify=False)
        coordinator = self._coordinator(remote, replica_id="replica-a")
        coordinator.start()
        coordinator.mutate(lambda s: add_task(s, title="Mine"), action="add_task")
        tag = remote.writes[0]["lastUpdated"]

        coordinator.handle_remote(
            {
                "tasks": [{"id": "theirs", "title": "From tablet"}],
                "lastUpdated": tag,
                "writerId": "replica-b",
            }
        )

        self.assertEqual([task.id for task in coordinator.snapshot().tasks], ["theirs"])
        self.assertTrue(coordinator.awaiting_own_write)

    def test_set_remote_switches_to_new_record(self) -> None:
        coordinator = self._coordinator()
        coordinator.start()
        coordinator.mutate(lambda s: add_task(s, title="Before remote"), action="add_task")

        remote = MemoryRemoteRecord()
        coordinator.set_remote(remote)

        self.assertEqual(len(remote.writes), 1)
        self.assertEqual([task["title"] for task in remote.read()["tasks"]], ["Before remote"])
        self.assertEqual(coordinator.status()["state"], "saved")

        coordinator.set_remote(None)
        self.assertEqual(coordinator.status()["state"], "local")
        remote.replace_from_peer({"tasks": []})
        self.assertEqual(len(coordinator.snapshot().tasks), 1)

    def test_stop_ends_notifications(self) -> None:
        remote = MemoryRemoteRecord({"tasks": []})
        coordinator = self._coordinator(remote)
        coordinator.start()
        coordinator.stop()

        remote.replace_from_peer({"tasks": [{"id": "late", "title": "Late"}]})

        self.assertEqual(coordinator.snapshot().tasks, [])


if __name__ == "__main__":
    unittest.main()
