import unittest
from datetime import date, datetime

from taskfeed.models import (
    Event,
    StoreSnapshot,
    SyncBatchResult,
    SyncConfig,
    Task,
    event_id_for_task,
    parse_cutoff,
    parse_local_datetime,
    task_id_for_event,
)


class ModelsTests(unittest.TestCase):
    def test_task_event_id_linkage(self) -> None:
        self.assertEqual(task_id_for_event("abc@school.edu"), "task-abc@school.edu")
        self.assertEqual(event_id_for_task("task-abc@school.edu"), "abc@school.edu")
        task = Task.from_dict({"id": "task-E1", "title": "x", "fromCalendar": True})
        self.assertEqual(task.event_id, "E1")
        self.assertIsNone(Task(id="123", title="manual").event_id)

    def test_event_accepts_legacy_source_key(self) -> None:
        event = Event.from_dict({"id": "e1", "title": "Quiz", "date": "2026-03-01", "source": "Google Calendar"})
        self.assertEqual(event.source_name, "Google Calendar")
        self.assertEqual(event.to_dict()["sourceName"], "Google Calendar")

    def test_task_serialization_uses_wire_names(self) -> None:
        payload = Task(id="t1", title="Essay", due_date="2026-03-01", created_at="2026-02-01T00:00:00+00:00").to_dict()
        self.assertEqual(payload["dueDate"], "2026-03-01")
        self.assertFalse(payload["fromCalendar"])
        self.assertNotIn("isAllDay", payload)

    def test_snapshot_from_dict_cleans_input(self) -> None:
        snapshot = StoreSnapshot.from_dict(
            {
                "events": [{"id": "e1", "title": "A"}, "junk", {"title": "no id"}],
                "tasks": None,
                "ignoredEvents": ["e2", "e2", "", "e3"],
            }
        )
        self.assertEqual([event.id for event in snapshot.events], ["e1"])
        self.assertEqual(snapshot.tasks, [])
        self.assertEqual(snapshot.ignored_event_ids, ["e2", "e3"])
        self.assertEqual(snapshot.to_dict()["ignoredEventIds"], ["e2", "e3"])

    def test_clone_is_independent(self) -> None:
        snapshot = StoreSnapshot(tasks=[Task(id="t1", title="A")])
        copied = snapshot.clone()
        copied.tasks[0].completed = True
        self.assertFalse(snapshot.tasks[0].completed)

    def test_parse_local_datetime(self) -> None:
        self.assertEqual(parse_local_datetime("2026-03-01"), datetime(2026, 3, 1))
        self.assertEqual(parse_local_datetime("2026-03-01T09:30"), datetime(2026, 3, 1, 9, 30))
        self.assertEqual(parse_local_datetime("2026-03-01T09:30:00Z"), datetime(2026, 3, 1, 9, 30))
        self.assertIsNone(parse_local_datetime(""))
        self.assertIsNone(parse_local_datetime("next tuesday"))

    def test_sync_config_normalization(self) -> None:
        cfg = SyncConfig.from_dict({"interval_seconds": 10, "retention_cutoff": "soon"})
        self.assertEqual(cfg.interval_seconds, 60)
        self.assertEqual(cfg.retention_cutoff, "2026-01-01")
        self.assertEqual(cfg.cutoff, datetime(2026, 1, 1))
        self.assertEqual(SyncConfig.from_dict({}).interval_seconds, 0)
        self.assertEqual(parse_cutoff(date(2027, 6, 1)), datetime(2027, 6, 1))

    def test_batch_result_status(self) -> None:
        self.assertEqual(SyncBatchResult(trigger="manual").status, "skipped")
        self.assertEqual(SyncBatchResult(trigger="manual", succeeded=2).status, "success")
        self.assertEqual(SyncBatchResult(trigger="manual", succeeded=1, failed=1).status, "partial")
        self.assertEqual(SyncBatchResult(trigger="manual", failed=1).status, "error")


if __name__ == "__main__":
    unittest.main()
