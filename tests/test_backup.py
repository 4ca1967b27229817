import json
import unittest
from datetime import datetime, timezone

from taskfeed.backup import backup_filename, export_backup, parse_backup
from taskfeed.models import Event, Source, StoreSnapshot, Task


NOW = datetime(2026, 3, 5, 18, 30, tzinfo=timezone.utc)


class BackupTests(unittest.TestCase):
    def test_export_layout(self) -> None:
        snapshot = StoreSnapshot(
            events=[Event(id="e1", title="Quiz", date="2026-03-10T09:00")],
            tasks=[Task(id="task-e1", title="📚 Quiz", from_calendar=True, created_at="2026-03-01T00:00:00+00:00")],
            sources=[Source(id="s1", name="School", url="https://school.example.com/cal.ics", last_sync="x")],
            ignored_event_ids=["e0"],
        )
        backup = export_backup(snapshot, NOW)

        self.assertEqual(
            sorted(backup),
            ["events", "exportedAt", "ignoredEvents", "sources", "tasks", "version"],
        )
        self.assertEqual(backup["version"], 1.0)
        self.assertEqual(backup["exportedAt"], "2026-03-05T18:30:00+00:00")
        self.assertEqual(backup["ignoredEvents"], ["e0"])
        self.assertEqual(parse_backup(json.dumps(backup)).to_dict(), snapshot.to_dict())

    def test_filename_uses_export_date(self) -> None:
        self.assertEqual(backup_filename(NOW), "calendar-backup-2026-03-05.json")

    def test_missing_collections_restore_as_empty(self) -> None:
        snapshot = parse_backup({"tasks": [{"id": "t1", "title": "Only task"}]})
        self.assertEqual(snapshot.events, [])
        self.assertEqual(snapshot.ignored_event_ids, [])
        self.assertEqual([task.id for task in snapshot.tasks], ["t1"])

    def test_invalid_backups_are_rejected(self) -> None:
        with self.assertRaises(ValueError):
            parse_backup("{not json")
        with self.assertRaises(ValueError):
            parse_backup(b"[1, 2, 3]")


if __name__ == "__main__":
    unittest.main()
