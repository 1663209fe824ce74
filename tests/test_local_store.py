"""
Tests for the local progress store and the progress record model.
"""
import json
import tempfile
import unittest
from pathlib import Path
from unittest import mock

from guidesync.errors import ImportValidationError, LocalPersistenceError
from guidesync.state import LocalProgressStore, ProgressRecord
from guidesync.state.record import (
    SyncMetadata, default_record, parse_timestamp, validate_content,
)


class TestLocalProgressStore(unittest.TestCase):

    def setUp(self):
        self.tmpdir = tempfile.TemporaryDirectory()
        self.path = Path(self.tmpdir.name) / "progress.json"
        self.now = 1_700_000_000.0
        self.store = LocalProgressStore(self.path, clock=lambda: self.now)

    def tearDown(self):
        self.tmpdir.cleanup()

    def test_missing_file_gives_defaults(self):
        record = self.store.load()
        self.assertEqual(record.content(), {
            "province": "", "industry": "general", "hiring": "no",
            "revenue": "gte30", "completed": {},
        })
        self.assertEqual(record.meta.version, 1)
        self.assertIsNone(record.meta.synced_at)
        self.assertFalse(record.meta.has_local_changes)
        self.assertEqual(record.meta.last_modified_at, self.now)

    def test_malformed_json_gives_defaults(self):
        self.path.write_text("not json at all", encoding="utf-8")
        record = self.store.load()
        self.assertEqual(record.industry, "general")
        self.assertFalse(record.has_progress_data())

    def test_bad_fields_take_their_own_defaults(self):
        self.path.write_text(json.dumps({
            "province": "AB",
            "hiring": "perhaps",
            "revenue": 12,
            "completed": ["not", "a", "map"],
            "_meta": {"version": "two", "has_local_changes": "yes"},
        }), encoding="utf-8")
        record = self.store.load()
        self.assertEqual(record.province, "AB")
        self.assertEqual(record.hiring, "no")
        self.assertEqual(record.revenue, "gte30")
        self.assertEqual(record.completed, {})
        self.assertEqual(record.meta.version, 1)
        self.assertFalse(record.meta.has_local_changes)

    def test_non_boolean_completion_entries_are_dropped(self):
        self.path.write_text(json.dumps({
            "completed": {"a": True, "b": "yes", "c": False},
        }), encoding="utf-8")
        self.assertEqual(self.store.load().completed, {"a": True, "c": False})

    def test_save_then_load_round_trips(self):
        record = default_record(self.now)
        record.province = "MB"
        record.completed = {"register": True}
        self.store.save(record)

        loaded = LocalProgressStore(self.path).load()
        self.assertEqual(loaded.content(), record.content())
        self.assertEqual(loaded.meta, record.meta)

    def test_save_stamps_metadata(self):
        record = default_record(0.0)
        self.now = 1_800_000_000.0
        self.store.save(record)
        self.assertEqual(record.meta.last_modified_at, 1_800_000_000.0)
        self.assertTrue(record.meta.has_local_changes)

    def test_persist_keeps_metadata_as_given(self):
        record = default_record(5.0)
        record.meta.synced_at = 6.0
        self.store.persist(record)
        meta = self.store.load().meta
        self.assertEqual(meta.last_modified_at, 5.0)
        self.assertEqual(meta.synced_at, 6.0)
        self.assertFalse(meta.has_local_changes)

    def test_write_leaves_no_temp_file(self):
        self.store.save(default_record(self.now))
        self.assertEqual([p.name for p in self.path.parent.iterdir()], ["progress.json"])

    def test_clear_without_file_is_noop(self):
        self.store.clear()
        self.assertFalse(self.path.exists())

    def test_clear_removes_file(self):
        self.store.save(default_record(self.now))
        self.store.clear()
        self.assertFalse(self.path.exists())
        self.assertFalse(self.store.load().has_progress_data())

    def test_write_failure_switches_to_memory(self):
        record = default_record(self.now)
        record.province = "PE"
        with mock.patch.object(LocalProgressStore, "_write",
                               side_effect=LocalPersistenceError("disk full")):
            self.store.save(record)
        self.assertFalse(self.store.persistent)
        self.assertFalse(self.path.exists())
        self.assertEqual(self.store.load().province, "PE")

        record.province = "NL"
        self.store.save(record)
        self.assertFalse(self.path.exists())
        self.assertEqual(self.store.load().province, "NL")

    def test_load_returns_independent_copy_in_memory_mode(self):
        self.store.persistent = False
        record = default_record(self.now)
        record.completed = {"x": True}
        self.store.persist(record)
        loaded = self.store.load()
        loaded.completed["y"] = True
        self.assertEqual(self.store.load().completed, {"x": True})


class TestRecord(unittest.TestCase):

    def test_parse_timestamp(self):
        self.assertEqual(parse_timestamp(12), 12.0)
        self.assertEqual(parse_timestamp("1970-01-01T00:01:00Z"), 60.0)
        self.assertEqual(parse_timestamp("1970-01-01T00:01:00+00:00"), 60.0)
        self.assertIsNone(parse_timestamp("yesterday"))
        self.assertIsNone(parse_timestamp(None))
        self.assertIsNone(parse_timestamp(True))

    def test_parse_timestamp_with_trimmed_fraction(self):
        """Server timestamps drop trailing zeros from the fractional seconds."""
        whole = 1714566896.0  # 2024-05-01T12:34:56Z
        self.assertAlmostEqual(parse_timestamp("2024-05-01T12:34:56.12345+00:00"),
                               whole + 0.12345, places=6)
        self.assertAlmostEqual(parse_timestamp("2024-05-01T12:34:56.1+00:00"),
                               whole + 0.1, places=6)
        self.assertAlmostEqual(parse_timestamp("2024-05-01T12:34:56.123456+00:00"),
                               whole + 0.123456, places=6)
        self.assertAlmostEqual(parse_timestamp("2024-05-01T12:34:56.1234567Z"),
                               whole + 0.123456, places=6)
        self.assertEqual(parse_timestamp("2024-05-01T12:34:56+00:00"), whole)

    def test_meta_from_garbage(self):
        meta = SyncMetadata.from_dict("nope", now=42.0)
        self.assertEqual(meta, SyncMetadata(last_modified_at=42.0))

    def test_derived_flags(self):
        record = ProgressRecord(hiring="yes", revenue="lt30")
        self.assertTrue(record.shows_hiring_steps)
        self.assertFalse(record.gst_required)
        self.assertTrue(ProgressRecord().gst_required)

    def test_has_progress_data(self):
        self.assertFalse(ProgressRecord().has_progress_data())
        self.assertTrue(ProgressRecord(industry="retail").has_progress_data())
        self.assertTrue(ProgressRecord(completed={"a": False}).has_progress_data())

    def test_validate_drops_unknown_keys(self):
        clean = validate_content({"province": "ON", "_exported_at": "x", "extra": 1})
        self.assertEqual(clean, {"province": "ON"})

    def test_validate_rejects_bad_values(self):
        for bad in (
            [],
            {"hiring": "maybe"},
            {"revenue": "gt100"},
            {"province": 7},
            {"completed": {"a": "yes"}},
            {"completed": []},
        ):
            with self.subTest(bad=bad):
                with self.assertRaises(ImportValidationError):
                    validate_content(bad)


if __name__ == "__main__":
    unittest.main()
