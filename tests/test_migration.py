"""
Tests for the sign-in merge rules and the strategy prompt.
"""
import asyncio
import unittest

from guidesync.core.migration import (
    MigrationResolver, MigrationStrategy, merge_completed, merge_records,
    most_recent, parse_strategy,
)
from guidesync.state.record import ProgressRecord, RemoteProgressRow, SyncMetadata


def local_record(modified_at, **content):
    record = ProgressRecord(meta=SyncMetadata(last_modified_at=modified_at))
    record.apply_content(content)
    return record


def remote_row(updated_at, **content):
    fields = {"province": "", "industry": "general", "hiring": "no",
              "revenue": "gte30", "completed": {}}
    fields.update(content)
    return RemoteProgressRow(user_id="u1", updated_at=updated_at, version=3, **fields)


class TestMergeRecords(unittest.TestCase):

    def test_newer_local_wins_scalars_and_steps_are_unioned(self):
        local = local_record(200.0, province="ON", completed={"a": True})
        cloud = remote_row(100.0, province="BC", completed={"b": True})
        merged = merge_records(local, cloud)
        self.assertEqual(merged["province"], "ON")
        self.assertEqual(merged["completed"], {"a": True, "b": True})

    def test_newer_cloud_wins_scalars(self):
        local = local_record(100.0, province="ON", revenue="lt30")
        cloud = remote_row(200.0, province="BC", revenue="gte30")
        merged = merge_records(local, cloud)
        self.assertEqual(merged["province"], "BC")
        self.assertEqual(merged["revenue"], "gte30")

    def test_equal_timestamps_go_to_cloud(self):
        merged = merge_records(local_record(100.0, hiring="yes"),
                               remote_row(100.0, hiring="no"))
        self.assertEqual(merged["hiring"], "no")

    def test_timestamps_decide_province_both_ways(self):
        self.assertEqual(merge_records(local_record(100.0, province="ON"),
                                       remote_row(200.0, province="BC"))["province"], "BC")
        self.assertEqual(merge_records(local_record(200.0, province="ON"),
                                       remote_row(100.0, province="BC"))["province"], "ON")

    def test_completion_union(self):
        merged = merge_records(local_record(100.0, completed={"a": True}),
                               remote_row(200.0, completed={"a": False, "b": True}))
        self.assertEqual(merged["completed"], {"a": True, "b": True})

    def test_completed_true_dominates(self):
        local = local_record(300.0, completed={"a": False, "b": True})
        cloud = remote_row(100.0, completed={"a": True, "b": False, "c": False})
        merged = merge_records(local, cloud)
        self.assertEqual(merged["completed"], {"a": True, "b": True, "c": False})

    def test_missing_cloud_timestamp_prefers_local_value(self):
        local = local_record(100.0, province="ON")
        cloud = remote_row(None, province="BC")
        self.assertEqual(merge_records(local, cloud)["province"], "ON")

    def test_missing_timestamp_with_empty_local_takes_cloud(self):
        local = local_record(100.0, province="")
        cloud = remote_row(None, province="BC")
        self.assertEqual(merge_records(local, cloud)["province"], "BC")

    def test_merge_never_loses_a_completed_step(self):
        local = local_record(1.0, completed={"x": True})
        cloud = remote_row(999.0, completed={"y": True})
        merged = merge_records(local, cloud)["completed"]
        self.assertTrue(merged["x"])
        self.assertTrue(merged["y"])


class TestMergeHelpers(unittest.TestCase):

    def test_most_recent(self):
        self.assertEqual(most_recent("l", "c", 2.0, 1.0), "l")
        self.assertEqual(most_recent("l", "c", 1.0, 2.0), "c")
        self.assertEqual(most_recent("", "c", None, 2.0), "c")
        self.assertEqual(most_recent("l", "c", 2.0, None), "l")

    def test_merge_completed_empty(self):
        self.assertEqual(merge_completed({}, {}), {})

    def test_parse_strategy(self):
        self.assertEqual(parse_strategy("m"), MigrationStrategy.MERGE)
        self.assertEqual(parse_strategy(" Cloud "), MigrationStrategy.USE_CLOUD)
        self.assertEqual(parse_strategy("use-local"), MigrationStrategy.USE_LOCAL)
        self.assertEqual(parse_strategy(MigrationStrategy.USE_CLOUD), MigrationStrategy.USE_CLOUD)
        self.assertIsNone(parse_strategy("x"))
        self.assertIsNone(parse_strategy(None))


class TestMigrationResolver(unittest.IsolatedAsyncioTestCase):

    async def test_no_chooser_merges(self):
        self.assertEqual(await MigrationResolver().choose(), MigrationStrategy.MERGE)

    async def test_answer_is_used(self):
        async def chooser():
            return "c"
        resolver = MigrationResolver(chooser)
        self.assertEqual(await resolver.choose(), MigrationStrategy.USE_CLOUD)

    async def test_unknown_answer_merges(self):
        async def chooser():
            return "whatever"
        self.assertEqual(await MigrationResolver(chooser).choose(), MigrationStrategy.MERGE)

    async def test_no_answer_merges(self):
        async def chooser():
            return None
        self.assertEqual(await MigrationResolver(chooser).choose(), MigrationStrategy.MERGE)

    async def test_timeout_merges(self):
        async def chooser():
            await asyncio.sleep(10)
            return "l"
        resolver = MigrationResolver(chooser, timeout=0.05)
        self.assertEqual(await resolver.choose(), MigrationStrategy.MERGE)

    async def test_failing_chooser_merges(self):
        async def chooser():
            raise RuntimeError("no terminal")
        self.assertEqual(await MigrationResolver(chooser).choose(), MigrationStrategy.MERGE)


if __name__ == "__main__":
    unittest.main()
