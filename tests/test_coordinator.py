import asyncio
import unittest
from datetime import datetime, timedelta, timezone

from sqlalchemy.exc import SQLAlchemyError

from fakes import FakeRemote, make_context, no_sleep, notion_page, scenario_pages, two_partition_plan
from tasksync.clock import parse_timestamp
from tasksync.coordinator import ImportCoordinator
from tasksync.db import init_db
from tasksync.errors import NetworkError, RateLimitedError, StorageWriteError, SyncInProgressError, UnauthorizedError
from tasksync.models import ImportStatus, PartitionFilter, PartitionPlan


class CoordinatorTestCase(unittest.IsolatedAsyncioTestCase):
    def setUp(self):
        self.session_factory = init_db("sqlite://")
        self.remote = FakeRemote(scenario_pages())
        self.ctx = make_context(self.remote, self.session_factory)
        self.coordinator = ImportCoordinator(self.ctx, sleep=no_sleep)
        self.state = self.ctx.state
        self.records = self.ctx.records

    def new_coordinator(self, remote):
        """A fresh process on the same database."""
        return ImportCoordinator(make_context(remote, self.session_factory), sleep=no_sleep)

    def ids(self):
        return [r["external_id"] for r in self.records.all("tasks")]


class TestFullImport(CoordinatorTestCase):
    async def test_two_partition_scenario(self):
        before = datetime.now(timezone.utc) - timedelta(seconds=5)
        final = await self.coordinator.run_import("tasks", two_partition_plan())

        self.assertEqual(final.status, ImportStatus.COMPLETED)
        self.assertEqual(final.records_imported, 6)
        self.assertEqual(final.pages_processed, 5)
        self.assertEqual(final.partitions_processed, 2)
        self.assertIsNone(self.state.get("tasks_current_partition"))
        self.assertIsNone(self.state.get("tasks_partition_cursor"))
        self.assertEqual(self.state.get("tasks_initial_import_complete"), "true")
        last_sync = parse_timestamp(self.state.get("tasks_last_sync"))
        self.assertGreaterEqual(last_sync, before)
        self.assertLessEqual(last_sync, datetime.now(timezone.utc) + timedelta(seconds=5))
        self.assertEqual(self.ids(), ["a1", "a2", "a3", "a4", "b1", "b2"])

        # Pages are requested strictly in cursor order, partition 0 first
        self.assertEqual(
            [(name, cursor) for _, name, cursor in self.remote.calls],
            [("p0", None), ("p0", "c1"), ("p0", "c2"), ("p1", None), ("p1", "c3")],
        )

    async def test_progress_stream(self):
        seen = []
        self.coordinator.channel("tasks").add_listener(seen.append)
        run = self.coordinator.start_import("tasks", two_partition_plan())
        snapshots = [snap async for snap in run]
        await run

        # Subscribers may skip intermediate snapshots, listeners see every one
        self.assertEqual(snapshots[0].status, ImportStatus.RUNNING)
        self.assertEqual(snapshots[-1].status, ImportStatus.COMPLETED)
        messages = [s.message for s in seen]
        self.assertIn("partition 0, page 1", messages)
        self.assertIn("partition 1, page 2", messages)
        self.assertEqual([s.records_imported for s in seen if s.message and s.message.startswith("partition")],
                         [2, 3, 4, 5, 6])
        self.assertEqual(self.coordinator.status("tasks").status, ImportStatus.COMPLETED)

    async def test_failing_listener_does_not_stop_import(self):
        def broken(_snapshot):
            raise RuntimeError("listener blew up")

        self.coordinator.channel("tasks").add_listener(broken)
        with self.assertLogs("tasksync.progress", level="ERROR"):
            final = await self.coordinator.run_import("tasks", two_partition_plan())
        self.assertEqual(final.status, ImportStatus.COMPLETED)
        self.assertEqual(self.records.count("tasks"), 6)

    async def test_initial_state_from_storage(self):
        self.assertEqual(self.coordinator.status("tasks").status, ImportStatus.IDLE)
        await self.coordinator.run_import("tasks", two_partition_plan())
        fresh = self.new_coordinator(FakeRemote(scenario_pages()))
        snap = fresh.status("tasks")
        self.assertEqual(snap.status, ImportStatus.IDLE)
        self.assertEqual(snap.message, "Initial import complete")

    async def test_idempotent_reimport(self):
        await self.coordinator.run_import("tasks", two_partition_plan())
        first = self.records.all("tasks")

        final = await self.coordinator.run_import("tasks", two_partition_plan())
        self.assertEqual(final.status, ImportStatus.COMPLETED)
        self.assertEqual(self.records.all("tasks"), first)

        self.coordinator.reset_import("tasks")
        await self.coordinator.run_import("tasks", two_partition_plan())
        self.assertEqual(self.records.all("tasks"), first)

    async def test_concurrent_start_rejected(self):
        run = self.coordinator.start_import("tasks", two_partition_plan())
        with self.assertRaises(SyncInProgressError):
            self.coordinator.start_import("tasks", two_partition_plan())
        await run
        # Free again once finished
        await self.coordinator.run_import("tasks", two_partition_plan())

    async def test_other_resources_run_concurrently(self):
        self.remote.pages["all"] = [([notion_page("p1", "Project")], None)]
        tasks_run = self.coordinator.start_import("tasks", two_partition_plan())
        projects_run = self.coordinator.start_import("projects")
        results = await asyncio.gather(tasks_run.wait(), projects_run.wait())
        self.assertEqual([r.status for r in results], [ImportStatus.COMPLETED, ImportStatus.COMPLETED])
        self.assertEqual(self.records.count("projects"), 1)

    async def test_canonical_task_plan(self):
        final = await self.coordinator.run_import("tasks")
        self.assertEqual(final.status, ImportStatus.COMPLETED)
        self.assertEqual(final.partitions_processed, 10)
        names = [name for _, name, _ in self.remote.calls]
        self.assertEqual(names[0], "last-1-day")
        self.assertEqual(names[-1], "older")

    async def test_empty_plan_completes(self):
        final = await self.coordinator.run_import("tasks", PartitionPlan(name="empty", partitions=[]))
        self.assertEqual(final.status, ImportStatus.COMPLETED)
        self.assertEqual(self.state.get("tasks_initial_import_complete"), "true")


class TestResume(CoordinatorTestCase):
    async def test_crash_resume_equivalence(self):
        # Killed while fetching the 4th page (partition 1, first page)
        crashing = FakeRemote(scenario_pages(), raise_on={4: RuntimeError("process killed")})
        coordinator = self.new_coordinator(crashing)
        final = await coordinator.run_import("tasks", two_partition_plan())
        self.assertEqual(final.status, ImportStatus.ERROR)
        self.assertEqual(self.state.get("tasks_current_partition"), "1")
        self.assertEqual(self.ids(), ["a1", "a2", "a3", "a4"])

        # A new process starts out paused and resumes where it stopped
        resumed_remote = FakeRemote(scenario_pages())
        resumed = self.new_coordinator(resumed_remote)
        self.assertEqual(resumed.status("tasks").status, ImportStatus.PAUSED)
        final = await resumed.run_import("tasks", two_partition_plan())
        self.assertEqual(final.status, ImportStatus.COMPLETED)
        self.assertEqual(resumed_remote.calls[0][1:], ("p1", None))

        reference = ImportCoordinator(make_context(FakeRemote(scenario_pages())), sleep=no_sleep)
        await reference.run_import("tasks", two_partition_plan())
        self.assertEqual(self.records.all("tasks"), reference.ctx.records.all("tasks"))

    async def test_resume_mid_partition_refetches_at_most_one_page(self):
        crashing = FakeRemote(scenario_pages(), raise_on={3: RuntimeError("process killed")})
        await self.new_coordinator(crashing).run_import("tasks", two_partition_plan())
        self.assertEqual(self.state.get("tasks_current_partition"), "0")
        self.assertEqual(self.state.get("tasks_partition_cursor"), "c2")

        resumed_remote = FakeRemote(scenario_pages())
        await self.new_coordinator(resumed_remote).run_import("tasks", two_partition_plan())
        self.assertEqual(resumed_remote.calls[0][1:], ("p0", "c2"))
        self.assertEqual(len(resumed_remote.calls), 3)
        self.assertEqual(self.records.count("tasks"), 6)

    async def test_cursor_without_partition_starts_over(self):
        self.state.set("tasks_partition_cursor", "c2")
        await self.coordinator.run_import("tasks", two_partition_plan())
        self.assertEqual(self.remote.calls[0][1:], ("p0", None))

    async def test_plan_version_mismatch_forces_soft_reset(self):
        crashing = FakeRemote(scenario_pages(), raise_on={2: RuntimeError("process killed")})
        await self.new_coordinator(crashing).run_import("tasks", two_partition_plan())
        self.assertEqual(self.state.get("tasks_partition_cursor"), "c1")

        upgraded = two_partition_plan().model_copy(update={"version": 2})
        remote = FakeRemote(scenario_pages())
        final = await self.new_coordinator(remote).run_import("tasks", upgraded)
        self.assertEqual(final.status, ImportStatus.COMPLETED)
        self.assertEqual(remote.calls[0][1:], ("p0", None))

    async def test_resume_uses_stored_plan_filters(self):
        anchored = PartitionPlan(
            name="windows", version=1, created_at="2024-01-01T00:00:00.000Z",
            partitions=[PartitionFilter(name="new", edited_on_or_after="2023-12-01T00:00:00.000Z"),
                        PartitionFilter(name="old", edited_before="2023-12-01T00:00:00.000Z")],
        )
        remote = FakeRemote({"new": [([notion_page("n1")], "x1"), ([notion_page("n2")], None)]},
                            raise_on={2: RuntimeError("killed")})
        await self.new_coordinator(remote).run_import("tasks", anchored)

        # Same plan identity, different bounds: the stored bounds win
        moved = anchored.model_copy(update={"partitions": [PartitionFilter(name="new", edited_on_or_after="2099-01-01T00:00:00.000Z"),
                                                           PartitionFilter(name="old")]})
        resumed_remote = FakeRemote({"new": [([notion_page("n1")], "x1"), ([notion_page("n2")], None)]})
        await self.new_coordinator(resumed_remote).run_import("tasks", moved)
        self.assertEqual(resumed_remote.filters[0].edited_on_or_after, "2023-12-01T00:00:00.000Z")
        self.assertEqual(self.state.get("tasks_last_sync"), "2024-01-01T00:00:00.000Z")


class TestFailures(CoordinatorTestCase):
    async def test_transient_errors_are_retried(self):
        self.remote.raise_on = {1: RateLimitedError("slow down"), 2: NetworkError("reset")}
        final = await self.coordinator.run_import("tasks", two_partition_plan())
        self.assertEqual(final.status, ImportStatus.COMPLETED)
        self.assertEqual(self.records.count("tasks"), 6)

    async def test_exhausted_retries_pause(self):
        self.remote.raise_on = {2: RateLimitedError("slow down"), 3: RateLimitedError("slow down"),
                                4: RateLimitedError("slow down")}
        final = await self.coordinator.run_import("tasks", two_partition_plan())
        self.assertEqual(final.status, ImportStatus.PAUSED)
        self.assertIn("will resume", final.message)
        self.assertEqual(self.state.get("tasks_partition_cursor"), "c1")

        final = await self.coordinator.run_import("tasks", two_partition_plan())
        self.assertEqual(final.status, ImportStatus.COMPLETED)
        self.assertEqual(self.records.count("tasks"), 6)

    async def test_auth_failure_is_fatal(self):
        self.remote.raise_on = {1: UnauthorizedError("bad token", 401)}
        final = await self.coordinator.run_import("tasks", two_partition_plan())
        self.assertEqual(final.status, ImportStatus.ERROR)
        self.assertEqual(len(self.remote.calls), 1)
        self.assertIn("Authentication failed", final.message)

    async def test_storage_failure_keeps_cursor(self):
        real_upsert = self.coordinator.merger.upsert_batch
        calls = {"n": 0}

        def failing_upsert(resource, records):
            calls["n"] += 1
            if calls["n"] == 2:
                raise StorageWriteError("disk full")
            return real_upsert(resource, records)

        self.coordinator.merger.upsert_batch = failing_upsert
        final = await self.coordinator.run_import("tasks", two_partition_plan())
        self.assertEqual(final.status, ImportStatus.ERROR)
        self.assertEqual(final.error, "disk full")
        # Page 2 was not stored, so its cursor was never replaced
        self.assertEqual(self.state.get("tasks_partition_cursor"), "c1")

    async def test_malformed_records_do_not_abort(self):
        pages = {"p0": [([notion_page("ok1", "Fine"), notion_page("bad", title=None), notion_page("ok2", "Also fine")], None)],
                 "p1": [([], None)]}
        coordinator = self.new_coordinator(FakeRemote(pages))
        final = await coordinator.run_import("tasks", two_partition_plan())
        self.assertEqual(final.status, ImportStatus.COMPLETED)
        self.assertEqual(self.ids(), ["ok1", "ok2"])


class TestReset(CoordinatorTestCase):
    async def test_reset_while_running_rejected(self):
        self.remote.gate = asyncio.Event()
        run = self.coordinator.start_import("tasks", two_partition_plan())
        await asyncio.sleep(0)
        keys_before = {k: self.state.get(k) for k in self.state.keys("tasks")}

        with self.assertRaises(SyncInProgressError):
            self.coordinator.reset_import("tasks")
        with self.assertRaises(SyncInProgressError):
            self.coordinator.reset_import("tasks", clear_records=True)
        self.assertEqual({k: self.state.get(k) for k in self.state.keys("tasks")}, keys_before)

        self.remote.gate.set()
        final = await run
        self.assertEqual(final.status, ImportStatus.COMPLETED)

    async def test_soft_reset_preserves_records(self):
        await self.coordinator.run_import("tasks", two_partition_plan())
        report = self.coordinator.reset_import("tasks")

        self.assertEqual(report.record_count, 6)
        self.assertEqual(self.records.count("tasks"), 6)
        self.assertTrue(report.cleared_keys["tasks_initial_import_complete"])
        self.assertFalse(report.cleared_keys["tasks_current_partition"])
        self.assertIsNone(self.state.get("tasks_initial_import_complete"))
        self.assertEqual(self.coordinator.status("tasks").status, ImportStatus.IDLE)

        self.remote.calls.clear()
        await self.coordinator.run_import("tasks", two_partition_plan())
        self.assertEqual(self.remote.calls[0][1:], ("p0", None))

    async def test_hard_reset_clears_everything(self):
        await self.coordinator.run_import("tasks", two_partition_plan())
        report = self.coordinator.reset_import("tasks", clear_records=True)

        self.assertEqual(report.records_deleted, 6)
        self.assertEqual(self.records.count("tasks"), 0)
        self.assertEqual(self.state.keys("tasks"), [])

    async def test_reset_leaves_other_resources_alone(self):
        self.remote.pages["all"] = [([notion_page("p1", "Project")], None)]
        await self.coordinator.run_import("projects")
        await self.coordinator.run_import("tasks", two_partition_plan())
        self.coordinator.reset_import("tasks", clear_records=True)
        self.assertEqual(self.state.get("projects_initial_import_complete"), "true")
        self.assertEqual(self.records.count("projects"), 1)


class TestIncrementalSync(CoordinatorTestCase):
    async def test_sync_after_initial_import_is_incremental(self):
        await self.coordinator.run_import("tasks", two_partition_plan())
        last_sync = self.state.get("tasks_last_sync")
        self.remote.pages["incremental"] = [
            ([notion_page("a1", "A1 renamed", edited="2099-01-01T00:00:00.000Z")], "i1"),
            ([notion_page("c9", "New")], None),
        ]

        final = await self.coordinator.sync("tasks").wait()

        self.assertEqual(final.status, ImportStatus.COMPLETED)
        self.assertEqual(self.remote.filters[-1].edited_on_or_after, last_sync)
        self.assertEqual(self.records.get("tasks", "a1")["title"], "A1 renamed")
        self.assertEqual(self.records.count("tasks"), 7)
        self.assertIsNone(self.state.get("tasks_next_cursor"))
        self.assertGreaterEqual(self.state.get("tasks_last_sync"), last_sync)

    async def test_interrupted_incremental_resumes_from_next_cursor(self):
        await self.coordinator.run_import("tasks", two_partition_plan())
        last_sync = self.state.get("tasks_last_sync")
        pages = {"incremental": [([notion_page("x1")], "i1"), ([notion_page("x2")], None)]}
        crashing = FakeRemote(pages, raise_on={2: RuntimeError("killed")})
        await self.new_coordinator(crashing).sync("tasks").wait()
        self.assertEqual(self.state.get("tasks_next_cursor"), "i1")
        self.assertEqual(self.state.get("tasks_last_sync"), last_sync)

        resumed_remote = FakeRemote(pages)
        resumed = self.new_coordinator(resumed_remote)
        self.assertEqual(resumed.status("tasks").status, ImportStatus.PAUSED)
        await resumed.sync("tasks").wait()
        self.assertEqual(resumed_remote.calls[0][1:], ("incremental", "i1"))
        self.assertIsNone(self.state.get("tasks_next_cursor"))

    async def test_resumed_incremental_keeps_original_scan_start(self):
        now = {"t": datetime(2025, 1, 1, 9, 0, tzinfo=timezone.utc)}

        def at(hour):
            now["t"] = datetime(2025, 1, 1, hour, 0, tzinfo=timezone.utc)

        def coordinator_for(remote):
            return ImportCoordinator(make_context(remote, self.session_factory, clock=lambda: now["t"]),
                                     sleep=no_sleep)

        await coordinator_for(FakeRemote(scenario_pages())).run_import("tasks", two_partition_plan())
        self.assertEqual(self.state.get("tasks_last_sync"), "2025-01-01T09:00:00.000Z")

        pages = {"incremental": [([notion_page("x1")], "i1"), ([notion_page("x2")], None)]}
        at(10)
        crashing = FakeRemote(pages, raise_on={2: RuntimeError("killed")})
        await coordinator_for(crashing).sync("tasks").wait()
        self.assertEqual(self.state.get("tasks_incremental_started"), "2025-01-01T10:00:00.000Z")

        at(12)
        final = await coordinator_for(FakeRemote(pages)).sync("tasks").wait()
        self.assertEqual(final.status, ImportStatus.COMPLETED)
        # Edits between 10:00 and 12:00 behind cursor i1 must still be picked up next time
        self.assertEqual(self.state.get("tasks_last_sync"), "2025-01-01T10:00:00.000Z")
        self.assertIsNone(self.state.get("tasks_incremental_started"))

        at(13)
        await coordinator_for(FakeRemote(pages)).sync("tasks").wait()
        self.assertEqual(self.state.get("tasks_last_sync"), "2025-01-01T13:00:00.000Z")

    async def test_sync_without_initial_import_runs_full_import(self):
        self.remote.pages["all"] = [([notion_page("p1", "Project")], None)]
        final = await self.coordinator.sync("projects").wait()
        self.assertEqual(final.status, ImportStatus.COMPLETED)
        self.assertEqual(self.state.get("projects_initial_import_complete"), "true")

    async def test_sync_timestamps(self):
        self.assertEqual(self.coordinator.get_sync_timestamps(), {"tasks": None, "projects": None, "time_logs": None})
        await self.coordinator.run_import("tasks", two_partition_plan())
        timestamps = self.coordinator.get_sync_timestamps()
        self.assertIsNotNone(timestamps["tasks"])
        self.assertIsNone(timestamps["projects"])


class TestRunLifecycle(CoordinatorTestCase):
    async def test_waited_runs_release_their_subscription(self):
        channel = self.coordinator.channel("tasks")
        for _ in range(5):
            await self.coordinator.start_import("tasks", two_partition_plan()).wait()
        self.assertEqual(channel.subscriber_count, 0)

        self.remote.raise_on = {len(self.remote.calls) + 1: UnauthorizedError("bad token", 401)}
        final = await self.coordinator.start_import("tasks", two_partition_plan()).wait()
        self.assertEqual(final.status, ImportStatus.ERROR)
        self.assertEqual(channel.subscriber_count, 0)

    async def test_started_run_is_held_until_done(self):
        self.remote.gate = asyncio.Event()
        run = self.coordinator.start_import("tasks", two_partition_plan())
        self.assertIs(self.coordinator.active_run("tasks"), run)

        self.remote.gate.set()
        await run
        await asyncio.sleep(0)
        self.assertIsNone(self.coordinator.active_run("tasks"))

    async def test_storage_failure_while_starting_does_not_hold_lock(self):
        def broken(resource):
            raise SQLAlchemyError("database is locked")

        self.state.get_current_partition = broken
        with self.assertRaises(SQLAlchemyError):
            self.coordinator.start_import("tasks", two_partition_plan())
        self.assertFalse(self.coordinator.is_running("tasks"))

        del self.state.get_current_partition
        final = await self.coordinator.run_import("tasks", two_partition_plan())
        self.assertEqual(final.status, ImportStatus.COMPLETED)


class TestImportById(CoordinatorTestCase):
    async def test_import_single_record(self):
        self.remote.by_id["z1"] = notion_page("z1", "Fetched directly")
        record = await self.coordinator.import_record_by_id("tasks", "z1")
        self.assertEqual(record["title"], "Fetched directly")
        self.assertEqual(self.records.count("tasks"), 1)


if __name__ == '__main__':
    unittest.main()
