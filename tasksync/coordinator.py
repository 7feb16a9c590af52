import asyncio
import logging
from typing import Any, Awaitable, Callable, Dict, Optional, Set

from .clock import format_timestamp
from .context import SyncContext
from .errors import RemoteError, RetriesExhaustedError, StorageWriteError, SyncInProgressError, user_message
from .merge import MergeEngine
from .models import (
    ImportPartition,
    ImportProgressSnapshot,
    ImportStatus,
    PartitionFilter,
    PartitionPlan,
    PartitionStatus,
    ResetReport,
)
from .partitions import canonical_plan
from .progress import ProgressChannel, Subscription
from .remote import RetryingAdapter

logger = logging.getLogger(__name__)


def reset_resource(state, records, resource: str, clear_records: bool = False) -> ResetReport:
    """Clear sync-state keys for a resource, optionally dropping its cached records too."""
    cleared = state.soft_reset(resource)
    deleted = records.clear(resource) if clear_records else 0
    return ResetReport(
        resource=resource,
        cleared_keys=cleared,
        record_count=records.count(resource),
        records_deleted=deleted,
    )


class ImportRun:
    """Handle for one started import: iterate it for progress, await it for the final snapshot."""

    def __init__(self, resource: str, task: asyncio.Task, subscription: Subscription):
        self.resource = resource
        self.task = task
        self.subscription = subscription

    def __aiter__(self):
        return self.subscription

    def __await__(self):
        return self.task.__await__()

    async def wait(self) -> ImportProgressSnapshot:
        return await self.task

    def done(self) -> bool:
        return self.task.done()


class _Progress:
    def __init__(self, channel: ProgressChannel, snapshot: ImportProgressSnapshot):
        self.channel = channel
        self.snapshot = snapshot

    def emit(self, **changes) -> ImportProgressSnapshot:
        self.snapshot = self.snapshot.model_copy(update=changes)
        self.channel.publish(self.snapshot)
        return self.snapshot

    def update(self, **changes) -> ImportProgressSnapshot:
        self.snapshot = self.snapshot.model_copy(update=changes)
        return self.snapshot


class ImportCoordinator:
    """
    Partitioned, resumable import of remote records into the local store.

    Holds no durable state: where to resume is read from the SyncStateStore every time,
    so a fresh coordinator picks up exactly where a killed process stopped.
    """

    def __init__(self, context: SyncContext, sleep: Callable[[float], Awaitable[None]] = asyncio.sleep):
        self.ctx = context
        self.remote = RetryingAdapter(context.adapter, context.retry, sleep=sleep)
        self.merger = MergeEngine(context.records, context.schemas)
        self._running: Set[str] = set()
        self._runs: Dict[str, ImportRun] = {}
        self._channels: Dict[str, ProgressChannel] = {}

    # ============ STATUS ============

    def _check_resource(self, resource: str):
        if resource not in self.ctx.schemas:
            raise ValueError(f"Unknown resource: {resource}")

    def initial_snapshot(self, resource: str) -> ImportProgressSnapshot:
        """Reconstruct a snapshot from sync state alone."""
        state = self.ctx.state
        index = state.get_current_partition(resource)
        if index is not None:
            plan = state.get_plan(resource)
            total = len(plan.partitions) if plan else "?"
            return ImportProgressSnapshot(
                resource=resource,
                status=ImportStatus.PAUSED,
                current_partition=index,
                partitions_processed=index,
                message=f"Interrupted import pending at partition {index + 1}/{total}",
            )
        if state.get_next_cursor(resource):
            return ImportProgressSnapshot(
                resource=resource, status=ImportStatus.PAUSED, message="Interrupted sync pending"
            )
        message = "Initial import complete" if state.is_initial_import_complete(resource) else None
        return ImportProgressSnapshot(resource=resource, status=ImportStatus.IDLE, message=message)

    def channel(self, resource: str) -> ProgressChannel:
        self._check_resource(resource)
        if resource not in self._channels:
            self._channels[resource] = ProgressChannel(self.initial_snapshot(resource))
        return self._channels[resource]

    def status(self, resource: str) -> ImportProgressSnapshot:
        return self.channel(resource).latest

    def is_running(self, resource: str) -> bool:
        return resource in self._running

    def active_run(self, resource: str) -> Optional[ImportRun]:
        return self._runs.get(resource)

    def subscribe(self, resource: str, replay: bool = True) -> Subscription:
        return self.channel(resource).subscribe(replay=replay)

    def get_sync_timestamps(self) -> Dict[str, Optional[str]]:
        return {resource: self.ctx.state.get_last_sync(resource) for resource in self.ctx.schemas}

    # ============ CONTROL ============

    def start_import(self, resource: str, plan: Optional[PartitionPlan] = None) -> ImportRun:
        """Begin or resume a full partitioned import. Raises SyncInProgressError if one is running."""
        return self._launch(
            resource,
            lambda progress: self._import_partitions(resource, plan, progress),
            "Import starting",
        )

    def start_incremental_sync(self, resource: str) -> ImportRun:
        return self._launch(
            resource,
            lambda progress: self._incremental(resource, progress),
            "Incremental sync starting",
        )

    def sync(self, resource: str) -> ImportRun:
        """Resume an interrupted import, else run incremental once the initial import is done."""
        state = self.ctx.state
        if (
            state.get_current_partition(resource) is None
            and state.is_initial_import_complete(resource)
            and state.get_last_sync(resource)
        ):
            return self.start_incremental_sync(resource)
        return self.start_import(resource)

    async def run_import(self, resource: str, plan: Optional[PartitionPlan] = None) -> ImportProgressSnapshot:
        return await self.start_import(resource, plan).wait()

    def reset_import(self, resource: str, clear_records: bool = False) -> ResetReport:
        """Soft reset clears sync state; hard reset (clear_records) also drops cached records."""
        self._check_resource(resource)
        if self.is_running(resource):
            raise SyncInProgressError(resource)

        report = reset_resource(self.ctx.state, self.ctx.records, resource, clear_records)
        self.channel(resource).publish(ImportProgressSnapshot(
            resource=resource,
            status=ImportStatus.IDLE,
            message="Import state reset" + (" and cached records cleared" if clear_records else ""),
        ))
        logger.info(f"Reset import for {resource} (clear_records={clear_records}, {report.record_count} records left)")
        return report

    async def import_record_by_id(self, resource: str, external_id: str) -> Optional[Dict[str, Any]]:
        """Fetch one record directly and merge it. Returns the stored record, or None if malformed."""
        self._check_resource(resource)
        raw = await self.remote.fetch_by_id(resource, external_id)
        result = self.merger.upsert_batch(resource, [raw])
        if result.malformed:
            return None
        return self.ctx.records.get(resource, raw.get("id", external_id))

    # ============ RUN LOOP ============

    def _launch(self, resource: str, body, message: str) -> ImportRun:
        self._check_resource(resource)
        loop = asyncio.get_running_loop()
        if resource in self._running:
            raise SyncInProgressError(resource)
        # Reads sync state on first use, so it must not run while holding the lock
        channel = self.channel(resource)

        self._running.add(resource)
        try:
            subscription = channel.subscribe(replay=False, until_terminal=True)
            progress = _Progress(channel, ImportProgressSnapshot(resource=resource))
            progress.emit(
                status=ImportStatus.RUNNING,
                message=message,
                started_at=format_timestamp(self.ctx.clock()),
            )
            task = loop.create_task(self._guarded(resource, body, progress))
        except BaseException:
            self._running.discard(resource)
            raise

        run = ImportRun(resource, task, subscription)
        # The event loop only holds weak references to tasks
        self._runs[resource] = run
        task.add_done_callback(lambda _task: self._forget_run(resource, run))
        return run

    def _forget_run(self, resource: str, run: ImportRun):
        if self._runs.get(resource) is run:
            del self._runs[resource]

    async def _guarded(self, resource: str, body, progress: _Progress) -> ImportProgressSnapshot:
        try:
            final = await body(progress)
        except RetriesExhaustedError as e:
            # Cursor of the last good page is already persisted
            logger.warning(f"Import of {resource} paused: {e}")
            final = progress.update(status=ImportStatus.PAUSED, error=str(e),
                                    message=f"Paused, will resume. {user_message(e.last_error)}")
        except (RemoteError, StorageWriteError) as e:
            logger.error(f"Import of {resource} failed: {e}")
            final = progress.update(status=ImportStatus.ERROR, error=str(e), message=user_message(e))
        except asyncio.CancelledError:
            self._running.discard(resource)
            progress.emit(status=ImportStatus.PAUSED, message="Import interrupted, will resume")
            raise
        except Exception as e:
            logger.error(f"Unexpected error importing {resource}: {e}", exc_info=True)
            final = progress.update(status=ImportStatus.ERROR, error=str(e), message="Unexpected import failure")
        # Release before announcing so a listener can restart or reset right away
        self._running.discard(resource)
        progress.channel.publish(final)
        return final

    def _resolve_plan(self, resource: str, requested: Optional[PartitionPlan]):
        """Return (plan, partition index, cursor) to continue from, starting a new sequence if needed."""
        state = self.ctx.state
        index = state.get_current_partition(resource)
        if index is not None:
            stored = state.get_plan(resource)
            wanted = requested or canonical_plan(resource)
            if stored is not None and stored.matches(wanted):
                return stored, index, state.get_partition_cursor(resource)
            logger.warning(
                f"Partition plan for {resource} changed "
                f"({stored.name + ' v' + str(stored.version) if stored else 'unknown'} -> "
                f"{wanted.name} v{wanted.version}), starting over"
            )
            state.soft_reset(resource)

        now = self.ctx.clock()
        if requested is None:
            plan = canonical_plan(resource, now)
        elif requested.created_at is None:
            plan = requested.model_copy(update={"created_at": format_timestamp(now)})
        else:
            plan = requested
        state.begin_sequence(resource, plan)
        return plan, 0, None

    async def _import_partitions(self, resource: str, requested: Optional[PartitionPlan],
                                 progress: _Progress) -> ImportProgressSnapshot:
        state = self.ctx.state
        plan, index, cursor = self._resolve_plan(resource, requested)
        total = len(plan.partitions)
        if index or cursor:
            logger.info(f"Resuming {resource} import at partition {index + 1}/{total}"
                        + (f" from cursor {cursor[:8]}..." if cursor else ""))
        else:
            logger.info(f"Starting {resource} import with plan {plan.name} v{plan.version} ({total} partitions)")
        progress.emit(current_partition=index, partitions_processed=min(index, total))

        while index < total:
            partition = ImportPartition(
                index=index, filter=plan.partitions[index], status=PartitionStatus.IN_PROGRESS, cursor=cursor
            )
            page_number = 0
            while partition.status != PartitionStatus.DONE:
                page = await self.remote.query(
                    resource, filter=partition.filter, cursor=partition.cursor, page_size=self.ctx.page_size
                )
                self.merger.upsert_batch(resource, page.records)
                page_number += 1

                # Only advance once the page is durably merged
                if page.has_more and page.next_cursor:
                    partition.cursor = page.next_cursor
                    state.set_partition_cursor(resource, partition.cursor)
                else:
                    partition.status = PartitionStatus.DONE
                    state.advance_partition(resource, index + 1)

                snap = progress.snapshot
                progress.emit(
                    records_imported=snap.records_imported + len(page.records),
                    pages_processed=snap.pages_processed + 1,
                    current_partition=index,
                    partitions_processed=index + (1 if partition.status == PartitionStatus.DONE else 0),
                    message=f"partition {index}, page {page_number}",
                )

            logger.info(f"{resource}: partition {index + 1}/{total} ({partition.filter.name}) done "
                        f"after {page_number} pages")
            index += 1
            cursor = None

        last_sync = plan.created_at or format_timestamp(self.ctx.clock())
        state.mark_import_complete(resource, last_sync)
        snap = progress.snapshot
        logger.info(f"Import of {resource} finished: {snap.records_imported} records in {snap.pages_processed} pages")
        return progress.update(
            status=ImportStatus.COMPLETED,
            current_partition=total,
            partitions_processed=total,
            message=f"Import complete. {snap.records_imported} records.",
            completed_at=format_timestamp(self.ctx.clock()),
        )

    async def _incremental(self, resource: str, progress: _Progress) -> ImportProgressSnapshot:
        state = self.ctx.state
        last_sync = state.get_last_sync(resource)
        if not last_sync or not state.is_initial_import_complete(resource):
            logger.info(f"No completed initial import for {resource}, running full import instead")
            return await self._import_partitions(resource, None, progress)

        # A resumed scan keeps the start time of its first run
        started = state.begin_incremental(resource, format_timestamp(self.ctx.clock()))
        # Synthetic partition 0: everything edited since the last sync
        partition = ImportPartition(
            index=0,
            filter=PartitionFilter(name="incremental", edited_on_or_after=last_sync),
            status=PartitionStatus.IN_PROGRESS,
            cursor=state.get_next_cursor(resource),
        )
        progress.emit(current_partition=0, message=f"Syncing {resource} changes since {last_sync}")

        page_number = 0
        while partition.status != PartitionStatus.DONE:
            page = await self.remote.query(
                resource, filter=partition.filter, cursor=partition.cursor, page_size=self.ctx.page_size
            )
            self.merger.upsert_batch(resource, page.records)
            page_number += 1
            if page.has_more and page.next_cursor:
                partition.cursor = page.next_cursor
                state.set_next_cursor(resource, partition.cursor)
            else:
                partition.status = PartitionStatus.DONE
                state.finish_incremental(resource, started)
            snap = progress.snapshot
            progress.emit(
                records_imported=snap.records_imported + len(page.records),
                pages_processed=snap.pages_processed + 1,
                partitions_processed=1 if partition.status == PartitionStatus.DONE else 0,
                message=f"partition 0, page {page_number}",
            )

        snap = progress.snapshot
        logger.info(f"Incremental sync of {resource} finished: {snap.records_imported} records")
        return progress.update(
            status=ImportStatus.COMPLETED,
            message=f"Sync complete. {snap.records_imported} changed records.",
            completed_at=format_timestamp(self.ctx.clock()),
        )
