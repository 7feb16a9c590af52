import logging
from typing import Dict, List, Optional

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError

from .db import SyncStateEntry
from .errors import StorageWriteError
from .models import PartitionPlan

logger = logging.getLogger(__name__)

NEXT_CURSOR = "next_cursor"
LAST_SYNC = "last_sync"
INITIAL_IMPORT_COMPLETE = "initial_import_complete"
CURRENT_PARTITION = "current_partition"
PARTITION_CURSOR = "partition_cursor"
PARTITION_PLAN = "partition_plan"
INCREMENTAL_STARTED = "incremental_started"

RESET_SUFFIXES = (
    NEXT_CURSOR,
    LAST_SYNC,
    INITIAL_IMPORT_COMPLETE,
    CURRENT_PARTITION,
    PARTITION_CURSOR,
    PARTITION_PLAN,
    INCREMENTAL_STARTED,
)


def state_key(resource: str, suffix: str) -> str:
    return f"{resource}_{suffix}"


def _put(session, key: str, value: str):
    row = session.get(SyncStateEntry, key)
    if row:
        row.value = value
    else:
        session.add(SyncStateEntry(key=key, value=value))


def _drop(session, key: str) -> bool:
    row = session.get(SyncStateEntry, key)
    if not row:
        return False
    session.delete(row)
    return True


class SyncStateStore:
    """Owns every cursor / partition / timestamp key in the sync_state table."""

    def __init__(self, session_factory):
        self.session_factory = session_factory

    def _write(self, context: str, puts: Dict[str, str] = None, drops: List[str] = ()) -> Dict[str, bool]:
        """Apply puts and deletes in a single commit. Returns key -> was present for drops."""
        try:
            with self.session_factory() as session:
                dropped = {key: _drop(session, key) for key in drops}
                for key, value in (puts or {}).items():
                    _put(session, key, value)
                session.commit()
                return dropped
        except SQLAlchemyError as e:
            raise StorageWriteError(f"Failed to {context}: {e}") from e

    # Raw key access

    def get(self, key: str) -> Optional[str]:
        with self.session_factory() as session:
            row = session.get(SyncStateEntry, key)
            return row.value if row else None

    def set(self, key: str, value: str):
        self._write(f"persist sync state {key}", puts={key: value})

    def delete(self, key: str) -> bool:
        """Delete a key. Returns whether it was present."""
        return self._write(f"delete sync state {key}", drops=[key])[key]

    def keys(self, resource: Optional[str] = None) -> List[str]:
        with self.session_factory() as session:
            stmt = select(SyncStateEntry.key)
            if resource:
                stmt = stmt.where(SyncStateEntry.key.startswith(f"{resource}_", autoescape=True))
            return list(session.scalars(stmt.order_by(SyncStateEntry.key)))

    # Full import bookkeeping

    def get_current_partition(self, resource: str) -> Optional[int]:
        raw = self.get(state_key(resource, CURRENT_PARTITION))
        if raw is None or raw == "":
            return None
        try:
            return int(raw)
        except ValueError:
            logger.warning(f"Ignoring unreadable partition index {raw!r} for {resource}")
            return None

    def get_partition_cursor(self, resource: str) -> Optional[str]:
        # A cursor is only meaningful next to a known partition index
        if self.get_current_partition(resource) is None:
            return None
        return self.get(state_key(resource, PARTITION_CURSOR)) or None

    def set_partition_cursor(self, resource: str, cursor: Optional[str]):
        key = state_key(resource, PARTITION_CURSOR)
        if cursor:
            self.set(key, cursor)
        else:
            self.delete(key)

    def begin_sequence(self, resource: str, plan: PartitionPlan):
        """Store the plan and point at partition 0 with no cursor."""
        self._write(
            f"start partition sequence for {resource}",
            puts={
                state_key(resource, PARTITION_PLAN): plan.model_dump_json(),
                state_key(resource, CURRENT_PARTITION): "0",
            },
            drops=[state_key(resource, PARTITION_CURSOR)],
        )

    def advance_partition(self, resource: str, next_index: int):
        """Finish the active partition: drop its cursor and move the index forward."""
        self._write(
            f"advance partition for {resource}",
            puts={state_key(resource, CURRENT_PARTITION): str(next_index)},
            drops=[state_key(resource, PARTITION_CURSOR)],
        )

    def get_plan(self, resource: str) -> Optional[PartitionPlan]:
        raw = self.get(state_key(resource, PARTITION_PLAN))
        if not raw:
            return None
        try:
            return PartitionPlan.model_validate_json(raw)
        except ValueError:
            logger.warning(f"Stored partition plan for {resource} is unreadable, ignoring it")
            return None

    def mark_import_complete(self, resource: str, last_sync: str):
        """Fold a finished partition sequence into last_sync."""
        self._write(
            f"mark import complete for {resource}",
            puts={
                state_key(resource, INITIAL_IMPORT_COMPLETE): "true",
                state_key(resource, LAST_SYNC): last_sync,
            },
            drops=[
                state_key(resource, s)
                for s in (CURRENT_PARTITION, PARTITION_CURSOR, PARTITION_PLAN, INCREMENTAL_STARTED)
            ],
        )

    def is_initial_import_complete(self, resource: str) -> bool:
        return self.get(state_key(resource, INITIAL_IMPORT_COMPLETE)) == "true"

    # Incremental bookkeeping

    def get_next_cursor(self, resource: str) -> Optional[str]:
        return self.get(state_key(resource, NEXT_CURSOR)) or None

    def set_next_cursor(self, resource: str, cursor: Optional[str]):
        key = state_key(resource, NEXT_CURSOR)
        if cursor:
            self.set(key, cursor)
        else:
            self.delete(key)

    def get_last_sync(self, resource: str) -> Optional[str]:
        return self.get(state_key(resource, LAST_SYNC)) or None

    def begin_incremental(self, resource: str, started: str) -> str:
        """Return the start time of the scan in flight, recording `started` if there is none."""
        key = state_key(resource, INCREMENTAL_STARTED)
        existing = self.get(key)
        if existing:
            return existing
        self.set(key, started)
        return started

    def finish_incremental(self, resource: str, last_sync: str):
        self._write(
            f"record incremental sync for {resource}",
            puts={state_key(resource, LAST_SYNC): last_sync},
            drops=[state_key(resource, NEXT_CURSOR), state_key(resource, INCREMENTAL_STARTED)],
        )

    def soft_reset(self, resource: str) -> Dict[str, bool]:
        """Remove all import bookkeeping for a resource. Returns key -> was present."""
        report = self._write(
            f"reset sync state for {resource}",
            drops=[state_key(resource, suffix) for suffix in RESET_SUFFIXES],
        )
        logger.info(f"Cleared sync state for {resource}: {sum(report.values())} keys removed")
        return report
