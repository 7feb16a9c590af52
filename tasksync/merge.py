import logging
from typing import Any, Dict, Iterable, List, Optional

from sqlalchemy import delete, func, select
from sqlalchemy.exc import SQLAlchemyError

from .clock import parse_timestamp
from .db import RECORD_MODELS
from .errors import MalformedRecordError, StorageWriteError
from .mapping import MappedRecord, ResourceSchema
from .models import MergeResult

logger = logging.getLogger(__name__)

REMOTE_COLUMNS = ("unique_id", "title", "url", "archived", "fields", "last_edited_time")


class RecordStore:
    """Read/write access to the cached resource tables."""

    def __init__(self, session_factory):
        self.session_factory = session_factory

    def model(self, resource: str):
        try:
            return RECORD_MODELS[resource]
        except KeyError:
            raise ValueError(f"Unknown resource: {resource}") from None

    def count(self, resource: str) -> int:
        model = self.model(resource)
        with self.session_factory() as session:
            return session.scalar(select(func.count()).select_from(model))

    def get(self, resource: str, external_id: str) -> Optional[Dict[str, Any]]:
        model = self.model(resource)
        with self.session_factory() as session:
            row = session.scalar(select(model).where(model.external_id == external_id))
            return row.to_dict() if row else None

    def all(self, resource: str) -> List[Dict[str, Any]]:
        model = self.model(resource)
        with self.session_factory() as session:
            return [row.to_dict() for row in session.scalars(select(model).order_by(model.external_id))]

    def set_local_state(self, resource: str, external_id: str, local_state: Dict[str, Any]) -> bool:
        """Direct UI edit of local-only state. Always wins locally."""
        model = self.model(resource)
        try:
            with self.session_factory() as session:
                row = session.scalar(select(model).where(model.external_id == external_id))
                if not row:
                    return False
                row.local_state = dict(local_state)
                session.commit()
                return True
        except SQLAlchemyError as e:
            raise StorageWriteError(f"Failed to update local state for {external_id}: {e}") from e

    def clear(self, resource: str) -> int:
        model = self.model(resource)
        try:
            with self.session_factory() as session:
                result = session.execute(delete(model))
                session.commit()
        except SQLAlchemyError as e:
            raise StorageWriteError(f"Failed to clear {resource}: {e}") from e
        logger.info(f"Cleared all {result.rowcount} cached {resource}")
        return result.rowcount


class MergeEngine:
    """
    Idempotent upsert of remote records, keyed by external_id and gated on last_edited_time.

    Only a strictly newer remote version overwrites the stored row; equal or older versions
    are skipped so retried or duplicated pages are harmless.
    """

    def __init__(self, records: RecordStore, schemas: Dict[str, ResourceSchema]):
        self.records = records
        self.schemas = schemas

    def map_batch(self, resource: str, raw_records: Iterable[Dict[str, Any]]):
        schema = self.schemas[resource]
        mapped: Dict[str, MappedRecord] = {}
        malformed = 0
        for raw in raw_records:
            try:
                record = schema.map(raw)
            except MalformedRecordError as e:
                malformed += 1
                logger.warning(f"Skipping malformed record: {e}")
                continue
            # Same id twice in one batch: keep the newest
            current = mapped.get(record.external_id)
            if current is None or _is_newer(record.last_edited_time, current.last_edited_time):
                mapped[record.external_id] = record
        return list(mapped.values()), malformed

    def upsert_batch(self, resource: str, raw_records: Iterable[Dict[str, Any]]) -> MergeResult:
        """
        Merge one page of raw records. All writes of the page commit together; a storage
        failure raises StorageWriteError and leaves the page unapplied.
        """
        model = self.records.model(resource)
        mapped, malformed = self.map_batch(resource, raw_records)
        result = MergeResult(malformed=malformed)
        if not mapped:
            return result

        try:
            with self.records.session_factory() as session:
                ids = [record.external_id for record in mapped]
                existing = {
                    row.external_id: row
                    for row in session.scalars(select(model).where(model.external_id.in_(ids)))
                }
                for record in mapped:
                    row = existing.get(record.external_id)
                    if row is None:
                        session.add(model(external_id=record.external_id, local_state={}, **_remote_values(record)))
                        result.inserted += 1
                    elif _is_newer(record.last_edited_time, row.last_edited_time):
                        for column, value in _remote_values(record).items():
                            setattr(row, column, value)
                        result.updated += 1
                    else:
                        result.skipped += 1
                session.commit()
        except SQLAlchemyError as e:
            raise StorageWriteError(f"Failed to write {resource} batch: {e}") from e

        logger.debug(
            f"Merged {resource}: +{result.inserted} new, {result.updated} updated, "
            f"{result.skipped} unchanged, {result.malformed} malformed"
        )
        return result


def _remote_values(record: MappedRecord) -> Dict[str, Any]:
    return {column: getattr(record, column) for column in REMOTE_COLUMNS}


def _is_newer(incoming: str, stored: Optional[str]) -> bool:
    if not stored:
        return True
    try:
        return parse_timestamp(incoming) > parse_timestamp(stored)
    except ValueError:
        # Unreadable stored timestamp: let the remote version repair it
        return True
