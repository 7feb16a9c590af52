from dataclasses import dataclass, field
from datetime import datetime
from typing import Callable, Dict

from .clock import utc_now
from .db import init_db, sqlite_url
from .mapping import ResourceSchema, build_schemas
from .merge import RecordStore
from .remote import RemoteQueryAdapter, RetryPolicy
from .state import SyncStateStore


@dataclass
class SyncContext:
    """Everything one coordinator needs. Nothing in the engine reads global settings."""
    adapter: RemoteQueryAdapter
    state: SyncStateStore
    records: RecordStore
    schemas: Dict[str, ResourceSchema]
    page_size: int = 25
    retry: RetryPolicy = field(default_factory=RetryPolicy)
    clock: Callable[[], datetime] = utc_now

    @classmethod
    def create(cls, adapter: RemoteQueryAdapter, settings, db_url: str = None, **overrides) -> "SyncContext":
        session_factory = init_db(db_url or sqlite_url(settings.DB_PATH))
        values = dict(
            adapter=adapter,
            state=SyncStateStore(session_factory),
            records=RecordStore(session_factory),
            schemas=build_schemas(settings),
            page_size=settings.IMPORT_PAGE_SIZE,
            retry=RetryPolicy(
                max_attempts=settings.IMPORT_MAX_ATTEMPTS,
                base_backoff_s=settings.IMPORT_BASE_BACKOFF_SECONDS,
                max_backoff_s=settings.IMPORT_MAX_BACKOFF_SECONDS,
            ),
        )
        values.update(overrides)
        return cls(**values)
