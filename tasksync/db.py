"""
Local SQLite store for the sync engine.

Tables:
- sync_state: key/value import bookkeeping (cursors, partitions, timestamps)
- tasks, projects, time_logs: cached Notion records keyed by external_id
"""

from sqlalchemy import Boolean, Column, DateTime, Integer, JSON, String, Text, create_engine
from sqlalchemy.orm import DeclarativeBase, sessionmaker
from sqlalchemy.pool import StaticPool
from sqlalchemy.sql import func


class Base(DeclarativeBase):
    """Base class for all SQLAlchemy models."""
    pass


class SyncStateEntry(Base):
    __tablename__ = "sync_state"

    key = Column(String(128), primary_key=True)
    value = Column(Text, nullable=False)
    updated_at = Column(DateTime, server_default=func.now(), onupdate=func.now())

    def __repr__(self):
        return f"<SyncStateEntry(key={self.key}, value={self.value})>"


class RecordMixin:
    """
    Columns shared by every cached resource table.

    Remote-sourced columns are rewritten whenever a newer remote version is merged.
    local_state belongs to the UI and is never touched by the merge path.
    """
    id = Column(Integer, primary_key=True)
    external_id = Column(String(64), unique=True, nullable=False, index=True)
    unique_id = Column(String(64), index=True)  # e.g. "ACTION-123"
    title = Column(Text, nullable=False)
    url = Column(String(512))
    archived = Column(Boolean, nullable=False, default=False)
    fields = Column(JSON, nullable=False, default=dict)
    last_edited_time = Column(String(40), nullable=False)  # canonical UTC ISO
    synced_at = Column(DateTime, server_default=func.now(), onupdate=func.now())

    # ============ LOCAL ONLY ============
    local_state = Column(JSON, nullable=False, default=dict)

    def __repr__(self):
        return f"<{self.__class__.__name__}(external_id={self.external_id}, title={self.title})>"

    def to_dict(self) -> dict:
        return {
            "external_id": self.external_id,
            "unique_id": self.unique_id,
            "title": self.title,
            "url": self.url,
            "archived": self.archived,
            "fields": dict(self.fields or {}),
            "last_edited_time": self.last_edited_time,
            "local_state": dict(self.local_state or {}),
        }


class TaskRecord(RecordMixin, Base):
    __tablename__ = "tasks"


class ProjectRecord(RecordMixin, Base):
    __tablename__ = "projects"


class TimeLogRecord(RecordMixin, Base):
    __tablename__ = "time_logs"


RECORD_MODELS = {
    "tasks": TaskRecord,
    "projects": ProjectRecord,
    "time_logs": TimeLogRecord,
}


def make_engine(url: str):
    if url in ("sqlite://", "sqlite:///:memory:"):
        # One shared connection so every session sees the same in-memory database
        return create_engine(
            url,
            connect_args={"check_same_thread": False},
            poolclass=StaticPool,
        )
    return create_engine(url, echo=False)


def sqlite_url(path: str) -> str:
    if path == ":memory:":
        return "sqlite://"
    return f"sqlite:///{path}"


def init_db(url: str):
    """Create the engine, ensure tables exist and return a session factory."""
    engine = make_engine(url)
    Base.metadata.create_all(engine)
    return sessionmaker(bind=engine, autoflush=False, autocommit=False, expire_on_commit=False)
