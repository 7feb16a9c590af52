from enum import Enum
from pydantic import BaseModel, Field
from typing import Any, Dict, List, Optional

RESOURCES = ("tasks", "projects", "time_logs")

class ImportStatus(str, Enum):
    IDLE = "idle"
    RUNNING = "running"
    PAUSED = "paused"
    COMPLETED = "completed"
    ERROR = "error"

class PartitionStatus(str, Enum):
    PENDING = "pending"
    IN_PROGRESS = "in-progress"
    DONE = "done"

class PartitionFilter(BaseModel):
    name: str = "all"
    status_equals: Optional[str] = None
    status_not_equals: Optional[str] = None
    edited_on_or_after: Optional[str] = None  # inclusive, ISO timestamp
    edited_before: Optional[str] = None       # exclusive, ISO timestamp

class PartitionPlan(BaseModel):
    name: str
    version: int = 1
    created_at: Optional[str] = None
    partitions: List[PartitionFilter] = Field(default_factory=list)

    def matches(self, other: "PartitionPlan") -> bool:
        return self.name == other.name and self.version == other.version

class ImportPartition(BaseModel):
    index: int
    filter: PartitionFilter
    status: PartitionStatus = PartitionStatus.PENDING
    cursor: Optional[str] = None

class QueryPage(BaseModel):
    records: List[Dict[str, Any]] = Field(default_factory=list)
    next_cursor: Optional[str] = None
    has_more: bool = False

class ImportProgressSnapshot(BaseModel):
    resource: str
    status: ImportStatus = ImportStatus.IDLE
    records_imported: int = 0
    partitions_processed: int = 0
    current_partition: int = 0
    pages_processed: int = 0
    message: Optional[str] = None
    error: Optional[str] = None
    started_at: Optional[str] = None
    completed_at: Optional[str] = None

class MergeResult(BaseModel):
    inserted: int = 0
    updated: int = 0
    skipped: int = 0
    malformed: int = 0

    @property
    def written(self) -> int:
        return self.inserted + self.updated

class ResetReport(BaseModel):
    resource: str
    cleared_keys: Dict[str, bool] = Field(default_factory=dict)  # key -> was present
    record_count: int = 0
    records_deleted: int = 0
