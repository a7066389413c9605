"""
Sync and reconciliation result schemas.
"""
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional
from pydantic import BaseModel, Field


class SyncStatus(BaseModel):
    """Per-invocation report of records attempted/succeeded/failed."""
    last_sync: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    total_records: int = 0
    synced_records: int = 0
    failed_records: int = 0
    errors: list[str] = Field(default_factory=list)

    def record_success(self) -> None:
        self.synced_records += 1

    def record_failure(self, message: str) -> None:
        self.failed_records += 1
        self.errors.append(message)

    def merge(self, other: "SyncStatus") -> None:
        self.total_records += other.total_records
        self.synced_records += other.synced_records
        self.failed_records += other.failed_records
        self.errors.extend(other.errors)
        self.last_sync = max(self.last_sync, other.last_sync)


class FullSyncResult(BaseModel):
    companies: SyncStatus = Field(default_factory=SyncStatus)
    jobs: SyncStatus = Field(default_factory=SyncStatus)
    quotes: SyncStatus = Field(default_factory=SyncStatus)
    skipped_companies: list[str] = Field(default_factory=list)

    @property
    def records_processed(self) -> int:
        return self.companies.synced_records + self.jobs.synced_records + self.quotes.synced_records

    @property
    def error_count(self) -> int:
        return self.companies.failed_records + self.jobs.failed_records + self.quotes.failed_records


class CompanySyncStatus(BaseModel):
    """Latest known sync state for one company, read back from the audit trail."""
    company_uuid: str
    last_sync: Optional[datetime] = None
    status: Optional[SyncStatus] = None
    local_jobs: int = 0
    local_quotes: int = 0
    sync_pending: bool = False
    last_error: Optional[str] = None


class IssueCategory(str, Enum):
    MISSING_LOCALLY = "missing_locally"
    STALE_LOCALLY = "stale_locally"
    ORPHANED_LOCALLY = "orphaned_locally"


class ConsistencyIssue(BaseModel):
    category: IssueCategory
    entity_type: str  # company, job, quote
    uuid: str
    company_uuid: Optional[str] = None
    field: Optional[str] = None
    expected: Any = None
    actual: Any = None
    message: str = ""


class ConsistencyReport(BaseModel):
    issues: list[ConsistencyIssue] = Field(default_factory=list)
    details: dict[str, Any] = Field(default_factory=dict)

    def by_category(self) -> dict[str, int]:
        counts = {c.value: 0 for c in IssueCategory}
        for issue in self.issues:
            counts[issue.category.value] += 1
        return counts
