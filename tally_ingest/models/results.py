"""
Outcome and report models returned by every pipeline pass.

Callers always get one of these back, never an exception.
"""
from __future__ import annotations
from collections import Counter
from datetime import datetime
from typing import Any, Literal, Optional
from pydantic import BaseModel, Field

Action = Literal["inserted", "updated", "ignored", "created_master", "error"]

ACTIONS: tuple[str, ...] = ("inserted", "updated", "ignored", "created_master", "error")


class ProcessResult(BaseModel):
    """Outcome of writing one record."""

    table: str
    action: Action
    guid: str
    record_type: str
    details: Optional[dict[str, Any]] = None
    error: Optional[str] = None


class LiveUpdate(BaseModel):
    type: Literal["progress", "complete", "error"]
    message: str
    record: Optional[ProcessResult] = None
    progress: Optional[dict[str, Any]] = None


class Summary(BaseModel):
    total: int = 0
    inserted: int = 0
    updated: int = 0
    ignored: int = 0
    created_master: int = 0
    errors: int = 0
    by_table: dict[str, dict[str, int]] = Field(default_factory=dict)

    @classmethod
    def from_results(cls, results: list[ProcessResult]) -> "Summary":
        counts = Counter(r.action for r in results)
        by_table: dict[str, dict[str, int]] = {}
        for r in results:
            table_counts = by_table.setdefault(r.table, {a: 0 for a in ACTIONS})
            table_counts[r.action] += 1
        return cls(
            total=len(results),
            inserted=counts["inserted"],
            updated=counts["updated"],
            ignored=counts["ignored"],
            created_master=counts["created_master"],
            errors=counts["error"],
            by_table=by_table,
        )


class IngestResult(BaseModel):
    success: bool
    results: list[ProcessResult] = Field(default_factory=list)
    summary: Summary = Field(default_factory=Summary)
    live_updates: list[LiveUpdate] = Field(default_factory=list)
    cancelled: bool = False
    error: Optional[str] = None


class BatchStats(BaseModel):
    """Counts from a bulk upsert of one table."""

    table: str
    inserted: int = 0
    updated: int = 0
    ignored: int = 0
    errors: int = 0
    error_samples: list[str] = Field(default_factory=list)
    samples: list[ProcessResult] = Field(default_factory=list)
    cancelled: bool = False

    @property
    def processed(self) -> int:
        return self.inserted + self.updated + self.ignored + self.errors


class LinkReport(BaseModel):
    table: str
    scanned: int = 0
    linked: int = 0
    not_found: int = 0
    ambiguous: int = 0
    errors: int = 0
    cancelled: bool = False


class ReconcileReport(BaseModel):
    scanned: int = 0
    updated: int = 0
    unchanged: int = 0
    skipped_no_entries: int = 0
    errors: int = 0
    cancelled: bool = False


class ValidationResult(BaseModel):
    table: str
    record_count: int = 0
    missing_references: int = 0
    duplicates: int = 0
    unlinked: int = 0
    issues: list[str] = Field(default_factory=list)

    @property
    def issue_count(self) -> int:
        """Orphans and duplicates count individually, plus one per message."""
        return self.missing_references + self.duplicates + len(self.issues)


ValidatorState = Literal["idle", "running", "success", "partial_failure"]


class ValidationReport(BaseModel):
    results: list[ValidationResult] = Field(default_factory=list)
    overall_health_score: float = 100.0
    state: ValidatorState = "idle"
    total_issues: int = 0
    cancelled: bool = False


class TableSyncResult(BaseModel):
    table: str
    fetched: int = 0
    stats: Optional[BatchStats] = None
    error: Optional[str] = None

    @property
    def failed(self) -> bool:
        return self.error is not None


class SyncReport(BaseModel):
    success: bool
    action: str
    job_id: Optional[str] = None
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    tables: list[TableSyncResult] = Field(default_factory=list)
    links: list[LinkReport] = Field(default_factory=list)
    reconcile: Optional[ReconcileReport] = None
    data: Optional[dict[str, Any]] = None
    cancelled: bool = False
    error: Optional[str] = None

    @property
    def records_processed(self) -> int:
        return sum(t.stats.processed for t in self.tables if t.stats)

    @property
    def records_inserted(self) -> int:
        return sum(t.stats.inserted for t in self.tables if t.stats)

    @property
    def records_updated(self) -> int:
        return sum(t.stats.updated for t in self.tables if t.stats)

    @property
    def error_count(self) -> int:
        return sum(
            (t.stats.errors if t.stats else 0) + (1 if t.failed else 0)
            for t in self.tables
        )
