"""Run Report.

A single run-scoped report object threaded explicitly through every pass and
returned by the pipeline entry point. It replaces per-script counters: every
skipped, ambiguous, merged, inferred and flagged record is counted here, and
per-row issues are kept in a bounded list with their provenance.

Architecture:
    - Plain dataclasses, no infrastructure dependencies
    - JSON-serializable via to_dict() for operators and CI
"""

import uuid
from collections import Counter
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Optional


class IssueCategory(str, Enum):
    """Error taxonomy of a reconciliation run."""

    CONFIGURATION = "configuration"
    ROW_VALIDATION = "row_validation"
    AMBIGUOUS_MATCH = "ambiguous_match"
    DATA_QUALITY = "data_quality"
    INTEGRITY = "integrity"
    PERSISTENCE = "persistence"


@dataclass(frozen=True)
class RowIssue:
    """One reportable problem with its provenance."""

    category: IssueCategory
    reason: str
    provenance: Optional[str] = None
    record_id: Optional[str] = None

    def to_dict(self) -> dict:
        data = asdict(self)
        data["category"] = self.category.value
        return data


@dataclass
class RunReport:
    """Counts and issues for one reconciliation run.

    Attributes:
        run_id: Unique identifier of the run
        dry_run: True when writes went to a throwaway snapshot
        max_issues: Cap on stored issues; further issues are only counted
        counts: Flat counters (rows_read, cases_created, ...)
        issues: Bounded list of issues
        issue_counts: Issues per category, including ones beyond the cap
        last_completed_unit: Last unit of work known to be persisted
        fatal_error: Message of the error that stopped the run, if any
        fatal_category: CONFIGURATION or PERSISTENCE when the run stopped
    """

    run_id: str = field(default_factory=lambda: str(uuid.uuid4()))
    dry_run: bool = False
    max_issues: int = 200
    started_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    finished_at: Optional[datetime] = None
    counts: Counter = field(default_factory=Counter)
    issues: list[RowIssue] = field(default_factory=list)
    issue_counts: Counter = field(default_factory=Counter)
    stages_completed: list[str] = field(default_factory=list)
    last_completed_unit: Optional[str] = None
    fatal_error: Optional[str] = None
    fatal_category: Optional[IssueCategory] = None

    def increment(self, key: str, amount: int = 1) -> None:
        self.counts[key] += amount

    def count(self, key: str) -> int:
        return self.counts.get(key, 0)

    def count_upsert(self, entity: str, outcome) -> None:
        """Count an UpsertOutcome as ``<entity>_<created|updated|unchanged>``."""
        self.counts[f"{entity}_{outcome.value}"] += 1

    def add_issue(
        self,
        category: IssueCategory,
        reason: str,
        provenance: Optional[str] = None,
        record_id: Optional[str] = None,
    ) -> None:
        self.issue_counts[category.value] += 1
        if len(self.issues) < self.max_issues:
            self.issues.append(RowIssue(category, reason, provenance, record_id))

    def skip_row(self, reason: str, provenance: str) -> None:
        self.counts["rows_skipped"] += 1
        self.add_issue(IssueCategory.ROW_VALIDATION, reason, provenance)

    def complete_unit(self, unit: str) -> None:
        self.last_completed_unit = unit

    def abort(self, category: IssueCategory, message: str) -> None:
        """Record the error that stopped the run."""
        self.fatal_error = message
        self.fatal_category = category
        self.add_issue(category, message)

    @property
    def issues_truncated(self) -> int:
        return sum(self.issue_counts.values()) - len(self.issues)

    @property
    def succeeded(self) -> bool:
        return self.fatal_error is None

    def finish(self) -> "RunReport":
        self.finished_at = datetime.now(timezone.utc)
        return self

    def to_dict(self) -> dict:
        return {
            "run_id": self.run_id,
            "dry_run": self.dry_run,
            "started_at": self.started_at.isoformat(),
            "finished_at": self.finished_at.isoformat() if self.finished_at else None,
            "succeeded": self.succeeded,
            "fatal_error": self.fatal_error,
            "fatal_category": self.fatal_category.value if self.fatal_category else None,
            "last_completed_unit": self.last_completed_unit,
            "stages_completed": list(self.stages_completed),
            "counts": dict(sorted(self.counts.items())),
            "issue_counts": dict(sorted(self.issue_counts.items())),
            "issues_truncated": self.issues_truncated,
            "issues": [issue.to_dict() for issue in self.issues],
        }
