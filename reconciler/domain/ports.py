"""Domain Ports - Abstract Contracts for Reconciliation.

This module defines the Port interfaces (abstract contracts) that Adapters must implement.
Following Hexagonal Architecture, the Domain Core defines what it needs, not how it's provided.

Architecture:
    - Pure abstract interfaces with zero infrastructure dependencies
    - Source adapters (Excel workbooks, CSV directories) implement SourcePort
    - Storage adapters (DuckDB, in-memory) implement StoragePort
    - Every write is keyed by a natural key so passes are safely re-runnable
"""

from abc import ABC, abstractmethod
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import TYPE_CHECKING, Any, Generic, Iterator, Optional, TypeVar, Union

from reconciler.domain.models import (
    Case,
    CaseChildren,
    Patient,
    TeamAssignment,
    TimeSeriesRecord,
)

if TYPE_CHECKING:
    from reconciler.domain.source_row import SheetView

T = TypeVar('T')


# ============================================================================
# Result Type for Success/Failure Communication
# ============================================================================

@dataclass(frozen=True)
class Result(Generic[T]):
    """Result type for communicating success or failure without exceptions.

    Storage writes return a Result so callers decide whether a failure is
    fatal for the pass. ``unwrap()`` converts a failure back into a raised
    StorageError when the caller has nothing better to do with it.

    Attributes:
        success: True if the operation succeeded, False otherwise
        value: The successful result value (only present if success=True)
        error: Error information (only present if success=False)
        error_type: Type of error (StorageError, IntegrityError, etc.)
        error_details: Additional error context (operation, natural key, etc.)

    Example:
        ```python
        result = storage.upsert_patient(patient)
        if result.is_success():
            report.count_upsert("patients", result.value)
        ```
    """

    success: bool
    value: Optional[T] = None
    error: Optional[str] = None
    error_type: Optional[str] = None
    error_details: Optional[dict] = None

    @classmethod
    def success_result(cls, value: T) -> 'Result[T]':
        """Create a successful result."""
        return cls(
            success=True,
            value=value,
            error=None,
            error_type=None,
            error_details=None
        )

    @classmethod
    def failure_result(
        cls,
        error: Union[str, Exception],
        error_type: Optional[str] = None,
        error_details: Optional[dict] = None
    ) -> 'Result[T]':
        """Create a failure result.

        Parameters:
            error: Error message or exception
            error_type: Type of error (e.g., "StorageError", "IntegrityError")
            error_details: Additional context (operation, key, etc.)

        Returns:
            Result: Failure result with error information
        """
        error_message = str(error) if isinstance(error, Exception) else error
        error_type_name = error_type or (type(error).__name__ if isinstance(error, Exception) else "UnknownError")
        details = dict(error_details or {})
        if isinstance(error, StorageError) and not details:
            details = {"operation": error.operation, **error.details}

        return cls(
            success=False,
            value=None,
            error=error_message,
            error_type=error_type_name,
            error_details=details
        )

    def is_success(self) -> bool:
        """Check if result is successful."""
        return self.success

    def is_failure(self) -> bool:
        """Check if result is a failure."""
        return not self.success

    def unwrap(self) -> T:
        """Return the value or raise the failure as an exception.

        Raises:
            IntegrityError: If the failure was an integrity violation
            StorageError: For any other failure
        """
        if self.success:
            return self.value
        details = self.error_details or {}
        if self.error_type == "IntegrityError":
            raise IntegrityError(self.error, details=details)
        raise StorageError(self.error, operation=details.get("operation"), details=details)


class UpsertOutcome(str, Enum):
    """What an idempotent upsert did to the store."""

    CREATED = "created"
    UPDATED = "updated"
    UNCHANGED = "unchanged"


# ============================================================================
# Custom Exception Hierarchy
# ============================================================================

class ReconciliationError(Exception):
    """Base exception for all reconciliation errors."""
    pass


class ConfigurationError(ReconciliationError):
    """Raised when the sheet mapping does not fit the sources.

    Fatal: the run aborts before any write.

    Attributes:
        sheet: Sheet name that failed validation (if applicable)
        details: Missing columns and other context
    """

    def __init__(self, message: str, sheet: Optional[str] = None, details: Optional[dict] = None):
        super().__init__(message)
        self.sheet = sheet
        self.details = details or {}


class RowValidationError(ReconciliationError):
    """Raised when a single source row cannot be used.

    Never aborts the run: the row is skipped and recorded in the report.

    Attributes:
        source: Provenance string (workbook:sheet:row)
        field: Logical field that failed (if applicable)
    """

    def __init__(self, message: str, source: Optional[str] = None, field: Optional[str] = None):
        super().__init__(message)
        self.source = source
        self.field = field


class SourceNotFoundError(ReconciliationError):
    """Raised when the source cannot be found or accessed."""

    def __init__(self, message: str, source: Optional[str] = None):
        super().__init__(message)
        self.source = source


class UnsupportedSourceError(ReconciliationError):
    """Raised when no source adapter can read the given source."""

    def __init__(self, message: str, source: Optional[str] = None, adapter: Optional[str] = None):
        super().__init__(message)
        self.source = source
        self.adapter = adapter


class StorageError(ReconciliationError):
    """Raised when the persistence layer fails (connectivity, constraint violation).

    Fatal for the current pass.

    Attributes:
        operation: Storage operation that failed
        details: Additional error context
    """

    def __init__(self, message: str, operation: Optional[str] = None, details: Optional[dict] = None):
        super().__init__(message)
        self.operation = operation
        self.details = details or {}


class IntegrityError(ReconciliationError):
    """Raised when a merge would delete records that are still needed.

    Aborts the single merge operation only.
    """

    def __init__(self, message: str, details: Optional[dict] = None):
        super().__init__(message)
        self.details = details or {}


# ============================================================================
# Source Port
# ============================================================================

class SourcePort(ABC):
    """Abstract contract for tabular source readers.

    A source is a workbook (or something shaped like one): named sheets, each
    with a header row and data rows. The domain only ever sees SheetView
    objects, independent of the physical format.
    """

    @abstractmethod
    def can_read(self, source: str) -> bool:
        """Check if this adapter can handle the given source."""
        pass

    @abstractmethod
    def sheet_names(self) -> list[str]:
        """Names of all sheets in the source."""
        pass

    @abstractmethod
    def read_sheet(self, sheet_name: str) -> "SheetView":
        """Return a view over one sheet.

        Raises:
            SourceNotFoundError: If the sheet does not exist
        """
        pass

    def get_source_info(self) -> Optional[dict]:
        """Get metadata about the source (optional, adapter-specific)."""
        return None


# ============================================================================
# Storage Port
# ============================================================================

class StoragePort(ABC):
    """Abstract contract for the canonical relational store.

    Every create is conditioned on the natural key (``upsert``) or on an
    explicit lookup (``create_case``), and the store enforces natural-key
    uniqueness. That uniqueness is the only concurrency-safety mechanism the
    engine relies on.

    Natural keys:
        - patients: (patient_id,)
        - cases: (patient_id, start_at) when start_at is present
        - time_series: (case_id, phase, timestamp)
        - fluids: (case_id, phase, timestamp)
        - team: (case_id, role)
        - evaluations: (case_id,)
        - postop: (case_id,)
    """

    NATURAL_KEYS: dict[str, tuple[str, ...]] = {
        "patients": ("patient_id",),
        "time_series": ("case_id", "phase", "timestamp"),
        "fluids": ("case_id", "phase", "timestamp"),
        "team": ("case_id", "role"),
        "evaluations": ("case_id",),
        "postop": ("case_id",),
    }
    ENTITY_TYPES = tuple(NATURAL_KEYS)

    @abstractmethod
    def initialize_schema(self) -> Result[None]:
        """Create tables, unique indexes and the audit log if missing."""
        pass

    @abstractmethod
    def upsert(self, entity_type: str, natural_key: dict, data: dict) -> Result[UpsertOutcome]:
        """Create or update the row identified by ``natural_key``.

        Parameters:
            entity_type: One of ENTITY_TYPES
            natural_key: Column -> value mapping identifying the row
            data: Remaining column values

        Returns:
            Result[UpsertOutcome]: CREATED, UPDATED or UNCHANGED
        """
        pass

    def upsert_patient(self, patient: Patient) -> Result[UpsertOutcome]:
        data = patient.model_dump(exclude={"patient_id"})
        return self.upsert("patients", {"patient_id": patient.patient_id}, data)

    def upsert_time_series(self, record: TimeSeriesRecord) -> Result[UpsertOutcome]:
        # suspicious is owned by the flagger and never overwritten by ingestion
        data = record.model_dump(include={"observations"})
        key = {"case_id": record.case_id, "phase": record.phase, "timestamp": record.timestamp}
        return self.upsert("time_series", key, data)

    def upsert_child(self, entity_type: str, child: Any) -> Result[UpsertOutcome]:
        """Upsert a team assignment, evaluation, postop outcome or fluids record."""
        dumped = child.model_dump(exclude={"record_id"})
        key = {k: dumped.pop(k) for k in self.NATURAL_KEYS[entity_type]}
        return self.upsert(entity_type, key, dumped)

    @abstractmethod
    def find_patient(self, patient_id: str) -> Optional[Patient]:
        """Find a patient by natural key."""
        pass

    @abstractmethod
    def find_cases(
        self,
        patient_id: str,
        start_from: Optional[datetime] = None,
        start_to: Optional[datetime] = None,
    ) -> list[Case]:
        """Cases of one patient ordered by created_seq, optionally filtered by start range (inclusive)."""
        pass

    @abstractmethod
    def get_case(self, case_id: str) -> Optional[Case]:
        pass

    @abstractmethod
    def list_cases(self) -> list[Case]:
        """All cases ordered by created_seq."""
        pass

    @abstractmethod
    def create_case(self, case: Case) -> Result[Case]:
        """Insert a new case, assigning case_id, created_at and created_seq.

        Must fail (not duplicate) when another case already holds the same
        (patient_id, start_at).
        """
        pass

    @abstractmethod
    def update_case(self, case: Case) -> Result[UpsertOutcome]:
        """Update the mutable attributes of an existing case."""
        pass

    @abstractmethod
    def delete_case_cascade(self, case_id: str) -> Result[CaseChildren]:
        """Delete a case and every record it exclusively owns, atomically.

        Returns:
            Result[CaseChildren]: Counts of deleted children
        """
        pass

    @abstractmethod
    def count_children(self, case_id: str) -> CaseChildren:
        pass

    @abstractmethod
    def list_team(self, case_id: str) -> list[TeamAssignment]:
        pass

    @abstractmethod
    def list_time_series(
        self,
        case_id: Optional[str] = None,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
    ) -> list[TimeSeriesRecord]:
        """Time-series records filtered by owning case and timestamp range (inclusive)."""
        pass

    @abstractmethod
    def mark_suspicious(self, record_ids: list[str]) -> Result[int]:
        """Set suspicious=True on the given records.

        Returns:
            Result[int]: Number of records whose flag changed
        """
        pass

    @abstractmethod
    @contextmanager
    def transaction(self) -> Iterator[None]:
        """Transaction boundary; nested use joins the outer transaction."""
        pass

    @abstractmethod
    def log_audit_event(
        self,
        event_type: str,
        record_id: Optional[str],
        details: Optional[dict] = None,
        table_name: Optional[str] = None,
    ) -> Result[str]:
        """Append an event to the audit log."""
        pass

    @abstractmethod
    def snapshot(self) -> dict[str, list[dict]]:
        """Export every table as plain rows (used to seed dry runs)."""
        pass

    @abstractmethod
    def close(self) -> None:
        """Close storage connection and release resources."""
        pass
