"""Canonical Schema Definitions.

This module defines the canonical data models for reconciled clinical entities.
Every row read from a historical workbook is resolved into these models before
it reaches the persistence layer.

Security Impact:
    - Patient identifiers are national identity numbers (PII) and are only
      stored in their normalized, digits-only form plus the raw value for audit
    - Schema validation prevents malformed data from reaching persistence
    - Type safety enforced at runtime via Pydantic V2

Architecture:
    - Pure domain models with zero infrastructure dependencies
    - Natural keys are explicit so adapters can enforce uniqueness
    - Follows Hexagonal Architecture: Domain Core is isolated from Adapters
"""

from datetime import date, datetime, timezone
from enum import Enum
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator


class Phase(str, Enum):
    """Clinical stages of a procedure, declared in chronological order."""

    INDUCTION = "INDUCTION"
    DISSECTION = "DISSECTION"
    ANHEPATIC = "ANHEPATIC"
    PRE_REPERFUSION = "PRE_REPERFUSION"
    POST_REPERFUSION = "POST_REPERFUSION"
    BILIARY = "BILIARY"
    CLOSURE = "CLOSURE"

    @property
    def order(self) -> int:
        return list(Phase).index(self)


# Most terminal phase first; used when a case has no recorded end.
DEFAULT_PHASE_PRIORITY: tuple[Phase, ...] = (
    Phase.CLOSURE,
    Phase.BILIARY,
    Phase.POST_REPERFUSION,
    Phase.PRE_REPERFUSION,
    Phase.ANHEPATIC,
    Phase.DISSECTION,
    Phase.INDUCTION,
)


class EndSource(str, Enum):
    """Where a case's end instant came from."""

    EXPLICIT = "explicit"
    INFERRED = "inferred"


def _ensure_utc(v: Optional[datetime]) -> Optional[datetime]:
    if v is None:
        return None
    if v.tzinfo is None:
        return v.replace(tzinfo=timezone.utc)
    return v.astimezone(timezone.utc)


class Patient(BaseModel):
    """Canonical patient, keyed by the normalized identity number.

    Security Impact: ``patient_id`` and ``raw_identifier`` are PII. The raw value
    is kept only so that reconciliation decisions remain auditable.

    Parameters:
        patient_id: Normalized identity number (natural key, digits only)
        raw_identifier: Identifier exactly as read from the source
        name: Display name
        birth_date: Date of birth
        sex: 'M', 'F' or 'O'
        blood_group: ABO/Rh group as recorded
        weight_kg: Last known weight
        height_cm: Last known height
        transplanted: Transplant-status flag from the patient roster
        identifier_suspicious: True when the check digit does not validate
        identifier_note: Human-readable reason for ``identifier_suspicious``
    """

    patient_id: str = Field(..., description="Normalized identity number")
    raw_identifier: Optional[str] = Field(None, description="Identifier as read from the source")
    name: Optional[str] = Field(None, description="Display name (PII)")
    birth_date: Optional[date] = Field(None, description="Date of birth (PII)")
    sex: Optional[str] = Field(None, description="Sex: M, F or O")
    blood_group: Optional[str] = Field(None, description="Blood group")
    weight_kg: Optional[float] = Field(None, description="Weight in kilograms")
    height_cm: Optional[float] = Field(None, description="Height in centimeters")
    transplanted: Optional[bool] = Field(None, description="Transplant-status flag")
    identifier_suspicious: bool = Field(default=False, description="Check digit failed")
    identifier_note: Optional[str] = Field(None, description="Identifier validation note")

    @field_validator("patient_id")
    @classmethod
    def validate_patient_id(cls, v: str) -> str:
        """Enforce the canonical identifier invariant (digits only, 6-8 long).

        Raises:
            ValueError: If the key is not a canonical identifier
        """
        if not v or not v.isdigit():
            raise ValueError(f"patient_id must contain only digits. Got: {v!r}")
        if not 6 <= len(v) <= 8:
            raise ValueError(f"patient_id must have 6 to 8 digits. Got: {v!r}")
        return v

    @field_validator("sex")
    @classmethod
    def validate_sex(cls, v: Optional[str]) -> Optional[str]:
        if v is None:
            return None
        v = v.strip().upper()
        return v if v in ("M", "F") else "O"


class Case(BaseModel):
    """One procedure episode belonging to a patient.

    ``case_id`` and ``created_seq`` are assigned by the storage adapter on
    creation. ``created_seq`` is the monotonically increasing creation order
    used for auditable tie-breaks.
    """

    model_config = ConfigDict(validate_assignment=True)

    case_id: Optional[str] = Field(None, description="Surrogate key assigned on creation")
    patient_id: str = Field(..., description="Owning patient")
    start_at: Optional[datetime] = Field(None, description="Start instant (UTC)")
    end_at: Optional[datetime] = Field(None, description="End instant (UTC)")
    duration_minutes: Optional[int] = Field(None, description="end_at - start_at in minutes")
    end_source: Optional[EndSource] = Field(None, description="explicit or inferred")
    is_retransplant: bool = Field(default=False, description="Repeat-procedure flag")
    is_combined: bool = Field(default=False, description="Combined-procedure flag")
    optimal_donor: Optional[bool] = Field(None, description="Optimal donor flag")
    cold_ischemia_minutes: Optional[int] = Field(None, description="Cold ischemia time")
    warm_ischemia_minutes: Optional[int] = Field(None, description="Warm ischemia time")
    weight_kg: Optional[float] = Field(None, description="Weight at procedure")
    height_cm: Optional[float] = Field(None, description="Height at procedure")
    diagnosis: Optional[str] = Field(None, description="Diagnosis text")
    provenance: Optional[str] = Field(None, description="Referring provenance")
    observations: Optional[str] = Field(None, description="Free-text observations")
    created_at: Optional[datetime] = Field(None, description="Creation timestamp")
    created_seq: Optional[int] = Field(None, description="Creation order")

    @field_validator("start_at", "end_at", "created_at")
    @classmethod
    def validate_utc(cls, v: Optional[datetime]) -> Optional[datetime]:
        return _ensure_utc(v)


class TimeSeriesRecord(BaseModel):
    """A timestamped set of observations taken during one phase of a case."""

    record_id: Optional[str] = Field(None, description="Surrogate key assigned on creation")
    case_id: str = Field(..., description="Owning case")
    phase: Phase = Field(..., description="Clinical stage")
    timestamp: datetime = Field(..., description="Observation instant (UTC)")
    observations: dict[str, float] = Field(default_factory=dict, description="Numeric observations")
    suspicious: bool = Field(default=False, description="Date inconsistent with known cases")

    @field_validator("timestamp")
    @classmethod
    def validate_utc(cls, v: datetime) -> datetime:
        return _ensure_utc(v)


class TeamAssignment(BaseModel):
    """Clinician assigned to a case in a given role, keyed by (case_id, role)."""

    case_id: str = Field(..., description="Owning case")
    role: str = Field(..., description="Team role (e.g. ANESTHESIOLOGIST_1)")
    clinician_code: Optional[int] = Field(None, description="Professional registry code")
    clinician_name: Optional[str] = Field(None, description="Clinician name")


class Evaluation(BaseModel):
    """Pre-operative evaluation, one per case."""

    case_id: str = Field(..., description="Owning case")
    evaluation_date: Optional[datetime] = Field(None, description="Evaluation instant (UTC)")
    meld: Optional[float] = Field(None, description="MELD score")
    child: Optional[str] = Field(None, description="Child-Pugh class")
    asa: Optional[str] = Field(None, description="ASA class")
    etiology: Optional[str] = Field(None, description="Etiology / diagnosis")
    weight_kg: Optional[float] = Field(None)
    height_cm: Optional[float] = Field(None)

    @field_validator("evaluation_date")
    @classmethod
    def validate_utc(cls, v: Optional[datetime]) -> Optional[datetime]:
        return _ensure_utc(v)


class PostopOutcome(BaseModel):
    """Post-operative outcome, one per case."""

    case_id: str = Field(..., description="Owning case")
    outcome_date: Optional[datetime] = Field(None, description="Outcome instant (UTC)")
    icu_days: Optional[int] = Field(None)
    ward_days: Optional[int] = Field(None)
    reintervention: Optional[bool] = Field(None)
    graft_failure: Optional[bool] = Field(None)
    notes: Optional[str] = Field(None)

    @field_validator("outcome_date")
    @classmethod
    def validate_utc(cls, v: Optional[datetime]) -> Optional[datetime]:
        return _ensure_utc(v)


class FluidsRecord(BaseModel):
    """Fluids and blood products administered, recorded alongside a phase row."""

    record_id: Optional[str] = Field(None)
    case_id: str = Field(..., description="Owning case")
    phase: Phase = Field(...)
    timestamp: datetime = Field(...)
    volumes: dict[str, float] = Field(default_factory=dict, description="Volume by fluid kind (ml)")

    @field_validator("timestamp")
    @classmethod
    def validate_utc(cls, v: datetime) -> datetime:
        return _ensure_utc(v)


class CaseChildren(BaseModel):
    """Counts of the records exclusively owned by one case."""

    team: int = 0
    evaluations: int = 0
    time_series: int = 0
    postop: int = 0
    fluids: int = 0

    def present(self) -> set[str]:
        """Names of the child categories with at least one record."""
        return {name for name, count in self.model_dump().items() if count > 0}

    @property
    def total(self) -> int:
        return sum(self.model_dump().values())
