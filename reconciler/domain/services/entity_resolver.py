"""Entity Resolution Service.

Maps a normalized identifier plus a nominal date onto canonical Patient and
Case entities, creating them only when no acceptable match exists.

Matching rules:
    - Patients are create-if-absent on the natural key; never two per key
    - Cases match when their start calendar date is within ``window_days`` of the
      nominal date (inclusive, evaluated in the source time zone)
    - Several matches resolve to the smallest absolute instant difference, then
      to the earliest created case; the tie-break is reported, not an error

Architecture:
    - Talks to persistence only through StoragePort
    - Never deletes anything
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Optional

from reconciler.domain.models import Case, Patient
from reconciler.domain.ports import StoragePort, UpsertOutcome
from reconciler.domain.services.identifier import validate_check_digit
from reconciler.domain.services.temporal import TimezoneLike, calendar_date

logger = logging.getLogger(__name__)

DEFAULT_WINDOW_DAYS = 2


@dataclass(frozen=True)
class PatientResolution:
    patient: Patient
    outcome: UpsertOutcome


@dataclass(frozen=True)
class CaseResolution:
    """Outcome of a case lookup.

    Attributes:
        case: The resolved (or newly created) case
        outcome: CREATED, UPDATED (attributes applied) or UNCHANGED
        candidates: Number of cases that matched inside the window
        outside_window: True when the case was attached without a window match
    """

    case: Case
    outcome: UpsertOutcome
    candidates: int = 0
    outside_window: bool = False

    @property
    def created(self) -> bool:
        return self.outcome == UpsertOutcome.CREATED

    @property
    def ambiguous(self) -> bool:
        return self.candidates > 1


class EntityResolver:
    """Resolves identifiers and dates to canonical entities.

    Parameters:
        storage: Persistence port
        window_days: Date-match window in calendar days (inclusive)
        source_timezone: Zone in which calendar dates are compared
    """

    def __init__(
        self,
        storage: StoragePort,
        window_days: int = DEFAULT_WINDOW_DAYS,
        source_timezone: TimezoneLike = None,
    ):
        if window_days < 0:
            raise ValueError(f"window_days must be non-negative, got {window_days}")
        self.storage = storage
        self.window_days = window_days
        self.source_timezone = source_timezone

    # ------------------------------------------------------------------
    # Patients
    # ------------------------------------------------------------------

    def resolve_patient(self, patient_id: str, attributes: Optional[dict] = None) -> PatientResolution:
        """Create the patient if absent, otherwise apply non-empty attributes.

        Empty attribute values never overwrite stored ones, so sheets that only
        carry the identifier leave roster data untouched.

        Raises:
            StorageError: If the upsert fails
        """
        existing = self.storage.find_patient(patient_id)
        updates = {k: v for k, v in (attributes or {}).items() if v is not None}

        if existing is not None and not updates:
            return PatientResolution(existing, UpsertOutcome.UNCHANGED)

        data = existing.model_dump() if existing is not None else {}
        data.update(updates)
        data["patient_id"] = patient_id

        valid, note = validate_check_digit(patient_id)
        data["identifier_suspicious"] = not valid
        data["identifier_note"] = note

        patient = Patient(**data)
        outcome = self.storage.upsert_patient(patient).unwrap()
        if outcome == UpsertOutcome.CREATED and not valid:
            logger.warning(f"Patient created with suspicious identifier: {note}")
        return PatientResolution(patient, outcome)

    # ------------------------------------------------------------------
    # Cases
    # ------------------------------------------------------------------

    def resolve_case(
        self,
        patient_id: str,
        nominal: Optional[datetime],
        attributes: Optional[dict] = None,
    ) -> CaseResolution:
        """Find the patient's case around ``nominal`` or create one starting there.

        Parameters:
            patient_id: Canonical identifier of an existing patient
            nominal: Nominal start instant (UTC) or None when unknown
            attributes: Case attributes from a case roster row, applied to the
                resolved case when non-empty

        Returns:
            CaseResolution: ``candidates > 1`` marks an ambiguous match
        """
        attributes = attributes or {}

        if nominal is None:
            undated = [c for c in self.storage.find_cases(patient_id) if c.start_at is None]
            if undated:
                return self._apply_attributes(undated[0], attributes, candidates=len(undated))
            return self._create(patient_id, None, attributes)

        matches = self.candidates(patient_id, nominal)
        if not matches:
            return self._create(patient_id, nominal, attributes)

        if len(matches) > 1:
            logger.warning(
                f"Ambiguous case match for nominal {nominal.isoformat()}: "
                f"{len(matches)} candidates, picked {matches[0].case_id}"
            )
        return self._apply_attributes(matches[0], attributes, candidates=len(matches))

    def attach_case(self, patient_id: str, nominal: Optional[datetime]) -> CaseResolution:
        """Find the case a dependent record (evaluation, time series) belongs to.

        Tries the date window first. Without a window match the record is
        attached to the patient's nearest existing case and marked
        ``outside_window`` so the anomaly pass can judge it; a case is only
        created when the patient has none at all.
        """
        cases = self.storage.find_cases(patient_id)
        if not cases:
            return self._create(patient_id, nominal, {})

        if nominal is None:
            undated = [c for c in cases if c.start_at is None]
            if undated:
                return CaseResolution(undated[0], UpsertOutcome.UNCHANGED, candidates=len(undated))
            return CaseResolution(cases[0], UpsertOutcome.UNCHANGED, outside_window=True)

        matches = self.candidates(patient_id, nominal)
        if matches:
            return CaseResolution(matches[0], UpsertOutcome.UNCHANGED, candidates=len(matches))

        dated = [c for c in cases if c.start_at is not None]
        if not dated:
            return CaseResolution(cases[0], UpsertOutcome.UNCHANGED, outside_window=True)
        nearest = min(dated, key=lambda c: (abs(c.start_at - nominal), c.created_seq or 0))
        return CaseResolution(nearest, UpsertOutcome.UNCHANGED, outside_window=True)

    def candidates(self, patient_id: str, nominal: datetime) -> list[Case]:
        """Cases inside the window, best match first."""
        # one extra day each side covers time-zone skew; the calendar check below is exact
        slack = timedelta(days=self.window_days + 1)
        nearby = self.storage.find_cases(patient_id, nominal - slack, nominal + slack)

        nominal_day = calendar_date(nominal, self.source_timezone)
        matches = [
            case for case in nearby
            if case.start_at is not None
            and abs((calendar_date(case.start_at, self.source_timezone) - nominal_day).days) <= self.window_days
        ]
        matches.sort(key=lambda c: (abs(c.start_at - nominal), c.created_seq or 0))
        return matches

    def _create(self, patient_id: str, nominal: Optional[datetime], attributes: dict) -> CaseResolution:
        data = {k: v for k, v in attributes.items() if v is not None}
        data.update(patient_id=patient_id, start_at=nominal)
        case = self.storage.create_case(Case(**data)).unwrap()
        logger.debug(f"Created case {case.case_id}")
        return CaseResolution(case, UpsertOutcome.CREATED)

    def _apply_attributes(self, case: Case, attributes: dict[str, Any], candidates: int) -> CaseResolution:
        changes = {
            key: value for key, value in attributes.items()
            if value is not None and getattr(case, key) != value
        }
        if not changes:
            return CaseResolution(case, UpsertOutcome.UNCHANGED, candidates=candidates)

        updated = Case(**{**case.model_dump(), **changes})
        outcome = self.storage.update_case(updated).unwrap()
        return CaseResolution(updated, outcome, candidates=candidates)
