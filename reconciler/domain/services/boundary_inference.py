"""Temporal Boundary Inference Service.

Derives a case's end instant from its time-series records when the sources
never recorded one, and validates ends that they did record.

Tiers:
    PRIMARY   latest in-window record of the most terminal phase that has any
    FALLBACK  that phase has records but none within the plausibility window;
              its earliest record is reported as a data-quality warning
    NONE      no records at all; the case stays open-ended
    EXPLICIT  the source recorded the end; it is validated, not inferred

A boundary is only written when the resulting duration is strictly positive
and within the plausibility ceiling.
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from enum import Enum
from typing import Optional, Sequence

from reconciler.domain.cdc_models import ChangeEvent, ChangeType
from reconciler.domain.models import DEFAULT_PHASE_PRIORITY, Case, EndSource, Phase, TimeSeriesRecord
from reconciler.domain.ports import StoragePort, UpsertOutcome
from reconciler.domain.services.temporal import minutes_between

logger = logging.getLogger(__name__)

DEFAULT_MAX_DURATION_MINUTES = 1440


class BoundaryTier(str, Enum):
    PRIMARY = "primary"
    FALLBACK = "fallback"
    NONE = "none"
    EXPLICIT = "explicit"


@dataclass(frozen=True)
class BoundaryInference:
    """Result of inferring or validating one case's end."""

    case_id: Optional[str]
    tier: BoundaryTier
    ok: bool
    end: Optional[datetime] = None
    duration_minutes: Optional[int] = None
    phase: Optional[Phase] = None
    reason: Optional[str] = None
    corrected: bool = False


def _check_duration(start: datetime, end: datetime, max_minutes: int) -> tuple[int, Optional[str]]:
    duration = round(minutes_between(start, end))
    if duration < 0:
        return duration, f"Negative duration ({duration} min)"
    if duration == 0:
        return duration, "Zero duration"
    if duration > max_minutes:
        return duration, f"Duration {duration} min exceeds ceiling of {max_minutes} min"
    return duration, None


def infer_case_end(
    case: Case,
    records: Sequence[TimeSeriesRecord],
    phase_priority: Sequence[Phase] = DEFAULT_PHASE_PRIORITY,
    max_minutes: int = DEFAULT_MAX_DURATION_MINUTES,
) -> BoundaryInference:
    """Infer the end of ``case`` from its records.

    Parameters:
        case: The case, with ``start_at`` set
        records: Time-series records owned by the case
        phase_priority: Phases from most to least terminal
        max_minutes: Plausibility ceiling for the duration

    Returns:
        BoundaryInference: ``ok`` is False for NONE, FALLBACK and any
        duration that is missing, non-positive or above the ceiling
    """
    if case.start_at is None:
        return BoundaryInference(case.case_id, BoundaryTier.NONE, False, reason="Case has no start instant")

    start = case.start_at
    for phase in phase_priority:
        in_phase = [r for r in records if r.phase == phase]
        if not in_phase:
            continue

        in_window = [r for r in in_phase if 0 <= minutes_between(start, r.timestamp) <= max_minutes]
        if in_window:
            end = max(r.timestamp for r in in_window)
            duration, problem = _check_duration(start, end, max_minutes)
            return BoundaryInference(
                case.case_id, BoundaryTier.PRIMARY, problem is None,
                end=end, duration_minutes=duration, phase=phase, reason=problem,
            )

        end = min(r.timestamp for r in in_phase)
        duration = round(minutes_between(start, end))
        return BoundaryInference(
            case.case_id, BoundaryTier.FALLBACK, False,
            end=end, duration_minutes=duration, phase=phase,
            reason=f"No {phase.value} record within {max_minutes} min of start (earliest at {duration} min)",
        )

    return BoundaryInference(case.case_id, BoundaryTier.NONE, False, reason="No time-series records")


def validate_explicit_end(case: Case, max_minutes: int = DEFAULT_MAX_DURATION_MINUTES) -> BoundaryInference:
    """Validate a recorded end, correcting ends typed with the start's date.

    An end earlier than its start is moved forward one day when that yields a
    valid duration (procedures running past midnight).
    """
    if case.start_at is None or case.end_at is None:
        return BoundaryInference(case.case_id, BoundaryTier.EXPLICIT, False, reason="Missing start or end")

    duration, problem = _check_duration(case.start_at, case.end_at, max_minutes)
    if problem is None:
        return BoundaryInference(case.case_id, BoundaryTier.EXPLICIT, True, end=case.end_at, duration_minutes=duration)

    if duration < 0:
        shifted = case.end_at + timedelta(days=1)
        new_duration, shifted_problem = _check_duration(case.start_at, shifted, max_minutes)
        if shifted_problem is None:
            return BoundaryInference(
                case.case_id, BoundaryTier.EXPLICIT, True,
                end=shifted, duration_minutes=new_duration, corrected=True,
                reason="End before start; moved forward one day",
            )

    return BoundaryInference(
        case.case_id, BoundaryTier.EXPLICIT, False,
        end=case.end_at, duration_minutes=duration, reason=problem,
    )


class BoundaryInferenceService:
    """Applies boundary inference to persisted cases.

    Inferred ends are recomputed on every run so they follow the records;
    explicit ends are only touched by the overnight correction.
    """

    def __init__(
        self,
        storage: StoragePort,
        phase_priority: Sequence[Phase] = DEFAULT_PHASE_PRIORITY,
        max_minutes: int = DEFAULT_MAX_DURATION_MINUTES,
        audit_logger=None,
        run_id: Optional[str] = None,
    ):
        self.storage = storage
        self.phase_priority = tuple(phase_priority)
        self.max_minutes = max_minutes
        self.audit_logger = audit_logger
        self.run_id = run_id

    def evaluate(self, case: Case) -> BoundaryInference:
        if case.end_source == EndSource.EXPLICIT:
            return validate_explicit_end(case, self.max_minutes)
        records = self.storage.list_time_series(case_id=case.case_id)
        return infer_case_end(case, records, self.phase_priority, self.max_minutes)

    def apply(self, case: Case, inference: BoundaryInference) -> UpsertOutcome:
        """Persist a valid boundary; returns UNCHANGED when nothing differs."""
        if not inference.ok:
            return UpsertOutcome.UNCHANGED

        end_source = EndSource.EXPLICIT if inference.tier == BoundaryTier.EXPLICIT else EndSource.INFERRED
        if (
            case.end_at == inference.end
            and case.duration_minutes == inference.duration_minutes
            and case.end_source == end_source
        ):
            return UpsertOutcome.UNCHANGED

        updated = case.model_copy(update={
            "end_at": inference.end,
            "duration_minutes": inference.duration_minutes,
            "end_source": end_source,
        })
        outcome = self.storage.update_case(updated).unwrap()

        if self.audit_logger is not None:
            self.audit_logger.log_change_event(ChangeEvent(
                table_name="cases",
                record_id=case.case_id,
                field_name="end_at",
                old_value=case.end_at,
                new_value=inference.end,
                change_type=ChangeType.UPDATE,
                run_id=self.run_id,
                stage="infer_boundaries",
                reason=inference.reason or f"{inference.tier.value} boundary",
            ))
        return outcome

    def run(self, cases: Optional[list[Case]] = None) -> list[tuple[BoundaryInference, UpsertOutcome]]:
        if cases is None:
            cases = self.storage.list_cases()

        results = []
        for case in cases:
            inference = self.evaluate(case)
            outcome = self.apply(case, inference)
            if not inference.ok:
                logger.debug(f"Case {case.case_id}: {inference.tier.value} boundary not applied: {inference.reason}")
            results.append((inference, outcome))
        return results
