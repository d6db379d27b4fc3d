"""Anomaly Flagging Service.

Marks time-series records whose calendar date does not correspond to any
known case start of the owning patient. Typical cause: a procedure row typed
with the wrong year and attached to the patient's only case.

A record is consistent when its (patient, calendar date) pair has a known case
start, or when it falls on the following day within the plausibility ceiling
of such a start (procedures running past midnight).

Architecture:
    - Only ever sets ``suspicious``; never clears it, never deletes or corrects
    - Running twice on unchanged data yields the same flag set
"""

import logging
from collections import defaultdict
from dataclasses import dataclass
from datetime import date, datetime, timedelta
from typing import Iterable, Optional

from reconciler.domain.cdc_models import ChangeEvent, ChangeType
from reconciler.domain.models import Case, TimeSeriesRecord
from reconciler.domain.ports import StoragePort
from reconciler.domain.services.temporal import TimezoneLike, calendar_date, minutes_between

logger = logging.getLogger(__name__)

StartIndex = dict[tuple[str, date], list[datetime]]


@dataclass(frozen=True)
class FlagResult:
    """Outcome of a flagging pass.

    Attributes:
        count: Records found inconsistent in this pass
        newly_flagged: Records whose flag changed from False to True
        record_ids: Ids of the inconsistent records
    """

    count: int
    newly_flagged: int
    record_ids: tuple[str, ...] = ()


def build_start_index(cases: Iterable[Case], tz: TimezoneLike = None) -> StartIndex:
    """Lookup of (patient_id, calendar date) -> known case starts."""
    index: StartIndex = defaultdict(list)
    for case in cases:
        if case.start_at is not None:
            index[(case.patient_id, calendar_date(case.start_at, tz))].append(case.start_at)
    return dict(index)


def is_consistent(
    patient_id: str,
    timestamp: datetime,
    index: StartIndex,
    tz: TimezoneLike = None,
    max_minutes: int = 1440,
) -> bool:
    day = calendar_date(timestamp, tz)
    if (patient_id, day) in index:
        return True
    previous = index.get((patient_id, day - timedelta(days=1)), [])
    return any(0 <= minutes_between(start, timestamp) <= max_minutes for start in previous)


def flag_suspicious(
    records: Iterable[TimeSeriesRecord],
    cases: Iterable[Case],
    tz: TimezoneLike = None,
    max_minutes: int = 1440,
) -> list[str]:
    """Ids of records whose date matches no known case start of their patient.

    Records whose owning case no longer exists are inconsistent as well.
    """
    cases = list(cases)
    owner = {case.case_id: case.patient_id for case in cases}
    index = build_start_index(cases, tz)

    inconsistent = []
    for record in records:
        patient_id = owner.get(record.case_id)
        if patient_id is None or not is_consistent(patient_id, record.timestamp, index, tz, max_minutes):
            inconsistent.append(record.record_id)
    return inconsistent


class AnomalyFlagger:
    """Runs the consistency check over the store and persists the flags.

    Parameters:
        storage: Persistence port
        source_timezone: Zone in which calendar dates are compared
        max_minutes: Plausibility ceiling for the overnight allowance
        audit_logger: Optional collector with ``log_change_event`` (ChangeAuditLogger)
        run_id: Reconciliation run identifier written into change events
    """

    def __init__(
        self,
        storage: StoragePort,
        source_timezone: TimezoneLike = None,
        max_minutes: int = 1440,
        audit_logger=None,
        run_id: Optional[str] = None,
    ):
        self.storage = storage
        self.source_timezone = source_timezone
        self.max_minutes = max_minutes
        self.audit_logger = audit_logger
        self.run_id = run_id

    def run(self, patient_id: Optional[str] = None) -> FlagResult:
        """Flag inconsistent records, optionally for a single patient.

        Every record whose flag changes is reported to the audit logger as a
        FLAG change event.

        Raises:
            StorageError: If the flags cannot be written
        """
        if patient_id is None:
            cases = self.storage.list_cases()
            records = self.storage.list_time_series()
        else:
            cases = self.storage.find_cases(patient_id)
            records = [r for case in cases for r in self.storage.list_time_series(case_id=case.case_id)]

        already_flagged = {r.record_id for r in records if r.suspicious}
        record_ids = flag_suspicious(records, cases, self.source_timezone, self.max_minutes)
        newly_flagged = self.storage.mark_suspicious(record_ids).unwrap() if record_ids else 0
        if newly_flagged:
            logger.info(f"Flagged {newly_flagged} new suspicious time-series records ({len(record_ids)} inconsistent)")
            if self.audit_logger is not None:
                for record_id in record_ids:
                    if record_id in already_flagged:
                        continue
                    self.audit_logger.log_change_event(ChangeEvent(
                        table_name="time_series",
                        record_id=record_id,
                        field_name="suspicious",
                        old_value=False,
                        new_value=True,
                        change_type=ChangeType.FLAG,
                        run_id=self.run_id,
                        stage="flag_anomalies",
                        reason="calendar date matches no case start of the patient",
                    ))
        return FlagResult(len(record_ids), newly_flagged, tuple(record_ids))
