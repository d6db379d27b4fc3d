"""Duplicate Detection and Merge Service.

Finds cases of the same patient that collide on their start calendar date (or
are both undated), decides which member is authoritative and deletes the
spurious duplicates together with everything they exclusively own.

Decision policy:
    - score(a, b) = identical comparable fields / fields with at least one
      non-null side, over a fixed field list
    - members scoring at or above the threshold against the authoritative
      member are duplicates; the rest are reported as distinct and kept
    - authoritative member = highest completeness (team 8, evaluation 4,
      time series 2, postop 1), then most populated case attributes, then
      earliest creation

Security Impact:
    - Deletion is permanent; every deleted case is written to the audit log
      with the surviving and deleted identifiers
    - A merge that would drop child data the winner does not have is aborted

Architecture:
    - One transaction per duplicate group; a failure affects only that group
    - Losers are deleted with their children, never re-parented
"""

import json
import logging
import sys
from dataclasses import dataclass, field
from typing import Any, Optional

from reconciler.domain.cdc_models import ChangeEvent, ChangeType
from reconciler.domain.models import Case, CaseChildren, TeamAssignment
from reconciler.domain.ports import IntegrityError, StoragePort
from reconciler.domain.services.temporal import TimezoneLike, calendar_date

logger = logging.getLogger(__name__)

DEFAULT_THRESHOLD = 0.9

COMPARABLE_FIELDS = (
    "start_date",
    "is_retransplant",
    "is_combined",
    "optimal_donor",
    "cold_ischemia_minutes",
    "warm_ischemia_minutes",
    "weight_kg",
    "height_cm",
    "provenance",
    "team",
    "diagnosis",
    "observations",
)

# Strictly ordered: each weight exceeds the sum of all lower ones.
COMPLETENESS_WEIGHTS = {
    "team": 8,
    "evaluations": 4,
    "time_series": 2,
    "postop": 1,
}

GroupKey = tuple[str, Optional[str]]


@dataclass(frozen=True)
class MatchCandidate:
    """A scored pairing of the authoritative case with another group member."""

    kept: Case
    other: Case
    score: float
    identical: int
    compared: int

    def is_duplicate(self, threshold: float) -> bool:
        return self.score >= threshold


@dataclass
class GroupOutcome:
    """What happened to one duplicate group."""

    key: GroupKey
    winner: Case
    merged: list[MatchCandidate] = field(default_factory=list)
    distinct: list[MatchCandidate] = field(default_factory=list)
    deleted_children: int = 0
    aborted: Optional[str] = None

    @property
    def size(self) -> int:
        return 1 + len(self.merged) + len(self.distinct)


def team_signature(team: list[TeamAssignment]) -> Optional[list]:
    """Order-independent structured value of a case's team, None when empty."""
    if not team:
        return None
    return sorted(
        [t.role, t.clinician_code, t.clinician_name] for t in team
    )


def comparable_values(case: Case, team: list[TeamAssignment], tz: TimezoneLike = None) -> dict[str, Any]:
    """Comparable fields of a case; the start date is the source-zone calendar date."""
    values = {name: getattr(case, name, None) for name in COMPARABLE_FIELDS if name not in ("team", "start_date")}
    values["start_date"] = calendar_date(case.start_at, tz).isoformat() if case.start_at else None
    values["team"] = team_signature(team)
    return values


def populated(case: Case) -> int:
    """Number of non-null case attributes among the comparable fields."""
    return sum(
        1 for name in COMPARABLE_FIELDS
        if name not in ("team", "start_date") and getattr(case, name, None) is not None
    )


def _equal(a: Any, b: Any) -> bool:
    if isinstance(a, (list, dict)) or isinstance(b, (list, dict)):
        return json.dumps(a, sort_keys=True, default=str) == json.dumps(b, sort_keys=True, default=str)
    return a == b


def score(a: dict[str, Any], b: dict[str, Any]) -> tuple[float, int, int]:
    """Field-similarity score of two comparable-value mappings.

    Returns:
        tuple: (score, identical, compared). Two all-null records score 1.0.
    """
    compared = 0
    identical = 0
    for name in COMPARABLE_FIELDS:
        left, right = a.get(name), b.get(name)
        if left is None and right is None:
            continue
        compared += 1
        if _equal(left, right):
            identical += 1
    if compared == 0:
        return 1.0, 0, 0
    return identical / compared, identical, compared


def completeness(children: CaseChildren) -> int:
    return sum(weight for name, weight in COMPLETENESS_WEIGHTS.items() if getattr(children, name) > 0)


def find_duplicate_groups(cases: list[Case], tz: TimezoneLike = None) -> dict[GroupKey, list[Case]]:
    """Group cases by (patient, start calendar date); undated cases share one bucket.

    Only groups with more than one member are returned, in creation order.
    """
    buckets: dict[GroupKey, list[Case]] = {}
    for case in sorted(cases, key=lambda c: (c.created_seq is None, c.created_seq or 0)):
        day = calendar_date(case.start_at, tz).isoformat() if case.start_at else None
        buckets.setdefault((case.patient_id, day), []).append(case)
    return {key: members for key, members in buckets.items() if len(members) > 1}


class DuplicateMerger:
    """Merges duplicate cases, one transaction per group.

    Parameters:
        storage: Persistence port
        threshold: Minimum score for two cases to be treated as duplicates
        source_timezone: Zone in which start calendar dates are compared
        audit_logger: Optional collector with ``log_change_event`` (ChangeAuditLogger)
        run_id: Reconciliation run identifier written into audit entries
    """

    def __init__(
        self,
        storage: StoragePort,
        threshold: float = DEFAULT_THRESHOLD,
        source_timezone: TimezoneLike = None,
        audit_logger=None,
        run_id: Optional[str] = None,
    ):
        if not 0.0 < threshold <= 1.0:
            raise ValueError(f"threshold must be in (0, 1], got {threshold}")
        self.storage = storage
        self.threshold = threshold
        self.source_timezone = source_timezone
        self.audit_logger = audit_logger
        self.run_id = run_id

    def choose_winner(self, members: list[Case], children: dict[str, CaseChildren]) -> Case:
        def rank(case: Case):
            seq = case.created_seq if case.created_seq is not None else sys.maxsize
            created = case.created_at.timestamp() if case.created_at else float("inf")
            return (-completeness(children[case.case_id]), -populated(case), seq, created)

        return min(members, key=rank)

    def plan(self, key: GroupKey, members: list[Case]) -> tuple[GroupOutcome, dict[str, CaseChildren]]:
        """Score every member against the authoritative one. Read-only."""
        children = {case.case_id: self.storage.count_children(case.case_id) for case in members}
        winner = self.choose_winner(members, children)
        outcome = GroupOutcome(key=key, winner=winner)

        tz = self.source_timezone
        kept_values = comparable_values(winner, self.storage.list_team(winner.case_id), tz)
        for case in members:
            if case.case_id == winner.case_id:
                continue
            value, identical, compared = score(
                kept_values, comparable_values(case, self.storage.list_team(case.case_id), tz)
            )
            candidate = MatchCandidate(winner, case, value, identical, compared)
            if candidate.is_duplicate(self.threshold):
                outcome.merged.append(candidate)
            else:
                outcome.distinct.append(candidate)
        return outcome, children

    def merge_group(self, key: GroupKey, members: list[Case]) -> GroupOutcome:
        """Delete the duplicates of one group atomically.

        Raises:
            IntegrityError: If a loser owns a child category the winner lacks
            StorageError: If the store fails; the group's transaction is rolled back
        """
        outcome, children = self.plan(key, members)
        if not outcome.merged:
            return outcome

        winner_has = children[outcome.winner.case_id].present()
        for candidate in outcome.merged:
            missing = children[candidate.other.case_id].present() - winner_has
            if missing:
                raise IntegrityError(
                    f"Deleting case {candidate.other.case_id} would drop {sorted(missing)} "
                    f"not present on case {outcome.winner.case_id}",
                    details={
                        "kept_case_id": outcome.winner.case_id,
                        "deleted_case_id": candidate.other.case_id,
                        "missing": sorted(missing),
                    },
                )

        events = []
        with self.storage.transaction():
            for candidate in outcome.merged:
                loser = candidate.other
                deleted = self.storage.delete_case_cascade(loser.case_id).unwrap()
                outcome.deleted_children += deleted.total
                self.storage.log_audit_event(
                    "DUPLICATE_CASE_DELETED",
                    loser.case_id,
                    details={
                        "kept_case_id": outcome.winner.case_id,
                        "deleted_case_id": loser.case_id,
                        "patient_id": loser.patient_id,
                        "score": round(candidate.score, 4),
                        "children": deleted.model_dump(),
                        "run_id": self.run_id,
                    },
                    table_name="cases",
                ).unwrap()
                events.append(ChangeEvent(
                    table_name="cases",
                    record_id=loser.case_id,
                    field_name="case_id",
                    old_value=loser.case_id,
                    new_value=outcome.winner.case_id,
                    change_type=ChangeType.DELETE,
                    run_id=self.run_id,
                    stage="deduplicate",
                    reason=f"duplicate score {candidate.score:.2f}",
                ))

        if self.audit_logger is not None:
            for event in events:
                self.audit_logger.log_change_event(event)

        logger.info(
            f"Merged {len(outcome.merged)} duplicate(s) into case {outcome.winner.case_id} "
            f"({outcome.deleted_children} child records deleted)"
        )
        return outcome

    def run(self, cases: Optional[list[Case]] = None) -> list[GroupOutcome]:
        """Merge every duplicate group; integrity aborts are recorded, not raised."""
        if cases is None:
            cases = self.storage.list_cases()

        outcomes = []
        for key, members in find_duplicate_groups(cases, self.source_timezone).items():
            try:
                outcomes.append(self.merge_group(key, members))
            except IntegrityError as e:
                logger.warning(f"Merge aborted for group {key[1] or 'undated'}: {e}")
                outcome, _ = self.plan(key, members)
                outcome.aborted = str(e)
                outcomes.append(outcome)
        return outcomes
