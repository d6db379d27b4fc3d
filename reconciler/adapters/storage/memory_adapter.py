"""In-Memory Storage Adapter.

Dictionary-backed implementation of StoragePort. Used as the dry-run sandbox
(seeded from another adapter's snapshot) and as the fake store in tests.

Architecture:
    - Implements StoragePort (Hexagonal Architecture)
    - Same natural-key semantics as DuckDBAdapter
    - transaction() copies the state on entry and restores it on error
"""

import copy
import itertools
import logging
import uuid
from contextlib import contextmanager
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Iterator, Optional

from reconciler.domain.models import Case, CaseChildren, Patient, TeamAssignment, TimeSeriesRecord
from reconciler.domain.ports import Result, StorageError, StoragePort, UpsertOutcome

logger = logging.getLogger(__name__)

CHILD_TABLES = ("team", "evaluations", "time_series", "postop", "fluids")


def _plain(value: Any) -> Any:
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, dict):
        return dict(value)
    return value


class MemoryStorageAdapter(StoragePort):
    """StoragePort over plain dictionaries.

    Example Usage:
        ```python
        sandbox = MemoryStorageAdapter.from_snapshot(duckdb_adapter.snapshot())
        pipeline.run(context_with(sandbox))
        ```
    """

    def __init__(self):
        self._state: dict[str, Any] = self._empty_state()
        self._seq = itertools.count(1)
        self._tx_depth = 0
        self._initialized = False

    @staticmethod
    def _empty_state() -> dict[str, Any]:
        state: dict[str, Any] = {entity: {} for entity in StoragePort.ENTITY_TYPES}
        state["cases"] = {}
        state["audit_log"] = []
        return state

    @classmethod
    def from_snapshot(cls, snapshot: dict[str, list[dict]]) -> "MemoryStorageAdapter":
        """Build a sandbox holding a copy of another store's rows."""
        adapter = cls()
        adapter.initialize_schema()
        state = adapter._state
        for entity, keys in cls.NATURAL_KEYS.items():
            for row in snapshot.get(entity, []):
                row = {k: _plain(v) for k, v in row.items()}
                state[entity][tuple(row[k] for k in keys)] = row
        for row in snapshot.get("cases", []):
            state["cases"][row["case_id"]] = dict(row)
        state["audit_log"] = [dict(row) for row in snapshot.get("audit_log", [])]

        last_seq = max((row.get("created_seq") or 0 for row in state["cases"].values()), default=0)
        adapter._seq = itertools.count(last_seq + 1)
        return adapter

    def initialize_schema(self) -> Result[None]:
        self._initialized = True
        return Result.success_result(None)

    # ------------------------------------------------------------------
    # Generic upsert
    # ------------------------------------------------------------------

    def upsert(self, entity_type: str, natural_key: dict, data: dict) -> Result[UpsertOutcome]:
        keys = self.NATURAL_KEYS.get(entity_type)
        if keys is None or set(natural_key) != set(keys):
            return Result.failure_result(StorageError(
                f"Invalid natural key {sorted(natural_key)} for entity type '{entity_type}'",
                operation="upsert",
                details={"entity_type": entity_type},
            ))

        table = self._state[entity_type]
        key = tuple(_plain(natural_key[k]) for k in keys)
        data = {k: _plain(v) for k, v in data.items()}

        existing = table.get(key)
        if existing is None:
            row = {**dict(zip(keys, key)), **data}
            if entity_type in ("time_series", "fluids"):
                row["record_id"] = str(uuid.uuid4())
            if entity_type == "time_series":
                row.setdefault("suspicious", False)
            table[key] = row
            return Result.success_result(UpsertOutcome.CREATED)

        changed = {k: v for k, v in data.items() if existing.get(k) != v}
        if not changed:
            return Result.success_result(UpsertOutcome.UNCHANGED)
        existing.update(changed)
        return Result.success_result(UpsertOutcome.UPDATED)

    # ------------------------------------------------------------------
    # Patients and cases
    # ------------------------------------------------------------------

    def find_patient(self, patient_id: str) -> Optional[Patient]:
        row = self._state["patients"].get((patient_id,))
        return Patient(**row) if row else None

    def _sorted_cases(self) -> list[dict]:
        return sorted(self._state["cases"].values(), key=lambda r: r["created_seq"])

    def find_cases(
        self,
        patient_id: str,
        start_from: Optional[datetime] = None,
        start_to: Optional[datetime] = None,
    ) -> list[Case]:
        cases = []
        for row in self._sorted_cases():
            if row["patient_id"] != patient_id:
                continue
            start = row.get("start_at")
            if start_from is not None and (start is None or start < start_from):
                continue
            if start_to is not None and (start is None or start > start_to):
                continue
            cases.append(Case(**row))
        return cases

    def get_case(self, case_id: str) -> Optional[Case]:
        row = self._state["cases"].get(case_id)
        return Case(**row) if row else None

    def list_cases(self) -> list[Case]:
        return [Case(**row) for row in self._sorted_cases()]

    def _start_taken(self, case: Case) -> bool:
        if case.start_at is None:
            return False
        return any(
            row["patient_id"] == case.patient_id
            and row.get("start_at") == case.start_at
            and row["case_id"] != case.case_id
            for row in self._state["cases"].values()
        )

    def create_case(self, case: Case) -> Result[Case]:
        if self._start_taken(case):
            return Result.failure_result(StorageError(
                "Unique constraint violated on cases(patient_id, start_at)",
                operation="create_case",
            ))
        row = case.model_dump()
        row["case_id"] = case.case_id or str(uuid.uuid4())
        row["created_at"] = datetime.now(timezone.utc)
        row["created_seq"] = next(self._seq)
        row["end_source"] = _plain(row["end_source"])
        self._state["cases"][row["case_id"]] = row
        return Result.success_result(Case(**row))

    def update_case(self, case: Case) -> Result[UpsertOutcome]:
        existing = self._state["cases"].get(case.case_id)
        if existing is None:
            return Result.failure_result(StorageError(
                f"Case {case.case_id} does not exist",
                operation="update_case",
            ))
        if self._start_taken(case):
            return Result.failure_result(StorageError(
                "Unique constraint violated on cases(patient_id, start_at)",
                operation="update_case",
            ))
        row = {k: _plain(v) for k, v in case.model_dump(exclude={"created_at", "created_seq"}).items()}
        changed = {k: v for k, v in row.items() if existing.get(k) != v}
        if not changed:
            return Result.success_result(UpsertOutcome.UNCHANGED)
        existing.update(changed)
        return Result.success_result(UpsertOutcome.UPDATED)

    # ------------------------------------------------------------------
    # Children
    # ------------------------------------------------------------------

    def count_children(self, case_id: str) -> CaseChildren:
        return CaseChildren(**{
            table: sum(1 for row in self._state[table].values() if row["case_id"] == case_id)
            for table in CHILD_TABLES
        })

    def delete_case_cascade(self, case_id: str) -> Result[CaseChildren]:
        if case_id not in self._state["cases"]:
            return Result.failure_result(StorageError(
                f"Case {case_id} does not exist",
                operation="delete_case_cascade",
            ))
        with self.transaction():
            counts = self.count_children(case_id)
            for table in CHILD_TABLES:
                rows = self._state[table]
                for key in [k for k, row in rows.items() if row["case_id"] == case_id]:
                    del rows[key]
            del self._state["cases"][case_id]
        return Result.success_result(counts)

    def list_team(self, case_id: str) -> list[TeamAssignment]:
        rows = [row for row in self._state["team"].values() if row["case_id"] == case_id]
        return [TeamAssignment(**row) for row in sorted(rows, key=lambda r: r["role"])]

    def list_time_series(
        self,
        case_id: Optional[str] = None,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
    ) -> list[TimeSeriesRecord]:
        rows = [
            row for row in self._state["time_series"].values()
            if (case_id is None or row["case_id"] == case_id)
            and (start is None or row["timestamp"] >= start)
            and (end is None or row["timestamp"] <= end)
        ]
        rows.sort(key=lambda r: (r["timestamp"], r["record_id"]))
        return [TimeSeriesRecord(**row) for row in rows]

    def mark_suspicious(self, record_ids: list[str]) -> Result[int]:
        wanted = set(record_ids)
        changed = 0
        for row in self._state["time_series"].values():
            if row["record_id"] in wanted and not row["suspicious"]:
                row["suspicious"] = True
                changed += 1
        return Result.success_result(changed)

    # ------------------------------------------------------------------
    # Transactions, audit, lifecycle
    # ------------------------------------------------------------------

    @contextmanager
    def transaction(self) -> Iterator[None]:
        if self._tx_depth > 0:
            self._tx_depth += 1
            try:
                yield
            finally:
                self._tx_depth -= 1
            return

        saved = copy.deepcopy(self._state)
        self._tx_depth = 1
        try:
            yield
        except Exception:
            self._state = saved
            logger.debug("Rolled back in-memory transaction")
            raise
        finally:
            self._tx_depth = 0

    def log_audit_event(
        self,
        event_type: str,
        record_id: Optional[str],
        details: Optional[dict] = None,
        table_name: Optional[str] = None,
    ) -> Result[str]:
        audit_id = str(uuid.uuid4())
        self._state["audit_log"].append({
            "audit_id": audit_id,
            "event_type": event_type,
            "event_timestamp": datetime.now(timezone.utc),
            "record_id": record_id,
            "details": copy.deepcopy(details),
            "table_name": table_name,
        })
        return Result.success_result(audit_id)

    def audit_events(self, event_type: Optional[str] = None) -> list[dict]:
        return [
            dict(row) for row in self._state["audit_log"]
            if event_type is None or row["event_type"] == event_type
        ]

    def snapshot(self) -> dict[str, list[dict]]:
        snap = {table: [dict(row) for row in rows.values()] for table, rows in self._state.items() if table != "audit_log"}
        snap["audit_log"] = [dict(row) for row in self._state["audit_log"]]
        return copy.deepcopy(snap)

    def close(self) -> None:
        pass
