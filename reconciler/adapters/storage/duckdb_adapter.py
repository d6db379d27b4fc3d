"""DuckDB Storage Adapter.

This adapter implements the StoragePort contract for the canonical
reconciliation store on DuckDB, an in-process analytical database.

Security Impact:
    - Natural-key uniqueness is enforced by primary keys and unique constraints
    - Every destructive operation is written to an append-only audit trail
    - Database paths are validated before connecting

Architecture:
    - Implements StoragePort (Hexagonal Architecture)
    - Isolated from domain core - only depends on ports and models
    - Timestamps are stored as naive UTC and re-attached to UTC on read
    - Cascades are explicit DELETEs inside one transaction
"""

import json
import logging
import uuid
from contextlib import contextmanager
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Any, Iterator, Optional

import duckdb

from reconciler.domain.models import Case, CaseChildren, Patient, TeamAssignment, TimeSeriesRecord
from reconciler.domain.ports import Result, StorageError, StoragePort, UpsertOutcome
from reconciler.infrastructure.config_manager import DatabaseConfig

logger = logging.getLogger(__name__)

CHILD_TABLES = ("team", "evaluations", "time_series", "postop", "fluids")

# Columns holding JSON documents (stored as VARCHAR)
JSON_COLUMNS = {
    "time_series": {"observations"},
    "fluids": {"volumes"},
    "audit_log": {"details"},
}

SCHEMA = (
    """
    CREATE TABLE IF NOT EXISTS patients (
        patient_id VARCHAR PRIMARY KEY,
        raw_identifier VARCHAR,
        name VARCHAR,
        birth_date DATE,
        sex VARCHAR,
        blood_group VARCHAR,
        weight_kg DOUBLE,
        height_cm DOUBLE,
        transplanted BOOLEAN,
        identifier_suspicious BOOLEAN DEFAULT FALSE,
        identifier_note VARCHAR
    )
    """,
    "CREATE SEQUENCE IF NOT EXISTS case_seq START 1",
    """
    CREATE TABLE IF NOT EXISTS cases (
        case_id VARCHAR PRIMARY KEY,
        patient_id VARCHAR NOT NULL,
        start_at TIMESTAMP,
        end_at TIMESTAMP,
        duration_minutes INTEGER,
        end_source VARCHAR,
        is_retransplant BOOLEAN DEFAULT FALSE,
        is_combined BOOLEAN DEFAULT FALSE,
        optimal_donor BOOLEAN,
        cold_ischemia_minutes INTEGER,
        warm_ischemia_minutes INTEGER,
        weight_kg DOUBLE,
        height_cm DOUBLE,
        diagnosis VARCHAR,
        provenance VARCHAR,
        observations VARCHAR,
        created_at TIMESTAMP NOT NULL,
        created_seq BIGINT NOT NULL,
        UNIQUE (patient_id, start_at)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS time_series (
        record_id VARCHAR PRIMARY KEY,
        case_id VARCHAR NOT NULL,
        phase VARCHAR NOT NULL,
        "timestamp" TIMESTAMP NOT NULL,
        observations VARCHAR,
        suspicious BOOLEAN DEFAULT FALSE,
        UNIQUE (case_id, phase, "timestamp")
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS fluids (
        record_id VARCHAR PRIMARY KEY,
        case_id VARCHAR NOT NULL,
        phase VARCHAR NOT NULL,
        "timestamp" TIMESTAMP NOT NULL,
        volumes VARCHAR,
        UNIQUE (case_id, phase, "timestamp")
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS team (
        case_id VARCHAR NOT NULL,
        role VARCHAR NOT NULL,
        clinician_code INTEGER,
        clinician_name VARCHAR,
        PRIMARY KEY (case_id, role)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS evaluations (
        case_id VARCHAR PRIMARY KEY,
        evaluation_date TIMESTAMP,
        meld DOUBLE,
        child VARCHAR,
        asa VARCHAR,
        etiology VARCHAR,
        weight_kg DOUBLE,
        height_cm DOUBLE
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS postop (
        case_id VARCHAR PRIMARY KEY,
        outcome_date TIMESTAMP,
        icu_days INTEGER,
        ward_days INTEGER,
        reintervention BOOLEAN,
        graft_failure BOOLEAN,
        notes VARCHAR
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS audit_log (
        audit_id VARCHAR PRIMARY KEY,
        event_type VARCHAR NOT NULL,
        event_timestamp TIMESTAMP NOT NULL,
        record_id VARCHAR,
        details VARCHAR,
        severity VARCHAR,
        table_name VARCHAR
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_cases_patient ON cases(patient_id)",
    "CREATE INDEX IF NOT EXISTS idx_time_series_case ON time_series(case_id)",
    "CREATE INDEX IF NOT EXISTS idx_audit_event_type ON audit_log(event_type)",
)

SNAPSHOT_TABLES = ("patients", "cases") + CHILD_TABLES + ("audit_log",)


def _q(column: str) -> str:
    return f'"{column}"'


class DuckDBAdapter(StoragePort):
    """DuckDB implementation of StoragePort.

    Parameters:
        db_config: DatabaseConfig from configuration manager (preferred)
        db_path: Path to DuckDB database file (or ':memory:' for in-memory)

    Example Usage:
        ```python
        from reconciler.infrastructure.config_manager import get_database_config

        adapter = DuckDBAdapter(db_config=get_database_config())
        adapter.initialize_schema()
        with adapter.transaction():
            adapter.delete_case_cascade(case_id).unwrap()
        ```
    """

    def __init__(self, db_config: Optional[DatabaseConfig] = None, db_path: Optional[str] = None):
        if db_config:
            if db_config.db_type != "duckdb":
                raise StorageError(
                    f"DatabaseConfig type '{db_config.db_type}' does not match DuckDB adapter",
                    operation="__init__"
                )
            self.db_path = db_config.db_path or ":memory:"
        else:
            self.db_path = db_path or ":memory:"

        self._connection: Optional[duckdb.DuckDBPyConnection] = None
        self._initialized = False
        self._tx_depth = 0

        if self.db_path != ":memory:":
            db_path_obj = Path(self.db_path)
            if not db_path_obj.parent.exists():
                raise StorageError(
                    f"Database directory does not exist: {db_path_obj.parent}",
                    operation="__init__"
                )

    def _get_connection(self) -> duckdb.DuckDBPyConnection:
        if self._connection is None:
            try:
                self._connection = duckdb.connect(self.db_path)
                logger.info(f"Connected to DuckDB database: {self.db_path}")
            except duckdb.Error as e:
                raise StorageError(
                    f"Failed to connect to DuckDB: {str(e)}",
                    operation="connect",
                    details={"db_path": self.db_path}
                )
        return self._connection

    def initialize_schema(self) -> Result[None]:
        """Create tables, unique constraints, the case sequence and the audit log."""
        try:
            conn = self._get_connection()
            for statement in SCHEMA:
                conn.execute(statement)
            self._initialized = True
            logger.info("Database schema initialized successfully")
            return Result.success_result(None)

        except (duckdb.Error, StorageError) as e:
            error_msg = f"Failed to initialize schema: {str(e)}"
            logger.error(error_msg, exc_info=True)
            return Result.failure_result(
                StorageError(error_msg, operation="initialize_schema"),
                error_type="StorageError"
            )

    def _ensure_schema(self) -> None:
        if not self._initialized:
            self.initialize_schema().unwrap()

    # ------------------------------------------------------------------
    # Value conversion
    # ------------------------------------------------------------------

    @staticmethod
    def _to_db(table: str, column: str, value: Any) -> Any:
        if value is None:
            return None
        if isinstance(value, Enum):
            return value.value
        if isinstance(value, datetime):
            if value.tzinfo is not None:
                value = value.astimezone(timezone.utc)
            return value.replace(tzinfo=None)
        if column in JSON_COLUMNS.get(table, ()):
            return json.dumps(value, sort_keys=True, default=str)
        return value

    @staticmethod
    def _from_db(table: str, column: str, value: Any) -> Any:
        if value is None:
            return None
        if isinstance(value, datetime):
            return value.replace(tzinfo=timezone.utc)
        if column in JSON_COLUMNS.get(table, ()):
            return json.loads(value)
        return value

    def _normalize(self, table: str, column: str, value: Any) -> Any:
        """Value as it would read back from the store."""
        return self._from_db(table, column, self._to_db(table, column, value))

    def _query(self, table: str, sql: str, params: Optional[list] = None) -> list[dict]:
        try:
            self._ensure_schema()
            cursor = self._get_connection().execute(sql, params or [])
            columns = [d[0] for d in cursor.description]
            return [
                {col: self._from_db(table, col, val) for col, val in zip(columns, row)}
                for row in cursor.fetchall()
            ]
        except duckdb.Error as e:
            logger.error(f"Query on {table} failed: {str(e)}", exc_info=True)
            raise StorageError(f"Query on {table} failed: {str(e)}", operation="query", details={"table": table})

    def _insert(self, table: str, row: dict) -> None:
        columns = list(row)
        placeholders = ", ".join("?" for _ in columns)
        self._get_connection().execute(
            f"INSERT INTO {table} ({', '.join(_q(c) for c in columns)}) VALUES ({placeholders})",
            [self._to_db(table, c, row[c]) for c in columns],
        )

    # ------------------------------------------------------------------
    # Generic upsert
    # ------------------------------------------------------------------

    def upsert(self, entity_type: str, natural_key: dict, data: dict) -> Result[UpsertOutcome]:
        """Conditioned create-or-update on the natural key.

        Only changed columns are written, so re-running an unchanged source
        reports UNCHANGED and touches nothing.
        """
        keys = self.NATURAL_KEYS.get(entity_type)
        if keys is None or set(natural_key) != set(keys):
            return Result.failure_result(StorageError(
                f"Invalid natural key {sorted(natural_key)} for entity type '{entity_type}'",
                operation="upsert",
                details={"entity_type": entity_type},
            ))

        try:
            self._ensure_schema()
            conn = self._get_connection()
            where = " AND ".join(f"{_q(k)} = ?" for k in keys)
            key_params = [self._to_db(entity_type, k, natural_key[k]) for k in keys]

            existing = self._query(entity_type, f"SELECT * FROM {entity_type} WHERE {where}", key_params)
            if not existing:
                row = {**natural_key, **data}
                if entity_type in ("time_series", "fluids"):
                    row["record_id"] = str(uuid.uuid4())
                if entity_type == "time_series":
                    row.setdefault("suspicious", False)
                self._insert(entity_type, row)
                return Result.success_result(UpsertOutcome.CREATED)

            current = existing[0]
            changed = {
                k: v for k, v in data.items()
                if current.get(k) != self._normalize(entity_type, k, v)
            }
            if not changed:
                return Result.success_result(UpsertOutcome.UNCHANGED)

            assignments = ", ".join(f"{_q(c)} = ?" for c in changed)
            conn.execute(
                f"UPDATE {entity_type} SET {assignments} WHERE {where}",
                [self._to_db(entity_type, c, v) for c, v in changed.items()] + key_params,
            )
            return Result.success_result(UpsertOutcome.UPDATED)

        except (duckdb.Error, StorageError) as e:
            error_msg = f"Failed to upsert {entity_type}: {str(e)}"
            logger.error(error_msg, exc_info=True)
            return Result.failure_result(
                StorageError(error_msg, operation="upsert", details={"entity_type": entity_type}),
                error_type="StorageError"
            )

    # ------------------------------------------------------------------
    # Patients and cases
    # ------------------------------------------------------------------

    def find_patient(self, patient_id: str) -> Optional[Patient]:
        rows = self._query("patients", "SELECT * FROM patients WHERE patient_id = ?", [patient_id])
        return Patient(**rows[0]) if rows else None

    def find_cases(
        self,
        patient_id: str,
        start_from: Optional[datetime] = None,
        start_to: Optional[datetime] = None,
    ) -> list[Case]:
        sql = "SELECT * FROM cases WHERE patient_id = ?"
        params: list = [patient_id]
        if start_from is not None:
            sql += " AND start_at >= ?"
            params.append(self._to_db("cases", "start_at", start_from))
        if start_to is not None:
            sql += " AND start_at <= ?"
            params.append(self._to_db("cases", "start_at", start_to))
        sql += " ORDER BY created_seq"
        return [Case(**row) for row in self._query("cases", sql, params)]

    def get_case(self, case_id: str) -> Optional[Case]:
        rows = self._query("cases", "SELECT * FROM cases WHERE case_id = ?", [case_id])
        return Case(**rows[0]) if rows else None

    def list_cases(self) -> list[Case]:
        return [Case(**row) for row in self._query("cases", "SELECT * FROM cases ORDER BY created_seq")]

    def create_case(self, case: Case) -> Result[Case]:
        """Insert a case; fails when (patient_id, start_at) is already taken."""
        try:
            self._ensure_schema()
            conn = self._get_connection()

            if case.start_at is not None:
                taken = self._query(
                    "cases",
                    "SELECT case_id FROM cases WHERE patient_id = ? AND start_at = ?",
                    [case.patient_id, self._to_db("cases", "start_at", case.start_at)],
                )
                if taken:
                    raise StorageError(
                        "Unique constraint violated on cases(patient_id, start_at)",
                        operation="create_case",
                    )

            row = case.model_dump()
            row["case_id"] = case.case_id or str(uuid.uuid4())
            row["created_at"] = datetime.now(timezone.utc)
            row["created_seq"] = conn.execute("SELECT nextval('case_seq')").fetchone()[0]
            self._insert("cases", row)

            logger.debug(f"Created case {row['case_id']} (seq {row['created_seq']})")
            return Result.success_result(Case(**row))

        except (duckdb.Error, StorageError) as e:
            error_msg = f"Failed to create case: {str(e)}"
            logger.error(error_msg, exc_info=True)
            return Result.failure_result(
                StorageError(error_msg, operation="create_case"),
                error_type="StorageError"
            )

    def update_case(self, case: Case) -> Result[UpsertOutcome]:
        try:
            current = self._query("cases", "SELECT * FROM cases WHERE case_id = ?", [case.case_id])
            if not current:
                raise StorageError(f"Case {case.case_id} does not exist", operation="update_case")

            row = case.model_dump(exclude={"case_id", "created_at", "created_seq"})
            changed = {
                k: v for k, v in row.items()
                if current[0].get(k) != self._normalize("cases", k, v)
            }
            if not changed:
                return Result.success_result(UpsertOutcome.UNCHANGED)

            assignments = ", ".join(f"{_q(c)} = ?" for c in changed)
            self._get_connection().execute(
                f"UPDATE cases SET {assignments} WHERE case_id = ?",
                [self._to_db("cases", c, v) for c, v in changed.items()] + [case.case_id],
            )
            return Result.success_result(UpsertOutcome.UPDATED)

        except (duckdb.Error, StorageError) as e:
            error_msg = f"Failed to update case: {str(e)}"
            logger.error(error_msg, exc_info=True)
            return Result.failure_result(
                StorageError(error_msg, operation="update_case", details={"case_id": case.case_id}),
                error_type="StorageError"
            )

    # ------------------------------------------------------------------
    # Children
    # ------------------------------------------------------------------

    def count_children(self, case_id: str) -> CaseChildren:
        counts = {}
        for table in CHILD_TABLES:
            rows = self._query(table, f"SELECT COUNT(*) AS n FROM {table} WHERE case_id = ?", [case_id])
            counts[table] = rows[0]["n"]
        return CaseChildren(**counts)

    def delete_case_cascade(self, case_id: str) -> Result[CaseChildren]:
        """Delete a case and its children in one transaction."""
        try:
            if self.get_case(case_id) is None:
                raise StorageError(f"Case {case_id} does not exist", operation="delete_case_cascade")

            with self.transaction():
                counts = self.count_children(case_id)
                conn = self._get_connection()
                for table in CHILD_TABLES:
                    conn.execute(f"DELETE FROM {table} WHERE case_id = ?", [case_id])
                conn.execute("DELETE FROM cases WHERE case_id = ?", [case_id])

            logger.debug(f"Deleted case {case_id} with {counts.total} child records")
            return Result.success_result(counts)

        except (duckdb.Error, StorageError) as e:
            error_msg = f"Failed to delete case: {str(e)}"
            logger.error(error_msg, exc_info=True)
            return Result.failure_result(
                StorageError(error_msg, operation="delete_case_cascade", details={"case_id": case_id}),
                error_type="StorageError"
            )

    def list_team(self, case_id: str) -> list[TeamAssignment]:
        rows = self._query("team", "SELECT * FROM team WHERE case_id = ? ORDER BY role", [case_id])
        return [TeamAssignment(**row) for row in rows]

    def list_time_series(
        self,
        case_id: Optional[str] = None,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
    ) -> list[TimeSeriesRecord]:
        clauses, params = [], []
        if case_id is not None:
            clauses.append("case_id = ?")
            params.append(case_id)
        if start is not None:
            clauses.append('"timestamp" >= ?')
            params.append(self._to_db("time_series", "timestamp", start))
        if end is not None:
            clauses.append('"timestamp" <= ?')
            params.append(self._to_db("time_series", "timestamp", end))

        sql = "SELECT * FROM time_series"
        if clauses:
            sql += " WHERE " + " AND ".join(clauses)
        sql += ' ORDER BY "timestamp", record_id'
        return [TimeSeriesRecord(**row) for row in self._query("time_series", sql, params)]

    def mark_suspicious(self, record_ids: list[str]) -> Result[int]:
        """Set the flag on the given records; only flips False to True."""
        try:
            self._ensure_schema()
            conn = self._get_connection()
            changed = 0
            ids = list(dict.fromkeys(record_ids))
            for i in range(0, len(ids), 500):
                chunk = ids[i:i + 500]
                placeholders = ", ".join("?" for _ in chunk)
                rows = self._query(
                    "time_series",
                    f"SELECT COUNT(*) AS n FROM time_series WHERE record_id IN ({placeholders}) AND NOT suspicious",
                    chunk,
                )
                if rows[0]["n"]:
                    conn.execute(
                        f"UPDATE time_series SET suspicious = TRUE WHERE record_id IN ({placeholders}) AND NOT suspicious",
                        chunk,
                    )
                    changed += rows[0]["n"]
            return Result.success_result(changed)

        except (duckdb.Error, StorageError) as e:
            error_msg = f"Failed to mark suspicious records: {str(e)}"
            logger.error(error_msg, exc_info=True)
            return Result.failure_result(
                StorageError(error_msg, operation="mark_suspicious"),
                error_type="StorageError"
            )

    # ------------------------------------------------------------------
    # Transactions, audit, lifecycle
    # ------------------------------------------------------------------

    @contextmanager
    def transaction(self) -> Iterator[None]:
        """Explicit transaction; nested use joins the outer one."""
        if self._tx_depth > 0:
            self._tx_depth += 1
            try:
                yield
            finally:
                self._tx_depth -= 1
            return

        self._ensure_schema()
        conn = self._get_connection()
        conn.begin()
        self._tx_depth = 1
        try:
            yield
        except Exception:
            self._tx_depth = 0
            conn.rollback()
            logger.warning("Transaction rolled back")
            raise

        self._tx_depth = 0
        try:
            conn.commit()
        except duckdb.Error as e:
            raise StorageError(f"Failed to commit transaction: {str(e)}", operation="commit")

    def log_audit_event(
        self,
        event_type: str,
        record_id: Optional[str],
        details: Optional[dict] = None,
        table_name: Optional[str] = None,
    ) -> Result[str]:
        """Append an event to the audit trail.

        Returns:
            Result[str]: Audit event identifier or error
        """
        try:
            self._ensure_schema()
            audit_id = str(uuid.uuid4())
            severity = "WARNING" if event_type.endswith("DELETED") else "INFO"

            self._insert("audit_log", {
                "audit_id": audit_id,
                "event_type": event_type,
                "event_timestamp": datetime.now(timezone.utc),
                "record_id": record_id,
                "details": details,
                "severity": severity,
                "table_name": table_name,
            })

            logger.debug(f"Logged audit event: {event_type} (ID: {audit_id})")
            return Result.success_result(audit_id)

        except (duckdb.Error, StorageError) as e:
            error_msg = f"Failed to log audit event: {str(e)}"
            logger.error(error_msg, exc_info=True)
            return Result.failure_result(
                StorageError(error_msg, operation="log_audit_event"),
                error_type="StorageError"
            )

    def audit_events(self, event_type: Optional[str] = None) -> list[dict]:
        if event_type is None:
            return self._query("audit_log", "SELECT * FROM audit_log ORDER BY event_timestamp")
        return self._query(
            "audit_log",
            "SELECT * FROM audit_log WHERE event_type = ? ORDER BY event_timestamp",
            [event_type],
        )

    def snapshot(self) -> dict[str, list[dict]]:
        return {table: self._query(table, f"SELECT * FROM {table}") for table in SNAPSHOT_TABLES}

    def close(self) -> None:
        """Close storage connection and release resources."""
        if self._connection is not None:
            try:
                self._connection.close()
                self._connection = None
                logger.info("Closed DuckDB connection")
            except duckdb.Error as e:
                logger.warning(f"Error closing connection: {str(e)}")
