"""Contract tests shared by the DuckDB and in-memory storage adapters."""

from datetime import datetime, timezone

import pytest

from reconciler.adapters.storage import DuckDBAdapter, MemoryStorageAdapter
from reconciler.domain.models import (
    Case,
    EndSource,
    Evaluation,
    FluidsRecord,
    Patient,
    Phase,
    PostopOutcome,
    TeamAssignment,
    TimeSeriesRecord,
)
from reconciler.domain.ports import StorageError, UpsertOutcome
from reconciler.infrastructure.config_manager import DatabaseConfig

PATIENT_ID = "12345672"
START = datetime(2024, 4, 30, 8, 0, tzinfo=timezone.utc)


def at(hour, minute=0) -> datetime:
    return datetime(2024, 4, 30, hour, minute, tzinfo=timezone.utc)


@pytest.fixture(params=["memory", "duckdb"])
def storage(request):
    """Each contract test runs against both adapters."""
    adapter = MemoryStorageAdapter() if request.param == "memory" else DuckDBAdapter(db_path=":memory:")
    adapter.initialize_schema().unwrap()
    yield adapter
    adapter.close()


def make_case(storage, start_at=START, patient_id=PATIENT_ID) -> Case:
    return storage.create_case(Case(patient_id=patient_id, start_at=start_at)).unwrap()


def add_record(storage, case, timestamp, observations=None):
    return storage.upsert_time_series(TimeSeriesRecord(
        case_id=case.case_id,
        phase=Phase.CLOSURE,
        timestamp=timestamp,
        observations=observations or {"FC": 72.0},
    )).unwrap()


class TestUpsert:
    """Test suite for natural-key upserts."""

    def test_patient_outcomes(self, storage):
        """Test CREATED, UNCHANGED and UPDATED in turn."""
        patient = Patient(patient_id=PATIENT_ID, name="Ana", birth_date="1970-05-01")

        assert storage.upsert_patient(patient).value == UpsertOutcome.CREATED
        assert storage.upsert_patient(patient).value == UpsertOutcome.UNCHANGED
        changed = patient.model_copy(update={"blood_group": "O+"})
        assert storage.upsert_patient(changed).value == UpsertOutcome.UPDATED

        stored = storage.find_patient(PATIENT_ID)
        assert stored.blood_group == "O+"
        assert stored.birth_date.isoformat() == "1970-05-01"

    def test_invalid_natural_key(self, storage):
        """Test that a wrong key is a failure result, not an exception."""
        result = storage.upsert("team", {"case_id": "x"}, {})
        assert result.is_failure()
        with pytest.raises(StorageError):
            result.unwrap()

    def test_child_records(self, storage):
        """Test team, evaluation, postop and fluids upserts."""
        case = make_case(storage)
        team = TeamAssignment(case_id=case.case_id, role="SURGEON_1", clinician_code=77, clinician_name="Gomez")
        evaluation = Evaluation(case_id=case.case_id, meld=22.0, child="B")
        postop = PostopOutcome(case_id=case.case_id, icu_days=3, reintervention=False)
        fluids = FluidsRecord(case_id=case.case_id, phase=Phase.INDUCTION, timestamp=at(8, 5),
                              volumes={"plasmalyte_ml": 500.0})

        for entity, child in (("team", team), ("evaluations", evaluation), ("postop", postop), ("fluids", fluids)):
            assert storage.upsert_child(entity, child).unwrap() == UpsertOutcome.CREATED
            assert storage.upsert_child(entity, child).unwrap() == UpsertOutcome.UNCHANGED

        counts = storage.count_children(case.case_id)
        assert (counts.team, counts.evaluations, counts.postop, counts.fluids) == (1, 1, 1, 1)
        assert storage.list_team(case.case_id) == [team]

    def test_time_series_flag_survives_reingest(self, storage):
        """Test that ingestion never clears the suspicious flag."""
        case = make_case(storage)
        add_record(storage, case, at(9, 15))
        record_id = storage.list_time_series()[0].record_id
        storage.mark_suspicious([record_id]).unwrap()

        assert add_record(storage, case, at(9, 15)) == UpsertOutcome.UNCHANGED
        assert add_record(storage, case, at(9, 15), {"FC": 90.0}) == UpsertOutcome.UPDATED

        record = storage.list_time_series()[0]
        assert record.suspicious
        assert record.observations == {"FC": 90.0}
        assert record.record_id == record_id


class TestCases:
    """Test suite for case creation, lookup and update."""

    def test_create_assigns_id_and_sequence(self, storage):
        """Test surrogate key and creation order."""
        first = make_case(storage)
        second = make_case(storage, at(20))

        assert first.case_id and second.case_id
        assert first.created_seq < second.created_seq
        assert first.created_at is not None
        assert [c.case_id for c in storage.list_cases()] == [first.case_id, second.case_id]

    def test_start_instant_is_unique_per_patient(self, storage):
        """Test that the store refuses a second case with the same start."""
        make_case(storage)

        assert storage.create_case(Case(patient_id=PATIENT_ID, start_at=START)).is_failure()
        assert storage.create_case(Case(patient_id="7654321", start_at=START)).is_success()
        assert len(storage.list_cases()) == 2

    def test_undated_cases_are_not_unique(self, storage):
        """Test that several undated cases may exist."""
        make_case(storage, None)
        make_case(storage, None)
        assert len(storage.find_cases(PATIENT_ID)) == 2

    def test_find_cases_range_is_inclusive(self, storage):
        """Test the start range filter."""
        early = make_case(storage, at(8))
        make_case(storage, at(12))
        make_case(storage, None)

        found = storage.find_cases(PATIENT_ID, at(7), at(8))

        assert [c.case_id for c in found] == [early.case_id]
        assert found[0].start_at == at(8)

    def test_update_case(self, storage):
        """Test update outcomes and persisted values."""
        case = make_case(storage)
        updated = case.model_copy(update={"end_at": at(9, 15), "duration_minutes": 75, "end_source": EndSource.INFERRED})

        assert storage.update_case(updated).unwrap() == UpsertOutcome.UPDATED
        assert storage.update_case(updated).unwrap() == UpsertOutcome.UNCHANGED

        stored = storage.get_case(case.case_id)
        assert stored.end_at == at(9, 15)
        assert stored.end_source == EndSource.INFERRED

    def test_update_missing_case(self, storage):
        """Test updating a case that does not exist."""
        assert storage.update_case(Case(case_id="missing", patient_id=PATIENT_ID)).is_failure()


class TestDeleteAndFlags:
    """Test suite for cascades, flags, transactions and snapshots."""

    def test_delete_cascade(self, storage):
        """Test that a case and everything it owns are deleted together."""
        doomed = make_case(storage)
        kept = make_case(storage, at(20))
        add_record(storage, doomed, at(9))
        add_record(storage, doomed, at(10))
        add_record(storage, kept, at(21))
        storage.upsert_child("evaluations", Evaluation(case_id=doomed.case_id)).unwrap()

        counts = storage.delete_case_cascade(doomed.case_id).unwrap()

        assert counts.time_series == 2
        assert counts.evaluations == 1
        assert storage.get_case(doomed.case_id) is None
        assert storage.count_children(doomed.case_id).total == 0
        assert len(storage.list_time_series(case_id=kept.case_id)) == 1

    def test_delete_missing_case(self, storage):
        """Test deleting an unknown case."""
        assert storage.delete_case_cascade("missing").is_failure()

    def test_mark_suspicious_counts_changes_only(self, storage):
        """Test that only False -> True flips are counted."""
        case = make_case(storage)
        add_record(storage, case, at(9))
        add_record(storage, case, at(10))
        ids = [r.record_id for r in storage.list_time_series()]

        assert storage.mark_suspicious(ids[:1]).unwrap() == 1
        assert storage.mark_suspicious(ids).unwrap() == 1
        assert storage.mark_suspicious(ids).unwrap() == 0
        assert all(r.suspicious for r in storage.list_time_series())

    def test_list_time_series_range(self, storage):
        """Test timestamp filters."""
        case = make_case(storage)
        for hour in (9, 10, 11):
            add_record(storage, case, at(hour))

        records = storage.list_time_series(start=at(10), end=at(11))

        assert [r.timestamp for r in records] == [at(10), at(11)]

    def test_transaction_rollback(self, storage):
        """Test that an error inside a transaction undoes its writes."""
        with pytest.raises(RuntimeError):
            with storage.transaction():
                make_case(storage)
                raise RuntimeError("boom")

        assert storage.list_cases() == []

    def test_audit_log(self, storage):
        """Test appending and reading audit events."""
        audit_id = storage.log_audit_event("DUPLICATE_CASE_DELETED", "case-1", {"kept_case_id": "case-0"}, "cases")

        events = storage.audit_events("DUPLICATE_CASE_DELETED")

        assert audit_id.is_success()
        assert len(events) == 1
        assert events[0]["details"] == {"kept_case_id": "case-0"}
        assert storage.audit_events("OTHER") == []

    def test_snapshot_seeds_sandbox(self, storage):
        """Test that a sandbox built from a snapshot holds the same data."""
        storage.upsert_patient(Patient(patient_id=PATIENT_ID)).unwrap()
        case = make_case(storage)
        add_record(storage, case, at(9))

        sandbox = MemoryStorageAdapter.from_snapshot(storage.snapshot())

        assert sandbox.find_patient(PATIENT_ID) is not None
        assert [c.case_id for c in sandbox.list_cases()] == [case.case_id]
        assert sandbox.list_time_series() == storage.list_time_series()
        assert add_record(sandbox, case, at(9)) == UpsertOutcome.UNCHANGED
        assert make_case(sandbox, at(20)).created_seq > case.created_seq

        # writes to the sandbox never reach the source store
        assert len(storage.list_cases()) == 1


class TestDuckDBAdapter:
    """DuckDB-specific behaviour."""

    def test_persists_across_connections(self, tmp_path):
        """Test a file-backed store survives reopening."""
        db_file = str(tmp_path / "reconciled.duckdb")
        adapter = DuckDBAdapter(db_config=DatabaseConfig(db_type="duckdb", db_path=db_file))
        case = make_case(adapter)
        adapter.close()

        reopened = DuckDBAdapter(db_path=db_file)
        assert reopened.get_case(case.case_id).start_at == START
        assert make_case(reopened, at(20)).created_seq > case.created_seq
        reopened.close()

    def test_timestamps_read_back_as_utc(self):
        """Test that non-UTC input is stored and returned as the same instant."""
        from datetime import timedelta

        adapter = DuckDBAdapter()
        local = datetime(2024, 4, 30, 5, 0, tzinfo=timezone(timedelta(hours=-3)))
        case = make_case(adapter, local)

        assert adapter.get_case(case.case_id).start_at == START
        assert adapter.get_case(case.case_id).start_at.tzinfo == timezone.utc
        adapter.close()

    def test_rejects_wrong_config_type(self):
        """Test that a memory config cannot build a DuckDB adapter."""
        with pytest.raises(StorageError):
            DuckDBAdapter(db_config=DatabaseConfig(db_type="memory"))

    def test_missing_directory(self, tmp_path):
        """Test that a database path in a missing directory is rejected."""
        with pytest.raises(StorageError):
            DuckDBAdapter(db_path=str(tmp_path / "missing" / "db.duckdb"))
