"""Unit tests for suspicious time-series flagging."""

from datetime import datetime, timezone
from unittest.mock import Mock

import pytest

from reconciler.adapters.storage import MemoryStorageAdapter
from reconciler.domain.cdc_models import ChangeType
from reconciler.domain.models import Case, Phase, TimeSeriesRecord
from reconciler.domain.services.anomaly_flagger import (
    AnomalyFlagger,
    build_start_index,
    flag_suspicious,
    is_consistent,
)

PATIENT_ID = "12345672"
OTHER_PATIENT = "7654321"
CASE_START = datetime(2024, 4, 30, 8, 0, tzinfo=timezone.utc)


def utc(*args) -> datetime:
    return datetime(*args, tzinfo=timezone.utc)


@pytest.fixture
def storage():
    adapter = MemoryStorageAdapter()
    adapter.initialize_schema()
    return adapter


@pytest.fixture
def case(storage):
    return storage.create_case(Case(patient_id=PATIENT_ID, start_at=CASE_START)).unwrap()


def add_record(storage, case, timestamp, phase=Phase.INDUCTION):
    storage.upsert_time_series(TimeSeriesRecord(
        case_id=case.case_id, phase=phase, timestamp=timestamp, observations={"FC": 72.0},
    )).unwrap()


def suspicious_timestamps(storage):
    return sorted(r.timestamp for r in storage.list_time_series() if r.suspicious)


class TestIsConsistent:
    """Test suite for the consistency predicate."""

    @pytest.fixture
    def index(self):
        return build_start_index([Case(case_id="c", patient_id=PATIENT_ID, start_at=CASE_START)])

    def test_same_day(self, index):
        """Test a record on the case start date."""
        assert is_consistent(PATIENT_ID, utc(2024, 4, 30, 23, 0), index)

    def test_next_day_within_ceiling(self, index):
        """Test a procedure running past midnight."""
        assert is_consistent(PATIENT_ID, utc(2024, 5, 1, 2, 0), index)

    def test_next_day_beyond_ceiling(self, index):
        """Test that the overnight allowance is bounded."""
        assert not is_consistent(PATIENT_ID, utc(2024, 5, 1, 9, 0), index)

    def test_other_patient(self, index):
        """Test that another patient's case start does not count."""
        assert not is_consistent(OTHER_PATIENT, utc(2024, 4, 30, 9, 0), index)

    def test_orphan_records_are_inconsistent(self):
        """Test a record whose owning case is gone."""
        orphan = TimeSeriesRecord(record_id="r1", case_id="gone", phase=Phase.CLOSURE, timestamp=CASE_START)
        assert flag_suspicious([orphan], []) == ["r1"]


class TestAnomalyFlagger:
    """Test suite for AnomalyFlagger."""

    def test_wrong_year_is_flagged(self, storage, case):
        """Test a record typed with the previous year."""
        add_record(storage, case, utc(2024, 4, 30, 9, 0))
        add_record(storage, case, utc(2023, 3, 30, 9, 0))

        result = AnomalyFlagger(storage).run()

        assert result.count == 1
        assert result.newly_flagged == 1
        assert suspicious_timestamps(storage) == [utc(2023, 3, 30, 9, 0)]

    def test_rerun_is_idempotent(self, storage, case):
        """Test that a second pass finds the same set and changes nothing."""
        add_record(storage, case, utc(2023, 3, 30, 9, 0))
        flagger = AnomalyFlagger(storage)

        first = flagger.run()
        second = flagger.run()

        assert first.record_ids == second.record_ids
        assert second.newly_flagged == 0
        assert len(suspicious_timestamps(storage)) == 1

    def test_flags_are_never_cleared(self, storage, case):
        """Test that a record stays flagged after it becomes consistent."""
        add_record(storage, case, utc(2023, 3, 30, 9, 0))
        AnomalyFlagger(storage).run()

        storage.create_case(Case(patient_id=PATIENT_ID, start_at=utc(2023, 3, 30, 8, 0))).unwrap()
        result = AnomalyFlagger(storage).run()

        assert result.count == 0
        assert suspicious_timestamps(storage) == [utc(2023, 3, 30, 9, 0)]

    def test_overnight_record_not_flagged(self, storage, case):
        """Test the past-midnight allowance end to end."""
        add_record(storage, case, utc(2024, 5, 1, 1, 0), Phase.CLOSURE)
        assert AnomalyFlagger(storage).run().count == 0

    def test_calendar_date_in_source_timezone(self, storage):
        """Test that the start date is taken in the source zone."""
        # 21:30 on 29 April local time
        case = storage.create_case(Case(patient_id=PATIENT_ID, start_at=utc(2024, 4, 30, 0, 30))).unwrap()
        add_record(storage, case, utc(2024, 4, 30, 0, 45))

        assert AnomalyFlagger(storage).run().count == 0
        assert AnomalyFlagger(storage, source_timezone="America/Montevideo").run().count == 0

    def test_single_patient_run(self, storage, case):
        """Test restricting the pass to one patient."""
        other = storage.create_case(Case(patient_id=OTHER_PATIENT, start_at=CASE_START)).unwrap()
        add_record(storage, case, utc(2023, 3, 30, 9, 0))
        add_record(storage, other, utc(2023, 3, 30, 9, 0))

        result = AnomalyFlagger(storage).run(patient_id=OTHER_PATIENT)

        assert result.count == 1
        assert len(suspicious_timestamps(storage)) == 1

    def test_new_flags_are_audited(self, storage, case):
        """Test that each newly flagged record produces one FLAG change event."""
        add_record(storage, case, utc(2023, 3, 30, 9, 0))
        audit_logger = Mock()

        result = AnomalyFlagger(storage, audit_logger=audit_logger, run_id="run-1").run()

        audit_logger.log_change_event.assert_called_once()
        event = audit_logger.log_change_event.call_args.args[0]
        assert event.change_type == ChangeType.FLAG
        assert event.table_name == "time_series"
        assert event.record_id == result.record_ids[0]
        assert (event.field_name, event.old_value, event.new_value) == ("suspicious", False, True)
        assert event.run_id == "run-1"

    def test_existing_flags_are_not_audited_again(self, storage, case):
        """Test that a rerun over already flagged records logs nothing."""
        add_record(storage, case, utc(2023, 3, 30, 9, 0))
        AnomalyFlagger(storage).run()
        audit_logger = Mock()

        result = AnomalyFlagger(storage, audit_logger=audit_logger).run()

        assert result.count == 1
        audit_logger.log_change_event.assert_not_called()
