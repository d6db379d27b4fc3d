"""Integration tests for the reconciliation pipeline.

Sources are in-memory sheets laid out like the historical workbook; the store
is the in-memory adapter so every test starts from an empty database.
"""

from datetime import datetime, timezone
from unittest.mock import patch

import pytest

from reconciler.adapters.storage import MemoryStorageAdapter
from reconciler.domain.models import Case, EndSource
from reconciler.domain.ports import Result, SourceNotFoundError, SourcePort, StorageError
from reconciler.domain.report import IssueCategory, RunReport
from reconciler.domain.source_row import SheetView
from reconciler.infrastructure.config_manager import ReconciliationConfig, default_sheet_mappings
from reconciler.pipeline import (
    IngestStage,
    ReconciliationPipeline,
    RunContext,
    parse_team_cell,
    plan_sheets,
    run_pipeline,
)

PATIENT_ID = "12345672"
OTHER_PATIENT = "7654321"


class InMemorySource(SourcePort):
    """SourcePort over prepared SheetViews."""

    def __init__(self, sheets):
        self._sheets = {sheet.name: sheet for sheet in sheets}

    def can_read(self, source):
        return True

    def sheet_names(self):
        return list(self._sheets)

    def read_sheet(self, sheet_name):
        if sheet_name not in self._sheets:
            raise SourceNotFoundError(f"Sheet not found: {sheet_name}")
        return self._sheets[sheet_name]


def sheet(name, headers, rows):
    return SheetView(source="historico.xlsx", name=name, headers=headers, rows=rows)


def patients_sheet():
    return sheet("DatosPaciente", ["CI", "Nombre", "Sexo"], [
        {"CI": "1.234.567-2", "Nombre": "Ana", "Sexo": "F"},
        {"CI": None, "Nombre": None, "Sexo": None},
        {"CI": "abc", "Nombre": "Sin documento", "Sexo": "M"},
    ])


def cases_sheet(headers=("CI", "FechaHoraInicio", "FechaHoraFin", "Anestesista 1")):
    return sheet("DatosTrasplante", list(headers), [
        {"CI": PATIENT_ID, "FechaHoraInicio": "30/04/2024 08:00", "FechaHoraFin": None,
         "Anestesista 1": "1234: Perez"},
    ])


def workbook(*extra):
    induction = sheet("IntraopInducc", ["CI", "Fecha", "FC", "Plasmalyte(ml)"], [
        {"CI": PATIENT_ID, "Fecha": "30/04/2024 08:05", "FC": 80, "Plasmalyte(ml)": 500},
    ])
    closure = sheet("IntraopCierre", ["CI", "Fecha", "FC"], [
        {"CI": PATIENT_ID, "Fecha": "30/04/2024 09:15", "FC": 75},
        {"CI": PATIENT_ID, "Fecha": "30/03/2023 09:00", "FC": 70},
    ])
    return InMemorySource([closure, patients_sheet(), induction, cases_sheet(), *extra])


@pytest.fixture
def config():
    return ReconciliationConfig(source_timezone="UTC")


@pytest.fixture
def storage():
    return MemoryStorageAdapter()


class TestHelpers:
    """Test suite for pipeline helpers."""

    @pytest.mark.parametrize("raw,expected", [
        ("1234: Perez", (1234, "Perez")),
        ("1234", (1234, None)),
        (1234.0, (1234, None)),
        ("Perez", (None, "Perez")),
        ("  ", (None, None)),
        (None, (None, None)),
    ])
    def test_parse_team_cell(self, raw, expected):
        """Test the CODE: Name team cell format."""
        assert parse_team_cell(raw) == expected

    def test_plan_orders_rosters_first(self, config):
        """Test that sheets are ordered by type, then by phase."""
        planned = plan_sheets(config, [workbook()])
        assert [view.name for _, view in planned] == [
            "DatosPaciente", "DatosTrasplante", "IntraopInducc", "IntraopCierre",
        ]

    def test_unmapped_sheets_are_ignored(self, config):
        """Test that extra sheets do not affect the plan."""
        extra = sheet("Notas", ["Texto"], [{"Texto": "x"}])
        planned = plan_sheets(config, [workbook(extra)])
        assert "Notas" not in [view.name for _, view in planned]


class TestPipelineRun:
    """Test suite for full pipeline runs."""

    def test_first_run(self, config, storage):
        """Test counts, inferred boundary and flags of a fresh import."""
        report = run_pipeline(config, storage, [workbook()])

        assert report.succeeded
        assert report.stages_completed == ["ingest", "deduplicate", "infer_boundaries", "flag_anomalies"]
        assert report.count("rows_read") == 6
        assert report.count("rows_skipped") == 1
        assert report.count("patients_created") == 1
        assert report.count("cases_created") == 1
        assert report.count("time_series_created") == 3
        assert report.count("fluids_created") == 1
        assert report.count("team_created") == 1
        assert report.count("attached_outside_window") == 1
        assert report.count("boundaries_primary") == 1
        assert report.count("records_flagged") == 1
        assert report.count("records_newly_flagged") == 1
        assert report.count("changes.time_series.FLAG") == 1

        patient = storage.find_patient(PATIENT_ID)
        assert patient.name == "Ana"
        assert patient.raw_identifier == "1.234.567-2"

        case = storage.list_cases()[0]
        assert case.start_at == datetime(2024, 4, 30, 8, 0, tzinfo=timezone.utc)
        assert case.end_at == datetime(2024, 4, 30, 9, 15, tzinfo=timezone.utc)
        assert case.duration_minutes == 75
        assert case.end_source == EndSource.INFERRED

        team = storage.list_team(case.case_id)
        assert [(t.role, t.clinician_code, t.clinician_name) for t in team] == [("ANESTHESIOLOGIST_1", 1234, "Perez")]

    def test_skipped_row_has_provenance(self, config, storage):
        """Test that the unparseable identifier is reported with its row."""
        report = run_pipeline(config, storage, [workbook()])

        skipped = [i for i in report.issues if i.category == IssueCategory.ROW_VALIDATION]
        assert [i.provenance for i in skipped] == ["historico.xlsx:DatosPaciente:4"]

    def test_rerun_is_idempotent(self, config, storage):
        """Test that a second run over the same sources changes nothing."""
        run_pipeline(config, storage, [workbook()])
        before = storage.snapshot()

        report = run_pipeline(config, storage, [workbook()])

        changed = {k: v for k, v in report.counts.items() if k.endswith(("_created", "_updated")) and v}
        assert changed == {}
        assert report.count("records_flagged") == 1
        assert report.count("records_newly_flagged") == 0
        assert report.count("changes.time_series.FLAG") == 0
        assert storage.snapshot() == before

    def test_explicit_end_from_roster(self, config, storage):
        """Test that a recorded end past midnight is corrected and kept explicit."""
        roster = sheet("DatosTrasplante", ["CI", "FechaHoraInicio", "FechaHoraFin"], [
            {"CI": PATIENT_ID, "FechaHoraInicio": "30/04/2024 22:00", "FechaHoraFin": "30/04/2024 01:30"},
        ])
        source = InMemorySource([patients_sheet(), roster])

        report = run_pipeline(config, storage, [source])

        case = storage.list_cases()[0]
        assert report.count("explicit_ends_corrected") == 1
        assert report.count("boundaries_explicit") == 1
        assert case.end_source == EndSource.EXPLICIT
        assert case.end_at == datetime(2024, 5, 1, 1, 30, tzinfo=timezone.utc)
        assert case.duration_minutes == 210

    def test_existing_duplicates_are_merged(self, config, storage):
        """Test the deduplicate stage against pre-existing same-day cases."""
        storage.create_case(Case(patient_id="7654321", start_at=datetime(2024, 1, 5, 8, 0, tzinfo=timezone.utc)))
        storage.create_case(Case(patient_id="7654321", start_at=datetime(2024, 1, 5, 9, 0, tzinfo=timezone.utc)))

        report = run_pipeline(config, storage, [workbook()])

        assert report.count("duplicate_groups_merged") == 1
        assert report.count("cases_deleted") == 1
        assert report.count("changes.cases.DELETE") == 1
        assert len(storage.find_cases("7654321")) == 1

    def test_postop_sheet_can_create_cases(self, storage):
        """Test that a sheet mapped with the create policy opens its own case."""
        mappings = [
            m.model_copy(update={"case_policy": "create"}) if m.sheet_type == "postop" else m
            for m in default_sheet_mappings()
        ]
        postop = sheet("PostOp", ["CI", "Fecha", "DiasCTI"], [
            {"CI": PATIENT_ID, "Fecha": "10/06/2024", "DiasCTI": 3},
        ])
        source = InMemorySource([patients_sheet(), cases_sheet(), postop])

        created = run_pipeline(ReconciliationConfig(source_timezone="UTC", sheet_mappings=mappings),
                               storage, [source])
        attached = run_pipeline(ReconciliationConfig(source_timezone="UTC"), MemoryStorageAdapter(), [source])

        assert created.count("cases_created") == 2
        assert created.count("attached_outside_window") == 0
        assert attached.count("cases_created") == 1
        assert attached.count("attached_outside_window") == 1

    def test_identifier_correction(self, storage):
        """Test that rows with a crossed identifier land on the corrected patient's case."""
        config = ReconciliationConfig(source_timezone="UTC", identifier_corrections=[
            {"wrong_identifier": PATIENT_ID, "correct_identifier": OTHER_PATIENT, "date": "2024-04-30"},
        ])
        patients = sheet("DatosPaciente", ["CI", "Nombre"], [
            {"CI": PATIENT_ID, "Nombre": "Ana"},
            {"CI": OTHER_PATIENT, "Nombre": "Bruno"},
        ])
        roster = sheet("DatosTrasplante", ["CI", "FechaHoraInicio"], [
            {"CI": OTHER_PATIENT, "FechaHoraInicio": "30/04/2024 08:00"},
        ])
        closure = sheet("IntraopCierre", ["CI", "Fecha", "FC"], [
            {"CI": PATIENT_ID, "Fecha": "30/04/2024 09:15", "FC": 75},
        ])

        report = run_pipeline(config, storage, [InMemorySource([patients, roster, closure])])

        case = storage.find_cases(OTHER_PATIENT)[0]
        assert report.count("identifiers_corrected") == 1
        assert report.count("cases_created") == 1
        assert storage.find_cases(PATIENT_ID) == []
        assert [r.case_id for r in storage.list_time_series()] == [case.case_id]
        assert storage.find_patient(PATIENT_ID).name == "Ana"


class TestDryRun:
    """Test suite for dry runs."""

    def test_store_untouched(self, config, storage):
        """Test that a dry run reports changes but writes nothing."""
        report = run_pipeline(config, storage, [workbook()], dry_run=True)

        assert report.dry_run
        assert report.count("cases_created") == 1
        assert storage.list_cases() == []
        assert storage.find_patient(PATIENT_ID) is None

    def test_dry_run_sees_existing_data(self, config, storage):
        """Test that a dry run starts from a copy of the store."""
        run_pipeline(config, storage, [workbook()])

        report = run_pipeline(config, storage, [workbook()], dry_run=True)

        assert report.count("cases_created") == 0
        assert report.count("cases_unchanged") == 1


class TestFailures:
    """Test suite for fatal errors."""

    def test_missing_required_column_aborts_before_writes(self, config, storage):
        """Test that a bad header stops the run with the store untouched."""
        source = workbook()
        source._sheets["DatosTrasplante"] = cases_sheet(headers=("CI", "Anestesista 1"))

        report = run_pipeline(config, storage, [source])

        assert not report.succeeded
        assert report.fatal_category == IssueCategory.CONFIGURATION
        assert "FechaHoraInicio" in report.fatal_error
        assert report.stages_completed == []
        assert report.count("rows_read") == 0
        assert storage.list_cases() == []

    def test_missing_required_sheet(self, config, storage):
        """Test that a source without the patient roster is rejected."""
        report = run_pipeline(config, storage, [InMemorySource([cases_sheet()])])

        assert report.fatal_category == IssueCategory.CONFIGURATION
        assert "patients" in report.fatal_error

    def test_storage_failure_stops_the_stage(self, config, storage):
        """Test that a persistence failure is fatal and keeps the last unit."""
        failure = Result.failure_result(StorageError("disk full", operation="mark_suspicious"))
        with patch.object(storage, "mark_suspicious", return_value=failure):
            report = run_pipeline(config, storage, [workbook()])

        assert report.fatal_category == IssueCategory.PERSISTENCE
        assert report.fatal_error == "disk full"
        assert report.stages_completed == ["ingest", "deduplicate", "infer_boundaries"]
        assert report.last_completed_unit.startswith("infer_boundaries:")
        # ingest results stay persisted
        assert len(storage.list_cases()) == 1

    def test_single_stage(self, config, storage):
        """Test running one stage on its own."""
        ctx = RunContext(config=config, storage=storage, report=RunReport(), sources=[workbook()])

        report = ReconciliationPipeline([IngestStage()]).run(ctx)

        assert report.stages_completed == ["ingest"]
        assert storage.list_cases()[0].end_at is None
