"""Unit tests for configuration loading and validation."""

import json
from datetime import date

import pytest
from pydantic import ValidationError

from reconciler.domain.models import Phase
from reconciler.domain.ports import ConfigurationError
from reconciler.infrastructure.config_manager import (
    ConfigManager,
    DatabaseConfig,
    IdentifierCorrection,
    ReconciliationConfig,
    default_sheet_mappings,
    load_identifier_corrections,
    load_sheet_mappings,
)

MAPPING = {
    "sheet_type": "postop",
    "sheet_names": ["Seguimiento"],
    "fields": {
        "identifier": {"column": "Documento", "required": True, "value_required": True},
        "date": {"column": "Fecha"},
    },
}

CORRECTION = {"wrong_identifier": "1.234.567-2", "correct_identifier": "7654321", "date": "2024-04-30"}


@pytest.fixture
def clean_env(monkeypatch):
    for name in ("RC_DB_TYPE", "RC_DB_PATH", "RC_MATCH_WINDOW_DAYS", "RC_DUPLICATE_THRESHOLD",
                 "RC_MAX_CASE_DURATION_MINUTES", "RC_SOURCE_TIMEZONE", "RC_MAX_REPORT_ERRORS",
                 "RC_IDENTIFIER_CORRECTIONS"):
        monkeypatch.delenv(name, raising=False)
    return monkeypatch


class TestDatabaseConfig:
    """Test suite for DatabaseConfig."""

    def test_defaults(self):
        """Test the default store."""
        config = DatabaseConfig()
        assert config.db_type == "duckdb"
        assert config.db_path is None

    def test_type_is_normalized(self):
        """Test case-insensitive store types."""
        assert DatabaseConfig(db_type="DuckDB").db_type == "duckdb"

    def test_unsupported_type(self):
        """Test that unknown store types are rejected."""
        with pytest.raises(ValidationError, match="Unsupported database type"):
            DatabaseConfig(db_type="postgresql")

    def test_missing_directory(self, tmp_path):
        """Test that the database directory must exist."""
        with pytest.raises(ValidationError, match="does not exist"):
            DatabaseConfig(db_path=str(tmp_path / "missing" / "db.duckdb"))
        assert DatabaseConfig(db_path=":memory:").db_path == ":memory:"


class TestReconciliationConfig:
    """Test suite for ReconciliationConfig."""

    def test_defaults(self):
        """Test the default tuning parameters."""
        config = ReconciliationConfig()
        assert config.match_window_days == 2
        assert config.duplicate_threshold == 0.9
        assert config.max_case_duration_minutes == 1440
        assert config.source_timezone == "America/Montevideo"
        assert config.phase_priority[0] == Phase.CLOSURE
        assert config.phase_priority[-1] == Phase.INDUCTION

    def test_default_mappings(self):
        """Test the built-in workbook layout."""
        mappings = default_sheet_mappings()
        types = [m.sheet_type for m in mappings]
        assert types.count("timeseries") == 7
        assert {m.phase for m in mappings if m.phase} == set(Phase)
        required = {m.sheet_names[0] for m in mappings if m.required_sheet}
        assert required == {"DatosPaciente", "DatosTrasplante"}

    def test_mapping_for_sheet(self):
        """Test sheet lookup."""
        config = ReconciliationConfig()
        assert config.mapping_for_sheet("IntraopCierre").phase == Phase.CLOSURE
        assert config.mapping_for_sheet("Notas") is None

    @pytest.mark.parametrize("overrides", [
        {"source_timezone": "Mars/Olympus"},
        {"duplicate_threshold": 0},
        {"duplicate_threshold": 1.5},
        {"match_window_days": -1},
        {"max_case_duration_minutes": 0},
        {"phase_priority": []},
        {"phase_priority": ["CLOSURE", "CLOSURE"]},
    ])
    def test_invalid_values(self, overrides):
        """Test that out-of-range parameters fail validation."""
        with pytest.raises(ValidationError):
            ReconciliationConfig(**overrides)

    def test_sheet_mapped_twice(self):
        """Test that one sheet cannot feed two mappings."""
        mappings = default_sheet_mappings()
        mappings.append(mappings[0].model_copy(update={"sheet_type": "evaluations"}))
        with pytest.raises(ValidationError, match="mapped twice"):
            ReconciliationConfig(sheet_mappings=mappings)


class TestLoadSheetMappings:
    """Test suite for load_sheet_mappings()."""

    def test_list_form(self, tmp_path):
        """Test a JSON list of mappings."""
        path = tmp_path / "mapping.json"
        path.write_text(json.dumps([MAPPING]), encoding="utf-8")

        mappings = load_sheet_mappings(str(path))

        assert len(mappings) == 1
        assert mappings[0].fields["identifier"].column == "Documento"

    def test_object_form(self, tmp_path):
        """Test an object with a sheet_mappings list."""
        path = tmp_path / "mapping.json"
        path.write_text(json.dumps({"sheet_mappings": [MAPPING]}), encoding="utf-8")
        assert load_sheet_mappings(str(path))[0].sheet_names == ["Seguimiento"]

    @pytest.mark.parametrize("content", [
        "{not json",
        "[]",
        json.dumps([{"sheet_type": "postop", "sheet_names": ["X"], "fields": {}}]),
        json.dumps([{"sheet_type": "unknown", "sheet_names": ["X"]}]),
    ])
    def test_invalid_files(self, tmp_path, content):
        """Test malformed, empty and invalid mapping files."""
        path = tmp_path / "mapping.json"
        path.write_text(content, encoding="utf-8")
        with pytest.raises(ConfigurationError):
            load_sheet_mappings(str(path))

    def test_missing_file(self, tmp_path):
        """Test a mapping path that does not exist."""
        with pytest.raises(ConfigurationError, match="not found"):
            load_sheet_mappings(str(tmp_path / "missing.json"))


class TestIdentifierCorrections:
    """Test suite for verified identifier corrections."""

    def test_identifiers_are_normalized(self):
        """Test that both identifiers are stored as canonical keys."""
        correction = IdentifierCorrection(**CORRECTION)
        assert correction.wrong_identifier == "12345672"
        assert correction.correct_identifier == "7654321"
        assert correction.date == date(2024, 4, 30)

    @pytest.mark.parametrize("overrides", [
        {"correct_identifier": "12345672"},
        {"wrong_identifier": "abc"},
        {"date": "30/04"},
    ])
    def test_invalid_corrections(self, overrides):
        """Test equal, unparseable and undated corrections."""
        with pytest.raises(ValidationError):
            IdentifierCorrection(**{**CORRECTION, **overrides})

    def test_duplicate_correction_rejected(self):
        """Test that one identifier cannot be corrected twice on the same date."""
        with pytest.raises(ValidationError, match="identifier_corrections"):
            ReconciliationConfig(identifier_corrections=[CORRECTION, {**CORRECTION, "correct_identifier": "1111111"}])

    def test_corrected_identifier(self):
        """Test that a correction applies on its date only."""
        config = ReconciliationConfig(identifier_corrections=[CORRECTION])
        assert config.corrected_identifier("12345672", date(2024, 4, 30)) == "7654321"
        assert config.corrected_identifier("12345672", date(2024, 5, 1)) is None
        assert config.corrected_identifier("7654321", date(2024, 4, 30)) is None
        assert config.corrected_identifier("12345672", None) is None

    def test_load_list_and_object_forms(self, tmp_path):
        """Test both accepted file layouts."""
        listed = tmp_path / "list.json"
        listed.write_text(json.dumps([CORRECTION]), encoding="utf-8")
        wrapped = tmp_path / "object.json"
        wrapped.write_text(json.dumps({"identifier_corrections": [CORRECTION]}), encoding="utf-8")

        assert load_identifier_corrections(str(listed)) == load_identifier_corrections(str(wrapped))
        assert len(load_identifier_corrections(str(listed))) == 1

    @pytest.mark.parametrize("content", ["{", '"x"', '[{"wrong_identifier": "12345672"}]'])
    def test_load_invalid_files(self, tmp_path, content):
        """Test malformed and incomplete correction files."""
        path = tmp_path / "corrections.json"
        path.write_text(content, encoding="utf-8")
        with pytest.raises(ConfigurationError):
            load_identifier_corrections(str(path))

    def test_load_missing_file(self, tmp_path):
        """Test a corrections path that does not exist."""
        with pytest.raises(ConfigurationError, match="not found"):
            load_identifier_corrections(str(tmp_path / "missing.json"))

    def test_from_environment(self, clean_env, tmp_path):
        """Test that RC_IDENTIFIER_CORRECTIONS feeds the reconciliation config."""
        path = tmp_path / "corrections.json"
        path.write_text(json.dumps([CORRECTION]), encoding="utf-8")
        clean_env.setenv("RC_IDENTIFIER_CORRECTIONS", str(path))

        config = ConfigManager.from_environment().get_reconciliation_config()

        assert config.corrected_identifier("12345672", date(2024, 4, 30)) == "7654321"


class TestConfigManager:
    """Test suite for ConfigManager."""

    def test_from_environment(self, clean_env):
        """Test configuration from RC_* variables."""
        clean_env.setenv("RC_DB_TYPE", "memory")
        clean_env.setenv("RC_MATCH_WINDOW_DAYS", "3")
        clean_env.setenv("RC_SOURCE_TIMEZONE", "UTC")

        manager = ConfigManager.from_environment()

        assert manager.get_database_config().db_type == "memory"
        config = manager.get_reconciliation_config()
        assert config.match_window_days == 3
        assert config.source_timezone == "UTC"
        assert config.duplicate_threshold == 0.9

    def test_invalid_environment(self, clean_env):
        """Test that invalid values surface as ConfigurationError."""
        clean_env.setenv("RC_DUPLICATE_THRESHOLD", "1.5")
        with pytest.raises(ConfigurationError):
            ConfigManager.from_environment().get_reconciliation_config()

    def test_invalid_database_type(self, clean_env):
        """Test an unsupported store type from the environment."""
        clean_env.setenv("RC_DB_TYPE", "oracle")
        with pytest.raises(ConfigurationError):
            ConfigManager.from_environment().get_database_config()

    def test_from_file(self, tmp_path):
        """Test configuration from a JSON file."""
        path = tmp_path / "reconcile.json"
        path.write_text(json.dumps({
            "database": {"db_type": "duckdb", "db_path": str(tmp_path / "store.duckdb")},
            "reconciliation": {"duplicate_threshold": 0.85},
        }), encoding="utf-8")

        manager = ConfigManager.from_file(str(path))

        assert manager.get_reconciliation_config().duplicate_threshold == 0.85
        assert manager.get("database.db_type") == "duckdb"
        assert manager.get("database.missing", "default") == "default"

    def test_from_missing_file(self, tmp_path):
        """Test a configuration path that does not exist."""
        with pytest.raises(FileNotFoundError):
            ConfigManager.from_file(str(tmp_path / "missing.json"))
