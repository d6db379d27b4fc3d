"""Configuration Manager.

Loads the store configuration and the reconciliation configuration (matching
window, duplicate threshold, plausibility ceiling, phase priority, source time
zone, sheet mappings) from environment variables or a JSON file.

Security Impact:
    - Database paths are validated before use
    - Configuration is validated before any source is read (fail fast)

Architecture:
    - Follows Hexagonal Architecture: Infrastructure layer isolated from domain
    - Type-safe configuration using Pydantic models
    - Invalid configuration surfaces as ConfigurationError
"""

import json
import logging
import os
from datetime import date as date_type
from pathlib import Path
from typing import Any, Dict, Optional
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from dotenv import load_dotenv
from pydantic import BaseModel, Field, ValidationError, field_validator, model_validator

from reconciler.domain.models import DEFAULT_PHASE_PRIORITY, Phase
from reconciler.domain.ports import ConfigurationError
from reconciler.domain.services.identifier import normalize
from reconciler.domain.source_row import FieldSpec, SheetMapping

logger = logging.getLogger(__name__)

DEFAULT_SOURCE_TIMEZONE = "America/Montevideo"
DEFAULT_MATCH_WINDOW_DAYS = 2
DEFAULT_DUPLICATE_THRESHOLD = 0.9
DEFAULT_MAX_CASE_DURATION_MINUTES = 1440
DEFAULT_MAX_REPORT_ERRORS = 200

ENV_FILE = Path.cwd() / ".env"


def load_env_file(env_path: Optional[Path] = None) -> bool:
    """Load a .env file into the process environment if present."""
    env_path = env_path or ENV_FILE
    if env_path.exists():
        load_dotenv(env_path)
        logger.debug(f"Loaded environment variables from {env_path}")
        return True
    return False


# ============================================================================
# Database configuration
# ============================================================================

class DatabaseConfig(BaseModel):
    """Store configuration.

    Parameters:
        db_type: 'duckdb' (persistent) or 'memory' (throwaway)
        db_path: Path to the DuckDB file, or ':memory:'
    """

    db_type: str = Field(default="duckdb", description="Store type (duckdb, memory)")
    db_path: Optional[str] = Field(None, description="Path to database file (for DuckDB)")

    @field_validator("db_type")
    @classmethod
    def validate_db_type(cls, v: str) -> str:
        supported_types = ["duckdb", "memory"]
        if v.lower() not in supported_types:
            raise ValueError(f"Unsupported database type: {v}. Supported: {supported_types}")
        return v.lower()

    @field_validator("db_path")
    @classmethod
    def validate_db_path(cls, v: Optional[str]) -> Optional[str]:
        """Validate the database directory exists (the file may not exist yet)."""
        if v is None or v == ":memory:":
            return v

        db_path_obj = Path(v)
        if not db_path_obj.parent.exists():
            raise ValueError(f"Database directory does not exist: {db_path_obj.parent}")
        return str(db_path_obj)


# ============================================================================
# Default sheet mappings (historical transplant workbook layout)
# ============================================================================

def _fields(**columns: Any) -> dict[str, FieldSpec]:
    specs = {}
    for name, column in columns.items():
        if isinstance(column, FieldSpec):
            specs[name] = column
        else:
            specs[name] = FieldSpec(column=column)
    return specs


IDENTIFIER = FieldSpec(column="CI", required=True, value_required=True)

PHASE_SHEETS = {
    Phase.INDUCTION: "IntraopInducc",
    Phase.DISSECTION: "IntraopDisec",
    Phase.ANHEPATIC: "IntraopAnhep",
    Phase.PRE_REPERFUSION: "IntraopPreReperf",
    Phase.POST_REPERFUSION: "IntraopPostRepef",
    Phase.BILIARY: "IntropFinVB",
    Phase.CLOSURE: "IntraopCierre",
}

OBSERVATION_COLUMNS = {
    "heart_rate": "FC",
    "systolic_bp": "PAS",
    "diastolic_bp": "PAD",
    "mean_bp": "PAm",
    "cvp": "PVC",
    "spo2": "SatO2",
    "temperature": "Temp",
    "fio2": "FIO2",
    "peep": "PEEP",
    "cardiac_output": "GC",
    "hemoglobin": "Hb",
    "hematocrit": "Hto",
    "platelets": "Plaquetas",
    "inr": "INR",
    "fibrinogen": "Fibrinogeno",
    "sodium": "Na",
    "potassium": "K",
    "ph": "pH",
    "pao2": "PaO2",
    "paco2": "PaCO2",
    "lactate": "Lactato",
    "glucose": "Glicemia",
}

FLUID_COLUMNS = {
    "plasmalyte_ml": "Plasmalyte(ml)",
    "ringer_ml": "RLactato(ml)",
    "saline_ml": "SF(ml)",
    "albumin_ml": "CAlbumina(ml)",
    "red_cells_u": "GR(U)",
    "plasma_u": "Plasma(U)",
    "platelets_u": "CPlaquetas(U)",
    "cell_saver_ml": "CellSaver(ml)",
    "insensible_loss_ml": "Perd Insens(ml)",
    "diuresis_ml": "Diuresis(ml)",
}

TEAM_COLUMNS = {
    "ANESTHESIOLOGIST_1": "Anestesista 1",
    "ANESTHESIOLOGIST_2": "Anestesista 2",
    "SURGEON_1": "Cirujano 1",
    "SURGEON_2": "Cirujano 2",
    "INTENSIVIST": "Intensivista",
    "HEPATOLOGIST": "Hepatólogo",
    "NURSE_COORDINATOR": "NurseCoordinadora",
}


def default_sheet_mappings() -> list[SheetMapping]:
    """Sheet mappings for the historical transplant workbook."""
    mappings = [
        SheetMapping(
            sheet_type="patients",
            sheet_names=["DatosPaciente"],
            required_sheet=True,
            fields=_fields(
                identifier=IDENTIFIER,
                name="Nombre",
                birth_date="FNac",
                sex="Sexo",
                blood_group="GrupoS",
                weight_kg="Peso",
                height_cm="Talla",
                transplanted="Trasplantado",
            ),
        ),
        SheetMapping(
            sheet_type="cases",
            sheet_names=["DatosTrasplante"],
            required_sheet=True,
            case_policy="create",
            fields=_fields(
                identifier=IDENTIFIER,
                start_at=FieldSpec(column="FechaHoraInicio", required=True),
                end_at="FechaHoraFin",
                is_retransplant="Retrasplante",
                is_combined="HepatoRenal",
                optimal_donor="DonanteOptimo",
                cold_ischemia_minutes="TIsqFria",
                warm_ischemia_minutes="TisqCaliente",
                provenance="Procedencia",
                observations="Observaciones",
            ),
            team_columns=dict(TEAM_COLUMNS),
        ),
        SheetMapping(
            sheet_type="evaluations",
            sheet_names=["Preoperatorio"],
            fields=_fields(
                identifier=IDENTIFIER,
                date="Fecha",
                meld="MELD",
                child="Child",
                asa="ASA",
                etiology="Etiologia1",
                weight_kg="Peso",
                height_cm="Talla",
            ),
        ),
        SheetMapping(
            sheet_type="postop",
            sheet_names=["PostOp"],
            fields=_fields(
                identifier=IDENTIFIER,
                date="Fecha",
                icu_days="DiasCTI",
                ward_days="DiasIntSala",
                reintervention="Reintervencion",
                graft_failure="FallaInjerto",
                notes="Observaciones",
            ),
        ),
    ]
    for phase, sheet_name in PHASE_SHEETS.items():
        mappings.append(SheetMapping(
            sheet_type="timeseries",
            sheet_names=[sheet_name],
            phase=phase,
            fields=_fields(
                identifier=IDENTIFIER,
                timestamp=FieldSpec(column="Fecha", required=True, value_required=True),
            ),
            observation_columns=dict(OBSERVATION_COLUMNS),
            fluid_columns=dict(FLUID_COLUMNS),
        ))
    return mappings


# ============================================================================
# Identifier corrections
# ============================================================================

class IdentifierCorrection(BaseModel):
    """A verified repair of a crossed identity number.

    Rows carrying ``wrong_identifier`` whose own date falls on ``date`` (source
    time zone) belong to ``correct_identifier``. Other dates of the same
    identifier are left alone, since the wrong number is usually a real
    patient's identifier as well.
    """

    wrong_identifier: str = Field(..., description="Identifier as typed in the source")
    correct_identifier: str = Field(..., description="Identifier the rows belong to")
    date: date_type = Field(..., description="Calendar date of the affected rows")
    note: Optional[str] = Field(None, description="Who verified the correction, or why")

    @field_validator("wrong_identifier", "correct_identifier", mode="before")
    @classmethod
    def validate_identifier(cls, v: Any) -> str:
        key, ok = normalize(v)
        if not ok:
            raise ValueError(f"Not a valid identifier: {v!r}")
        return key

    @model_validator(mode="after")
    def check_distinct(self) -> "IdentifierCorrection":
        if self.wrong_identifier == self.correct_identifier:
            raise ValueError("wrong_identifier and correct_identifier must differ")
        return self


def load_identifier_corrections(path: str) -> list[IdentifierCorrection]:
    """Load identifier corrections from a JSON list (or ``identifier_corrections`` object).

    Raises:
        ConfigurationError: If the file is missing or invalid
    """
    corrections_file = Path(path)
    if not corrections_file.exists():
        raise ConfigurationError(f"Corrections file not found: {path}")
    try:
        with open(corrections_file, 'r', encoding='utf-8') as f:
            data = json.load(f)
    except json.JSONDecodeError as e:
        raise ConfigurationError(f"Invalid JSON in corrections file: {str(e)}")

    if isinstance(data, dict):
        data = data.get("identifier_corrections", [])
    if not isinstance(data, list):
        raise ConfigurationError(f"Corrections file must hold a list: {path}")
    try:
        return [IdentifierCorrection(**item) for item in data]
    except (ValidationError, TypeError) as e:
        raise ConfigurationError(f"Invalid identifier correction in {path}: {str(e)}")


# ============================================================================
# Reconciliation configuration
# ============================================================================

class ReconciliationConfig(BaseModel):
    """Tunable parameters of a reconciliation run.

    Parameters:
        match_window_days: Date-match window for case resolution (inclusive)
        duplicate_threshold: Minimum similarity for two cases to be duplicates
        max_case_duration_minutes: Plausibility ceiling for a case
        phase_priority: Phases from most to least terminal
        source_timezone: Zone of naive source timestamps and of calendar dates
        identifier_delimiter: Separator of identifier annotations
        max_report_errors: Cap on issues stored in the run report
        sheet_mappings: Field manifest per sheet
        identifier_corrections: Verified (wrong identifier, date) -> identifier repairs
    """

    match_window_days: int = Field(default=DEFAULT_MATCH_WINDOW_DAYS, ge=0)
    duplicate_threshold: float = Field(default=DEFAULT_DUPLICATE_THRESHOLD, gt=0.0, le=1.0)
    max_case_duration_minutes: int = Field(default=DEFAULT_MAX_CASE_DURATION_MINUTES, gt=0)
    phase_priority: list[Phase] = Field(default_factory=lambda: list(DEFAULT_PHASE_PRIORITY), min_length=1)
    source_timezone: str = Field(default=DEFAULT_SOURCE_TIMEZONE)
    identifier_delimiter: str = Field(default=":", min_length=1)
    max_report_errors: int = Field(default=DEFAULT_MAX_REPORT_ERRORS, ge=0)
    sheet_mappings: list[SheetMapping] = Field(default_factory=default_sheet_mappings)
    identifier_corrections: list[IdentifierCorrection] = Field(default_factory=list)

    @field_validator("source_timezone")
    @classmethod
    def validate_timezone(cls, v: str) -> str:
        try:
            ZoneInfo(v)
        except (ZoneInfoNotFoundError, ValueError):
            raise ValueError(f"Unknown time zone: {v}")
        return v

    @field_validator("phase_priority")
    @classmethod
    def validate_phase_priority(cls, v: list[Phase]) -> list[Phase]:
        if len(set(v)) != len(v):
            raise ValueError("phase_priority must not repeat phases")
        return v

    @model_validator(mode="after")
    def check_unique_sheet_names(self) -> "ReconciliationConfig":
        seen: dict[str, str] = {}
        for mapping in self.sheet_mappings:
            for name in mapping.sheet_names:
                if name in seen:
                    raise ValueError(f"Sheet '{name}' is mapped twice ({seen[name]} and {mapping.sheet_type})")
                seen[name] = mapping.sheet_type
        return self

    @model_validator(mode="after")
    def check_unique_corrections(self) -> "ReconciliationConfig":
        keys = [(c.wrong_identifier, c.date) for c in self.identifier_corrections]
        if len(set(keys)) != len(keys):
            raise ValueError("identifier_corrections must not repeat a (wrong_identifier, date) pair")
        return self

    def corrected_identifier(self, key: str, day: Optional[date_type]) -> Optional[str]:
        """Replacement identifier for ``key`` on calendar date ``day``, if one is configured."""
        if day is None:
            return None
        for correction in self.identifier_corrections:
            if correction.wrong_identifier == key and correction.date == day:
                return correction.correct_identifier
        return None

    @property
    def tz(self) -> ZoneInfo:
        return ZoneInfo(self.source_timezone)

    def mapping_for_sheet(self, sheet_name: str) -> Optional[SheetMapping]:
        for mapping in self.sheet_mappings:
            if sheet_name in mapping.sheet_names:
                return mapping
        return None


def load_sheet_mappings(path: str) -> list[SheetMapping]:
    """Load sheet mappings from a JSON file.

    The file holds either a list of mappings or an object with a
    ``sheet_mappings`` list.

    Raises:
        ConfigurationError: If the file is missing or invalid
    """
    mapping_file = Path(path)
    if not mapping_file.exists():
        raise ConfigurationError(f"Mapping file not found: {path}")
    try:
        with open(mapping_file, 'r', encoding='utf-8') as f:
            data = json.load(f)
    except json.JSONDecodeError as e:
        raise ConfigurationError(f"Invalid JSON in mapping file: {str(e)}")

    if isinstance(data, dict):
        data = data.get("sheet_mappings", [])
    if not isinstance(data, list) or not data:
        raise ConfigurationError(f"Mapping file defines no sheet mappings: {path}")
    try:
        return [SheetMapping(**item) for item in data]
    except (ValidationError, TypeError) as e:
        raise ConfigurationError(f"Invalid sheet mapping in {path}: {str(e)}")


# ============================================================================
# Configuration manager
# ============================================================================

class ConfigManager:
    """Unified access to database and reconciliation configuration.

    Example Usage:
        ```python
        config = ConfigManager.from_environment()
        db_config = config.get_database_config()
        run_config = config.get_reconciliation_config()

        config = ConfigManager.from_file("reconcile.json")
        ```
    """

    def __init__(self, config_data: Dict[str, Any]):
        self._config_data = config_data
        self._database_config: Optional[DatabaseConfig] = None
        self._reconciliation_config: Optional[ReconciliationConfig] = None

    @classmethod
    def from_environment(cls) -> 'ConfigManager':
        """Load configuration from environment variables.

        Environment Variables:
            - RC_DB_TYPE: Store type (duckdb, memory)
            - RC_DB_PATH: Path to the DuckDB file
            - RC_MATCH_WINDOW_DAYS: Case date-match window in days
            - RC_DUPLICATE_THRESHOLD: Duplicate similarity threshold
            - RC_MAX_CASE_DURATION_MINUTES: Plausibility ceiling
            - RC_SOURCE_TIMEZONE: Time zone of the source workbooks
            - RC_MAX_REPORT_ERRORS: Cap on stored report issues
            - RC_IDENTIFIER_CORRECTIONS: JSON file of verified identifier corrections

        A .env file in the working directory is loaded first.
        """
        load_env_file()

        reconciliation = {
            "match_window_days": os.getenv("RC_MATCH_WINDOW_DAYS"),
            "duplicate_threshold": os.getenv("RC_DUPLICATE_THRESHOLD"),
            "max_case_duration_minutes": os.getenv("RC_MAX_CASE_DURATION_MINUTES"),
            "source_timezone": os.getenv("RC_SOURCE_TIMEZONE"),
            "max_report_errors": os.getenv("RC_MAX_REPORT_ERRORS"),
        }
        config_data = {
            "database": {
                "db_type": os.getenv("RC_DB_TYPE", "duckdb"),
                "db_path": os.getenv("RC_DB_PATH"),
            },
            "reconciliation": {k: v for k, v in reconciliation.items() if v is not None},
            "identifier_corrections_path": os.getenv("RC_IDENTIFIER_CORRECTIONS"),
        }
        return cls(config_data)

    @classmethod
    def from_file(cls, config_path: str) -> 'ConfigManager':
        """Load configuration from a JSON file.

        Raises:
            FileNotFoundError: If config file doesn't exist
            ValueError: If config file is invalid
        """
        config_file = Path(config_path)
        if not config_file.exists():
            raise FileNotFoundError(f"Configuration file not found: {config_path}")

        try:
            with open(config_file, 'r', encoding='utf-8') as f:
                config_data = json.load(f)
        except json.JSONDecodeError as e:
            raise ValueError(f"Invalid JSON in configuration file: {str(e)}")

        return cls(config_data)

    def get_database_config(self) -> DatabaseConfig:
        """Get database configuration.

        Raises:
            ConfigurationError: If the configuration is invalid
        """
        if self._database_config is None:
            try:
                self._database_config = DatabaseConfig(**self._config_data.get("database", {}))
            except ValidationError as e:
                raise ConfigurationError(f"Invalid database configuration: {str(e)}")
        return self._database_config

    def get_reconciliation_config(self) -> ReconciliationConfig:
        """Get reconciliation configuration.

        Raises:
            ConfigurationError: If the configuration is invalid
        """
        if self._reconciliation_config is None:
            values = dict(self._config_data.get("reconciliation", {}))
            corrections_path = self._config_data.get("identifier_corrections_path")
            if corrections_path:
                values["identifier_corrections"] = load_identifier_corrections(corrections_path)
            try:
                self._reconciliation_config = ReconciliationConfig(**values)
            except ValidationError as e:
                raise ConfigurationError(f"Invalid reconciliation configuration: {str(e)}")
        return self._reconciliation_config

    def get(self, key: str, default: Any = None) -> Any:
        """Get configuration value by dot-separated key (e.g. "database.db_path")."""
        value = self._config_data
        for k in key.split("."):
            if isinstance(value, dict):
                value = value.get(k)
            else:
                return default
        return value if value is not None else default


def get_database_config() -> DatabaseConfig:
    """Database configuration from the environment (defaults to DuckDB in memory)."""
    return ConfigManager.from_environment().get_database_config()
