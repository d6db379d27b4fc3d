"""Source Row Abstraction.

A uniform, read-only view over tabular sources: a named sheet with a header row
and data rows, and a typed field accessor over each row driven by an explicit
field manifest per sheet type.

The manifest is validated once per sheet (``SheetView.validate``) so per-row
code never has to check whether a column exists, only whether a value does.

Architecture:
    - Pure domain code; readers in ``reconciler.adapters.sources`` build SheetViews
    - Column names are matched exactly against the manifest
    - Rows carry provenance (source, sheet, row number) for error reporting
"""

import math
from dataclasses import dataclass, field
from typing import Any, Iterator, Literal, Optional

from pydantic import BaseModel, Field, model_validator

from reconciler.domain.models import Phase
from reconciler.domain.ports import ConfigurationError, RowValidationError

SheetType = Literal["patients", "cases", "evaluations", "postop", "timeseries"]

# Header row is spreadsheet row 1, so the first data row is row 2.
FIRST_DATA_ROW = 2


class FieldSpec(BaseModel):
    """How one logical field is read from a sheet.

    Parameters:
        column: Exact header text of the column
        required: Column must exist in the sheet (fatal configuration error otherwise)
        value_required: Row is skipped when the cell is empty
    """

    column: str = Field(..., description="Exact column header")
    required: bool = Field(default=False, description="Column must be present")
    value_required: bool = Field(default=False, description="Cell must be non-empty")


class SheetMapping(BaseModel):
    """Field manifest for one sheet type.

    Parameters:
        sheet_type: Logical record type the sheet feeds
        sheet_names: Sheet names this mapping applies to (exact match)
        phase: Phase tag for time-series sheets
        required_sheet: At least one source must contain one of ``sheet_names``
        case_policy: How rows find their case. 'create' resolves within the
            date window or creates a case; 'attach' resolves and otherwise
            attaches to the patient's nearest case. Defaults to 'create' for
            case rosters and 'attach' for every other sheet type; rosters
            cannot attach.
        fields: Logical field -> column spec
        observation_columns: Observation name -> column (time-series sheets)
        fluid_columns: Fluid kind -> column (time-series sheets)
        team_columns: Team role -> column (case sheets)
    """

    sheet_type: SheetType
    sheet_names: list[str] = Field(..., min_length=1)
    phase: Optional[Phase] = None
    required_sheet: bool = False
    case_policy: Optional[Literal["create", "attach"]] = None
    fields: dict[str, FieldSpec] = Field(default_factory=dict)
    observation_columns: dict[str, str] = Field(default_factory=dict)
    fluid_columns: dict[str, str] = Field(default_factory=dict)
    team_columns: dict[str, str] = Field(default_factory=dict)

    @model_validator(mode="after")
    def check_manifest(self) -> "SheetMapping":
        if "identifier" not in self.fields:
            raise ValueError(f"Mapping for {self.sheet_type} must define an 'identifier' field")
        if self.sheet_type == "timeseries" and self.phase is None:
            raise ValueError(f"Time-series mapping {self.sheet_names} must set a phase")
        if self.case_policy is None:
            self.case_policy = "create" if self.sheet_type == "cases" else "attach"
        elif self.sheet_type == "cases" and self.case_policy == "attach":
            raise ValueError(f"Case roster mapping {self.sheet_names} must use case_policy 'create'")
        return self

    def required_columns(self) -> list[str]:
        return [spec.column for spec in self.fields.values() if spec.required]


def is_blank(value: Any) -> bool:
    """True for None, NaN/NaT and whitespace-only strings."""
    if value is None:
        return True
    if isinstance(value, float) and math.isnan(value):
        return True
    if isinstance(value, str) and not value.strip():
        return True
    # pandas NaT and friends compare unequal to themselves
    try:
        return bool(value != value)
    except (TypeError, ValueError):
        return False


@dataclass(frozen=True)
class SourceRow:
    """One row of one sheet, read through a SheetMapping."""

    source: str
    sheet: str
    row_number: int
    values: dict[str, Any]
    mapping: SheetMapping

    @property
    def provenance(self) -> str:
        return f"{self.source}:{self.sheet}:{self.row_number}"

    def raw(self, column: str) -> Any:
        value = self.values.get(column)
        return None if is_blank(value) else value

    def get(self, field_name: str, default: Any = None) -> Any:
        """Value of a logical field, or ``default`` when blank or unmapped."""
        spec = self.mapping.fields.get(field_name)
        if spec is None:
            return default
        value = self.raw(spec.column)
        return default if value is None else value

    def require(self, field_name: str) -> Any:
        """Value of a logical field.

        Raises:
            RowValidationError: If the cell is empty
        """
        value = self.get(field_name)
        if value is None:
            spec = self.mapping.fields.get(field_name)
            column = spec.column if spec else field_name
            raise RowValidationError(
                f"Missing value for '{field_name}' (column '{column}')",
                source=self.provenance,
                field=field_name,
            )
        return value

    def missing_required_values(self) -> list[str]:
        return [
            name for name, spec in self.mapping.fields.items()
            if spec.value_required and self.raw(spec.column) is None
        ]


@dataclass
class SheetView:
    """A named sheet: header plus data rows as column -> raw value mappings."""

    source: str
    name: str
    headers: list[str]
    rows: list[dict[str, Any]] = field(default_factory=list)

    def __len__(self) -> int:
        return len(self.rows)

    def missing_columns(self, mapping: SheetMapping) -> list[str]:
        present = set(self.headers)
        return [column for column in mapping.required_columns() if column not in present]

    def validate(self, mapping: SheetMapping) -> None:
        """Check the manifest against the header row.

        Raises:
            ConfigurationError: If a required column is absent
        """
        missing = self.missing_columns(mapping)
        if missing:
            raise ConfigurationError(
                f"Sheet '{self.name}' in {self.source} is missing required columns: {missing}",
                sheet=self.name,
                details={"source": self.source, "missing_columns": missing, "sheet_type": mapping.sheet_type},
            )

    def iter_rows(self, mapping: SheetMapping) -> Iterator[SourceRow]:
        for index, values in enumerate(self.rows):
            yield SourceRow(
                source=self.source,
                sheet=self.name,
                row_number=index + FIRST_DATA_ROW,
                values=values,
                mapping=mapping,
            )
