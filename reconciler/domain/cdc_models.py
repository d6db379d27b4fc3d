"""Change Data Capture (CDC) Models.

Models for tracking the destructive or corrective changes the reconciliation
passes make to persisted records: merged-away duplicate cases, inferred or
corrected case ends, and newly flagged time-series records.

Security Impact:
    - Change events may reference patient identifiers (PII)
    - Change logs are immutable (append-only) for audit

Architecture:
    - Pure domain models with zero infrastructure dependencies
    - Follows Hexagonal Architecture: Domain Core is isolated from Adapters
"""

import json
import uuid
from datetime import date, datetime, timezone
from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, Field


class ChangeType(str, Enum):
    UPDATE = "UPDATE"
    DELETE = "DELETE"
    FLAG = "FLAG"


class ChangeEvent(BaseModel):
    """A single field-level change made by a reconciliation pass.

    Parameters:
        table_name: Name of the table (cases, time_series, ...)
        record_id: Surrogate key of the changed record
        field_name: Name of the field that changed
        old_value: Previous value
        new_value: New value (for a merge deletion: the surviving case id)
        change_type: UPDATE, DELETE or FLAG
        changed_at: Timestamp when change occurred
        run_id: ID of the reconciliation run that caused the change
        stage: Pipeline stage that made the change
        reason: Short human-readable justification
    """

    table_name: str = Field(..., description="Name of the table")
    record_id: str = Field(..., description="Surrogate key of the record")
    field_name: str = Field(..., description="Name of the field that changed")
    old_value: Optional[Any] = Field(None, description="Previous value (before change)")
    new_value: Optional[Any] = Field(None, description="New value (after change)")
    change_type: ChangeType = Field(..., description="Type of change")
    changed_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    run_id: Optional[str] = Field(None, description="ID of the reconciliation run")
    stage: Optional[str] = Field(None, description="Pipeline stage")
    reason: Optional[str] = Field(None, description="Why the change was made")

    def to_audit_dict(self) -> dict:
        """Serialize for the audit log.

        Returns:
            Dictionary with JSON-safe values
        """
        return {
            'change_id': str(uuid.uuid4()),
            'table_name': self.table_name,
            'record_id': self.record_id,
            'field_name': self.field_name,
            'old_value': self._serialize_value(self.old_value),
            'new_value': self._serialize_value(self.new_value),
            'change_type': self.change_type.value,
            'changed_at': self.changed_at.isoformat(),
            'run_id': self.run_id,
            'stage': self.stage,
            'reason': self.reason,
        }

    def _serialize_value(self, value: Any) -> Optional[str]:
        if value is None:
            return None
        if isinstance(value, (datetime, date)):
            return value.isoformat()
        if isinstance(value, (list, dict)):
            try:
                return json.dumps(value, sort_keys=True, default=str)
            except (TypeError, ValueError):
                return str(value)
        return str(value)
