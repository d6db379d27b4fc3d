"""Domain layer for the reconciliation engine.

This module contains the canonical schemas, the ports adapters implement,
and the reconciliation services. All domain models are pure Python with no
external dependencies beyond Pydantic.
"""

from .models import (
    Case,
    CaseChildren,
    EndSource,
    Evaluation,
    FluidsRecord,
    Patient,
    Phase,
    PostopOutcome,
    TeamAssignment,
    TimeSeriesRecord,
)

__all__ = [
    "Case",
    "CaseChildren",
    "EndSource",
    "Evaluation",
    "FluidsRecord",
    "Patient",
    "Phase",
    "PostopOutcome",
    "TeamAssignment",
    "TimeSeriesRecord",
]
