"""Domain Services.

This package contains the reconciliation services. They implement the
matching, merging, inference and flagging rules without infrastructure
dependencies and reach the store only through StoragePort.
"""

from reconciler.domain.services.anomaly_flagger import AnomalyFlagger, FlagResult, flag_suspicious
from reconciler.domain.services.boundary_inference import (
    BoundaryInference,
    BoundaryInferenceService,
    BoundaryTier,
    infer_case_end,
    validate_explicit_end,
)
from reconciler.domain.services.duplicate_merger import (
    DuplicateMerger,
    GroupOutcome,
    MatchCandidate,
    find_duplicate_groups,
    score,
)
from reconciler.domain.services.entity_resolver import CaseResolution, EntityResolver, PatientResolution

__all__ = [
    'AnomalyFlagger',
    'BoundaryInference',
    'BoundaryInferenceService',
    'BoundaryTier',
    'CaseResolution',
    'DuplicateMerger',
    'EntityResolver',
    'FlagResult',
    'GroupOutcome',
    'MatchCandidate',
    'PatientResolution',
    'find_duplicate_groups',
    'flag_suspicious',
    'infer_case_end',
    'score',
    'validate_explicit_end',
]
