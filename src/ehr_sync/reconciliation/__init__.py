"""Reconciliation of acquired EHR records into the local store."""

from ehr_sync.reconciliation.engine import ReconciliationEngine, ReconciliationStats, TypeStats
from ehr_sync.reconciliation.identity import (
    SEMANTIC_RULES,
    IdentityResolver,
    Resolution,
    ensure_sync_identifier,
    source_identifier,
)
from ehr_sync.reconciliation.reference_map import (
    COMMON_REFERENCE_PATHS,
    REFERENCE_PATHS,
    ReferenceMap,
    translate_references,
)

__all__ = [
    "ReconciliationEngine",
    "ReconciliationStats",
    "TypeStats",
    "IdentityResolver",
    "Resolution",
    "SEMANTIC_RULES",
    "source_identifier",
    "ensure_sync_identifier",
    "ReferenceMap",
    "REFERENCE_PATHS",
    "COMMON_REFERENCE_PATHS",
    "translate_references",
]
