"""
EHR data acquisition strategies.

Bulk export is preferred; group search and single patient search use
standard FHIR read/search when export is unavailable or too slow.
"""

from ehr_sync.acquisition.base import AcquisitionResult, AcquisitionStrategy, group_by_type
from ehr_sync.acquisition.bulk_export import (
    BulkExportClient,
    BulkExportStrategy,
    ExportJob,
    ExportState,
    NDJSONBatch,
    OutputFile,
    parse_ndjson,
)
from ehr_sync.acquisition.group_search import GroupSearchStrategy
from ehr_sync.acquisition.orchestrator import AcquisitionOrchestrator, SyncRunResult
from ehr_sync.acquisition.single_patient import SinglePatientStrategy

__all__ = [
    "AcquisitionResult",
    "AcquisitionStrategy",
    "group_by_type",
    "BulkExportClient",
    "BulkExportStrategy",
    "ExportJob",
    "ExportState",
    "NDJSONBatch",
    "OutputFile",
    "parse_ndjson",
    "GroupSearchStrategy",
    "SinglePatientStrategy",
    "AcquisitionOrchestrator",
    "SyncRunResult",
]
