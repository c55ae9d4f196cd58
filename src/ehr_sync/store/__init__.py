"""Local record stores."""

from ehr_sync.store.base import RecordStore, UpsertOutcome
from ehr_sync.store.fhir_server import FHIRServerRecordStore
from ehr_sync.store.memory import InMemoryRecordStore

__all__ = [
    "RecordStore",
    "UpsertOutcome",
    "InMemoryRecordStore",
    "FHIRServerRecordStore",
]
