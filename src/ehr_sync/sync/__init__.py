"""
Sync runs: watermark persistence, the sync service and its scheduler.

Import from the submodules (ehr_sync.sync.service, ehr_sync.sync.scheduler,
ehr_sync.sync.watermark); the acquisition orchestrator depends on the
watermark module, so this package does not import the service eagerly.
"""
