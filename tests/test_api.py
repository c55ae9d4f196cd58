from fastapi.testclient import TestClient

from ehr_sync.config import EHRSettings, LoggingSettings, SchedulerSettings, Settings
from ehr_sync.main import create_app
from ehr_sync.store.memory import InMemoryRecordStore


def _app(enabled=False, configured=False):
    settings = Settings(
        ehr=EHRSettings(
            fhir_base_url="https://ehr.example.com/fhir" if configured else "",
            client_id="sync-client" if configured else "",
        ),
        scheduler=SchedulerSettings(enabled=enabled),
        logging=LoggingSettings(json_output=False),
    )
    return create_app(settings, store=InMemoryRecordStore())


def test_health_reports_scheduler_state():
    with TestClient(_app()) as client:
        resp = client.get("/integrations/ehr-sync/health")

    assert resp.status_code == 200
    data = resp.json()
    assert data["enabled"] is False
    assert data["configured"] is False
    assert data["is_running"] is False
    assert data["last_run"] is None


def test_manual_sync_rejected_when_disabled():
    with TestClient(_app()) as client:
        resp = client.post("/integrations/ehr-sync/sync")

    assert resp.status_code == 400


def test_manual_sync_failure_is_a_bad_gateway():
    # Enabled but without credentials: the run fails before contacting the EHR
    with TestClient(_app(enabled=True)) as client:
        resp = client.post("/integrations/ehr-sync/sync")
        health = client.get("/integrations/ehr-sync/health").json()

    assert resp.status_code == 502
    assert "not configured" in resp.json()["detail"]
    assert health["healthy"] is False


def test_patient_sync_when_unconfigured():
    with TestClient(_app()) as client:
        resp = client.post("/integrations/ehr-sync/patients/local-1/sync")

    assert resp.status_code == 200
    data = resp.json()
    assert data["success"] is True
    assert data["patient_id"] == "local-1"
    assert data["note"] == "EHR sync not configured"


def test_patient_sync_rejects_bad_since():
    with TestClient(_app()) as client:
        resp = client.post("/integrations/ehr-sync/patients/local-1/sync?since=yesterday")

    assert resp.status_code == 422
