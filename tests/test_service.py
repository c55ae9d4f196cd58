import httpx
import pytest
import respx

from ehr_sync.config import EHRSettings, Settings
from ehr_sync.errors import AuthenticationError
from ehr_sync.sync.service import EHRSyncService

BASE_URL = "https://ehr.example.com/fhir"
TOKEN_URL = "https://ehr.example.com/oauth2/token"
IDENTIFIER_BASE = "https://external-ehr.com/fhir"
PATIENT_SYSTEM = f"{IDENTIFIER_BASE}/patient-id"


def _settings(**overrides) -> Settings:
    values = {
        "fhir_base_url": BASE_URL,
        "client_id": "sync-client",
        "client_secret": "shh",
        "token_endpoint": TOKEN_URL,
        "identifier_system": IDENTIFIER_BASE,
    }
    values.update(overrides)
    return Settings(ehr=EHRSettings(**values))


@pytest.mark.asyncio
async def test_unconfigured_service_reports_a_note(store):
    service = EHRSyncService(_settings(client_secret=None), store, http=httpx.AsyncClient())

    result = await service.sync_single_patient("local-1")

    assert result.success is True
    assert result.note == "EHR sync not configured"
    with pytest.raises(AuthenticationError):
        await service.credentials()


@pytest.mark.asyncio
async def test_patient_without_ehr_identifier_is_not_synced(store):
    patient = await store.create({
        "resourceType": "Patient",
        "identifier": [{"system": "urn:local:chart", "value": "c-9"}],
    })
    service = EHRSyncService(_settings(), store, http=httpx.AsyncClient())

    result = await service.sync_single_patient(patient["id"])

    assert result.success is True
    assert result.ehr_patient_id is None
    assert result.note == "Patient has no EHR identifier"


@pytest.mark.asyncio
async def test_find_ehr_patient_id_accepts_sync_base_and_mrn_systems(store):
    service = EHRSyncService(_settings(), store, http=httpx.AsyncClient())
    by_sync = await store.create({"resourceType": "Patient", "identifier": [{"system": PATIENT_SYSTEM, "value": "e1"}]})
    by_base = await store.create({"resourceType": "Patient", "identifier": [{"system": IDENTIFIER_BASE, "value": "e2"}]})
    by_mrn = await store.create({
        "resourceType": "Patient",
        "identifier": [
            {"system": "urn:local:chart", "value": "ignored"},
            {"system": "urn:oid:hospital:MRN", "value": "e3"},
        ],
    })

    assert await service.find_ehr_patient_id(by_sync["id"]) == "e1"
    assert await service.find_ehr_patient_id(by_base["id"]) == "e2"
    assert await service.find_ehr_patient_id(by_mrn["id"]) == "e3"
    assert await service.find_ehr_patient_id("missing") is None


@pytest.mark.asyncio
@respx.mock
async def test_single_patient_sync_attaches_records_to_local_patient(store, bundle):
    local = await store.create({
        "resourceType": "Patient",
        "identifier": [{"system": PATIENT_SYSTEM, "value": "ehr-p1"}],
    })
    respx.post(TOKEN_URL).mock(
        return_value=httpx.Response(200, json={"access_token": "tok", "expires_in": 3600})
    )
    respx.get(f"{BASE_URL}/Patient/ehr-p1").mock(
        return_value=httpx.Response(200, json={"resourceType": "Patient", "id": "ehr-p1"})
    )
    respx.get(f"{BASE_URL}/Patient/ehr-p1/$everything").mock(
        return_value=httpx.Response(200, json=bundle([
            {"resourceType": "Patient", "id": "ehr-p1"},
            {
                "resourceType": "Observation",
                "id": "obs-1",
                "subject": {"reference": "Patient/ehr-p1"},
                "code": {"coding": [{"system": "http://loinc.org", "code": "8867-4"}]},
                "effectiveDateTime": "2024-02-01T10:00:00Z",
            },
        ]))
    )
    service = EHRSyncService(_settings(), store, http=httpx.AsyncClient())

    result = await service.sync_single_patient(local["id"])

    assert result.success is True
    assert result.ehr_patient_id == "ehr-p1"
    assert result.resources_updated == 1
    assert result.resources_by_type == {"Observation": 1}
    assert store.count("Patient") == 1
    assert store.all("Observation")[0]["subject"]["reference"] == f"Patient/{local['id']}"


@pytest.mark.asyncio
@respx.mock
async def test_single_patient_sync_reports_token_failure(store):
    local = await store.create({
        "resourceType": "Patient",
        "identifier": [{"system": PATIENT_SYSTEM, "value": "ehr-p1"}],
    })
    respx.post(TOKEN_URL).mock(return_value=httpx.Response(401, text="invalid_client"))
    service = EHRSyncService(_settings(), store, http=httpx.AsyncClient())

    result = await service.sync_single_patient(local["id"])

    assert result.success is False
    assert "401" in result.error
    assert store.count("Observation") == 0
