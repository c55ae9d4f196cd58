from datetime import datetime, timezone

import httpx
import pytest
import respx

from ehr_sync.acquisition.group_search import GroupSearchStrategy

BASE_URL = "https://ehr.example.com/fhir"


def _group(*patient_ids):
    return {
        "resourceType": "Group",
        "id": "grp-1",
        "member": [{"entity": {"reference": f"Patient/{pid}"}} for pid in patient_ids],
    }


@pytest.mark.asyncio
@respx.mock
async def test_group_members_are_searched_per_type(fhir, bundle):
    searches = []

    def observations(request):
        searches.append(("Observation", dict(request.url.params)))
        subject = request.url.params["subject"]
        return httpx.Response(
            200,
            json=bundle([{"resourceType": "Observation", "id": f"obs-{subject.split('/')[1]}"}]),
        )

    def allergies(request):
        searches.append(("AllergyIntolerance", dict(request.url.params)))
        return httpx.Response(200, json=bundle([]))

    respx.get(f"{BASE_URL}/Group/grp-1").mock(return_value=httpx.Response(200, json=_group("p1", "p2")))
    respx.get(f"{BASE_URL}/Patient/p1").mock(
        return_value=httpx.Response(200, json={"resourceType": "Patient", "id": "p1"})
    )
    respx.get(f"{BASE_URL}/Patient/p2").mock(
        return_value=httpx.Response(200, json={"resourceType": "Patient", "id": "p2"})
    )
    respx.get(f"{BASE_URL}/Observation").mock(side_effect=observations)
    respx.get(f"{BASE_URL}/AllergyIntolerance").mock(side_effect=allergies)

    strategy = GroupSearchStrategy(fhir, "grp-1", ["Patient", "Observation", "AllergyIntolerance"])
    since = datetime(2024, 1, 1, tzinfo=timezone.utc)

    result = await strategy.acquire(since)

    assert result.strategy == "group_search"
    assert result.counts() == {"Patient": 2, "Observation": 2}
    assert result.metadata["patient_count"] == 2
    assert result.transaction_time is not None

    observation_params = [params for kind, params in searches if kind == "Observation"]
    assert observation_params[0] == {
        "subject": "Patient/p1",
        "_count": "100",
        "_lastUpdated": "ge2024-01-01T00:00:00Z",
    }
    allergy_params = [params for kind, params in searches if kind == "AllergyIntolerance"]
    assert allergy_params[0]["patient"] == "Patient/p1"
    assert "subject" not in allergy_params[0]


@pytest.mark.asyncio
@respx.mock
async def test_empty_group_falls_back_to_capped_patient_search(fhir, bundle):
    def patients(request):
        page = int(request.url.params.get("page", "1"))
        batch = [{"resourceType": "Patient", "id": f"p{page}-{i}"} for i in range(3)]
        return httpx.Response(200, json=bundle(batch, next_url=f"{BASE_URL}/Patient?page={page + 1}"))

    respx.get(f"{BASE_URL}/Group/grp-1").mock(return_value=httpx.Response(200, json=_group()))
    route = respx.get(f"{BASE_URL}/Patient").mock(side_effect=patients)

    strategy = GroupSearchStrategy(fhir, "grp-1", ["Observation"], max_group_members=5)

    patient_ids = await strategy.get_group_member_ids()

    assert patient_ids == ["p1-0", "p1-1", "p1-2", "p2-0", "p2-1"]
    assert route.call_count == 2


@pytest.mark.asyncio
@respx.mock
async def test_inaccessible_group_falls_back_to_patient_search(fhir, bundle):
    respx.get(f"{BASE_URL}/Group/grp-1").mock(return_value=httpx.Response(403))
    respx.get(f"{BASE_URL}/Patient").mock(
        return_value=httpx.Response(200, json=bundle([{"resourceType": "Patient", "id": "p9"}]))
    )

    strategy = GroupSearchStrategy(fhir, "grp-1", ["Observation"])

    assert await strategy.get_group_member_ids() == ["p9"]


@pytest.mark.asyncio
@respx.mock
async def test_patient_search_terminates_against_endless_paging(fhir, bundle):
    # Every page repeats the same patient and links to another page
    respx.get(f"{BASE_URL}/Patient").mock(
        return_value=httpx.Response(
            200,
            json=bundle([{"resourceType": "Patient", "id": "same"}], next_url=f"{BASE_URL}/Patient?page=next"),
        )
    )

    strategy = GroupSearchStrategy(fhir, "grp-1", ["Observation"], max_group_members=200)

    assert await strategy.search_all_patients() == ["same"]


@pytest.mark.asyncio
@respx.mock
async def test_failing_member_does_not_abort_the_batch(fhir, bundle):
    def observations(request):
        if request.url.params["subject"] == "Patient/bad":
            return httpx.Response(500)
        return httpx.Response(200, json=bundle([{"resourceType": "Observation", "id": "o-good"}]))

    respx.get(f"{BASE_URL}/Group/grp-1").mock(return_value=httpx.Response(200, json=_group("bad", "good")))
    respx.get(f"{BASE_URL}/Patient/bad").mock(return_value=httpx.Response(500))
    respx.get(f"{BASE_URL}/Patient/good").mock(
        return_value=httpx.Response(200, json={"resourceType": "Patient", "id": "good"})
    )
    respx.get(f"{BASE_URL}/Observation").mock(side_effect=observations)

    result = await GroupSearchStrategy(fhir, "grp-1", ["Patient", "Observation"]).acquire()

    assert [r["id"] for r in result.records["Patient"]] == ["good"]
    assert [r["id"] for r in result.records["Observation"]] == ["o-good"]


@pytest.mark.asyncio
@respx.mock
async def test_max_patients_limits_members_processed(fhir, bundle):
    respx.get(f"{BASE_URL}/Group/grp-1").mock(return_value=httpx.Response(200, json=_group("p1", "p2", "p3")))
    respx.get(f"{BASE_URL}/Patient/p1").mock(
        return_value=httpx.Response(200, json={"resourceType": "Patient", "id": "p1"})
    )

    result = await GroupSearchStrategy(fhir, "grp-1", ["Patient"], max_patients=1).acquire()

    assert result.metadata["patient_count"] == 1
    assert result.counts() == {"Patient": 1}


@pytest.mark.asyncio
@respx.mock
async def test_malformed_member_bundle_does_not_lose_other_members(fhir, bundle):
    def observations(request):
        if request.url.params["subject"] == "Patient/a":
            return httpx.Response(200, json={"resourceType": "Bundle", "total": None, "entry": 5})
        return httpx.Response(200, json=bundle([{"resourceType": "Observation", "id": "obs-b"}]))

    respx.get(f"{BASE_URL}/Group/grp-1").mock(return_value=httpx.Response(200, json=_group("a", "b")))
    respx.get(f"{BASE_URL}/Patient/a").mock(return_value=httpx.Response(404))
    respx.get(f"{BASE_URL}/Patient/b").mock(return_value=httpx.Response(404))
    respx.get(f"{BASE_URL}/Observation").mock(side_effect=observations)

    result = await GroupSearchStrategy(fhir, "grp-1", ["Observation"]).acquire()

    assert [r["id"] for r in result.records["Observation"]] == ["obs-b"]
    assert result.metadata["failed_patients"] == 0
