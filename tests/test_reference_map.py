from ehr_sync.reconciliation.reference_map import ReferenceMap, iter_references, translate_references


def _map():
    reference_map = ReferenceMap()
    reference_map.add("Patient", "ehr-p1", "local-p1")
    reference_map.add("Practitioner", "ehr-dr", "local-dr")
    reference_map.add("Encounter", "ehr-e1", "local-e1")
    return reference_map


def test_add_is_append_only():
    reference_map = ReferenceMap()
    reference_map.add("Patient", "ehr-p1", "local-p1")
    reference_map.add("Patient", "ehr-p1", "local-other")

    assert reference_map.get("Patient/ehr-p1") == "Patient/local-p1"
    assert len(reference_map) == 1


def test_absolute_references_resolve_by_trailing_type_and_id():
    reference_map = _map()

    assert reference_map.get("https://ehr.example.com/fhir/Patient/ehr-p1") == "Patient/local-p1"
    assert "Patient/ehr-p1" in reference_map
    assert "Patient/unknown" not in reference_map


def test_translates_direct_and_nested_reference_paths():
    encounter = {
        "resourceType": "Encounter",
        "id": "ehr-e9",
        "subject": {"reference": "Patient/ehr-p1"},
        "participant": [
            {"individual": {"reference": "Practitioner/ehr-dr"}},
            {"individual": {"reference": "Practitioner/not-synced"}},
        ],
    }

    translated = translate_references(encounter, _map())

    assert translated["subject"]["reference"] == "Patient/local-p1"
    assert translated["participant"][0]["individual"]["reference"] == "Practitioner/local-dr"
    assert translated["participant"][1]["individual"]["reference"] == "Practitioner/not-synced"
    # The input record is left untouched
    assert encounter["subject"]["reference"] == "Patient/ehr-p1"


def test_translates_array_and_context_paths():
    document = {
        "resourceType": "DocumentReference",
        "subject": {"reference": "Patient/ehr-p1"},
        "author": [{"reference": "Practitioner/ehr-dr"}],
        "context": {"encounter": [{"reference": "Encounter/ehr-e1"}]},
    }

    translated = translate_references(document, _map())

    assert translated["author"][0]["reference"] == "Practitioner/local-dr"
    assert translated["context"]["encounter"][0]["reference"] == "Encounter/local-e1"


def test_performer_actor_and_plain_performer_are_both_handled():
    procedure = {
        "resourceType": "Procedure",
        "performer": [{"actor": {"reference": "Practitioner/ehr-dr"}}],
    }
    observation = {
        "resourceType": "Observation",
        "performer": [{"reference": "Practitioner/ehr-dr"}],
    }

    assert translate_references(procedure, _map())["performer"][0]["actor"]["reference"] == "Practitioner/local-dr"
    assert translate_references(observation, _map())["performer"][0]["reference"] == "Practitioner/local-dr"


def test_iter_references_ignores_unlisted_fields():
    record = {
        "resourceType": "Observation",
        "subject": {"reference": "Patient/ehr-p1"},
        "note": [{"authorReference": {"reference": "Practitioner/ehr-dr"}}],
    }

    assert [r["reference"] for r in iter_references(record)] == ["Patient/ehr-p1"]


def test_items_lists_local_forms():
    assert dict(_map().items()) == {
        "Patient/ehr-p1": "Patient/local-p1",
        "Practitioner/ehr-dr": "Practitioner/local-dr",
        "Encounter/ehr-e1": "Encounter/local-e1",
    }
