import httpx
import pytest

from ehr_sync.fhir.client import EHRFHIRClient
from ehr_sync.store.memory import InMemoryRecordStore

BASE_URL = "https://ehr.example.com/fhir"
TOKEN_URL = "https://ehr.example.com/oauth2/token"
IDENTIFIER_BASE = "https://external-ehr.com/fhir"


class StaticTokens:
    """Credential provider returning a fixed token."""

    def __init__(self, token: str = "test-token"):
        self.token = token
        self.calls = 0

    async def get_access_token(self) -> str:
        self.calls += 1
        return self.token


def make_bundle(resources: list[dict], next_url: str | None = None) -> dict:
    bundle = {
        "resourceType": "Bundle",
        "type": "searchset",
        "total": len(resources),
        "entry": [{"resource": r} for r in resources],
    }
    if next_url:
        bundle["link"] = [{"relation": "next", "url": next_url}]
    return bundle


@pytest.fixture
def tokens():
    return StaticTokens()


@pytest.fixture
def fhir(tokens):
    return EHRFHIRClient(BASE_URL, tokens, httpx.AsyncClient())


@pytest.fixture
def store():
    return InMemoryRecordStore()


@pytest.fixture
def bundle():
    return make_bundle
