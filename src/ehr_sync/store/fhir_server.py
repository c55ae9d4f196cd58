"""
FHIR server record store.

Writes reconciled records to a local FHIR R4 REST server.
"""

from typing import Any

import httpx
import structlog

from ehr_sync.constants import FHIR_JSON
from ehr_sync.errors import StoreError
from ehr_sync.store.base import RecordStore, UpsertOutcome

logger = structlog.get_logger(__name__)


class FHIRServerRecordStore(RecordStore):
    """
    Record store backed by a FHIR REST API.

    Conditional updates use PUT {Type}?{params}; the server answers 201
    when it created the record and 200 when it updated one.
    """

    def __init__(
        self,
        base_url: str,
        http: httpx.AsyncClient,
        access_token: str | None = None,
    ):
        self.base_url = base_url.rstrip("/")
        self._http = http
        self.access_token = access_token

    def _headers(self) -> dict[str, str]:
        headers = {"Accept": FHIR_JSON, "Content-Type": FHIR_JSON}
        if self.access_token:
            headers["Authorization"] = f"Bearer {self.access_token}"
        return headers

    async def _request(
        self,
        method: str,
        path: str,
        params: dict[str, Any] | None = None,
        json: dict | None = None,
    ) -> httpx.Response:
        url = f"{self.base_url}/{path}"
        try:
            return await self._http.request(method, url, params=params, json=json, headers=self._headers())
        except httpx.HTTPError as e:
            raise StoreError(f"{method} {url} failed: {e}") from e

    @staticmethod
    def _check(response: httpx.Response, action: str) -> dict:
        if not response.is_success:
            raise StoreError(f"Local store {action} failed: {response.status_code} {response.text[:200]}")
        try:
            return response.json()
        except ValueError as e:
            raise StoreError(f"Local store {action} returned invalid JSON") from e

    async def search(
        self,
        resource_type: str,
        params: dict[str, Any],
        count: int | None = None,
    ) -> list[dict]:
        query = dict(params)
        if count is not None:
            query["_count"] = count
        response = await self._request("GET", resource_type, params=query)
        bundle = self._check(response, f"search {resource_type}")
        return [
            entry["resource"]
            for entry in bundle.get("entry") or []
            if entry.get("resource")
        ]

    async def read(self, resource_type: str, resource_id: str) -> dict | None:
        response = await self._request("GET", f"{resource_type}/{resource_id}")
        if response.status_code in (404, 410):
            return None
        return self._check(response, f"read {resource_type}/{resource_id}")

    async def create(self, resource: dict) -> dict:
        resource_type = resource["resourceType"]
        response = await self._request("POST", resource_type, json=resource)
        return self._check(response, f"create {resource_type}")

    async def update(self, resource: dict) -> dict:
        resource_type = resource["resourceType"]
        resource_id = resource.get("id")
        if not resource_id:
            raise StoreError(f"Cannot update {resource_type} without an id")
        response = await self._request("PUT", f"{resource_type}/{resource_id}", json=resource)
        return self._check(response, f"update {resource_type}/{resource_id}")

    async def conditional_update(self, resource: dict, params: dict[str, Any]) -> UpsertOutcome:
        resource_type = resource["resourceType"]
        response = await self._request("PUT", resource_type, params=params, json=resource)
        if response.status_code == 412:
            raise StoreError(f"Conditional update matched multiple {resource_type} records")
        stored = self._check(response, f"conditional update {resource_type}")
        return UpsertOutcome(resource=stored, created=response.status_code == 201)
