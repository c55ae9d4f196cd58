"""
FHIR R4 Client for the external EHR

Authenticated reads, paged searches and raw requests against the EHR's
FHIR base URL. Bearer tokens come from the credential provider on every
request, so long-running exports survive token expiry.
"""

from datetime import datetime, timezone
from typing import Any, Optional, Protocol

import httpx
import structlog
from pydantic import BaseModel, Field

from ehr_sync.constants import FHIR_JSON
from ehr_sync.errors import CapabilityDeniedError, ProtocolError

logger = structlog.get_logger(__name__)


class TokenProvider(Protocol):
    async def get_access_token(self) -> str: ...


# =============================================================================
# Helpers
# =============================================================================

def format_instant(value: datetime) -> str:
    """FHIR instant without sub-second precision (YYYY-MM-DDTHH:MM:SSZ)."""
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")


def parse_instant(value: Any) -> datetime | None:
    """Parse a FHIR instant/dateTime; None when absent, not a string or unparseable."""
    if not value or not isinstance(value, str):
        return None
    try:
        parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def is_capability_denial(status_code: int, body: str) -> bool:
    """True when a response means the credential may not use this operation."""
    lowered = body.lower()
    return (
        status_code == 403
        or "MSG_OP_NOT_ALLOWED" in body
        or "forbidden" in lowered
    )


def reference_id(reference: str, resource_type: str) -> str | None:
    """Id part of a 'Type/id' or absolute '.../Type/id' reference."""
    parts = reference.rstrip("/").split("/")
    if len(parts) >= 2 and parts[-2] == resource_type and parts[-1]:
        return parts[-1]
    return None


# =============================================================================
# Models
# =============================================================================

class FHIRBundle(BaseModel):
    """A FHIR Bundle reduced to its resources and next link."""
    bundle_type: str = "searchset"
    total: int = 0
    resources: list[dict] = Field(default_factory=list)
    next_link: Optional[str] = None

    @classmethod
    def from_dict(cls, data: dict) -> "FHIRBundle":
        """Create from dictionary."""
        resources = []
        for entry in data.get("entry") or []:
            resource = entry.get("resource") if isinstance(entry, dict) else None
            if isinstance(resource, dict) and resource:
                resources.append(resource)

        next_link = None
        for link in data.get("link") or []:
            if isinstance(link, dict) and link.get("relation") == "next" and isinstance(link.get("url"), str):
                next_link = link["url"]

        # Servers send "total": null or omit it on paged searches
        total = data.get("total")
        if not isinstance(total, int) or isinstance(total, bool):
            total = len(resources)

        return cls(
            bundle_type=data.get("type") or "searchset",
            total=total,
            resources=resources,
            next_link=next_link,
        )


# =============================================================================
# Client
# =============================================================================

class EHRFHIRClient:
    """
    FHIR client bound to one EHR base URL and credential provider.

    Features:
    - Bearer authentication per request
    - Reads (404 maps to None)
    - Searches following link.relation=next with a page cap
    """

    def __init__(
        self,
        base_url: str,
        credentials: TokenProvider,
        http: httpx.AsyncClient,
    ):
        self.base_url = base_url.rstrip("/")
        self.credentials = credentials
        self._http = http

    def url(self, path: str) -> str:
        """Absolute URL for a path relative to the base URL."""
        if path.startswith(("http://", "https://")):
            return path
        return f"{self.base_url}/{path.lstrip('/')}"

    async def request(
        self,
        method: str,
        path: str,
        params: dict[str, Any] | None = None,
        accept: str = FHIR_JSON,
        headers: dict[str, str] | None = None,
    ) -> httpx.Response:
        """Send an authenticated request and return the raw response."""
        token = await self.credentials.get_access_token()
        request_headers = {
            "Authorization": f"Bearer {token}",
            "Accept": accept,
            **(headers or {}),
        }
        url = self.url(path)
        try:
            return await self._http.request(method, url, params=params, headers=request_headers)
        except httpx.HTTPError as e:
            raise ProtocolError(f"{method} {url} failed: {e}") from e

    async def get(
        self,
        path: str,
        params: dict[str, Any] | None = None,
        accept: str = FHIR_JSON,
        headers: dict[str, str] | None = None,
    ) -> httpx.Response:
        return await self.request("GET", path, params=params, accept=accept, headers=headers)

    async def delete(self, path: str) -> httpx.Response:
        return await self.request("DELETE", path)

    async def read(self, resource_type: str, resource_id: str) -> dict | None:
        """Read a single resource; None when it does not exist."""
        response = await self.get(f"{resource_type}/{resource_id}")
        if response.status_code == 404:
            return None
        self._raise_for_status(response, f"read {resource_type}/{resource_id}")
        return self._json(response)

    async def fetch_bundle(
        self,
        path: str,
        params: dict[str, Any] | None = None,
    ) -> FHIRBundle:
        """Fetch one Bundle page."""
        response = await self.get(path, params=params)
        self._raise_for_status(response, f"fetch {path}")
        data = self._json(response)
        if data.get("resourceType") not in (None, "Bundle"):
            raise ProtocolError(f"Expected a Bundle from {path}, got {data.get('resourceType')}")
        try:
            return FHIRBundle.from_dict(data)
        except (ValueError, TypeError, AttributeError) as e:
            raise ProtocolError(f"Malformed Bundle from {path}: {e}") from e

    async def search(
        self,
        resource_type: str,
        params: dict[str, Any] | None = None,
        max_pages: int = 10,
    ) -> list[dict]:
        """
        Search and page through results.

        Errors on the first page propagate. Errors on later pages stop
        paging and keep what was already collected.
        """
        bundle = await self.fetch_bundle(resource_type, params=params)
        resources = list(bundle.resources)
        pages = 1

        while bundle.next_link and pages < max_pages:
            try:
                bundle = await self.fetch_bundle(bundle.next_link)
            except (ProtocolError, CapabilityDeniedError) as e:
                logger.warning(
                    "Stopped paging after error",
                    resource_type=resource_type,
                    pages=pages,
                    error=str(e),
                )
                break
            resources.extend(bundle.resources)
            pages += 1

        if bundle.next_link and pages >= max_pages:
            logger.info("Search page limit reached", resource_type=resource_type, max_pages=max_pages)

        return resources

    @staticmethod
    def _raise_for_status(response: httpx.Response, action: str) -> None:
        if response.status_code == 200:
            return
        body = response.text
        if response.status_code == 401 or is_capability_denial(response.status_code, body):
            raise CapabilityDeniedError(
                f"EHR denied {action}: {response.status_code}",
                status_code=response.status_code,
                body=body,
            )
        raise ProtocolError(f"EHR {action} failed: {response.status_code} {body[:200]}")

    @staticmethod
    def _json(response: httpx.Response) -> dict:
        try:
            data = response.json()
        except ValueError as e:
            raise ProtocolError(f"Response from {response.request.url} is not JSON") from e
        if not isinstance(data, dict):
            raise ProtocolError(f"Response from {response.request.url} is not a JSON object")
        return data
