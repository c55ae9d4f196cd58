"""
SMART Backend Services Authentication

Client-credentials token flow for system-to-system EHR access:
- client_secret (HTTP Basic) authentication
- private_key_jwt (signed client assertion) authentication
- Token caching with a 5-minute safety margin
- SMART endpoint discovery (.well-known)

https://hl7.org/fhir/smart-app-launch/backend-services.html
"""

from datetime import datetime, timedelta, timezone
from typing import Optional
import uuid

import httpx
import jwt
import structlog
from pydantic import BaseModel, Field

from ehr_sync.constants import DEFAULT_SCOPES, JWT_BEARER_ASSERTION
from ehr_sync.errors import AuthenticationError

logger = structlog.get_logger(__name__)

# Tokens this close to expiry are treated as already expired
TOKEN_EXPIRY_BUFFER = timedelta(minutes=5)

# SMART caps client assertion lifetime at 5 minutes
ASSERTION_LIFETIME_SECONDS = 300


# =============================================================================
# Configuration
# =============================================================================

class SmartClientConfig(BaseModel):
    """SMART Backend Services client configuration."""
    token_endpoint: str
    client_id: str

    # One of the two proof methods; the secret wins when both are present
    client_secret: Optional[str] = None
    private_key_pem: Optional[str] = None

    key_id: Optional[str] = None
    algorithm: str = "RS384"
    jwks_url: Optional[str] = None
    scopes: str = DEFAULT_SCOPES


class SmartEndpoints(BaseModel):
    """OAuth endpoints advertised by the FHIR server."""
    token_endpoint: str
    authorization_endpoint: Optional[str] = None


# =============================================================================
# Token Management
# =============================================================================

class TokenSet(BaseModel):
    """OAuth token set."""
    access_token: str
    token_type: str = "Bearer"
    expires_in: int = 3600
    scope: str = ""

    # Calculated
    expires_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))

    def __init__(self, **data):
        super().__init__(**data)
        self.expires_at = datetime.now(timezone.utc) + timedelta(seconds=self.expires_in)

    @property
    def is_expired(self) -> bool:
        """Check if token is expired (with 5-minute buffer)."""
        return datetime.now(timezone.utc) >= (self.expires_at - TOKEN_EXPIRY_BUFFER)


class SmartBackendClient:
    """
    Credential provider for one configured EHR source.

    Owns the cached bearer token. The refresh check is not locked: two
    concurrent callers may both refresh, which only costs an extra request.

    Usage:
        client = SmartBackendClient(config, http)
        token = await client.get_access_token()
    """

    def __init__(self, config: SmartClientConfig, http: httpx.AsyncClient):
        self.config = config
        self._http = http
        self._token: TokenSet | None = None

    async def get_access_token(self) -> str:
        """Get a valid access token, requesting a new one if needed."""
        token = await self.get_token()
        return token.access_token

    async def get_token(self) -> TokenSet:
        """Get the cached token set, refreshing when expired."""
        if self._token is not None and not self._token.is_expired:
            return self._token

        self._token = await self._request_token()
        return self._token

    def clear_cache(self) -> None:
        """Drop the cached token so the next call refreshes."""
        self._token = None

    async def _request_token(self) -> TokenSet:
        """Exchange client credentials for an access token."""
        data = {
            "grant_type": "client_credentials",
            "scope": self.config.scopes,
        }
        auth = None

        if self.config.client_secret:
            auth_method = "client_secret"
            auth = httpx.BasicAuth(self.config.client_id, self.config.client_secret)
        elif self.config.private_key_pem:
            auth_method = "private_key_jwt"
            data.update({
                "client_assertion_type": JWT_BEARER_ASSERTION,
                "client_assertion": self.build_client_assertion(),
                "client_id": self.config.client_id,
            })
        else:
            raise AuthenticationError(
                "Either client_secret or private_key must be provided for authentication"
            )

        logger.info(
            "Requesting access token",
            token_endpoint=self.config.token_endpoint,
            client_id=self.config.client_id,
            auth_method=auth_method,
        )

        try:
            response = await self._http.post(
                self.config.token_endpoint,
                data=data,
                auth=auth,
                headers={"Accept": "application/json"},
            )
        except httpx.HTTPError as e:
            raise AuthenticationError(f"Token request failed: {e}") from e

        if not response.is_success:
            logger.error(
                "Token request failed",
                status=response.status_code,
                body=response.text[:500],
            )
            raise AuthenticationError(
                f"Failed to get access token: {response.status_code} {response.text}",
                status_code=response.status_code,
                body=response.text,
            )

        try:
            token_data = response.json()
            tokens = TokenSet(
                access_token=token_data["access_token"],
                token_type=token_data.get("token_type", "Bearer"),
                expires_in=int(token_data.get("expires_in", 3600)),
                scope=token_data.get("scope") or "",
            )
        except (ValueError, KeyError, TypeError) as e:
            raise AuthenticationError(f"Malformed token response: {e}") from e

        self._warn_missing_scopes(tokens.scope)
        logger.info("Obtained access token", expires_in=tokens.expires_in)
        return tokens

    def _warn_missing_scopes(self, granted: str) -> None:
        # Servers may omit scope from the response entirely
        if not granted:
            return
        missing = set(self.config.scopes.split()) - set(granted.split())
        if missing:
            logger.warning(
                "Some requested scopes were not granted; FHIR calls may return 403",
                missing_scopes=sorted(missing),
            )

    def build_client_assertion(self) -> str:
        """
        Build a signed JWT for client authentication.

        Claims per SMART Backend Services:
        - iss, sub: client_id
        - aud: token endpoint URL
        - jti: unique identifier
        - exp: at most 5 minutes after iat
        """
        if not self.config.private_key_pem:
            raise AuthenticationError("Private key is required for JWT authentication")

        now = datetime.now(timezone.utc)
        claims = {
            "iss": self.config.client_id,
            "sub": self.config.client_id,
            "aud": self.config.token_endpoint,
            "jti": str(uuid.uuid4()),
            "iat": now,
            "exp": now + timedelta(seconds=ASSERTION_LIFETIME_SECONDS),
        }
        headers = {"typ": "JWT"}
        if self.config.key_id:
            headers["kid"] = self.config.key_id
        if self.config.jwks_url:
            headers["jku"] = self.config.jwks_url

        try:
            return jwt.encode(
                claims,
                self.config.private_key_pem,
                algorithm=self.config.algorithm,
                headers=headers,
            )
        except (ValueError, TypeError, jwt.PyJWTError) as e:
            raise AuthenticationError(f"Could not sign client assertion: {e}") from e


# =============================================================================
# Discovery
# =============================================================================

async def discover_smart_endpoints(
    fhir_base_url: str,
    http: httpx.AsyncClient,
) -> SmartEndpoints:
    """
    Discover OAuth endpoints from the FHIR server's .well-known configuration.

    Tries smart-configuration first, then oauth-authorization-server.
    """
    base = fhir_base_url.rstrip("/")

    smart_url = f"{base}/.well-known/smart-configuration"
    try:
        response = await http.get(smart_url, headers={"Accept": "application/json"})
        if response.status_code == 200:
            endpoints = SmartEndpoints.model_validate(response.json())
            logger.info("Discovered SMART endpoints", token_endpoint=endpoints.token_endpoint)
            return endpoints
        logger.info("smart-configuration unavailable", status=response.status_code)
    except (httpx.HTTPError, ValueError) as e:
        logger.info("Could not fetch smart-configuration", error=str(e))

    oauth_url = f"{base}/.well-known/oauth-authorization-server"
    try:
        response = await http.get(oauth_url, headers={"Accept": "application/json"})
    except httpx.HTTPError as e:
        raise AuthenticationError(f"Failed to discover SMART endpoints: {e}") from e

    if response.status_code != 200:
        raise AuthenticationError(
            f"Failed to discover SMART endpoints: {response.status_code}",
            status_code=response.status_code,
            body=response.text,
        )

    try:
        endpoints = SmartEndpoints.model_validate(response.json())
    except ValueError as e:
        raise AuthenticationError(f"Malformed authorization server metadata: {e}") from e

    logger.info("Discovered OAuth endpoints", token_endpoint=endpoints.token_endpoint)
    return endpoints
