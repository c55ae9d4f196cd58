"""
EHR Authentication

SMART Backend Services credential provider and endpoint discovery.
"""

from ehr_sync.auth.smart import (
    SmartBackendClient,
    SmartClientConfig,
    SmartEndpoints,
    TokenSet,
    discover_smart_endpoints,
)

__all__ = [
    "SmartBackendClient",
    "SmartClientConfig",
    "SmartEndpoints",
    "TokenSet",
    "discover_smart_endpoints",
]
