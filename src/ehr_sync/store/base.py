"""
Local Record Store Interface

The destination of reconciled records. Implementations speak FHIR
search semantics for a small set of parameters (token, reference, date).
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any


@dataclass
class UpsertOutcome:
    """Result of a conditional update."""
    resource: dict
    created: bool


class RecordStore(ABC):
    """Base class for local record stores."""

    @abstractmethod
    async def search(
        self,
        resource_type: str,
        params: dict[str, Any],
        count: int | None = None,
    ) -> list[dict]:
        """Search records; params use FHIR search syntax (system|code, Type/id)."""
        pass

    @abstractmethod
    async def read(self, resource_type: str, resource_id: str) -> dict | None:
        pass

    @abstractmethod
    async def create(self, resource: dict) -> dict:
        pass

    @abstractmethod
    async def update(self, resource: dict) -> dict:
        """Replace the record with the same id."""
        pass

    @abstractmethod
    async def conditional_update(self, resource: dict, params: dict[str, Any]) -> UpsertOutcome:
        """
        Update the single record matching params, or create one if none match.

        Raises:
            StoreError: more than one record matches
        """
        pass
