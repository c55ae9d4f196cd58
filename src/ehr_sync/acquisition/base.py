"""
Acquisition Strategy Interface

Every way of pulling data from the EHR (bulk export, group search,
single-patient search) returns the same typed record batches.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any


@dataclass
class AcquisitionResult:
    """Records pulled from the EHR, grouped by resource type."""
    strategy: str
    records: dict[str, list[dict]] = field(default_factory=dict)
    transaction_time: datetime | None = None
    metadata: dict[str, Any] = field(default_factory=dict)

    def add(self, resource_type: str, resources: list[dict]) -> None:
        """Append records of one type, keeping first-seen type order."""
        if not resources:
            return
        self.records.setdefault(resource_type, []).extend(resources)

    @property
    def total(self) -> int:
        return sum(len(resources) for resources in self.records.values())

    def counts(self) -> dict[str, int]:
        return {resource_type: len(resources) for resource_type, resources in self.records.items()}


class AcquisitionStrategy(ABC):
    """Base class for acquisition strategies."""

    @property
    @abstractmethod
    def name(self) -> str:
        """Strategy tag (bulk_export, group_search, single_patient)."""
        pass

    @abstractmethod
    async def acquire(self, since: datetime | None = None) -> AcquisitionResult:
        """
        Pull records from the EHR.

        Args:
            since: Only records modified after this instant

        Returns:
            AcquisitionResult grouped by resource type
        """
        pass


def group_by_type(resources: list[dict]) -> dict[str, list[dict]]:
    """Group resources by their resourceType."""
    grouped: dict[str, list[dict]] = {}
    for resource in resources:
        resource_type = resource.get("resourceType")
        if resource_type:
            grouped.setdefault(resource_type, []).append(resource)
    return grouped
