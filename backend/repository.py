"""
Data access for the dashboard route group.
"""

from __future__ import annotations

import copy
from dataclasses import dataclass, field
from typing import Protocol


class DashboardRepository(Protocol):
    """Defines what the dashboard routes need from the data layer."""

    def get_metrics(self) -> dict:
        ...


@dataclass
class InMemoryDashboardRepository:
    """Dashboard metrics held in process memory (development and tests)."""

    metrics: dict = field(default_factory=dict)

    def get_metrics(self) -> dict:
        return copy.deepcopy(self.metrics)

    def set_metrics(self, metrics: dict) -> None:
        self.metrics = copy.deepcopy(metrics)

    def reset(self) -> None:
        """Clear all stored data (useful in tests)."""
        self.metrics = {}
