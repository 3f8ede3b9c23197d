"""
Dependency wiring for the FastAPI app.
"""

from __future__ import annotations

from backend.repository import DashboardRepository, InMemoryDashboardRepository

_dashboard_repository: DashboardRepository | None = None


def get_dashboard_repository() -> DashboardRepository:
    """
    Return a singleton repository so dashboard data persists across requests.
    """
    global _dashboard_repository
    if _dashboard_repository:
        return _dashboard_repository

    _dashboard_repository = InMemoryDashboardRepository()
    return _dashboard_repository
