"""
HTTP routes for the dashboard route group.
"""

from __future__ import annotations

from fastapi import APIRouter, Depends

from backend.dependencies import get_dashboard_repository
from backend.repository import DashboardRepository
from backend.schemas import DashboardMetricsResponse

router = APIRouter()


@router.get("", response_model=DashboardMetricsResponse)
def get_dashboard_metrics(
    repository: DashboardRepository = Depends(get_dashboard_repository),
):
    return DashboardMetricsResponse(metrics=repository.get_metrics())
