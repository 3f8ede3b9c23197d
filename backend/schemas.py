"""
Pydantic schemas for the dashboard routes.
"""

from __future__ import annotations

from pydantic import BaseModel, Field


class DashboardMetricsResponse(BaseModel):
    metrics: dict = Field(default_factory=dict)
