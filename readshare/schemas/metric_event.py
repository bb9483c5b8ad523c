"""Metric event schemas (called by the metric store after a write)."""
from datetime import datetime

from pydantic import BaseModel, Field, field_validator


class MetricEventCreate(BaseModel):
    owner_id: str
    metric_type: str = Field(min_length=1, max_length=64)
    value: float = Field(allow_inf_nan=False)
    unit: str = Field(default="", max_length=32)
    recorded_at: datetime

    @field_validator("metric_type")
    @classmethod
    def _metric_type_not_blank(cls, value: str) -> str:
        if not value.strip():
            raise ValueError("metric_type cannot be blank")
        return value.strip()


class MetricEventResult(BaseModel):
    notified: int
