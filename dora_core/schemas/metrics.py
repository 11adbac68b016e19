from datetime import datetime

from pydantic import BaseModel, ConfigDict, Field


class MetricResponse(BaseModel):
    """Response body of GET /metrics/*: {from, to, value}."""
    model_config = ConfigDict(populate_by_name=True)

    start: datetime = Field(alias="from")
    end: datetime = Field(alias="to")
    value: float
