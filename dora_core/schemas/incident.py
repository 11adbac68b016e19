from datetime import datetime
from enum import Enum
from typing import Optional

from pydantic import BaseModel


class IncidentStatus(str, Enum):
    TRIGGERED = "triggered"
    ACKNOWLEDGED = "acknowledged"
    RESOLVED = "resolved"


class IncidentEvent(BaseModel):
    """An incident as observed by a pull source (incident platform)."""
    incident_number: str
    status: IncidentStatus
    created_at: Optional[datetime] = None
    resolved_at: Optional[datetime] = None

    def observed_fields(self) -> dict:
        fields = {"status": self.status}
        if self.created_at is not None:
            fields["start_time"] = self.created_at
        if self.resolved_at is not None:
            fields["end_time"] = self.resolved_at
        return fields
