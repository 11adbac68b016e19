from datetime import datetime
from enum import Enum
from typing import Optional

from pydantic import BaseModel


class DeploymentStatus(str, Enum):
    IN_PROGRESS = "in_progress"
    SUCCESS = "success"
    FAILURE = "failure"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self is not DeploymentStatus.IN_PROGRESS


class DeploymentEvent(BaseModel):
    """
    A deployment as observed by a pull source (CI/CD platform).
    `completed_at` is only meaningful for terminal statuses.
    """
    run_id: str
    status: DeploymentStatus
    completed_at: Optional[datetime] = None

    def observed_fields(self) -> dict:
        fields = {"status": self.status}
        if self.completed_at is not None:
            fields["timestamp"] = self.completed_at
        return fields
