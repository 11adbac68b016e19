from typing import Literal

from pydantic import BaseModel


class WebhookAck(BaseModel):
    """Acknowledgment returned once an event has been durably reconciled (or ignored)."""
    status: Literal["accepted"] = "accepted"
    outcome: Literal["created", "updated", "unchanged", "ignored"]
