from datetime import datetime
from typing import Optional

from sqlalchemy import String, DateTime
from sqlalchemy.orm import Mapped, mapped_column

from ..database.base import Base, UUIDMixin, TimestampMixin


class Incident(Base, UUIDMixin, TimestampMixin):
    """
    Incident record, one per upstream incident number.
    start_time is immutable after the first write; end_time only ever moves
    forward, to the latest resolution seen.
    """
    __tablename__ = "incidents"

    external_incident_number: Mapped[str] = mapped_column(String, unique=True, nullable=False, index=True)
    start_time: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, index=True)
    end_time: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    status: Mapped[str] = mapped_column(String, nullable=False, default="triggered")  # triggered, acknowledged, resolved

    def __repr__(self):
        return f"<Incident(number={self.external_incident_number}, status={self.status})>"
