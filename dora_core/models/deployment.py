from datetime import datetime
from typing import Optional

from sqlalchemy import String, DateTime
from sqlalchemy.orm import Mapped, mapped_column

from ..database.base import Base, UUIDMixin, TimestampMixin


class Deployment(Base, UUIDMixin, TimestampMixin):
    """
    Deployment record, one per CI/CD run.
    UUIDMixin.id is the internal surrogate key; external_run_id is the
    deduplication key assigned by the CI/CD platform.
    """
    __tablename__ = "deployments"

    external_run_id: Mapped[str] = mapped_column(String, unique=True, nullable=False, index=True)
    # Completion time; null until a terminal observation supplies it
    timestamp: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True, index=True)
    status: Mapped[str] = mapped_column(String, nullable=False, default="in_progress")  # in_progress, success, failure, cancelled

    def __repr__(self):
        return f"<Deployment(run={self.external_run_id}, status={self.status}, timestamp={self.timestamp})>"
