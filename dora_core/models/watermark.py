from datetime import datetime

from sqlalchemy import String, DateTime
from sqlalchemy.orm import Mapped, mapped_column

from ..database.base import Base, utcnow


class SourceWatermark(Base):
    """Last fully-fetched timestamp per backfill source."""
    __tablename__ = "source_watermarks"

    source: Mapped[str] = mapped_column(String, primary_key=True)
    high_water_mark: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, onupdate=utcnow, nullable=False)
