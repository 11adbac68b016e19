import logging
from datetime import datetime
from typing import Dict

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from ..exceptions import StoreError
from ..models.watermark import SourceWatermark
from ..utils import as_utc

logger = logging.getLogger("dora-core.backfill.watermark")


class WatermarkStore:
    """Persists per-source high-water marks between backfill runs."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self._session_factory = session_factory

    async def load(self) -> Dict[str, datetime]:
        try:
            async with self._session_factory() as session:
                result = await session.execute(select(SourceWatermark))
                return {row.source: as_utc(row.high_water_mark) for row in result.scalars().all()}
        except SQLAlchemyError as e:
            raise StoreError(f"Failed to load high-water marks: {e}") from e

    async def save(self, marks: Dict[str, datetime]) -> None:
        try:
            async with self._session_factory() as session:
                async with session.begin():
                    for source, mark in marks.items():
                        row = await session.get(SourceWatermark, source)
                        if row is None:
                            session.add(SourceWatermark(source=source, high_water_mark=mark))
                        elif as_utc(row.high_water_mark) != mark:
                            row.high_water_mark = mark
        except SQLAlchemyError as e:
            raise StoreError(f"Failed to persist high-water marks: {e}") from e
        logger.debug(f"Persisted high-water marks: { {s: m.isoformat() for s, m in marks.items()} }")
