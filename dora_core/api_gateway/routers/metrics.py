from datetime import datetime
from typing import Optional

from fastapi import APIRouter, Depends, Query

from ...metrics.engine import MetricEngine
from ...metrics.window import TimeWindow, WindowPreset, resolve_window
from ...schemas.metrics import MetricResponse
from ..dependencies import get_metric_engine

router = APIRouter(tags=["Metrics"])


def _window(
    preset: Optional[WindowPreset] = Query(default=None),
    start: Optional[datetime] = Query(default=None, alias="from"),
    end: Optional[datetime] = Query(default=None, alias="to"),
) -> TimeWindow:
    # Explicit bounds without a preset mean CUSTOM; nothing at all means the last week.
    if preset is None:
        preset = WindowPreset.CUSTOM if (start or end) else WindowPreset.LAST_7_DAYS
    return resolve_window(preset, start, end)


@router.get("/cfr", response_model=MetricResponse)
async def change_failure_rate(
    window: TimeWindow = Depends(_window),
    engine: MetricEngine = Depends(get_metric_engine),
):
    value = await engine.calculate_cfr(window.start, window.end)
    return MetricResponse(start=window.start, end=window.end, value=value)


@router.get("/mttr", response_model=MetricResponse)
async def mean_time_to_recovery(
    window: TimeWindow = Depends(_window),
    engine: MetricEngine = Depends(get_metric_engine),
):
    """MTTR as a percentage of one hour (100.0 == a one-hour mean recovery)."""
    value = await engine.calculate_mttr(window.start, window.end)
    return MetricResponse(start=window.start, end=window.end, value=value)
