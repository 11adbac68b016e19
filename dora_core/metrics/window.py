from dataclasses import dataclass
from datetime import datetime, timedelta, UTC
from enum import Enum
from typing import Optional

from ..exceptions import ValidationError
from ..utils import as_utc


class WindowPreset(str, Enum):
    LAST_1_DAY = "LAST_1_DAY"
    LAST_3_DAYS = "LAST_3_DAYS"
    LAST_7_DAYS = "LAST_7_DAYS"
    LAST_30_DAYS = "LAST_30_DAYS"
    CUSTOM = "CUSTOM"


PRESET_SPANS = {
    WindowPreset.LAST_1_DAY: timedelta(days=1),
    WindowPreset.LAST_3_DAYS: timedelta(days=3),
    WindowPreset.LAST_7_DAYS: timedelta(days=7),
    WindowPreset.LAST_30_DAYS: timedelta(days=30),
}


@dataclass(frozen=True)
class TimeWindow:
    """Inclusive [start, end] window in UTC."""
    start: datetime
    end: datetime


def validate_window(start: Optional[datetime], end: Optional[datetime]) -> TimeWindow:
    if start is None or end is None:
        raise ValidationError("Both 'from' and 'to' are required")
    start, end = as_utc(start), as_utc(end)
    if start > end:
        raise ValidationError(f"'from' ({start.isoformat()}) must not be after 'to' ({end.isoformat()})")
    return TimeWindow(start=start, end=end)


def resolve_window(
    preset: WindowPreset,
    start: Optional[datetime] = None,
    end: Optional[datetime] = None,
    now: Optional[datetime] = None,
) -> TimeWindow:
    """
    Resolve a preset to a concrete window. Presets end at `now`; CUSTOM uses
    the explicit bounds and requires both.
    """
    if preset is WindowPreset.CUSTOM:
        return validate_window(start, end)
    now = as_utc(now) if now is not None else datetime.now(UTC)
    return TimeWindow(start=now - PRESET_SPANS[preset], end=now)
