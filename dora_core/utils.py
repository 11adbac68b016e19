from datetime import datetime, UTC
from typing import Any, Optional

from .exceptions import ValidationError


def as_utc(value: Optional[datetime]) -> Optional[datetime]:
    """
    Normalize a datetime to timezone-aware UTC.
    Naive values are taken to already be UTC (SQLite hands them back that way).
    """
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value.astimezone(UTC)


def parse_timestamp(value: Any, field: str) -> Optional[datetime]:
    """
    Parse an ISO-8601 timestamp from an upstream payload.
    Empty values yield None; anything unparseable raises ValidationError.
    """
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return as_utc(value)
    if not isinstance(value, str):
        raise ValidationError(f"'{field}' must be an ISO-8601 string, got {type(value).__name__}")
    try:
        return as_utc(datetime.fromisoformat(value.replace("Z", "+00:00")))
    except ValueError:
        raise ValidationError(f"'{field}' is not a valid ISO-8601 timestamp: {value!r}")


def print_banner(service_name: str, version: str = "1.0.0"):
    """
    Print the startup banner.

    Args:
        service_name: Name of the service starting up (e.g., "DORA-Core")
        version: Version number of the service (default: "1.0.0")
    """
    print("=" * 80)
    print("  DORA CORE - Deployment & Incident Reconciliation, CFR / MTTR Metrics")
    print("=" * 80)
    print(f"  Service:        {service_name}")
    print(f"  Version:        {version}")
    print(f"  Started:        {datetime.now().strftime('%Y-%m-%d %H:%M:%S')}")
    print("-" * 80)
    print("  Ingest paths:   Webhooks (GitHub, PagerDuty) | Scheduled backfill")
    print("  Metrics:        Change Failure Rate | Mean Time to Recovery")
    print("=" * 80)
    print()
