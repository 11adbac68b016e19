"""
Monotonic merge policy for reconciled records.

Status values form a dominance order per entity kind; merging an observation
into a record takes the dominant value instead of the most recent arrival, so
any ordering or duplication of the same observations converges to one state.
"""
from dataclasses import dataclass
from datetime import datetime, UTC
from enum import Enum
from typing import Any, Mapping, Optional

from ..exceptions import ConflictError, ValidationError
from ..schemas.deployment import DeploymentStatus
from ..schemas.incident import IncidentStatus
from ..utils import as_utc


class EntityKind(str, Enum):
    DEPLOYMENT = "deployment"
    INCIDENT = "incident"


class ReconcileOutcome(str, Enum):
    CREATED = "created"
    UPDATED = "updated"
    UNCHANGED = "unchanged"


ENTITY_FIELDS = {
    EntityKind.DEPLOYMENT: frozenset({"status", "timestamp"}),
    EntityKind.INCIDENT: frozenset({"status", "start_time", "end_time"}),
}

# Tie-break between terminal deployment statuses sharing a completion time
DEPLOYMENT_TERMINAL_RANK = {
    DeploymentStatus.SUCCESS: 1,
    DeploymentStatus.CANCELLED: 2,
    DeploymentStatus.FAILURE: 3,
}

INCIDENT_STATUS_ORDER = {
    IncidentStatus.TRIGGERED: 0,
    IncidentStatus.ACKNOWLEDGED: 1,
    IncidentStatus.RESOLVED: 2,
}

_EPOCH_MIN = datetime.min.replace(tzinfo=UTC)


@dataclass(frozen=True)
class DeploymentState:
    status: DeploymentStatus
    timestamp: Optional[datetime] = None


@dataclass(frozen=True)
class IncidentState:
    status: IncidentStatus
    start_time: datetime
    end_time: Optional[datetime] = None


def coerce_kind(kind: Any) -> EntityKind:
    try:
        return EntityKind(kind)
    except ValueError:
        raise ValidationError(f"Unknown entity kind: {kind!r}")


def validate_external_key(external_key: Any) -> str:
    if external_key is None:
        raise ValidationError("External key must not be null")
    key = str(external_key).strip()
    if not key:
        raise ValidationError("External key must not be empty")
    return key


def _coerce_time(observed: Mapping[str, Any], field: str) -> Optional[datetime]:
    value = observed.get(field)
    if value is None:
        return None
    if not isinstance(value, datetime):
        raise ValidationError(f"'{field}' must be a datetime, got {type(value).__name__}")
    return as_utc(value)


def normalize_observation(kind: EntityKind, observed: Mapping[str, Any]) -> dict:
    """
    Validate an observed field subset and strip values the policy never reads.

    Deployment timestamps are completion times, so they are kept only when the
    same observation carries a terminal status. Incident end times are kept
    only for resolved observations; an end time with no status implies resolved.
    """
    unknown = set(observed) - ENTITY_FIELDS[kind]
    if unknown:
        raise ValidationError(f"Unknown {kind.value} fields: {sorted(unknown)}")

    fields: dict = {}
    if kind is EntityKind.DEPLOYMENT:
        if observed.get("status") is not None:
            try:
                fields["status"] = DeploymentStatus(observed["status"])
            except ValueError:
                raise ValidationError(f"Unknown deployment status: {observed['status']!r}")
        timestamp = _coerce_time(observed, "timestamp")
        if timestamp is not None and fields.get("status") is not None and fields["status"].is_terminal:
            fields["timestamp"] = timestamp
        return fields

    if observed.get("status") is not None:
        try:
            fields["status"] = IncidentStatus(observed["status"])
        except ValueError:
            raise ValidationError(f"Unknown incident status: {observed['status']!r}")
    start_time = _coerce_time(observed, "start_time")
    if start_time is not None:
        fields["start_time"] = start_time
    end_time = _coerce_time(observed, "end_time")
    if end_time is not None:
        fields.setdefault("status", IncidentStatus.RESOLVED)
        if fields["status"] is IncidentStatus.RESOLVED:
            fields["end_time"] = end_time
    return fields


def _later(a: Optional[datetime], b: Optional[datetime]) -> Optional[datetime]:
    if a is None:
        return b
    if b is None:
        return a
    return max(a, b)


def merge_deployment(current: Optional[DeploymentState], observed: Mapping[str, Any]) -> DeploymentState:
    status = observed.get("status")
    timestamp = observed.get("timestamp")

    if current is None:
        return DeploymentState(status=status or DeploymentStatus.IN_PROGRESS, timestamp=timestamp)

    if status is None or not status.is_terminal:
        # Non-terminal observations never move a record.
        return current

    if not current.status.is_terminal:
        return DeploymentState(status=status, timestamp=_later(current.timestamp, timestamp))

    current_key = (current.timestamp or _EPOCH_MIN, DEPLOYMENT_TERMINAL_RANK[current.status])
    observed_key = (timestamp or _EPOCH_MIN, DEPLOYMENT_TERMINAL_RANK[status])
    return DeploymentState(
        status=status if observed_key > current_key else current.status,
        timestamp=_later(current.timestamp, timestamp),
    )


def merge_incident(current: Optional[IncidentState], observed: Mapping[str, Any], external_key: str = "") -> IncidentState:
    status = observed.get("status")
    start_time = observed.get("start_time")
    end_time = observed.get("end_time")

    if current is None:
        if start_time is None:
            raise ValidationError(f"incident {external_key!r}: start_time is required on first observation")
        merged = IncidentState(status=status or IncidentStatus.TRIGGERED, start_time=start_time, end_time=end_time)
    else:
        if start_time is not None and start_time != current.start_time:
            raise ConflictError(EntityKind.INCIDENT.value, external_key, "start_time", current.start_time, start_time)
        merged_status = current.status
        if status is not None and INCIDENT_STATUS_ORDER[status] > INCIDENT_STATUS_ORDER[current.status]:
            merged_status = status
        merged = IncidentState(
            status=merged_status,
            start_time=current.start_time,
            end_time=_later(current.end_time, end_time),
        )

    if merged.end_time is not None and merged.end_time < merged.start_time:
        raise ValidationError(
            f"incident {external_key!r}: end_time {merged.end_time.isoformat()} precedes start_time "
            f"{merged.start_time.isoformat()}"
        )
    return merged
