"""
Payload normalizers for the webhook ingest path.

Each normalizer turns a source-specific body into the reconciler's
(kind, external_key, observed_fields) shape, or None when the event type is
not one that changes the store.
"""
from dataclasses import dataclass, field
from typing import Any, Optional

from ..exceptions import ValidationError
from ..reconciler.policy import EntityKind
from ..schemas.incident import IncidentStatus
from ..sources.github import map_github_status
from ..utils import parse_timestamp

GITHUB_COMPLETION_ACTIONS = frozenset({"completed"})

PAGERDUTY_STATUSES = {status.value: status for status in IncidentStatus}


@dataclass(frozen=True)
class NormalizedEvent:
    kind: EntityKind
    external_key: str
    observed: dict = field(default_factory=dict)


def _require_mapping(value: Any, name: str) -> dict:
    if not isinstance(value, dict):
        raise ValidationError(f"'{name}' must be a JSON object")
    return value


def _require_key(value: Any, name: str) -> str:
    if value is None or str(value).strip() == "":
        raise ValidationError(f"'{name}' is required")
    return str(value).strip()


def normalize_github_event(payload: Any) -> Optional[NormalizedEvent]:
    """
    Accepts both {action, workflowRun: {runId, status, completedAt}} and
    GitHub's native {action, workflow_run: {id, status, conclusion, updated_at}}.
    A completed run must carry a recognized result in status or conclusion.
    """
    payload = _require_mapping(payload, "body")
    action = payload.get("action")
    if not isinstance(action, str) or action not in GITHUB_COMPLETION_ACTIONS:
        return None

    if "workflowRun" in payload:
        run = _require_mapping(payload["workflowRun"], "workflowRun")
        run_id = _require_key(run.get("runId"), "workflowRun.runId")
        completed_at = parse_timestamp(run.get("completedAt"), "workflowRun.completedAt")
    elif "workflow_run" in payload:
        run = _require_mapping(payload["workflow_run"], "workflow_run")
        run_id = _require_key(run.get("id"), "workflow_run.id")
        completed_at = parse_timestamp(run.get("updated_at"), "workflow_run.updated_at")
    else:
        raise ValidationError("'workflowRun' is required for completed workflow events")

    status = map_github_status(run.get("status"), run.get("conclusion"))
    if not status.is_terminal:
        raise ValidationError(
            f"completed run {run_id} has no recognized result "
            f"(status={run.get('status')!r}, conclusion={run.get('conclusion')!r})"
        )
    observed = {"status": status}
    if completed_at is not None:
        observed["timestamp"] = completed_at
    return NormalizedEvent(EntityKind.DEPLOYMENT, run_id, observed)


def normalize_pagerduty_event(payload: Any) -> Optional[NormalizedEvent]:
    """
    Accepts both {event: {incidentNumber, status, createdAt, resolvedAt}} and the
    PagerDuty V3 shape {event: {event_type: "incident.<status>", data: {number,
    status, created_at, resolved_at}}}.
    """
    payload = _require_mapping(payload, "body")
    event = _require_mapping(payload.get("event"), "event")

    if "event_type" in event:
        event_type = str(event.get("event_type") or "")
        prefix, _, status_name = event_type.partition(".")
        if prefix != "incident" or status_name not in PAGERDUTY_STATUSES:
            return None
        data = _require_mapping(event.get("data"), "event.data")
        number = _require_key(data.get("number"), "event.data.number")
        created_at = parse_timestamp(data.get("created_at"), "event.data.created_at")
        resolved_at = parse_timestamp(data.get("resolved_at"), "event.data.resolved_at")
    else:
        status_name = event.get("status")
        if not isinstance(status_name, str) or status_name not in PAGERDUTY_STATUSES:
            return None
        number = _require_key(event.get("incidentNumber"), "event.incidentNumber")
        created_at = parse_timestamp(event.get("createdAt"), "event.createdAt")
        resolved_at = parse_timestamp(event.get("resolvedAt"), "event.resolvedAt")

    status = PAGERDUTY_STATUSES[status_name]
    observed = {"status": status}
    if created_at is not None:
        observed["start_time"] = created_at
    if resolved_at is not None and status is IncidentStatus.RESOLVED:
        observed["end_time"] = resolved_at
    return NormalizedEvent(EntityKind.INCIDENT, number, observed)
