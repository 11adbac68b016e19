import logging
from datetime import datetime, UTC
from typing import Iterable, List, Optional

import httpx

from ..exceptions import ExternalSourceError, ValidationError
from ..reconciler.policy import EntityKind
from ..schemas.incident import IncidentEvent, IncidentStatus
from ..utils import as_utc, parse_timestamp
from .base import ExternalSource

logger = logging.getLogger("dora-core.sources.pagerduty")

_STATUSES = {status.value: status for status in IncidentStatus}


class PagerDutySource(ExternalSource):
    """
    PagerDuty incidents created within [since, now], paginated by offset while
    the API reports `more`.
    """
    name = "pagerduty"
    kind = EntityKind.INCIDENT

    def __init__(
        self,
        token: str,
        api_url: str = "https://api.pagerduty.com",
        timeout: float = 30.0,
        limit: int = 100,
        client: Optional[httpx.AsyncClient] = None,
    ):
        headers = {
            "Accept": "application/vnd.pagerduty+json;version=2",
            "Authorization": f"Token token={token}",
        }
        super().__init__(api_url, headers=headers, timeout=timeout, client=client)
        self._limit = limit

    async def fetch_since(self, since: datetime) -> List[IncidentEvent]:
        return await self.fetch_incidents_since(since)

    async def fetch_incidents_since(self, since: datetime) -> List[IncidentEvent]:
        since = as_utc(since)
        until = datetime.now(UTC)
        events: List[IncidentEvent] = []
        offset = 0
        while True:
            data = await self._get_json(
                "/incidents",
                params={
                    "since": since.isoformat(),
                    "until": until.isoformat(),
                    "time_zone": "UTC",
                    "limit": self._limit,
                    "offset": offset,
                },
            )
            incidents = data.get("incidents") if isinstance(data, dict) else None
            if not isinstance(incidents, list):
                raise ExternalSourceError(self.name, "response has no 'incidents' list")

            for incident in incidents:
                event = self._to_event(incident)
                if event is not None:
                    events.append(event)

            if not data.get("more") or not incidents:
                break
            offset += len(incidents)

        logger.info(f"Fetched {len(events)} incidents since {since.isoformat()}")
        return events

    async def fetch_by_keys(self, keys: Iterable[str]) -> List[IncidentEvent]:
        return await self.fetch_incidents_by_number(keys)

    async def fetch_incidents_by_number(self, numbers: Iterable[str]) -> List[IncidentEvent]:
        """Re-read single incidents; catches resolutions of incidents created before `since`."""
        events: List[IncidentEvent] = []
        for number in numbers:
            data = await self._get_json(f"/incidents/{number}", allow_missing=True)
            if data is None:
                logger.warning(f"Incident {number} no longer exists upstream")
                continue
            incident = data.get("incident") if isinstance(data, dict) else None
            if not isinstance(incident, dict):
                raise ExternalSourceError(self.name, f"response for incident {number} has no 'incident' object")
            event = self._to_event(incident)
            if event is not None:
                events.append(event)
        return events

    def _to_event(self, incident) -> Optional[IncidentEvent]:
        if not isinstance(incident, dict) or incident.get("incident_number") is None:
            logger.warning(f"Skipping malformed incident entry: {incident!r}")
            return None
        raw_status = incident.get("status")
        status = _STATUSES.get(raw_status) if isinstance(raw_status, str) else None
        if status is None:
            logger.warning(f"Skipping incident {incident['incident_number']} with unknown status {incident.get('status')!r}")
            return None
        try:
            created_at = parse_timestamp(incident.get("created_at"), "created_at")
            resolved_at = None
            if status is IncidentStatus.RESOLVED:
                resolved_at = parse_timestamp(
                    incident.get("resolved_at") or incident.get("last_status_change_at"), "resolved_at"
                )
        except ValidationError as e:
            logger.warning(f"Skipping incident {incident['incident_number']}: {e}")
            return None
        return IncidentEvent(
            incident_number=str(incident["incident_number"]),
            status=status,
            created_at=created_at,
            resolved_at=resolved_at,
        )
