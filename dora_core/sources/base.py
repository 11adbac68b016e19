import logging
from abc import ABC, abstractmethod
from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional, Union

import httpx

from ..exceptions import ExternalSourceError
from ..reconciler.policy import EntityKind
from ..schemas.deployment import DeploymentEvent
from ..schemas.incident import IncidentEvent

logger = logging.getLogger("dora-core.sources")

SourceEvent = Union[DeploymentEvent, IncidentEvent]


def external_key_of(event: SourceEvent) -> str:
    if isinstance(event, DeploymentEvent):
        return event.run_id
    return event.incident_number


class ExternalSource(ABC):
    """
    Pull client for one upstream platform.

    fetch_since() returns every record observed since the given time, or raises
    ExternalSourceError; it never turns a transport failure into an empty list,
    so the scheduler can tell "nothing new" from "fetch failed".
    """
    name: str
    kind: EntityKind

    def __init__(
        self,
        base_url: str,
        headers: Optional[Dict[str, str]] = None,
        timeout: float = 30.0,
        client: Optional[httpx.AsyncClient] = None,
    ):
        self._owns_client = client is None
        self._http_client = client or httpx.AsyncClient(
            base_url=base_url,
            timeout=timeout,
            follow_redirects=True,
            headers={"User-Agent": "DORA-Core-Backfill/1.0", **(headers or {})},
        )

    @abstractmethod
    async def fetch_since(self, since: datetime) -> List[SourceEvent]:
        """Fetch all records observed at or after `since`."""
        pass

    @abstractmethod
    async def fetch_by_keys(self, keys: Iterable[str]) -> List[SourceEvent]:
        """
        Re-read individual records by external key, whatever their creation
        time. Keys the upstream no longer knows are skipped.
        """
        pass

    async def aclose(self):
        if self._owns_client:
            await self._http_client.aclose()

    async def _get_json(self, path: str, params: Optional[Dict[str, Any]] = None, allow_missing: bool = False) -> Any:
        """GET and decode a JSON body. With allow_missing, a 404 yields None."""
        try:
            response = await self._http_client.get(path, params=params)
            if allow_missing and response.status_code == 404:
                return None
            response.raise_for_status()
            return response.json()
        except httpx.HTTPStatusError as e:
            raise ExternalSourceError(self.name, f"GET {path} returned {e.response.status_code}") from e
        except httpx.HTTPError as e:
            raise ExternalSourceError(self.name, f"GET {path} failed: {e!r}") from e
        except ValueError as e:
            raise ExternalSourceError(self.name, f"GET {path} returned a non-JSON body") from e
