import logging
from datetime import datetime
from typing import Iterable, List, Optional

import httpx

from ..exceptions import ExternalSourceError, ValidationError
from ..reconciler.policy import EntityKind
from ..schemas.deployment import DeploymentEvent, DeploymentStatus
from ..utils import as_utc, parse_timestamp
from .base import ExternalSource

logger = logging.getLogger("dora-core.sources.github")

# GitHub conclusion (or already-mapped status) -> deployment status
GITHUB_CONCLUSION_MAP = {
    "success": DeploymentStatus.SUCCESS,
    "neutral": DeploymentStatus.SUCCESS,
    "failure": DeploymentStatus.FAILURE,
    "timed_out": DeploymentStatus.FAILURE,
    "startup_failure": DeploymentStatus.FAILURE,
    "action_required": DeploymentStatus.FAILURE,
    "cancelled": DeploymentStatus.CANCELLED,
    "skipped": DeploymentStatus.CANCELLED,
    "stale": DeploymentStatus.CANCELLED,
}


def map_github_status(status: Optional[str], conclusion: Optional[str]) -> DeploymentStatus:
    """
    Map GitHub's run status/conclusion vocabulary onto the deployment status set.
    A run that reports a known conclusion is terminal whatever its status says.
    """
    for value in (conclusion, status):
        if isinstance(value, str) and value.lower() in GITHUB_CONCLUSION_MAP:
            return GITHUB_CONCLUSION_MAP[value.lower()]
    return DeploymentStatus.IN_PROGRESS


class GitHubActionsSource(ExternalSource):
    """
    GitHub Actions workflow runs as deployments.
    Uses the workflow-scoped runs endpoint when a deploy workflow is configured,
    the repository-wide one otherwise.
    """
    name = "github"
    kind = EntityKind.DEPLOYMENT

    def __init__(
        self,
        repository: str,
        token: str = "",
        api_url: str = "https://api.github.com",
        workflow: Optional[str] = None,
        timeout: float = 30.0,
        per_page: int = 100,
        client: Optional[httpx.AsyncClient] = None,
    ):
        headers = {
            "Accept": "application/vnd.github+json",
            "X-GitHub-Api-Version": "2022-11-28",
        }
        if token:
            headers["Authorization"] = f"Bearer {token}"
        super().__init__(api_url, headers=headers, timeout=timeout, client=client)
        self._repository = repository
        self._workflow = workflow
        self._per_page = per_page

    @property
    def _runs_path(self) -> str:
        if self._workflow:
            return f"/repos/{self._repository}/actions/workflows/{self._workflow}/runs"
        return f"/repos/{self._repository}/actions/runs"

    async def fetch_since(self, since: datetime) -> List[DeploymentEvent]:
        return await self.fetch_deployments_since(since)

    async def fetch_deployments_since(self, since: datetime) -> List[DeploymentEvent]:
        since = as_utc(since)
        created_filter = ">=" + since.strftime("%Y-%m-%dT%H:%M:%SZ")
        events: List[DeploymentEvent] = []
        page = 1
        while True:
            data = await self._get_json(
                self._runs_path,
                params={"created": created_filter, "per_page": self._per_page, "page": page},
            )
            runs = data.get("workflow_runs") if isinstance(data, dict) else None
            if not isinstance(runs, list):
                raise ExternalSourceError(self.name, "response has no 'workflow_runs' list")

            for run in runs:
                event = self._to_event(run)
                if event is not None:
                    events.append(event)

            total = data.get("total_count")
            seen = (page - 1) * self._per_page + len(runs)
            if len(runs) < self._per_page or (isinstance(total, int) and seen >= total):
                break
            page += 1

        logger.info(f"Fetched {len(events)} workflow runs from {self._repository} since {since.isoformat()}")
        return events

    async def fetch_by_keys(self, keys: Iterable[str]) -> List[DeploymentEvent]:
        return await self.fetch_deployments_by_run_ids(keys)

    async def fetch_deployments_by_run_ids(self, run_ids: Iterable[str]) -> List[DeploymentEvent]:
        """Re-read single runs; catches completions of runs older than the created>= window."""
        events: List[DeploymentEvent] = []
        for run_id in run_ids:
            run = await self._get_json(f"/repos/{self._repository}/actions/runs/{run_id}", allow_missing=True)
            if run is None:
                logger.warning(f"Workflow run {run_id} no longer exists in {self._repository}")
                continue
            event = self._to_event(run)
            if event is not None:
                events.append(event)
        return events

    def _to_event(self, run) -> Optional[DeploymentEvent]:
        if not isinstance(run, dict) or run.get("id") is None:
            logger.warning(f"Skipping malformed workflow run entry: {run!r}")
            return None
        status = map_github_status(run.get("status"), run.get("conclusion"))
        if run.get("status") == "completed" and not status.is_terminal:
            logger.warning(f"Skipping completed workflow run {run['id']} with unknown conclusion {run.get('conclusion')!r}")
            return None
        completed_at = None
        if status.is_terminal:
            try:
                completed_at = parse_timestamp(run.get("updated_at"), "updated_at")
            except ValidationError as e:
                logger.warning(f"Workflow run {run['id']}: {e}; keeping run without completion time")
        return DeploymentEvent(run_id=str(run["id"]), status=status, completed_at=completed_at)
