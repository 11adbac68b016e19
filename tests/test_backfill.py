import asyncio
from datetime import datetime, timedelta, UTC
from unittest.mock import AsyncMock

import httpx
import pytest

from dora_core.backfill.service import BackfillSchedulerService, run_backfill
from dora_core.backfill.watermark import WatermarkStore
from dora_core.exceptions import ExternalSourceError, StoreError
from dora_core.models.deployment import Deployment
from dora_core.models.incident import Incident
from dora_core.reconciler.policy import EntityKind, ReconcileOutcome
from dora_core.schemas.deployment import DeploymentEvent, DeploymentStatus
from dora_core.schemas.incident import IncidentEvent, IncidentStatus
from dora_core.sources.base import ExternalSource
from dora_core.sources.pagerduty import PagerDutySource

NOW = datetime(2026, 3, 2, 0, 0, tzinfo=UTC)
T0 = datetime(2026, 3, 1, 12, 0, tzinfo=UTC)
OVERLAP = timedelta(minutes=10)
LOOKBACK = timedelta(days=30)


class FakeSource(ExternalSource):
    def __init__(self, name, kind, events=None, error=None, delay=0.0, upstream=None):
        self.name = name
        self.kind = kind
        self._events = events or []
        self._upstream = upstream or {}
        self.refresh_calls = []
        self._error = error
        self._delay = delay
        self.calls = []
        self.closed = False

    async def fetch_since(self, since):
        self.calls.append(since)
        if self._delay:
            await asyncio.sleep(self._delay)
        if self._error:
            raise self._error
        return list(self._events)

    async def fetch_by_keys(self, keys):
        keys = list(keys)
        self.refresh_calls.append(keys)
        return [self._upstream[key] for key in keys if key in self._upstream]

    async def aclose(self):
        self.closed = True


def _deployments(*run_ids, status=DeploymentStatus.SUCCESS):
    return FakeSource(
        "github",
        EntityKind.DEPLOYMENT,
        [DeploymentEvent(run_id=r, status=status, completed_at=T0) for r in run_ids],
    )


def _run(sources, marks, reconciler, timeout=5.0):
    return run_backfill(sources, marks, reconciler, now=NOW, overlap=OVERLAP, initial_lookback=LOOKBACK, timeout=timeout)


@pytest.mark.asyncio
async def test_first_run_uses_initial_lookback_and_advances_mark(reconciler, count_records):
    source = _deployments("101", "102")

    result = await _run([source], {}, reconciler)

    assert source.calls == [NOW - LOOKBACK]
    assert result.marks == {"github": NOW}
    report = result.reports["github"]
    assert (report.fetched, report.created, report.advanced) == (2, 2, True)
    assert await count_records(Deployment) == 2


@pytest.mark.asyncio
async def test_subsequent_run_overlaps_previous_mark(reconciler):
    source = _deployments("101")
    mark = NOW - timedelta(hours=1)

    result = await _run([source], {"github": mark}, reconciler)

    assert source.calls == [mark - OVERLAP]
    assert result.marks["github"] == NOW


@pytest.mark.asyncio
async def test_refetching_known_records_is_unchanged(reconciler):
    source = _deployments("101")
    await _run([source], {}, reconciler)

    result = await _run([source], {"github": NOW}, reconciler)

    assert result.reports["github"].unchanged == 1
    assert result.reports["github"].created == 0


@pytest.mark.asyncio
async def test_failing_source_keeps_its_mark_and_does_not_block_others(reconciler, count_records):
    old_mark = NOW - timedelta(hours=2)
    broken = FakeSource("github", EntityKind.DEPLOYMENT, error=ExternalSourceError("github", "502"))
    healthy = FakeSource(
        "pagerduty",
        EntityKind.INCIDENT,
        [IncidentEvent(incident_number="55", status=IncidentStatus.TRIGGERED, created_at=T0)],
    )

    result = await _run([broken, healthy], {"github": old_mark}, reconciler)

    assert result.marks == {"github": old_mark, "pagerduty": NOW}
    assert result.reports["github"].advanced is False
    assert "502" in result.reports["github"].error
    assert result.reports["pagerduty"].created == 1
    assert await count_records(Incident) == 1


@pytest.mark.asyncio
async def test_slow_source_times_out_without_advancing(reconciler):
    slow = FakeSource("github", EntityKind.DEPLOYMENT, delay=1.0)

    result = await _run([slow], {}, reconciler, timeout=0.01)

    assert "timed out" in result.reports["github"].error
    assert "github" not in result.marks


@pytest.mark.asyncio
async def test_conflicting_record_is_skipped_and_batch_still_advances(reconciler, count_records):
    await reconciler.reconcile(EntityKind.INCIDENT, "55", {"status": "triggered", "start_time": T0})
    source = FakeSource(
        "pagerduty",
        EntityKind.INCIDENT,
        [
            IncidentEvent(incident_number="55", status=IncidentStatus.RESOLVED,
                          created_at=T0 + timedelta(minutes=5), resolved_at=T0 + timedelta(hours=1)),
            IncidentEvent(incident_number="56", status=IncidentStatus.TRIGGERED, created_at=T0),
        ],
    )

    result = await _run([source], {}, reconciler)

    report = result.reports["pagerduty"]
    assert (report.skipped, report.created, report.advanced) == (1, 1, True)
    assert result.marks["pagerduty"] == NOW
    assert await count_records(Incident) == 2


@pytest.mark.asyncio
async def test_store_failure_aborts_source_without_advancing():
    reconciler = AsyncMock()
    reconciler.open_keys.return_value = []
    reconciler.reconcile.side_effect = [ReconcileOutcome.CREATED, StoreError("connection lost")]
    source = _deployments("101", "102", "103")

    result = await _run([source], {}, reconciler)

    report = result.reports["github"]
    assert report.created == 1
    assert report.advanced is False
    assert "connection lost" in report.error
    assert result.marks == {}
    assert reconciler.reconcile.await_count == 2


@pytest.mark.asyncio
async def test_mark_never_moves_backwards(reconciler):
    future_mark = NOW + timedelta(hours=1)

    result = await _run([_deployments("101")], {"github": future_mark}, reconciler)

    assert result.marks["github"] == future_mark


@pytest.mark.asyncio
async def test_watermark_store_round_trip(session_factory):
    watermarks = WatermarkStore(session_factory)
    assert await watermarks.load() == {}

    await watermarks.save({"github": T0, "pagerduty": NOW})
    await watermarks.save({"github": NOW})

    assert await watermarks.load() == {"github": NOW, "pagerduty": NOW}


@pytest.mark.asyncio
async def test_trigger_loads_runs_and_persists_marks(session_factory, reconciler):
    watermarks = WatermarkStore(session_factory)
    source = _deployments("101")
    scheduler = BackfillSchedulerService(reconciler, watermarks, [source], timeout=5.0)

    result = await scheduler.trigger()

    assert result is not None
    assert scheduler.last_result is result
    assert result.reports["github"].created == 1
    assert "github" in await watermarks.load()


@pytest.mark.asyncio
async def test_trigger_keeps_marks_when_watermark_store_is_down(reconciler):
    watermarks = AsyncMock()
    watermarks.load.side_effect = StoreError("database unreachable")
    scheduler = BackfillSchedulerService(reconciler, watermarks, [_deployments("101")])

    assert await scheduler.trigger() is None
    assert scheduler.last_result is None
    watermarks.save.assert_not_awaited()


@pytest.mark.asyncio
async def test_tick_is_skipped_while_a_run_is_in_progress(reconciler):
    watermarks = AsyncMock()
    watermarks.load.return_value = {}
    slow = FakeSource("github", EntityKind.DEPLOYMENT, delay=0.2)
    scheduler = BackfillSchedulerService(reconciler, watermarks, [slow], timeout=5.0)

    assert scheduler.tick() is True
    await asyncio.sleep(0)
    assert scheduler.tick() is False
    assert await scheduler.trigger() is None

    await scheduler._run_task
    assert len(slow.calls) == 1
    assert scheduler.tick() is True
    await scheduler._run_task


@pytest.mark.asyncio
async def test_stop_cancels_loop_and_closes_sources(reconciler):
    watermarks = AsyncMock()
    watermarks.load.return_value = {}
    source = _deployments()
    scheduler = BackfillSchedulerService(reconciler, watermarks, [source], interval=3600)

    await scheduler.start()
    await asyncio.sleep(0.05)
    await scheduler.stop()

    assert source.closed is True
    assert scheduler._tick_task.done()


def _iso(value):
    return value.strftime("%Y-%m-%dT%H:%M:%SZ")


@pytest.mark.asyncio
async def test_resolution_of_incident_older_than_overlap_is_repaired(reconciler, fetch_record):
    created = NOW - timedelta(hours=2)
    resolved = NOW - timedelta(minutes=30)
    await reconciler.reconcile(EntityKind.INCIDENT, "55", {"status": "triggered", "start_time": created})
    upstream = {"incident_number": 55, "status": "resolved", "created_at": _iso(created), "resolved_at": _iso(resolved)}
    lookups = []

    def handler(request: httpx.Request) -> httpx.Response:
        if request.url.path == "/incidents":
            # The list endpoint only returns incidents created at or after `since`.
            since = datetime.fromisoformat(request.url.params["since"].replace(" ", "+"))
            return httpx.Response(200, json={"incidents": [upstream] if created >= since else [], "more": False})
        if request.url.path == "/incidents/55":
            lookups.append(request.url.path)
            return httpx.Response(200, json={"incident": upstream})
        return httpx.Response(404)

    source = PagerDutySource(
        "token",
        client=httpx.AsyncClient(transport=httpx.MockTransport(handler), base_url="https://api.pagerduty.test"),
    )
    marks = {"pagerduty": NOW - timedelta(hours=1)}

    first = await _run([source], marks, reconciler)
    second = await _run([source], first.marks, reconciler)

    assert first.reports["pagerduty"].fetched == 0
    assert first.reports["pagerduty"].refreshed == 1
    assert first.reports["pagerduty"].updated == 1
    assert first.marks["pagerduty"] == NOW
    assert second.reports["pagerduty"].refreshed == 0
    assert lookups == ["/incidents/55"]
    state = await fetch_record(EntityKind.INCIDENT, "55")
    assert state.status is IncidentStatus.RESOLVED
    assert state.end_time == resolved


@pytest.mark.asyncio
async def test_open_deployments_are_refreshed_by_key(reconciler, fetch_record):
    await reconciler.reconcile(EntityKind.DEPLOYMENT, "101", {"status": "in_progress"})
    await reconciler.reconcile(EntityKind.DEPLOYMENT, "102", {"status": "in_progress"})
    source = FakeSource(
        "github",
        EntityKind.DEPLOYMENT,
        events=[DeploymentEvent(run_id="102", status=DeploymentStatus.FAILURE, completed_at=T0)],
        upstream={"101": DeploymentEvent(run_id="101", status=DeploymentStatus.SUCCESS, completed_at=T0)},
    )

    result = await _run([source], {"github": NOW - timedelta(minutes=5)}, reconciler)

    # 102 came back through the window, so only 101 is looked up individually.
    assert source.refresh_calls == [["101"]]
    assert (result.reports["github"].fetched, result.reports["github"].refreshed) == (1, 1)
    assert (await fetch_record(EntityKind.DEPLOYMENT, "101")).status is DeploymentStatus.SUCCESS
    assert (await fetch_record(EntityKind.DEPLOYMENT, "102")).status is DeploymentStatus.FAILURE


@pytest.mark.asyncio
async def test_refresh_failure_keeps_mark(reconciler):
    await reconciler.reconcile(EntityKind.DEPLOYMENT, "101", {"status": "in_progress"})

    class BrokenLookupSource(FakeSource):
        async def fetch_by_keys(self, keys):
            raise ExternalSourceError("github", "GET /repos/acme/shop/actions/runs/101 returned 502")

    mark = NOW - timedelta(hours=1)
    result = await _run([BrokenLookupSource("github", EntityKind.DEPLOYMENT)], {"github": mark}, reconciler)

    assert result.marks["github"] == mark
    assert "502" in result.reports["github"].error


@pytest.mark.asyncio
async def test_unreadable_open_set_aborts_source():
    reconciler = AsyncMock()
    reconciler.open_keys.side_effect = StoreError("connection lost")
    source = _deployments("101")

    result = await _run([source], {}, reconciler)

    assert result.reports["github"].advanced is False
    assert result.marks == {}
    reconciler.reconcile.assert_not_awaited()
