"""
FastAPI dependency providers.
Routers receive their services through these so tests can swap the session
factory (or a whole service) via app.dependency_overrides.
"""
from fastapi import Depends
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from ..config import settings
from ..database.session import async_session_maker
from ..metrics.engine import MetricEngine
from ..reconciler.service import Reconciler
from ..webhooks.service import WebhookIngestService


def get_session_factory() -> async_sessionmaker[AsyncSession]:
    return async_session_maker


def get_reconciler(session_factory=Depends(get_session_factory)) -> Reconciler:
    return Reconciler(session_factory)


def get_webhook_service(reconciler: Reconciler = Depends(get_reconciler)) -> WebhookIngestService:
    return WebhookIngestService(reconciler)


def get_metric_engine(session_factory=Depends(get_session_factory)) -> MetricEngine:
    return MetricEngine(session_factory, mttr_baseline_seconds=settings.MTTR_BASELINE_SECONDS)
