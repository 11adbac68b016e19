import logging
from typing import Any, Callable, Optional

from ..reconciler.service import Reconciler
from ..schemas.webhook import WebhookAck
from .normalizer import NormalizedEvent, normalize_github_event, normalize_pagerduty_event

logger = logging.getLogger("dora-core.webhooks")


class WebhookIngestService:
    """
    Webhook Ingest Path.
    Responsibility: normalize push events and reconcile them synchronously.
    Holds no state; the acknowledgment is built only after the reconciler's
    transaction has committed.
    """

    def __init__(self, reconciler: Reconciler):
        self._reconciler = reconciler

    async def handle_github_event(self, payload: Any) -> WebhookAck:
        return await self._handle("github", payload, normalize_github_event)

    async def handle_pagerduty_event(self, payload: Any) -> WebhookAck:
        return await self._handle("pagerduty", payload, normalize_pagerduty_event)

    async def _handle(
        self,
        source: str,
        payload: Any,
        normalize: Callable[[Any], Optional[NormalizedEvent]],
    ) -> WebhookAck:
        event = normalize(payload)
        if event is None:
            logger.debug(f"Ignoring {source} webhook with no store effect")
            return WebhookAck(outcome="ignored")

        outcome = await self._reconciler.reconcile(event.kind, event.external_key, event.observed)
        logger.info(f"{source} webhook: {event.kind.value} {event.external_key} {outcome.value}")
        return WebhookAck(outcome=outcome.value)
