"""
Webhooks Router.
Push ingest path for the CI/CD and incident platforms. Each request is
reconciled synchronously; the 200 ack is only sent after the write commits,
so an upstream retry on timeout is the only duplicate this path produces.
"""
import json
from typing import Any

from fastapi import APIRouter, Depends, Request

from ...exceptions import ValidationError
from ...schemas.webhook import WebhookAck
from ...webhooks.service import WebhookIngestService
from ..dependencies import get_webhook_service

router = APIRouter(tags=["Webhooks"])


async def _json_body(request: Request) -> Any:
    try:
        return await request.json()
    except (json.JSONDecodeError, UnicodeDecodeError):
        raise ValidationError("Request body must be valid JSON")


@router.post("/github", response_model=WebhookAck)
async def github_webhook(request: Request, service: WebhookIngestService = Depends(get_webhook_service)):
    """GitHub Actions workflow_run events; only completed runs change the store."""
    payload = await _json_body(request)
    return await service.handle_github_event(payload)


@router.post("/pagerduty", response_model=WebhookAck)
async def pagerduty_webhook(request: Request, service: WebhookIngestService = Depends(get_webhook_service)):
    """PagerDuty incident events; triggered, acknowledged and resolved change the store."""
    payload = await _json_body(request)
    return await service.handle_pagerduty_event(payload)
