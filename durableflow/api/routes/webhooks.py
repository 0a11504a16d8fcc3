"""
Webhook Trigger Routes.

``POST /webhooks/{webhook_id}`` resumes the run parked on that webhook
or, when none is, starts a new run of the registered graph.
"""

from typing import Any, Dict, Optional
from fastapi import APIRouter, Depends, HTTPException, Request
import hmac
import logging
import secrets
import time

from durableflow.api.schemas import ErrorResponse
from durableflow.engine.errors import CheckpointConflict, GraphValidationError, ThreadBusy
from durableflow.engine.executor import ResumeEvent, ResumeKind
from durableflow.engine.state import utcnow
from durableflow.runtime import Runtime, get_runtime
from durableflow.storage.memory import WebhookRegistration


logger = logging.getLogger(__name__)

router = APIRouter(prefix="/webhooks", tags=["Webhooks"])


def _presented_token(request: Request) -> Optional[str]:
    auth = request.headers.get("authorization", "")
    if auth.lower().startswith("bearer "):
        return auth[7:].strip()
    return request.query_params.get("token")


async def _require_webhook(runtime: Runtime, webhook_id: str) -> WebhookRegistration:
    registration = await runtime.webhooks.get(webhook_id)
    if registration is None or not registration.enabled:
        raise HTTPException(status_code=404, detail="Webhook not found or disabled")
    return registration


async def _read_body(request: Request) -> Any:
    raw = await request.body()
    if not raw:
        return None
    try:
        return await request.json()
    except ValueError:
        return raw.decode("utf-8", errors="replace")


@router.post(
    "/{webhook_id}",
    responses={401: {"model": ErrorResponse}, 404: {"model": ErrorResponse}, 409: {"model": ErrorResponse}},
)
async def trigger_webhook(
    webhook_id: str,
    request: Request,
    runtime: Runtime = Depends(get_runtime),
) -> Dict[str, Any]:
    """
    Receive a webhook call.

    When the webhook has a secret, callers must present it as
    ``Authorization: Bearer <secret>`` or ``?token=<secret>``.
    """
    registration = await _require_webhook(runtime, webhook_id)
    if registration.secret:
        token = _presented_token(request)
        if not token or not hmac.compare_digest(token, registration.secret):
            raise HTTPException(status_code=401, detail="Invalid webhook secret")

    body = await _read_body(request)
    await runtime.webhooks.mark_triggered(webhook_id)

    engine = runtime.engine
    suspension = await engine.suspensions.find_by_webhook(webhook_id)
    try:
        if suspension is not None:
            logger.info(f"Webhook '{webhook_id}' resuming thread '{suspension.thread_id}'")
            result = await engine.resume(
                suspension.thread_id,
                ResumeEvent(kind=ResumeKind.WEBHOOK, payload=body, id=webhook_id),
            )
            return {"mode": "resumed", **result.to_dict()}

        stored = await runtime.graphs.get(registration.graph_id)
        if stored is None:
            raise HTTPException(status_code=404, detail=f"Graph '{registration.graph_id}' not found")

        payload = {
            "body": body,
            "query": dict(request.query_params),
            "headers": dict(request.headers),
            "webhookId": webhook_id,
            "timestamp": utcnow().isoformat(),
        }
        thread_id = f"webhook_{webhook_id}_{int(time.time() * 1000)}_{secrets.token_hex(4)}"
        logger.info(f"Webhook '{webhook_id}' starting thread '{thread_id}'")
        result = await engine.run(stored.build(), payload, thread_id=thread_id)
        return {"mode": "started", **result.to_dict()}

    except GraphValidationError as e:
        raise HTTPException(status_code=400, detail=str(e))
    except (CheckpointConflict, ThreadBusy) as e:
        raise HTTPException(status_code=409, detail=str(e))


@router.get("/{webhook_id}", responses={404: {"model": ErrorResponse}})
async def webhook_info(webhook_id: str, runtime: Runtime = Depends(get_runtime)) -> Dict[str, Any]:
    """Liveness check for a webhook URL."""
    registration = await _require_webhook(runtime, webhook_id)
    return {
        "message": "Webhook endpoint is active. Send a POST request to trigger the workflow.",
        "webhookId": webhook_id,
        "graphId": registration.graph_id,
        "method": "POST",
    }
