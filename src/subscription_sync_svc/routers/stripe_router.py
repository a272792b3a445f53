import time
import logging
from typing import Optional

from fastapi import APIRouter, BackgroundTasks, Depends, Request, status
from fastapi.responses import JSONResponse
from pydantic import BaseModel
from starlette.concurrency import run_in_threadpool

from subscription_sync_svc.config import Settings, get_settings
from subscription_sync_svc.errors import (
    AuthenticationError,
    MalformedEventError,
    WebhookError,
    classify_error,
)
from subscription_sync_svc.models.base import get_db
from subscription_sync_svc.side_effects import SideEffectDispatcher, get_side_effect_dispatcher
from subscription_sync_svc.stripe_event_processor import process_event
from subscription_sync_svc.stripe_integration import StripeIntegration

router = APIRouter()


class WebhookResponse(BaseModel):
    received: bool
    processed: bool
    event_id: str
    processing_time_ms: int
    duplicate: bool = False
    outcome: str


class WebhookErrorResponse(BaseModel):
    error: str
    should_retry: bool
    error_type: str
    event_id: Optional[str] = None
    processing_time_ms: int


def _elapsed_ms(start: float) -> int:
    return int((time.perf_counter() - start) * 1000)


@router.post("/webhook", status_code=200, response_model=WebhookResponse)
async def process_webhook(
    request: Request,
    background_tasks: BackgroundTasks,
    db=Depends(get_db),
    settings: Settings = Depends(get_settings),
    dispatcher: SideEffectDispatcher = Depends(get_side_effect_dispatcher),
):
    start = time.perf_counter()
    payload = await request.body()
    sig_header = request.headers.get("Stripe-Signature")
    if not sig_header:
        logging.error("Missing Stripe signature")
        return JSONResponse(status_code=status.HTTP_400_BAD_REQUEST, content={"error": "Missing signature"})
    endpoint_secret = settings.stripe_endpoint_secret
    if not endpoint_secret:
        logging.error("Stripe endpoint secret not configured")
        return JSONResponse(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            content={"error": "Webhook not properly configured", "should_retry": False},
        )

    stripe_integration = StripeIntegration()
    try:
        event = stripe_integration.process_webhook_event(payload, sig_header, endpoint_secret)
    except AuthenticationError as e:
        return JSONResponse(status_code=status.HTTP_400_BAD_REQUEST, content={"error": e.message})
    except MalformedEventError as e:
        # Verified but unreadable; acknowledge so Stripe stops redelivering it
        body = WebhookErrorResponse(
            error=e.message,
            should_retry=e.should_retry,
            error_type=e.__class__.__name__,
            processing_time_ms=_elapsed_ms(start),
        )
        return JSONResponse(status_code=e.status_code, content=body.model_dump())

    event_id = event.get("id")
    logging.info(f"Processing webhook event: {event.get('type')} ({event_id})")
    try:
        result = await run_in_threadpool(process_event, event, db, stripe_integration)
    except Exception as e:
        elapsed = _elapsed_ms(start)
        classification = classify_error(e)
        logging.error(f"Webhook processing error for {event_id} after {elapsed}ms: {e}", exc_info=True)
        body = WebhookErrorResponse(
            error=e.message if isinstance(e, WebhookError) else "Webhook processing failed",
            should_retry=classification.should_retry,
            error_type=classification.error_type,
            event_id=event_id,
            processing_time_ms=elapsed,
        )
        return JSONResponse(status_code=classification.status_code, content=body.model_dump())

    if result.side_effects is not None:
        background_tasks.add_task(dispatcher.dispatch, result.side_effects)

    elapsed = _elapsed_ms(start)
    if elapsed > settings.handler_time_budget_ms:
        logging.warning(f"Webhook {event_id} took {elapsed}ms, over the {settings.handler_time_budget_ms}ms budget")
    logging.info(f"Webhook {result.event_type} ({event_id}) {result.outcome} in {elapsed}ms")
    return WebhookResponse(
        received=True,
        processed=True,
        event_id=event_id,
        processing_time_ms=elapsed,
        duplicate=result.duplicate,
        outcome=result.outcome,
    )
