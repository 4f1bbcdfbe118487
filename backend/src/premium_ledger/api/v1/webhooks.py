"""Webhook endpoints for external services."""

from typing import Any

from fastapi import APIRouter, Depends, HTTPException, Request, status
from sqlalchemy.exc import IntegrityError
from starlette.concurrency import run_in_threadpool

from premium_ledger.logging_config import get_logger
from premium_ledger.payments.events import MalformedEventError, parse_event
from premium_ledger.payments.reconciler import WebhookReconciler
from premium_ledger.storage.db import Database
from premium_ledger.storage.repo import WebhookEventRepository

logger = get_logger(__name__)

router = APIRouter(prefix="/webhooks", tags=["webhooks"])

SOURCE = "stripe"


def get_gateway(request: Request) -> Any:
    return request.app.state.gateway


def get_reconciler(request: Request) -> WebhookReconciler:
    return request.app.state.reconciler


def get_database(request: Request) -> Database:
    return request.app.state.database


def is_event_processed(database: Database, event_id: str) -> bool:
    with database.session() as session:
        return WebhookEventRepository(session).is_processed(event_id, SOURCE)


def mark_event_processed(database: Database, event_id: str, event_type: str, now) -> None:
    """Record a handled event; a concurrent delivery may already have done so."""
    try:
        with database.session() as session:
            WebhookEventRepository(session).mark_processed(event_id, event_type, SOURCE, now)
    except IntegrityError:
        logger.info("stripe_webhook_already_marked", event_id=event_id)


@router.post("/stripe")
async def stripe_webhook(
    request: Request,
    gateway: Any = Depends(get_gateway),
    reconciler: WebhookReconciler = Depends(get_reconciler),
    database: Database = Depends(get_database),
):
    """Handle Stripe webhook events.

    Verifies the signature, decodes the event and hands it to the
    reconciler. Business no-ops are acknowledged; malformed payloads get a
    400 and handler failures a 500 so that Stripe redelivers.
    """
    payload = await request.body()
    sig_header = request.headers.get("stripe-signature", "")

    try:
        raw_event = gateway.verify_webhook_signature(payload, sig_header)
    except ValueError as e:
        logger.warning("stripe_webhook_invalid", error=str(e))
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))

    try:
        event = parse_event(raw_event)
    except MalformedEventError as e:
        logger.warning("stripe_webhook_malformed", error=str(e))
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))

    if event.id and await run_in_threadpool(is_event_processed, database, event.id):
        logger.info("stripe_webhook_duplicate", event_id=event.id, event_type=event.type)
        return {"received": True, "duplicate": True}

    try:
        await run_in_threadpool(reconciler.dispatch, event)
    except MalformedEventError as e:
        logger.warning("stripe_webhook_malformed", event_id=event.id, error=str(e))
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))
    except Exception as e:
        logger.error("stripe_webhook_error", event_id=event.id, event_type=event.type, error=str(e))
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Error processing event",
        )

    # Mark as processed AFTER successful handling
    if event.id:
        await run_in_threadpool(mark_event_processed, database, event.id, event.type, reconciler.clock.now())

    return {"received": True}
