import logging
from dataclasses import dataclass
from typing import Any, Dict, Optional

import stripe
from sqlalchemy.exc import DBAPIError
from sqlalchemy.orm import Session

from subscription_sync_svc.errors import (
    HandlerPreconditionMiss,
    MalformedEventError,
    WebhookError,
    from_store_error,
    from_stripe_error,
)
from subscription_sync_svc.event_handlers import EventContext
from subscription_sync_svc.event_router import route
from subscription_sync_svc.event_types import EventType
from subscription_sync_svc.ledger import EventLedger
from subscription_sync_svc.models.base import from_unix, utcnow
from subscription_sync_svc.side_effects import SideEffectPlan
from subscription_sync_svc.stripe_integration import StripeIntegration

APPLIED = "applied"
DUPLICATE = "duplicate"
IGNORED = "ignored"
SKIPPED = "skipped"


@dataclass
class ProcessingResult:
    event_id: str
    event_type: str
    outcome: str
    side_effects: Optional[SideEffectPlan] = None

    @property
    def duplicate(self) -> bool:
        return self.outcome == DUPLICATE


def process_event(event: Dict[str, Any], db: Session,
                  stripe_integration: Optional[StripeIntegration] = None) -> ProcessingResult:
    """
    Apply a verified Stripe event to stored subscription state exactly once.

    The handler's changes and the ledger row are committed in one
    transaction. Duplicates, unknown event types and events whose subject is
    not known locally are acknowledged without changing state.

    :param event: Dictionary representing the Stripe event payload.
    :param db: SQLAlchemy Session instance; committed or rolled back here.
    :param stripe_integration: Client used to re-fetch summary-only objects.
    :raises MalformedEventError: if the event lacks an id or type.
    :raises TransientStoreError: if the store is unreachable.
    :raises ProviderError: if a Stripe re-fetch fails.
    """
    event_type = event.get('type')
    if not event_type:
        error_msg = "Missing 'type' in event payload"
        logging.error(error_msg)
        raise MalformedEventError(error_msg)
    event_id = event.get('id')
    if not event_id:
        error_msg = "Missing 'id' in event payload"
        logging.error(error_msg)
        raise MalformedEventError(error_msg)

    created_at = from_unix(event.get('created')) or utcnow()
    ledger = EventLedger(db)

    try:
        if ledger.is_recorded(event_id):
            logging.info(f"Event {event_id} already processed, skipping")
            return ProcessingResult(event_id, event_type, DUPLICATE)
    except DBAPIError as e:
        db.rollback()
        raise from_store_error(e, event_id) from e

    handler = route(event_type)
    if handler is None:
        return ProcessingResult(event_id, event_type, IGNORED)

    ctx = EventContext(
        db=db,
        event=event,
        event_id=event_id,
        event_type=EventType(event_type),
        created_at=created_at,
        stripe=stripe_integration or StripeIntegration(),
    )
    try:
        result = handler(ctx)
    except HandlerPreconditionMiss as e:
        db.rollback()
        logging.warning(f"Event {event_id} ({event_type}) skipped: {e.message}")
        return ProcessingResult(event_id, event_type, SKIPPED)
    except WebhookError as e:
        db.rollback()
        e.event_id = e.event_id or event_id
        raise
    except stripe.StripeError as e:
        db.rollback()
        raise from_stripe_error(e, event_id) from e
    except DBAPIError as e:
        db.rollback()
        logging.error(e, exc_info=True)
        raise from_store_error(e, event_id) from e
    except Exception as e:
        db.rollback()
        logging.error(e, exc_info=True)
        raise

    ledger.record(event_id, event_type, created_at, result.entry)
    if not ledger.commit(event_id):
        return ProcessingResult(event_id, event_type, DUPLICATE)

    logging.info(f"Event {event_id} at {created_at}: {event_type} processed successfully ({result.entry.action.value}).")
    return ProcessingResult(event_id, event_type, APPLIED, result.side_effects)
