import logging
from typing import Callable, Dict, Optional

from subscription_sync_svc import event_handlers as h
from subscription_sync_svc.event_types import EventType

Handler = Callable[[h.EventContext], h.HandlerResult]

HANDLERS: Dict[EventType, Handler] = {
    EventType.CHECKOUT_COMPLETED: h.handle_checkout_completed,
    EventType.SUBSCRIPTION_CREATED: h.handle_subscription_created,
    EventType.SUBSCRIPTION_UPDATED: h.handle_subscription_updated,
    EventType.SUBSCRIPTION_DELETED: h.handle_subscription_deleted,
    EventType.TRIAL_WILL_END: h.handle_trial_will_end,
    EventType.PAYMENT_SUCCEEDED: h.handle_payment_succeeded,
    EventType.PAYMENT_FAILED: h.handle_payment_failed,
    EventType.INVOICE_UPCOMING: h.handle_invoice_upcoming,
    EventType.PAYMENT_ACTION_REQUIRED: h.handle_payment_action_required,
    EventType.CUSTOMER_UPDATED: h.handle_customer_updated,
    EventType.PAYMENT_METHOD_ATTACHED: h.handle_payment_method_attached,
    EventType.SUBSCRIPTION_PAUSED: h.handle_subscription_paused,
    EventType.SUBSCRIPTION_RESUMED: h.handle_subscription_resumed,
}

_unhandled = [t.value for t in EventType if t not in HANDLERS]
if _unhandled:
    raise RuntimeError(f"Event types without a handler: {', '.join(_unhandled)}")


def route(event_type: str) -> Optional[Handler]:
    """
    Look up the handler for a raw provider event type.

    Unknown types return None; they are acknowledged, not rejected, so new
    provider event types do not cause redelivery storms.
    """
    parsed = EventType.parse(event_type)
    if parsed is None:
        logging.info(f"Unhandled event type: {event_type}. No action taken.")
        return None
    return HANDLERS[parsed]
