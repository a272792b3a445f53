from enum import Enum
from typing import Optional


class EventType(str, Enum):
    """Webhook event types this service acts on, keyed by Stripe's type string."""

    CHECKOUT_COMPLETED = "checkout.session.completed"
    SUBSCRIPTION_CREATED = "customer.subscription.created"
    SUBSCRIPTION_UPDATED = "customer.subscription.updated"
    SUBSCRIPTION_DELETED = "customer.subscription.deleted"
    TRIAL_WILL_END = "customer.subscription.trial_will_end"
    PAYMENT_SUCCEEDED = "invoice.payment_succeeded"
    PAYMENT_FAILED = "invoice.payment_failed"
    INVOICE_UPCOMING = "invoice.upcoming"
    PAYMENT_ACTION_REQUIRED = "invoice.payment_action_required"
    CUSTOMER_UPDATED = "customer.updated"
    PAYMENT_METHOD_ATTACHED = "payment_method.attached"
    SUBSCRIPTION_PAUSED = "customer.subscription.paused"
    SUBSCRIPTION_RESUMED = "customer.subscription.resumed"

    @classmethod
    def parse(cls, value: Optional[str]) -> Optional["EventType"]:
        try:
            return cls(value)
        except ValueError:
            return None
