"""
One handler per webhook event type.

Handlers only stage changes on ``ctx.db``; they never commit. The processor
adds the ledger row and commits both together. A handler returns what
should be written to the ledger plus the side effects to run after commit,
or raises :class:`HandlerPreconditionMiss` when the event's subject is not
known locally.
"""
import datetime
import logging
import math
import uuid
from dataclasses import dataclass
from typing import Any, Dict, Optional

from sqlalchemy.orm import Session

from subscription_sync_svc.errors import HandlerPreconditionMiss, MalformedEventError
from subscription_sync_svc.event_types import EventType
from subscription_sync_svc.ledger import LedgerEntry
from subscription_sync_svc.models.base import from_unix, utcnow
from subscription_sync_svc.models.company import Company
from subscription_sync_svc.models.payment import Payment, PaymentStatus
from subscription_sync_svc.models.subscription import BillingPeriod, Subscription, SubscriptionStatus
from subscription_sync_svc.models.subscription_history import HistoryAction
from subscription_sync_svc.models.user import User
from subscription_sync_svc.side_effects import SideEffectPlan
from subscription_sync_svc.state_machine import SubscriptionStateMachine, map_provider_status
from subscription_sync_svc.stripe_integration import StripeIntegration

state_machine = SubscriptionStateMachine()


@dataclass
class EventContext:
    db: Session
    event: Dict[str, Any]
    event_id: str
    event_type: EventType
    created_at: datetime.datetime
    stripe: StripeIntegration

    @property
    def obj(self) -> Dict[str, Any]:
        return (self.event.get("data") or {}).get("object") or {}

    @property
    def previous_attributes(self) -> Dict[str, Any]:
        return (self.event.get("data") or {}).get("previous_attributes") or {}


@dataclass
class HandlerResult:
    entry: LedgerEntry
    side_effects: Optional[SideEffectPlan] = None


# ---------------------------------------------------------------------------
# payload helpers

def _first_price(subscription_obj: Optional[Dict[str, Any]]) -> Dict[str, Any]:
    items = ((subscription_obj or {}).get("items") or {}).get("data") or []
    if not items:
        return {}
    return items[0].get("price") or {}


def _amount(subscription_obj: Optional[Dict[str, Any]]) -> int:
    return _first_price(subscription_obj).get("unit_amount") or 0


def _billing_period(subscription_obj: Optional[Dict[str, Any]]) -> Optional[str]:
    recurring = _first_price(subscription_obj).get("recurring")
    if not recurring:
        return None
    return BillingPeriod.ANNUAL.value if recurring.get("interval") == "year" else BillingPeriod.MONTHLY.value


def _period(subscription_obj: Dict[str, Any], name: str) -> Optional[datetime.datetime]:
    # Newer API versions moved billing periods onto subscription items
    value = subscription_obj.get(name)
    if value is None:
        items = (subscription_obj.get("items") or {}).get("data") or []
        if items:
            value = items[0].get(name)
    return from_unix(value)


def _ref_id(value: Any) -> Optional[str]:
    """Stripe references are either an id string or an expanded object."""
    if isinstance(value, dict):
        return value.get("id")
    return value


def _invoice_subscription_id(invoice: Dict[str, Any]) -> Optional[str]:
    sub_ref = _ref_id(invoice.get("subscription"))
    if sub_ref:
        return sub_ref
    details = ((invoice.get("parent") or {}).get("subscription_details") or {})
    return _ref_id(details.get("subscription"))


def _subscription_object(ctx: EventContext) -> Dict[str, Any]:
    """Return the full subscription, re-fetching it when the payload is summary-only."""
    obj = ctx.obj
    if obj.get("status") is not None and obj.get("items") is not None:
        return obj
    subscription_id = obj.get("id")
    if not subscription_id:
        raise MalformedEventError("Subscription event without subscription id", ctx.event_id)
    logging.info(f"Event {ctx.event_id} carries a summary-only subscription; fetching {subscription_id} from Stripe.")
    return ctx.stripe.retrieve_subscription(subscription_id)


def _find_subscription(db: Session, external_subscription_id: Optional[str]) -> Subscription:
    subscription = None
    if external_subscription_id:
        subscription = (
            db.query(Subscription)
            .filter(Subscription.external_subscription_id == external_subscription_id)
            .first()
        )
    if subscription is None:
        raise HandlerPreconditionMiss(f"Subscription {external_subscription_id} not found")
    return subscription


def _find_subscription_by_customer(db: Session, customer_id: Optional[str]) -> Subscription:
    subscription = None
    if customer_id:
        subscription = (
            db.query(Subscription)
            .filter(Subscription.external_customer_id == customer_id)
            .order_by(Subscription.created_at.desc())
            .first()
        )
    if subscription is None:
        raise HandlerPreconditionMiss(f"No subscription for customer {customer_id}")
    return subscription


def _live_subscription(db: Session, user_id: str) -> Optional[Subscription]:
    """The user's subscription that has started and not been canceled, if any."""
    return (
        db.query(Subscription)
        .filter(
            Subscription.user_id == user_id,
            Subscription.status.notin_([SubscriptionStatus.NONE.value, SubscriptionStatus.CANCELED.value]),
        )
        .order_by(Subscription.created_at.desc())
        .first()
    )


def _entry_for(subscription: Subscription, action: HistoryAction, **kwargs: Any) -> LedgerEntry:
    return LedgerEntry(
        action=action,
        user_id=subscription.user_id,
        company_id=subscription.company_id,
        subscription_id=subscription.subscription_id,
        external_subscription_id=subscription.external_subscription_id,
        **kwargs,
    )


def _plan_for(subscription: Subscription, **kwargs: Any) -> SideEffectPlan:
    return SideEffectPlan(
        subscription_id=subscription.subscription_id,
        user_id=subscription.user_id,
        company_id=subscription.company_id,
        **kwargs,
    )


# ---------------------------------------------------------------------------
# subscription lifecycle

def handle_checkout_completed(ctx: EventContext) -> HandlerResult:
    session = ctx.obj
    metadata = session.get("metadata") or {}
    user_id = metadata.get("userId")
    company_id = metadata.get("companyId")
    plan_id = metadata.get("planId")
    if not user_id or not company_id or not plan_id:
        raise MalformedEventError(f"Missing metadata in checkout session: {metadata}", ctx.event_id)

    sub_ref = session.get("subscription")
    provider_sub = None
    if isinstance(sub_ref, dict) and sub_ref.get("status") is not None:
        provider_sub = sub_ref
    elif sub_ref:
        provider_sub = ctx.stripe.retrieve_subscription(_ref_id(sub_ref))
    external_id = provider_sub.get("id") if provider_sub else None

    if external_id:
        existing = (
            ctx.db.query(Subscription)
            .filter(Subscription.external_subscription_id == external_id)
            .first()
        )
        if existing is not None:
            raise HandlerPreconditionMiss(
                f"Subscription {external_id} already exists in status '{existing.status}'"
            )

    user = ctx.db.get(User, user_id)
    if user is None:
        raise HandlerPreconditionMiss(f"User {user_id} not found for checkout completion")
    current = _live_subscription(ctx.db, user_id)
    if current is not None:
        raise HandlerPreconditionMiss(
            f"User {user_id} already has subscription {current.subscription_id} in status '{current.status}'"
        )

    trialing = bool(provider_sub) and provider_sub.get("status") == "trialing"
    target = SubscriptionStatus.TRIALING if trialing else SubscriptionStatus.ACTIVE
    amount = _amount(provider_sub) if provider_sub else (session.get("amount_total") or 0)
    currency = ((provider_sub or {}).get("currency") or session.get("currency") or "usd").lower()

    subscription = Subscription(
        subscription_id=str(uuid.uuid4()),
        company_id=company_id,
        user_id=user_id,
        plan_id=plan_id,
        external_subscription_id=external_id,
        external_customer_id=_ref_id(session.get("customer")),
        status=SubscriptionStatus.NONE.value,
        current_period_start=_period(provider_sub, "current_period_start") if provider_sub else None,
        current_period_end=_period(provider_sub, "current_period_end") if provider_sub else None,
        trial_start=from_unix((provider_sub or {}).get("trial_start")),
        trial_end=from_unix((provider_sub or {}).get("trial_end")),
        billing_period=metadata.get("billingPeriod") or _billing_period(provider_sub),
        amount=amount,
        currency=currency,
    )
    ctx.db.add(subscription)

    result = state_machine.apply(ctx.event_type, subscription, user, ctx.created_at, target)
    user.subscription_start_date = utcnow()

    company = ctx.db.get(Company, company_id)
    if company is not None:
        company.company_subscription = plan_id

    logging.info(f"Checkout completed for user {user_id}, plan {plan_id}, status {result.new_status}")
    return HandlerResult(
        entry=_entry_for(
            subscription,
            HistoryAction.CREATED,
            previous_status=result.previous_status,
            new_status=result.new_status,
            new_plan=plan_id,
            amount=amount,
            currency=currency,
            billing_period=subscription.billing_period,
            metadata={
                "stripe_session_id": session.get("id"),
                "stripe_subscription_id": external_id,
                "checkout_completed": True,
            },
        ),
        side_effects=_plan_for(
            subscription,
            analytics_event="trial_started" if trialing else "subscription_created",
            notification_template="welcome",
            metadata={"planId": plan_id, "amount": amount, "currency": currency},
            occurred_at=ctx.created_at,
        ),
    )


def handle_subscription_created(ctx: EventContext) -> HandlerResult:
    obj = _subscription_object(ctx)
    metadata = obj.get("metadata") or {}
    user_id = metadata.get("userId")
    company_id = metadata.get("companyId")
    local = (
        ctx.db.query(Subscription)
        .filter(Subscription.external_subscription_id == obj.get("id"))
        .first()
    )
    if local is not None:
        user_id = user_id or local.user_id
        company_id = company_id or local.company_id
    if not user_id or not company_id:
        raise HandlerPreconditionMiss(f"Cannot attribute subscription {obj.get('id')} to a user")

    mapped = map_provider_status(obj.get("status"))
    return HandlerResult(
        entry=LedgerEntry(
            action=HistoryAction.CREATED,
            user_id=user_id,
            company_id=company_id,
            subscription_id=local.subscription_id if local else None,
            external_subscription_id=obj.get("id"),
            new_status=mapped.value if mapped else obj.get("status"),
            new_plan=metadata.get("planId"),
            amount=_amount(obj),
            currency=obj.get("currency"),
            billing_period=_billing_period(obj),
            metadata={
                "stripe_subscription_id": obj.get("id"),
                "trial_start": obj.get("trial_start"),
                "trial_end": obj.get("trial_end"),
            },
        ),
    )


def _snapshot(subscription: Subscription) -> Dict[str, Any]:
    return {
        "status": subscription.status,
        "plan_id": subscription.plan_id,
        "amount": subscription.amount,
        "currency": subscription.currency,
        "billing_period": subscription.billing_period,
        "current_period_start": subscription.current_period_start,
        "current_period_end": subscription.current_period_end,
        "trial_end": subscription.trial_end,
    }


def _diff(before: Dict[str, Any], after: Dict[str, Any]) -> Dict[str, Any]:
    changes = {}
    for key, old in before.items():
        new = after.get(key)
        if old != new:
            changes[key] = {
                "from": old.isoformat() if isinstance(old, datetime.datetime) else old,
                "to": new.isoformat() if isinstance(new, datetime.datetime) else new,
            }
    return changes


def handle_subscription_updated(ctx: EventContext) -> HandlerResult:
    obj = _subscription_object(ctx)
    subscription = _find_subscription(ctx.db, obj.get("id"))
    user = ctx.db.get(User, subscription.user_id)
    before = _snapshot(subscription)

    result = state_machine.apply(
        ctx.event_type, subscription, user, ctx.created_at, map_provider_status(obj.get("status"))
    )
    if not result.stale:
        subscription.current_period_start = _period(obj, "current_period_start") or subscription.current_period_start
        subscription.current_period_end = _period(obj, "current_period_end") or subscription.current_period_end
        subscription.trial_start = from_unix(obj.get("trial_start"))
        subscription.trial_end = from_unix(obj.get("trial_end"))
        subscription.amount = _amount(obj) or subscription.amount
        subscription.currency = (obj.get("currency") or subscription.currency).lower()
        subscription.billing_period = _billing_period(obj) or subscription.billing_period
        subscription.plan_id = (obj.get("metadata") or {}).get("planId") or subscription.plan_id
        subscription.updated_at = utcnow()
        state_machine.sync_mirror(subscription, user)

    changes = _diff(before, _snapshot(subscription))
    return HandlerResult(
        entry=_entry_for(
            subscription,
            HistoryAction.UPDATED,
            previous_status=result.previous_status,
            new_status=result.new_status,
            previous_plan=before["plan_id"],
            new_plan=subscription.plan_id,
            amount=subscription.amount,
            currency=subscription.currency,
            billing_period=subscription.billing_period,
            metadata={
                "stripe_subscription_id": obj.get("id"),
                "provider_status": obj.get("status"),
                "provider_previous_attributes": ctx.previous_attributes,
                "changes": changes,
                "stale": result.stale,
            },
        ),
        side_effects=None if result.stale or not changes else _plan_for(
            subscription,
            analytics_event="subscription_updated",
            metadata={"changes": sorted(changes)},
            occurred_at=ctx.created_at,
        ),
    )


def handle_subscription_deleted(ctx: EventContext) -> HandlerResult:
    obj = ctx.obj
    subscription = _find_subscription(ctx.db, obj.get("id"))
    user = ctx.db.get(User, subscription.user_id)
    result = state_machine.apply(ctx.event_type, subscription, user, ctx.created_at)
    logging.info(f"Subscription canceled: {obj.get('id')}")
    return HandlerResult(
        entry=_entry_for(
            subscription,
            HistoryAction.CANCELED,
            previous_status=result.previous_status,
            new_status=result.new_status,
            metadata={
                "stripe_subscription_id": obj.get("id"),
                "cancellation_reason": (obj.get("cancellation_details") or {}).get("reason"),
                "stale": result.stale,
            },
        ),
        side_effects=None if result.stale else _plan_for(
            subscription,
            analytics_event="subscription_canceled",
            notification_template="canceled",
            occurred_at=ctx.created_at,
        ),
    )


def handle_subscription_paused(ctx: EventContext) -> HandlerResult:
    obj = ctx.obj
    subscription = _find_subscription(ctx.db, obj.get("id"))
    user = ctx.db.get(User, subscription.user_id)
    result = state_machine.apply(ctx.event_type, subscription, user, ctx.created_at)
    return HandlerResult(
        entry=_entry_for(
            subscription,
            HistoryAction.PAUSED,
            previous_status=result.previous_status,
            new_status=result.new_status,
            metadata={
                "stripe_subscription_id": obj.get("id"),
                "pause_behavior": (obj.get("pause_collection") or {}).get("behavior"),
                "stale": result.stale,
            },
        ),
        side_effects=None if result.stale else _plan_for(
            subscription, analytics_event="subscription_paused", occurred_at=ctx.created_at
        ),
    )


def handle_subscription_resumed(ctx: EventContext) -> HandlerResult:
    obj = ctx.obj
    subscription = _find_subscription(ctx.db, obj.get("id"))
    user = ctx.db.get(User, subscription.user_id)
    result = state_machine.apply(ctx.event_type, subscription, user, ctx.created_at)
    return HandlerResult(
        entry=_entry_for(
            subscription,
            HistoryAction.RESUMED,
            previous_status=result.previous_status,
            new_status=result.new_status,
            metadata={"stripe_subscription_id": obj.get("id"), "stale": result.stale},
        ),
        side_effects=None if result.stale else _plan_for(
            subscription, analytics_event="subscription_resumed", occurred_at=ctx.created_at
        ),
    )


def handle_trial_will_end(ctx: EventContext) -> HandlerResult:
    obj = ctx.obj
    subscription = _find_subscription(ctx.db, obj.get("id"))
    trial_end = from_unix(obj.get("trial_end")) or subscription.trial_end
    days_left = None
    if trial_end is not None:
        days_left = max(0, math.ceil((trial_end - utcnow()).total_seconds() / 86400))
    logging.info(f"Trial will end for subscription {obj.get('id')}, {days_left} days left")
    return HandlerResult(
        entry=_entry_for(
            subscription,
            HistoryAction.TRIAL_ENDING,
            previous_status=subscription.status,
            new_status=subscription.status,
            metadata={
                "stripe_subscription_id": obj.get("id"),
                "trial_end_date": obj.get("trial_end"),
                "days_left": days_left,
            },
        ),
        side_effects=_plan_for(
            subscription,
            analytics_event="trial_ending",
            notification_template="trial_ending",
            metadata={"daysLeft": days_left},
            occurred_at=ctx.created_at,
        ),
    )


# ---------------------------------------------------------------------------
# invoices and payments

def _record_payment(ctx: EventContext, subscription: Subscription, invoice: Dict[str, Any],
                    status: PaymentStatus, amount: int) -> Payment:
    paid_at = None
    if status == PaymentStatus.SUCCEEDED:
        paid_at = from_unix((invoice.get("status_transitions") or {}).get("paid_at")) or ctx.created_at
    verb = "Payment" if status == PaymentStatus.SUCCEEDED else "Failed payment"
    payment = Payment(
        subscription_id=subscription.subscription_id,
        company_id=subscription.company_id,
        user_id=subscription.user_id,
        external_invoice_id=invoice.get("id"),
        amount=amount,
        currency=(invoice.get("currency") or subscription.currency or "usd").lower(),
        status=status.value,
        description=f"{verb} for {subscription.plan_id or 'subscription'} plan",
        paid_at=paid_at,
    )
    ctx.db.add(payment)
    return payment


def _invoice_subscription(ctx: EventContext) -> Subscription:
    invoice = ctx.obj
    external_id = _invoice_subscription_id(invoice)
    if not external_id:
        raise HandlerPreconditionMiss(f"Invoice {invoice.get('id')} is not attached to a subscription")
    return _find_subscription(ctx.db, external_id)


def handle_payment_succeeded(ctx: EventContext) -> HandlerResult:
    invoice = ctx.obj
    subscription = _invoice_subscription(ctx)
    user = ctx.db.get(User, subscription.user_id)
    amount = invoice.get("amount_paid") or 0
    payment = _record_payment(ctx, subscription, invoice, PaymentStatus.SUCCEEDED, amount)
    result = state_machine.apply(ctx.event_type, subscription, user, ctx.created_at)
    logging.info(f"Payment succeeded for subscription {subscription.subscription_id}")
    return HandlerResult(
        entry=_entry_for(
            subscription,
            HistoryAction.PAYMENT_SUCCEEDED,
            previous_status=result.previous_status,
            new_status=result.new_status,
            amount=amount,
            currency=payment.currency,
            metadata={
                "stripe_invoice_id": invoice.get("id"),
                "stripe_subscription_id": subscription.external_subscription_id,
                "stale": result.stale,
            },
        ),
        side_effects=_plan_for(
            subscription,
            analytics_event="payment_success",
            notification_template="payment_success",
            metadata={"amount": amount, "currency": payment.currency},
            occurred_at=ctx.created_at,
        ),
    )


def handle_payment_failed(ctx: EventContext) -> HandlerResult:
    invoice = ctx.obj
    subscription = _invoice_subscription(ctx)
    user = ctx.db.get(User, subscription.user_id)
    amount = invoice.get("amount_due") or 0
    payment = _record_payment(ctx, subscription, invoice, PaymentStatus.FAILED, amount)
    result = state_machine.apply(ctx.event_type, subscription, user, ctx.created_at)
    logging.info(f"Payment failed for subscription {subscription.subscription_id}")
    return HandlerResult(
        entry=_entry_for(
            subscription,
            HistoryAction.PAYMENT_FAILED,
            previous_status=result.previous_status,
            new_status=result.new_status,
            amount=amount,
            currency=payment.currency,
            metadata={
                "stripe_invoice_id": invoice.get("id"),
                "stripe_subscription_id": subscription.external_subscription_id,
                "failure_reason": (invoice.get("last_payment_error") or {}).get("message"),
                "stale": result.stale,
            },
        ),
        side_effects=_plan_for(
            subscription,
            analytics_event="payment_failure",
            notification_template="payment_failed",
            metadata={"amount": amount, "currency": payment.currency},
            occurred_at=ctx.created_at,
        ),
    )


def handle_invoice_upcoming(ctx: EventContext) -> HandlerResult:
    invoice = ctx.obj
    subscription = _invoice_subscription(ctx)
    return HandlerResult(
        entry=_entry_for(
            subscription,
            HistoryAction.UPDATED,
            previous_status=subscription.status,
            new_status=subscription.status,
            amount=invoice.get("amount_due"),
            currency=invoice.get("currency"),
            metadata={
                "stripe_invoice_id": invoice.get("id"),
                "upcoming_invoice": True,
                "period_start": invoice.get("period_start"),
                "period_end": invoice.get("period_end"),
            },
        ),
    )


def handle_payment_action_required(ctx: EventContext) -> HandlerResult:
    invoice = ctx.obj
    subscription = _invoice_subscription(ctx)
    return HandlerResult(
        entry=_entry_for(
            subscription,
            HistoryAction.PAYMENT_ACTION_REQUIRED,
            previous_status=subscription.status,
            new_status=subscription.status,
            amount=invoice.get("amount_due"),
            currency=invoice.get("currency"),
            metadata={
                "stripe_invoice_id": invoice.get("id"),
                "payment_intent_id": _ref_id(invoice.get("payment_intent")),
                "requires_action": True,
            },
        ),
        side_effects=_plan_for(
            subscription,
            analytics_event="payment_action_required",
            metadata={"amount": invoice.get("amount_due")},
            occurred_at=ctx.created_at,
        ),
    )


# ---------------------------------------------------------------------------
# customers

def handle_customer_updated(ctx: EventContext) -> HandlerResult:
    customer = ctx.obj
    subscription = _find_subscription_by_customer(ctx.db, customer.get("id"))
    return HandlerResult(
        entry=_entry_for(
            subscription,
            HistoryAction.UPDATED,
            previous_status=subscription.status,
            new_status=subscription.status,
            metadata={
                "stripe_customer_id": customer.get("id"),
                "customer_updated": True,
                "changed_fields": sorted(ctx.previous_attributes),
            },
        ),
    )


def handle_payment_method_attached(ctx: EventContext) -> HandlerResult:
    payment_method = ctx.obj
    customer_id = _ref_id(payment_method.get("customer"))
    subscription = _find_subscription_by_customer(ctx.db, customer_id)
    user = ctx.db.get(User, subscription.user_id)
    if user is not None:
        user.payment_method_updated_at = utcnow()
    logging.info(f"Payment method attached for customer: {customer_id}")
    return HandlerResult(
        entry=_entry_for(
            subscription,
            HistoryAction.UPDATED,
            previous_status=subscription.status,
            new_status=subscription.status,
            metadata={
                "stripe_customer_id": customer_id,
                "payment_method_attached": True,
                "payment_method_type": payment_method.get("type"),
            },
        ),
    )
