"""
Subscription status transitions.

Every status change, for both the ``Subscription`` row and its ``User``
mirror, goes through :class:`SubscriptionStateMachine` so the two are
written in the same session and committed together.

Conflicting events are ordered by the provider's event creation time. Each
applied status-affecting event stamps ``Subscription.last_event_at``; an
event older than that stamp is stale and leaves status untouched. Events
with equal timestamps apply in arrival order.
"""
import datetime
import logging
from dataclasses import dataclass
from typing import Dict, FrozenSet, Optional

from subscription_sync_svc.errors import HandlerPreconditionMiss
from subscription_sync_svc.event_types import EventType
from subscription_sync_svc.models.base import utcnow
from subscription_sync_svc.models.subscription import Subscription, SubscriptionStatus
from subscription_sync_svc.models.user import User

S = SubscriptionStatus


@dataclass(frozen=True)
class Transition:
    # None means "from any status"
    allowed_from: Optional[FrozenSet[SubscriptionStatus]]
    # None means the target comes from the provider payload
    to: Optional[SubscriptionStatus]
    # When False an unmet precondition leaves status unchanged instead of
    # rejecting the whole event (payments are still recorded).
    strict: bool = True


TRANSITIONS: Dict[EventType, Transition] = {
    EventType.CHECKOUT_COMPLETED: Transition(frozenset({S.NONE}), None),
    EventType.SUBSCRIPTION_UPDATED: Transition(None, None),
    EventType.SUBSCRIPTION_DELETED: Transition(None, S.CANCELED),
    EventType.PAYMENT_SUCCEEDED: Transition(frozenset({S.PAST_DUE}), S.ACTIVE, strict=False),
    EventType.PAYMENT_FAILED: Transition(frozenset({S.ACTIVE, S.TRIALING}), S.PAST_DUE, strict=False),
    EventType.SUBSCRIPTION_PAUSED: Transition(None, S.PAUSED),
    EventType.SUBSCRIPTION_RESUMED: Transition(frozenset({S.PAUSED}), S.ACTIVE),
}

_PROVIDER_STATUS_MAP: Dict[str, SubscriptionStatus] = {
    "trialing": S.TRIALING,
    "active": S.ACTIVE,
    "past_due": S.PAST_DUE,
    "unpaid": S.PAST_DUE,
    "incomplete": S.PAST_DUE,
    "canceled": S.CANCELED,
    "incomplete_expired": S.CANCELED,
    "paused": S.PAUSED,
}


def map_provider_status(provider_status: Optional[str]) -> Optional[SubscriptionStatus]:
    if provider_status is None:
        return None
    status = _PROVIDER_STATUS_MAP.get(provider_status)
    if status is None:
        logging.warning(f"Unrecognized provider subscription status '{provider_status}'; status left unchanged.")
    return status


@dataclass
class TransitionResult:
    previous_status: str
    new_status: str
    stale: bool = False

    @property
    def changed(self) -> bool:
        return self.previous_status != self.new_status


class SubscriptionStateMachine:

    def is_stale(self, subscription: Subscription, event_created_at: Optional[datetime.datetime]) -> bool:
        if event_created_at is None or subscription.last_event_at is None:
            return False
        return event_created_at < subscription.last_event_at

    def target_status(self, event_type: EventType, current: SubscriptionStatus,
                      provider_target: Optional[SubscriptionStatus] = None) -> Optional[SubscriptionStatus]:
        """
        Resolve the status an event moves a subscription to.

        :return: The new status, or None when the event leaves status as is.
        :raises HandlerPreconditionMiss: if a strict precondition is unmet.
        """
        transition = TRANSITIONS.get(event_type)
        if transition is None:
            return None
        if transition.allowed_from is not None and current not in transition.allowed_from:
            if transition.strict:
                raise HandlerPreconditionMiss(
                    f"{event_type.value} not applicable to subscription in status '{current.value}'"
                )
            return None
        return transition.to if transition.to is not None else provider_target

    def apply(self, event_type: EventType, subscription: Subscription, user: Optional[User],
              event_created_at: Optional[datetime.datetime],
              provider_target: Optional[SubscriptionStatus] = None) -> TransitionResult:
        current = SubscriptionStatus(subscription.status or S.NONE.value)

        if self.is_stale(subscription, event_created_at):
            logging.warning(
                f"Stale {event_type.value} for subscription {subscription.subscription_id}: event at "
                f"{event_created_at} predates last applied event at {subscription.last_event_at}."
            )
            return TransitionResult(current.value, current.value, stale=True)

        target = self.target_status(event_type, current, provider_target)

        if event_created_at is not None and (
                subscription.last_event_at is None or event_created_at > subscription.last_event_at):
            subscription.last_event_at = event_created_at

        if target is None:
            return TransitionResult(current.value, current.value)

        subscription.status = target.value
        subscription.updated_at = utcnow()
        self.sync_mirror(subscription, user)
        if target != current:
            logging.info(
                f"Subscription {subscription.subscription_id} {current.value} -> {target.value} ({event_type.value})"
            )
        return TransitionResult(current.value, target.value)

    def sync_mirror(self, subscription: Subscription, user: Optional[User]) -> None:
        """Copy the subscription's state onto the user's denormalized columns."""
        if user is None:
            logging.warning(f"No user {subscription.user_id} to mirror subscription {subscription.subscription_id} onto.")
            return
        was_canceled = user.subscription_status == S.CANCELED.value
        user.subscription_status = subscription.status
        user.subscription_id = subscription.subscription_id
        user.current_plan_id = subscription.plan_id or user.current_plan_id
        user.billing_period = subscription.billing_period or user.billing_period
        user.trial_end_date = subscription.trial_end
        if subscription.status == S.CANCELED.value:
            if not was_canceled or user.subscription_end_date is None:
                user.subscription_end_date = utcnow()
        else:
            user.subscription_end_date = subscription.current_period_end
