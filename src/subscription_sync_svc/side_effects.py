import datetime
import logging
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Optional

from sqlalchemy.orm import Session

from subscription_sync_svc.analytics import AnalyticsClient
from subscription_sync_svc.config import get_settings
from subscription_sync_svc.models.base import SessionLocal, utcnow
from subscription_sync_svc.models.company import Company
from subscription_sync_svc.models.subscription import Subscription
from subscription_sync_svc.models.user import User
from subscription_sync_svc.notifications import NotificationClient


@dataclass
class SideEffectPlan:
    """Best-effort calls to make once an event's transaction has committed."""

    subscription_id: Optional[str]
    user_id: str
    company_id: str
    analytics_event: Optional[str] = None
    notification_template: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)
    occurred_at: datetime.datetime = field(default_factory=utcnow)


def _iso(value: Optional[datetime.datetime]) -> Optional[str]:
    return value.isoformat() if value else None


class SideEffectDispatcher:
    """
    Runs notification and analytics calls after commit.

    State is read back through a fresh session so messages reflect what was
    committed. Every failure is logged and dropped: nothing here may affect
    the webhook response or the stored transition, and nothing is retried.
    """

    def __init__(self, session_factory: Callable[[], Session], notifier: NotificationClient,
                 analytics: AnalyticsClient) -> None:
        self.session_factory = session_factory
        self.notifier = notifier
        self.analytics = analytics

    def dispatch(self, plan: SideEffectPlan) -> None:
        try:
            data = self._load_notification_data(plan)
        except Exception as e:
            logging.error(f"Could not read committed state for side effects of {plan.subscription_id}: {e}", exc_info=True)
            return

        if plan.notification_template:
            if data is None:
                logging.warning(f"User {plan.user_id} not found; skipping '{plan.notification_template}' notification.")
            else:
                try:
                    self.notifier.send(plan.notification_template, data)
                except Exception as e:
                    logging.error(f"Side effect failed (notification '{plan.notification_template}'): {e}", exc_info=True)

        if plan.analytics_event:
            try:
                self.analytics.track_event(
                    plan.analytics_event,
                    plan.user_id,
                    plan.company_id,
                    {**plan.metadata, "subscriptionId": plan.subscription_id},
                    plan.occurred_at,
                )
            except Exception as e:
                logging.error(f"Side effect failed (analytics '{plan.analytics_event}'): {e}", exc_info=True)

    def _load_notification_data(self, plan: SideEffectPlan) -> Optional[Dict[str, Any]]:
        db = self.session_factory()
        try:
            user = db.get(User, plan.user_id)
            if user is None:
                return None
            subscription = db.get(Subscription, plan.subscription_id) if plan.subscription_id else None
            company = db.get(Company, plan.company_id)
            data: Dict[str, Any] = {
                "userName": user.name or "User",
                "userEmail": user.email,
                "companyName": company.name if company else None,
                "planName": user.current_plan_id or "Your Plan",
                "billingPeriod": user.billing_period,
                "subscriptionStatus": user.subscription_status,
                "trialEndDate": _iso(user.trial_end_date),
                "subscriptionEndDate": _iso(user.subscription_end_date),
            }
            if subscription is not None:
                data.update({
                    "planName": subscription.plan_id or data["planName"],
                    "amount": subscription.amount,
                    "currency": subscription.currency,
                    "nextBillingDate": _iso(subscription.current_period_end),
                })
            data.update(plan.metadata)
            return data
        finally:
            db.close()


def get_side_effect_dispatcher() -> SideEffectDispatcher:
    settings = get_settings()
    return SideEffectDispatcher(
        session_factory=SessionLocal,
        notifier=NotificationClient(settings.notification_service_url, settings.side_effect_timeout_seconds),
        analytics=AnalyticsClient(settings.analytics_url, settings.side_effect_timeout_seconds),
    )
