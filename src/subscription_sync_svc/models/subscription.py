import uuid
from enum import Enum

from sqlalchemy import Column, DateTime, Integer, String

from subscription_sync_svc.models.base import Base, utcnow


class SubscriptionStatus(str, Enum):
    NONE = "none"
    TRIALING = "trialing"
    ACTIVE = "active"
    PAST_DUE = "past_due"
    CANCELED = "canceled"
    PAUSED = "paused"


class BillingPeriod(str, Enum):
    MONTHLY = "monthly"
    ANNUAL = "annual"


class Subscription(Base):
    """
    Local record of a provider subscription. Created on the first completed
    checkout and retired with status ``canceled``; rows are never deleted.
    """
    __tablename__ = 'subscriptions'

    subscription_id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    company_id = Column(String, nullable=False, index=True)
    user_id = Column(String, nullable=False, index=True)
    plan_id = Column(String, nullable=True)
    external_subscription_id = Column(String, unique=True, nullable=True)
    external_customer_id = Column(String, nullable=True, index=True)
    status = Column(String(16), nullable=False, default=SubscriptionStatus.NONE.value)
    current_period_start = Column(DateTime, nullable=True)
    current_period_end = Column(DateTime, nullable=True)
    trial_start = Column(DateTime, nullable=True)
    trial_end = Column(DateTime, nullable=True)
    billing_period = Column(String(16), nullable=True)
    amount = Column(Integer, nullable=False, default=0)
    currency = Column(String(8), nullable=False, default="usd")
    # Provider creation time of the last status-affecting event applied here.
    last_event_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, nullable=False, default=utcnow)
    updated_at = Column(DateTime, nullable=False, default=utcnow, onupdate=utcnow)

    def __repr__(self) -> str:
        return f"<Subscription(id={self.subscription_id}, external_id={self.external_subscription_id}, status={self.status})>"
