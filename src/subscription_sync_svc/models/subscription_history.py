import uuid
from enum import Enum

from sqlalchemy import JSON, Column, DateTime, Integer, String

from subscription_sync_svc.models.base import Base, utcnow


class HistoryAction(str, Enum):
    CREATED = "created"
    UPDATED = "updated"
    CANCELED = "canceled"
    PAUSED = "paused"
    RESUMED = "resumed"
    PAYMENT_SUCCEEDED = "payment_succeeded"
    PAYMENT_FAILED = "payment_failed"
    TRIAL_ENDING = "trial_ending"
    PAYMENT_ACTION_REQUIRED = "payment_action_required"


class SubscriptionHistoryRecord(Base):
    """
    Append-only audit log of applied provider events.

    The unique ``provider_event_id`` doubles as the webhook deduplication
    gate: a row exists if and only if the event's effect was committed.
    """
    __tablename__ = 'subscription_history'

    history_id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    user_id = Column(String, nullable=False, index=True)
    company_id = Column(String, nullable=False, index=True)
    subscription_id = Column(String(36), nullable=True, index=True)
    external_subscription_id = Column(String, nullable=True)
    action = Column(String(32), nullable=False)
    event_type = Column(String(64), nullable=False)
    previous_status = Column(String(16), nullable=True)
    new_status = Column(String(16), nullable=True)
    previous_plan = Column(String, nullable=True)
    new_plan = Column(String, nullable=True)
    amount = Column(Integer, nullable=True)
    currency = Column(String(8), nullable=False, default="usd")
    billing_period = Column(String(16), nullable=True)
    # "metadata" is reserved on declarative classes
    event_metadata = Column("metadata", JSON, nullable=True)
    provider_event_id = Column(String, unique=True, nullable=False)
    provider_event_created_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, nullable=False, default=utcnow)

    def __repr__(self) -> str:
        return f"<SubscriptionHistoryRecord(event={self.provider_event_id}, action={self.action})>"
