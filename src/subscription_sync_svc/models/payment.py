import uuid
from enum import Enum

from sqlalchemy import Column, DateTime, ForeignKey, Integer, String

from subscription_sync_svc.models.base import Base, utcnow


class PaymentStatus(str, Enum):
    SUCCEEDED = "succeeded"
    FAILED = "failed"


class Payment(Base):
    """
    One invoice payment attempt. Rows are written once and never updated.
    """
    __tablename__ = 'payments'

    payment_id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    subscription_id = Column(String(36), ForeignKey('subscriptions.subscription_id'), nullable=False, index=True)
    company_id = Column(String, nullable=False)
    user_id = Column(String, nullable=False)
    external_invoice_id = Column(String, nullable=True, index=True)
    amount = Column(Integer, nullable=False, default=0)
    currency = Column(String(8), nullable=False, default="usd")
    status = Column(String(16), nullable=False)
    description = Column(String, nullable=True)
    paid_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, nullable=False, default=utcnow)

    def __repr__(self) -> str:
        return f"<Payment(id={self.payment_id}, invoice={self.external_invoice_id}, status={self.status})>"
