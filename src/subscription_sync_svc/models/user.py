from sqlalchemy import Column, DateTime, String

from subscription_sync_svc.models.base import Base


class User(Base):
    """
    Account owned by the user-management subsystem. Only the subscription
    mirror columns are written here, always in the same transaction as the
    matching ``Subscription`` change.
    """
    __tablename__ = 'users'

    id = Column(String, primary_key=True)
    email = Column(String, nullable=True)
    name = Column(String, nullable=True)
    company_id = Column(String, nullable=True, index=True)

    subscription_status = Column(String(16), nullable=False, default="none")
    current_plan_id = Column(String, nullable=True)
    billing_period = Column(String(16), nullable=True)
    trial_end_date = Column(DateTime, nullable=True)
    subscription_start_date = Column(DateTime, nullable=True)
    subscription_end_date = Column(DateTime, nullable=True)
    subscription_id = Column(String(36), nullable=True)
    payment_method_updated_at = Column(DateTime, nullable=True)

    def __repr__(self) -> str:
        return f"<User(id={self.id}, subscription_status={self.subscription_status})>"
