from sqlalchemy import Column, String

from subscription_sync_svc.models.base import Base


class Company(Base):
    __tablename__ = 'companies'

    company_id = Column(String, primary_key=True)
    name = Column(String, nullable=True)
    company_subscription = Column(String, nullable=True)

    def __repr__(self) -> str:
        return f"<Company(id={self.company_id}, plan={self.company_subscription})>"
