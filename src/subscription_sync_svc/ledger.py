import datetime
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, Optional

from sqlalchemy.exc import DBAPIError, IntegrityError
from sqlalchemy.orm import Session

from subscription_sync_svc.errors import from_store_error
from subscription_sync_svc.models.subscription_history import HistoryAction, SubscriptionHistoryRecord


@dataclass
class LedgerEntry:
    """What a handler wants written to the ledger for the event it applied."""

    action: HistoryAction
    user_id: str
    company_id: str
    subscription_id: Optional[str] = None
    external_subscription_id: Optional[str] = None
    previous_status: Optional[str] = None
    new_status: Optional[str] = None
    previous_plan: Optional[str] = None
    new_plan: Optional[str] = None
    amount: Optional[int] = None
    currency: Optional[str] = None
    billing_period: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)


class EventLedger:
    """
    Deduplication gate and audit log for provider events.

    The ledger row is added to the same session as the handler's changes and
    committed with them. The unique key on ``provider_event_id`` makes the
    commit the single point where two deliveries of one event race; the
    loser gets an IntegrityError, rolls back, and reports a duplicate.
    """

    def __init__(self, db: Session) -> None:
        self.db = db

    def is_recorded(self, event_id: str) -> bool:
        """Fast path only; a False answer can be stale by the time we commit."""
        return (
            self.db.query(SubscriptionHistoryRecord.history_id)
            .filter(SubscriptionHistoryRecord.provider_event_id == event_id)
            .first()
            is not None
        )

    def record(self, event_id: str, event_type: str, event_created_at: Optional[datetime.datetime],
               entry: LedgerEntry) -> SubscriptionHistoryRecord:
        record = SubscriptionHistoryRecord(
            user_id=entry.user_id,
            company_id=entry.company_id,
            subscription_id=entry.subscription_id,
            external_subscription_id=entry.external_subscription_id,
            action=entry.action.value,
            event_type=event_type,
            previous_status=entry.previous_status,
            new_status=entry.new_status,
            previous_plan=entry.previous_plan,
            new_plan=entry.new_plan,
            amount=entry.amount,
            currency=(entry.currency or "usd").lower(),
            billing_period=entry.billing_period,
            event_metadata=entry.metadata or None,
            provider_event_id=event_id,
            provider_event_created_at=event_created_at,
        )
        self.db.add(record)
        return record

    def commit(self, event_id: str) -> bool:
        """
        Commit the handler's changes together with the ledger row.

        :return: True if this call committed the event, False if another
                 delivery of the same event committed first.
        :raises TransientStoreError: if the store is unreachable.
        """
        try:
            self.db.commit()
            return True
        except IntegrityError:
            self.db.rollback()
            if self.is_recorded(event_id):
                logging.info(f"Event {event_id} committed by a concurrent delivery; discarding this one.")
                return False
            raise
        except DBAPIError as e:
            self.db.rollback()
            logging.error(f"Commit failed for event {event_id}: {e}", exc_info=True)
            raise from_store_error(e, event_id) from e
