import pytest
import logging

from sqlalchemy.exc import OperationalError

from subscription_sync_svc import stripe_event_processor
from subscription_sync_svc.errors import MalformedEventError, ProviderError, TransientStoreError
from subscription_sync_svc.ledger import EventLedger
from subscription_sync_svc.models.payment import Payment
from subscription_sync_svc.models.subscription import Subscription
from subscription_sync_svc.models.subscription_history import SubscriptionHistoryRecord
from subscription_sync_svc.models.user import User
from subscription_sync_svc.stripe_integration import StripeIntegration


def checkout_session(subscription, metadata=None):
    return {
        "id": "cs_test_1",
        "object": "checkout.session",
        "customer": "cus_1",
        "subscription": subscription,
        "metadata": metadata if metadata is not None else {"userId": "u1", "companyId": "c1", "planId": "pro"},
    }


def ledger_rows(db, event_id=None):
    query = db.query(SubscriptionHistoryRecord)
    if event_id:
        query = query.filter(SubscriptionHistoryRecord.provider_event_id == event_id)
    return query.all()


def test_checkout_completed_creates_active_subscription(db_session, seed_user, make_event, stripe_subscription):
    seed_user("u1", "c1")
    event = make_event("checkout.session.completed", checkout_session(stripe_subscription()), event_id="evt_1")

    result = stripe_event_processor.process_event(event, db_session)

    assert result.outcome == stripe_event_processor.APPLIED
    subscription = db_session.query(Subscription).filter(Subscription.external_subscription_id == "sub_1").one()
    user = db_session.get(User, "u1")
    assert subscription.status == "active"
    assert user.subscription_status == "active"
    assert user.current_plan_id == "pro"
    rows = ledger_rows(db_session, "evt_1")
    assert len(rows) == 1
    assert rows[0].action == "created"
    assert rows[0].previous_status == "none"
    assert rows[0].new_status == "active"


def test_checkout_redelivery_is_a_noop(db_session, seed_user, make_event, stripe_subscription):
    seed_user("u1", "c1")
    event = make_event("checkout.session.completed", checkout_session(stripe_subscription()), event_id="evt_1")
    stripe_event_processor.process_event(event, db_session)

    for _ in range(3):
        result = stripe_event_processor.process_event(event, db_session)
        assert result.duplicate
        assert result.side_effects is None

    assert len(ledger_rows(db_session)) == 1
    assert db_session.query(Subscription).count() == 1
    assert db_session.get(User, "u1").subscription_status == "active"


def test_checkout_with_trial_starts_trialing(db_session, seed_user, make_event, stripe_subscription):
    seed_user("u1", "c1")
    provider = stripe_subscription(status="trialing", trial_end=1_900_000_000)
    event = make_event("checkout.session.completed", checkout_session(provider))

    result = stripe_event_processor.process_event(event, db_session)

    subscription = db_session.query(Subscription).one()
    assert subscription.status == "trialing"
    assert subscription.trial_end is not None
    assert db_session.get(User, "u1").trial_end_date == subscription.trial_end
    assert result.side_effects.analytics_event == "trial_started"
    assert result.side_effects.notification_template == "welcome"


def test_checkout_fetches_subscription_referenced_by_id(db_session, seed_user, make_event, stripe_subscription, monkeypatch):
    seed_user("u1", "c1")
    fetched = []

    def fake_retrieve_subscription(self, subscription_id):
        fetched.append(subscription_id)
        return stripe_subscription(sub_id=subscription_id, interval="year")

    monkeypatch.setattr(StripeIntegration, "retrieve_subscription", fake_retrieve_subscription)
    event = make_event("checkout.session.completed", checkout_session("sub_42"))

    stripe_event_processor.process_event(event, db_session)

    assert fetched == ["sub_42"]
    subscription = db_session.query(Subscription).one()
    assert subscription.external_subscription_id == "sub_42"
    assert subscription.billing_period == "annual"


def test_checkout_missing_metadata_is_malformed(db_session, seed_user, make_event, stripe_subscription):
    seed_user("u1", "c1")
    event = make_event("checkout.session.completed", checkout_session(stripe_subscription(), metadata={"userId": "u1"}))

    with pytest.raises(MalformedEventError) as excinfo:
        stripe_event_processor.process_event(event, db_session)

    assert excinfo.value.should_retry is False
    assert ledger_rows(db_session) == []
    assert db_session.query(Subscription).count() == 0


def test_checkout_for_unknown_user_is_skipped(db_session, make_event, stripe_subscription, caplog):
    event = make_event("checkout.session.completed", checkout_session(stripe_subscription()))

    with caplog.at_level(logging.WARNING):
        result = stripe_event_processor.process_event(event, db_session)

    assert result.outcome == stripe_event_processor.SKIPPED
    assert ledger_rows(db_session) == []
    assert db_session.query(Subscription).count() == 0
    assert any("User u1 not found" in record.message for record in caplog.records)


def test_event_missing_type(db_session):
    event = {"id": "evt_3", "data": {"object": {}}}
    with pytest.raises(MalformedEventError) as excinfo:
        stripe_event_processor.process_event(event, db_session)
    assert "Missing 'type'" in str(excinfo.value)


def test_event_missing_id(db_session):
    event = {"type": "invoice.payment_succeeded", "data": {"object": {}}}
    with pytest.raises(MalformedEventError, match="Missing 'id'"):
        stripe_event_processor.process_event(event, db_session)


def test_unhandled_event_type(db_session, caplog):
    event = {
        "id": "evt_4",
        "type": "unknown.event",
        "data": {"object": {}},
        "created": 1234567890
    }
    with caplog.at_level(logging.INFO):
        result = stripe_event_processor.process_event(event, db_session)
    assert result.outcome == stripe_event_processor.IGNORED
    assert ledger_rows(db_session) == []
    assert any("Unhandled event type" in record.message for record in caplog.records)


def test_payment_for_unknown_subscription_is_skipped(db_session, make_event, stripe_invoice):
    event = make_event("invoice.payment_succeeded", stripe_invoice(sub_id="sub_missing"))

    result = stripe_event_processor.process_event(event, db_session)

    assert result.outcome == stripe_event_processor.SKIPPED
    assert db_session.query(Payment).count() == 0
    assert ledger_rows(db_session) == []


def test_replayed_payment_event_records_one_payment(db_session, seed_subscription, make_event, stripe_invoice):
    seed_subscription(status="active")
    event = make_event("invoice.payment_succeeded", stripe_invoice())

    outcomes = [stripe_event_processor.process_event(event, db_session).outcome for _ in range(5)]

    assert outcomes == ["applied"] + ["duplicate"] * 4
    assert db_session.query(Payment).count() == 1
    assert len(ledger_rows(db_session, event["id"])) == 1


def test_concurrent_duplicate_deliveries_have_one_winner(session_factory, seed_subscription, make_event,
                                                          stripe_invoice, monkeypatch):
    seed_subscription(status="past_due")
    event = make_event("invoice.payment_succeeded", stripe_invoice(), event_id="evt_2")

    # Both deliveries pass the fast-path check before either has committed;
    # only the unique ledger key decides the winner.
    original_is_recorded = EventLedger.is_recorded

    def racing_is_recorded(self, event_id):
        if not getattr(self, "raced", False):
            self.raced = True
            return False
        return original_is_recorded(self, event_id)

    monkeypatch.setattr(EventLedger, "is_recorded", racing_is_recorded)

    first, second = session_factory(), session_factory()
    try:
        results = [
            stripe_event_processor.process_event(event, first),
            stripe_event_processor.process_event(event, second),
        ]
    finally:
        first.close()
        second.close()

    assert [r.outcome for r in results] == ["applied", "duplicate"]
    assert results[1].side_effects is None
    check = session_factory()
    try:
        assert len(ledger_rows(check, "evt_2")) == 1
        assert check.query(Payment).count() == 1
        assert check.query(Subscription).one().status == "active"
    finally:
        check.close()


def test_stale_status_event_does_not_override_newer_state(db_session, seed_subscription, make_event, stripe_invoice):
    seed_subscription(status="active")
    newer = make_event("invoice.payment_succeeded", stripe_invoice(invoice_id="in_2"), created=1_800_000_100)
    older = make_event("invoice.payment_failed", stripe_invoice(invoice_id="in_1"), created=1_800_000_000)

    stripe_event_processor.process_event(newer, db_session)
    result = stripe_event_processor.process_event(older, db_session)

    assert result.outcome == stripe_event_processor.APPLIED
    subscription = db_session.query(Subscription).one()
    assert subscription.status == "active"
    assert db_session.get(User, "u1").subscription_status == "active"
    # The failed attempt is still a fact worth keeping
    assert sorted(p.status for p in db_session.query(Payment).all()) == ["failed", "succeeded"]
    row = ledger_rows(db_session, older["id"])[0]
    assert row.event_metadata["stale"] is True
    assert row.new_status == "active"


def test_equal_timestamps_apply_in_arrival_order(db_session, seed_subscription, make_event):
    seed_subscription(status="active")
    paused = make_event("customer.subscription.paused", {"id": "sub_1"}, event_id="evt_pause", created=1_800_000_000)
    canceled = make_event("customer.subscription.deleted", {"id": "sub_1"}, event_id="evt_cancel",
                          created=1_800_000_000)

    outcomes = [stripe_event_processor.process_event(e, db_session).outcome for e in (paused, canceled)]

    assert outcomes == ["applied", "applied"]
    assert db_session.query(Subscription).one().status == "canceled"
    assert ledger_rows(db_session, "evt_cancel")[0].previous_status == "paused"


def test_commit_failure_event(db_session, seed_subscription, make_event, stripe_invoice, monkeypatch):
    seed_subscription(status="past_due")
    event = make_event("invoice.payment_succeeded", stripe_invoice())

    original_commit = db_session.commit

    def failing_commit():
        raise OperationalError("COMMIT", {}, Exception("database is locked"))

    monkeypatch.setattr(db_session, "commit", failing_commit)
    with pytest.raises(TransientStoreError) as excinfo:
        stripe_event_processor.process_event(event, db_session)
    assert excinfo.value.should_retry is True

    # Restore original commit method; nothing was persisted so redelivery applies cleanly
    monkeypatch.setattr(db_session, "commit", original_commit)
    assert ledger_rows(db_session) == []
    assert db_session.query(Payment).count() == 0

    result = stripe_event_processor.process_event(event, db_session)
    assert result.outcome == stripe_event_processor.APPLIED
    assert db_session.query(Subscription).one().status == "active"


def test_provider_failure_rolls_back(db_session, seed_subscription, make_event, monkeypatch):
    seed_subscription(status="active")

    def fake_retrieve_subscription(self, subscription_id):
        raise ProviderError("Stripe request failed: timeout", retryable=True)

    monkeypatch.setattr(StripeIntegration, "retrieve_subscription", fake_retrieve_subscription)
    # Summary-only payload forces a re-fetch
    event = make_event("customer.subscription.updated", {"id": "sub_1", "object": "subscription"})

    with pytest.raises(ProviderError) as excinfo:
        stripe_event_processor.process_event(event, db_session)

    assert excinfo.value.event_id == event["id"]
    assert excinfo.value.status_code == 500
    assert ledger_rows(db_session) == []


def test_checkout_from_metadata_only_session(db_session, seed_user, make_event):
    seed_user("u1", "c1")
    session = checkout_session(None)
    session["amount_total"] = 2900
    event = make_event("checkout.session.completed", session, event_id="evt_1")

    result = stripe_event_processor.process_event(event, db_session)

    assert result.outcome == stripe_event_processor.APPLIED
    subscription = db_session.query(Subscription).one()
    assert subscription.status == "active"
    assert subscription.amount == 2900
    assert subscription.currency == "usd"
    assert subscription.current_period_start is None
    assert subscription.trial_end is None
    assert db_session.get(User, "u1").subscription_status == "active"
    assert [(r.action, r.previous_status, r.new_status) for r in ledger_rows(db_session)] == [
        ("created", "none", "active")
    ]
    assert stripe_event_processor.process_event(event, db_session).duplicate


def test_second_checkout_for_subscribed_user_is_skipped(db_session, seed_user, make_event):
    seed_user("u1", "c1")
    first = make_event("checkout.session.completed", checkout_session(None), event_id="evt_1")
    second = make_event("checkout.session.completed", checkout_session(None), event_id="evt_1b")

    stripe_event_processor.process_event(first, db_session)
    result = stripe_event_processor.process_event(second, db_session)

    assert result.outcome == stripe_event_processor.SKIPPED
    assert db_session.query(Subscription).count() == 1
    assert [r.provider_event_id for r in ledger_rows(db_session)] == ["evt_1"]


def test_checkout_with_new_provider_subscription_for_active_user_is_skipped(
        db_session, seed_subscription, make_event, stripe_subscription):
    existing = seed_subscription(status="active", external_id="sub_1")
    event = make_event("checkout.session.completed", checkout_session(stripe_subscription(sub_id="sub_2")))

    result = stripe_event_processor.process_event(event, db_session)

    assert result.outcome == stripe_event_processor.SKIPPED
    assert db_session.query(Subscription).count() == 1
    assert db_session.get(User, "u1").subscription_id == existing.subscription_id
    assert ledger_rows(db_session) == []


def test_checkout_after_cancellation_starts_new_subscription(db_session, seed_subscription, make_event,
                                                             stripe_subscription):
    seed_subscription(status="canceled", external_id="sub_1")
    event = make_event("checkout.session.completed", checkout_session(stripe_subscription(sub_id="sub_2")))

    result = stripe_event_processor.process_event(event, db_session)

    assert result.outcome == stripe_event_processor.APPLIED
    statuses = {s.external_subscription_id: s.status for s in db_session.query(Subscription).all()}
    assert statuses == {"sub_1": "canceled", "sub_2": "active"}
    assert db_session.get(User, "u1").subscription_status == "active"


def test_stale_resume_is_recorded_not_skipped(db_session, seed_subscription, make_event):
    seed_subscription(status="active")
    newer = make_event("customer.subscription.deleted", {"id": "sub_1"}, created=1_800_000_100)
    older = make_event("customer.subscription.resumed", {"id": "sub_1"}, created=1_800_000_000)

    stripe_event_processor.process_event(newer, db_session)
    result = stripe_event_processor.process_event(older, db_session)

    assert result.outcome == stripe_event_processor.APPLIED
    assert result.side_effects is None
    assert db_session.query(Subscription).one().status == "canceled"
    row = ledger_rows(db_session, older["id"])[0]
    assert row.action == "resumed"
    assert row.event_metadata["stale"] is True
