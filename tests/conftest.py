import os
os.environ['STRIPE_API_KEY'] = 'sk_test_dummy'
os.environ['STRIPE_ENDPOINT_SECRET'] = 'whsec_test_secret'
os.environ.pop('NOTIFICATION_SERVICE_URL', None)
os.environ.pop('ANALYTICS_URL', None)

import hashlib
import hmac
import itertools
import json
import time
import uuid

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

from subscription_sync_svc.app import app
from subscription_sync_svc.models.base import get_db, init_db, utcnow
from subscription_sync_svc.models.company import Company
from subscription_sync_svc.models.subscription import Subscription
from subscription_sync_svc.models.user import User
from subscription_sync_svc.side_effects import SideEffectDispatcher, get_side_effect_dispatcher

WEBHOOK_SECRET = 'whsec_test_secret'

_created = itertools.count(1_700_000_000, 60)


class RecordingNotifier:
    def __init__(self):
        self.sent = []
        self.fail_with = None

    def send(self, template_name, data):
        if self.fail_with is not None:
            raise self.fail_with
        self.sent.append((template_name, data))
        return True


class RecordingAnalytics:
    def __init__(self):
        self.events = []
        self.fail_with = None

    def track_event(self, event_type, user_id, company_id, metadata, timestamp):
        if self.fail_with is not None:
            raise self.fail_with
        self.events.append({
            "type": event_type,
            "user_id": user_id,
            "company_id": company_id,
            "metadata": metadata,
            "timestamp": timestamp,
        })


@pytest.fixture
def engine(tmp_path):
    engine = create_engine(
        f"sqlite:///{tmp_path / 'webhooks.db'}",
        connect_args={"check_same_thread": False},
    )
    init_db(bind=engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(engine):
    return sessionmaker(autocommit=False, autoflush=False, bind=engine)


@pytest.fixture
def db_session(session_factory):
    db = session_factory()
    try:
        yield db
    finally:
        db.close()


@pytest.fixture
def notifier():
    return RecordingNotifier()


@pytest.fixture
def analytics():
    return RecordingAnalytics()


@pytest.fixture
def dispatcher(session_factory, notifier, analytics):
    return SideEffectDispatcher(session_factory, notifier, analytics)


@pytest.fixture
def client(session_factory, dispatcher):
    def override_get_db():
        db = session_factory()
        try:
            yield db
        finally:
            db.close()

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_side_effect_dispatcher] = lambda: dispatcher
    yield TestClient(app)
    app.dependency_overrides.clear()


def sign_payload(payload, secret=WEBHOOK_SECRET, timestamp=None):
    timestamp = timestamp or int(time.time())
    signed = f"{timestamp}.{payload}".encode("utf-8")
    signature = hmac.new(secret.encode("utf-8"), signed, hashlib.sha256).hexdigest()
    return f"t={timestamp},v1={signature}"


@pytest.fixture
def signed_post(client):
    """POST an event to the webhook endpoint with a valid signature."""
    def _post(event, secret=WEBHOOK_SECRET):
        payload = json.dumps(event)
        headers = {"Stripe-Signature": sign_payload(payload, secret), "Content-Type": "application/json"}
        return client.post("/api/stripe/webhook", content=payload, headers=headers)
    return _post


@pytest.fixture
def make_event():
    """Build a Stripe-shaped event; creation times increase with each call."""
    def _make(event_type, obj, event_id=None, created=None, previous_attributes=None):
        created = created if created is not None else next(_created)
        data = {"object": obj}
        if previous_attributes is not None:
            data["previous_attributes"] = previous_attributes
        return {
            "id": event_id or f"evt_{uuid.uuid4().hex[:24]}",
            "object": "event",
            "type": event_type,
            "created": created,
            "data": data,
        }
    return _make


@pytest.fixture
def seed_user(db_session):
    def _seed(user_id="u1", company_id="c1", email="owner@example.com", name="Owner"):
        if db_session.get(Company, company_id) is None:
            db_session.add(Company(company_id=company_id, name="Acme"))
        user = User(id=user_id, email=email, name=name, company_id=company_id, subscription_status="none")
        db_session.add(user)
        db_session.commit()
        return user
    return _seed


@pytest.fixture
def seed_subscription(db_session, seed_user):
    """Create a user plus a subscription already in ``status``."""
    def _seed(status="active", external_id="sub_1", customer_id="cus_1", user_id="u1",
              company_id="c1", last_event_at=None):
        user = db_session.get(User, user_id) or seed_user(user_id, company_id)
        subscription = Subscription(
            company_id=company_id,
            user_id=user_id,
            plan_id="pro",
            external_subscription_id=external_id,
            external_customer_id=customer_id,
            status=status,
            amount=2900,
            currency="usd",
            billing_period="monthly",
            last_event_at=last_event_at,
            created_at=utcnow(),
        )
        db_session.add(subscription)
        db_session.flush()
        user.subscription_status = status
        user.subscription_id = subscription.subscription_id
        user.current_plan_id = "pro"
        db_session.commit()
        return subscription
    return _seed


def provider_subscription(sub_id="sub_1", status="active", trial_end=None, interval="month",
                          unit_amount=2900, metadata=None):
    now = int(time.time())
    return {
        "id": sub_id,
        "object": "subscription",
        "status": status,
        "customer": "cus_1",
        "currency": "usd",
        "current_period_start": now,
        "current_period_end": now + 30 * 86400,
        "trial_start": now if trial_end else None,
        "trial_end": trial_end,
        "metadata": metadata or {},
        "items": {"data": [{"price": {"unit_amount": unit_amount, "recurring": {"interval": interval}}}]},
    }


@pytest.fixture
def stripe_subscription():
    return provider_subscription


def invoice(invoice_id="in_1", sub_id="sub_1", amount=2900):
    return {
        "id": invoice_id,
        "object": "invoice",
        "subscription": sub_id,
        "amount_paid": amount,
        "amount_due": amount,
        "currency": "usd",
        "status_transitions": {"paid_at": int(time.time())},
    }


@pytest.fixture
def stripe_invoice():
    return invoice


@pytest.fixture
def webhook_secret():
    return WEBHOOK_SECRET


@pytest.fixture
def sign():
    return sign_payload
