from datetime import timedelta

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from carebook.database import Base, get_db
from carebook.domain.payments.stripe_service import PaymentProvider, get_payment_provider
from carebook.main import app
from carebook.models import Appointment, Balance, User
from carebook.services.notifications import NotificationDispatcher
from carebook.shared.timeutils import utcnow


class ProviderDown(Exception):
    pass


class FakePaymentProvider(PaymentProvider):
    """In-memory Stripe stand-in; ids listed in ``failing`` raise like a timeout would"""

    def __init__(self):
        self.checkout_sessions = {}
        self.payment_intents = {}
        self.charges = {}
        self.invoices = {}
        self.subscriptions = {}
        self.failing = set()
        self.calls = []

    def _lookup(self, store: dict, object_id: str) -> dict:
        self.calls.append(object_id)
        if object_id in self.failing:
            raise ProviderDown(f"lookup of {object_id} timed out")
        if object_id not in store:
            raise KeyError(f"No such object: {object_id}")
        return dict(store[object_id])

    def get_checkout_session(self, session_id):
        return self._lookup(self.checkout_sessions, session_id)

    def get_payment_intent(self, payment_intent_id):
        return self._lookup(self.payment_intents, payment_intent_id)

    def get_charge(self, charge_id):
        return self._lookup(self.charges, charge_id)

    def get_invoice(self, invoice_id):
        return self._lookup(self.invoices, invoice_id)

    def get_subscription(self, subscription_id):
        return self._lookup(self.subscriptions, subscription_id)

    def add_paid_checkout(self, session_id: str, amount_total: int = 30000, subscription=None):
        self.checkout_sessions[session_id] = {
            "id": session_id,
            "status": "complete",
            "payment_status": "paid",
            "amount_total": amount_total,
            "currency": "aed",
            "payment_intent": {"id": f"pi_{session_id}", "status": "succeeded"},
            "subscription": subscription,
        }

    def add_unpaid_checkout(self, session_id: str, expired: bool = False):
        self.checkout_sessions[session_id] = {
            "id": session_id,
            "status": "expired" if expired else "open",
            "payment_status": "unpaid",
            "amount_total": 30000,
            "currency": "aed",
            "payment_intent": None,
            "subscription": None,
        }


class RecordingDispatcher(NotificationDispatcher):
    def __init__(self):
        super().__init__()
        self.events = []
        self.subscribe(self.events.append)


@pytest.fixture
def engine():
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(bind=engine)
    yield engine
    Base.metadata.drop_all(bind=engine)
    engine.dispose()


@pytest.fixture
def session_factory(engine):
    return sessionmaker(autocommit=False, autoflush=False, bind=engine)


@pytest.fixture
def db(session_factory):
    session = session_factory()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture
def provider():
    return FakePaymentProvider()


@pytest.fixture
def dispatcher():
    return RecordingDispatcher()


@pytest.fixture
def make_user(db):
    counter = {"n": 0}

    def _make_user(role="patient", **kwargs):
        counter["n"] += 1
        user = User(
            email=kwargs.pop("email", f"{role}{counter['n']}@example.com"),
            full_name=kwargs.pop("full_name", f"{role.title()} {counter['n']}"),
            role=role,
            **kwargs,
        )
        db.add(user)
        db.commit()
        db.refresh(user)
        return user

    return _make_user


@pytest.fixture
def patient(make_user):
    return make_user("patient")


@pytest.fixture
def therapist(make_user):
    return make_user("therapist")


@pytest.fixture
def make_appointment(db, patient):
    def _make_appointment(**kwargs):
        values = {
            "patient_id": patient.id,
            "status": "unpaid",
            "price": 300.0,
            "total_sessions": 1,
            "date": utcnow() + timedelta(days=3),
            "recurring": [],
            "old_therapies": [],
        }
        values.update(kwargs)
        appointment = Appointment(**values)
        db.add(appointment)
        db.commit()
        db.refresh(appointment)
        return appointment

    return _make_appointment


@pytest.fixture
def fund_balance(db):
    def _fund(user_id: int, amount: float):
        balance = db.query(Balance).filter(Balance.user_id == user_id).first()
        if balance is None:
            balance = Balance(user_id=user_id, balance_amount=0, total_sessions=0, spent_sessions=0)
            db.add(balance)
        balance.balance_amount = amount
        db.commit()
        return balance

    return _fund


@pytest.fixture
def client(session_factory, provider):
    def override_get_db():
        session = session_factory()
        try:
            yield session
        finally:
            session.close()

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_payment_provider] = lambda: provider
    # Lifespan is not entered, so the module-level engine is never touched
    yield TestClient(app)
    app.dependency_overrides.clear()


@pytest.fixture
def headers():
    def _headers(user=None, role=None) -> dict:
        return {
            "X-Actor-Id": str(user.id) if user is not None else "1",
            "X-Actor-Role": role or user.role,
        }

    return _headers
