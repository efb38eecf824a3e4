"""
pytest configuration - shared fixtures for the workflow tests
"""
import os

# must be set before app.* is imported (engine is built at import time)
os.environ.setdefault("DATABASE_URL", "sqlite://")
os.environ.setdefault("DB_AUTO_CREATE", "false")

from datetime import timedelta
from decimal import Decimal
from types import SimpleNamespace

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from app.core.rbac import Actor, Role
from app.db.base import Base
from app.models.inventory import FulfillerStock, Product
from app.models.user import User
from app.schemas.order import OrderCreateIn
from app.schemas.prescription import PrescriptionSubmitIn
from app.services import credit_ledger
from app.services.notifier import Notifier
from app.utils.timezone import today_utc


class RecordingNotifier(Notifier):
    """Keeps every published message instead of sending it."""

    def __init__(self):
        super().__init__()
        self.events = []

    def _dispatch(self, audience, message):
        self.events.append((audience, message["event"], message["data"]))

    def for_audience(self, audience):
        return [(event, data) for aud, event, data in self.events if aud == audience]


class FailingNotifier(Notifier):
    """Transport that always blows up."""

    def _dispatch(self, audience, message):
        raise RuntimeError("websocket transport down")


def _sqlite_engine(url="sqlite://"):
    kwargs = {"connect_args": {"check_same_thread": False}, "future": True}
    if url == "sqlite://":
        kwargs["poolclass"] = StaticPool
    engine = create_engine(url, **kwargs)
    Base.metadata.create_all(engine)
    return engine


def seed_data(db):
    """
    Users for every role, a small catalog and stock at two fulfillers.
    The customer starts with 50 credits granted through the ledger.
    """
    users = {
        "customer": User(name="Mona Customer", email="mona@example.com", role=Role.CUSTOMER.value),
        "customer2": User(name="Omar Customer", email="omar@example.com", role=Role.CUSTOMER.value),
        "reader": User(name="Rana Reader", email="rana@example.com", role=Role.PRESCRIPTION_READER.value),
        "reader2": User(name="Sami Reader", email="sami@example.com", role=Role.PRESCRIPTION_READER.value),
        "pharmacy": User(name="Nile Pharmacy", email="nile@example.com", role=Role.PHARMACY.value,
                         business_name="Nile Pharmacy", city="Cairo"),
        "vendor": User(name="Delta Vendor", email="delta@example.com", role=Role.VENDOR.value,
                       business_name="Delta Supplies", city="Giza"),
        "admin": User(name="Ada Admin", email="ada@example.com", role=Role.ADMIN.value),
    }
    for u in users.values():
        u.credits = Decimal("0")
        db.add(u)

    products = {
        "paracetamol": Product(name="Paracetamol 500mg", category="analgesic", requires_prescription=False),
        "amoxicillin": Product(name="Amoxicillin 250mg", category="antibiotic", requires_prescription=True),
        "vitamin_c": Product(name="Vitamin C 1000mg", category="supplement", requires_prescription=False),
        "bandage": Product(name="Elastic Bandage", category="first-aid", requires_prescription=False),
        "syrup": Product(name="Cough Syrup", category="respiratory", requires_prescription=False),
    }
    for p in products.values():
        db.add(p)
    db.flush()

    ph = users["pharmacy"].id
    vd = users["vendor"].id
    far_future = today_utc() + timedelta(days=365)
    stock_rows = [
        (ph, "paracetamol", "50.00", 100, far_future),
        (ph, "amoxicillin", "100.00", 10, far_future),
        (ph, "bandage", "25.00", 40, far_future),
        (ph, "syrup", "30.00", 10, today_utc() - timedelta(days=1)),  # expired
        (vd, "vitamin_c", "100.00", 20, far_future),
        (vd, "paracetamol", "45.00", 1, far_future),
    ]
    for fulfiller_id, key, price, qty, expiry in stock_rows:
        db.add(FulfillerStock(
            fulfiller_id=fulfiller_id,
            product_id=products[key].id,
            price=Decimal(price),
            quantity=qty,
            expiry_date=expiry,
        ))
    db.commit()

    credit_ledger.grant_bonus(db, customer_id=users["customer"].id, amount=50,
                              description="Welcome bonus", admin_id=users["admin"].id)

    actors = {
        key: Actor(id=u.id, role=Role(u.role), name=u.name) for key, u in users.items()
    }
    return SimpleNamespace(
        users=users,
        products={k: p.id for k, p in products.items()},
        actors=SimpleNamespace(**actors),
    )


@pytest.fixture
def engine():
    eng = _sqlite_engine()
    yield eng
    eng.dispose()


@pytest.fixture
def session_factory(engine):
    return sessionmaker(bind=engine, autocommit=False, autoflush=False, future=True)


@pytest.fixture
def db(session_factory):
    session = session_factory()
    yield session
    session.close()


@pytest.fixture
def seed(db):
    return seed_data(db)


@pytest.fixture
def actors(seed):
    return seed.actors


@pytest.fixture
def notifier():
    return RecordingNotifier()


@pytest.fixture
def failing_notifier():
    return FailingNotifier()


@pytest.fixture
def file_sessions(tmp_path):
    """
    Two independent sessions on a file database, for stale-read / race tests.
    """
    eng = _sqlite_engine(f"sqlite:///{tmp_path / 'race.db'}")
    factory = sessionmaker(bind=eng, autocommit=False, autoflush=False, future=True)
    first, second = factory(), factory()
    data = seed_data(first)
    yield first, second, data
    first.close()
    second.close()
    eng.dispose()


@pytest.fixture
def submit_payload():
    """Factory for prescription submissions."""
    def _make(n_images=2, urgency="normal", **extra):
        images = [
            {"url": f"https://cdn.example.com/rx/page-{i}.jpg", "original_name": f"page-{i}.jpg"}
            for i in range(n_images)
        ]
        return PrescriptionSubmitIn(images=images, urgency=urgency,
                                    patient_name="Mona", doctor_name="Dr. Hany", **extra)
    return _make


@pytest.fixture
def order_payload(seed):
    """Factory for order payloads: lines are (fulfiller_key, product_key, qty)."""
    def _make(lines, credits_to_use=0, prescription_id=None):
        items = [
            {
                "fulfiller_id": seed.users[f].id,
                "product_id": seed.products[p],
                "quantity": qty,
            }
            for f, p, qty in lines
        ]
        return OrderCreateIn(
            items=items,
            delivery_address={"street": "12 Tahrir St", "city": "Cairo", "phone": "0100000000"},
            payment_method="cash",
            credits_to_use=Decimal(str(credits_to_use)),
            prescription_id=prescription_id,
        )
    return _make
