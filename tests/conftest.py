# tests/conftest.py
"""
Pytest configuration and fixtures shared by the service and API tests.

Every test gets its own file-backed SQLite database under `tmp_path`, so two
sessions can be opened against the same data to exercise concurrent writers.
"""

import os
import tempfile

# Must be set before marketplace.config is imported anywhere
os.environ.setdefault("DATABASE_URL", "sqlite://")
os.environ.setdefault("MEDIA_ROOT", tempfile.mkdtemp(prefix="marketplace-media-"))
os.environ["ADMIN_USER_IDS"] = "user_root"
os.environ["DEFAULT_TIMEZONE"] = "UTC"

from datetime import datetime, timezone
from decimal import Decimal
from uuid import uuid4

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

from marketplace.auth import Principal
from marketplace.database import Base
from marketplace.errors import UpstreamError
from marketplace.models import Coupon, Order, OrderItem, PaymentMethod, Product, Store, StoreStatus
from marketplace.observability.metrics import reset_metrics
from marketplace.storage import BlobStorage

ADDRESS = {
    "name": "Jamie Doe",
    "street": "12 Market Street",
    "city": "Springfield",
    "state": "IL",
    "zip": "62701",
    "country": "US",
    "phone": "555-0100",
}


class StubBlobStorage(BlobStorage):
    """Keeps uploads in memory; filenames listed in `fail_on` raise UpstreamError."""

    def __init__(self, fail_on=()):
        super().__init__(("png", "jpg", "jpeg", "webp"))
        self.fail_on = set(fail_on)
        self.stored = {}
        self.deleted = []

    def _put(self, bucket, path, upload):
        if upload.filename in self.fail_on:
            raise UpstreamError(f"Upload of {upload.filename} failed: storage unavailable")
        self.stored[f"{bucket}/{path}"] = upload.content
        return f"https://cdn.test/{bucket}/{path}"

    def delete(self, bucket, path):
        self.stored.pop(f"{bucket}/{path}", None)
        self.deleted.append(f"{bucket}/{path}")


@pytest.fixture(autouse=True)
def _clean_metrics():
    reset_metrics()
    yield
    reset_metrics()


@pytest.fixture
def engine(tmp_path):
    engine = create_engine(f"sqlite:///{tmp_path / 'marketplace.db'}", future=True)
    Base.metadata.create_all(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(engine):
    return sessionmaker(autocommit=False, autoflush=False, bind=engine, future=True)


@pytest.fixture
def db_session(session_factory):
    session = session_factory()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture
def storage():
    return StubBlobStorage()


@pytest.fixture
def admin():
    return Principal(user_id="user_admin", is_admin=True)


@pytest.fixture
def seller():
    return Principal(user_id="user_seller")


@pytest.fixture
def buyer():
    return Principal(user_id="user_buyer")


@pytest.fixture
def make_store(db_session):
    def _make_store(owner_id=None, username=None, status=StoreStatus.APPROVED, is_active=True):
        suffix = uuid4().hex[:8]
        username = username or f"shop_{suffix}"
        store = Store(
            owner_id=owner_id or f"owner_{suffix}",
            name=f"Store {username}",
            username=username,
            username_key=username.lower(),
            description="Test store",
            email=f"{suffix}@example.com",
            contact="555-0199",
            address="1 Test Way",
            status=status,
            is_active=is_active,
        )
        db_session.add(store)
        db_session.commit()
        return store

    return _make_store


@pytest.fixture
def make_product(db_session):
    def _make_product(store, name="Widget", price="19.99", mrp="24.99", in_stock=True):
        product = Product(
            store_id=store.id,
            name=name,
            description=f"{name} description",
            price=Decimal(price),
            mrp=Decimal(mrp),
            images=[],
            in_stock=in_stock,
        )
        db_session.add(product)
        db_session.commit()
        return product

    return _make_product


@pytest.fixture
def make_coupon(db_session):
    def _make_coupon(store, code="SAVE10", discount=10, expires_at=None):
        coupon = Coupon(
            store_id=store.id,
            code=code,
            discount=discount,
            expires_at=expires_at or datetime(2099, 12, 31).date(),
        )
        db_session.add(coupon)
        db_session.commit()
        return coupon

    return _make_coupon


@pytest.fixture
def make_order(db_session):
    def _make_order(store, total, user_id="user_buyer", created_at=None, items=None):
        order = Order(
            user_id=user_id,
            store_id=store.id,
            discount=0,
            total=Decimal(total),
            payment_method=PaymentMethod.COD,
            shipping_address=dict(ADDRESS),
            created_at=created_at or datetime.now(timezone.utc),
            items=[
                OrderItem(product_id=pid, product_name=name, quantity=qty, price=Decimal(price))
                for pid, name, qty, price in (items or [(1, "Widget", 1, total)])
            ],
        )
        db_session.add(order)
        db_session.commit()
        return order

    return _make_order


@pytest.fixture
def failing_storage():
    def _failing_storage(*filenames):
        return StubBlobStorage(fail_on=filenames)

    return _failing_storage


@pytest.fixture
def address():
    return dict(ADDRESS)
