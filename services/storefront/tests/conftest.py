from decimal import Decimal

import pytest
from fastapi.testclient import TestClient
from jose import jwt
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

from storefront import config, schemas
from storefront.catalog import SqlCatalog, create_product
from storefront.database import Base, get_db
from storefront.ledger import CreditLedger
from storefront.main import app
from storefront.orders import OrderLifecycleManager
from storefront.pricing import PricingValidator
from storefront.referrals import ReferralAttributor

PRODUCTS = [
    schemas.ProductData(
        id="svc-raid", name="Raid Carry", product_type="service",
        base_price=Decimal("10.00"), sale_price=Decimal("8.00"), minimum_quantity=1, maximum_quantity=5,
    ),
    schemas.ProductData(
        id="svc-level", name="Level Boost", product_type="service",
        base_price=Decimal("25.00"), maximum_quantity=10,
    ),
    schemas.ProductData(
        id="bundle-starter", name="Starter Bundle", product_type="bundle",
        base_price=Decimal("50.00"), maximum_quantity=3,
    ),
    schemas.ProductData(
        id="custom-medals", name="Medal Farming", product_type="custom_item",
        base_price=Decimal("5.00"), price_per_unit=Decimal("0.50"), minimum_quantity=10, maximum_quantity=1000,
    ),
    schemas.ProductData(
        id="svc-retired", name="Retired Service", product_type="service",
        base_price=Decimal("15.00"), status="inactive",
    ),
]


class FakeRedis:
    """In-memory stand-in for the handful of redis-py calls the cart store makes."""

    def __init__(self):
        self.data = {}
        self.ttls = {}

    def setex(self, key, ttl, value):
        self.data[key] = value
        self.ttls[key] = ttl
        return True

    def get(self, key):
        return self.data.get(key)

    def delete(self, *keys):
        removed = 0
        for key in keys:
            if self.data.pop(key, None) is not None:
                removed += 1
            self.ttls.pop(key, None)
        return removed


@pytest.fixture
def engine(tmp_path):
    engine = create_engine(
        f"sqlite:///{tmp_path / 'storefront.db'}",
        connect_args={"check_same_thread": False},
    )
    Base.metadata.create_all(bind=engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(engine):
    return sessionmaker(autoflush=False, bind=engine)


@pytest.fixture
def db(session_factory):
    session = session_factory()
    for product in PRODUCTS:
        create_product(session, product)
    yield session
    session.close()


@pytest.fixture
def catalog(db):
    return SqlCatalog(db)


@pytest.fixture
def validator(catalog):
    return PricingValidator(catalog)


@pytest.fixture
def ledger(db):
    return CreditLedger(db)


@pytest.fixture
def referrals(db, ledger):
    return ReferralAttributor(db, ledger)


@pytest.fixture
def manager(db, validator, ledger, referrals):
    return OrderLifecycleManager(db, validator, ledger, referrals, get_client_ip=lambda: "203.0.113.7")


@pytest.fixture
def fake_redis():
    return FakeRedis()


@pytest.fixture
def client(db, session_factory):
    def override_get_db():
        session = session_factory()
        try:
            yield session
        finally:
            session.close()

    app.dependency_overrides[get_db] = override_get_db
    yield TestClient(app)
    app.dependency_overrides.clear()


def make_token(user_id, role="customer", email=None):
    payload = {"sub": user_id, "email": email or f"{user_id}@example.com", "role": role}
    return jwt.encode(payload, config.JWT_SECRET_KEY, algorithm=config.JWT_ALGORITHM)


def auth_headers(user_id, role="customer"):
    return {"Authorization": f"Bearer {make_token(user_id, role)}"}


def checkout(items, user_id="user-yyyyyy", **kwargs):
    """Build an OrderCreate for ``items`` given as (product_id, quantity, product_type) triples."""
    return schemas.OrderCreate(
        items=[
            schemas.PricingItem(product_id=product_id, quantity=quantity, product_type=product_type)
            for product_id, quantity, product_type in items
        ],
        customer=schemas.Customer(user_id=user_id, email="buyer@example.com", name="Buyer"),
        **kwargs,
    )
