"""
Pytest configuration and fixtures for backend tests.
"""

import os

# Settings are read once at import time
os.environ["DATABASE_URL"] = "sqlite://"
os.environ["RATE_LIMIT_ENABLED"] = "false"
os.environ["TAX_RATE"] = "18"

import json

import httpx
import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from rest_api.main import app
from rest_api.models import Base, MenuItem, Restaurant, Table, new_id
from rest_api.routers._common import get_providers
from rest_api.services.domain import BillGeneratorService, OrderIntakeService
from rest_api.services.payments import (
    CashfreeProvider,
    CircuitBreaker,
    CircuitBreakerConfig,
    ProviderRegistry,
)
from shared.config.constants import OrderStatus
from shared.infrastructure.db import UnitOfWork, get_db


# SQLite in-memory database for testing
SQLALCHEMY_DATABASE_URL = "sqlite:///:memory:"

engine = create_engine(
    SQLALCHEMY_DATABASE_URL,
    connect_args={"check_same_thread": False},
    poolclass=StaticPool,
)
TestingSessionLocal = sessionmaker(
    autocommit=False, autoflush=False, expire_on_commit=False, bind=engine
)


@pytest.fixture(scope="function")
def db_session():
    """
    Create a fresh database session for each test.
    Uses SQLite in-memory for isolation.
    """
    Base.metadata.create_all(bind=engine)

    session = TestingSessionLocal()
    try:
        yield session
    finally:
        session.close()
        Base.metadata.drop_all(bind=engine)


@pytest.fixture
def uow(db_session):
    return UnitOfWork(db_session)


@pytest.fixture
def providers():
    """Fresh provider registry per test (mock and cash are built lazily)."""
    registry = ProviderRegistry()
    yield registry
    registry.close()


@pytest.fixture(scope="function")
def client(db_session, providers):
    """
    Create a test client with database session and provider overrides.
    """
    def override_get_db():
        try:
            yield db_session
        finally:
            pass

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_providers] = lambda: providers

    with TestClient(app) as test_client:
        yield test_client

    app.dependency_overrides.clear()


@pytest.fixture
def seed_restaurant(db_session):
    restaurant = Restaurant(id="rest-1", name="Test Restaurant", currency="INR")
    db_session.add(restaurant)
    db_session.commit()
    return restaurant


@pytest.fixture
def seed_table(db_session, seed_restaurant):
    table = Table(id="table-1", restaurant_id=seed_restaurant.id, name="T1", qr_token="qr-t1")
    db_session.add(table)
    db_session.commit()
    return table


@pytest.fixture
def seed_menu(db_session, seed_restaurant):
    """Two available items and one that is sold out."""
    items = [
        MenuItem(id="dosa", restaurant_id=seed_restaurant.id, name="Masala Dosa", price_cents=12000),
        MenuItem(id="chai", restaurant_id=seed_restaurant.id, name="Masala Chai", price_cents=3000),
        MenuItem(
            id="biryani",
            restaurant_id=seed_restaurant.id,
            name="Biryani",
            price_cents=25000,
            is_available=False,
        ),
    ]
    db_session.add_all(items)
    db_session.commit()
    return {item.id: item for item in items}


@pytest.fixture
def make_served_order(uow, seed_restaurant, seed_table, seed_menu):
    """Factory: create an order and walk it to SERVED."""
    def _make(items=None, table_id="table-1"):
        service = OrderIntakeService(uow)
        order, _ = service.create_order(
            restaurant_id=seed_restaurant.id,
            items=items or [("dosa", 2), ("chai", 1)],
            idempotency_key=new_id(),
            table_id=table_id,
        )
        for status in (OrderStatus.ACCEPTED, OrderStatus.PREPARING, OrderStatus.SERVED):
            service.update_status(order.id, status)
        return order

    return _make


@pytest.fixture
def make_bill(uow, make_served_order):
    """Factory: an OPEN bill for a fresh served order (dosa x2 + chai x1)."""
    def _make(items=None):
        order = make_served_order(items=items)
        bill, _ = BillGeneratorService(uow).create_bill_from_order(order.id)
        return bill

    return _make


@pytest.fixture
def cashfree_calls():
    return []


@pytest.fixture
def cashfree_orders():
    """Gateway order id -> body returned by GET /orders/{id}."""
    return {}


@pytest.fixture
def cashfree(providers, cashfree_calls, cashfree_orders):
    """Cashfree provider on a mock transport."""

    def handler(request: httpx.Request) -> httpx.Response:
        cashfree_calls.append(request)
        if request.method == "POST" and request.url.path.endswith("/orders"):
            body = json.loads(request.content)
            return httpx.Response(
                200,
                json={
                    "order_id": body["order_id"],
                    "order_amount": body["order_amount"],
                    "order_status": "ACTIVE",
                    "payment_session_id": "session_abc",
                },
            )
        order_id = request.url.path.rsplit("/", 1)[-1]
        if order_id in cashfree_orders:
            return httpx.Response(200, json=cashfree_orders[order_id])
        return httpx.Response(404, json={"message": "order not found"})

    provider = CashfreeProvider(
        app_id="app",
        secret_key="secret",
        api_base="https://sandbox.cashfree.test/pg",
        client=httpx.Client(transport=httpx.MockTransport(handler)),
        breaker=CircuitBreaker(CircuitBreakerConfig(name="cashfree-test")),
    )
    providers.register(provider)
    return provider
