"""Pytest configuration and fixtures."""

import os

os.environ.setdefault("RATE_LIMIT_ENABLED", "false")
os.environ.setdefault("DATABASE_URL", "sqlite://")

from datetime import timedelta
from decimal import Decimal
from typing import Generator

import pytest
from fastapi.testclient import TestClient
from sqlalchemy.orm import Session, sessionmaker

from app.core import audit_middleware
from app.core.cache import cache
from app.core.security import PERMISSIONS, Grant, create_access_token, hash_password
from app.db.base import Base
from app.db.models.auth import Supplier, SupplierSession, WarehouseAccess
from app.db.models.common import utcnow
from app.db.models.inventory import InventoryItem, Product
from app.db.models.orders import Customer
from app.db.models.warehouse import Warehouse
from app.db.session import get_db, make_engine
from main import app
from services.analytics import engine as analytics_engine
from services.compliance.audit_logger import audit_logger

TEST_DATABASE_URL = "sqlite:///:memory:"
PASSWORD = "Sup3rSecret1"


@pytest.fixture(scope="function")
def db_engine():
    """Create a test database engine."""
    engine = make_engine(TEST_DATABASE_URL)
    Base.metadata.create_all(bind=engine)
    yield engine
    Base.metadata.drop_all(bind=engine)


@pytest.fixture(scope="function")
def session_factory(db_engine):
    return sessionmaker(autocommit=False, autoflush=False, bind=db_engine)


@pytest.fixture(scope="function")
def db_session(session_factory) -> Generator[Session, None, None]:
    """Create a test database session."""
    session = session_factory()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture(autouse=True)
def _isolated_state(monkeypatch, session_factory):
    """Point background writers at the test database and reset shared caches."""
    monkeypatch.setattr(audit_logger, "session_factory", session_factory)
    monkeypatch.setattr(audit_middleware, "SessionLocal", session_factory)
    cache.clear()
    analytics_engine.ACTIVE_STREAMS.clear()
    yield
    audit_logger.flush()
    cache.clear()


@pytest.fixture(scope="function")
def client(db_session: Session) -> Generator[TestClient, None, None]:
    """Create a test client with database override.

    Used without the context manager so startup tasks (outbox dispatcher,
    audit flush loop) stay off.
    """
    def override_get_db():
        try:
            yield db_session
        finally:
            pass

    app.dependency_overrides[get_db] = override_get_db
    yield TestClient(app, raise_server_exceptions=False)
    app.dependency_overrides.clear()


@pytest.fixture
def warehouses(db_session: Session) -> dict:
    """One active warehouse per region, keyed by region."""
    specs = [
        ("US-WEST-01", "Reno Distribution", "US_WEST", "US", "Reno, NV", "USD"),
        ("JP-01", "Osaka Hub", "JAPAN", "JP", "Osaka", "JPY"),
        ("EU-01", "Frankfurt Hub", "EU_GERMANY", "DE", "Frankfurt", "EUR"),
        ("AU-01", "Sydney Hub", "AUSTRALIA", "AU", "Sydney", "AUD"),
    ]
    out = {}
    for code, name, region, country, location, currency in specs:
        wh = Warehouse(code=code, name=name, region=region, country=country, location=location,
                       currency=currency, capacity=1000, status="ACTIVE")
        db_session.add(wh)
        out[region] = wh
    db_session.commit()
    return out


@pytest.fixture
def products(db_session: Session) -> dict:
    specs = [
        ("DCB606", "FLEXVOLT 6Ah Battery", "BATTERIES", "FLEXVOLT_6AH", "149.00", "90.00", "1.200"),
        ("DCB609", "FLEXVOLT 9Ah Battery", "BATTERIES", "FLEXVOLT_9AH", "199.00", "120.00", "1.500"),
        ("DCB118", "FLEXVOLT Fan Charger", "CHARGERS", "CHARGERS", "79.00", "40.00", "0.800"),
    ]
    out = {}
    for sku, name, category, product_type, price, cost, weight in specs:
        p = Product(sku=sku, name=name, category=category, product_type=product_type,
                    unit_price=Decimal(price), unit_cost=Decimal(cost), weight_kg=Decimal(weight))
        db_session.add(p)
        out[sku] = p
    db_session.commit()
    return out


def add_stock(db: Session, warehouse: Warehouse, product: Product, quantity: int, *, min_level: int = 50,
              max_level: int = 500, reorder_point: int = 60) -> InventoryItem:
    item = InventoryItem(
        warehouse_id=warehouse.id,
        product_id=product.id,
        quantity=quantity,
        reserved_quantity=0,
        min_stock_level=min_level,
        max_stock_level=max_level,
        reorder_point=reorder_point,
        unit_cost=product.unit_cost,
    )
    db.add(item)
    db.commit()
    db.refresh(item)
    return item


@pytest.fixture
def stock(db_session: Session, warehouses: dict, products: dict) -> dict:
    """US warehouse holds 150 x 6Ah and 100 x 9Ah; Japan is short on 6Ah."""
    us, jp = warehouses["US_WEST"], warehouses["JAPAN"]
    return {
        "us_6ah": add_stock(db_session, us, products["DCB606"], 150),
        "us_9ah": add_stock(db_session, us, products["DCB609"], 100),
        "jp_6ah": add_stock(db_session, jp, products["DCB606"], 20, min_level=30, reorder_point=40),
    }


@pytest.fixture
def customer(db_session: Session) -> Customer:
    c = Customer(email="buyer@contractor.example", name="Ridge Builders", company="Ridge Builders LLC",
                 country="US")
    db_session.add(c)
    db_session.commit()
    db_session.refresh(c)
    return c


def make_supplier(db: Session, email: str, *, grants: list[tuple[str, str]] = (), status: str = "ACTIVE",
                  tier: str = "STANDARD") -> Supplier:
    supplier = Supplier(email=email, password_hash=hash_password(PASSWORD), company_name="FlexVolt Partner",
                        contact_name="Sam Doe", status=status, tier=tier)
    db.add(supplier)
    db.flush()
    for warehouse, role in grants:
        db.add(WarehouseAccess(supplier_id=supplier.id, warehouse=warehouse, role=role, permissions=[]))
    db.commit()
    db.refresh(supplier)
    return supplier


def bearer_for(db: Session, supplier: Supplier) -> dict:
    session = SupplierSession(supplier_id=supplier.id, expires_at=utcnow() + timedelta(hours=8))
    db.add(session)
    db.commit()
    return {"Authorization": f"Bearer {create_access_token(supplier, session.id)}"}


@pytest.fixture
def admin(db_session: Session) -> Supplier:
    return make_supplier(db_session, "admin@flexvolt.example", grants=[("ALL", "ADMIN")])


@pytest.fixture
def admin_headers(db_session: Session, admin: Supplier) -> dict:
    return bearer_for(db_session, admin)


@pytest.fixture
def full_access() -> list[Grant]:
    return [Grant(warehouse="ALL", role="ADMIN", perms=list(PERMISSIONS))]


@pytest.fixture
def stock_factory(db_session: Session):
    def _make(warehouse: Warehouse, product: Product, quantity: int, **levels) -> InventoryItem:
        return add_stock(db_session, warehouse, product, quantity, **levels)
    return _make


@pytest.fixture
def supplier_factory(db_session: Session):
    def _make(email: str, **kwargs) -> Supplier:
        return make_supplier(db_session, email, **kwargs)
    return _make


@pytest.fixture
def headers_for(db_session: Session):
    def _make(supplier: Supplier) -> dict:
        return bearer_for(db_session, supplier)
    return _make
