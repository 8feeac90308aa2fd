import os

# The app module creates its tables on import, so point it at the test database
SQLALCHEMY_DATABASE_URL = "sqlite:///./test_temp.db"
os.environ["DATABASE_URL"] = SQLALCHEMY_DATABASE_URL
os.environ.setdefault("JWT_SECRET", "test-secret")

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

from storefront.main import app as fastapi_app
from storefront.auth import Principal, Role, create_access_token
from storefront.database import Base
from storefront.models import Product

# Setup test database
engine = create_engine(SQLALCHEMY_DATABASE_URL, connect_args={
                       "check_same_thread": False})
TestingSessionLocal = sessionmaker(
    autocommit=False, autoflush=False, bind=engine)

SHIPPING = {
    "full_name": "Ada Lovelace",
    "address": "12 Analytical Row",
    "city": "London",
    "state": "LDN",
    "postal_code": "N1 9GU",
    "country": "UK",
    "phone": "+44 20 7946 0000",
}


@pytest.fixture
def shipping():
    return dict(SHIPPING)


@pytest.fixture(autouse=True)
def setup_db():
    Base.metadata.create_all(bind=engine)
    yield
    Base.metadata.drop_all(bind=engine)
    engine.dispose()


@pytest.fixture
def db():
    session = TestingSessionLocal()
    yield session
    session.close()


@pytest.fixture
def other_session():
    """A second connection, for writes that race the request under test."""
    session = TestingSessionLocal()
    yield session
    session.close()


@pytest.fixture
def products(db):
    items = [
        Product(id="lamp", name="Desk Lamp", image="/img/lamp.png", price=2000, stock=5),
        Product(id="mug", name="Mug", image="/img/mug.png", price=1500, stock=3),
        Product(id="chair", name="Chair", image="/img/chair.png", price=8000, stock=1),
    ]
    db.add_all(items)
    db.commit()
    return {p.id: p for p in items}


@pytest.fixture
def user():
    return Principal(user_id="user-1", role=Role.USER)


@pytest.fixture
def other_user():
    return Principal(user_id="user-2", role=Role.USER)


@pytest.fixture
def admin():
    return Principal(user_id="admin-1", role=Role.ADMIN)


@pytest.fixture
def user_headers(user):
    return {"Authorization": f"Bearer {create_access_token(user.user_id)}"}


@pytest.fixture
def other_headers(other_user):
    return {"Authorization": f"Bearer {create_access_token(other_user.user_id)}"}


@pytest.fixture
def admin_headers(admin):
    return {"Authorization": f"Bearer {create_access_token(admin.user_id, Role.ADMIN)}"}


@pytest.fixture
def client(monkeypatch):
    # Every request session comes from the test database
    monkeypatch.setattr("storefront.database.SessionLocal", TestingSessionLocal)
    with TestClient(fastapi_app) as c:
        yield c


@pytest.fixture
def make_intent(mocker):
    """Build a stand-in for a retrieved/created Stripe PaymentIntent."""
    def _make(intent_id, order_id, amount, status="succeeded", client_secret="secret_test"):
        intent = mocker.Mock()
        intent.id = intent_id
        intent.client_secret = client_secret
        intent.status = status
        intent.amount = amount
        intent.currency = "usd"
        intent.metadata = {"order_id": order_id}
        return intent
    return _make
