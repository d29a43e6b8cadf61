import os

# Must be set before the app (and its engine) is imported
os.environ.setdefault("DATABASE_URL", "sqlite:///./test_temp.db")
os.environ["STRIPE_MODE"] = "demo"
os.environ.setdefault("JWT_SECRET", "test-secret")
os.environ["MAX_SAVED_CARDS"] = "3"

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

from petiq.main import app as fastapi_app
from petiq.database import Base
from petiq.gateway import DemoGateway
import petiq.auth
import petiq.checkout
import petiq.routes

SQLALCHEMY_DATABASE_URL = "sqlite:///./test_temp.db"
engine = create_engine(SQLALCHEMY_DATABASE_URL, connect_args={
                       "check_same_thread": False})
TestingSessionLocal = sessionmaker(
    autocommit=False, autoflush=False, bind=engine)

CUSTOMER_EMAIL = "owner@petiq.lk"


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
def gateway():
    return DemoGateway()


@pytest.fixture
def claims():
    # Mutate claims["email"] inside a test to act as another customer
    return {"email": CUSTOMER_EMAIL, "role": "admin"}


@pytest.fixture
def client(monkeypatch, gateway, claims):
    monkeypatch.setattr(petiq.routes, "SessionLocal", TestingSessionLocal)
    monkeypatch.setattr("petiq.main.SessionLocal", TestingSessionLocal)
    fastapi_app.dependency_overrides[petiq.auth.verify_token] = lambda: claims
    fastapi_app.dependency_overrides[petiq.checkout.get_gateway] = lambda: gateway
    with TestClient(fastapi_app) as c:
        yield c
    fastapi_app.dependency_overrides.clear()


@pytest.fixture
def save_card(client, gateway):
    """Save a card the way the browser does: setup intent, tokenize, register."""

    def save(number="4242424242424242", name="Nimal Perera", exp_month=12, exp_year=2030):
        secret = client.post("/api/setup-intent").json()["clientSecret"]
        pm_id = gateway.tokenize_card(number, exp_month, exp_year, billing_name=name)
        gateway.confirm_setup_intent(secret, pm_id)
        response = client.get(f"/api/payment-method/{pm_id}")
        assert response.status_code == 200
        return response.json()

    return save
