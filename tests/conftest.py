"""Pytest configuration and shared fixtures for all tests."""

import os
import sys
from decimal import Decimal
from pathlib import Path

# Minimal environment for tests; must be set before rewardledger is imported.
os.environ.setdefault("DATABASE_URL", "sqlite://")
os.environ.setdefault("JWT_SECRET", "test-jwt-secret")
os.environ.setdefault("ADMIN_EMAIL", "owner@example.com")
os.environ.setdefault("ADMIN_PASSWORD", "owner-pass-123")

project_root = Path(__file__).parent.parent
sys.path.insert(0, str(project_root))

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from rewardledger import models  # noqa: F401  (registers tables)
from rewardledger.auth import ADMIN_EMAIL, ROLE_ADMIN, ROLE_USER, create_token, hash_password
from rewardledger.db import Base, enable_sqlite_savepoints, get_db
from rewardledger.main import app
from rewardledger.models import PriceHistory, User
from rewardledger.pricing import PriceQuote
from rewardledger.services.fraud import FraudDetector, get_fraud_detector
from rewardledger.services.treasury import ensure_treasury_account, ledger_transaction

TEST_PRICE = Decimal("0.01")
BROWSER_UA = "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 Chrome/120.0 Safari/537.36"


@pytest.fixture
def engine():
    """In-memory SQLite shared by every session of one test."""
    eng = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    enable_sqlite_savepoints(eng)
    Base.metadata.create_all(bind=eng)
    yield eng
    eng.dispose()


@pytest.fixture
def session_factory(engine):
    return sessionmaker(bind=engine, autoflush=False)


@pytest.fixture
def db(session_factory):
    session = session_factory()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture
def quote():
    return PriceQuote(TEST_PRICE, "test")


@pytest.fixture
def detector():
    return FraudDetector()


@pytest.fixture
def make_user(db):
    counter = {"n": 0}

    def _make(email=None, password="password-123", role="employee"):
        counter["n"] += 1
        u = User(
            email=email or f"user{counter['n']}@example.com",
            password_hash=hash_password(password),
            display_name=f"User {counter['n']}",
            role=role,
            referral_code=f"REF{counter['n']:05d}",
            referral_count=0,
        )
        db.add(u)
        db.commit()
        db.refresh(u)
        return u

    return _make


@pytest.fixture
def funded_treasury(db):
    """Treasury holding $1000 bought at $0.01 per token (100000 tokens)."""
    account = ensure_treasury_account(db)
    with ledger_transaction(db) as ledger:
        ledger.deposit(Decimal("1000.00"), TEST_PRICE, deposited_by="owner@example.com")
    db.refresh(account)
    return account


# ---------------------------------------------------------------------------
# API
# ---------------------------------------------------------------------------

@pytest.fixture
def client(session_factory):
    def _get_db():
        session = session_factory()
        try:
            yield session
        finally:
            session.close()

    detector = FraudDetector()
    app.dependency_overrides[get_db] = _get_db
    app.dependency_overrides[get_fraud_detector] = lambda: detector
    yield TestClient(app)
    app.dependency_overrides.clear()


@pytest.fixture
def seeded(session_factory):
    """Funded treasury plus a recorded price, committed and released before requests run."""
    with session_factory() as s:
        ensure_treasury_account(s)
        s.add(PriceHistory(price_usd=TEST_PRICE, source="test"))
        s.commit()
        with ledger_transaction(s) as ledger:
            ledger.deposit(Decimal("1000.00"), TEST_PRICE, deposited_by=ADMIN_EMAIL)
    return session_factory


@pytest.fixture
def admin_headers():
    return {"Authorization": f"Bearer {create_token(ADMIN_EMAIL, ROLE_ADMIN)}"}


@pytest.fixture
def user_headers():
    def _headers(user_id: int) -> dict:
        return {
            "Authorization": f"Bearer {create_token(str(user_id), ROLE_USER)}",
            "User-Agent": BROWSER_UA,
        }

    return _headers
