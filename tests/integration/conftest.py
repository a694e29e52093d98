from __future__ import annotations

import os

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine, text
from sqlalchemy.orm import Session, sessionmaker

import lead_engine.models  # noqa: F401
from lead_engine.db import Base
import lead_engine.db as db_module
import lead_engine.api as api_module

ADMIN_KEY = "test-admin-key"


@pytest.fixture(scope="session")
def test_database_url() -> str:
    url = os.getenv("LEAD_ENGINE_TEST_DATABASE_URL")
    if not url:
        pytest.skip("LEAD_ENGINE_TEST_DATABASE_URL is not set")
    return url


@pytest.fixture(scope="session")
def test_engine(test_database_url: str):
    engine = create_engine(test_database_url, pool_pre_ping=True, pool_size=10)
    with engine.begin() as conn:
        conn.execute(text("CREATE EXTENSION IF NOT EXISTS citext"))
    yield engine
    engine.dispose()


@pytest.fixture(autouse=True)
def _bind_test_db(monkeypatch, test_engine):
    TestSessionLocal = sessionmaker(bind=test_engine, expire_on_commit=False)
    monkeypatch.setattr(db_module, "_engine", test_engine, raising=False)
    monkeypatch.setattr(db_module, "SessionLocal", TestSessionLocal, raising=False)
    monkeypatch.setenv("ADMIN_API_KEY", ADMIN_KEY)
    monkeypatch.setenv("ADMIN_LOCALHOST_BYPASS", "false")
    monkeypatch.delenv("OUTREACH_WEBHOOK_SECRET", raising=False)
    monkeypatch.delenv("GOOGLE_MAPS_API_KEY", raising=False)
    Base.metadata.drop_all(bind=test_engine)
    Base.metadata.create_all(bind=test_engine)
    yield
    Base.metadata.drop_all(bind=test_engine)


@pytest.fixture
def db_session() -> Session:
    session = db_module.SessionLocal()
    try:
        yield session
        session.commit()
    finally:
        session.close()


@pytest.fixture
def client():
    app = api_module.create_app()
    with TestClient(app) as test_client:
        yield test_client


@pytest.fixture
def admin_headers() -> dict:
    return {"X-API-Key": ADMIN_KEY}


