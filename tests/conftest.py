import os

# Settings are read at import time; point them at throwaway backends first
os.environ.setdefault("DATABASE_URL", "sqlite://")
os.environ.setdefault("REDIS_URL", "redis://127.0.0.1:1/0")
os.environ.setdefault("CELERY_BROKER_URL", "memory://")
os.environ.setdefault("CELERY_RESULT_BACKEND", "cache+memory://")
os.environ["DB_AUTO_CREATE"] = "false"

import pytest
from fastapi.testclient import TestClient
from sqlalchemy.orm import sessionmaker

from viewtrust.db.database import Base, build_engine
from viewtrust.db import models  # noqa: F401 - registers tables
from viewtrust.dependencies import get_db
from viewtrust.main import app
from viewtrust.services.ledger_service import ledger_service
from viewtrust.services.trust_engine import trust_engine


@pytest.fixture
def engine(tmp_path):
    eng = build_engine(f"sqlite:///{tmp_path / 'viewtrust.db'}")
    Base.metadata.create_all(bind=eng)
    # the shared engine singleton caches snapshots keyed by user and device
    trust_engine.cache.clear()
    yield eng
    trust_engine.cache.clear()
    eng.dispose()


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
def make_user(db):
    """Open an account and fund it through purchase settlements."""
    def _make(user_id: str = "user-1", icoin: int = 0, vicoin: int = 0, kyc: str = "pending") -> str:
        ledger_service.open_account(db, user_id)
        if kyc != "pending":
            ledger_service.set_kyc_status(db, user_id, kyc)
        if icoin:
            ledger_service.record_settlement(db, user_id, "icoin", icoin, "purchase", f"seed-{user_id}-icoin")
        if vicoin:
            ledger_service.record_settlement(db, user_id, "vicoin", vicoin, "purchase", f"seed-{user_id}-vicoin")
        return user_id
    return _make


@pytest.fixture
def client(session_factory):
    def override_get_db():
        session = session_factory()
        try:
            yield session
        finally:
            session.close()

    app.dependency_overrides[get_db] = override_get_db
    with TestClient(app) as c:
        yield c
    app.dependency_overrides.clear()
