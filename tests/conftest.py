"""
CampCAD test infrastructure

Provides:
  - a file-backed SQLite database (set up before the app modules import)
  - BEGIN IMMEDIATE transactions so concurrent sessions serialize the
    way PostgreSQL row locks make them wait
  - per-test clean tables with default reference data loaded
  - FastAPI TestClient and bearer-token headers
  - captured change events
"""

import os
import tempfile

TEST_DB_PATH = os.path.join(tempfile.gettempdir(), f"campcad_test_{os.getpid()}.db")
os.environ["CAMPCAD_DATABASE_URL"] = f"sqlite:///{TEST_DB_PATH}"
os.environ.setdefault("CAMPCAD_JWT_SECRET", "campcad-test-secret")

import pytest
from sqlalchemy import event

import models  # noqa: F401  (registers tables)
from database import Base, SessionLocal, engine
from models import CallType, Unit
from services.dispatch import notifier
from services.dispatch.audit import Actor
from setup_db import seed_reference_data


@event.listens_for(engine, "connect")
def _sqlite_connect(dbapi_connection, connection_record):
    # Let SQLAlchemy issue BEGIN itself
    dbapi_connection.isolation_level = None
    cursor = dbapi_connection.cursor()
    cursor.execute("PRAGMA foreign_keys=ON")
    cursor.close()


@event.listens_for(engine, "begin")
def _sqlite_begin(conn):
    conn.exec_driver_sql("BEGIN IMMEDIATE")


# ============================================================================
# Database
# ============================================================================

@pytest.fixture(scope="session", autouse=True)
def setup_database():
    Base.metadata.drop_all(bind=engine)
    Base.metadata.create_all(bind=engine)
    yield
    engine.dispose()
    try:
        if os.path.exists(TEST_DB_PATH):
            os.remove(TEST_DB_PATH)
    except (PermissionError, OSError):
        pass


@pytest.fixture(autouse=True)
def clean_database(setup_database):
    """Empty every table and reload the default reference data"""
    with engine.begin() as conn:
        for table in reversed(Base.metadata.sorted_tables):
            conn.execute(table.delete())

    session = SessionLocal()
    try:
        seed_reference_data(session)
    finally:
        session.close()
    yield


@pytest.fixture
def db():
    session = SessionLocal()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture
def actor():
    return Actor(user_id=7, name="Dispatcher Lee", role="DISPATCHER")


# ============================================================================
# Lookups
# ============================================================================

@pytest.fixture
def call_type_id(db):
    def _lookup(name="Medical Emergency"):
        type_id = db.query(CallType.id).filter(CallType.name == name).scalar()
        # End the read transaction so db does not keep SQLite's write lock
        db.rollback()
        return type_id
    return _lookup


@pytest.fixture
def unit_id(db):
    def _lookup(unit_number):
        return db.query(Unit.id).filter(Unit.unit_number == unit_number).scalar()
    return _lookup


@pytest.fixture
def new_call(db, actor, call_type_id):
    """Factory: create a call through the lifecycle manager"""
    from services.dispatch.lifecycle import create_call

    def _create(priority=3, type_name="Medical Emergency", description="Camper reports twisted ankle", **extra):
        data = {
            "call_type_id": call_type_id(type_name),
            "priority": priority,
            "description": description,
            "location": {"latitude": 40.05, "longitude": -75.61, "address": "Cabin 12"},
        }
        data.update(extra)
        return create_call(db, data, actor)
    return _create


# ============================================================================
# Events
# ============================================================================

@pytest.fixture
def events():
    captured = []
    notifier.subscribe(captured.append)
    yield captured
    notifier.unsubscribe(captured.append)


# ============================================================================
# API
# ============================================================================

@pytest.fixture(scope="session")
def client(setup_database):
    from fastapi.testclient import TestClient
    from main import app

    with TestClient(app) as c:
        yield c


@pytest.fixture
def auth_headers():
    from jwt_auth import create_access_token
    token = create_access_token(user_id=7, name="Dispatcher Lee")
    return {"Authorization": f"Bearer {token}"}
