"""
Shared fixtures: a file-backed SQLite database per test, plus the ledger
engine and batch registry wired to it.
"""
import sys
from decimal import Decimal
from pathlib import Path

_project_root = Path(__file__).parent.parent
if str(_project_root) not in sys.path:
    sys.path.insert(0, str(_project_root))

import pytest
from datetime import datetime

from database import init_db, make_engine, make_session_factory
from ledger import LedgerEngine
from models import UserType
from registry import BatchRegistry
from schemas import CreateBatch, UpsertUser


@pytest.fixture
def db_engine(tmp_path):
    engine = make_engine(f"sqlite:///{tmp_path / 'ledger.db'}")
    init_db(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(db_engine):
    return make_session_factory(db_engine)


@pytest.fixture
def ledger(session_factory):
    return LedgerEngine(session_factory)


@pytest.fixture
def registry(session_factory, ledger):
    return BatchRegistry(session_factory, ledger)


@pytest.fixture
def farmer(registry):
    return registry.upsert_user("farmer-1", UpsertUser(
        user_type=UserType.farmer, organization_name="Rajesh Kumar Farm",
    ))


@pytest.fixture
def distributor(registry):
    return registry.upsert_user("dist-1", UpsertUser(
        user_type=UserType.distributor, organization_name="Green Valley Logistics",
    ))


@pytest.fixture
def batch(registry, farmer):
    return registry.register(farmer.id, CreateBatch(
        crop_type="Tomato",
        variety_name="Roma",
        quantity=Decimal("25.5"),
        unit="kg",
        harvest_date=datetime(2024, 12, 15, 8, 0, 0),
        is_organic=True,
    ))
