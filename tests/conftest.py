import os
import sys
from datetime import datetime, timedelta

import pytest

sys.path.insert(0, os.path.abspath(os.path.join(os.path.dirname(__file__), "..")))

from sqlmodel import SQLModel, create_engine

import models  # noqa: F401  registers tables
from db import get_session
from listings import create_listing, create_standing_request, create_subscription
from locations import Place
from models import RIDE

# fixed clock for time-dependent tests
NOW = datetime(2030, 6, 1, 12, 0, 0)

PARIS = Place("Paris, France", 48.8566, 2.3522)
LYON = Place("Lyon", 45.7640, 4.8357)


@pytest.fixture(autouse=True)
def fresh_db(tmp_path, monkeypatch):
    """Each test runs against a fresh SQLite file database."""
    import db as db_mod
    test_db = f"sqlite:///{tmp_path}/test.db"
    new_engine = create_engine(
        test_db, echo=False, connect_args={"check_same_thread": False, "timeout": 30}
    )
    monkeypatch.setattr(db_mod, "engine", new_engine)
    SQLModel.metadata.create_all(new_engine)
    yield
    SQLModel.metadata.drop_all(new_engine)
    new_engine.dispose()


@pytest.fixture
def session():
    s = get_session()
    yield s
    s.close()


def make_listing(session, owner_id=1, kind=RIDE, origin=PARIS, destination=LYON,
                 departure_at=None, seats=2, stops=()):
    return create_listing(
        session,
        owner_id=owner_id,
        kind=kind,
        origin=origin,
        destination=destination,
        departure_at=departure_at or NOW + timedelta(days=3),
        total_seats=seats,
        stops=list(stops),
        price=25.0,
        currency="EUR",
    )


def make_request(session, dates, owner_id=50, kind=RIDE, origin=PARIS, destination=LYON,
                 radius=25, unit="mi"):
    return create_standing_request(
        session,
        owner_id=owner_id,
        kind=kind,
        origin=origin,
        destination=destination,
        dates=dates,
        radius=radius,
        unit=unit,
        now=NOW,
    )


def make_subscription(session, dates, role, owner_id=70, kind=RIDE, origin=PARIS, destination=LYON,
                      radius=25):
    return create_subscription(
        session,
        owner_id=owner_id,
        kind=kind,
        origin=origin,
        destination=destination,
        dates=dates,
        role=role,
        radius=radius,
        now=NOW,
    )
