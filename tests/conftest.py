import os

# Safe defaults before any backend module reads the environment
os.environ.setdefault("DATABASE_URL", "sqlite://")
os.environ.setdefault("API_KEY", "devkey")
os.environ.setdefault("RELAY_AUTOCONNECT", "false")

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from backend.db import init_db
from backend.models import Character
from tests.factories import character_data


@pytest.fixture
def engine():
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    init_db(bind=engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(engine):
    return sessionmaker(bind=engine)


@pytest.fixture
def db(session_factory):
    session = session_factory()
    yield session
    session.close()


@pytest.fixture
def make_character(db):
    def _make(**overrides):
        character = Character(**character_data(**overrides))
        db.add(character)
        db.commit()
        db.refresh(character)
        return character
    return _make

