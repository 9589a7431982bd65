"""
Shared fixtures for the custody engine test suite

Every test that touches the database gets its own SQLite file through
aiosqlite, and an engine wired to the scripted provider, a recording sleep
and a recording webhook notifier.
"""

import logging

import pytest
import pytest_asyncio

import database
from caching.keyed_store import InMemoryKeyedStore
from services.engine import CustodyEngine
from tests.fixtures import RecordingNotifier, RecordingSleep, ScriptedProvider

logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)


@pytest_asyncio.fixture
async def db(tmp_path):
    database.init_engine(f"sqlite+aiosqlite:///{tmp_path}/custody_test.db")
    await database.create_tables()
    yield
    await database.dispose_engine()


@pytest.fixture
def provider():
    return ScriptedProvider()


@pytest.fixture
def sleeper():
    return RecordingSleep()


@pytest.fixture
def notifier():
    return RecordingNotifier()


@pytest_asyncio.fixture
async def engine(db, provider, sleeper, notifier):
    custody_engine = CustodyEngine(
        provider=provider,
        store=InMemoryKeyedStore(),
        notifier=notifier,
        sleep=sleeper,
        resync_cooldown_seconds=0,
    )
    yield custody_engine
    await custody_engine.shutdown()
