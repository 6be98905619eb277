"""
Shared fixtures.

Every test gets its own in-memory Database; nothing is shared between
tests. Retry backoff is zeroed so retry paths run instantly.
"""

from datetime import datetime
from decimal import Decimal

import pytest

from kite.config.settings import (
    Settings,
    StoreSettings,
    SyncSettings,
    TransactionSettings,
)
from kite.database import Database


@pytest.fixture
def settings() -> Settings:
    return Settings(
        store=StoreSettings(path=":memory:"),
        transaction=TransactionSettings(backoff_multiplier=0, backoff_max=0, timeout_seconds=5),
        sync=SyncSettings(max_attempts=3, backoff_multiplier=0, backoff_max=0),
    )


@pytest.fixture
def db(settings):
    database = Database(settings=settings)
    yield database
    database.close()


@pytest.fixture
async def account(db):
    return await db.accounts.create({
        "name": "Checking",
        "type": "checking",
        "currency": "USD",
        "balance": Decimal("1000"),
    })


@pytest.fixture
async def dining(db):
    return await db.categories.create({"name": "Dining", "color": "#FF5722"})


@pytest.fixture
def when():
    """A fixed reference moment."""
    return datetime(2024, 3, 15, 12, 0, 0)
