"""
Shared fixtures for backend tests.

Every test gets a fresh in-memory SQLite database with the production
schema from db/database.py, plus a fake bill model that answers with a
canned response instead of calling a provider.
"""
import pytest
import aiosqlite

from db.database import SCHEMA


class FakeBillModel:
    """Stands in for a provider client; records every call it receives."""

    def __init__(self, response: str = "", error: Exception = None):
        self.response = response
        self.error = error
        self.calls = []

    async def complete(self, prompt, image_b64, media_type):
        self.calls.append({"prompt": prompt, "image_b64": image_b64, "media_type": media_type})
        if self.error:
            raise self.error
        return self.response


@pytest.fixture
async def db():
    """Yield a fresh in-memory SQLite connection with the full schema."""
    async with aiosqlite.connect(":memory:") as conn:
        conn.row_factory = aiosqlite.Row
        await conn.executescript(SCHEMA)
        yield conn


@pytest.fixture
def fake_model():
    return FakeBillModel()
