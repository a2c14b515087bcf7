"""
Shared pytest fixtures for backend tests.
Every test gets its own SQLite file so sessions opened by handlers, the
dispatcher and the app all see the same data.
"""
import os
import sys

import pytest

# Add backend to path for imports
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

# Must be set before db.py builds its module-level engine
os.environ["DATABASE_URL"] = "sqlite+aiosqlite:///:memory:"
os.environ["BCRYPT_ROUNDS"] = "4"

from sqlalchemy import create_engine
from sqlalchemy.ext.asyncio import create_async_engine, async_sessionmaker, AsyncSession
from sqlalchemy.pool import NullPool

import db
from command_parser import CommandContext
from command_dispatcher import CommandDispatcher
from project_handler import ProjectCommandHandler
from websocket_manager import ConnectionManager


class FakeWebSocket:
    """Records what the server sends to one connection."""

    def __init__(self, name="ws"):
        self.name = name
        self.sent = []
        self.accepted = False

    async def accept(self):
        self.accepted = True

    async def send_json(self, payload):
        self.sent.append(payload)

    def system_messages(self):
        return [p["message"] for p in self.sent if p.get("type") == "system"]


class BrokenWebSocket(FakeWebSocket):
    async def send_json(self, payload):
        raise RuntimeError("socket is gone")


@pytest.fixture
def session_factory(tmp_path):
    """Async session factory bound to a fresh database file."""
    db_path = tmp_path / "test.db"

    # Create tables synchronously so no event loop is needed here
    sync_engine = create_engine(f"sqlite:///{db_path}")
    db.Base.metadata.create_all(sync_engine)
    sync_engine.dispose()

    # NullPool: connections never outlive the event loop that opened them
    engine = create_async_engine(f"sqlite+aiosqlite:///{db_path}", poolclass=NullPool)
    yield async_sessionmaker(engine, expire_on_commit=False, class_=AsyncSession)


@pytest.fixture
def context():
    return CommandContext(room_code="ROOM1", sender_id="user-1", username="kim")


@pytest.fixture
def manager():
    return ConnectionManager()


@pytest.fixture
def dispatcher(manager, session_factory):
    return CommandDispatcher(manager, session_factory, ProjectCommandHandler())


@pytest.fixture
def app_client(session_factory, monkeypatch):
    """
    Test client for the FastAPI app wired to the per-test database.
    Replaces init_db so startup does not touch the configured DATABASE_URL.
    """
    from fastapi.testclient import TestClient
    import app as app_module

    async def fake_init_db():
        pass

    fresh_manager = ConnectionManager()
    monkeypatch.setattr(app_module, "init_db", fake_init_db)
    monkeypatch.setattr(app_module, "manager", fresh_manager)
    monkeypatch.setattr(app_module.dispatcher, "manager", fresh_manager)
    monkeypatch.setattr(app_module.dispatcher, "session_factory", session_factory)
    monkeypatch.setattr(app_module.dispatcher, "projects", ProjectCommandHandler())

    with TestClient(app_module.app) as client:
        yield client
