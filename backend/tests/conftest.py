"""
Shared pytest fixtures for backend tests.
Uses a temp-file SQLite database per test and fakes for the LLM boundary.
"""
import pytest
import sqlite3
import sys
import os
from types import SimpleNamespace

# Add backend to path for imports
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

import database
from models import IntentAnalysis

SCHEMA = """
    CREATE TABLE tasks (
        id TEXT PRIMARY KEY,
        owner_id TEXT,
        title TEXT NOT NULL,
        description TEXT,
        status TEXT NOT NULL DEFAULT 'pending'
            CHECK (status IN ('pending', 'in_progress', 'completed', 'cancelled')),
        priority TEXT NOT NULL DEFAULT 'medium'
            CHECK (priority IN ('low', 'medium', 'high', 'urgent')),
        category TEXT,
        tags TEXT DEFAULT '[]',
        due_date TEXT,
        created_at TEXT NOT NULL,
        updated_at TEXT NOT NULL
    );

    CREATE TABLE users (
        id TEXT PRIMARY KEY,
        telegram_id INTEGER UNIQUE,
        email TEXT UNIQUE,
        name TEXT,
        role TEXT NOT NULL DEFAULT 'user' CHECK (role IN ('user', 'admin')),
        status TEXT NOT NULL DEFAULT 'inactive' CHECK (status IN ('active', 'inactive')),
        created_at TEXT NOT NULL,
        updated_at TEXT NOT NULL
    );
"""


@pytest.fixture
def test_db(monkeypatch, tmp_path):
    """
    Create an isolated test database for each test.
    Uses a temp file (not :memory:) because database.py opens new connections per operation.
    """
    db_path = str(tmp_path / "test.db")
    monkeypatch.setattr(database, "DATABASE_PATH", db_path)
    monkeypatch.setattr(database, "init_db", lambda: None)

    # Create tables directly (skip alembic for tests)
    conn = sqlite3.connect(db_path)
    conn.executescript(SCHEMA)
    conn.commit()
    conn.close()

    yield db_path


class FakeAnalyzer:
    """Stands in for IntentAnalyzer: replays queued analyses in order."""

    def __init__(self, *analyses):
        self.analyses = list(analyses)
        self.calls = []

    def queue(self, *analyses):
        self.analyses.extend(analyses)

    async def analyze(self, utterance, context_snapshot):
        self.calls.append((utterance, context_snapshot))
        analysis = self.analyses.pop(0)
        if isinstance(analysis, dict):
            analysis = IntentAnalysis.model_validate(analysis)
        return analysis


class FakeMessages:
    def __init__(self, responses):
        self.responses = list(responses)
        self.calls = []

    async def create(self, **kwargs):
        self.calls.append(kwargs)
        response = self.responses.pop(0)
        if isinstance(response, Exception):
            raise response
        return response


class FakeAnthropic:
    """Minimal AsyncAnthropic lookalike exposing messages.create."""

    def __init__(self, *responses):
        self.messages = FakeMessages(responses)


def text_response(text):
    return SimpleNamespace(content=[SimpleNamespace(type="text", text=text)])


def tool_response(name, arguments):
    return SimpleNamespace(content=[
        SimpleNamespace(type="text", text="Calling tool"),
        SimpleNamespace(type="tool_use", name=name, input=arguments, id="toolu_1"),
    ])


@pytest.fixture
def fake_analyzer():
    return FakeAnalyzer()


@pytest.fixture
def assistant(test_db, fake_analyzer):
    """A TaskAssistant wired to the fake analyzer and no LLM client."""
    from assistant import TaskAssistant
    from executor import TaskExecutor

    return TaskAssistant(fake_analyzer, TaskExecutor(client=None))


@pytest.fixture
def app_client(test_db, monkeypatch):
    """
    Create a test client for the FastAPI app.
    Mocks init_db to skip alembic migrations.
    """
    from fastapi.testclient import TestClient
    import main

    # Skip alembic in tests - tables already created by test_db fixture
    monkeypatch.setattr(database, "init_db", lambda: None)

    with TestClient(main.app) as client:
        yield client
