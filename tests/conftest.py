"""
Shared fixtures.

No network: OpenAI and Twilio clients are MagicMock/AsyncMock stand-ins, and
every test gets its own in-memory SQLite database.
"""

import os
from typing import Optional
from unittest.mock import AsyncMock, MagicMock

import pytest
from httpx import ASGITransport, AsyncClient

# Set test configuration before importing the app
os.environ["OPENAI_API_KEY"] = "test-key-for-testing"
os.environ["OPENAI_MODEL"] = "gpt-4o-mini"
os.environ["WEBHOOK_BASE_URL"] = "https://nexcall.test"
os.environ["DATABASE_URL"] = "sqlite+aiosqlite:///:memory:"

# NOTE: Twilio credentials are intentionally NOT set in tests
# This tests graceful degradation behavior

from nexcall import main
from nexcall.agent import ResponseGenerator
from nexcall.config import Settings, reset_settings
from nexcall.conversation_store import InMemoryConversationStore
from nexcall.database import DatabaseManager
from nexcall.lifecycle import CallLifecycleHandler
from nexcall.persistence import CallRepository
from nexcall.twiml import TwiMLResponder

TEST_WEBHOOK_BASE = "https://nexcall.test"
DEFAULT_REPLY = '{"message": "Bien sûr, je peux vous renseigner sur nos services.", "action": {"type": "none"}}'
DEFAULT_SUMMARY = "Le client a demandé des informations sur les services."


def make_completion(content: Optional[str]) -> MagicMock:
    """Create a mock chat completion carrying the given content."""
    completion = MagicMock()
    completion.choices = [MagicMock(message=MagicMock(content=content))]
    return completion


def make_openai_client(reply: Optional[str] = DEFAULT_REPLY, summary: Optional[str] = DEFAULT_SUMMARY) -> MagicMock:
    """Mock AsyncOpenAI: JSON-mode requests get the reply, the others the summary."""

    async def create(**kwargs):
        if kwargs.get("response_format") == {"type": "json_object"}:
            return make_completion(reply)
        return make_completion(summary)

    client = MagicMock()
    client.chat.completions.create = AsyncMock(side_effect=create)
    return client


@pytest.fixture(autouse=True)
def fresh_settings():
    reset_settings()
    yield
    reset_settings()


@pytest.fixture
def settings() -> Settings:
    return Settings(
        openai_api_key="test-key-for-testing",
        webhook_base_url=TEST_WEBHOOK_BASE,
        database_url="sqlite+aiosqlite:///:memory:",
        persistence_timeout_seconds=1.0,
    )


@pytest.fixture
def openai_client() -> MagicMock:
    return make_openai_client()


@pytest.fixture
def generator(settings, openai_client) -> ResponseGenerator:
    return ResponseGenerator(settings, client=openai_client)


@pytest.fixture
async def database(settings):
    db = DatabaseManager(settings.database_url)
    await db.create_all()
    yield db
    await db.close()


@pytest.fixture
def repository(database) -> CallRepository:
    return CallRepository(database)


@pytest.fixture
def fake_repository() -> MagicMock:
    """Repository whose writes all succeed without touching a database."""
    repo = MagicMock(spec=CallRepository)
    repo.upsert_call_status = AsyncMock()
    repo.append_transcript_entry = AsyncMock()
    repo.next_sequence = AsyncMock(return_value=0)
    repo.set_final_transcript = AsyncMock()
    return repo


@pytest.fixture
def handler(settings, generator, repository) -> CallLifecycleHandler:
    return CallLifecycleHandler(
        store=InMemoryConversationStore(),
        generator=generator,
        responder=TwiMLResponder(settings),
        repository=repository,
        persistence_timeout=settings.persistence_timeout_seconds,
    )


@pytest.fixture
async def app_services(settings, openai_client):
    """Initialize the app's services against an in-memory database."""
    main.init_services(settings)
    main.response_generator.client = openai_client
    await main.database.create_all()
    yield main
    await main.database.close()


@pytest.fixture
async def client(app_services):
    """Create async test client."""
    transport = ASGITransport(app=main.app)
    async with AsyncClient(transport=transport, base_url="http://test") as client:
        yield client
