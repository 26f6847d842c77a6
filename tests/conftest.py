"""
Shared test fixtures.

Engine fixtures are wired to the scripted fakes in tests/fakes.py and to
the sample tenant under config/tenants.
"""

import tempfile
from pathlib import Path
from unittest.mock import patch

import pytest

from src.core.config import EngineConfig
from src.core.tenant_loader import clear_cache, load_tenant_config
from src.persistence.database import init_database
from src.persistence.repositories.session_repo import SessionRepository
from src.services.conversation_engine import SessionConversationEngine
from tests.fakes import (
    InMemorySessionStore,
    KeywordModerationClient,
    RecordingGateway,
    RecordingNotifier,
    ScriptedCompletionClient,
    SleepRecorder,
)

TENANTS_DIR = Path(__file__).resolve().parent.parent / "config" / "tenants"
TENANT_ID = "property_management"


# =============================================================================
# Fixtures
# =============================================================================


@pytest.fixture
async def test_db():
    """Create and initialize test database."""
    with tempfile.TemporaryDirectory() as tmpdir:
        db_path = Path(tmpdir) / "test.db"
        await init_database(db_path)

        from src.core import config

        original_path = config.settings.database_path
        config.settings.database_path = db_path

        with patch("src.persistence.database.settings", config.settings):
            yield db_path

        config.settings.database_path = original_path


@pytest.fixture
async def session_repo(test_db):
    """Create session repository with test database."""
    return SessionRepository(str(test_db))


@pytest.fixture
def tenant():
    """The sample property management tenant from config/tenants."""
    clear_cache()
    yield load_tenant_config(TENANT_ID, tenants_dir=TENANTS_DIR)
    clear_cache()


@pytest.fixture
def engine_config():
    return EngineConfig()


@pytest.fixture
def completion_client():
    return ScriptedCompletionClient()


@pytest.fixture
def moderation_client():
    return KeywordModerationClient()


@pytest.fixture
def notifier():
    return RecordingNotifier()


@pytest.fixture
def gateway():
    return RecordingGateway()


@pytest.fixture
def store():
    return InMemorySessionStore()


@pytest.fixture
def sleep():
    return SleepRecorder()


@pytest.fixture
def engine(tenant, completion_client, moderation_client, store, notifier, gateway, engine_config, sleep):
    return SessionConversationEngine(
        tenant=tenant,
        completion_client=completion_client,
        moderation_client=moderation_client,
        store=store,
        notifier=notifier,
        gateway=gateway,
        config=engine_config,
        sleep=sleep,
    )


@pytest.fixture
async def session(engine):
    """A freshly created, seeded and persisted session."""
    return await engine.create_session()
