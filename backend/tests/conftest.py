"""Shared test fixtures and configuration for backend tests."""
import pytest
from fastapi.testclient import TestClient

from marketchat.auth import TokenVerifier
from marketchat.config import AppSettings, JWTSecrets, Secrets, StorageSettings, set_config
from marketchat.conversations.store import ConversationStore
from marketchat.main import app
from marketchat.presence import set_tracker
from marketchat.realtime.manager import message_router
from marketchat.users.service import UserDirectory

TEST_SECRET = "test-secret-key-with-at-least-32-bytes!"


@pytest.fixture(autouse=True)
def test_config():
    """In-memory storage and a known signing secret for every test."""
    config = AppSettings(
        storage=StorageSettings(conversations_db_path=":memory:", users_db_path=":memory:"),
        secrets=Secrets(jwt=JWTSecrets(secret_key=TEST_SECRET)),
    )
    set_config(config)
    yield config
    set_config(None)


@pytest.fixture(autouse=True)
def reset_services(test_config):
    """Fresh store, directory, router and presence tracker per test.

    DuckDB ``:memory:`` connections are private, so each test starts from
    empty tables.
    """
    ConversationStore.reset_instance()
    UserDirectory.reset_instance()
    message_router.clear()
    set_tracker(None)
    yield
    message_router.clear()
    set_tracker(None)
    ConversationStore.reset_instance()
    UserDirectory.reset_instance()


@pytest.fixture
def store(reset_services):
    from marketchat.conversations.store import get_store
    return get_store()


@pytest.fixture
def verifier():
    return TokenVerifier(TEST_SECRET)


@pytest.fixture
def make_token(verifier):
    """Issue a bearer token for a user ID."""
    return verifier.issue


@pytest.fixture
def auth_headers(make_token):
    """Build ``Authorization`` headers for a user ID."""
    def _headers(user_id: str) -> dict:
        return {"Authorization": f"Bearer {make_token(user_id)}"}
    return _headers


@pytest.fixture
def api_client():
    """Provide a TestClient for the main FastAPI app.

    The lifespan is not entered, so services are created lazily from the
    test settings above.
    """
    return TestClient(app)
