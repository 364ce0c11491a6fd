"""
Pytest configuration and shared fixtures.

Test environment variables are set here before any sms_relay import so the
cached settings and the database engine pick them up. External services
(Twilio, Telegram, Anthropic, Ollama, the menu API, the calendar gateway
and Vapi) are replaced by in-memory fakes wired through build_services().
"""

import os

os.environ["DATABASE_URL"] = "sqlite:///./test_sms_relay.db"
os.environ["ENVIRONMENT"] = "development"
os.environ["LOG_LEVEL"] = "WARNING"
os.environ["PUBLIC_BASE_URL"] = "http://testserver"
os.environ["TWILIO_AUTH_TOKEN"] = "test-auth-token"
os.environ["TWILIO_PHONE_NUMBER"] = "+15145550100"
os.environ["TELEGRAM_WEBHOOK_SECRET"] = "test-telegram-secret"
os.environ["READ_API_KEY"] = "test-read-key"
os.environ["READ_ALLOWLIST"] = ""
os.environ["OWNER_PHONE_NUMBER"] = "+15145550000"
os.environ["VAPI_PHONE_NUMBER"] = "+15145550001"
os.environ["REMINDER_CHECKER_ENABLED"] = "false"
os.environ["RECONCILE_ENABLED"] = "false"

import pytest

# Clear settings cache before any app imports to ensure test env vars are used
from sms_relay.config import get_settings
get_settings.cache_clear()

from fastapi.testclient import TestClient

from sms_relay.llm import ModelError
from sms_relay.main import app
from sms_relay.memory import MemoryHit
from sms_relay.menu_api import MenuApiResult
from sms_relay.reminders import CallResult
from sms_relay.services import build_services, get_services
from sms_relay.storage import Base, SessionLocal, engine
from sms_relay.telephony import SendResult

READ_API_KEY = "test-read-key"
TELEGRAM_SECRET = "test-telegram-secret"


# =============================================================================
# Fakes
# =============================================================================

class FakeTelephony:
    configured = True

    def __init__(self):
        self.sent = []
        self.fail_with = None

    async def send_sms(self, to, body):
        if self.fail_with:
            return SendResult(success=False, error=self.fail_with)
        self.sent.append((to, body))
        return SendResult(success=True, sid=f"SM{len(self.sent):04d}")


class FakeNotifier:
    configured = True

    def __init__(self):
        self.approval_requests = []
        self.messages = []
        self.edits = []
        self.callbacks = []
        self.fail_approvals = False

    def approval_url(self, message_id):
        return f"http://testserver/approval/{message_id}"

    async def send_approval_request(self, **kwargs):
        if self.fail_approvals:
            return None
        self.approval_requests.append(kwargs)
        return 1000 + len(self.approval_requests)

    async def send_message(self, text):
        self.messages.append(text)
        return 2000 + len(self.messages)

    async def edit_message(self, telegram_message_id, text):
        self.edits.append((telegram_message_id, text))
        return True

    async def answer_callback(self, callback_query_id, text=""):
        self.callbacks.append(callback_query_id)


class FakeModel:
    configured = True

    def __init__(self):
        self.reply = "Sounds great, see you then!"
        self.error = None
        self.calls = []

    async def complete(self, system, messages, max_tokens=None):
        self.calls.append({"system": system, "messages": messages})
        if self.error:
            raise ModelError(self.error)
        return self.reply


class FakeMenuApi:
    def __init__(self):
        self.configured = True
        self.evaluation = MenuApiResult(ok=True, status=200, data={"status": "no_action"})
        self.apply_result = MenuApiResult(ok=True, status=200, data={"status": "applied"})
        self.evaluated = []
        self.applied = []
        self.mirrored = []

    async def evaluate_menu_change(self, phone, message, event_identifier=None):
        self.evaluated.append((phone, message))
        return self.evaluation

    async def apply_menu_change(self, payload):
        self.applied.append(payload)
        return self.apply_result

    async def mirror_inbound(self, payload):
        self.mirrored.append(payload)
        return MenuApiResult(ok=True, status=200, data={})


class FakeMemory:
    def __init__(self):
        self.hits = []
        self.search_error = None
        self.write_ok = True
        self.writes = []
        self.searches = []

    async def search(self, query, scope=None, limit=10, category=None):
        self.searches.append((query, scope))
        if self.search_error:
            raise self.search_error
        return [MemoryHit(content=content, similarity=0.9) for content in self.hits][:limit]

    async def write(self, content, category="general", importance=5, source=""):
        if not self.write_ok:
            return False
        self.writes.append({"content": content, "category": category, "importance": importance, "source": source})
        return True


class FakeCalendar:
    def __init__(self):
        self.context = None
        self.error = None

    async def get_context(self, message_body, today=None):
        if self.error:
            raise self.error
        return self.context


class FakeVapi:
    def __init__(self):
        self.configured = True
        self.results = []
        self.calls = []

    async def place_call(self, message):
        self.calls.append(message)
        if self.results:
            return self.results.pop(0)
        return CallResult(success=True, call_id=f"call_{len(self.calls)}")


# =============================================================================
# Fixtures
# =============================================================================

@pytest.fixture(autouse=True)
def database():
    """Fresh tables for every test."""
    Base.metadata.create_all(bind=engine)
    yield
    Base.metadata.drop_all(bind=engine)


@pytest.fixture
def fakes():
    return {
        "telephony": FakeTelephony(),
        "notifier": FakeNotifier(),
        "model": FakeModel(),
        "menu_api": FakeMenuApi(),
        "memory": FakeMemory(),
        "calendar": FakeCalendar(),
        "vapi": FakeVapi(),
    }


@pytest.fixture
def make_services(fakes):
    """Build a service graph around the fakes, optionally with settings overrides."""
    def _make(**overrides):
        config = get_settings()
        if overrides:
            config = config.model_copy(update=overrides)
        return build_services(config, session_factory=SessionLocal, **fakes)
    return _make


@pytest.fixture
def services(make_services):
    return make_services()


@pytest.fixture
def client_for():
    """Open a TestClient whose routes resolve to the given service graph."""
    opened = []

    def _open(graph):
        app.dependency_overrides[get_services] = lambda: graph
        test_client = TestClient(app)
        test_client.__enter__()
        opened.append(test_client)
        return test_client

    yield _open

    for test_client in opened:
        test_client.__exit__(None, None, None)
    app.dependency_overrides.clear()


@pytest.fixture
def client(client_for, services):
    """Create test client backed by the default fake service graph."""
    return client_for(services)


@pytest.fixture
def auth_headers():
    return {"x-api-key": READ_API_KEY}


@pytest.fixture
def seed_draft():
    """Store an inbound message and a pending draft reply; returns the draft id."""
    from sms_relay import storage

    def _seed(
        phone="+15145551234",
        incoming="Hi, do you have availability in June?",
        draft="Hi! Yes, we do. What date are you looking at?",
        client_name=None,
    ):
        with SessionLocal() as db:
            conversation = storage.get_or_create_conversation(db, phone, client_name)
            storage.store_incoming_message(db, conversation.id, None, incoming)
            return storage.store_draft_reply(db, conversation.id, draft).id

    return _seed


@pytest.fixture
def message_status():
    """Read back the stored status of a message."""
    from sms_relay import storage

    def _status(message_id):
        with SessionLocal() as db:
            return storage.get_message(db, message_id).status

    return _status
