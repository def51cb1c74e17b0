"""
Pytest configuration and shared fixtures.

Test environment variables are set here before any notifier import so the
module-level settings and engine pick them up.
"""

import os

os.environ.setdefault("DATABASE_URL", "sqlite:///./test_notifier.db")
os.environ.setdefault("LOG_LEVEL", "WARNING")
os.environ.setdefault("WHATSAPP_TOKEN", "test-token")
os.environ.setdefault("PHONE_NUMBER_ID", "1234567890")
os.environ.setdefault("TEMPLATE_CONSULTA", "lembrete_consulta")
os.environ.setdefault("TEMPLATE_EXAME", "lembrete_exame")
os.environ.setdefault("WEBHOOK_VERIFY_TOKEN", "test-verify-token")
os.environ.setdefault("SEND_INTERVAL_SECONDS", "0")

import pytest
from fastapi.testclient import TestClient

# Clear settings cache before any app imports to ensure test env vars are used
from notifier.config import get_settings
get_settings.cache_clear()

from notifier.correlator import WebhookCorrelator
from notifier.dispatcher import Dispatcher
from notifier.exceptions import SendFailure
from notifier.formatter import TemplateConfig
from notifier.storage import Base, SessionLocal, engine
import notifier.models  # noqa: F401  (registers tables)
from notifier.main import app


class StubMessagingClient:
    """In-memory MessagingClient recording every call."""

    def __init__(self, events=None):
        self.events = events if events is not None else []
        self.template_calls = []
        self.text_calls = []
        self.fail_for = set()
        self.next_ids = []
        self.fail_text = False
        self._counter = 0

    async def send_template(self, to, template_name, parameters):
        self.template_calls.append((to, template_name, list(parameters)))
        self.events.append(("send", to))
        if to in self.fail_for:
            raise SendFailure("(#131026) Message undeliverable", status_code=400)
        if self.next_ids:
            return self.next_ids.pop(0)
        self._counter += 1
        return f"wamid.{self._counter}"

    async def send_text(self, to, body):
        self.text_calls.append((to, body))
        if self.fail_text:
            raise SendFailure("provider unavailable", status_code=503)
        return f"wamid.ack.{len(self.text_calls)}"


class RecordingSleep:
    """Replacement for asyncio.sleep that records requested delays."""

    def __init__(self, events=None):
        self.events = events if events is not None else []
        self.calls = []

    async def __call__(self, seconds):
        self.calls.append(seconds)
        self.events.append(("sleep", seconds))


@pytest.fixture
def events():
    return []


@pytest.fixture
def stub_client(events):
    return StubMessagingClient(events)


@pytest.fixture
def recording_sleep(events):
    return RecordingSleep(events)


@pytest.fixture
def templates():
    return TemplateConfig(consulta="lembrete_consulta", exame="lembrete_exame")


@pytest.fixture(scope="function")
def db():
    """Fresh tables and an open session for each test."""
    Base.metadata.create_all(bind=engine)
    session = SessionLocal()
    try:
        yield session
    finally:
        session.close()
        Base.metadata.drop_all(bind=engine)


@pytest.fixture(scope="function")
def client(stub_client, templates):
    """Test client with fresh tables and the stub client behind dispatch and webhooks."""
    Base.metadata.create_all(bind=engine)

    with TestClient(app) as test_client:
        app.state.dispatcher = Dispatcher(SessionLocal, stub_client, templates, send_interval=0)
        app.state.correlator = WebhookCorrelator(SessionLocal, stub_client)
        yield test_client

    Base.metadata.drop_all(bind=engine)
