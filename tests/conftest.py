"""
Pytest configuration and shared fixtures.

Test environment variables are set here, before any polaris_crm import,
and the settings cache is cleared so they are picked up.
External collaborators (WhatsApp, Mistral) are replaced with in-process fakes.
"""

import os

os.environ.setdefault("DATABASE_URL", "sqlite:///./test_polaris.db")
os.environ.setdefault("LOG_LEVEL", "WARNING")
os.environ.setdefault("WEBHOOK_VERIFY_TOKEN", "test-verify-token")
os.environ.setdefault("WHATSAPP_ACCESS_TOKEN", "test-access-token")
os.environ.setdefault("WHATSAPP_PHONE_NUMBER_ID", "1234567890")
os.environ.setdefault("WHATSAPP_APP_SECRET", "test-app-secret")
os.environ.setdefault("MISTRAL_API_KEY", "test-mistral-key")

import pytest

# Clear settings cache before any app imports to ensure test env vars are used
from polaris_crm.config import get_settings
get_settings.cache_clear()

from fastapi.testclient import TestClient

from polaris_crm.completion import CompletionResult
from polaris_crm.main import app, get_completion_provider, get_transport
from polaris_crm.schemas import IntentClassification, SentimentAnalysis
from polaris_crm.storage import Base, SessionLocal, engine
from polaris_crm.whatsapp import SendResult


class FakeTransport:
    """
    Records every send. `outcomes` is consumed one entry per call:
    "ok", "fail" or "raise". When empty, sends succeed.
    """

    def __init__(self):
        self.sent = []
        self.outcomes = []
        self.credentials_error = None

    def send_text(self, to, body):
        self.sent.append((to, body))
        outcome = self.outcomes.pop(0) if self.outcomes else "ok"
        if outcome == "raise":
            raise RuntimeError("transport exploded")
        if outcome == "fail":
            return SendResult(success=False, error="HTTP 400: Recipient not allowed")
        return SendResult(success=True, message_id=f"wamid.out.{len(self.sent)}")

    def verify_credentials(self):
        if self.credentials_error:
            return {"valid": False, "error": self.credentials_error}
        return {"valid": True, "phone_number": "+221 77 000 00 00", "verified_name": "Polaris"}


class FakeCompletionProvider:
    """
    Canned completion provider.

    intent: IntentClassification returned by detect_intent (None = unavailable)
    reply: text returned by generate_auto_reply (None = provider failure)
    """

    def __init__(self):
        self.intent = None
        self.reply = "Thanks for reaching out!"
        self.raise_on_intent = False
        self.intent_calls = []
        self.reply_calls = []

    def detect_intent(self, text):
        self.intent_calls.append(text)
        if self.raise_on_intent:
            raise RuntimeError("classifier exploded")
        return self.intent

    def generate_auto_reply(self, text, history):
        self.reply_calls.append((text, list(history)))
        if self.reply is None:
            return CompletionResult(success=False, error="HTTP 503: upstream unavailable")
        return CompletionResult(success=True, text=self.reply)

    def improve_message(self, text):
        if self.reply is None:
            return CompletionResult(success=False, error="HTTP 503: upstream unavailable")
        return CompletionResult(success=True, text=f"Improved: {text}")

    def suggest_replies(self, text, count=3):
        if self.reply is None:
            return CompletionResult(success=False, error="HTTP 503: upstream unavailable")
        lines = [f"{i}. Suggestion {i}" for i in range(1, count + 1)]
        return CompletionResult(success=True, text="\n".join(lines))

    def analyze_sentiment(self, text):
        if self.reply is None:
            return None
        return SentimentAnalysis(sentiment="positive", confidence=0.9, emotions=["joy"], summary=text)


def make_intent(urgency="low", requires_human=False, **extra) -> IntentClassification:
    return IntentClassification(
        intent=extra.get("intent", "question"),
        urgency=urgency,
        category=extra.get("category", "general"),
        requires_human=requires_human,
        suggested_action=extra.get("suggested_action", ""),
    )


@pytest.fixture
def settings():
    return get_settings()


@pytest.fixture
def fake_transport():
    return FakeTransport()


@pytest.fixture
def fake_provider():
    return FakeCompletionProvider()


@pytest.fixture
def intent_factory():
    return make_intent


@pytest.fixture(scope="function")
def client(fake_transport, fake_provider):
    """Create test client with fresh database and faked external services."""
    Base.metadata.create_all(bind=engine)
    app.dependency_overrides[get_transport] = lambda: fake_transport
    app.dependency_overrides[get_completion_provider] = lambda: fake_provider

    with TestClient(app) as test_client:
        yield test_client

    app.dependency_overrides.clear()
    Base.metadata.drop_all(bind=engine)


@pytest.fixture
def override_settings():
    """Swap the injected Settings for a copy with some fields changed."""

    def _override(**changes):
        app.dependency_overrides[get_settings] = lambda: get_settings().model_copy(update=changes)

    yield _override
    app.dependency_overrides.pop(get_settings, None)


@pytest.fixture(scope="function")
def db_session():
    """Bare session on a fresh schema, for component tests."""
    Base.metadata.create_all(bind=engine)
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()
        Base.metadata.drop_all(bind=engine)
