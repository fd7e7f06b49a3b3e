"""
Tests for the WhatsApp and Mistral HTTP clients against a stub requests session.

Tests cover:
- Request shape (URL, bearer token, payload)
- 2xx, non-2xx, timeout and connection error mapping
- Defensive parsing of structured completion output
"""

import json

import pytest
import requests

from polaris_crm.completion import MistralClient, parse_json_object, parse_suggestions
from polaris_crm.whatsapp import WhatsAppClient


class StubResponse:
    def __init__(self, status_code=200, body=None, text=None):
        self.status_code = status_code
        self._body = body
        self.text = text if text is not None else (json.dumps(body) if body is not None else "")

    @property
    def ok(self):
        return 200 <= self.status_code < 300

    def json(self):
        if self._body is None:
            raise ValueError("No JSON body")
        return self._body


class StubSession:
    """Returns queued responses (or raises queued exceptions) and records calls."""

    def __init__(self, *responses):
        self.responses = list(responses)
        self.calls = []

    def _next(self, method, url, **kwargs):
        self.calls.append({"method": method, "url": url, **kwargs})
        response = self.responses.pop(0)
        if isinstance(response, Exception):
            raise response
        return response

    def post(self, url, **kwargs):
        return self._next("POST", url, **kwargs)

    def get(self, url, **kwargs):
        return self._next("GET", url, **kwargs)


def completion(content: str) -> StubResponse:
    return StubResponse(200, {
        "choices": [{"message": {"role": "assistant", "content": content}}],
        "usage": {"prompt_tokens": 10, "completion_tokens": 5},
    })


class TestWhatsAppClient:
    """Test the messaging transport."""

    def test_send_text_success(self, settings):
        """2xx with messages[0].id is a success carrying that id."""
        session = StubSession(StubResponse(200, {"messages": [{"id": "wamid.ABC"}]}))
        client = WhatsAppClient(settings, session=session)

        result = client.send_text("+221 77 123 45 67", "Hello")

        assert result.success is True
        assert result.message_id == "wamid.ABC"
        call = session.calls[0]
        assert call["url"] == "https://graph.facebook.com/v22.0/1234567890/messages"
        assert call["headers"]["Authorization"] == "Bearer test-access-token"
        assert call["json"] == {
            "messaging_product": "whatsapp",
            "to": "221771234567",
            "type": "text",
            "text": {"body": "Hello"},
        }
        assert call["timeout"] == settings.HTTP_TIMEOUT_SECONDS

    def test_non_2xx_is_failure(self, settings):
        """Non-2xx maps to 'HTTP <code>: <error.message>'."""
        session = StubSession(StubResponse(400, {"error": {"message": "Invalid parameter", "code": 100}}))

        result = WhatsAppClient(settings, session=session).send_text("221771234567", "Hello")

        assert result.success is False
        assert result.error == "HTTP 400: Invalid parameter"

    def test_timeout_is_failure(self, settings):
        session = StubSession(requests.Timeout("read timed out"))

        result = WhatsAppClient(settings, session=session).send_text("221771234567", "Hello")

        assert result.success is False
        assert "timed out" in result.error

    def test_connection_error_is_failure(self, settings):
        session = StubSession(requests.ConnectionError("refused"))

        result = WhatsAppClient(settings, session=session).send_text("221771234567", "Hello")

        assert result.success is False
        assert "refused" in result.error

    def test_malformed_success_body(self, settings):
        """A 2xx without messages[0].id is a failure."""
        session = StubSession(StubResponse(200, {"unexpected": True}))

        result = WhatsAppClient(settings, session=session).send_text("221771234567", "Hello")

        assert result.success is False

    def test_missing_credentials_no_network(self, settings):
        """Without a token nothing is sent."""
        configured = settings.model_copy(update={"WHATSAPP_ACCESS_TOKEN": ""})
        session = StubSession()

        result = WhatsAppClient(configured, session=session).send_text("221771234567", "Hello")

        assert result.success is False
        assert session.calls == []

    def test_send_template_parameters(self, settings):
        """Template parameters become body text parameters."""
        session = StubSession(StubResponse(200, {"messages": [{"id": "wamid.T"}]}))

        WhatsAppClient(settings, session=session).send_template(
            "221771234567", "event_reminder", "fr", ["Awa", "Saturday"]
        )

        template = session.calls[0]["json"]["template"]
        assert template["name"] == "event_reminder"
        assert template["language"] == {"code": "fr"}
        assert template["components"] == [{
            "type": "body",
            "parameters": [{"type": "text", "text": "Awa"}, {"type": "text", "text": "Saturday"}],
        }]

    def test_send_interactive_buttons(self, settings):
        """Buttons get btn_<index> ids and 20-character titles, three at most."""
        session = StubSession(StubResponse(200, {"messages": [{"id": "wamid.I"}]}))

        WhatsAppClient(settings, session=session).send_interactive(
            "221771234567",
            "Will you attend?",
            ["Yes, absolutely I will be there", "No", "Maybe", "Later"],
        )

        buttons = session.calls[0]["json"]["interactive"]["action"]["buttons"]
        assert [b["reply"]["id"] for b in buttons] == ["btn_0", "btn_1", "btn_2"]
        assert buttons[0]["reply"]["title"] == "Yes, absolutely I wi"
        assert len(buttons[0]["reply"]["title"]) == 20

    def test_verify_credentials(self, settings):
        session = StubSession(StubResponse(200, {
            "display_phone_number": "+1 555 000 1111",
            "verified_name": "Polaris",
        }))

        result = WhatsAppClient(settings, session=session).verify_credentials()

        assert result == {"valid": True, "phone_number": "+1 555 000 1111", "verified_name": "Polaris"}
        assert session.calls[0]["method"] == "GET"
        assert session.calls[0]["url"] == "https://graph.facebook.com/v22.0/1234567890"


class TestMistralClient:
    """Test the completion provider."""

    def test_complete_builds_messages(self, settings):
        """System prompt, history (oldest first), then the user message."""
        session = StubSession(completion("  Hello Awa!  "))
        history = [{"role": "user", "content": "Hi"}, {"role": "assistant", "content": "Hello!"}]

        result = MistralClient(settings, session=session).complete("Be brief.", history, "News?")

        assert result.success is True
        assert result.text == "Hello Awa!"
        assert result.usage["completion_tokens"] == 5
        call = session.calls[0]
        assert call["url"] == "https://api.mistral.ai/v1/chat/completions"
        assert call["headers"]["Authorization"] == "Bearer test-mistral-key"
        assert call["json"]["messages"] == [
            {"role": "system", "content": "Be brief."},
            {"role": "user", "content": "Hi"},
            {"role": "assistant", "content": "Hello!"},
            {"role": "user", "content": "News?"},
        ]
        assert call["json"]["max_tokens"] == 500
        assert call["json"]["temperature"] == 0.7

    def test_default_system_prompt_names_app(self, settings):
        session = StubSession(completion("Hi"))

        MistralClient(settings, session=session).generate_auto_reply("Hello", [])

        system = session.calls[0]["json"]["messages"][0]
        assert system["role"] == "system"
        assert settings.APP_NAME in system["content"]

    def test_non_2xx_is_failure(self, settings):
        session = StubSession(StubResponse(429, {"message": "Rate limit exceeded"}))

        result = MistralClient(settings, session=session).complete(None, [], "Hello")

        assert result.success is False
        assert result.error == "HTTP 429: Rate limit exceeded"

    def test_timeout_is_failure(self, settings):
        session = StubSession(requests.Timeout())

        result = MistralClient(settings, session=session).complete(None, [], "Hello")

        assert result.success is False

    def test_disabled_without_key(self, settings):
        """No API key: failed result, no network call."""
        configured = settings.model_copy(update={"MISTRAL_API_KEY": ""})
        session = StubSession()

        result = MistralClient(configured, session=session).complete(None, [], "Hello")

        assert result.success is False
        assert session.calls == []

    def test_detect_intent_parses_fenced_json(self, settings):
        """Code fences are stripped and French urgency labels normalized."""
        content = (
            "```json\n"
            '{"intent": "question", "urgency": "haute", "category": "event", '
            '"requires_human": false, "suggested_action": "answer"}\n'
            "```"
        )
        session = StubSession(completion(content))

        intent = MistralClient(settings, session=session).detect_intent("Quand est la réunion?")

        assert intent is not None
        assert intent.urgency == "high"
        assert intent.requires_human is False
        assert intent.category == "event"

    @pytest.mark.parametrize(
        "content",
        [
            "I think this is urgent",
            '{"intent": "question"}',
            '{"intent": "question", "urgency": "extreme"}',
            "[1, 2, 3]",
        ],
    )
    def test_detect_intent_invalid_output(self, settings, content):
        """Invalid JSON or schema gives None, never an exception."""
        session = StubSession(completion(content))

        assert MistralClient(settings, session=session).detect_intent("Hello") is None

    def test_detect_intent_provider_failure(self, settings):
        session = StubSession(StubResponse(500, {"message": "boom"}))

        assert MistralClient(settings, session=session).detect_intent("Hello") is None

    def test_analyze_sentiment(self, settings):
        content = '{"sentiment": "positif", "confidence": 0.9, "emotions": ["joy"], "summary": "Happy"}'
        session = StubSession(completion(content))

        analysis = MistralClient(settings, session=session).analyze_sentiment("Merci beaucoup !")

        assert analysis.sentiment == "positive"
        assert analysis.confidence == 0.9
        assert analysis.emotions == ["joy"]


class TestParsing:
    """Test output parsing helpers."""

    def test_parse_json_object(self):
        assert parse_json_object('```\n{"a": 1}\n```') == {"a": 1}
        assert parse_json_object("not json") is None
        assert parse_json_object(None) is None

    def test_parse_suggestions(self):
        text = '1. "Thanks, see you Saturday"\n2) We will check.\n\n- Call us anytime\n4. Extra'

        assert parse_suggestions(text, 3) == [
            "Thanks, see you Saturday",
            "We will check.",
            "Call us anytime",
        ]
