"""
Mistral AI completion client (OpenAI-compatible chat completions).

USAGE:
    client = MistralClient(get_settings())
    classification = client.detect_intent("I need help with my membership")
    reply = client.generate_auto_reply("Hello!", history=[])

FALLBACK BEHAVIOR:
- If AI is disabled or no API key: every call fails fast, no network
- If the API fails or times out: failed CompletionResult
- If a structured answer is not valid JSON: None
"""

import json
import logging
import re
from dataclasses import dataclass, field
from typing import Optional, Sequence

import requests
from pydantic import ValidationError

from polaris_crm.config import Settings
from polaris_crm.metrics import record_provider_call
from polaris_crm.schemas import IntentClassification, SentimentAnalysis

logger = logging.getLogger(__name__)

# ```json ... ``` wrappers some models put around JSON answers
_CODE_FENCE = re.compile(r"^```[a-zA-Z]*\s*|\s*```$")
_NUMBERED_LINE = re.compile(r"^\s*(?:\d+[.)]|[-*])\s*")

JSON_ONLY_PROMPT = "You are an expert in communication analysis. Reply with valid JSON only."


@dataclass
class CompletionResult:
    """Outcome of one chat completion call."""
    success: bool
    text: Optional[str] = None
    error: Optional[str] = None
    usage: dict = field(default_factory=dict)


def strip_code_fences(content: str) -> str:
    return _CODE_FENCE.sub("", content.strip()).strip()


def parse_json_object(content: Optional[str]) -> Optional[dict]:
    """Decode a JSON object from model output, tolerating code fences."""
    if not content:
        return None
    try:
        data = json.loads(strip_code_fences(content))
    except ValueError:
        logger.warning(f"Completion output is not valid JSON: {content[:120]!r}")
        return None
    return data if isinstance(data, dict) else None


def parse_suggestions(content: Optional[str], count: int) -> list[str]:
    """Split a numbered list answer into at most `count` suggestions."""
    if not content:
        return []
    suggestions = []
    for line in content.splitlines():
        cleaned = _NUMBERED_LINE.sub("", line).strip().strip('"')
        if cleaned:
            suggestions.append(cleaned)
    return suggestions[:count]


class MistralClient:
    """Completion provider backed by the Mistral chat completions API."""

    def __init__(self, settings: Settings, session: Optional[requests.Session] = None):
        self._enabled = settings.ai_available
        self._api_key = settings.MISTRAL_API_KEY
        self._url = f"{settings.MISTRAL_BASE_URL.rstrip('/')}/chat/completions"
        self._model = settings.MISTRAL_MODEL
        self._max_tokens = settings.MISTRAL_MAX_TOKENS
        self._temperature = settings.MISTRAL_TEMPERATURE
        self._timeout = settings.HTTP_TIMEOUT_SECONDS
        self._app_name = settings.APP_NAME
        self._session = session or requests.Session()

        if not self._enabled:
            logger.info("Mistral client disabled (AI_ENABLED off or MISTRAL_API_KEY missing)")

    @property
    def default_system_prompt(self) -> str:
        return (
            f"You are the virtual assistant of the association {self._app_name}. "
            "A member is writing to you on WhatsApp. Reply in a warm and professional "
            "way, stay concise (100 words at most), point administrative questions to "
            "the team, and answer in the member's language."
        )

    # =========================================================================
    # Core call
    # =========================================================================

    def complete(
        self,
        system_prompt: Optional[str],
        history: Sequence[dict],
        user_message: str,
    ) -> CompletionResult:
        """
        Run one chat completion.

        Args:
            system_prompt: System framing; None uses the association default
            history: Prior turns as {"role": "user"|"assistant", "content": str}, oldest first
            user_message: The message to answer

        Returns:
            CompletionResult with the stripped reply text on success
        """
        if not self._enabled:
            return CompletionResult(success=False, error="AI assistance is not available")

        messages = [{"role": "system", "content": system_prompt or self.default_system_prompt}]
        messages.extend({"role": m["role"], "content": m["content"]} for m in history)
        messages.append({"role": "user", "content": user_message})

        payload = {
            "model": self._model,
            "messages": messages,
            "max_tokens": self._max_tokens,
            "temperature": self._temperature,
        }
        headers = {
            "Authorization": f"Bearer {self._api_key}",
            "Content-Type": "application/json",
        }

        try:
            response = self._session.post(
                self._url, headers=headers, json=payload, timeout=self._timeout
            )
        except requests.Timeout:
            logger.warning(f"Mistral API timeout after {self._timeout}s")
            record_provider_call("mistral", success=False)
            return CompletionResult(success=False, error="Request timed out")
        except requests.RequestException as e:
            logger.warning(f"Mistral API error: {e}")
            record_provider_call("mistral", success=False)
            return CompletionResult(success=False, error=f"Connection error: {e}")

        if not response.ok:
            error = self._error_message(response)
            logger.warning(f"Mistral API returned {error}")
            record_provider_call("mistral", success=False)
            return CompletionResult(success=False, error=error)

        try:
            data = response.json()
            text = data["choices"][0]["message"]["content"]
        except (ValueError, KeyError, IndexError, TypeError):
            logger.warning("Mistral API response missing choices[0].message.content")
            record_provider_call("mistral", success=False)
            return CompletionResult(success=False, error="Malformed completion response")

        record_provider_call("mistral", success=True)
        usage = data.get("usage") or {}
        logger.debug(f"Mistral usage: {usage}")
        return CompletionResult(success=True, text=(text or "").strip(), usage=usage)

    @staticmethod
    def _error_message(response: requests.Response) -> str:
        detail = "Unknown error"
        try:
            body = response.json()
            if isinstance(body, dict):
                error = body.get("error")
                if isinstance(error, dict):
                    detail = error.get("message") or detail
                else:
                    detail = body.get("message") or error or detail
        except ValueError:
            pass
        return f"HTTP {response.status_code}: {detail}"

    # =========================================================================
    # Structured analyses
    # =========================================================================

    def detect_intent(self, text: str) -> Optional[IntentClassification]:
        """Classify intent and urgency; None when the provider fails or answers badly."""
        prompt = (
            "Analyse this message from a member and determine its main intent. "
            "Reply with a JSON object:\n"
            "{\n"
            '  "intent": "question|request|complaint|compliment|information|other",\n'
            '  "urgency": "low|medium|high",\n'
            '  "category": "administrative|event|membership|general|technical",\n'
            '  "requires_human": true/false,\n'
            '  "suggested_action": "recommended action"\n'
            "}\n\n"
            f'Message: "{text}"'
        )
        result = self.complete(JSON_ONLY_PROMPT, [], prompt)
        if not result.success:
            return None

        data = parse_json_object(result.text)
        if data is None:
            return None
        try:
            return IntentClassification.model_validate(data)
        except ValidationError as e:
            logger.warning(f"Intent classification rejected: {e.error_count()} invalid field(s)")
            return None

    def analyze_sentiment(self, text: str) -> Optional[SentimentAnalysis]:
        prompt = (
            "Analyse the sentiment of this message and reply only with a JSON object:\n"
            "{\n"
            '  "sentiment": "positive|neutral|negative",\n'
            '  "confidence": 0.0-1.0,\n'
            '  "emotions": ["detected emotions"],\n'
            '  "summary": "one sentence summary"\n'
            "}\n\n"
            f'Message: "{text}"'
        )
        result = self.complete(
            "You are an expert in sentiment analysis. Reply with valid JSON only.", [], prompt
        )
        if not result.success:
            return None

        data = parse_json_object(result.text)
        if data is None:
            return None
        try:
            return SentimentAnalysis.model_validate(data)
        except ValidationError as e:
            logger.warning(f"Sentiment analysis rejected: {e.error_count()} invalid field(s)")
            return None

    # =========================================================================
    # Text generation
    # =========================================================================

    def generate_auto_reply(self, text: str, history: Sequence[dict]) -> CompletionResult:
        return self.complete(None, history, text)

    def improve_message(self, text: str) -> CompletionResult:
        """Rewrite an operator draft for grammar, tone and clarity."""
        prompt = (
            "Improve this message for grammar, tone and clarity. Keep it authentic "
            "but make it more effective for association communication.\n\n"
            f'Message to improve: "{text}"\n\n'
            "Reply with the improved message only, without explanation."
        )
        return self.complete(
            "You are an expert writer for associations. You improve messages while "
            "keeping the sender's intent.",
            [],
            prompt,
        )

    def suggest_replies(self, text: str, count: int = 3) -> CompletionResult:
        """Ask for `count` short numbered reply suggestions; see parse_suggestions()."""
        prompt = (
            f"Generate {count} short reply suggestions (50 words at most each) to this "
            f"message from a member of the association {self._app_name}. Vary them: "
            "one formal, one friendly, one practical.\n\n"
            "Answer as a numbered list:\n1. ...\n2. ...\n\n"
            f'Member message: "{text}"'
        )
        return self.complete(
            "You are an expert in communication for associations.", [], prompt
        )
