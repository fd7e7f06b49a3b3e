"""
WhatsApp Business (Meta Cloud API) client.

Sends text, template and interactive button messages through
POST {base}/{version}/{phone_number_id}/messages with a bearer token.

Delivery failures never raise: every send returns a SendResult.
"""

import logging
from dataclasses import dataclass
from typing import Optional, Sequence

import requests

from polaris_crm.config import Settings
from polaris_crm.metrics import record_provider_call
from polaris_crm.utils import canonical_phone

logger = logging.getLogger(__name__)

MAX_BUTTONS = 3
MAX_BUTTON_TITLE = 20


class ProviderError(Exception):
    """Raised inside the HTTP clients; converted to a failed result before leaving them."""
    pass


@dataclass
class SendResult:
    """Outcome of one outbound message."""
    success: bool
    message_id: Optional[str] = None
    error: Optional[str] = None


def _error_message(response: requests.Response) -> str:
    """'HTTP <code>: <error.message>' from a Graph API error body."""
    detail = "Unknown error"
    try:
        body = response.json()
        if isinstance(body, dict):
            detail = (body.get("error") or {}).get("message") or detail
    except ValueError:
        if response.text:
            detail = response.text[:200]
    return f"HTTP {response.status_code}: {detail}"


class WhatsAppClient:
    """
    Messaging transport over the WhatsApp Cloud API.

    USAGE:
        client = WhatsAppClient(get_settings())
        result = client.send_text("+221 77 123 45 67", "Hello!")
        if result.success:
            print(result.message_id)
    """

    def __init__(self, settings: Settings, session: Optional[requests.Session] = None):
        self._access_token = settings.WHATSAPP_ACCESS_TOKEN
        self._phone_number_id = settings.WHATSAPP_PHONE_NUMBER_ID
        self._base_url = f"{settings.WHATSAPP_BASE_URL.rstrip('/')}/{settings.WHATSAPP_API_VERSION}"
        self._timeout = settings.HTTP_TIMEOUT_SECONDS
        self._session = session or requests.Session()

    @property
    def configured(self) -> bool:
        return bool(self._access_token and self._phone_number_id)

    @property
    def messages_url(self) -> str:
        return f"{self._base_url}/{self._phone_number_id}/messages"

    def _headers(self) -> dict:
        return {
            "Authorization": f"Bearer {self._access_token}",
            "Content-Type": "application/json",
        }

    # =========================================================================
    # Public send operations
    # =========================================================================

    def send_text(self, to: str, body: str) -> SendResult:
        payload = {
            "messaging_product": "whatsapp",
            "to": canonical_phone(to),
            "type": "text",
            "text": {"body": body},
        }
        return self._send(payload)

    def send_template(
        self,
        to: str,
        template_name: str,
        language_code: str = "en_US",
        parameters: Sequence[str] = (),
    ) -> SendResult:
        """
        Send a pre-approved template.

        Args:
            to: Recipient phone, any formatting
            template_name: Template registered in WhatsApp Manager
            language_code: Template language
            parameters: Positional body parameters, sent as text
        """
        template = {"name": template_name, "language": {"code": language_code}}
        if parameters:
            template["components"] = [
                {
                    "type": "body",
                    "parameters": [{"type": "text", "text": str(p)} for p in parameters],
                }
            ]

        payload = {
            "messaging_product": "whatsapp",
            "to": canonical_phone(to),
            "type": "template",
            "template": template,
        }
        return self._send(payload)

    def send_interactive(self, to: str, text: str, buttons: Sequence[str]) -> SendResult:
        """Send a message with up to three reply buttons (ids btn_0, btn_1, ...)."""
        if len(buttons) > MAX_BUTTONS:
            logger.warning(f"Interactive message has {len(buttons)} buttons, keeping {MAX_BUTTONS}")

        payload = {
            "messaging_product": "whatsapp",
            "to": canonical_phone(to),
            "type": "interactive",
            "interactive": {
                "type": "button",
                "body": {"text": text},
                "action": {
                    "buttons": [
                        {
                            "type": "reply",
                            "reply": {"id": f"btn_{index}", "title": title[:MAX_BUTTON_TITLE]},
                        }
                        for index, title in enumerate(buttons[:MAX_BUTTONS])
                    ]
                },
            },
        }
        return self._send(payload)

    def verify_credentials(self) -> dict:
        """
        Check the configured token against the phone number id.

        Returns:
            {"valid": bool, "phone_number": ..., "verified_name": ...} or
            {"valid": False, "error": ...}
        """
        if not self.configured:
            return {"valid": False, "error": "WhatsApp credentials not configured"}

        try:
            response = self._session.get(
                f"{self._base_url}/{self._phone_number_id}",
                headers=self._headers(),
                timeout=self._timeout,
            )
        except requests.RequestException as e:
            logger.warning(f"WhatsApp credential check failed: {e}")
            return {"valid": False, "error": str(e)}

        if not response.ok:
            return {"valid": False, "error": _error_message(response)}

        data = response.json()
        return {
            "valid": True,
            "phone_number": data.get("display_phone_number"),
            "verified_name": data.get("verified_name"),
        }

    # =========================================================================
    # HTTP
    # =========================================================================

    def _send(self, payload: dict) -> SendResult:
        if not self.configured:
            logger.error("WhatsApp credentials not configured, message not sent")
            return SendResult(success=False, error="WhatsApp credentials not configured")

        if not payload["to"]:
            return SendResult(success=False, error="Recipient phone number is empty")

        try:
            message_id = self._post(payload)
        except ProviderError as e:
            logger.warning(f"WhatsApp send failed ({payload['type']}): {e}")
            record_provider_call("whatsapp", success=False)
            return SendResult(success=False, error=str(e))

        record_provider_call("whatsapp", success=True)
        logger.info(f"WhatsApp {payload['type']} message sent: {message_id}")
        return SendResult(success=True, message_id=message_id)

    def _post(self, payload: dict) -> Optional[str]:
        """POST the payload; returns messages[0].id or raises ProviderError."""
        try:
            response = self._session.post(
                self.messages_url,
                headers=self._headers(),
                json=payload,
                timeout=self._timeout,
            )
        except requests.Timeout:
            raise ProviderError(f"Request timed out after {self._timeout}s")
        except requests.RequestException as e:
            raise ProviderError(f"Connection error: {e}")

        if not response.ok:
            raise ProviderError(_error_message(response))

        try:
            data = response.json()
            return data["messages"][0]["id"]
        except (ValueError, KeyError, IndexError, TypeError):
            raise ProviderError("Malformed response: missing messages[0].id")
