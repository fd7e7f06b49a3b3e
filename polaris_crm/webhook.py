"""
WhatsApp webhook envelope processing.

The HTTP route acknowledges first and hands the parsed body to
WebhookProcessor.process_envelope() as a background task. Each status
update and inbound message is validated and handled on its own, so one
bad item never aborts the rest of the batch.
"""

import logging
from dataclasses import dataclass
from typing import Iterator, Optional

from pydantic import ValidationError

from polaris_crm.config import Settings
from polaris_crm.metrics import record_webhook_event
from polaris_crm.schemas import InboundMessageEvent, StatusEvent
from polaris_crm.storage import apply_status_update, create_message, get_conversation_history
from polaris_crm.utils import epoch_to_iso, utc_now_iso

logger = logging.getLogger(__name__)

SUBSCRIBE_MODE = "subscribe"


@dataclass
class ProcessingReport:
    """Counters for one envelope."""
    statuses_updated: int = 0
    statuses_ignored: int = 0
    statuses_not_found: int = 0
    messages_processed: int = 0
    messages_skipped: int = 0
    errors: int = 0


def verify_subscription(settings: Settings, mode: Optional[str], token: Optional[str]) -> bool:
    """True when Meta's GET handshake carries mode=subscribe and our verify token."""
    if not settings.WEBHOOK_VERIFY_TOKEN:
        return False
    return mode == SUBSCRIBE_MODE and token == settings.WEBHOOK_VERIFY_TOKEN


def iter_message_changes(payload: dict) -> Iterator[dict]:
    """Yield the `value` of every change record with field == "messages"."""
    entries = payload.get("entry")
    if not isinstance(entries, list):
        return
    for entry in entries:
        if not isinstance(entry, dict) or not isinstance(entry.get("changes"), list):
            continue
        for change in entry["changes"]:
            if not isinstance(change, dict) or change.get("field") != "messages":
                continue
            value = change.get("value")
            if isinstance(value, dict):
                yield value


def count_message_changes(payload: dict) -> int:
    return sum(1 for _ in iter_message_changes(payload))


def _media(prefix: str, media: Optional[dict]) -> str:
    caption = ((media or {}).get("caption") or "").strip()
    return f"{prefix} {caption}" if caption else prefix


def extract_content(message: InboundMessageEvent) -> Optional[str]:
    """
    Textual representation of an inbound message.

    text -> body, button/interactive -> "Button: <title>" style labels,
    media -> bracketed placeholder plus caption, unknown types ->
    "[Unsupported message type: <type>]". None or "" means skip.
    """
    kind = message.type

    if kind == "text":
        return ((message.text or {}).get("body") or "").strip() or None

    if kind == "button":
        button = message.button or {}
        if button.get("text"):
            return button["text"]
        return f"Button: {button.get('payload', '')}"

    if kind == "interactive":
        interactive = message.interactive or {}
        if interactive.get("button_reply"):
            return f"Button: {interactive['button_reply'].get('title', '')}"
        if interactive.get("list_reply"):
            return f"List: {interactive['list_reply'].get('title', '')}"
        return "Interactive message"

    if kind == "image":
        return _media("[Image]", message.image)
    if kind == "video":
        return _media("[Video]", message.video)
    if kind == "sticker":
        return "[Sticker]"
    if kind == "document":
        filename = (message.document or {}).get("filename") or "file"
        return f"[Document: {filename}]"
    if kind in ("audio", "voice"):
        return "[Audio message]"
    if kind == "location":
        return "[Location shared]"
    if kind == "contacts":
        return "[Contact shared]"

    return f"[Unsupported message type: {kind}]"


def profile_name_for(value: dict, sender: str) -> Optional[str]:
    """Display name of the sender from value.contacts[], else value.metadata.profile."""
    for contact in value.get("contacts") or []:
        if isinstance(contact, dict) and contact.get("wa_id") == sender:
            name = (contact.get("profile") or {}).get("name")
            if name:
                return name
    metadata = value.get("metadata") or {}
    return (metadata.get("profile") or {}).get("name")


class WebhookProcessor:
    """
    Applies one webhook envelope: delivery statuses, then inbound messages.

    Args:
        settings: Application settings
        session_factory: Callable returning a new SQLAlchemy Session
        resolver: ContactResolver
        orchestrator: ReplyOrchestrator
    """

    def __init__(self, settings: Settings, session_factory, resolver, orchestrator):
        self._settings = settings
        self._session_factory = session_factory
        self._resolver = resolver
        self._orchestrator = orchestrator

    def process_envelope(self, payload: dict) -> ProcessingReport:
        report = ProcessingReport()
        db = self._session_factory()
        try:
            for value in iter_message_changes(payload):
                self._process_statuses(db, value.get("statuses"), report)
                self._process_messages(db, value, report)
        finally:
            db.close()

        logger.info(
            f"Webhook envelope processed: {report.messages_processed} message(s), "
            f"{report.statuses_updated} status update(s), {report.errors} error(s)"
        )
        return report

    # =========================================================================
    # Delivery statuses
    # =========================================================================

    def _process_statuses(self, db, statuses, report: ProcessingReport) -> None:
        if not isinstance(statuses, list):
            return
        for raw in statuses:
            try:
                event = StatusEvent.model_validate(raw)
            except ValidationError as e:
                logger.warning(f"Skipping malformed status update: {e.error_count()} error(s)")
                record_webhook_event("status", "skipped")
                report.errors += 1
                continue

            try:
                result = apply_status_update(
                    db, event.id, event.status, epoch_to_iso(event.timestamp)
                )
            except Exception as e:
                db.rollback()
                logger.error(f"Status update {event.id} failed: {e}", exc_info=True)
                record_webhook_event("status", "error")
                report.errors += 1
                continue

            if result == "updated":
                report.statuses_updated += 1
                record_webhook_event("status", "processed")
            elif result == "ignored":
                report.statuses_ignored += 1
                record_webhook_event("status", "skipped")
            else:
                report.statuses_not_found += 1
                record_webhook_event("status", "not_found")

    # =========================================================================
    # Inbound messages
    # =========================================================================

    def _process_messages(self, db, value: dict, report: ProcessingReport) -> None:
        messages = value.get("messages")
        if not isinstance(messages, list):
            return
        for raw in messages:
            try:
                event = InboundMessageEvent.model_validate(raw)
            except ValidationError as e:
                logger.warning(f"Skipping malformed inbound message: {e.error_count()} error(s)")
                record_webhook_event("message", "skipped")
                report.errors += 1
                continue

            try:
                handled = self._handle_inbound(db, value, event)
            except Exception as e:
                db.rollback()
                logger.error(f"Inbound message {event.id} failed: {e}", exc_info=True)
                record_webhook_event("message", "error")
                report.errors += 1
                continue

            if handled:
                report.messages_processed += 1
                record_webhook_event("message", "processed")
            else:
                report.messages_skipped += 1
                record_webhook_event("message", "skipped")

    def _handle_inbound(self, db, value: dict, event: InboundMessageEvent) -> bool:
        content = extract_content(event)
        if not content:
            logger.info(f"Inbound message {event.id} has no usable content, skipped")
            return False

        member_id = self._resolver.resolve(
            db, event.from_address, profile_name_for(value, event.from_address)
        )
        if member_id is None:
            logger.info(f"Inbound message {event.id} from unknown sender not stored")
            return False

        inbound = create_message(
            db,
            member_id=member_id,
            kind="inbound_conversation",
            content=content,
            status="read",
            external_message_id=event.id,
            metadata={
                "message_type": event.type,
                "received_at": epoch_to_iso(event.timestamp) or utc_now_iso(),
                "processed_by_webhook": True,
            },
        )
        logger.info(f"Inbound message stored: id={inbound.id}, member={member_id}, type={event.type}")

        if not self._settings.AUTO_REPLY_ENABLED:
            return True

        history = get_conversation_history(
            db,
            member_id,
            limit=self._settings.CONVERSATION_HISTORY_LIMIT,
            exclude_id=inbound.id,
        )
        outcome = self._orchestrator.handle_inbound(
            db, member_id, event.from_address, content, history
        )
        logger.info(
            f"Auto reply for message {inbound.id}: status={outcome.reply_status}, "
            f"method={outcome.method}, escalated={outcome.escalated}"
        )
        return True
