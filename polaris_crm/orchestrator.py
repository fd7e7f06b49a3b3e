"""
Reply orchestration for one persisted inbound message.

Steps:
1. Intent classification (when AI is available)
2. Escalation to the team: notification row + notification channels
3. Reply text: generated from conversation history, or the fallback greeting
4. Delivery: a pending outbound_conversation row, the send, then sent or failed
5. Any unexpected exception before the send: one best-effort apology send

handle_inbound() never raises.
"""

import logging
from dataclasses import dataclass
from typing import Optional, Sequence

from sqlalchemy.orm import Session

from polaris_crm.config import Settings
from polaris_crm.metrics import record_auto_reply, record_escalation
from polaris_crm.schemas import IntentClassification
from polaris_crm.storage import create_message, get_member, mark_message_failed, mark_message_sent
from polaris_crm.utils import utc_now_iso
from polaris_crm.whatsapp import SendResult

logger = logging.getLogger(__name__)

ROLE_BY_KIND = {
    "inbound_conversation": "user",
    "outbound_conversation": "assistant",
}


@dataclass
class OrchestrationOutcome:
    """What happened to one inbound message."""
    reply_status: Optional[str]  # "sent", "failed" or None when nothing was recorded
    method: Optional[str]  # "ai", "fallback" or "apology"
    escalated: bool = False
    message_id: Optional[int] = None


def should_escalate(classification: Optional[IntentClassification], settings: Settings) -> bool:
    """
    urgency == high, or requires_human, or
    (urgency == URGENT_MESSAGE_THRESHOLD and NOTIFICATIONS_ENABLED).

    Without a classification nothing escalates.
    """
    if classification is None:
        return False
    urgency = classification.urgency
    return (
        urgency == "high"
        or classification.requires_human
        or (urgency == settings.URGENT_MESSAGE_THRESHOLD and settings.NOTIFICATIONS_ENABLED)
    )


def history_to_turns(recent_history: Sequence) -> list[dict]:
    """Map stored conversation rows (oldest first) to chat roles."""
    turns = []
    for message in recent_history:
        role = ROLE_BY_KIND.get(message.kind)
        if role and message.content:
            turns.append({"role": role, "content": message.content})
    return turns


class ReplyOrchestrator:
    """
    Decides whether to escalate and what to answer, then sends the answer.

    Collaborators:
        transport: send_text(to, body) -> SendResult
        provider: detect_intent(text), generate_auto_reply(text, history)
        notifier: notify(channel_names, payload)
    """

    def __init__(self, settings: Settings, transport, provider, notifier):
        self._settings = settings
        self._transport = transport
        self._provider = provider
        self._notifier = notifier

    def handle_inbound(
        self,
        db: Session,
        member_id: int,
        from_address: str,
        text: str,
        recent_history: Sequence,
    ) -> OrchestrationOutcome:
        """
        Answer one inbound message that is already stored.

        Args:
            db: Database session
            member_id: Sender's member id
            from_address: Sender phone; the reply goes there
            text: Extracted inbound content
            recent_history: Prior conversation rows, oldest first, excluding this message

        Returns:
            OrchestrationOutcome describing the recorded reply
        """
        outcome = OrchestrationOutcome(reply_status=None, method=None)
        try:
            classification = self._classify(text)

            if should_escalate(classification, self._settings):
                self._escalate(db, member_id, text, classification)
                outcome.escalated = True

            reply_text, outcome.method = self._compose_reply(text, recent_history, outcome.escalated)
            self._deliver(db, member_id, from_address, reply_text, outcome)
            return outcome

        except Exception as e:
            logger.error(f"Reply orchestration failed for member {member_id}: {e}", exc_info=True)
            if outcome.reply_status is None:
                self._send_apology(db, member_id, from_address, outcome)
            else:
                db.rollback()
                logger.warning(
                    f"Reply to member {member_id} already {outcome.reply_status}, "
                    f"row {outcome.message_id} left unfinished"
                )
            return outcome

    # =========================================================================
    # Steps
    # =========================================================================

    def _classify(self, text: str) -> Optional[IntentClassification]:
        if not self._settings.ai_available:
            return None
        classification = self._provider.detect_intent(text)
        if classification is None:
            logger.info("Intent classification unavailable, continuing without it")
        else:
            logger.info(
                f"Intent detected: intent={classification.intent}, "
                f"urgency={classification.urgency}, requires_human={classification.requires_human}"
            )
        return classification

    def _escalate(
        self,
        db: Session,
        member_id: int,
        text: str,
        classification: IntentClassification,
    ) -> None:
        member = get_member(db, member_id)
        payload = {
            "type": "urgent_message",
            "urgency": classification.urgency,
            "intent": classification.intent,
            "requires_human": classification.requires_human,
            "member": {
                "id": member_id,
                "first_name": member.first_name if member else None,
                "last_name": member.last_name if member else None,
                "phone": member.phone if member else None,
            },
            "message": text,
            "timestamp": utc_now_iso(),
            "app": self._settings.APP_NAME,
        }

        create_message(
            db,
            member_id=member_id,
            kind="notification",
            content=f"Urgent message: {text}",
            status="pending",
            metadata=payload,
        )
        record_escalation()
        logger.warning(f"Inbound message from member {member_id} escalated to the team")

        try:
            self._notifier.notify(self._settings.TEAM_NOTIFICATION_CHANNELS, payload)
        except Exception as e:
            logger.error(f"Team notification failed for member {member_id}: {e}", exc_info=True)

    def _compose_reply(self, text: str, recent_history: Sequence, escalated: bool):
        """Returns (reply_text, method)."""
        if self._settings.ai_available:
            history = history_to_turns(recent_history)
            result = self._provider.generate_auto_reply(text, history)
            if result.success and result.text:
                reply = result.text
                if escalated:
                    reply = f"{reply}\n\n{self._settings.HUMAN_FOLLOWUP_NOTICE}"
                return reply, "ai"
            logger.info(f"Reply generation failed ({result.error}), using fallback greeting")

        return self._settings.fallback_reply, "fallback"

    def _deliver(
        self,
        db: Session,
        member_id: int,
        to: str,
        reply_text: str,
        outcome: OrchestrationOutcome,
    ) -> None:
        message = create_message(
            db,
            member_id=member_id,
            kind="outbound_conversation",
            content=reply_text,
            status="pending",
            metadata={
                "auto_reply": True,
                "method": outcome.method,
                "escalated": outcome.escalated,
            },
        )
        outcome.message_id = message.id

        try:
            result = self._transport.send_text(to, reply_text)
        except Exception as e:
            logger.error(f"Auto reply send raised for member {member_id}: {e}", exc_info=True)
            result = SendResult(success=False, error=f"Transport error: {e}")

        # The reply is settled from here on, so the outer handler skips the apology
        outcome.reply_status = "sent" if result.success else "failed"
        record_auto_reply(outcome.reply_status)

        if result.success:
            mark_message_sent(db, message, result.message_id)
        else:
            mark_message_failed(db, message, result.error)
            logger.warning(f"Auto reply to member {member_id} failed: {result.error}")

    def _send_apology(
        self,
        db: Session,
        member_id: int,
        to: str,
        outcome: OrchestrationOutcome,
    ) -> None:
        outcome.method = "apology"
        apology = self._settings.APOLOGY_REPLY
        try:
            db.rollback()
            result = self._transport.send_text(to, apology)
        except Exception as e:
            logger.error(f"Apology send raised for member {member_id}: {e}", exc_info=True)
            result = None

        metadata = {"auto_reply": True, "method": "apology", "escalated": outcome.escalated}
        if result is not None and result.success:
            status = "sent"
        else:
            status = "failed"
            metadata["error"] = result.error if result is not None else "apology send raised"

        try:
            message = create_message(
                db,
                member_id=member_id,
                kind="outbound_conversation",
                content=apology,
                status=status,
                external_message_id=result.message_id if status == "sent" else None,
                metadata=metadata,
            )
        except Exception as e:
            logger.error(f"Apology for member {member_id} dropped: {e}", exc_info=True)
            record_auto_reply("dropped")
            return

        outcome.reply_status = status
        outcome.message_id = message.id
        record_auto_reply("apology_sent" if status == "sent" else "failed")
