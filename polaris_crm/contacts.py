"""
Contact resolution: map a sender phone number to a member id,
provisioning a placeholder member on first contact.
"""

import logging
from typing import Optional

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from polaris_crm.config import Settings
from polaris_crm.storage import create_member, find_member_by_phone
from polaris_crm.utils import canonical_phone

logger = logging.getLogger(__name__)

__all__ = ["ContactResolver", "canonical_phone", "split_profile_name"]


def split_profile_name(profile_name: Optional[str], first_default: str, last_default: str):
    """
    "Awa Ndiaye Sow" -> ("Awa", "Ndiaye Sow"); "Awa" -> ("Awa", last_default).
    A blank name gives both defaults.
    """
    parts = (profile_name or "").strip().split(None, 1)
    if not parts:
        return first_default, last_default
    first_name = parts[0]
    last_name = parts[1].strip() if len(parts) > 1 else last_default
    return first_name, last_name


class ContactResolver:
    """Find-or-create members by canonical phone."""

    def __init__(self, settings: Settings):
        self._auto_create = settings.MEMBER_AUTO_CREATION
        self._first_default = settings.NEW_MEMBER_FIRST_NAME
        self._last_default = settings.NEW_MEMBER_LAST_NAME

    def resolve(self, db: Session, raw_phone: str, profile_name: Optional[str] = None) -> Optional[int]:
        """
        Resolve a sender to a member id.

        Args:
            db: Database session
            raw_phone: Phone as received, any formatting
            profile_name: WhatsApp profile display name, if any

        Returns:
            Member id, or None when the number is unknown and auto-creation is off
        """
        phone = canonical_phone(raw_phone)
        if not phone:
            logger.warning(f"Cannot resolve contact without digits: {raw_phone!r}")
            return None

        member = find_member_by_phone(db, phone)
        if member is not None:
            return member.id

        if not self._auto_create:
            logger.info(f"Unknown sender {phone} ignored (member auto-creation disabled)")
            return None

        first_name, last_name = split_profile_name(
            profile_name, self._first_default, self._last_default
        )
        try:
            member = create_member(db, first_name=first_name, last_name=last_name, phone=phone)
        except IntegrityError:
            # Another event created the same member concurrently
            db.rollback()
            existing = find_member_by_phone(db, phone)
            if existing is None:
                raise
            logger.info(f"Member for {phone} created concurrently, using id={existing.id}")
            return existing.id

        logger.info(f"New member auto-created from WhatsApp: id={member.id}")
        return member.id
