import logging
from pathlib import Path
from typing import Generator, Iterable, Optional, Tuple

from sqlalchemy import create_engine, event, text, func, or_
from sqlalchemy.engine import make_url
from sqlalchemy.orm import sessionmaker, Session, declarative_base

from polaris_crm.config import get_settings
from polaris_crm.utils import utc_now_iso, utc_today_prefix

logger = logging.getLogger(__name__)

DATABASE_URL = get_settings().DATABASE_URL

# check_same_thread=False is required for SQLite sessions used from the
# threadpool (sync routes and background tasks)
engine = create_engine(
    DATABASE_URL,
    connect_args={"check_same_thread": False},
    echo=False,
)


@event.listens_for(engine, "connect")
def _enable_sqlite_foreign_keys(dbapi_connection, connection_record):
    """SQLite ignores ON DELETE CASCADE unless foreign keys are switched on per connection."""
    cursor = dbapi_connection.cursor()
    cursor.execute("PRAGMA foreign_keys = ON")
    cursor.close()


SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)

Base = declarative_base()

REQUIRED_TABLES = ("members", "segments", "segment_members", "messages")

CONVERSATION_KINDS = ("inbound_conversation", "outbound_conversation")

# Delivery ordering; "failed" is terminal and handled separately
STATUS_RANK = {"pending": 0, "sent": 1, "delivered": 2, "read": 3}


def _ensure_sqlite_directory() -> None:
    url = make_url(DATABASE_URL)
    if url.get_backend_name() == "sqlite" and url.database and url.database != ":memory:":
        Path(url.database).parent.mkdir(parents=True, exist_ok=True)


def init_db() -> None:
    """
    Initialize the database by creating all tables.
    Called during application startup.
    """
    logger.debug(f"Initializing database with URL: {DATABASE_URL}")
    try:
        # Import models to register them with Base.metadata
        from polaris_crm import models  # noqa: F401

        _ensure_sqlite_directory()
        Base.metadata.create_all(bind=engine)
        logger.info("Database initialized successfully")
    except Exception as e:
        logger.error(f"Failed to initialize database: {e}")
        raise


def get_db() -> Generator[Session, None, None]:
    """
    Dependency to get database session.
    Yields a session and ensures it's closed after use.
    """
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def check_db_health() -> bool:
    """
    Check if the database is reachable and schema is applied.

    Returns:
        True if DB is healthy and every table exists, False otherwise.
    """
    try:
        with SessionLocal() as db:
            db.execute(text("SELECT 1"))
            found = {
                row[0]
                for row in db.execute(text(
                    "SELECT name FROM sqlite_master WHERE type='table'"
                ))
            }
        missing = [name for name in REQUIRED_TABLES if name not in found]
        if missing:
            logger.error(f"Database schema not applied, missing tables: {missing}")
            return False
        return True
    except Exception as e:
        logger.error(f"Database health check failed: {e}")
        return False


# =============================================================================
# Member Repository Functions
# =============================================================================

def list_members(db: Session) -> list:
    from polaris_crm.models import Member

    return (
        db.query(Member)
        .order_by(Member.last_name.asc(), Member.first_name.asc(), Member.id.asc())
        .all()
    )


def search_members(db: Session, q: str) -> list:
    """Case-insensitive substring search on first name, last name and phone."""
    from polaris_crm.models import Member

    pattern = f"%{q}%"
    return (
        db.query(Member)
        .filter(or_(
            Member.first_name.ilike(pattern),
            Member.last_name.ilike(pattern),
            Member.phone.like(pattern),
        ))
        .order_by(Member.last_name.asc(), Member.first_name.asc(), Member.id.asc())
        .all()
    )


def get_member(db: Session, member_id: int):
    from polaris_crm.models import Member

    return db.query(Member).filter(Member.id == member_id).first()


def find_member_by_phone(db: Session, phone: str):
    """Look up a member by canonical (digits-only) phone."""
    from polaris_crm.models import Member

    return db.query(Member).filter(Member.phone == phone).first()


def create_member(db: Session, first_name: str, last_name: str, phone: str):
    """
    Insert a member and commit.

    Raises:
        IntegrityError: phone already exists (the caller decides what that means)
    """
    from polaris_crm.models import Member

    now = utc_now_iso()
    member = Member(
        first_name=first_name,
        last_name=last_name,
        phone=phone,
        created_at=now,
        updated_at=now,
    )
    db.add(member)
    db.commit()
    db.refresh(member)
    logger.info(f"Member created: id={member.id}")
    return member


def update_member(db: Session, member, **fields):
    """Apply non-None fields to a member and bump updated_at. Raises IntegrityError on phone conflict."""
    for name, value in fields.items():
        if value is not None:
            setattr(member, name, value)
    member.updated_at = utc_now_iso()
    db.commit()
    db.refresh(member)
    return member


def delete_member(db: Session, member) -> None:
    """Delete a member; memberships and messages cascade in the database."""
    member_id = member.id
    db.delete(member)
    db.commit()
    logger.info(f"Member deleted: id={member_id}")


# =============================================================================
# Segment Repository Functions
# =============================================================================

def _segment_count_query(db: Session):
    from polaris_crm.models import Segment, SegmentMember

    return (
        db.query(Segment, func.count(SegmentMember.member_id).label("member_count"))
        .outerjoin(SegmentMember, Segment.id == SegmentMember.segment_id)
        .group_by(Segment.id)
    )


def list_segments(db: Session) -> list:
    """All segments with their member counts, as (Segment, count) tuples."""
    from polaris_crm.models import Segment

    return _segment_count_query(db).order_by(Segment.name.asc()).all()


def get_segment(db: Session, segment_id: int) -> Optional[Tuple]:
    """(Segment, member_count) or None."""
    from polaris_crm.models import Segment

    return _segment_count_query(db).filter(Segment.id == segment_id).first()


def get_segment_members(db: Session, segment_id: int) -> list:
    from polaris_crm.models import Member, SegmentMember

    return (
        db.query(Member)
        .join(SegmentMember, Member.id == SegmentMember.member_id)
        .filter(SegmentMember.segment_id == segment_id)
        .order_by(Member.last_name.asc(), Member.first_name.asc())
        .all()
    )


def find_segment_by_name(db: Session, name: str):
    from polaris_crm.models import Segment

    return db.query(Segment).filter(Segment.name == name).first()


def create_segment(db: Session, name: str, description: str = ""):
    """Insert a segment and commit. Raises IntegrityError on duplicate name."""
    from polaris_crm.models import Segment

    segment = Segment(name=name, description=description, created_at=utc_now_iso())
    db.add(segment)
    db.commit()
    db.refresh(segment)
    logger.info(f"Segment created: id={segment.id}")
    return segment


def update_segment(db: Session, segment_id: int, name: Optional[str] = None,
                   description: Optional[str] = None) -> None:
    from polaris_crm.models import Segment

    segment = db.query(Segment).filter(Segment.id == segment_id).first()
    if name is not None:
        segment.name = name
    if description is not None:
        segment.description = description
    db.commit()


def delete_segment(db: Session, segment_id: int) -> None:
    from polaris_crm.models import Segment

    db.query(Segment).filter(Segment.id == segment_id).delete()
    db.commit()
    logger.info(f"Segment deleted: id={segment_id}")


def add_member_to_segment(db: Session, segment_id: int, member_id: int) -> None:
    """Raises IntegrityError when the pair already exists."""
    from polaris_crm.models import SegmentMember

    db.add(SegmentMember(segment_id=segment_id, member_id=member_id, added_at=utc_now_iso()))
    db.commit()


def remove_member_from_segment(db: Session, segment_id: int, member_id: int) -> bool:
    """Returns False when the pair did not exist."""
    from polaris_crm.models import SegmentMember

    deleted = (
        db.query(SegmentMember)
        .filter(SegmentMember.segment_id == segment_id, SegmentMember.member_id == member_id)
        .delete()
    )
    db.commit()
    return deleted > 0


# =============================================================================
# Message Repository Functions
# =============================================================================

def create_message(
    db: Session,
    member_id: int,
    kind: str,
    content: str,
    status: str = "pending",
    external_message_id: Optional[str] = None,
    metadata: Optional[dict] = None,
):
    """
    Append a message row and commit.

    Args:
        db: Database session
        member_id: Owning member
        kind: outbound_push, inbound_conversation, outbound_conversation or notification
        content: Text content (placeholders for non-text inbound messages)
        status: Initial status
        external_message_id: Transport-assigned id, if known
        metadata: Structured extras stored as JSON

    Returns:
        The persisted Message
    """
    from polaris_crm.models import Message

    now = utc_now_iso()
    message = Message(
        member_id=member_id,
        kind=kind,
        content=content,
        status=status,
        external_message_id=external_message_id,
        meta=metadata or {},
        created_at=now,
        updated_at=now,
    )
    db.add(message)
    db.commit()
    db.refresh(message)
    logger.info(f"Message stored: id={message.id}, kind={kind}, status={status}")
    return message


def _merge_metadata(message, **extra) -> None:
    # JSON columns are not mutation-tracked, so assign a fresh dict
    message.meta = {**(message.meta or {}), **extra}


def mark_message_sent(db: Session, message, external_message_id: Optional[str]) -> None:
    message.status = "sent"
    if external_message_id:
        message.external_message_id = external_message_id
    message.updated_at = utc_now_iso()
    db.commit()


def mark_message_failed(db: Session, message, error: str) -> None:
    message.status = "failed"
    _merge_metadata(message, error=error)
    message.updated_at = utc_now_iso()
    db.commit()


def is_status_transition_allowed(current: str, new: str) -> bool:
    """
    Delivery statuses only move forward.

    pending -> sent -> delivered -> read, and pending/sent -> failed.
    Nothing leaves failed.
    """
    if current == "failed":
        return False
    if new == "failed":
        return current in ("pending", "sent")
    if new not in STATUS_RANK or current not in STATUS_RANK:
        return False
    return STATUS_RANK[new] > STATUS_RANK[current]


def apply_status_update(
    db: Session,
    external_message_id: str,
    new_status: str,
    timestamp: Optional[str] = None,
) -> str:
    """
    Apply a delivery-status callback to the message with this external id.

    Returns:
        "updated", "ignored" (non-monotonic transition) or "not_found"
    """
    from polaris_crm.models import Message

    message = (
        db.query(Message)
        .filter(Message.external_message_id == external_message_id)
        .order_by(Message.id.desc())
        .first()
    )

    if message is None:
        logger.info(f"Status update for unknown message: {external_message_id} -> {new_status}")
        return "not_found"

    if not is_status_transition_allowed(message.status, new_status):
        logger.info(
            f"Status update ignored: message {message.id} {message.status} -> {new_status}"
        )
        return "ignored"

    message.status = new_status
    _merge_metadata(message, status_updated=timestamp or utc_now_iso())
    message.updated_at = utc_now_iso()
    db.commit()
    logger.info(f"Message status updated: id={message.id}, status={new_status}")
    return "updated"


def get_message(db: Session, message_id: int):
    from polaris_crm.models import Message

    return db.query(Message).filter(Message.id == message_id).first()


def get_messages(
    db: Session,
    limit: int = 50,
    offset: int = 0,
    member_id: Optional[int] = None,
    kind: Optional[str] = None,
    status: Optional[str] = None,
    q: Optional[str] = None,
) -> Tuple[list, int]:
    """
    Retrieve messages joined with their member, newest first.

    Returns:
        Tuple of ((Message, Member) list, total count matching filters)
    """
    from polaris_crm.models import Member, Message

    query = db.query(Message, Member).join(Member, Message.member_id == Member.id)

    if member_id is not None:
        query = query.filter(Message.member_id == member_id)
    if kind:
        query = query.filter(Message.kind == kind)
    if status:
        query = query.filter(Message.status == status)
    if q:
        query = query.filter(Message.content.ilike(f"%{q}%"))

    total = query.count()

    rows = (
        query.order_by(Message.created_at.desc(), Message.id.desc())
        .offset(offset)
        .limit(limit)
        .all()
    )
    logger.debug(f"Retrieved {len(rows)} of {total} total messages")
    return rows, total


def get_conversation_history(
    db: Session,
    member_id: int,
    limit: int,
    exclude_id: Optional[int] = None,
) -> list:
    """
    Last `limit` conversation turns for a member, oldest first.

    exclude_id leaves out the inbound message currently being answered.
    """
    from polaris_crm.models import Message

    if limit <= 0:
        return []

    query = db.query(Message).filter(
        Message.member_id == member_id,
        Message.kind.in_(CONVERSATION_KINDS),
    )
    if exclude_id is not None:
        query = query.filter(Message.id != exclude_id)

    recent = query.order_by(Message.created_at.desc(), Message.id.desc()).limit(limit).all()
    return list(reversed(recent))


# =============================================================================
# Stats
# =============================================================================

def _count(db: Session, model, *criteria: Iterable) -> int:
    return db.query(func.count(model.id)).filter(*criteria).scalar() or 0


def get_stats(db: Session) -> dict:
    """Store-wide counters for GET /stats."""
    from polaris_crm.models import Member, Message, Segment

    return {
        "members_count": _count(db, Member),
        "segments_count": _count(db, Segment),
        "messages_count": _count(db, Message),
        "pending_messages": _count(db, Message, Message.status == "pending"),
        "sent_messages": _count(db, Message, Message.status.in_(("sent", "delivered", "read"))),
        "failed_messages": _count(db, Message, Message.status == "failed"),
    }


def get_daily_webhook_stats(db: Session) -> dict:
    """Webhook activity since midnight UTC."""
    from polaris_crm.models import Member, Message

    today = f"{utc_today_prefix()}%"

    return {
        "messages_today": _count(
            db, Message, Message.kind == "inbound_conversation", Message.created_at.like(today)
        ),
        "auto_replies_today": _count(
            db, Message,
            Message.kind == "outbound_conversation",
            Message.created_at.like(today),
            func.json_extract(Message.meta, "$.auto_reply") == 1,
        ),
        "urgent_messages_today": _count(
            db, Message, Message.kind == "notification", Message.created_at.like(today)
        ),
        "new_members_today": _count(db, Member, Member.created_at.like(today)),
    }
