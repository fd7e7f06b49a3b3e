"""
SQLAlchemy ORM models for database tables.

This module contains database table definitions using SQLAlchemy.
For Pydantic request/response schemas, see schemas.py.
"""

from sqlalchemy import (
    JSON,
    CheckConstraint,
    Column,
    ForeignKey,
    Integer,
    String,
    Text,
    UniqueConstraint,
)

from polaris_crm.storage import Base


MESSAGE_KINDS = ("outbound_push", "inbound_conversation", "outbound_conversation", "notification")
MESSAGE_STATUSES = ("pending", "sent", "delivered", "read", "failed")


def _in_clause(column: str, values: tuple) -> str:
    quoted = ", ".join(f"'{value}'" for value in values)
    return f"{column} IN ({quoted})"


class Member(Base):
    """
    A contact tracked by the CRM.

    Table: members
    phone holds the digits-only canonical form and is globally unique.
    """
    __tablename__ = "members"

    id = Column(Integer, primary_key=True, autoincrement=True)
    first_name = Column(String, nullable=False)
    last_name = Column(String, nullable=False)
    phone = Column(String, nullable=False, unique=True, index=True)
    created_at = Column(String, nullable=False)  # Server time ISO-8601
    updated_at = Column(String, nullable=False)


class Segment(Base):
    """A named grouping of members. Table: segments"""
    __tablename__ = "segments"

    id = Column(Integer, primary_key=True, autoincrement=True)
    name = Column(String, nullable=False, unique=True)
    description = Column(Text, nullable=False, default="")
    created_at = Column(String, nullable=False)


class SegmentMember(Base):
    """
    Join table between segments and members.

    Rows are removed by the database when either side is deleted.
    """
    __tablename__ = "segment_members"
    __table_args__ = (
        UniqueConstraint("segment_id", "member_id", name="uq_segment_member"),
    )

    id = Column(Integer, primary_key=True, autoincrement=True)
    segment_id = Column(
        Integer, ForeignKey("segments.id", ondelete="CASCADE"), nullable=False, index=True
    )
    member_id = Column(
        Integer, ForeignKey("members.id", ondelete="CASCADE"), nullable=False, index=True
    )
    added_at = Column(String, nullable=False)


class Message(Base):
    """
    Audit record of one conversation turn, push or team notification.

    Table: messages
    Only status, external_message_id and metadata change after insert.
    """
    __tablename__ = "messages"
    __table_args__ = (
        CheckConstraint(_in_clause("kind", MESSAGE_KINDS), name="ck_messages_kind"),
        CheckConstraint(_in_clause("status", MESSAGE_STATUSES), name="ck_messages_status"),
    )

    id = Column(Integer, primary_key=True, autoincrement=True)
    member_id = Column(
        Integer, ForeignKey("members.id", ondelete="CASCADE"), nullable=False, index=True
    )
    kind = Column(String, nullable=False, index=True)
    content = Column(Text, nullable=False)
    status = Column(String, nullable=False, default="pending", index=True)
    external_message_id = Column(String, nullable=True, index=True)
    # "metadata" is reserved on declarative classes
    meta = Column("metadata", JSON, nullable=True)
    created_at = Column(String, nullable=False, index=True)
    updated_at = Column(String, nullable=False)
