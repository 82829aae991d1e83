"""
ORM tables for calls and their per-turn transcript entries.
"""

import uuid
from datetime import datetime, timezone
from typing import Optional

from sqlalchemy import DateTime, ForeignKey, Integer, String, Text, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column

from .database import Base


def _new_id() -> str:
    return uuid.uuid4().hex


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class CallRecord(Base):
    __tablename__ = "calls"

    id: Mapped[str] = mapped_column(String(32), primary_key=True, default=_new_id)
    twilio_sid: Mapped[str] = mapped_column(String(64), unique=True, nullable=False, index=True)
    to_number: Mapped[Optional[str]] = mapped_column("to", String(32))
    from_number: Mapped[Optional[str]] = mapped_column("from", String(32))
    status: Mapped[Optional[str]] = mapped_column(String(20), default="initiated")
    direction: Mapped[Optional[str]] = mapped_column(String(10), default="outbound")
    duration: Mapped[Optional[int]] = mapped_column(Integer)
    recording_url: Mapped[Optional[str]] = mapped_column(Text)
    transcript: Mapped[Optional[str]] = mapped_column(Text)
    agent_id: Mapped[Optional[str]] = mapped_column(String(64))
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=_utcnow, onupdate=_utcnow, nullable=False
    )


class TranscriptEntry(Base):
    """One turn of a call. Written once, never updated."""
    __tablename__ = "call_conversations"
    __table_args__ = (UniqueConstraint("call_sid", "sequence", name="uq_call_conversations_sid_seq"),)

    id: Mapped[str] = mapped_column(String(32), primary_key=True, default=_new_id)
    call_sid: Mapped[str] = mapped_column(ForeignKey("calls.twilio_sid"), nullable=False, index=True)
    sequence: Mapped[int] = mapped_column(Integer, nullable=False)
    role: Mapped[str] = mapped_column(String(10), nullable=False)
    content: Mapped[str] = mapped_column(Text, nullable=False)
    timestamp: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow, nullable=False)
