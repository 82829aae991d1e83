"""
Call record persistence.

Two kinds of callers use this repository:
- the lifecycle handler, through the turn-level writes (upsert_call_status,
  append_transcript_entry, set_final_transcript). Each of these is safe to
  retry with the same arguments.
- the calls API, through the CRUD reads/writes.

All database failures surface as PersistenceError. Lookups return None when
the call does not exist.
"""

import logging
from typing import List, Optional

from sqlalchemy import func, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from .database import DatabaseManager
from .db_models import CallRecord, TranscriptEntry
from .models import CallDirection, CallRecordOut, TranscriptEntryOut, TurnRole

logger = logging.getLogger(__name__)


class PersistenceError(Exception):
    """A read or write against the call store failed."""


def to_call_out(record: CallRecord) -> CallRecordOut:
    return CallRecordOut(
        id=record.id,
        twilioSid=record.twilio_sid,
        to=record.to_number,
        from_=record.from_number,
        status=record.status,
        direction=record.direction,
        duration=record.duration,
        recordingUrl=record.recording_url,
        transcript=record.transcript,
        agentId=record.agent_id,
        createdAt=record.created_at,
        updatedAt=record.updated_at,
    )


def to_entry_out(entry: TranscriptEntry) -> TranscriptEntryOut:
    return TranscriptEntryOut(
        id=entry.id,
        callSid=entry.call_sid,
        sequence=entry.sequence,
        role=entry.role,
        content=entry.content,
        timestamp=entry.timestamp,
    )


class CallRepository:
    """Repository for calls and their transcript entries."""

    def __init__(self, db: DatabaseManager):
        self.db = db

    @staticmethod
    async def _find_by_sid(session: AsyncSession, call_sid: str) -> Optional[CallRecord]:
        result = await session.execute(select(CallRecord).where(CallRecord.twilio_sid == call_sid))
        return result.scalar_one_or_none()

    async def _ensure_call(self, session: AsyncSession, call_sid: str, **values) -> CallRecord:
        """Return the call with this sid, inserting a bare record if it is missing."""
        record = await self._find_by_sid(session, call_sid)
        if record is not None:
            return record
        record = CallRecord(twilio_sid=call_sid, **values)
        session.add(record)
        await session.flush()
        return record

    # ------------------------------------------------------------
    # Turn-level writes (lifecycle handler)
    # ------------------------------------------------------------

    async def upsert_call_status(
        self,
        call_sid: str,
        status: str,
        from_number: Optional[str] = None,
        to_number: Optional[str] = None,
        direction: Optional[CallDirection] = None,
    ) -> CallRecordOut:
        """Create the call if needed and set its status."""
        try:
            async with self.db.session() as session:
                record = await self._ensure_call(
                    session,
                    call_sid,
                    status=status,
                    from_number=from_number or None,
                    to_number=to_number or None,
                    direction=(direction or CallDirection.INBOUND).value,
                )
                record.status = status
                if from_number and not record.from_number:
                    record.from_number = from_number
                if to_number and not record.to_number:
                    record.to_number = to_number
                await session.flush()
                logger.debug(f"Call {call_sid} status stored: {status}")
                return to_call_out(record)
        except SQLAlchemyError as e:
            raise PersistenceError(f"upsert_call_status failed for {call_sid}: {e}") from e

    @staticmethod
    async def _next_sequence(session: AsyncSession, call_sid: str) -> int:
        result = await session.execute(
            select(func.max(TranscriptEntry.sequence)).where(TranscriptEntry.call_sid == call_sid)
        )
        last = result.scalar_one_or_none()
        return 0 if last is None else last + 1

    async def next_sequence(self, call_sid: str) -> int:
        """Sequence number the next turn of this call will be stored under."""
        try:
            async with self.db.session() as session:
                return await self._next_sequence(session, call_sid)
        except SQLAlchemyError as e:
            raise PersistenceError(f"next_sequence failed for {call_sid}: {e}") from e

    async def append_transcript_entry(
        self,
        call_sid: str,
        sequence: int,
        role: TurnRole,
        content: str,
    ) -> TranscriptEntryOut:
        """Store one turn.

        A retry of the same turn (same sequence, role and content) returns the
        stored entry. A different turn claiming a taken sequence is appended
        after the last stored entry instead of being dropped.
        """
        try:
            async with self.db.session() as session:
                await self._ensure_call(session, call_sid, status="in-progress")
                result = await session.execute(
                    select(TranscriptEntry).where(
                        TranscriptEntry.call_sid == call_sid,
                        TranscriptEntry.sequence == sequence,
                    )
                )
                existing = result.scalar_one_or_none()
                if existing is not None:
                    if existing.role == role.value and existing.content == content:
                        logger.debug(f"Transcript entry {call_sid}#{sequence} already stored")
                        return to_entry_out(existing)
                    requested = sequence
                    sequence = await self._next_sequence(session, call_sid)
                    logger.warning(
                        f"METRIC transcript_sequence_conflict callSid={call_sid} "
                        f"requested={requested} stored={sequence}"
                    )

                entry = TranscriptEntry(
                    call_sid=call_sid,
                    sequence=sequence,
                    role=role.value,
                    content=content,
                )
                session.add(entry)
                await session.flush()
                return to_entry_out(entry)
        except SQLAlchemyError as e:
            raise PersistenceError(f"append_transcript_entry failed for {call_sid}#{sequence}: {e}") from e

    async def set_final_transcript(self, call_sid: str, transcript: str) -> CallRecordOut:
        try:
            async with self.db.session() as session:
                record = await self._ensure_call(session, call_sid)
                record.transcript = transcript
                await session.flush()
                logger.info(f"Call {call_sid} transcript stored: {len(transcript)} chars")
                return to_call_out(record)
        except SQLAlchemyError as e:
            raise PersistenceError(f"set_final_transcript failed for {call_sid}: {e}") from e

    # ------------------------------------------------------------
    # CRUD (calls API)
    # ------------------------------------------------------------

    async def create_call(
        self,
        call_sid: str,
        to_number: Optional[str],
        from_number: Optional[str],
        status: Optional[str],
        direction: str = CallDirection.OUTBOUND.value,
    ) -> CallRecordOut:
        try:
            async with self.db.session() as session:
                record = CallRecord(
                    twilio_sid=call_sid,
                    to_number=to_number,
                    from_number=from_number,
                    status=status or "initiated",
                    direction=direction,
                )
                session.add(record)
                await session.flush()
                return to_call_out(record)
        except SQLAlchemyError as e:
            raise PersistenceError(f"create_call failed for {call_sid}: {e}") from e

    async def get_call(self, call_id: str) -> Optional[CallRecordOut]:
        try:
            async with self.db.session() as session:
                record = await session.get(CallRecord, call_id)
                return to_call_out(record) if record is not None else None
        except SQLAlchemyError as e:
            raise PersistenceError(f"get_call failed for {call_id}: {e}") from e

    async def get_call_by_sid(self, call_sid: str) -> Optional[CallRecordOut]:
        try:
            async with self.db.session() as session:
                record = await self._find_by_sid(session, call_sid)
                return to_call_out(record) if record is not None else None
        except SQLAlchemyError as e:
            raise PersistenceError(f"get_call_by_sid failed for {call_sid}: {e}") from e

    async def list_calls(self, page: int = 1, limit: int = 10) -> List[CallRecordOut]:
        """Newest calls first."""
        page = max(page, 1)
        limit = max(limit, 1)
        try:
            async with self.db.session() as session:
                result = await session.execute(
                    select(CallRecord)
                    .order_by(CallRecord.created_at.desc())
                    .offset((page - 1) * limit)
                    .limit(limit)
                )
                return [to_call_out(r) for r in result.scalars().all()]
        except SQLAlchemyError as e:
            raise PersistenceError(f"list_calls failed: {e}") from e

    async def count_calls(self) -> int:
        try:
            async with self.db.session() as session:
                result = await session.execute(select(func.count()).select_from(CallRecord))
                return int(result.scalar_one())
        except SQLAlchemyError as e:
            raise PersistenceError(f"count_calls failed: {e}") from e

    async def update_call(
        self,
        call_sid: str,
        status: Optional[str] = None,
        transcript: Optional[str] = None,
    ) -> Optional[CallRecordOut]:
        """Update status and/or transcript. Empty values keep the stored ones."""
        try:
            async with self.db.session() as session:
                record = await self._find_by_sid(session, call_sid)
                if record is None:
                    return None
                record.status = status or record.status
                record.transcript = transcript or record.transcript
                await session.flush()
                return to_call_out(record)
        except SQLAlchemyError as e:
            raise PersistenceError(f"update_call failed for {call_sid}: {e}") from e

    async def list_transcript(self, call_sid: str) -> List[TranscriptEntryOut]:
        try:
            async with self.db.session() as session:
                result = await session.execute(
                    select(TranscriptEntry)
                    .where(TranscriptEntry.call_sid == call_sid)
                    .order_by(TranscriptEntry.sequence)
                )
                return [to_entry_out(e) for e in result.scalars().all()]
        except SQLAlchemyError as e:
            raise PersistenceError(f"list_transcript failed for {call_sid}: {e}") from e
