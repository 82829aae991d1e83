"""
Pydantic models for the webhook and the calls API.
Python 3.9 compatible - uses typing.List, typing.Optional
"""

from datetime import datetime
from enum import Enum
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field


class TurnRole(str, Enum):
    SYSTEM = "system"
    USER = "user"
    ASSISTANT = "assistant"


class Turn(BaseModel):
    role: TurnRole
    content: str


class CallStatus(str, Enum):
    QUEUED = "queued"
    INITIATED = "initiated"
    RINGING = "ringing"
    IN_PROGRESS = "in-progress"
    COMPLETED = "completed"
    BUSY = "busy"
    FAILED = "failed"
    NO_ANSWER = "no-answer"
    CANCELED = "canceled"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATUSES


TERMINAL_STATUSES = frozenset({
    CallStatus.COMPLETED,
    CallStatus.FAILED,
    CallStatus.BUSY,
    CallStatus.NO_ANSWER,
    CallStatus.CANCELED,
})


class CallDirection(str, Enum):
    INBOUND = "inbound"
    OUTBOUND = "outbound"

    @classmethod
    def from_twilio(cls, value: Optional[str]) -> "CallDirection":
        """Twilio reports "inbound", "outbound-api" or "outbound-dial"."""
        if value and value.lower().startswith("outbound"):
            return cls.OUTBOUND
        return cls.INBOUND


class WebhookEvent(BaseModel):
    """One form-encoded Twilio voice webhook, normalized."""
    call_sid: str
    call_status: Optional[CallStatus] = None
    raw_status: Optional[str] = None  # kept when Twilio sends a status we do not know
    speech_result: Optional[str] = None
    from_number: str = ""
    to_number: str = ""
    direction: CallDirection = CallDirection.INBOUND

    @classmethod
    def from_form(
        cls,
        call_sid: str,
        from_number: Optional[str] = None,
        to_number: Optional[str] = None,
        speech_result: Optional[str] = None,
        call_status: Optional[str] = None,
        direction: Optional[str] = None,
    ) -> "WebhookEvent":
        status: Optional[CallStatus] = None
        if call_status:
            try:
                status = CallStatus(call_status.strip().lower())
            except ValueError:
                status = None
        speech = speech_result.strip() if speech_result else None
        return cls(
            call_sid=call_sid,
            call_status=status,
            raw_status=call_status or None,
            speech_result=speech or None,
            from_number=from_number or "",
            to_number=to_number or "",
            direction=CallDirection.from_twilio(direction),
        )


# ============================================================
# Calls API
# ============================================================

class CallCreateRequest(BaseModel):
    """Body of POST /calls. Fields are validated by the route for {error} replies."""
    model_config = ConfigDict(populate_by_name=True)

    to: Optional[str] = None
    from_: Optional[str] = Field(default=None, alias="from")
    callbackUrl: Optional[str] = None


class CallUpdateRequest(BaseModel):
    callSid: Optional[str] = None
    status: Optional[str] = None
    transcript: Optional[str] = None


class CallRecordOut(BaseModel):
    """A stored call as returned by the calls API."""
    id: str
    twilioSid: str
    to: Optional[str] = None
    from_: Optional[str] = Field(default=None, serialization_alias="from")
    status: Optional[str] = None
    direction: Optional[str] = None
    duration: Optional[int] = None
    recordingUrl: Optional[str] = None
    transcript: Optional[str] = None
    agentId: Optional[str] = None
    createdAt: datetime
    updatedAt: datetime


class CallDetailsOut(BaseModel):
    """Live call details as reported by Twilio."""
    id: str
    to: Optional[str] = None
    from_: Optional[str] = Field(default=None, serialization_alias="from")
    status: Optional[str] = None
    direction: Optional[str] = None
    startTime: Optional[datetime] = None
    endTime: Optional[datetime] = None
    duration: int = 0


class TranscriptEntryOut(BaseModel):
    id: str
    callSid: str
    sequence: int
    role: str
    content: str
    timestamp: datetime


class TranscriptOut(BaseModel):
    callSid: str
    entries: List[TranscriptEntryOut]
