"""
Per-call conversation state, keyed by Twilio CallSid.

The in-memory store is fine for a single instance (state is lost on restart;
the lifecycle handler recovers by rebuilding state from the next speech
event). A multi-instance deployment needs an externally backed implementation
of ConversationStore.

Python 3.9 compatible - uses typing.Dict, typing.List, typing.Optional
"""

import asyncio
import logging
import time
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from typing import AsyncIterator, Dict, List, Optional, Protocol

from .models import Turn, TurnRole

logger = logging.getLogger(__name__)


@dataclass
class ConversationState:
    """Live conversation for one call. Turns are replayed in order to the agent."""
    call_sid: str
    customer_phone: str = ""
    turns: List[Turn] = field(default_factory=list)
    # transcript position of turns[0]; non-zero when rebuilt mid-call
    first_sequence: int = 0
    created_at: float = field(default_factory=time.monotonic)
    updated_at: float = field(default_factory=time.monotonic)

    def append(self, role: TurnRole, content: str) -> int:
        """Append a turn and return its transcript sequence number."""
        self.turns.append(Turn(role=role, content=content))
        self.updated_at = time.monotonic()
        return self.first_sequence + len(self.turns) - 1

    def count(self, role: TurnRole) -> int:
        return sum(1 for t in self.turns if t.role == role)


class ConversationStore(Protocol):
    """Keyed conversation state with per-key mutual exclusion."""

    def get(self, call_sid: str) -> Optional[ConversationState]: ...

    def put(self, state: ConversationState) -> None: ...

    def delete(self, call_sid: str) -> None: ...

    def lock(self, call_sid: str): ...


class InMemoryConversationStore:
    """Process-local ConversationStore.

    States idle for longer than ttl_seconds are evicted lazily on access, so a
    call that never delivers a terminal status does not leak forever.
    """

    def __init__(self, ttl_seconds: float = 3600.0):
        self.ttl_seconds = ttl_seconds
        self._states: Dict[str, ConversationState] = {}
        self._locks: Dict[str, asyncio.Lock] = {}
        self._lock_users: Dict[str, int] = {}

    def __len__(self) -> int:
        return len(self._states)

    def get(self, call_sid: str) -> Optional[ConversationState]:
        self.evict_expired()
        return self._states.get(call_sid)

    def put(self, state: ConversationState) -> None:
        self.evict_expired()
        self._states[state.call_sid] = state

    def delete(self, call_sid: str) -> None:
        self._states.pop(call_sid, None)

    def clear(self) -> None:
        self._states.clear()
        self._locks.clear()
        self._lock_users.clear()

    def evict_expired(self, now: Optional[float] = None) -> List[str]:
        """Drop states idle past the TTL. Returns the evicted CallSids."""
        if self.ttl_seconds <= 0:
            return []
        now = time.monotonic() if now is None else now
        expired = [
            sid for sid, state in self._states.items()
            if now - state.updated_at > self.ttl_seconds
        ]
        for sid in expired:
            del self._states[sid]
            logger.warning(f"METRIC conversation_evicted callSid={sid} ttl={self.ttl_seconds}")
        return expired

    @asynccontextmanager
    async def lock(self, call_sid: str) -> AsyncIterator[None]:
        """Serialize get/mutate/put for one CallSid. Other calls are unaffected."""
        lock = self._locks.setdefault(call_sid, asyncio.Lock())
        self._lock_users[call_sid] = self._lock_users.get(call_sid, 0) + 1
        try:
            async with lock:
                yield
        finally:
            remaining = self._lock_users.get(call_sid, 1) - 1
            if remaining:
                self._lock_users[call_sid] = remaining
            else:
                # nobody waiting; the lock can be recreated on next use
                self._lock_users.pop(call_sid, None)
                self._locks.pop(call_sid, None)
