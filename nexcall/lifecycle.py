"""
Call lifecycle handler - the state machine behind the voice webhook.

Per call: NONE -> ACTIVE -> TERMINATED.

- NONE -> ACTIVE: CallStatus=in-progress with no conversation yet. The agent
  greets, the greeting becomes the first turn, Twilio is told to listen.
- ACTIVE -> ACTIVE: a SpeechResult. The user turn and the agent reply are
  appended and persisted; the reply's action decides listen vs transfer.
- ACTIVE -> TERMINATED: a terminal CallStatus. The conversation is
  summarized onto the call record and dropped from the store.

GUARANTEES:
- handle() returns TwiML for every event; the caller never hears a raw error.
- A generator failure on a speech turn becomes a spoken apology + transfer.
  The apology is part of the history (and therefore of the summary).
- Persistence is best-effort: failures and timeouts are logged, never raised.
- Events for one CallSid are processed one at a time.
- Status callbacks record the status and end conversations; they never
  start one, so the greeting always goes to the voice webhook.

Python 3.9 compatible - uses typing.Optional
"""

import asyncio
import logging
from typing import Any, Awaitable, Optional

from .actions import CallbackAction, ScheduleAction, TransferAction
from .agent import AgentReply, ResponseGenerator
from .conversation_store import ConversationState, ConversationStore
from .models import CallStatus, TurnRole, WebhookEvent
from .persistence import CallRepository, PersistenceError
from .twiml import NextStep, TwiMLResponder

logger = logging.getLogger(__name__)

APOLOGY_MESSAGE = (
    "Désolé, je rencontre des difficultés techniques. Un agent humain va prendre le relais."
)
NOT_UNDERSTOOD_MESSAGE = "Désolé, je n'ai pas compris votre demande. Comment puis-je vous aider?"
TECHNICAL_DIFFICULTY_MESSAGE = (
    "Désolé, nous rencontrons des difficultés techniques. Veuillez réessayer plus tard."
)


def next_step_for(reply: AgentReply) -> NextStep:
    """Map the agent's requested action onto what Twilio should do next."""
    if isinstance(reply.action, TransferAction):
        return NextStep.TRANSFER
    if isinstance(reply.action, (CallbackAction, ScheduleAction)):
        # no telephony counterpart yet; keep the caller talking to the agent
        logger.info(f"METRIC agent_action_not_actionable type={reply.action.type}")
    return NextStep.LISTEN


class CallLifecycleHandler:
    """Single entry point for every inbound Twilio voice event."""

    def __init__(
        self,
        store: ConversationStore,
        generator: ResponseGenerator,
        responder: TwiMLResponder,
        repository: CallRepository,
        persistence_timeout: float = 2.0,
    ):
        self.store = store
        self.generator = generator
        self.responder = responder
        self.repository = repository
        self.persistence_timeout = persistence_timeout

    async def handle(self, event: WebhookEvent) -> str:
        """Process one event and return the TwiML document for Twilio."""
        logger.info(
            f"Voice event: callSid={event.call_sid}, status={event.raw_status}, "
            f"speech={'yes' if event.speech_result else 'no'}"
        )

        async with self.store.lock(event.call_sid):
            if event.speech_result:
                return await self._handle_speech(event)

            if event.call_status is not None:
                twiml = await self._handle_status(event)
                if twiml is not None:
                    return twiml
            elif event.raw_status:
                logger.warning(f"Unknown CallStatus '{event.raw_status}' callSid={event.call_sid}")

            return self.responder.render(NOT_UNDERSTOOD_MESSAGE, NextStep.LISTEN)

    async def handle_status_callback(self, event: WebhookEvent) -> str:
        """Process a Twilio status callback.

        Twilio discards the TwiML returned to a status callback, so this only
        records the status and ends the conversation on a terminal status. It
        never starts a conversation: the greeting belongs to the voice webhook.
        """
        logger.info(f"Status callback: callSid={event.call_sid}, status={event.raw_status}")

        async with self.store.lock(event.call_sid):
            if event.call_status is not None:
                await self._record_status(event)
                if event.call_status.is_terminal:
                    await self._terminate(event.call_sid)
            elif event.raw_status:
                logger.warning(f"Unknown CallStatus '{event.raw_status}' callSid={event.call_sid}")

        return self.responder.render("", NextStep.NONE)

    # ------------------------------------------------------------
    # Transitions
    # ------------------------------------------------------------

    async def _record_status(self, event: WebhookEvent) -> None:
        await self._best_effort(
            "upsert_call_status",
            event.call_sid,
            self.repository.upsert_call_status(
                event.call_sid,
                event.call_status.value,
                from_number=event.from_number,
                to_number=event.to_number,
                direction=event.direction,
            ),
        )

    async def _handle_status(self, event: WebhookEvent) -> Optional[str]:
        status = event.call_status
        await self._record_status(event)

        if status == CallStatus.IN_PROGRESS and self.store.get(event.call_sid) is None:
            return await self._start_conversation(event)

        if status.is_terminal:
            await self._terminate(event.call_sid)
            return self.responder.render("", NextStep.NONE)

        return None

    async def _start_conversation(self, event: WebhookEvent) -> str:
        state = ConversationState(call_sid=event.call_sid, customer_phone=event.from_number)
        greeting = self.generator.greeting()
        sequence = state.append(TurnRole.ASSISTANT, greeting)
        self.store.put(state)
        logger.info(f"Conversation started callSid={event.call_sid}")

        await self._persist_turn(state.call_sid, sequence, TurnRole.ASSISTANT, greeting)
        return self.responder.render(greeting, NextStep.LISTEN)

    async def _recover_state(self, event: WebhookEvent) -> ConversationState:
        """Rebuild a conversation for speech on a call we hold no state for.

        Happens after a process restart or when events arrive out of order.
        Webhook delivery is at-least-once, so this is expected, not an error.
        New turns continue after the ones already stored for the call.
        """
        stored = await self._best_effort(
            "next_sequence", event.call_sid, self.repository.next_sequence(event.call_sid)
        )
        first_sequence = stored if isinstance(stored, int) else 0
        logger.warning(
            f"METRIC conversation_recovered callSid={event.call_sid} firstSequence={first_sequence}"
        )
        state = ConversationState(
            call_sid=event.call_sid,
            customer_phone=event.from_number,
            first_sequence=first_sequence,
        )
        self.store.put(state)
        return state

    async def _handle_speech(self, event: WebhookEvent) -> str:
        state = self.store.get(event.call_sid)
        if state is None:
            state = await self._recover_state(event)

        speech = event.speech_result or ""
        sequence = state.append(TurnRole.USER, speech)
        await self._persist_turn(state.call_sid, sequence, TurnRole.USER, speech)

        try:
            reply = await self.generator.next_reply(state.turns, call_sid=state.call_sid)
        except Exception as e:
            logger.error(
                f"METRIC generation_failed_transfer callSid={state.call_sid} "
                f"error={type(e).__name__}: {e}"
            )
            reply = AgentReply(message=APOLOGY_MESSAGE, action=TransferAction(reason="technical_error"))

        sequence = state.append(TurnRole.ASSISTANT, reply.message)
        await self._persist_turn(state.call_sid, sequence, TurnRole.ASSISTANT, reply.message)

        step = next_step_for(reply)
        logger.info(f"Turn complete callSid={state.call_sid} turns={len(state.turns)} next={step.value}")
        return self.responder.render(reply.message, step)

    async def _terminate(self, call_sid: str) -> None:
        state = self.store.get(call_sid)
        if state is None:
            logger.info(f"Terminal status for callSid={call_sid} with no live conversation")
            return

        try:
            summary = await self.generator.summarize(state.turns, call_sid=call_sid)
            await self._best_effort(
                "set_final_transcript",
                call_sid,
                self.repository.set_final_transcript(call_sid, summary),
            )
        finally:
            self.store.delete(call_sid)
            logger.info(
                f"Conversation ended callSid={call_sid} "
                f"userTurns={state.count(TurnRole.USER)} agentTurns={state.count(TurnRole.ASSISTANT)}"
            )

    # ------------------------------------------------------------
    # Best-effort storage access
    # ------------------------------------------------------------

    async def _persist_turn(self, call_sid: str, sequence: int, role: TurnRole, content: str) -> None:
        await self._best_effort(
            "append_transcript_entry",
            call_sid,
            self.repository.append_transcript_entry(call_sid, sequence, role, content),
        )

    async def _best_effort(self, operation: str, call_sid: str, call: Awaitable) -> Optional[Any]:
        """Run a storage call bounded by the persistence timeout; never raise.

        Returns the call's result, or None when it failed or timed out.
        """
        try:
            return await asyncio.wait_for(call, timeout=self.persistence_timeout)
        except asyncio.TimeoutError:
            logger.error(
                f"METRIC persistence_timeout op={operation} callSid={call_sid} "
                f"timeout={self.persistence_timeout}"
            )
        except PersistenceError as e:
            logger.error(f"METRIC persistence_failed op={operation} callSid={call_sid} error={e}")
        except Exception as e:
            logger.error(
                f"METRIC persistence_failed op={operation} callSid={call_sid} "
                f"error={type(e).__name__}: {e}",
                exc_info=True,
            )
        return None
