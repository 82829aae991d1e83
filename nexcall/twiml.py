"""
TwiML rendering for the voice webhook.

render() is pure: the same message and next step always produce the same
document. XML escaping is done by the twilio TwiML builder; control
characters are stripped before that since they are not valid in XML 1.0.
"""

import logging
import re
from enum import Enum

from twilio.twiml.voice_response import Gather, VoiceResponse

from .config import Settings

logger = logging.getLogger(__name__)

TWIML_MEDIA_TYPE = "application/xml"

LISTENING_PROMPT = "Je vous écoute."
NO_INPUT_GOODBYE = "Je n'ai rien entendu. Merci de votre appel, au revoir."
TRANSFER_ANNOUNCEMENT = "Je vous transfère vers un agent humain."

# Twilio rejects <Say> bodies longer than 4096 characters
MAX_SAY_CHARS = 4000

_CONTROL_CHARS = re.compile(r"[\x00-\x08\x0b\x0c\x0e-\x1f\x7f-\x9f]")
_WHITESPACE = re.compile(r"\s+")


class NextStep(str, Enum):
    LISTEN = "listen"
    TRANSFER = "transfer"
    NONE = "none"


def sanitize_speech(text: str) -> str:
    """Make text safe to speak: no control characters, single-spaced, bounded."""
    if not text:
        return ""
    cleaned = _CONTROL_CHARS.sub(" ", text)
    cleaned = _WHITESPACE.sub(" ", cleaned).strip()
    if len(cleaned) > MAX_SAY_CHARS:
        logger.warning(f"Truncating spoken message from {len(cleaned)} chars")
        cleaned = cleaned[:MAX_SAY_CHARS].rsplit(" ", 1)[0]
    return cleaned


class TwiMLResponder:
    """Builds the TwiML documents the lifecycle handler returns to Twilio."""

    def __init__(self, settings: Settings):
        self.voice = settings.twiml_voice
        self.language = settings.twiml_language
        self.action_url = settings.gather_action_url
        self.gather_timeout = settings.gather_timeout_seconds
        self.transfer_number = settings.transfer_number

    def _say(self, node, text: str) -> None:
        node.say(sanitize_speech(text), voice=self.voice, language=self.language)

    def render(self, message: str, next_step: NextStep) -> str:
        """Render the response for a spoken message and what should follow it."""
        response = VoiceResponse()

        if next_step == NextStep.NONE:
            return str(response)

        if message and sanitize_speech(message):
            self._say(response, message)

        if next_step == NextStep.LISTEN:
            gather = Gather(
                input="speech",
                action=self.action_url,
                method="POST",
                speech_timeout="auto",
                timeout=str(self.gather_timeout),
                language=self.language,
            )
            self._say(gather, LISTENING_PROMPT)
            response.append(gather)
            # only reached when the gather times out with no speech
            self._say(response, NO_INPUT_GOODBYE)
            response.hangup()
        elif next_step == NextStep.TRANSFER:
            self._say(response, TRANSFER_ANNOUNCEMENT)
            response.dial(self.transfer_number)

        return str(response)

    def say_only(self, message: str) -> str:
        """Speak a message with nothing after it."""
        response = VoiceResponse()
        self._say(response, message)
        return str(response)
