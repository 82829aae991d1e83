"""
Call-center agent backed by OpenAI chat completions.

This service:
1. Builds the persona preamble from AgentInstructions (never stored in history)
2. Produces the greeting for a newly answered call
3. Generates the next spoken reply plus a requested action
4. Summarizes a finished conversation for the call record

next_reply() RAISES ResponseGenerationError on any backend failure - the
lifecycle handler owns the recovery (apology + transfer).
summarize() NEVER raises - a summary is nice to have, not critical.

Python 3.9 compatible - uses typing.List, typing.Optional
"""

import json
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Sequence, Union

from openai import AsyncOpenAI

from .actions import CallbackAction, NoAction, ScheduleAction, TransferAction, parse_action
from .config import Settings
from .models import Turn, TurnRole

logger = logging.getLogger(__name__)

SUMMARY_FAILED_PLACEHOLDER = "Erreur lors de la génération du résumé."
SUMMARY_EMPTY_PLACEHOLDER = "Aucun résumé disponible."

SUMMARY_INSTRUCTION = (
    "Résume la conversation suivante entre un client et un agent de centre d'appel. "
    "Inclus les points clés discutés, les problèmes identifiés et les actions à entreprendre."
)

REPLY_FORMAT_INSTRUCTION = """Réponds UNIQUEMENT avec un objet JSON:
{
  "message": "ce que tu dis au client",
  "action": {"type": "none"}
}

Types d'action possibles:
- {"type": "none"} : la conversation continue normalement
- {"type": "transfer", "reason": "..."} : le client doit parler à un agent humain
- {"type": "callback", "phone": "...", "preferred_time": "..."} : le client veut être rappelé
- {"type": "schedule", "date": "...", "time": "...", "topic": "..."} : le client veut un rendez-vous"""


class ResponseGenerationError(Exception):
    """The text-generation backend could not produce a reply."""


@dataclass
class CompanyInfo:
    name: str
    description: str
    services: List[str] = field(default_factory=list)
    contact_methods: List[str] = field(default_factory=list)


@dataclass
class AgentInstructions:
    """Persona configuration for the agent."""
    role: str
    objective: str
    persona: str
    guidelines: List[str]
    company: CompanyInfo


DEFAULT_INSTRUCTIONS = AgentInstructions(
    role="Assistant service client",
    objective="Aider les clients à résoudre leurs problèmes et répondre à leurs questions",
    persona="Professionnel, empathique et efficace",
    guidelines=[
        "Écouter attentivement les préoccupations du client",
        "Fournir des informations précises et utiles",
        "Rester poli et professionnel en toutes circonstances",
        "Rediriger vers un agent humain pour les questions complexes",
    ],
    company=CompanyInfo(
        name="NexCallAI",
        description="Plateforme de gestion de centre d'appels alimentée par l'IA",
        services=[
            "Service client automatisé",
            "Gestion d'appels entrants et sortants",
            "Analyse de conversations",
            "Intégration avec des systèmes CRM",
        ],
        contact_methods=[
            "Téléphone: +33 1 23 45 67 89",
            "Email: support@nexcallai.com",
            "Site web: www.nexcallai.com",
        ],
    ),
)


AnyAction = Union[NoAction, TransferAction, CallbackAction, ScheduleAction]


@dataclass
class AgentReply:
    message: str
    action: AnyAction = field(default_factory=NoAction)


def build_system_prompt(instructions: AgentInstructions) -> str:
    """Persona preamble prepended to every reply request."""
    company = instructions.company
    services = "\n".join(f"- {s}" for s in company.services)
    guidelines = "\n".join(f"- {g}" for g in instructions.guidelines)
    contacts = "\n".join(f"- {c}" for c in company.contact_methods)
    return f"""Tu es un agent IA de centre d'appel pour {company.name}.
Ton rôle: {instructions.role}
Ton objectif: {instructions.objective}
Persona: {instructions.persona}

Informations sur l'entreprise:
{company.description}

Services offerts:
{services}

Moyens de contact:
{contacts}

Directives à suivre:
{guidelines}

Parle toujours en français, sois professionnel, poli et concis.
N'oublie pas que tu communiques par téléphone, donc garde tes réponses claires et facilement compréhensibles à l'oral.

{REPLY_FORMAT_INSTRUCTION}"""


def flatten_transcript(history: Sequence[Turn]) -> str:
    """Render turns as "Client: ..." / "Agent: ..." lines for summarization."""
    lines = []
    for turn in history:
        if turn.role == TurnRole.SYSTEM:
            continue
        speaker = "Client" if turn.role == TurnRole.USER else "Agent"
        lines.append(f"{speaker}: {turn.content}")
    return "\n".join(lines)


class ResponseGenerator:
    """Turns a conversation history into the agent's next line."""

    def __init__(
        self,
        settings: Settings,
        instructions: AgentInstructions = DEFAULT_INSTRUCTIONS,
        client: Optional[AsyncOpenAI] = None,
    ):
        self.settings = settings
        self.instructions = instructions
        self.model = settings.openai_model
        self.summary_model = settings.openai_summary_model
        self._system_prompt = build_system_prompt(instructions)

        if client is not None:
            self.client: Optional[AsyncOpenAI] = client
        elif settings.openai_api_key:
            # No SDK retries: Twilio is waiting on this request
            self.client = AsyncOpenAI(
                api_key=settings.openai_api_key,
                timeout=settings.openai_timeout_seconds,
                max_retries=0,
            )
            logger.info(f"ResponseGenerator configured with model: {self.model}")
        else:
            self.client = None
            logger.warning("ResponseGenerator: OPENAI_API_KEY not configured - replies will fail over to transfer")

    @property
    def is_configured(self) -> bool:
        return self.client is not None

    @property
    def system_prompt(self) -> str:
        return self._system_prompt

    def greeting(self) -> str:
        """Opening line for a newly answered call."""
        name = self.instructions.company.name
        return (
            f"Bonjour, vous êtes en ligne avec {name}. Je suis votre assistant virtuel. "
            "Comment puis-je vous aider aujourd'hui?"
        )

    def build_messages(self, history: Sequence[Turn]) -> List[Dict[str, str]]:
        messages = [{"role": "system", "content": self._system_prompt}]
        for turn in history:
            messages.append({"role": turn.role.value, "content": turn.content})
        return messages

    async def next_reply(self, history: Sequence[Turn], call_sid: str = "unknown") -> AgentReply:
        """Generate the assistant's next reply for the given history.

        Raises:
            ResponseGenerationError: backend not configured, unreachable,
                timed out, or returned no content.
        """
        if self.client is None:
            raise ResponseGenerationError("OpenAI not configured")

        messages = self.build_messages(history)
        logger.info(f"Calling OpenAI ({self.model}) with {len(messages)} messages callSid={call_sid}")

        try:
            response = await self.client.chat.completions.create(
                model=self.model,
                messages=messages,
                temperature=self.settings.reply_temperature,
                max_tokens=self.settings.reply_max_tokens,
                response_format={"type": "json_object"},
            )
            content = response.choices[0].message.content
        except Exception as e:
            logger.error(
                f"METRIC model_api_error stage=reply error={type(e).__name__} callSid={call_sid}"
            )
            raise ResponseGenerationError(f"{type(e).__name__}: {e}") from e

        if not content or not content.strip():
            logger.error(f"METRIC model_empty_response stage=reply callSid={call_sid}")
            raise ResponseGenerationError("empty response from model")

        return self._parse_reply(content, call_sid)

    def _parse_reply(self, content: str, call_sid: str) -> AgentReply:
        """Read {"message", "action"} JSON; plain text is spoken as-is."""
        try:
            data: Any = json.loads(content)
        except json.JSONDecodeError:
            logger.info(f"METRIC model_reply_not_json callSid={call_sid}")
            return AgentReply(message=content.strip())

        if not isinstance(data, dict):
            return AgentReply(message=content.strip())

        message = data.get("message")
        if not isinstance(message, str) or not message.strip():
            logger.error(f"METRIC model_reply_missing_message callSid={call_sid} keys={list(data.keys())}")
            raise ResponseGenerationError("model reply has no message")

        action = parse_action(data.get("action"))
        logger.info(f"Agent reply generated: action={action.type} text={message[:100]}")
        return AgentReply(message=message.strip(), action=action)

    async def summarize(self, history: Sequence[Turn], call_sid: str = "unknown") -> str:
        """Summarize a finished conversation. Never raises."""
        if self.client is None:
            logger.error(f"summarize: OpenAI not configured callSid={call_sid}")
            return SUMMARY_FAILED_PLACEHOLDER

        messages = [
            {"role": "system", "content": SUMMARY_INSTRUCTION},
            {"role": "user", "content": flatten_transcript(history)},
        ]

        try:
            response = await self.client.chat.completions.create(
                model=self.summary_model,
                messages=messages,
                temperature=self.settings.summary_temperature,
                max_tokens=self.settings.summary_max_tokens,
            )
            content = response.choices[0].message.content
        except Exception as e:
            logger.error(
                f"METRIC model_api_error stage=summary error={type(e).__name__} callSid={call_sid}"
            )
            return SUMMARY_FAILED_PLACEHOLDER

        if not content or not content.strip():
            return SUMMARY_EMPTY_PLACEHOLDER
        return content.strip()
