"""
NexCall Backend - FastAPI Application

Two surfaces:
1. Twilio voice webhooks (/twiml, /twiml/status) driven by the call
   lifecycle handler. These ALWAYS answer with TwiML.
2. The calls API (/calls) used by the dashboard: list, inspect, place and
   update calls. Errors are {"error": "..."} with a 4xx/5xx status.

Python 3.9 compatible.
"""

import logging
import os
from contextlib import asynccontextmanager
from pathlib import Path
from typing import Optional

from dotenv import load_dotenv
from fastapi import FastAPI, Form
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, Response

from .agent import ResponseGenerator
from .config import Settings, get_settings, mask_secret
from .conversation_store import InMemoryConversationStore
from .database import DatabaseManager
from .lifecycle import NOT_UNDERSTOOD_MESSAGE, TECHNICAL_DIFFICULTY_MESSAGE, CallLifecycleHandler
from .models import CallCreateRequest, CallUpdateRequest, TranscriptOut, WebhookEvent
from .persistence import CallRepository, PersistenceError
from .twilio_service import TelephonyError, TwilioService, normalize_phone_e164
from .twiml import TWIML_MEDIA_TYPE, NextStep, TwiMLResponder

# Load environment variables from .env next to the package, else the cwd
env_paths = [
    Path(__file__).parent.parent / ".env",
    Path.cwd() / ".env",
]
for env_path in env_paths:
    if env_path.exists():
        load_dotenv(env_path)
        break
else:
    load_dotenv()

# Configure logging
logging.basicConfig(
    level=logging.DEBUG if os.getenv("DEBUG", "false").lower() == "true" else logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)

VERSION = "1.0.0"

# Service instances (Python 3.9 compatible type hints)
app_settings: Optional[Settings] = None
database: Optional[DatabaseManager] = None
call_repository: Optional[CallRepository] = None
twilio_service: Optional[TwilioService] = None
response_generator: Optional[ResponseGenerator] = None
twiml_responder: Optional[TwiMLResponder] = None
conversation_store: Optional[InMemoryConversationStore] = None
lifecycle_handler: Optional[CallLifecycleHandler] = None


def init_services(settings: Optional[Settings] = None) -> None:
    """Build every service from settings. Database tables are created separately."""
    global app_settings, database, call_repository, twilio_service, response_generator
    global twiml_responder, conversation_store, lifecycle_handler

    settings = settings or get_settings()
    app_settings = settings

    database = DatabaseManager(settings.database_url, echo=settings.sql_echo)
    call_repository = CallRepository(database)
    twilio_service = TwilioService(settings)
    response_generator = ResponseGenerator(settings)
    twiml_responder = TwiMLResponder(settings)
    conversation_store = InMemoryConversationStore(ttl_seconds=settings.conversation_ttl_seconds)
    lifecycle_handler = CallLifecycleHandler(
        store=conversation_store,
        generator=response_generator,
        responder=twiml_responder,
        repository=call_repository,
        persistence_timeout=settings.persistence_timeout_seconds,
    )


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan - initialize services."""
    settings = get_settings()

    logger.info("=" * 60)
    logger.info("Initializing NexCall Backend")
    logger.info("=" * 60)

    logger.info(
        f"OPENAI_API_KEY present: {bool(settings.openai_api_key)} "
        f"({mask_secret(settings.openai_api_key)})"
    )
    logger.info(f"OPENAI_MODEL: {settings.openai_model}")
    logger.info(
        f"TWILIO_AUTH_TOKEN present: {bool(settings.twilio_auth_token)} "
        f"({mask_secret(settings.twilio_auth_token)})"
    )
    if not settings.webhook_base_url:
        logger.warning("WEBHOOK_BASE_URL not set - Gather actions will use a relative URL")

    init_services(settings)

    # Degrade gracefully: callers hear the apology + transfer instead of a crash
    if not response_generator.is_configured:
        logger.warning("OpenAI NOT configured - every speech turn will transfer to a human")
    if not twilio_service.is_configured:
        logger.warning("Twilio service NOT fully configured - POST /calls will answer 503")

    await database.create_all()
    logger.info("=" * 60)

    yield

    logger.info("Shutting down NexCall Backend")
    await database.close()


app = FastAPI(
    title="NexCall Backend",
    description="AI voice agent for Twilio calls with a call records API",
    version=VERSION,
    lifespan=lifespan,
)

# CORS middleware for the dashboard
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
    expose_headers=["X-Total-Count"],
)


def _error(status_code: int, message: str) -> JSONResponse:
    return JSONResponse(status_code=status_code, content={"error": message})


def _parse_positive_int(value: Optional[str], default: int) -> Optional[int]:
    """Parse a query value; None means it was present but invalid."""
    if value is None or value == "":
        return default
    try:
        parsed = int(value)
    except ValueError:
        return None
    return parsed if parsed >= 1 else None


@app.get("/health")
async def health_check():
    """Health check endpoint."""
    return {
        "status": "healthy",
        "version": VERSION,
        "openaiConfigured": bool(response_generator and response_generator.is_configured),
        "twilioConfigured": bool(twilio_service and twilio_service.is_configured),
    }


# ============================================================
# Twilio voice webhooks
# ============================================================

async def _handle_voice_event(event: WebhookEvent, status_callback: bool = False) -> Response:
    """
    Run one webhook event through the lifecycle handler.

    Events without a CallSid cannot be tied to a call: they get the default
    prompt and never reach the handler.

    GUARANTEE: always returns TwiML. Anything unexpected becomes a spoken
    technical-difficulty message rather than an HTTP error Twilio would read
    out as an application error.
    """
    responder = twiml_responder or TwiMLResponder(get_settings())

    if not event.call_sid.strip():
        logger.warning(f"METRIC webhook_missing_call_sid status={event.raw_status}")
        twiml = responder.render(NOT_UNDERSTOOD_MESSAGE, NextStep.LISTEN)
        return Response(content=twiml, media_type=TWIML_MEDIA_TYPE)

    # TOP-LEVEL EXCEPTION BARRIER
    try:
        if lifecycle_handler is None:
            raise RuntimeError("Services not initialized")
        if status_callback:
            twiml = await lifecycle_handler.handle_status_callback(event)
        else:
            twiml = await lifecycle_handler.handle(event)
    except Exception as e:
        logger.error(
            f"METRIC webhook_unexpected_error callSid={event.call_sid} error={type(e).__name__}",
            exc_info=True,
        )
        twiml = responder.say_only(TECHNICAL_DIFFICULTY_MESSAGE)

    return Response(content=twiml, media_type=TWIML_MEDIA_TYPE)


@app.post("/twiml")
async def twiml_webhook(
    CallSid: str = Form(""),
    From: str = Form(""),
    To: str = Form(""),
    SpeechResult: Optional[str] = Form(None),
    CallStatus: Optional[str] = Form(None),
    Direction: Optional[str] = Form(None),
):
    """
    Twilio voice webhook - call answered and every gathered speech result.

    SpeechResult takes precedence over CallStatus: a Gather callback carries
    both, and the speech is what needs an answer.
    """
    event = WebhookEvent.from_form(
        call_sid=CallSid,
        from_number=From,
        to_number=To,
        speech_result=SpeechResult,
        call_status=CallStatus,
        direction=Direction,
    )
    return await _handle_voice_event(event)


@app.post("/twiml/status")
async def twiml_status_callback(
    CallSid: str = Form(""),
    From: str = Form(""),
    To: str = Form(""),
    CallStatus: Optional[str] = Form(None),
    Direction: Optional[str] = Form(None),
):
    """
    Twilio status callback - initiated, ringing, answered, completed...

    Records the status; a terminal status summarizes the conversation.
    Twilio ignores the response body, and an early "answered" callback must
    not take the greeting from the voice webhook.
    """
    event = WebhookEvent.from_form(
        call_sid=CallSid,
        from_number=From,
        to_number=To,
        call_status=CallStatus,
        direction=Direction,
    )
    return await _handle_voice_event(event, status_callback=True)


# ============================================================
# Calls API
# ============================================================

@app.get("/calls")
async def get_calls(
    id: Optional[str] = None,
    page: Optional[str] = None,
    limit: Optional[str] = None,
):
    """
    Fetch one call by internal id, or a page of calls (newest first).

    A single call is enriched with live Twilio details under "twilioDetails"
    when Twilio answers; otherwise the stored record is returned as-is.
    A page is a JSON array; the total number of calls is in X-Total-Count.
    """
    if call_repository is None:
        return _error(503, "Service not initialized")

    try:
        if id:
            record = await call_repository.get_call(id)
            if record is None:
                return _error(404, "Call not found")

            payload = record.model_dump(mode="json", by_alias=True)
            if twilio_service is not None and twilio_service.is_configured:
                try:
                    details = await twilio_service.get_call_details(record.twilioSid)
                    payload["twilioDetails"] = details.model_dump(mode="json", by_alias=True)
                except TelephonyError as e:
                    logger.warning(f"Twilio details unavailable for {record.twilioSid}, using stored data: {e}")
            return payload

        page_number = _parse_positive_int(page, 1)
        page_size = _parse_positive_int(limit, 10)
        if page_number is None or page_size is None:
            return _error(400, "page and limit must be positive integers")

        records = await call_repository.list_calls(page=page_number, limit=page_size)
        total = await call_repository.count_calls()
        return JSONResponse(
            content=[r.model_dump(mode="json", by_alias=True) for r in records],
            headers={"X-Total-Count": str(total)},
        )

    except PersistenceError as e:
        logger.error(f"Calls lookup failed: {e}")
        return _error(500, "Server error")


@app.post("/calls")
async def create_call(request: CallCreateRequest):
    """
    Place an outbound call and store it.

    Errors:
        400: to, from or callbackUrl missing, or an invalid destination
        503: Twilio not configured
        500: Twilio or storage failure
    """
    logger.info(f"Call create: to={request.to}, from={request.from_}, callbackUrl={request.callbackUrl}")

    if not request.to or not request.from_ or not request.callbackUrl:
        return _error(400, "to, from and callbackUrl are required")

    region = (app_settings or get_settings()).default_phone_region
    to_e164 = normalize_phone_e164(request.to, region)
    if to_e164 is None:
        logger.warning(f"Invalid destination phone: {request.to}")
        return _error(400, f"invalid_phone: cannot normalize '{request.to}' to E.164")

    if twilio_service is None or not twilio_service.is_configured:
        logger.error("Twilio service not configured")
        return _error(503, "twilio_not_configured: Twilio credentials are missing")
    if call_repository is None:
        return _error(503, "Service not initialized")

    try:
        details = await twilio_service.initiate_call(to_e164, request.from_, request.callbackUrl)
        record = await call_repository.create_call(
            call_sid=details.id,
            to_number=details.to,
            from_number=details.from_,
            status=details.status,
            direction=details.direction or "outbound",
        )
    except TelephonyError as e:
        logger.error(f"Call create failed: {e}")
        return _error(500, f"twilio_error: {e}")
    except PersistenceError as e:
        logger.error(f"Call create storage failed: {e}")
        return _error(500, "Server error")

    logger.info(f"Call created: id={record.id}, twilioSid={record.twilioSid}")
    return JSONResponse(status_code=201, content=record.model_dump(mode="json", by_alias=True))


@app.put("/calls")
async def update_call(request: CallUpdateRequest):
    """Update a call's status and/or transcript by Twilio sid."""
    if not request.callSid:
        return _error(400, "callSid is required")
    if call_repository is None:
        return _error(503, "Service not initialized")

    try:
        record = await call_repository.update_call(
            request.callSid,
            status=request.status,
            transcript=request.transcript,
        )
    except PersistenceError as e:
        logger.error(f"Call update failed: {e}")
        return _error(500, "Server error")

    if record is None:
        return _error(404, "Call not found")
    return record.model_dump(mode="json", by_alias=True)


@app.get("/calls/{call_sid}/transcript")
async def get_call_transcript(call_sid: str):
    """Ordered per-turn transcript of a call."""
    if call_repository is None:
        return _error(503, "Service not initialized")

    try:
        record = await call_repository.get_call_by_sid(call_sid)
        if record is None:
            return _error(404, "Call not found")
        entries = await call_repository.list_transcript(call_sid)
    except PersistenceError as e:
        logger.error(f"Transcript lookup failed: {e}")
        return _error(500, "Server error")

    return TranscriptOut(callSid=call_sid, entries=entries).model_dump(mode="json")


if __name__ == "__main__":
    import uvicorn
    port = int(os.getenv("PORT", "8000"))
    uvicorn.run(app, host="0.0.0.0", port=port)
