"""
Twilio Service - outbound call placement and live call details.

This service:
1. Places outbound calls via the Twilio REST API
2. Fetches live call details for the calls API
3. Normalizes destination numbers to E.164

Does NOT crash if Twilio is not configured - callers get a TelephonyError
and the calls API answers 503.

Python 3.9 compatible - uses typing.Optional
"""

import logging
from typing import Any, Optional

import phonenumbers
from fastapi.concurrency import run_in_threadpool
from phonenumbers import NumberParseException
from twilio.http.http_client import TwilioHttpClient
from twilio.rest import Client as TwilioClient

from .config import Settings
from .models import CallDetailsOut, CallDirection

logger = logging.getLogger(__name__)

STATUS_CALLBACK_EVENTS = ["initiated", "ringing", "answered", "completed"]


class TelephonyError(Exception):
    """Twilio is not configured or its API call failed."""


def normalize_phone_e164(phone: Optional[str], default_region: str = "FR") -> Optional[str]:
    """
    Normalize a phone number to E.164 using the phonenumbers library.

    Handles "+33612345678", "06 12 34 56 78", "(06) 12-34-56-78".

    Returns:
        E.164 formatted phone or None if invalid/missing
    """
    if not phone:
        return None

    try:
        parsed = phonenumbers.parse(phone, default_region)
    except NumberParseException as e:
        logger.debug(f"Could not parse phone '{phone}': {e}")
        return None

    if not phonenumbers.is_valid_number(parsed):
        logger.debug(f"Invalid phone number: {phone}")
        return None

    return phonenumbers.format_number(parsed, phonenumbers.PhoneNumberFormat.E164)


def _call_to_details(call: Any) -> CallDetailsOut:
    try:
        duration = int(call.duration or 0)
    except (TypeError, ValueError):
        duration = 0
    return CallDetailsOut(
        id=call.sid,
        to=call.to,
        from_=call.from_,
        status=call.status,
        direction=CallDirection.from_twilio(call.direction).value,
        startTime=call.start_time,
        endTime=call.end_time,
        duration=duration,
    )


class TwilioService:
    """Service for Twilio REST operations."""

    def __init__(self, settings: Settings, client: Optional[TwilioClient] = None):
        self.settings = settings
        self.phone_number = settings.twilio_phone_number
        self.client: Optional[TwilioClient] = client

        if self.client is None and settings.twilio_account_sid and settings.twilio_auth_token:
            self.client = TwilioClient(
                settings.twilio_account_sid,
                settings.twilio_auth_token,
                http_client=TwilioHttpClient(timeout=settings.twilio_timeout_seconds),
            )
            logger.info(f"TwilioService configured with phone: {self.phone_number}")
        elif self.client is None:
            logger.warning("TwilioService: Twilio credentials not configured - calls will fail")

    @property
    def is_configured(self) -> bool:
        return self.client is not None

    def _require_client(self) -> TwilioClient:
        if self.client is None:
            raise TelephonyError("Twilio not configured")
        return self.client

    async def initiate_call(
        self,
        to: str,
        from_number: Optional[str],
        callback_url: str,
    ) -> CallDetailsOut:
        """Place an outbound call whose TwiML is served by callback_url.

        Status changes are posted to <callback_url>/status.

        Raises:
            TelephonyError: Twilio not configured, no caller number, or API failure
        """
        client = self._require_client()
        caller = from_number or self.phone_number
        if not caller:
            raise TelephonyError("No caller number: pass 'from' or set TWILIO_PHONE_NUMBER")

        status_callback = f"{callback_url.rstrip('/')}/status"
        logger.info(f"Starting Twilio call to {to} from {caller}")

        try:
            call = await run_in_threadpool(
                client.calls.create,
                to=to,
                from_=caller,
                url=callback_url,
                status_callback=status_callback,
                status_callback_event=STATUS_CALLBACK_EVENTS,
                status_callback_method="POST",
            )
        except Exception as e:
            logger.error(f"initiate_call failed for {to}: {e}")
            raise TelephonyError(f"Twilio call creation failed: {e}") from e

        logger.info(f"Twilio call started: SID={call.sid}, status={call.status}")
        details = _call_to_details(call)
        # the create response can omit numbers we already know
        if not details.to:
            details.to = to
        if not details.from_:
            details.from_ = caller
        return details

    async def get_call_details(self, call_sid: str) -> CallDetailsOut:
        """Fetch live details of a call.

        Raises:
            TelephonyError: Twilio not configured or API failure
        """
        client = self._require_client()
        try:
            call = await run_in_threadpool(client.calls(call_sid).fetch)
        except Exception as e:
            logger.error(f"get_call_details failed for {call_sid}: {e}")
            raise TelephonyError(f"Twilio fetch failed: {e}") from e
        return _call_to_details(call)
