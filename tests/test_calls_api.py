"""
Tests for the HTTP surface.

These tests verify that:
1. POST /twiml and /twiml/status always answer TwiML (application/xml)
2. A full call (answer, speech, hang up) leaves a stored transcript
3. /calls validates input and answers {"error": ...} with the right status
4. GET /calls?id= falls back to stored data when Twilio is unavailable
"""

from unittest.mock import AsyncMock, MagicMock

import pytest
from httpx import AsyncClient

from nexcall import main
from nexcall.lifecycle import NOT_UNDERSTOOD_MESSAGE, TECHNICAL_DIFFICULTY_MESSAGE
from nexcall.twilio_service import TwilioService

CALLER = "+33612345678"
AGENT_NUMBER = "+33170000000"


def twilio_form(call_sid: str = "CA100", **fields) -> dict:
    form = {"CallSid": call_sid, "From": CALLER, "To": AGENT_NUMBER, "Direction": "inbound"}
    form.update(fields)
    return form


def make_twilio_client(sid: str = "CA_out") -> MagicMock:
    call = MagicMock()
    call.sid = sid
    call.to = CALLER
    call.from_ = AGENT_NUMBER
    call.status = "queued"
    call.direction = "outbound-api"
    call.duration = None
    call.start_time = None
    call.end_time = None

    client = MagicMock()
    client.calls.create.return_value = call
    client.calls.return_value.fetch.return_value = call
    return client


class TestHealth:

    @pytest.mark.asyncio
    async def test_health(self, client: AsyncClient):
        response = await client.get("/health")

        assert response.status_code == 200
        data = response.json()
        assert data["status"] == "healthy"
        assert data["openaiConfigured"] is True
        assert data["twilioConfigured"] is False


class TestVoiceWebhook:
    """Tests for POST /twiml and POST /twiml/status"""

    @pytest.mark.asyncio
    async def test_answer_returns_greeting_twiml(self, client: AsyncClient):
        response = await client.post("/twiml", data=twilio_form(CallStatus="in-progress"))

        assert response.status_code == 200
        assert response.headers["content-type"].startswith("application/xml")
        assert "Bonjour, vous êtes en ligne avec NexCallAI" in response.text
        assert "<Gather" in response.text

    @pytest.mark.asyncio
    async def test_full_call_is_recorded(self, client: AsyncClient):
        await client.post("/twiml", data=twilio_form(CallStatus="in-progress"))
        reply = await client.post(
            "/twiml", data=twilio_form(CallStatus="in-progress", SpeechResult="Je veux des infos")
        )
        hangup = await client.post("/twiml/status", data=twilio_form(CallStatus="completed"))

        assert "Bien sûr" in reply.text
        assert hangup.status_code == 200
        assert "<Say" not in hangup.text
        assert main.conversation_store.get("CA100") is None

        transcript = await client.get("/calls/CA100/transcript")
        assert transcript.status_code == 200
        entries = transcript.json()["entries"]
        assert [e["role"] for e in entries] == ["assistant", "user", "assistant"]
        assert entries[1]["content"] == "Je veux des infos"

        record = await main.call_repository.get_call_by_sid("CA100")
        assert record.status == "completed"
        assert record.transcript == "Le client a demandé des informations sur les services."

    @pytest.mark.asyncio
    async def test_unexpected_error_is_spoken(self, client: AsyncClient):
        main.lifecycle_handler.handle = AsyncMock(side_effect=RuntimeError("boom"))

        response = await client.post("/twiml", data=twilio_form(CallStatus="in-progress"))

        assert response.status_code == 200
        assert response.headers["content-type"].startswith("application/xml")
        assert TECHNICAL_DIFFICULTY_MESSAGE in response.text

    @pytest.mark.asyncio
    async def test_uninitialized_services_still_answer_twiml(self, client: AsyncClient, monkeypatch):
        monkeypatch.setattr(main, "lifecycle_handler", None)

        response = await client.post("/twiml", data=twilio_form(SpeechResult="Allô"))

        assert response.status_code == 200
        assert TECHNICAL_DIFFICULTY_MESSAGE in response.text

    @pytest.mark.asyncio
    async def test_status_callback_without_conversation_is_harmless(self, client: AsyncClient):
        response = await client.post("/twiml/status", data=twilio_form("CA200", CallStatus="no-answer"))

        assert response.status_code == 200
        record = await main.call_repository.get_call_by_sid("CA200")
        assert record.status == "no-answer"

    @pytest.mark.asyncio
    async def test_answered_callback_before_voice_webhook_keeps_greeting(self, client: AsyncClient):
        callback = await client.post("/twiml/status", data=twilio_form(CallStatus="in-progress"))
        voice = await client.post("/twiml", data=twilio_form(CallStatus="in-progress"))

        assert "<Say" not in callback.text
        assert "Bonjour, vous êtes en ligne avec NexCallAI" in voice.text
        assert len(main.conversation_store.get("CA100").turns) == 1

    @pytest.mark.asyncio
    async def test_missing_call_sid_gets_default_prompt(self, client: AsyncClient):
        main.lifecycle_handler.handle = AsyncMock()

        response = await client.post("/twiml", data=twilio_form("", SpeechResult="Allô ?"))

        assert response.status_code == 200
        assert response.headers["content-type"].startswith("application/xml")
        assert NOT_UNDERSTOOD_MESSAGE in response.text
        main.lifecycle_handler.handle.assert_not_awaited()
        assert await main.call_repository.get_call_by_sid("") is None

    @pytest.mark.asyncio
    async def test_status_callback_without_call_sid_is_ignored(self, client: AsyncClient):
        response = await client.post("/twiml/status", data={"CallStatus": "completed"})

        assert response.status_code == 200
        assert await main.call_repository.count_calls() == 0


class TestCreateCall:
    """Tests for POST /calls"""

    @pytest.mark.asyncio
    async def test_missing_fields_returns_400(self, client: AsyncClient):
        response = await client.post("/calls", json={"to": CALLER})

        assert response.status_code == 400
        assert "error" in response.json()

    @pytest.mark.asyncio
    async def test_invalid_phone_returns_400(self, client: AsyncClient):
        response = await client.post(
            "/calls",
            json={"to": "not-a-phone", "from": AGENT_NUMBER, "callbackUrl": "https://nexcall.test/twiml"},
        )

        assert response.status_code == 400
        assert "invalid_phone" in response.json()["error"]

    @pytest.mark.asyncio
    async def test_twilio_not_configured_returns_503(self, client: AsyncClient):
        response = await client.post(
            "/calls",
            json={"to": CALLER, "from": AGENT_NUMBER, "callbackUrl": "https://nexcall.test/twiml"},
        )

        assert response.status_code == 503
        assert "twilio_not_configured" in response.json()["error"]

    @pytest.mark.asyncio
    async def test_creates_and_stores_call(self, client: AsyncClient, settings, monkeypatch):
        twilio_client = make_twilio_client()
        monkeypatch.setattr(main, "twilio_service", TwilioService(settings, client=twilio_client))

        response = await client.post(
            "/calls",
            json={"to": "06 12 34 56 78", "from": AGENT_NUMBER, "callbackUrl": "https://nexcall.test/twiml"},
        )

        assert response.status_code == 201
        data = response.json()
        assert data["twilioSid"] == "CA_out"
        assert data["to"] == CALLER
        assert data["from"] == AGENT_NUMBER
        assert data["direction"] == "outbound"

        kwargs = twilio_client.calls.create.call_args.kwargs
        assert kwargs["to"] == CALLER
        assert kwargs["status_callback"] == "https://nexcall.test/twiml/status"

        stored = await main.call_repository.get_call(data["id"])
        assert stored is not None

    @pytest.mark.asyncio
    async def test_twilio_failure_returns_500(self, client: AsyncClient, settings, monkeypatch):
        twilio_client = make_twilio_client()
        twilio_client.calls.create.side_effect = RuntimeError("HTTP 401")
        monkeypatch.setattr(main, "twilio_service", TwilioService(settings, client=twilio_client))

        response = await client.post(
            "/calls",
            json={"to": CALLER, "from": AGENT_NUMBER, "callbackUrl": "https://nexcall.test/twiml"},
        )

        assert response.status_code == 500
        assert "error" in response.json()
        assert await main.call_repository.count_calls() == 0


class TestGetCalls:
    """Tests for GET /calls"""

    @pytest.mark.asyncio
    async def test_unknown_id_returns_404(self, client: AsyncClient):
        response = await client.get("/calls", params={"id": "missing"})

        assert response.status_code == 404
        assert response.json() == {"error": "Call not found"}

    @pytest.mark.asyncio
    async def test_single_call_without_twilio_uses_stored_data(self, client: AsyncClient):
        record = await main.call_repository.create_call("CA1", CALLER, AGENT_NUMBER, "completed")

        response = await client.get("/calls", params={"id": record.id})

        assert response.status_code == 200
        data = response.json()
        assert data["twilioSid"] == "CA1"
        assert "twilioDetails" not in data

    @pytest.mark.asyncio
    async def test_single_call_enriched_with_twilio_details(self, client: AsyncClient, settings, monkeypatch):
        monkeypatch.setattr(main, "twilio_service", TwilioService(settings, client=make_twilio_client("CA1")))
        record = await main.call_repository.create_call("CA1", CALLER, AGENT_NUMBER, "completed")

        response = await client.get("/calls", params={"id": record.id})

        data = response.json()
        assert data["twilioDetails"]["id"] == "CA1"
        assert data["twilioDetails"]["from"] == AGENT_NUMBER

    @pytest.mark.asyncio
    async def test_twilio_failure_falls_back_to_stored_data(self, client: AsyncClient, settings, monkeypatch):
        twilio_client = make_twilio_client("CA1")
        twilio_client.calls.return_value.fetch.side_effect = RuntimeError("HTTP 500")
        monkeypatch.setattr(main, "twilio_service", TwilioService(settings, client=twilio_client))
        record = await main.call_repository.create_call("CA1", CALLER, AGENT_NUMBER, "completed")

        response = await client.get("/calls", params={"id": record.id})

        assert response.status_code == 200
        data = response.json()
        assert data["id"] == record.id
        assert "twilioDetails" not in data

    @pytest.mark.asyncio
    async def test_list_is_paginated(self, client: AsyncClient):
        for i in range(3):
            await main.call_repository.create_call(f"CA{i}", CALLER, AGENT_NUMBER, "completed")

        first = await client.get("/calls", params={"page": 1, "limit": 2})
        second = await client.get("/calls", params={"page": 2, "limit": 2})

        assert len(first.json()) == 2
        assert len(second.json()) == 1
        assert first.headers["x-total-count"] == "3"

    @pytest.mark.asyncio
    async def test_list_defaults(self, client: AsyncClient):
        response = await client.get("/calls")

        assert response.status_code == 200
        assert response.json() == []

    @pytest.mark.asyncio
    async def test_invalid_page_returns_400(self, client: AsyncClient):
        response = await client.get("/calls", params={"page": "zero"})

        assert response.status_code == 400
        assert "error" in response.json()


class TestUpdateCall:
    """Tests for PUT /calls"""

    @pytest.mark.asyncio
    async def test_missing_call_sid_returns_400(self, client: AsyncClient):
        response = await client.put("/calls", json={"status": "completed"})

        assert response.status_code == 400

    @pytest.mark.asyncio
    async def test_unknown_call_returns_404(self, client: AsyncClient):
        response = await client.put("/calls", json={"callSid": "missing", "status": "completed"})

        assert response.status_code == 404

    @pytest.mark.asyncio
    async def test_updates_status_and_keeps_transcript(self, client: AsyncClient):
        await main.call_repository.create_call("CA1", CALLER, AGENT_NUMBER, "in-progress")
        await main.call_repository.set_final_transcript("CA1", "Résumé")

        response = await client.put("/calls", json={"callSid": "CA1", "status": "completed"})

        assert response.status_code == 200
        data = response.json()
        assert data["status"] == "completed"
        assert data["transcript"] == "Résumé"


class TestTranscript:
    """Tests for GET /calls/{call_sid}/transcript"""

    @pytest.mark.asyncio
    async def test_unknown_call_returns_404(self, client: AsyncClient):
        response = await client.get("/calls/missing/transcript")

        assert response.status_code == 404
