"""Per-provider webhook capabilities.

Each provider bundles its signature check, body parser and response shapes so
the ingestion pipeline in ``src.routers.webhooks`` never branches on provider.
"""

from __future__ import annotations

import hashlib
import json
from dataclasses import dataclass
from typing import Any, Mapping
from urllib.parse import parse_qsl

from fastapi import Response, status
from fastapi.responses import JSONResponse
from twilio.twiml.messaging_response import MessagingResponse
from twilio.twiml.voice_response import VoiceResponse

from src.config import settings
from src.domain import signatures


@dataclass(frozen=True)
class ParsedEvent:
    event_type: str
    external_event_id: str
    payload: dict[str, Any]


class PayloadError(ValueError):
    pass


def _body_hash(raw_body: bytes) -> str:
    return hashlib.sha256(raw_body).hexdigest()


def _load_json_object(raw_body: bytes) -> dict[str, Any]:
    try:
        payload = json.loads(raw_body.decode("utf-8"))
    except (UnicodeDecodeError, json.JSONDecodeError) as exc:
        raise PayloadError("Invalid JSON payload") from exc
    if not isinstance(payload, dict):
        raise PayloadError("JSON payload must be an object")
    return payload


class WebhookProvider:
    name: str
    slug: str

    def secret_configured(self) -> bool:
        raise NotImplementedError

    def verify(self, *, raw_body: bytes, url: str, headers: Mapping[str, str]) -> bool:
        raise NotImplementedError

    def parse(self, raw_body: bytes) -> ParsedEvent:
        raise NotImplementedError

    def ack(self, *, outcome: str, external_event_id: str | None = None) -> Response:
        raise NotImplementedError

    def failed_ack(self, *, external_event_id: str) -> Response:
        return self.ack(outcome="failed", external_event_id=external_event_id)

    def unauthorized(self, *, reason: str) -> Response:
        raise NotImplementedError

    def bad_payload(self, *, message: str) -> Response:
        raise NotImplementedError

    def retry_later(self, *, reason: str) -> Response:
        raise NotImplementedError


class JsonWebhookProvider(WebhookProvider):
    def ack(self, *, outcome: str, external_event_id: str | None = None) -> Response:
        return JSONResponse(
            status_code=status.HTTP_200_OK,
            content={
                "received": True,
                "status": outcome,
                "provider": self.slug,
                "external_event_id": external_event_id,
            },
        )

    def unauthorized(self, *, reason: str) -> Response:
        return JSONResponse(
            status_code=status.HTTP_401_UNAUTHORIZED,
            content={
                "detail": {
                    "type": "webhook_signature_invalid",
                    "provider": self.slug,
                    "reason": reason,
                    "message": "Webhook signature verification failed",
                }
            },
        )

    def bad_payload(self, *, message: str) -> Response:
        return JSONResponse(
            status_code=status.HTTP_400_BAD_REQUEST,
            content={"detail": {"type": "webhook_payload_invalid", "provider": self.slug, "message": message}},
        )

    def retry_later(self, *, reason: str) -> Response:
        return JSONResponse(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            content={
                "detail": {
                    "type": "webhook_retry_later",
                    "provider": self.slug,
                    "reason": reason,
                    "retryable": True,
                }
            },
        )


class PaymentsProvider(JsonWebhookProvider):
    name = "payments"
    slug = "flutterwave"

    def secret_configured(self) -> bool:
        return bool(settings.flutterwave_secret_key or settings.flutterwave_secret_hash)

    def verify(self, *, raw_body: bytes, url: str, headers: Mapping[str, str]) -> bool:
        signature = headers.get("flutterwave-signature") or headers.get("x-flutterwave-signature")
        if signature and signatures.verify_payments_signature(raw_body, signature, settings.flutterwave_secret_key):
            return True
        return signatures.verify_payments_secret_hash(
            raw_body,
            headers.get("verif-hash"),
            settings.flutterwave_secret_hash,
        )

    def parse(self, raw_body: bytes) -> ParsedEvent:
        payload = _load_json_object(raw_body)
        data = payload.get("data") if isinstance(payload.get("data"), dict) else payload
        event_type = str(payload.get("event") or payload.get("event_type") or payload.get("type") or "unknown")
        event_id = payload.get("id") or payload.get("event_id")
        if event_id is None:
            # Flutterwave v3 charge events carry no envelope id; the charge id is unique per event type.
            charge_id = data.get("id") or data.get("flw_ref")
            event_id = f"{event_type}:{charge_id}" if charge_id is not None else _body_hash(raw_body)
        return ParsedEvent(event_type=event_type, external_event_id=str(event_id), payload=payload)


class VoiceProvider(JsonWebhookProvider):
    name = "voice"
    slug = "vapi"

    def secret_configured(self) -> bool:
        return bool(settings.vapi_webhook_secret)

    def verify(self, *, raw_body: bytes, url: str, headers: Mapping[str, str]) -> bool:
        return signatures.verify_voice_signature(
            raw_body,
            headers.get("x-vapi-signature"),
            settings.vapi_webhook_secret,
        )

    def parse(self, raw_body: bytes) -> ParsedEvent:
        payload = _load_json_object(raw_body)
        message = payload.get("message") if isinstance(payload.get("message"), dict) else {}
        event_type = str(message.get("type") or payload.get("type") or "unknown")
        call = message.get("call") if isinstance(message.get("call"), dict) else {}
        call_id = call.get("id")
        if event_type == "end-of-call-report" and call_id:
            external_id = f"{event_type}:{call_id}"
        elif call_id and message.get("timestamp") is not None:
            external_id = f"{event_type}:{call_id}:{message['timestamp']}"
        else:
            external_id = _body_hash(raw_body)
        return ParsedEvent(event_type=event_type, external_event_id=external_id, payload=payload)


class CarrierProvider(WebhookProvider):
    """Twilio voice/SMS webhooks. Responses are TwiML and always keep the live session intact."""

    name = "sms_voice_carrier"
    slug = "twilio"

    _ACK_TEXT = {
        "voice": "CoreComm has received your call. This number is configured, but voice bridging is not enabled yet.",
        "sms": "CoreComm received your message. SMS processing is not enabled yet.",
    }
    _NOT_ACTIONABLE_TEXT = "Your request was received but cannot be handled right now. Please try again later."

    def __init__(self, channel: str) -> None:
        if channel not in ("voice", "sms"):
            raise ValueError(f"Unsupported carrier channel: {channel}")
        self.channel = channel

    def secret_configured(self) -> bool:
        return bool(settings.twilio_auth_token)

    @staticmethod
    def form_pairs(raw_body: bytes) -> list[tuple[str, str]]:
        return parse_qsl(raw_body.decode("utf-8", errors="strict"), keep_blank_values=True)

    def verify(self, *, raw_body: bytes, url: str, headers: Mapping[str, str]) -> bool:
        if not raw_body:
            return False
        try:
            pairs = self.form_pairs(raw_body)
        except (UnicodeDecodeError, ValueError):
            return False
        return signatures.verify_carrier_signature(
            url,
            pairs,
            headers.get("x-twilio-signature"),
            settings.twilio_auth_token,
        )

    def parse(self, raw_body: bytes) -> ParsedEvent:
        try:
            payload = dict(self.form_pairs(raw_body))
        except (UnicodeDecodeError, ValueError) as exc:
            raise PayloadError("Invalid form payload") from exc
        if self.channel == "voice":
            sid = payload.get("CallSid")
            call_status = payload.get("CallStatus")
            if call_status and call_status not in ("ringing", "in-progress"):
                event_type = f"voice.status.{call_status}"
            else:
                event_type = "voice.inbound"
            external_id = f"{sid}:{call_status or 'inbound'}" if sid else _body_hash(raw_body)
        else:
            sid = payload.get("MessageSid") or payload.get("SmsSid")
            event_type = "sms.inbound"
            external_id = str(sid) if sid else _body_hash(raw_body)
        return ParsedEvent(event_type=event_type, external_event_id=external_id, payload=payload)

    def _twiml(self, text: str | None, *, status_code: int = status.HTTP_200_OK) -> Response:
        if self.channel == "voice":
            twiml = VoiceResponse()
            if text:
                twiml.say(text, voice="alice")
            twiml.hangup()
        else:
            twiml = MessagingResponse()
            if text:
                twiml.message(text)
        return Response(
            content=str(twiml),
            status_code=status_code,
            media_type="text/xml",
            headers={"Cache-Control": "no-store"},
        )

    def ack(self, *, outcome: str, external_event_id: str | None = None) -> Response:
        return self._twiml(self._ACK_TEXT[self.channel])

    def failed_ack(self, *, external_event_id: str) -> Response:
        return self._twiml(self._NOT_ACTIONABLE_TEXT)

    def unauthorized(self, *, reason: str) -> Response:
        # A hard 4xx here surfaces as a failed call/SMS to the end user.
        if self.channel == "voice":
            return self._twiml("We are unable to take this call right now. Goodbye.")
        return self._twiml(None)

    def bad_payload(self, *, message: str) -> Response:
        return self._twiml(self._NOT_ACTIONABLE_TEXT)

    def retry_later(self, *, reason: str) -> Response:
        return self._twiml(self._NOT_ACTIONABLE_TEXT, status_code=status.HTTP_503_SERVICE_UNAVAILABLE)


PAYMENTS = PaymentsProvider()
VOICE = VoiceProvider()
CARRIER_VOICE = CarrierProvider("voice")
CARRIER_SMS = CarrierProvider("sms")
