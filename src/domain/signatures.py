"""Provider webhook signature checks.

Every function works on the raw request bytes (or the raw form pairs for the
carrier) and returns a bool; none of them raise. Callers turn ``False`` into
the provider-specific rejection response.
"""

from __future__ import annotations

import base64
import binascii
import hashlib
import hmac
from typing import Iterable

from twilio.request_validator import RequestValidator


def _hmac_sha256(secret: str, raw_body: bytes) -> bytes:
    return hmac.new(secret.encode("utf-8"), raw_body, hashlib.sha256).digest()


def _decode_digest(value: str) -> bytes | None:
    text = value.strip()
    if not text:
        return None
    try:
        return bytes.fromhex(text)
    except ValueError:
        pass
    try:
        return base64.b64decode(text, validate=True)
    except (binascii.Error, ValueError):
        return None


def normalize_voice_signature(signature_header: str) -> str:
    """Accept ``<hex>`` or ``sha256=<hex>`` and return the hex part."""
    trimmed = signature_header.strip()
    prefix, sep, rest = trimmed.partition("=")
    if sep and prefix.strip().lower() == "sha256":
        return rest.strip()
    return trimmed


def verify_voice_signature(raw_body: bytes, signature_header: str | None, secret: str | None) -> bool:
    if not raw_body or not signature_header or not secret:
        return False
    try:
        provided = bytes.fromhex(normalize_voice_signature(signature_header))
        expected = _hmac_sha256(secret, raw_body)
    except (ValueError, UnicodeError):
        return False
    if len(provided) != len(expected):
        return False
    return hmac.compare_digest(provided, expected)


def verify_payments_signature(raw_body: bytes, signature_header: str | None, secret: str | None) -> bool:
    """HMAC-SHA256 of the body keyed by the Flutterwave secret, hex or base64 encoded."""
    if not raw_body or not signature_header or not secret:
        return False
    try:
        provided = _decode_digest(signature_header)
        expected = _hmac_sha256(secret, raw_body)
    except (ValueError, UnicodeError):
        return False
    if provided is None or len(provided) != len(expected):
        return False
    return hmac.compare_digest(provided, expected)


def verify_payments_secret_hash(raw_body: bytes, verif_hash_header: str | None, secret_hash: str | None) -> bool:
    """Legacy ``verif-hash`` scheme: the header carries the dashboard secret hash verbatim."""
    if not raw_body or not verif_hash_header or not secret_hash:
        return False
    return hmac.compare_digest(verif_hash_header.strip().encode("utf-8"), secret_hash.encode("utf-8"))


def verify_carrier_signature(
    url: str,
    params: Iterable[tuple[str, str]],
    signature_header: str | None,
    auth_token: str | None,
) -> bool:
    """Twilio's scheme; the validator also tries the URL with and without its default port."""
    if not url or not signature_header or not auth_token:
        return False
    form = dict(params)
    if not form:
        return False
    try:
        return RequestValidator(auth_token).validate(url, form, signature_header.strip())
    except ValueError:
        return False
