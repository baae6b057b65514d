from __future__ import annotations

import hashlib
import hmac
from typing import Optional

from starlette.datastructures import Headers

SIGNATURE_HEADERS = ["elevenlabs-signature", "x-webhook-signature"]


class SignatureVerificationError(Exception):
    pass


class WebhookConfigurationError(Exception):
    pass


def _header_value(headers: Headers, candidates: list[str]) -> Optional[str]:
    for key in candidates:
        value = headers.get(key)
        if value:
            return value.strip()
    return None


def _verify_hmac_sha256(raw_body: bytes, secret: str, incoming_signature: str) -> bool:
    provided = incoming_signature.strip()
    if provided.startswith("sha256="):
        provided = provided.split("=", 1)[1]
    expected = hmac.new(secret.encode("utf-8"), raw_body, hashlib.sha256).hexdigest()
    return hmac.compare_digest(expected, provided)


def sign_payload(raw_body: bytes, secret: str) -> str:
    digest = hmac.new(secret.encode("utf-8"), raw_body, hashlib.sha256).hexdigest()
    return f"sha256={digest}"


def verify_provider_signature(headers: Headers, raw_body: bytes, secret: str) -> None:
    """Check the provider's HMAC-SHA256 signature over the raw request body.

    Unlike other inbound hooks this one is never optional: an unconfigured
    secret is a deployment error, not an invitation to skip verification.
    """
    if not secret:
        raise WebhookConfigurationError("webhook secret is not configured")
    signature = _header_value(headers, SIGNATURE_HEADERS)
    if not signature:
        raise SignatureVerificationError("missing provider signature header")
    if not _verify_hmac_sha256(raw_body, secret, signature):
        raise SignatureVerificationError("invalid provider signature")
