from __future__ import annotations

import base64
import logging
from dataclasses import dataclass

from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.asymmetric import ec
from cryptography.hazmat.primitives.serialization import load_der_public_key, load_pem_public_key

from src.config import SignatureMode
from src.observability import incr_metric, log_event


SIGNATURE_HEADER = "X-Twilio-Email-Event-Webhook-Signature"
TIMESTAMP_HEADER = "X-Twilio-Email-Event-Webhook-Timestamp"


@dataclass(frozen=True)
class SignatureCheck:
    mode: SignatureMode
    accepted: bool
    verified: bool
    reason: str


def load_verification_key(public_key: str) -> ec.EllipticCurvePublicKey:
    """Load the provider's P-256 key from base64 DER (SPKI) or a PEM block."""
    text = public_key.strip()
    if text.startswith("-----BEGIN"):
        key = load_pem_public_key(text.encode("ascii"))
    else:
        key = load_der_public_key(base64.b64decode(text, validate=True))
    if not isinstance(key, ec.EllipticCurvePublicKey) or not isinstance(key.curve, ec.SECP256R1):
        raise ValueError("verification key is not a P-256 public key")
    return key


def verify_event_webhook_signature(
    payload: bytes | str,
    signature: str | None,
    timestamp: str | None,
    public_key: str,
) -> bool:
    """ECDSA P-256/SHA-256 over ``timestamp + payload``. Never raises."""
    if not signature or not timestamp:
        return False
    body = payload.encode("utf-8") if isinstance(payload, str) else payload
    try:
        key = load_verification_key(public_key)
        key.verify(
            base64.b64decode(signature, validate=True),
            timestamp.encode("utf-8") + body,
            ec.ECDSA(hashes.SHA256()),
        )
    except Exception as exc:
        log_event(
            "webhook_signature_verification_error",
            level=logging.DEBUG,
            provider_slug="sendgrid",
            error_type=type(exc).__name__,
        )
        return False
    return True


def check_event_webhook_signature(
    *,
    raw_body: bytes,
    signature: str | None,
    timestamp: str | None,
    public_key: str | None,
    mode: SignatureMode,
    request_id: str | None = None,
) -> SignatureCheck:
    if mode is SignatureMode.WARN_AND_ALLOW:
        incr_metric("webhook.signature.unverified", provider_slug="sendgrid", mode=mode.value)
        log_event(
            "webhook_signature_unverified",
            level=logging.WARNING,
            request_id=request_id,
            provider_slug="sendgrid",
            mode=mode.value,
            message="SENDGRID_WEBHOOK_VERIFICATION_KEY is not configured; accepting unsigned batch",
        )
        return SignatureCheck(mode=mode, accepted=True, verified=False, reason="key_not_configured")

    if not public_key:
        reason = "key_not_configured"
    elif not signature or not timestamp:
        reason = "missing_signature" if not signature else "missing_timestamp"
    elif verify_event_webhook_signature(raw_body, signature, timestamp, public_key):
        incr_metric("webhook.signature.verified", provider_slug="sendgrid")
        return SignatureCheck(mode=mode, accepted=True, verified=True, reason="verified")
    else:
        reason = "invalid_signature"

    incr_metric("webhook.signature.rejected", provider_slug="sendgrid", reason=reason)
    log_event(
        "webhook_signature_rejected",
        level=logging.WARNING,
        request_id=request_id,
        provider_slug="sendgrid",
        reason=reason,
    )
    return SignatureCheck(mode=mode, accepted=False, verified=False, reason=reason)
