"""
Payload Signing

HMAC-SHA256 signatures for outbound webhook bodies and verification of
signed inbound callbacks.

The signed string is ``"{timestamp}.{sha256(body)}"``. How strictly inbound
signatures are checked depends on the configured policy:

    off      never reject
    warn     never reject, log missing or invalid signatures
    enforce  reject missing or invalid signatures
"""

import hashlib
import hmac
import logging
from collections.abc import Mapping
from dataclasses import dataclass

from cms_kernel.config import settings
from cms_kernel.utils.clock import iso_now

logger = logging.getLogger(__name__)

SIGNATURE_HEADER = "x-cms-signature"
TIMESTAMP_HEADER = "x-cms-timestamp"
EVENT_ID_HEADER = "x-cms-event-id"
EVENT_NAME_HEADER = "x-cms-event-name"
SITE_ID_HEADER = "x-cms-site-id"
PAYLOAD_HASH_HEADER = "x-cms-payload-sha256"

UNSIGNED = "unsigned"

POLICY_OFF = "off"
POLICY_WARN = "warn"
POLICY_ENFORCE = "enforce"
SIGNATURE_POLICIES = (POLICY_OFF, POLICY_WARN, POLICY_ENFORCE)


@dataclass
class OutboundSignature:
    signature: str
    payload_hash: str
    timestamp: str


@dataclass
class VerificationResult:
    ok: bool
    reason: str
    payload_hash: str


def get_signature_policy(raw: str | None = None) -> str:
    value = str(raw if raw is not None else settings.signature_policy).strip().lower()
    return value if value in SIGNATURE_POLICIES else POLICY_OFF


def sha256_hex(value: str | bytes) -> str:
    data = value.encode("utf-8") if isinstance(value, str) else value
    return hashlib.sha256(data).hexdigest()


def hmac_sha256_hex(secret: str, value: str) -> str:
    return hmac.new(secret.encode("utf-8"), value.encode("utf-8"), hashlib.sha256).hexdigest()


def sign_canonical_payload(
    canonical_payload_json: str, secret: str | None = None, timestamp: str | None = None
) -> OutboundSignature:
    """Sign a serialized payload. Without a secret the signature is ``"unsigned"``."""
    timestamp = timestamp or iso_now()
    payload_hash = sha256_hex(canonical_payload_json)
    secret = str(secret or "").strip()
    if not secret:
        return OutboundSignature(signature=UNSIGNED, payload_hash=payload_hash, timestamp=timestamp)
    return OutboundSignature(
        signature=hmac_sha256_hex(secret, f"{timestamp}.{payload_hash}"),
        payload_hash=payload_hash,
        timestamp=timestamp,
    )


def _header(headers: Mapping[str, str], name: str) -> str:
    value = headers.get(name)
    if value is None:
        # Plain dicts are case sensitive, starlette Headers are not.
        value = next((v for k, v in headers.items() if k.lower() == name), "")
    return str(value or "").strip()


def verify_inbound_signature(
    context: str,
    headers: Mapping[str, str],
    raw_body: str | bytes,
    secret: str | None,
    policy: str | None = None,
) -> VerificationResult:
    """
    Check ``x-cms-signature`` / ``x-cms-timestamp`` against ``raw_body``.

    Args:
        context: Caller label used in log lines (``webcallback``, ...)
        headers: Request headers
        raw_body: Body exactly as received
        secret: Shared secret; blank counts as missing
        policy: Override of the configured signature policy

    Returns:
        VerificationResult; ``ok`` is False only under ``enforce``.
    """
    policy = get_signature_policy(policy)
    provided_signature = _header(headers, SIGNATURE_HEADER)
    provided_timestamp = _header(headers, TIMESTAMP_HEADER)
    secret = str(secret or "").strip()
    payload_hash = sha256_hex(raw_body or "")

    if not provided_signature or not provided_timestamp or not secret:
        reason = "secret_missing" if not secret else "signature_or_timestamp_missing"
        if policy == POLICY_ENFORCE:
            return VerificationResult(ok=False, reason=reason, payload_hash=payload_hash)
        if policy == POLICY_WARN:
            logger.warning("Unverified %s request: %s", context, reason)
        return VerificationResult(ok=True, reason=reason, payload_hash=payload_hash)

    expected = hmac_sha256_hex(secret, f"{provided_timestamp}.{payload_hash}")
    if hmac.compare_digest(expected.encode("utf-8"), provided_signature.encode("utf-8")):
        return VerificationResult(ok=True, reason="verified", payload_hash=payload_hash)
    if policy == POLICY_ENFORCE:
        return VerificationResult(ok=False, reason="signature_invalid", payload_hash=payload_hash)
    if policy == POLICY_WARN:
        logger.warning("Invalid %s signature accepted under %s policy", context, policy)
    return VerificationResult(ok=True, reason="signature_invalid", payload_hash=payload_hash)
