"""
Inbound payment notification verification.

The processor signs every notification with an ``x-signature`` header of the
form ``ts=<timestamp>,v1=<hex hmac>``. The HMAC-SHA256 is computed with the
shared webhook secret over the manifest

    id:<data id>;request-id:<x-request-id>;ts:<ts>;

Nothing in here touches the network or the database, so a notification can be
verified (and rejected) before any other work is done.
"""
import hashlib
import hmac
import time
from dataclasses import dataclass
from typing import Any, Mapping, Optional

TOPIC_PAYMENT = "payment"
TOPIC_MERCHANT_ORDER = "merchant_order"
TOPIC_PREAPPROVAL = "preapproval"


class SignatureError(Exception):
    """Notification failed verification. ``reason`` is a short machine tag."""

    def __init__(self, reason: str, message: str = ""):
        super().__init__(message or reason)
        self.reason = reason


@dataclass(frozen=True)
class Notification:
    topic: Optional[str]
    resource_id: str
    request_id: Optional[str]
    timestamp: int

    @property
    def idempotency_key(self) -> str:
        if self.request_id:
            return self.request_id
        return f"{self.topic}:{self.resource_id}"


def _first(*values: Any) -> Optional[str]:
    for v in values:
        if v is None:
            continue
        s = str(v).strip()
        if s:
            return s
    return None


def extract_resource(query: Mapping[str, Any], body: Any) -> tuple[Optional[str], Optional[str]]:
    """
    Pull (topic, resource id) out of a notification.

    The processor is inconsistent about where it puts these: the id may be
    ``?data.id=``, ``?id=`` or ``{"data": {"id": ...}}``; the topic may be
    ``?type=``, ``?topic=``, or ``{"type"|"topic": ...}`` in the body.
    """
    body = body if isinstance(body, dict) else {}
    data = body.get("data") if isinstance(body.get("data"), dict) else {}

    resource_id = _first(query.get("data.id"), query.get("id"), data.get("id"))
    topic = _first(query.get("type"), query.get("topic"), body.get("type"), body.get("topic"))
    return topic, resource_id


def parse_signature(header: str) -> tuple[str, str]:
    ts = None
    digest = None
    for part in header.split(","):
        key, sep, value = part.partition("=")
        if not sep:
            continue
        key = key.strip()
        value = value.strip()
        if key == "ts" and value:
            ts = value
        elif key == "v1" and value:
            digest = value

    if not ts or not digest:
        raise SignatureError("invalid_signature_format", "signature is missing ts or v1")
    return ts, digest


def build_manifest(resource_id: str, request_id: Optional[str], ts: str) -> str:
    # alphanumeric ids are signed lower-cased
    rid = resource_id.lower() if resource_id.isalnum() else resource_id
    return f"id:{rid};request-id:{request_id or ''};ts:{ts};"


def compute_signature(secret: str, resource_id: str, request_id: Optional[str], ts: str) -> str:
    manifest = build_manifest(resource_id, request_id, ts)
    return hmac.new(secret.encode("utf-8"), manifest.encode("utf-8"), hashlib.sha256).hexdigest()


def _to_seconds(ts: int) -> int:
    # some senders use milliseconds
    return ts // 1000 if ts > 10_000_000_000 else ts


def verify(
    headers: Mapping[str, Any],
    query: Mapping[str, Any],
    body: Any,
    *,
    secret: str,
    tolerance: int = 300,
    now: Optional[float] = None,
) -> Notification:
    """
    Verify a notification and return its descriptor.

    Raises SignatureError with one of: missing_signature,
    invalid_signature_format, missing_resource_id, invalid_signature,
    stale_timestamp.
    """
    signature = headers.get("x-signature")
    if not signature:
        raise SignatureError("missing_signature", "no x-signature header")

    ts, digest = parse_signature(signature)
    try:
        ts_value = int(ts)
    except ValueError:
        raise SignatureError("invalid_signature_format", "signature ts is not an integer")

    topic, resource_id = extract_resource(query, body)
    if not resource_id:
        raise SignatureError("missing_resource_id", "notification carries no resource id")

    request_id = _first(headers.get("x-request-id"))

    if not secret:
        raise SignatureError("invalid_signature", "webhook secret is not configured")

    expected = compute_signature(secret, resource_id, request_id, ts)
    if not hmac.compare_digest(expected, digest.lower()):
        raise SignatureError("invalid_signature", "invalid signature")

    if tolerance > 0:
        current = time.time() if now is None else now
        if abs(current - _to_seconds(ts_value)) > tolerance:
            raise SignatureError("stale_timestamp", "signature timestamp outside tolerance")

    return Notification(
        topic=topic,
        resource_id=resource_id,
        request_id=request_id,
        timestamp=ts_value,
    )
