"""Event envelope and canonical codec.

The canonical form is UTF-8 JSON with keys sorted at every level, no
insignificant whitespace, integral numbers written as integers and other
floats in their shortest round-trip form. Identical logical events produce
identical bytes, and the signer operates on exactly these bytes.

Decoding ignores unknown top-level fields so producers can add fields
without breaking older workers; fields are never renamed.
"""

import hashlib
import json
import math
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Optional

from ulid import ULID

from eventrelay.errors import DecodeError

REQUIRED_FIELDS = ("id", "created_at", "type", "payload")

# Largest integer a double represents exactly
_MAX_EXACT_INT = 2**53


@dataclass(frozen=True)
class Event:
    id: str
    created_at: datetime
    type: str
    tenant: Optional[str] = None
    payload: dict = field(default_factory=dict)


def new_event_id() -> str:
    """Time-ordered, globally unique id (26-char ULID)."""
    return str(ULID())


def new_event(
    event_type: str,
    tenant: Optional[str],
    payload: Optional[dict] = None,
    now: Optional[datetime] = None,
) -> Event:
    created_at = (now or datetime.now(timezone.utc)).astimezone(timezone.utc)
    return Event(
        id=new_event_id(),
        created_at=created_at,
        type=event_type,
        tenant=tenant,
        payload=_normalize(payload or {}),
    )


def _normalize(value: Any) -> Any:
    if value is None or isinstance(value, (bool, str)):
        return value
    if isinstance(value, int):
        return value
    if isinstance(value, float):
        if not math.isfinite(value):
            raise ValueError("NaN and infinite numbers are not JSON-representable")
        if value.is_integer() and abs(value) <= _MAX_EXACT_INT:
            return int(value)
        return value
    if isinstance(value, dict):
        out = {}
        for key, item in value.items():
            if not isinstance(key, str):
                raise TypeError(f"Map keys must be strings, got {type(key).__name__}")
            out[key] = _normalize(item)
        return out
    if isinstance(value, (list, tuple)):
        return [_normalize(item) for item in value]
    raise TypeError(f"Value of type {type(value).__name__} is not JSON-representable")


def _format_instant(instant: datetime) -> str:
    instant = instant.astimezone(timezone.utc)
    return instant.strftime("%Y-%m-%dT%H:%M:%S.%fZ")


def _parse_instant(raw: Any) -> datetime:
    if not isinstance(raw, str):
        raise DecodeError("created_at must be a string")
    try:
        parsed = datetime.fromisoformat(raw.replace("Z", "+00:00"))
    except ValueError as exc:
        raise DecodeError(f"created_at is not an ISO-8601 instant: {raw!r}") from exc
    if parsed.tzinfo is None:
        raise DecodeError("created_at must carry a UTC offset")
    return parsed.astimezone(timezone.utc)


def canonical_json(value: Any) -> bytes:
    return json.dumps(
        _normalize(value),
        sort_keys=True,
        separators=(",", ":"),
        ensure_ascii=False,
        allow_nan=False,
    ).encode("utf-8")


def to_dict(event: Event) -> dict:
    return {
        "id": event.id,
        "created_at": _format_instant(event.created_at),
        "type": event.type,
        "tenant": event.tenant,
        "payload": event.payload,
    }


def encode(event: Event) -> bytes:
    return canonical_json(to_dict(event))


def decode(data: bytes) -> Event:
    """Parse event bytes. The type registry is enforced by the producer at emit, not here."""
    try:
        doc = json.loads(data.decode("utf-8"))
    except (UnicodeDecodeError, json.JSONDecodeError) as exc:
        raise DecodeError(f"Event is not UTF-8 JSON: {exc}") from exc
    if not isinstance(doc, dict):
        raise DecodeError("Event must be a JSON object")

    missing = [name for name in REQUIRED_FIELDS if name not in doc]
    if missing:
        raise DecodeError(f"Event is missing required fields: {', '.join(missing)}")

    event_id, event_type, tenant, payload = doc["id"], doc["type"], doc.get("tenant"), doc["payload"]
    if not isinstance(event_id, str) or not event_id:
        raise DecodeError("id must be a non-empty string")
    if not isinstance(event_type, str) or not event_type:
        raise DecodeError("type must be a non-empty string")
    if tenant is not None and not isinstance(tenant, str):
        raise DecodeError("tenant must be a string or null")
    if not isinstance(payload, dict):
        raise DecodeError("payload must be a JSON object")

    try:
        payload = _normalize(payload)
    except (TypeError, ValueError) as exc:
        raise DecodeError(str(exc)) from exc

    return Event(
        id=event_id,
        created_at=_parse_instant(doc["created_at"]),
        type=event_type,
        tenant=tenant,
        payload=payload,
    )


def digest(event: Event) -> str:
    """Deterministic SHA-256 hex digest of the canonical bytes."""
    return hashlib.sha256(encode(event)).hexdigest()
