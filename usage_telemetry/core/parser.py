"""
Raw event parsing.

Turns captured request/response pairs into usage records. Parsing is
pure and tolerant: only a missing identity is fatal, every other
anomaly degrades into a record with fewer derived fields.
"""

import json
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional

from .errors import MalformedEnvelopeError, MissingIdentityError, ParseWarning
from usage_telemetry.storage.models import RawEvent, UsageRecord, as_utc

# Largest value a SQLite INTEGER column can hold
MAX_COUNT = 2 ** 63 - 1


@dataclass(frozen=True)
class ParseOutcome:
    """A parsed record and the non-fatal anomalies found on the way."""
    record: UsageRecord
    warnings: List[ParseWarning] = field(default_factory=list)


def parse_event(raw: RawEvent) -> ParseOutcome:
    """Parse a raw event into a usage record.

    Args:
        raw: Event captured by the interception layer

    Returns:
        ParseOutcome with the record and any warnings

    Raises:
        MissingIdentityError: If the event has no caller identity
    """
    identity = (raw.identity or "").strip()
    if not identity:
        raise MissingIdentityError("Event has no caller identity")

    base = dict(
        event_time=as_utc(raw.event_time),
        identity_key=identity,
        raw_request=raw.request_body or "",
        raw_response=raw.response_body,
        request_id=raw.request_id,
        status_code=raw.status_code,
    )

    # Failed calls still count toward call volume, never toward tokens
    if raw.response_body is None or not _is_success(raw.status_code):
        record = UsageRecord(model=_request_model(raw.request_body), **base)
        return ParseOutcome(record=record, warnings=[ParseWarning.FAILED_CALL])

    body = _decode_object(raw.response_body)
    if body is None:
        return ParseOutcome(
            record=UsageRecord(**base),
            warnings=[ParseWarning.UNSTRUCTURED_RESPONSE],
        )

    warnings = []
    model = _as_text(body.get("model")) or _request_model(raw.request_body)

    usage = body.get("usage")
    if not isinstance(usage, dict):
        warnings.append(ParseWarning.MISSING_USAGE)
        usage = {}

    record = UsageRecord(
        operation=_as_text(body.get("object")),
        model=model,
        prompt_tokens=_as_count(usage.get("prompt_tokens")),
        completion_tokens=_as_count(usage.get("completion_tokens")),
        total_tokens=_as_count(usage.get("total_tokens")),
        **base
    )
    if not record.tokens_consistent:
        warnings.append(ParseWarning.TOKEN_MISMATCH)

    return ParseOutcome(record=record, warnings=warnings)


def decode_envelope(payload: str, identity_field: str = "identity") -> RawEvent:
    """Decode a transport payload into a raw event.

    Args:
        payload: JSON object text as written by the capturing layer
        identity_field: Envelope key holding the caller identity

    Returns:
        Decoded RawEvent

    Raises:
        MalformedEnvelopeError: If the payload is not a valid envelope
    """
    envelope = _decode_object(payload)
    if envelope is None:
        raise MalformedEnvelopeError("Payload is not a JSON object")

    event_time = envelope.get("event_time")
    if not isinstance(event_time, str):
        raise MalformedEnvelopeError("Envelope missing 'event_time'")
    try:
        parsed_time = datetime.fromisoformat(event_time.replace("Z", "+00:00"))
    except ValueError:
        raise MalformedEnvelopeError(f"Invalid event_time: {event_time!r}")

    status_code = envelope.get("status_code")
    if status_code is not None:
        status_code = _as_count(status_code)
        if status_code is None:
            raise MalformedEnvelopeError(
                f"Invalid status_code: {envelope.get('status_code')!r}"
            )

    identity = envelope.get(identity_field)
    response_body = envelope.get("response_body")

    return RawEvent(
        event_time=parsed_time,
        identity=None if identity is None else str(identity),
        request_body=_as_body(envelope.get("request_body")) or "",
        response_body=None if response_body is None else _as_body(response_body),
        status_code=status_code,
        request_id=_as_text(envelope.get("request_id")),
        operation_name=_as_text(envelope.get("operation_name")),
    )


def encode_envelope(raw: RawEvent, identity_field: str = "identity") -> str:
    """Encode a raw event as a single-line JSON envelope."""
    return json.dumps({
        "event_time": as_utc(raw.event_time).isoformat(),
        identity_field: raw.identity,
        "request_body": raw.request_body,
        "response_body": raw.response_body,
        "status_code": raw.status_code,
        "request_id": raw.request_id,
        "operation_name": raw.operation_name,
    })


def _is_success(status_code: Optional[int]) -> bool:
    return status_code is None or 200 <= status_code < 300


def _decode_object(text: Optional[str]) -> Optional[Dict[str, Any]]:
    """Decode text as a JSON object, returning None for anything else."""
    if not text:
        return None
    try:
        value = json.loads(text)
    except (ValueError, RecursionError):
        return None
    return value if isinstance(value, dict) else None


def _request_model(request_body: Optional[str]) -> Optional[str]:
    body = _decode_object(request_body)
    if body is None:
        return None
    return _as_text(body.get("model"))


def _as_text(value: Any) -> Optional[str]:
    if isinstance(value, str) and value.strip():
        return value
    return None


def _as_body(value: Any) -> Optional[str]:
    # Some gateways log bodies as embedded JSON rather than text
    if isinstance(value, (dict, list)):
        return json.dumps(value)
    if isinstance(value, str):
        return value
    return None


def _as_count(value: Any) -> Optional[int]:
    """Coerce a counter to a non-negative int, or None if it can't be.

    Values beyond the SQLite INTEGER range are treated as unset.
    """
    if isinstance(value, bool):
        return None
    if isinstance(value, float):
        if not value.is_integer():
            return None
        value = int(value)
    elif isinstance(value, str):
        value = value.strip()
        if not value.isdecimal():
            return None
        try:
            value = int(value)
        except ValueError:
            return None
    if isinstance(value, int) and 0 <= value <= MAX_COUNT:
        return value
    return None
