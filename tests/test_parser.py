"""
Unit tests for raw event parsing.

Tests graceful degradation of malformed payloads and envelope decoding.
"""

import json
from datetime import datetime, timezone

import pytest

from usage_telemetry.core.errors import (
    MalformedEnvelopeError,
    MissingIdentityError,
    ParseWarning,
)
from usage_telemetry.core.parser import decode_envelope, encode_envelope, parse_event
from usage_telemetry.storage.models import RawEvent

EVENT_TIME = datetime(2024, 1, 1, 12, 0, 0, tzinfo=timezone.utc)


def _chat_response(prompt=100, completion=50, total=150, **extra) -> str:
    body = {
        "id": "chatcmpl-123",
        "object": "chat.completion",
        "model": "gpt-4",
        "usage": {
            "prompt_tokens": prompt,
            "completion_tokens": completion,
            "total_tokens": total,
        },
    }
    body.update(extra)
    return json.dumps(body)


def _event(identity="sub-1", response=None, status_code=200, request_body="{}") -> RawEvent:
    return RawEvent(
        event_time=EVENT_TIME,
        identity=identity,
        request_body=request_body,
        response_body=response,
        status_code=status_code,
    )


class TestWellFormedResponses:
    """Test extraction from responses of the expected shape."""

    def test_extracts_usage_fields(self):
        """Test that consistent counters are extracted without warnings."""
        outcome = parse_event(_event(response=_chat_response()))

        record = outcome.record
        assert record.identity_key == "sub-1"
        assert record.operation == "chat.completion"
        assert record.model == "gpt-4"
        assert record.prompt_tokens == 100
        assert record.completion_tokens == 50
        assert record.total_tokens == 150
        assert record.tokens_consistent
        assert outcome.warnings == []

    def test_raw_payloads_kept_verbatim(self):
        """Test that request and response text are stored unchanged."""
        response = _chat_response()
        outcome = parse_event(_event(response=response, request_body='{"a": 1}'))

        assert outcome.record.raw_request == '{"a": 1}'
        assert outcome.record.raw_response == response

    def test_event_time_normalized_to_utc(self):
        """Test that naive event times are treated as UTC."""
        raw = RawEvent(
            event_time=datetime(2024, 1, 1, 12, 0, 0),
            identity="sub-1",
            request_body="",
            response_body=_chat_response(),
        )
        outcome = parse_event(raw)
        assert outcome.record.event_time == EVENT_TIME

    def test_identity_is_stripped(self):
        """Test that surrounding whitespace is not part of the identity."""
        outcome = parse_event(_event(identity="  sub-1 ", response=_chat_response()))
        assert outcome.record.identity_key == "sub-1"

    def test_embedding_response_without_completion_tokens(self):
        """Test that embeddings usage leaves completion tokens unset."""
        response = json.dumps({
            "object": "list",
            "model": "text-embedding-ada-002",
            "usage": {"prompt_tokens": 8, "total_tokens": 8},
        })
        outcome = parse_event(_event(response=response))

        assert outcome.record.prompt_tokens == 8
        assert outcome.record.completion_tokens is None
        assert outcome.record.total_tokens == 8
        assert outcome.record.tokens_consistent
        assert outcome.warnings == []


class TestMissingIdentity:
    """Test the only fatal parse failure."""

    @pytest.mark.parametrize("identity", ["", "   ", None])
    def test_missing_identity_raises(self, identity):
        """Test that events without identity produce no record."""
        with pytest.raises(MissingIdentityError):
            parse_event(_event(identity=identity, response=_chat_response()))


class TestGracefulDegradation:
    """Test that anomalies degrade into partial records."""

    def test_failed_call_has_no_token_fields(self):
        """Test that a non-success status yields an unset-usage record."""
        outcome = parse_event(_event(response='{"error": {"code": "429"}}', status_code=429))

        record = outcome.record
        assert record.prompt_tokens is None
        assert record.completion_tokens is None
        assert record.total_tokens is None
        assert record.status_code == 429
        assert outcome.warnings == [ParseWarning.FAILED_CALL]

    def test_absent_response_is_failed_call(self):
        """Test that a missing response body is treated as a failed call."""
        outcome = parse_event(_event(response=None, status_code=None))

        assert outcome.record.raw_response is None
        assert outcome.record.total_tokens is None
        assert outcome.warnings == [ParseWarning.FAILED_CALL]

    def test_failed_call_takes_model_from_request(self):
        """Test that the requested model is kept for failed calls."""
        outcome = parse_event(_event(
            response=None,
            status_code=500,
            request_body=json.dumps({"model": "gpt-4o", "messages": []}),
        ))
        assert outcome.record.model == "gpt-4o"

    def test_truncated_response_is_unstructured(self):
        """Test that an unparseable body keeps the raw text and no derived fields."""
        truncated = _chat_response()[:40]
        outcome = parse_event(_event(response=truncated))

        record = outcome.record
        assert record.raw_response == truncated
        assert record.operation is None
        assert record.model is None
        assert record.total_tokens is None
        assert outcome.warnings == [ParseWarning.UNSTRUCTURED_RESPONSE]

    def test_streamed_response_is_unstructured(self):
        """Test that server-sent event streams are not decoded."""
        stream = 'data: {"object": "chat.completion.chunk"}\n\ndata: [DONE]\n\n'
        outcome = parse_event(_event(response=stream))
        assert outcome.warnings == [ParseWarning.UNSTRUCTURED_RESPONSE]

    def test_json_array_is_unstructured(self):
        """Test that JSON that is not an object counts as unstructured."""
        outcome = parse_event(_event(response="[1, 2, 3]"))
        assert outcome.warnings == [ParseWarning.UNSTRUCTURED_RESPONSE]

    def test_missing_usage_block(self):
        """Test that a response without usage keeps operation and model."""
        response = json.dumps({"object": "chat.completion", "model": "gpt-4"})
        outcome = parse_event(_event(response=response))

        assert outcome.record.operation == "chat.completion"
        assert outcome.record.model == "gpt-4"
        assert outcome.record.total_tokens is None
        assert outcome.warnings == [ParseWarning.MISSING_USAGE]

    def test_uncoercible_counters_left_unset(self):
        """Test that bad counter values are dropped individually."""
        response = _chat_response(prompt="many", completion=-3, total=True)
        outcome = parse_event(_event(response=response))

        assert outcome.record.prompt_tokens is None
        assert outcome.record.completion_tokens is None
        assert outcome.record.total_tokens is None
        assert outcome.record.model == "gpt-4"

    def test_non_ascii_digit_counters_left_unset(self):
        """Test that superscript digits are dropped instead of raising."""
        response = _chat_response(prompt="\u00b2", completion="5\u00b2", total=7)
        outcome = parse_event(_event(response=response))

        assert outcome.record.prompt_tokens is None
        assert outcome.record.completion_tokens is None
        assert outcome.record.total_tokens == 7

    def test_out_of_range_counters_left_unset(self):
        """Test that counters too large to store are dropped."""
        response = _chat_response(prompt=10 ** 20, completion=2 ** 63 - 1, total=float(10 ** 20))
        outcome = parse_event(_event(response=response))

        assert outcome.record.prompt_tokens is None
        assert outcome.record.completion_tokens == 2 ** 63 - 1
        assert outcome.record.total_tokens is None

    def test_deeply_nested_response_is_unstructured(self):
        """Test that nesting beyond the decoder's depth degrades gracefully."""
        outcome = parse_event(_event(response="[" * 100000))

        assert outcome.record.model is None
        assert outcome.warnings == [ParseWarning.UNSTRUCTURED_RESPONSE]

    def test_coercible_counters(self):
        """Test that integral floats and digit strings are accepted."""
        response = _chat_response(prompt=10.0, completion="5", total=15)
        outcome = parse_event(_event(response=response))

        assert outcome.record.prompt_tokens == 10
        assert outcome.record.completion_tokens == 5
        assert outcome.record.total_tokens == 15

    def test_token_mismatch_is_flagged_not_rejected(self):
        """Test that inconsistent totals are kept and flagged."""
        outcome = parse_event(_event(response=_chat_response(10, 5, 20)))

        assert outcome.record.total_tokens == 20
        assert not outcome.record.tokens_consistent
        assert outcome.warnings == [ParseWarning.TOKEN_MISMATCH]


class TestEnvelope:
    """Test transport envelope decoding."""

    def test_decode_envelope(self):
        """Test decoding a complete envelope."""
        payload = json.dumps({
            "event_time": "2024-01-01T12:00:00Z",
            "identity": "sub-1",
            "request_body": "{}",
            "response_body": _chat_response(),
            "status_code": 200,
            "request_id": "req-1",
            "operation_name": "ChatCompletions_Create",
        })
        raw = decode_envelope(payload)

        assert raw.event_time == EVENT_TIME
        assert raw.identity == "sub-1"
        assert raw.status_code == 200
        assert raw.request_id == "req-1"
        assert raw.operation_name == "ChatCompletions_Create"

    def test_embedded_json_bodies_are_serialized(self):
        """Test that object-valued bodies become JSON text."""
        payload = json.dumps({
            "event_time": "2024-01-01T12:00:00+00:00",
            "identity": "sub-1",
            "request_body": {"model": "gpt-4"},
            "response_body": {"object": "chat.completion"},
        })
        raw = decode_envelope(payload)

        assert json.loads(raw.request_body) == {"model": "gpt-4"}
        assert json.loads(raw.response_body) == {"object": "chat.completion"}
        assert raw.status_code is None

    def test_custom_identity_field(self):
        """Test reading the identity from a configured key."""
        payload = json.dumps({
            "event_time": "2024-01-01T12:00:00+00:00",
            "subscription_key": "key-9",
        })
        raw = decode_envelope(payload, identity_field="subscription_key")
        assert raw.identity == "key-9"
        assert raw.response_body is None

    @pytest.mark.parametrize("payload", [
        "not json",
        "[]",
        json.dumps({"identity": "sub-1"}),
        json.dumps({"event_time": "yesterday", "identity": "sub-1"}),
        json.dumps({"event_time": "2024-01-01T12:00:00", "status_code": "ok"}),
        json.dumps({"event_time": "2024-01-01T12:00:00", "status_code": "\u00b2"}),
        json.dumps({"event_time": "2024-01-01T12:00:00", "status_code": 10 ** 20}),
        "{\"a\": " * 100000,
    ])
    def test_malformed_envelopes(self, payload):
        """Test that undecodable envelopes raise MalformedEnvelopeError."""
        with pytest.raises(MalformedEnvelopeError):
            decode_envelope(payload)

    def test_encoded_envelope_decodes(self):
        """Test that the capture encoding is readable by the pipeline decoder."""
        raw = _event(response=_chat_response())
        decoded = decode_envelope(encode_envelope(raw))
        assert decoded == raw
