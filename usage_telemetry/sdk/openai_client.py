"""
Capturing OpenAI client wrapper.

Records each chat completion call as a raw event without modifying
behavior, playing the role of the interception layer in-process.
"""

import json
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional

from openai import APIStatusError, OpenAI

from ..core.parser import encode_envelope
from ..storage.models import RawEvent

EventSink = Callable[[RawEvent], None]


class JsonLinesSink:
    """Appends captured events as envelopes to a JSON-lines file."""

    def __init__(self, path: str, identity_field: str = "identity"):
        self.path = Path(path)
        self.identity_field = identity_field

    def __call__(self, raw: RawEvent) -> None:
        with open(self.path, 'a', encoding='utf-8') as f:
            f.write(encode_envelope(raw, self.identity_field) + "\n")


class CapturingOpenAI:
    """OpenAI client wrapper that captures request/response pairs.

    Successful and failed calls are both handed to the sink; failures
    are then re-raised unchanged.
    """

    def __init__(self, identity: str, sink: EventSink, client: Optional[OpenAI] = None):
        """Initialize capturing OpenAI client.

        Args:
            identity: Caller identity to attribute usage to (required)
            sink: Callable receiving each captured RawEvent
            client: Preconfigured OpenAI client (defaults to OpenAI())

        Raises:
            ValueError: If identity is missing/empty
        """
        if not identity or not identity.strip():
            raise ValueError("identity is required and cannot be empty")

        self.identity = identity
        self.sink = sink
        self.client = client or OpenAI()

    def chat(
        self,
        model: str,
        messages: List[Dict[str, str]],
        **kwargs: Any
    ) -> Any:
        """Create chat completion and capture it.

        Args:
            model: Model name (required)
            messages: List of message dictionaries (required)
            **kwargs: Additional OpenAI parameters

        Returns:
            OpenAI chat completion response

        Raises:
            ValueError: If messages is empty
            OpenAI API errors: Propagated without modification
        """
        if not messages:
            raise ValueError("messages is required and cannot be empty")

        request_body = json.dumps({"model": model, "messages": messages, **kwargs}, default=str)
        event_time = datetime.now(timezone.utc)

        try:
            response = self.client.chat.completions.create(
                model=model,
                messages=messages,
                **kwargs
            )
        except APIStatusError as e:
            self.sink(RawEvent(
                event_time=event_time,
                identity=self.identity,
                request_body=request_body,
                response_body=e.response.text if e.response is not None else None,
                status_code=e.status_code,
                request_id=getattr(e, "request_id", None),
            ))
            raise

        self.sink(RawEvent(
            event_time=event_time,
            identity=self.identity,
            request_body=request_body,
            response_body=response.model_dump_json(),
            status_code=200,
            request_id=getattr(response, "id", None),
        ))
        return response
