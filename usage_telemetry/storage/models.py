"""
Data models for storage layer.

Defines the raw events delivered by the capturing layer and the
usage entities persisted in the ledger.
"""

from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Optional


def as_utc(value: datetime) -> datetime:
    """Return an aware UTC datetime, treating naive values as UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


@dataclass(frozen=True)
class RawEvent:
    """One logged API call as captured by the interception layer.

    The response body is None when the upstream call failed before
    producing one.
    """
    event_time: datetime
    identity: Optional[str]
    request_body: str
    response_body: Optional[str]
    status_code: Optional[int] = None
    request_id: Optional[str] = None
    operation_name: Optional[str] = None


@dataclass(frozen=True)
class Delivery:
    """A raw event envelope read from a transport partition."""
    partition: str
    position: int
    payload: str

    @property
    def dedup_key(self) -> str:
        """Key derived from the transport's own delivery position."""
        return f"{self.partition}:{self.position}"


@dataclass(frozen=True)
class UsageRecord:
    """Immutable usage row extracted from a single API call.

    Token counters are None when the response could not be parsed
    into the expected shape. Raw payloads are kept verbatim so that
    records can be reprocessed later.
    """
    event_time: datetime
    identity_key: str
    raw_request: str
    raw_response: Optional[str]
    operation: Optional[str] = None
    model: Optional[str] = None
    prompt_tokens: Optional[int] = None
    completion_tokens: Optional[int] = None
    total_tokens: Optional[int] = None
    request_id: Optional[str] = None
    status_code: Optional[int] = None

    def __post_init__(self):
        """Validate identity and counters."""
        if not self.identity_key:
            raise ValueError("identity_key cannot be empty")
        for name in ("prompt_tokens", "completion_tokens", "total_tokens"):
            value = getattr(self, name)
            if value is not None and value < 0:
                raise ValueError(f"{name} cannot be negative")

    @property
    def tokens_consistent(self) -> bool:
        """False only when all three counters are set and do not add up."""
        if None in (self.prompt_tokens, self.completion_tokens, self.total_tokens):
            return True
        return self.total_tokens == self.prompt_tokens + self.completion_tokens


@dataclass(frozen=True)
class UsageAggregate:
    """Per-identity usage summary for one time bucket."""
    identity_key: str
    bucket_start: datetime
    bucket_width: timedelta
    call_count: int = 0
    sum_prompt_tokens: int = 0
    sum_completion_tokens: int = 0
    sum_total_tokens: int = 0

    @property
    def bucket_end(self) -> datetime:
        return self.bucket_start + self.bucket_width


@dataclass(frozen=True)
class DeadLetter:
    """An event that could not be processed, with the failure reason."""
    dedup_key: str
    partition: str
    position: int
    payload: str
    reason: str
    recorded_at: datetime
