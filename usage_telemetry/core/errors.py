"""
Error taxonomy for usage ingestion.

Only identity and envelope failures are fatal to an event. Parse
anomalies are reported as warnings alongside a degraded record.
"""

from enum import Enum


class ParseWarning(Enum):
    """Non-fatal anomalies found while parsing a raw event."""
    FAILED_CALL = "failed_call"
    UNSTRUCTURED_RESPONSE = "unstructured_response"
    MISSING_USAGE = "missing_usage"
    TOKEN_MISMATCH = "token_mismatch"


class MissingIdentityError(ValueError):
    """Raised when a raw event carries no caller identity."""


class MalformedEnvelopeError(ValueError):
    """Raised when a transport payload cannot be decoded into a raw event."""


class StorageTransientFailure(Exception):
    """A storage call failed in a way that may succeed on retry."""


class PartitionHaltedError(RuntimeError):
    """Raised when a partition stops after exhausting storage retries."""
    def __init__(self, partition: str, position: int, reason: str):
        super().__init__(
            f"Partition {partition} halted at position {position}: {reason}"
        )
        self.partition = partition
        self.position = position
        self.reason = reason
