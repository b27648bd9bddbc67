"""
Time-bucketed usage aggregation.

Accumulates usage records into fixed-width buckets per identity.
Aggregates hold nothing that cannot be rebuilt by replaying the
stored records, so losing them is recoverable.
"""

import threading
from dataclasses import dataclass, replace
from datetime import datetime, timedelta, timezone
from typing import Dict, Iterable, List, Tuple

from usage_telemetry.storage.models import UsageAggregate, UsageRecord, as_utc

EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)
DEFAULT_BUCKET_WIDTH = timedelta(hours=1)

BucketKey = Tuple[str, datetime]


@dataclass
class _Counters:
    call_count: int = 0
    sum_prompt_tokens: int = 0
    sum_completion_tokens: int = 0
    sum_total_tokens: int = 0

    def add(self, record: UsageRecord) -> None:
        self.call_count += 1
        self.sum_prompt_tokens += record.prompt_tokens or 0
        self.sum_completion_tokens += record.completion_tokens or 0
        self.sum_total_tokens += record.total_tokens or 0


class UsageAggregator:
    """In-memory per-identity usage buckets.

    Buckets are sparse: a bucket exists only once a record has landed
    in it. Updates are serialized per (identity_key, bucket) so that
    workers for different partitions can ingest concurrently, and a
    rebuild waits for in-flight updates and blocks new ones until the
    replay is complete.
    """

    def __init__(self, bucket_width: timedelta = DEFAULT_BUCKET_WIDTH):
        if bucket_width <= timedelta(0):
            raise ValueError("bucket_width must be positive")
        self.bucket_width = bucket_width
        self._buckets: Dict[BucketKey, _Counters] = {}
        self._locks: Dict[BucketKey, threading.Lock] = {}
        self._registry_lock = threading.RLock()
        self._idle = threading.Condition(self._registry_lock)
        self._active_ingests = 0
        self._rebuilding = False

    def bucket_of(self, event_time: datetime) -> datetime:
        """Start of the bucket containing event_time (UTC)."""
        offset = as_utc(event_time) - EPOCH
        return EPOCH + (offset // self.bucket_width) * self.bucket_width

    def ingest(self, record: UsageRecord) -> None:
        """Add a record to its bucket.

        Not idempotent on its own: callers must deduplicate deliveries
        before ingesting.
        """
        key = (record.identity_key, self.bucket_of(record.event_time))
        with self._registry_lock:
            while self._rebuilding:
                self._idle.wait()
            self._active_ingests += 1
            lock = self._locks.setdefault(key, threading.Lock())
            counters = self._buckets.setdefault(key, _Counters())
        try:
            with lock:
                counters.add(record)
        finally:
            with self._registry_lock:
                self._active_ingests -= 1
                self._idle.notify_all()

    def covering_range(self, start: datetime, end: datetime) -> Tuple[datetime, datetime]:
        """Bucket-aligned bounds of every bucket overlapping [start, end)."""
        start, end = as_utc(start), as_utc(end)
        last_bucket = self.bucket_of(end)
        if last_bucket != end:
            last_bucket += self.bucket_width
        return self.bucket_of(start), last_bucket

    def query(
        self,
        identity_key: str,
        start: datetime,
        end: datetime
    ) -> List[UsageAggregate]:
        """Return buckets overlapping [start, end), oldest first.

        An empty or inverted range yields an empty list.
        """
        start, end = as_utc(start), as_utc(end)
        if start >= end:
            return []

        first_bucket = self.bucket_of(start)
        with self._registry_lock:
            keys = [
                key for key in self._buckets
                if key[0] == identity_key and first_bucket <= key[1] < end
            ]
            return [self._to_aggregate(key) for key in sorted(keys, key=lambda k: k[1])]

    def rebuild_from(self, records: Iterable[UsageRecord]) -> None:
        """Discard all state and replay records in arrival order.

        Waits for in-flight ingests to finish and holds off new ones until
        the replay is done. Records that were stored but not yet ingested
        when the replay read them would still be ingested again afterwards,
        so pipeline workers feeding this aggregator must be stopped first.
        """
        with self._registry_lock:
            self._rebuilding = True
            try:
                while self._active_ingests:
                    self._idle.wait()
                self._buckets = {}
                self._locks = {}
                for record in records:
                    key = (record.identity_key, self.bucket_of(record.event_time))
                    self._locks.setdefault(key, threading.Lock())
                    self._buckets.setdefault(key, _Counters()).add(record)
            finally:
                self._rebuilding = False
                self._idle.notify_all()

    def snapshot(self) -> Dict[BucketKey, UsageAggregate]:
        """Copy of every bucket, keyed by (identity_key, bucket_start)."""
        with self._registry_lock:
            return {key: self._to_aggregate(key) for key in self._buckets}

    def identities(self) -> List[str]:
        """Identity keys with at least one bucket, sorted."""
        with self._registry_lock:
            return sorted({key[0] for key in self._buckets})

    def _to_aggregate(self, key: BucketKey) -> UsageAggregate:
        with self._registry_lock:
            lock = self._locks[key]
            counters = self._buckets[key]
        with lock:
            copied = replace(counters)
        return UsageAggregate(
            identity_key=key[0],
            bucket_start=key[1],
            bucket_width=self.bucket_width,
            call_count=copied.call_count,
            sum_prompt_tokens=copied.sum_prompt_tokens,
            sum_completion_tokens=copied.sum_completion_tokens,
            sum_total_tokens=copied.sum_total_tokens,
        )
