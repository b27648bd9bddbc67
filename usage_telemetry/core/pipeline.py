"""
Usage ingestion pipeline.

Consumes raw event deliveries from one transport partition, parses
them, appends records to the ledger exactly once, feeds the
aggregator and advances the partition checkpoint.

Processing order per delivery:
1. Decode and parse - fatal failures go to the dead-letter sink
2. Append to the ledger keyed by the delivery position
3. Feed the aggregator for newly stored records
4. Commit the checkpoint over the contiguous handled run
"""

import logging
import threading
import time
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Callable, Dict, Iterable, List, Optional, Protocol, TypeVar

from .aggregator import UsageAggregator
from .errors import (
    MalformedEnvelopeError,
    MissingIdentityError,
    ParseWarning,
    PartitionHaltedError,
    StorageTransientFailure,
)
from .parser import decode_envelope, parse_event
from usage_telemetry.config.loader import Settings, default_settings
from usage_telemetry.storage.models import DeadLetter, Delivery
from usage_telemetry.storage.repository import UsageRepository

logger = logging.getLogger(__name__)

T = TypeVar("T")

# Anomalies worth surfacing to operators; the rest are routine
_LOUD_WARNINGS = {ParseWarning.UNSTRUCTURED_RESPONSE, ParseWarning.TOKEN_MISMATCH}


@dataclass
class BatchResult:
    """Outcome counts for one processed batch."""
    partition: str
    stored: int = 0
    duplicates: int = 0
    dead_lettered: int = 0
    warnings: int = 0
    checkpoint: Optional[int] = None

    def merge(self, other: "BatchResult") -> None:
        self.stored += other.stored
        self.duplicates += other.duplicates
        self.dead_lettered += other.dead_lettered
        self.warnings += other.warnings
        self.checkpoint = other.checkpoint


class IngestionPipeline:
    """Processes deliveries for a single partition.

    A partition must be owned by exactly one pipeline at a time. After
    storage retries are exhausted the pipeline halts and refuses further
    batches until resume() is called.
    """

    def __init__(
        self,
        partition: str,
        repository: UsageRepository,
        aggregator: UsageAggregator,
        settings: Optional[Settings] = None,
        sleep: Callable[[float], None] = time.sleep
    ):
        settings = settings or default_settings()
        self.partition = partition
        self.repository = repository
        self.aggregator = aggregator
        self.retry = settings.retry
        self.identity_field = settings.pipeline.identity_field
        self._sleep = sleep
        self._checkpoint = repository.load_checkpoint(partition)
        self.halted = False
        self.halt_reason: Optional[str] = None

    @property
    def checkpoint(self) -> Optional[int]:
        """Last committed position, or None before the first commit."""
        return self._checkpoint

    def resume(self) -> None:
        """Clear a halt after operator intervention."""
        logger.info("Resuming partition %s from position %s", self.partition, self._checkpoint)
        self.halted = False
        self.halt_reason = None

    def process(self, deliveries: Iterable[Delivery]) -> BatchResult:
        """Process a batch of deliveries in order.

        Args:
            deliveries: Deliveries from this pipeline's partition

        Returns:
            BatchResult with counts and the committed checkpoint

        Raises:
            PartitionHaltedError: If storage retries were exhausted, or the
                pipeline was already halted
            ValueError: If a delivery belongs to another partition
        """
        if self.halted:
            raise PartitionHaltedError(
                self.partition, (self._checkpoint or 0) + 1, self.halt_reason or "halted"
            )

        result = BatchResult(partition=self.partition, checkpoint=self._checkpoint)
        committed = self._checkpoint

        for delivery in deliveries:
            if delivery.partition != self.partition:
                raise ValueError(
                    f"Delivery for partition {delivery.partition} sent to {self.partition}"
                )
            if committed is not None and delivery.position <= committed:
                result.duplicates += 1
                continue

            try:
                self._handle(delivery, result)
            except StorageTransientFailure as e:
                reason = f"storage retries exhausted: {e}"
                self._halt(delivery, reason)
                try:
                    self._commit(committed, result)
                except StorageTransientFailure as commit_error:
                    logger.error("Could not commit checkpoint for %s: %s", self.partition, commit_error)
                raise PartitionHaltedError(self.partition, delivery.position, reason) from e

            committed = delivery.position

        try:
            self._commit(committed, result)
        except StorageTransientFailure as e:
            # Records are stored; replay after resume is absorbed by the dedup key
            self.halted = True
            self.halt_reason = f"checkpoint retries exhausted: {e}"
            raise PartitionHaltedError(self.partition, committed, self.halt_reason) from e
        return result

    def _handle(self, delivery: Delivery, result: BatchResult) -> None:
        """Apply one delivery, dead-lettering it if it cannot be applied.

        Only StorageTransientFailure escapes; any other per-event error
        routes the event to the dead-letter sink so the partition keeps
        moving and the payload is kept for reprocessing.
        """
        try:
            self._apply(delivery, result)
        except StorageTransientFailure:
            raise
        except (MalformedEnvelopeError, MissingIdentityError) as e:
            self._send_to_dead_letter(delivery, f"{type(e).__name__}: {e}", result)
        except Exception as e:
            logger.exception("Unexpected error applying %s", delivery.dedup_key)
            self._send_to_dead_letter(delivery, f"unexpected {type(e).__name__}: {e}", result)

    def _apply(self, delivery: Delivery, result: BatchResult) -> None:
        raw = decode_envelope(delivery.payload, self.identity_field)
        outcome = parse_event(raw)

        for warning in outcome.warnings:
            result.warnings += 1
            if warning in _LOUD_WARNINGS:
                logger.warning("%s parsed with warning: %s", delivery.dedup_key, warning.value)
            else:
                logger.debug("%s parsed with warning: %s", delivery.dedup_key, warning.value)

        stored = self._with_retry(
            "append",
            lambda: self.repository.append_record(outcome.record, delivery.dedup_key)
        )
        if not stored:
            result.duplicates += 1
            logger.debug("Skipping duplicate delivery %s", delivery.dedup_key)
            return

        self.aggregator.ingest(outcome.record)
        result.stored += 1

    def _send_to_dead_letter(self, delivery: Delivery, reason: str, result: BatchResult) -> None:
        self._with_retry(
            "dead-letter",
            lambda: self.repository.record_dead_letter(self._dead_letter(delivery, reason))
        )
        result.dead_lettered += 1
        logger.error("Dead-lettered %s: %s", delivery.dedup_key, reason)

    def _with_retry(self, operation: str, call: Callable[[], T]) -> T:
        """Run a storage call with bounded exponential backoff.

        Raises:
            StorageTransientFailure: After the final failed attempt
        """
        attempt = 1
        while True:
            try:
                return call()
            except StorageTransientFailure as e:
                if attempt >= self.retry.max_attempts:
                    logger.error(
                        "%s on partition %s failed after %d attempts: %s",
                        operation, self.partition, attempt, e
                    )
                    raise
                delay = self.retry.backoff_for(attempt)
                logger.warning(
                    "%s on partition %s failed (attempt %d/%d), retrying in %.2fs: %s",
                    operation, self.partition, attempt, self.retry.max_attempts, delay, e
                )
                self._sleep(delay)
                attempt += 1

    def _commit(self, position: Optional[int], result: BatchResult) -> None:
        if position is not None and position != self._checkpoint:
            self._with_retry(
                "checkpoint",
                lambda: self.repository.save_checkpoint(self.partition, position)
            )
            self._checkpoint = position
            logger.debug("Partition %s checkpoint at %d", self.partition, position)
        result.checkpoint = self._checkpoint

    def _halt(self, delivery: Delivery, reason: str) -> None:
        self.halted = True
        self.halt_reason = reason
        logger.error(
            "Halting partition %s at position %d: %s",
            self.partition, delivery.position, reason
        )
        try:
            self.repository.record_dead_letter(self._dead_letter(delivery, reason))
        except StorageTransientFailure as e:
            logger.error("Could not dead-letter %s: %s", delivery.dedup_key, e)

    @staticmethod
    def _dead_letter(delivery: Delivery, reason: str) -> DeadLetter:
        return DeadLetter(
            dedup_key=delivery.dedup_key,
            partition=delivery.partition,
            position=delivery.position,
            payload=delivery.payload,
            reason=reason,
            recorded_at=datetime.now(timezone.utc),
        )


class EventSource(Protocol):
    """A readable transport partition."""

    def read(self, after_position: Optional[int], max_batch: int) -> List[Delivery]:
        ...


class JsonLinesSource:
    """Reads one JSON envelope per line; position is the line number."""

    def __init__(self, path: str, partition: str):
        self.path = Path(path)
        self.partition = partition

    def read(self, after_position: Optional[int], max_batch: int) -> List[Delivery]:
        after = after_position or 0
        deliveries = []
        with open(self.path, 'r', encoding='utf-8') as f:
            for position, line in enumerate(f, start=1):
                if position <= after or not line.strip():
                    continue
                deliveries.append(Delivery(self.partition, position, line.rstrip("\n")))
                if len(deliveries) >= max_batch:
                    break
        return deliveries


@dataclass
class WorkerReport:
    """Totals for one partition worker run."""
    partition: str
    totals: BatchResult
    batches: int = 0
    halted: Optional[PartitionHaltedError] = None


class PartitionWorker:
    """Drives one pipeline from its source until drained or stopped.

    stop() takes effect between batches, so a batch that has been read
    is always fully processed and checkpointed before the worker exits.
    """

    def __init__(
        self,
        pipeline: IngestionPipeline,
        source: EventSource,
        batch_size: int = 100,
        follow: bool = False,
        poll_interval: float = 1.0
    ):
        self.pipeline = pipeline
        self.source = source
        self.batch_size = batch_size
        self.follow = follow
        self.poll_interval = poll_interval
        self._stop = threading.Event()

    def stop(self) -> None:
        self._stop.set()

    def run(self) -> WorkerReport:
        report = WorkerReport(
            partition=self.pipeline.partition,
            totals=BatchResult(partition=self.pipeline.partition,
                               checkpoint=self.pipeline.checkpoint)
        )
        while not self._stop.is_set():
            batch = self.source.read(self.pipeline.checkpoint, self.batch_size)
            if not batch:
                if not self.follow:
                    break
                self._stop.wait(self.poll_interval)
                continue
            try:
                result = self.pipeline.process(batch)
            except PartitionHaltedError as e:
                report.halted = e
                report.totals.checkpoint = self.pipeline.checkpoint
                break
            report.totals.merge(result)
            report.batches += 1

        logger.info(
            "Worker for partition %s finished: stored=%d duplicates=%d dead_lettered=%d checkpoint=%s",
            report.partition, report.totals.stored, report.totals.duplicates,
            report.totals.dead_lettered, report.totals.checkpoint
        )
        return report


def run_workers(workers: List[PartitionWorker]) -> Dict[str, WorkerReport]:
    """Run one thread per partition worker and collect their reports."""
    partitions = [worker.pipeline.partition for worker in workers]
    if len(set(partitions)) != len(partitions):
        raise ValueError("Each partition must be owned by exactly one worker")
    if not workers:
        return {}

    with ThreadPoolExecutor(max_workers=len(workers)) as executor:
        futures = {worker.pipeline.partition: executor.submit(worker.run) for worker in workers}
        return {partition: future.result() for partition, future in futures.items()}


def replay_aggregates(repository: UsageRepository, aggregator: UsageAggregator) -> None:
    """Rebuild aggregate state from every stored record in arrival order.

    Workers feeding the aggregator must be stopped first, otherwise a
    record stored during the replay can be counted twice.
    """
    aggregator.rebuild_from(repository.iter_records())
