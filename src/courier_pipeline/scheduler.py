"""
Courier Pipeline - Partition-Priority Scheduler.

Owns every partition of one channel topic and drains them in priority
order. Each cycle it measures the backlog of every partition, pauses
all partitions below the most urgent one that has a backlog, polls, and
processes the returned records one at a time in poll order.

Priority is a preference, not a barrier: records already returned by a
poll are processed even if a more urgent backlog appears meanwhile. The
guarantee is that once a backlog on a higher partition has been seen,
no later poll includes a lower partition until that backlog is gone.
"""
from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from typing import Any

import structlog

from courier_common.clock import Clock, SystemClock
from courier_common.exceptions import FatalTransportError, TransportError
from courier_events.broker import LogRecord, TopicPartition
from courier_events.consumer import LogConsumer
from courier_events.topology import StreamDefinition

logger = structlog.get_logger(__name__)

RecordHandler = Callable[[LogRecord], Awaitable[None]]
CloseHook = Callable[[], Awaitable[None]]


@dataclass
class SchedulerMetrics:
    """Counters for one scheduler instance."""

    cycles: int = 0
    records_processed: int = 0
    handler_failures: int = 0
    transient_errors: int = 0
    last_lag: dict[int, int] = field(default_factory=dict)

    @property
    def total_lag(self) -> int:
        return sum(self.last_lag.values())


def plan_partitions(lags: list[int]) -> tuple[list[int], list[int]]:
    """Split partition indices into (active, paused) for the given backlogs.

    Index 0 is the most urgent partition and is never paused. With no
    backlog anywhere every partition is active.
    """
    first = next((i for i, lag in enumerate(lags) if lag > 0), None)
    if first is None:
        return list(range(len(lags))), []
    return list(range(first + 1)), list(range(first + 1, len(lags)))


class PartitionPriorityScheduler:
    """Priority-ordered consumption of one multi-partition stream."""

    def __init__(
        self,
        consumer: LogConsumer,
        stream: StreamDefinition,
        handler: RecordHandler,
        clock: Clock | None = None,
        poll_timeout_ms: int = 500,
        transient_backoff_seconds: float = 1.0,
        close_hooks: list[CloseHook] | None = None,
    ) -> None:
        self._consumer = consumer
        self._stream = stream
        self._handler = handler
        self._clock = clock or SystemClock()
        self._poll_timeout_ms = poll_timeout_ms
        self._backoff = transient_backoff_seconds
        self._partitions: list[TopicPartition] = stream.topic_partitions()
        self._stop_requested = asyncio.Event()
        self._metrics = SchedulerMetrics()
        self._started = False
        self._close_hooks = list(close_hooks or [])

    @property
    def metrics(self) -> SchedulerMetrics:
        return self._metrics

    @property
    def stream(self) -> StreamDefinition:
        return self._stream

    async def start(self) -> None:
        """Start the consumer and take a static assignment of every partition."""
        await self._consumer.start()
        self._consumer.assign(self._partitions)
        self._started = True
        logger.info("scheduler_started", topic=self._stream.topic,
                    group_id=self._stream.group_id, partitions=len(self._partitions))

    async def close(self) -> None:
        """Release the assignment, then run the close hooks once."""
        try:
            if self._started:
                await self._consumer.stop()
                self._started = False
                logger.info("scheduler_closed", topic=self._stream.topic)
        finally:
            hooks, self._close_hooks = self._close_hooks, []
            for hook in hooks:
                await hook()

    async def __aenter__(self) -> PartitionPriorityScheduler:
        await self.start()
        return self

    async def __aexit__(self, exc_type: type | None, exc_val: BaseException | None, exc_tb: Any) -> None:
        await self.close()

    def stop(self) -> None:
        """Ask the run loop to exit after the current cycle."""
        self._stop_requested.set()

    @property
    def stopping(self) -> bool:
        return self._stop_requested.is_set()

    async def compute_lag(self) -> list[int]:
        """Backlog per partition, in partition-index order."""
        end_offsets = await self._consumer.end_offsets(self._partitions)
        lags = []
        for tp in self._partitions:
            position = await self._consumer.position(tp)
            lags.append(max(0, end_offsets.get(tp, 0) - position))
        self._metrics.last_lag = dict(enumerate(lags))
        return lags

    def apply_plan(self, lags: list[int]) -> list[TopicPartition]:
        """Pause and resume partitions for this cycle; returns the active ones."""
        active, paused = plan_partitions(lags)
        active_tps = [self._partitions[i] for i in active]
        self._consumer.pause([self._partitions[i] for i in paused])
        self._consumer.resume(active_tps)
        return active_tps

    async def run_cycle(self) -> int:
        """One lag/pause/poll/process/commit cycle; returns records handled."""
        processed_before = self._metrics.records_processed
        lags = await self.compute_lag()
        active = self.apply_plan(lags)
        logger.debug("scheduler_cycle", topic=self._stream.topic, lag=lags,
                     active=[p for _, p in active])

        records = await self._consumer.poll(timeout_ms=self._poll_timeout_ms)
        offsets, failed = await self._process(records)
        if offsets:
            await self._consumer.commit(offsets)
        self._metrics.cycles += 1
        if failed:
            await self._clock.sleep(self._backoff)
        return self._metrics.records_processed - processed_before

    async def _process(
        self, records: list[LogRecord]
    ) -> tuple[dict[TopicPartition, int], dict[TopicPartition, int]]:
        """Handle records in poll order.

        Returns the offsets to commit and, for partitions whose handler
        raised, the offset of the failing record. Records after a failure
        in the same partition are left for the next poll.
        """
        offsets: dict[TopicPartition, int] = {}
        failed: dict[TopicPartition, int] = {}
        for record in records:
            tp = record.topic_partition
            if tp in failed:
                continue
            try:
                await self._handler(record)
            except Exception as e:
                self._metrics.handler_failures += 1
                failed[tp] = record.offset
                self._consumer.seek(tp, record.offset)
                logger.error("record_handler_failed", topic=record.topic,
                             partition=record.partition, offset=record.offset, error=str(e))
                continue
            self._metrics.records_processed += 1
            offsets[tp] = record.offset + 1
        return offsets, failed

    async def run(self, max_cycles: int | None = None) -> None:
        """Run cycles until stopped.

        Fatal transport errors end the loop and propagate. Anything else
        is logged and the next cycle runs after a backoff.
        """
        cycles = 0
        logger.info("scheduler_running", topic=self._stream.topic)
        while not self._stop_requested.is_set():
            if max_cycles is not None and cycles >= max_cycles:
                break
            cycles += 1
            try:
                await self.run_cycle()
            except FatalTransportError:
                logger.error("scheduler_fatal_error", topic=self._stream.topic)
                raise
            except TransportError as e:
                self._metrics.transient_errors += 1
                logger.warning("scheduler_transient_error", topic=self._stream.topic,
                               error=e.message)
                await self._clock.sleep(self._backoff)
            except Exception as e:
                self._metrics.transient_errors += 1
                logger.error("scheduler_unexpected_error", topic=self._stream.topic,
                             error=str(e), exc_info=True)
                await self._clock.sleep(self._backoff)
        logger.info("scheduler_stopped", topic=self._stream.topic, cycles=cycles,
                    processed=self._metrics.records_processed)
