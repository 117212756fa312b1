"""Unit tests for the partition-priority scheduler."""
from __future__ import annotations

from unittest.mock import AsyncMock

import pytest

from courier_common.exceptions import FatalTransportError, TransportError
from courier_events.consumer import MockLogConsumer
from courier_events.topology import CHANNEL_STREAMS, Channel
from courier_pipeline.scheduler import PartitionPriorityScheduler, SchedulerMetrics, plan_partitions

STREAM = CHANNEL_STREAMS[Channel.SMS]
TOPIC = STREAM.topic
P0, P1, P2 = (TOPIC, 0), (TOPIC, 1), (TOPIC, 2)


class RecordingHandler:
    """Handler that records what it saw and can fail chosen offsets once."""

    def __init__(self, fail_once: set[tuple[int, int]] | None = None) -> None:
        self.seen: list[tuple[int, int]] = []
        self._fail_once = set(fail_once or ())

    async def __call__(self, record) -> None:
        key = (record.partition, record.offset)
        self.seen.append(key)
        if key in self._fail_once:
            self._fail_once.discard(key)
            raise RuntimeError("vendor exploded")


def _fill(broker, partition: int, n: int) -> None:
    for i in range(n):
        broker.append(TOPIC, f"p{partition}-{i}", partition=partition)


@pytest.fixture
def consumer(broker) -> MockLogConsumer:
    return MockLogConsumer(broker, STREAM.group_id)


class TestPlanPartitions:
    """Tests for plan_partitions."""

    @pytest.mark.parametrize("lags,active,paused", [
        ([0, 0, 0], [0, 1, 2], []),
        ([5, 0, 0], [0], [1, 2]),
        ([5, 5, 5], [0], [1, 2]),
        ([0, 3, 7], [0, 1], [2]),
        ([0, 0, 4], [0, 1, 2], []),
    ])
    def test_plan(self, lags, active, paused) -> None:
        assert plan_partitions(lags) == (active, paused)

    def test_most_urgent_partition_is_never_paused(self) -> None:
        for lags in ([1, 1, 1], [0, 1, 0], [0, 0, 0]):
            _, paused = plan_partitions(lags)
            assert 0 not in paused


class TestSchedulerMetrics:
    def test_total_lag(self) -> None:
        assert SchedulerMetrics(last_lag={0: 2, 1: 0, 2: 3}).total_lag == 5


class TestPartitionPriorityScheduler:
    """Tests for PartitionPriorityScheduler over the in-memory broker."""

    @pytest.mark.asyncio
    async def test_start_assigns_every_partition(self, consumer, clock) -> None:
        scheduler = PartitionPriorityScheduler(consumer, STREAM, RecordingHandler(), clock=clock)

        async with scheduler:
            assert consumer.assignment() == [P0, P1, P2]

    @pytest.mark.asyncio
    async def test_lower_tiers_paused_while_top_tier_has_backlog(self, broker, consumer, clock) -> None:
        _fill(broker, 0, 2)
        _fill(broker, 2, 2)
        handler = RecordingHandler()

        async with PartitionPriorityScheduler(consumer, STREAM, handler, clock=clock) as scheduler:
            first = await scheduler.run_cycle()
            assert consumer.poll_history[0] == frozenset({P0})
            assert consumer.paused() == {P1, P2}

            second = await scheduler.run_cycle()
            assert consumer.poll_history[1] == frozenset({P0, P1, P2})

        assert (first, second) == (2, 2)
        assert handler.seen == [(0, 0), (0, 1), (2, 0), (2, 1)]

    @pytest.mark.asyncio
    async def test_middle_tier_backlog_pauses_only_lowest(self, broker, consumer, clock) -> None:
        _fill(broker, 1, 1)
        _fill(broker, 2, 1)

        async with PartitionPriorityScheduler(consumer, STREAM, RecordingHandler(), clock=clock) as scheduler:
            await scheduler.run_cycle()

        assert consumer.poll_history[0] == frozenset({P0, P1})

    @pytest.mark.asyncio
    async def test_no_backlog_polls_everything(self, consumer, clock) -> None:
        async with PartitionPriorityScheduler(consumer, STREAM, RecordingHandler(), clock=clock) as scheduler:
            assert await scheduler.run_cycle() == 0

        assert consumer.poll_history == [frozenset({P0, P1, P2})]

    @pytest.mark.asyncio
    async def test_commits_next_offset(self, broker, consumer, clock) -> None:
        _fill(broker, 0, 3)

        async with PartitionPriorityScheduler(consumer, STREAM, RecordingHandler(), clock=clock) as scheduler:
            await scheduler.run_cycle()

        assert broker.committed(STREAM.group_id, P0) == 3

    @pytest.mark.asyncio
    async def test_compute_lag(self, broker, consumer, clock) -> None:
        _fill(broker, 0, 1)
        _fill(broker, 2, 4)

        async with PartitionPriorityScheduler(consumer, STREAM, RecordingHandler(), clock=clock) as scheduler:
            lags = await scheduler.compute_lag()

        assert lags == [1, 0, 4]
        assert scheduler.metrics.total_lag == 5

    @pytest.mark.asyncio
    async def test_failing_record_is_retried_after_backoff(self, broker, consumer, clock) -> None:
        _fill(broker, 0, 3)
        handler = RecordingHandler(fail_once={(0, 1)})
        scheduler = PartitionPriorityScheduler(
            consumer, STREAM, handler, clock=clock, transient_backoff_seconds=2.0
        )

        async with scheduler:
            processed = await scheduler.run_cycle()
            assert processed == 1
            assert broker.committed(STREAM.group_id, P0) == 1
            assert clock.sleeps == [2.0]

            await scheduler.run_cycle()

        assert handler.seen == [(0, 0), (0, 1), (0, 1), (0, 2)]
        assert broker.committed(STREAM.group_id, P0) == 3
        assert scheduler.metrics.handler_failures == 1
        assert scheduler.metrics.records_processed == 3

    @pytest.mark.asyncio
    async def test_retried_record_keeps_priority_over_new_backlog(self, broker, consumer, clock) -> None:
        _fill(broker, 0, 1)
        handler = RecordingHandler(fail_once={(0, 0)})

        async with PartitionPriorityScheduler(consumer, STREAM, handler, clock=clock) as scheduler:
            await scheduler.run_cycle()
            _fill(broker, 1, 1)
            await scheduler.run_cycle()

        assert handler.seen == [(0, 0), (0, 0)]
        assert broker.committed(STREAM.group_id, P0) == 1

    @pytest.mark.asyncio
    async def test_transient_error_is_retried(self, consumer, clock) -> None:
        scheduler = PartitionPriorityScheduler(
            consumer, STREAM, RecordingHandler(), clock=clock, transient_backoff_seconds=1.5
        )
        await scheduler.start()
        consumer.poll = AsyncMock(side_effect=[TransportError("broker blip"), []])

        await scheduler.run(max_cycles=2)

        assert scheduler.metrics.transient_errors == 1
        assert scheduler.metrics.cycles == 1
        assert clock.sleeps == [1.5]

    @pytest.mark.asyncio
    async def test_fatal_error_propagates(self, consumer, clock) -> None:
        scheduler = PartitionPriorityScheduler(consumer, STREAM, RecordingHandler(), clock=clock)
        await scheduler.start()
        consumer.poll = AsyncMock(side_effect=FatalTransportError("not authorized"))

        with pytest.raises(FatalTransportError):
            await scheduler.run(max_cycles=5)

    @pytest.mark.asyncio
    async def test_poll_before_start_is_fatal(self, consumer, clock) -> None:
        scheduler = PartitionPriorityScheduler(consumer, STREAM, RecordingHandler(), clock=clock)
        consumer.assign(STREAM.topic_partitions())

        with pytest.raises(FatalTransportError):
            await scheduler.run(max_cycles=1)

    @pytest.mark.asyncio
    async def test_stop_ends_run_after_current_cycle(self, broker, consumer, clock) -> None:
        _fill(broker, 0, 2)
        owner: list[PartitionPriorityScheduler] = []

        async def stop_when_handled(record) -> None:
            owner[0].stop()

        scheduler = PartitionPriorityScheduler(consumer, STREAM, stop_when_handled, clock=clock)
        owner.append(scheduler)
        async with scheduler:
            await scheduler.run()

        assert scheduler.stopping
        assert scheduler.metrics.cycles == 1
        assert scheduler.metrics.records_processed == 2

    @pytest.mark.asyncio
    async def test_unexpected_error_is_logged_and_loop_continues(self, broker, consumer, clock) -> None:
        _fill(broker, 0, 1)
        handler = RecordingHandler()
        scheduler = PartitionPriorityScheduler(
            consumer, STREAM, handler, clock=clock, transient_backoff_seconds=0.5
        )
        real_end_offsets = consumer.end_offsets
        calls: list[int] = []

        async def flaky_end_offsets(partitions):
            calls.append(len(partitions))
            if len(calls) == 1:
                raise RuntimeError("broker hiccup")
            return await real_end_offsets(partitions)

        consumer.end_offsets = flaky_end_offsets
        async with scheduler:
            await scheduler.run(max_cycles=2)

        assert scheduler.metrics.transient_errors == 1
        assert scheduler.metrics.cycles == 1
        assert clock.sleeps == [0.5]
        assert handler.seen == [(0, 0)]

    @pytest.mark.asyncio
    async def test_close_runs_hooks_once(self, consumer, clock) -> None:
        closed: list[str] = []

        async def hook() -> None:
            closed.append("vendor")

        scheduler = PartitionPriorityScheduler(consumer, STREAM, RecordingHandler(), clock=clock,
                                               close_hooks=[hook])
        async with scheduler:
            assert closed == []
        await scheduler.close()

        assert closed == ["vendor"]


class TestBacklogDrainOrder:
    """Partition 0 drains to empty over several polls before lower tiers resume."""

    @pytest.fixture
    def small_consumer(self, broker) -> MockLogConsumer:
        return MockLogConsumer(broker, STREAM.group_id, max_poll_records=4)

    @pytest.mark.asyncio
    async def test_top_partition_drains_before_lower_ones(self, broker, small_consumer, clock) -> None:
        _fill(broker, 0, 10)
        _fill(broker, 1, 3)
        _fill(broker, 2, 3)
        handler = RecordingHandler()

        async with PartitionPriorityScheduler(small_consumer, STREAM, handler, clock=clock) as scheduler:
            await scheduler.run(max_cycles=5)

        assert small_consumer.poll_history == [
            frozenset({P0}),
            frozenset({P0}),
            frozenset({P0}),
            frozenset({P0, P1}),
            frozenset({P0, P1, P2}),
        ]
        partitions = [p for p, _ in handler.seen]
        assert partitions == [0] * 10 + [1] * 3 + [2] * 3
        assert [broker.committed(STREAM.group_id, tp) for tp in (P0, P1, P2)] == [10, 3, 3]

    @pytest.mark.asyncio
    async def test_new_top_backlog_pauses_lower_partitions_again(
        self, broker, small_consumer, clock
    ) -> None:
        _fill(broker, 2, 8)
        handler = RecordingHandler()

        async with PartitionPriorityScheduler(small_consumer, STREAM, handler, clock=clock) as scheduler:
            await scheduler.run_cycle()
            _fill(broker, 0, 5)
            await scheduler.run_cycle()
            await scheduler.run_cycle()
            await scheduler.run_cycle()

        assert small_consumer.poll_history == [
            frozenset({P0, P1, P2}),
            frozenset({P0}),
            frozenset({P0}),
            frozenset({P0, P1, P2}),
        ]
        assert [p for p, _ in handler.seen] == [2] * 4 + [0] * 5 + [2] * 4
