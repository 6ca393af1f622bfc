"""Tests for NetworkClock aggregation, state machine and notifications."""

import asyncio
import math
import threading
import time
from datetime import datetime, timezone
from unittest.mock import patch

import pytest

from netclock import clock as clock_module
from netclock.clock import NetworkClock
from netclock.config import NetworkClockConfig
from netclock.models import AssociationSnapshot, ClockStatus, NetworkClockState

from conftest import FakeTransport, make_sample, wait_until


@pytest.fixture
def clock(transport, config, time_source):
    return NetworkClock(transport=transport, config=config, time_source=time_source)


def all_sampled(clock):
    return lambda: all(s.sample_count > 0 for s in clock.associations)


class TestConstruction:

    def test_initial_state(self, clock):
        assert clock.network_clock_state is NetworkClockState.NOT_STARTED
        assert math.isinf(clock.network_offset)
        assert clock.network_time is None
        assert not clock.is_stale
        assert [s.server for s in clock.associations] == ["a.ntp.test", "b.ntp.test", "c.ntp.test"]

    def test_duplicate_servers_collapsed(self, transport, config):
        clock = NetworkClock(["x", "y", "x"], transport=transport, config=config)
        assert [s.association_id for s in clock.associations] == [0, 1]

    def test_empty_server_list_rejected(self, transport, config):
        with pytest.raises(ValueError):
            NetworkClock([], transport=transport, config=config)

    def test_start_needs_running_loop(self, clock):
        with pytest.raises(RuntimeError):
            clock.start_with_completion(lambda success: None)

    def test_finish_when_not_started_is_noop(self, clock):
        clock.finish()
        assert clock.network_clock_state is NetworkClockState.NOT_STARTED


class TestStartup:

    @pytest.mark.asyncio
    async def test_start_publishes_first_estimate(self, clock, transport, time_source):
        transport.default = (0.250, 0.020)

        assert await clock.start() is True

        assert clock.network_clock_state is NetworkClockState.STARTED
        assert clock.network_offset == pytest.approx(0.250)
        expected = datetime.fromtimestamp(time_source() + clock.network_offset, tz=timezone.utc)
        assert clock.network_time == expected
        clock.finish()

    @pytest.mark.asyncio
    async def test_state_is_starting_until_first_sample(self, clock, transport):
        transport.gate = asyncio.Event()
        results = []
        clock.start_with_completion(results.append)

        assert clock.network_clock_state is NetworkClockState.STARTING
        await asyncio.sleep(0.01)
        assert results == []

        transport.gate.set()
        await wait_until(lambda: results)
        assert results == [True]
        assert clock.network_clock_state is NetworkClockState.STARTED
        clock.finish()

    @pytest.mark.asyncio
    async def test_completion_fires_once(self, clock):
        results = []
        clock.start_with_completion(results.append)
        await wait_until(all_sampled(clock))
        await asyncio.sleep(0.35)  # past the startup window

        assert results == [True]
        clock.finish()

    @pytest.mark.asyncio
    async def test_startup_failure_then_late_success(self, transport, failing, time_source):
        config = NetworkClockConfig(servers=["a.ntp.test"], startup_timeout=0.05,
                                    poll_interval_min=0.02, poll_interval_max=0.02)
        transport.default = failing
        clock = NetworkClock(transport=transport, config=config, time_source=time_source)
        results = []

        clock.start_with_completion(results.append)
        await wait_until(lambda: results)
        assert results == [False]
        assert clock.network_clock_state is NetworkClockState.STARTING

        transport.default = (0.1, 0.02)
        await wait_until(lambda: clock.network_clock_state is NetworkClockState.STARTED)
        assert results == [False]
        assert clock.network_offset == pytest.approx(0.1)
        clock.finish()

    @pytest.mark.asyncio
    async def test_second_start_while_starting_joins_outcome(self, clock, transport):
        transport.gate = asyncio.Event()
        first, second = [], []
        clock.start_with_completion(first.append)
        clock.start_with_completion(second.append)
        await asyncio.sleep(0.01)
        assert len(transport.calls) == 3  # no duplicate polling

        transport.gate.set()
        await wait_until(lambda: first and second)
        assert first == [True]
        assert second == [True]
        clock.finish()

    @pytest.mark.asyncio
    async def test_second_start_when_started_completes_immediately(self, clock):
        await clock.start()
        results = []
        clock.start_with_completion(results.append)
        assert results == [True]
        clock.finish()

    @pytest.mark.asyncio
    async def test_second_start_after_failed_window_reports_failure(self, transport, failing):
        config = NetworkClockConfig(servers=["a.ntp.test"], startup_timeout=0.05,
                                    poll_interval_min=60.0, poll_interval_max=60.0)
        transport.default = failing
        clock = NetworkClock(transport=transport, config=config)

        assert await clock.start() is False
        results = []
        clock.start_with_completion(results.append)
        assert results == [False]
        clock.finish()

    @pytest.mark.asyncio
    async def test_start_twice_does_not_double_polling(self, clock, transport):
        clock.start_with_completion(lambda success: None)
        clock.start_with_completion(lambda success: None)
        await wait_until(all_sampled(clock))
        await asyncio.sleep(0.02)

        for server in ("a.ntp.test", "b.ntp.test", "c.ntp.test"):
            assert transport.calls_for(server) == 1
        clock.finish()


class TestAggregation:

    @pytest.mark.asyncio
    async def test_single_association_offset_is_exact(self, transport, config):
        transport.default = (0.0731, 0.017)
        clock = NetworkClock(["only.ntp.test"], transport=transport, config=config)

        await clock.start()

        (snapshot,) = clock.associations
        assert clock.network_offset == snapshot.best_offset
        clock.finish()

    @pytest.mark.asyncio
    async def test_outlier_server_excluded(self, clock, transport):
        transport.behaviour = {
            "a.ntp.test": (0.10, 0.020),
            "b.ntp.test": (0.12, 0.020),
            "c.ntp.test": (5.00, 0.020),
        }
        await clock.start()
        await wait_until(all_sampled(clock))

        assert clock.network_offset == pytest.approx(0.11, abs=1e-6)
        clock.finish()

    @pytest.mark.asyncio
    async def test_quality_weighting_favours_low_delay(self, clock, transport):
        transport.behaviour = {
            "a.ntp.test": (0.100, 0.005),
            "b.ntp.test": (0.102, 0.200),
            "c.ntp.test": (0.101, 0.100),
        }
        await clock.start()
        await wait_until(all_sampled(clock))

        assert 0.100 < clock.network_offset < 0.101
        clock.finish()

    @pytest.mark.asyncio
    async def test_unreachable_server_ignored(self, clock, transport, failing):
        transport.behaviour = {"a.ntp.test": (0.2, 0.02), "b.ntp.test": failing, "c.ntp.test": failing}

        await clock.start()
        await wait_until(lambda: clock.associations[1].consecutive_failures > 0
                         and clock.associations[2].consecutive_failures > 0)

        assert clock.network_offset == pytest.approx(0.2)
        assert clock.status().reachable_associations == 1
        clock.finish()

    @pytest.mark.asyncio
    async def test_overlapping_reports_aggregate_one_at_a_time(self, clock, transport):
        transport.gate = asyncio.Event()
        results = []
        clock.start_with_completion(results.append)
        epoch = clock._epoch

        events = []
        real_combine = clock_module.combine_snapshots

        def slow_combine(*args, **kwargs):
            events.append("enter")
            time.sleep(0.05)
            events.append("exit")
            return real_combine(*args, **kwargs)

        reports = [
            AssociationSnapshot(association_id=i, server=server, best_offset=offset,
                                best_delay=0.01, quality=50.0, reachable=True, sample_count=1)
            for i, (server, offset) in enumerate([("a.ntp.test", 0.10), ("b.ntp.test", 0.12)])
        ]
        with patch.object(clock_module, "combine_snapshots", side_effect=slow_combine):
            threads = [
                threading.Thread(target=clock._association_updated, args=(epoch, s.association_id, s))
                for s in reports
            ]
            for thread in threads:
                thread.start()
            for thread in threads:
                thread.join(timeout=2.0)

        assert events == ["enter", "exit", "enter", "exit"]
        assert results == [True]
        assert clock.network_offset == pytest.approx(0.11)
        transport.gate.set()
        clock.finish()


class TestUnreachable:

    @pytest.mark.asyncio
    async def test_offset_held_and_marked_stale(self, clock):
        await clock.start()
        await wait_until(all_sampled(clock))
        held = clock.network_offset

        for association in clock._associations:
            for _ in range(clock.config.failure_threshold):
                association.record_failure("timeout")

        assert clock.is_stale
        assert clock.network_offset == pytest.approx(held, abs=1e-9)
        assert clock.network_clock_state is NetworkClockState.STARTED

        clock._associations[0].record_sample(make_sample(0.3, 0.02))
        assert not clock.is_stale
        assert clock.network_offset == pytest.approx(0.3)
        clock.finish()

    @pytest.mark.asyncio
    async def test_offset_reverts_when_configured(self, transport, config):
        config.hold_offset_when_unreachable = False
        clock = NetworkClock(["only.ntp.test"], transport=transport, config=config)
        updates = []
        clock.network_offset_updated = updates.append
        await clock.start()

        for _ in range(config.failure_threshold):
            clock._associations[0].record_failure("timeout")

        assert math.isinf(clock.network_offset)
        assert clock.network_time is None
        assert clock.network_clock_state is NetworkClockState.STARTED
        assert math.isinf(updates[-1])
        clock.finish()


class TestNotifications:

    @pytest.mark.asyncio
    async def test_callback_on_meaningful_change_only(self, transport, config):
        transport.default = (0.1, 0.02)
        clock = NetworkClock(["only.ntp.test"], transport=transport, config=config)
        updates = []
        clock.network_offset_updated = updates.append
        await clock.start()
        assert len(updates) == 1

        association = clock._associations[0]
        association.record_sample(make_sample(0.1 + config.notify_epsilon / 10, 0.019))
        assert len(updates) == 1

        association.record_sample(make_sample(0.2, 0.005))
        assert len(updates) == 2
        assert updates[-1] == pytest.approx(0.2)
        clock.finish()

    @pytest.mark.asyncio
    async def test_failing_listener_does_not_break_clock(self, clock):
        def listener(offset):
            raise RuntimeError("listener bug")

        clock.network_offset_updated = listener
        assert await clock.start() is True
        assert clock.network_clock_state is NetworkClockState.STARTED
        clock.finish()

    @pytest.mark.asyncio
    async def test_subscription_receives_updates(self, transport, config):
        transport.default = (0.1, 0.02)
        clock = NetworkClock(["only.ntp.test"], transport=transport, config=config)

        with clock.subscribe() as updates:
            await clock.start()
            clock._associations[0].record_sample(make_sample(0.2, 0.005))

            assert await updates.get() == pytest.approx(0.1)
            assert await updates.get() == pytest.approx(0.2)
        assert updates.closed
        clock.finish()

    @pytest.mark.asyncio
    async def test_subscription_drops_oldest_when_full(self, transport, config):
        clock = NetworkClock(["only.ntp.test"], transport=transport, config=config)
        updates = clock.subscribe(maxsize=2)
        await clock.start()
        association = clock._associations[0]
        association.record_sample(make_sample(0.2, 0.002))
        association.record_sample(make_sample(0.3, 0.001))

        updates.close()
        received = [offset async for offset in updates]

        assert received == [pytest.approx(0.2), pytest.approx(0.3)]
        assert updates.dropped == 1
        clock.finish()


class TestFinish:

    @pytest.mark.asyncio
    async def test_finish_resets_state(self, clock):
        await clock.start()
        clock.finish()

        assert clock.network_clock_state is NetworkClockState.NOT_STARTED
        assert math.isinf(clock.network_offset)
        assert clock.network_time is None
        assert not any(a.is_running for a in clock._associations)

    @pytest.mark.asyncio
    async def test_finish_completes_pending_start_with_failure(self, clock, transport):
        transport.gate = asyncio.Event()
        results = []
        clock.start_with_completion(results.append)
        clock.finish()
        assert results == [False]

        await asyncio.sleep(0.4)  # startup window of the finished run
        assert results == [False]

    @pytest.mark.asyncio
    async def test_restart_ignores_previous_run(self, clock, transport):
        updates = []
        clock.network_offset_updated = updates.append
        transport.gate = asyncio.Event()
        transport.finish_when_cancelled = True
        transport.default = (9.0, 0.010)

        first_run = []
        clock.start_with_completion(first_run.append)
        await wait_until(lambda: len(transport.calls) == 3)
        clock.finish()
        assert first_run == [False]

        transport.default = (0.05, 0.010)
        results = []
        clock.start_with_completion(results.append)
        await wait_until(lambda: len(transport.calls) == 6)
        assert clock.network_clock_state is NetworkClockState.STARTING

        # Releases the first run's exchanges together with the new ones
        transport.gate.set()
        await wait_until(lambda: results)
        await wait_until(all_sampled(clock))
        await asyncio.sleep(0.02)

        assert results == [True]
        assert first_run == [False]
        assert clock.network_offset == pytest.approx(0.05, abs=1e-6)
        assert all(s.best_offset == pytest.approx(0.05, abs=1e-6) for s in clock.associations)
        assert all(s.sample_count == 1 for s in clock.associations)
        assert updates and all(u == pytest.approx(0.05, abs=1e-6) for u in updates)
        clock.finish()

    @pytest.mark.asyncio
    async def test_async_context_manager(self, transport, config):
        async with NetworkClock(transport=transport, config=config) as clock:
            assert clock.network_clock_state is NetworkClockState.STARTED
        assert clock.network_clock_state is NetworkClockState.NOT_STARTED


class TestStatus:

    @pytest.mark.asyncio
    async def test_status_report(self, clock, time_source):
        status = clock.status()
        assert isinstance(status, ClockStatus)
        assert status.network_offset is None
        assert status.total_associations == 3

        await clock.start()
        await wait_until(all_sampled(clock))
        status = clock.status()

        assert status.state is NetworkClockState.STARTED
        assert status.network_offset == clock.network_offset
        assert status.reachable_associations == 3
        assert status.last_update == datetime.fromtimestamp(time_source(), tz=timezone.utc)
        clock.finish()
