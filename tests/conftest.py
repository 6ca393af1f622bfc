"""
Pytest configuration and shared fixtures for netclock tests.
"""

import asyncio
from typing import Dict, List, Tuple, Union

import pytest

from netclock.config import NetworkClockConfig
from netclock.models import Sample
from netclock.transport import ServerReply, Transport, TransportError


class FakeTimeSource:
    """Wall clock that only moves when told to."""

    def __init__(self, now: float = 1000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float):
        self.now += seconds


class FakeTransport(Transport):
    """
    Answers every request with a configured (offset, delay) per server.

    A behaviour can also be an exception instance, which is raised instead.
    Setting ``gate`` makes every request wait until the event is set; the
    behaviour is read when the request is sent. With ``finish_when_cancelled``
    a gated request still completes after cancellation, like a reply already
    on the wire.
    """

    def __init__(self, default: Tuple[float, float] = (0.0, 0.020), processing: float = 0.001):
        self.default = default
        self.processing = processing
        self.behaviour: Dict[str, Union[Tuple[float, float], Exception]] = {}
        self.calls: List[Tuple[str, float]] = []
        self.gate = None
        self.finish_when_cancelled = False

    async def send_request(self, server: str, t1: float) -> ServerReply:
        self.calls.append((server, t1))
        behaviour = self.behaviour.get(server, self.default)
        if self.gate is not None:
            try:
                await self.gate.wait()
            except asyncio.CancelledError:
                if not self.finish_when_cancelled:
                    raise
                await self.gate.wait()

        if isinstance(behaviour, Exception):
            raise behaviour

        offset, delay = behaviour
        t2 = t1 + delay / 2 + offset
        t3 = t2 + self.processing
        t4 = t1 + delay + self.processing
        return ServerReply(t2=t2, t3=t3, t4=t4)

    def calls_for(self, server: str) -> int:
        return sum(1 for s, _ in self.calls if s == server)


def make_sample(offset: float, delay: float, t1: float = 1000.0, server: str = "test.ntp") -> Sample:
    """Build a sample whose derived offset and delay are the given values."""
    t2 = t1 + delay / 2 + offset
    t3 = t2 + 0.001
    t4 = t1 + delay + 0.001
    return Sample(t1=t1, t2=t2, t3=t3, t4=t4, server=server)


async def wait_until(predicate, timeout: float = 2.0, interval: float = 0.005):
    """Yield to the event loop until ``predicate()`` holds."""
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not met within timeout")
        await asyncio.sleep(interval)


@pytest.fixture
def time_source():
    return FakeTimeSource()


@pytest.fixture
def transport():
    return FakeTransport()


@pytest.fixture
def config():
    """Config with slow polling so tests see exactly one exchange per server."""
    return NetworkClockConfig(
        servers=["a.ntp.test", "b.ntp.test", "c.ntp.test"],
        timeout_seconds=0.2,
        poll_interval_min=60.0,
        poll_interval_max=120.0,
        startup_timeout=0.3,
    )


@pytest.fixture
def failing():
    return TransportError("no route to host")
