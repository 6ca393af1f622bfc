"""
NetworkClock: combines several ServerAssociations into one network offset.

The clock gives a very early estimate as soon as any server answers, then
refines it as more samples arrive. It notifies listeners only when the
published offset changes by more than a negligible amount.
"""

import asyncio
import functools
import logging
import math
import threading
import time
from datetime import datetime, timezone
from typing import Callable, Dict, Iterable, List, Optional, Tuple

from .aggregation import combine_snapshots
from .association import ServerAssociation
from .config import NetworkClockConfig
from .models import AssociationSnapshot, ClockStatus, NetworkClockState
from .transport import Transport, UDPTransport

logger = logging.getLogger(__name__)

OffsetCallback = Callable[[float], None]
CompletionCallback = Callable[[bool], None]

_CLOSED = object()


class OffsetSubscription:
    """
    Bounded stream of published offsets.

    Iterate with ``async for``; when the buffer is full the oldest offset is
    dropped. ``close()`` ends the iteration after the buffered values.
    """

    def __init__(self, clock: "NetworkClock", maxsize: int = 16):
        if maxsize < 1:
            raise ValueError(f"maxsize must be >= 1, got {maxsize}")
        self._clock = clock
        self._queue: asyncio.Queue = asyncio.Queue(maxsize=maxsize)
        self._closed = False
        self.dropped = 0

    @property
    def closed(self) -> bool:
        return self._closed

    def push(self, offset: float):
        if self._closed:
            return
        if self._queue.full():
            self._queue.get_nowait()
            self.dropped += 1
        self._queue.put_nowait(offset)

    def close(self):
        if self._closed:
            return
        self._closed = True
        self._clock._unsubscribe(self)
        # Wakes a waiting reader; a full queue has no waiting reader
        if not self._queue.full():
            self._queue.put_nowait(_CLOSED)

    async def get(self) -> float:
        """Wait for the next offset; raises StopAsyncIteration once closed and drained."""
        if self._closed and self._queue.empty():
            raise StopAsyncIteration
        item = await self._queue.get()
        if item is _CLOSED:
            # Leave the marker for any other waiter
            self._queue.put_nowait(_CLOSED)
            raise StopAsyncIteration
        return item

    def __aiter__(self):
        return self

    async def __anext__(self) -> float:
        return await self.get()

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        self.close()


class NetworkClock:
    """
    Network time from a set of NTP server associations.

    State machine: NOT_STARTED -> STARTING -> STARTED, and back to NOT_STARTED
    only through finish(). ``network_offset`` is ``math.inf`` while undetermined.
    Every association report is aggregated under one lock, so aggregation
    passes never interleave.
    """

    def __init__(self,
                 servers: Optional[Iterable[str]] = None,
                 transport: Optional[Transport] = None,
                 config: Optional[NetworkClockConfig] = None,
                 time_source: Callable[[], float] = time.time):
        self.config = (config or NetworkClockConfig()).validate()
        self.time_source = time_source

        servers = list(servers) if servers is not None else list(self.config.servers)
        unique_servers = list(dict.fromkeys(servers))
        if not unique_servers:
            raise ValueError("NetworkClock needs at least one server")

        self.transport = transport or UDPTransport(
            port=self.config.port, version=self.config.ntp_version, time_source=time_source
        )

        # Arena: associations are addressed by index and report back by index
        self._associations: List[ServerAssociation] = [
            ServerAssociation(server, self.transport, config=self.config,
                              time_source=time_source, association_id=i)
            for i, server in enumerate(unique_servers)
        ]

        self._lock = threading.Lock()
        self._epoch = 0
        self._state = NetworkClockState.NOT_STARTED
        self._network_offset = math.inf
        self._stale = False
        self._last_update: Optional[datetime] = None
        self._snapshots: Dict[int, AssociationSnapshot] = {}

        # None while the start outcome is pending
        self._start_outcome: Optional[bool] = None
        self._pending_completions: List[CompletionCallback] = []
        self._startup_timer: Optional[asyncio.TimerHandle] = None

        self._subscriptions: List[OffsetSubscription] = []
        self.network_offset_updated: Optional[OffsetCallback] = None

        logger.info(f"[NETWORK_CLOCK] Configured {len(self._associations)} server(s): "
                    f"{', '.join(unique_servers)}")

    @property
    def network_offset(self) -> float:
        """Seconds to add to local time to get network time; ``math.inf`` if undetermined."""
        with self._lock:
            return self._network_offset

    @property
    def network_time(self) -> Optional[datetime]:
        """Current network time (UTC), or None while the offset is undetermined."""
        offset = self.network_offset
        if math.isinf(offset):
            return None
        return datetime.fromtimestamp(self.time_source() + offset, tz=timezone.utc)

    @property
    def network_clock_state(self) -> NetworkClockState:
        with self._lock:
            return self._state

    @property
    def is_stale(self) -> bool:
        """True while a held offset is published and no association is reachable."""
        with self._lock:
            return self._stale

    @property
    def associations(self) -> Tuple[AssociationSnapshot, ...]:
        return tuple(a.snapshot() for a in self._associations)

    def start_with_completion(self, completion: CompletionCallback):
        """
        Start every association; ``completion(success)`` runs exactly once.

        ``success`` is True at the first published offset, False if the startup
        window elapses without one (the clock then keeps trying). Calling again
        while running does not restart anything: the completion runs at once if
        the outcome is known, otherwise together with the pending outcome.
        Must be called from a running event loop.
        """
        loop = asyncio.get_running_loop()
        outcome: Optional[bool] = None
        epoch = None

        with self._lock:
            if self._state is NetworkClockState.NOT_STARTED:
                self._epoch += 1
                epoch = self._epoch
                self._state = NetworkClockState.STARTING
                self._start_outcome = None
                self._pending_completions = [completion]
                self._startup_timer = loop.call_later(
                    self.config.startup_timeout, self._startup_expired, epoch
                )
            elif self._start_outcome is None:
                self._pending_completions.append(completion)
            else:
                outcome = self._start_outcome

        if epoch is not None:
            logger.info(f"[NETWORK_CLOCK] Starting {len(self._associations)} association(s)")
            for association in self._associations:
                association.report = functools.partial(self._association_updated, epoch)
                association.start()
        elif outcome is not None:
            self._run_completion(completion, outcome)

    async def start(self) -> bool:
        """Awaitable form of start_with_completion()."""
        future = asyncio.get_running_loop().create_future()

        def _resolve(success: bool):
            if not future.done():
                future.set_result(success)

        self.start_with_completion(_resolve)
        return await future

    def finish(self):
        """Stop all associations and discard the combined state."""
        with self._lock:
            if self._state is NetworkClockState.NOT_STARTED:
                return
            self._epoch += 1
            if self._startup_timer is not None:
                self._startup_timer.cancel()
                self._startup_timer = None
            completions, self._pending_completions = self._pending_completions, []
            self._state = NetworkClockState.NOT_STARTED
            self._network_offset = math.inf
            self._stale = False
            self._last_update = None
            self._start_outcome = None
            self._snapshots.clear()

        for association in self._associations:
            association.stop()
            association.report = None

        logger.info("[NETWORK_CLOCK] Finished")
        for completion in completions:
            self._run_completion(completion, False)

    def subscribe(self, maxsize: int = 16) -> OffsetSubscription:
        """Open a bounded stream of offset updates."""
        subscription = OffsetSubscription(self, maxsize)
        with self._lock:
            self._subscriptions.append(subscription)
        return subscription

    def _unsubscribe(self, subscription: OffsetSubscription):
        with self._lock:
            if subscription in self._subscriptions:
                self._subscriptions.remove(subscription)

    def status(self) -> ClockStatus:
        snapshots = list(self.associations)
        with self._lock:
            offset = None if math.isinf(self._network_offset) else self._network_offset
            return ClockStatus(
                state=self._state,
                network_offset=offset,
                is_stale=self._stale,
                reachable_associations=sum(1 for s in snapshots if s.usable),
                total_associations=len(snapshots),
                associations=snapshots,
                last_update=self._last_update,
            )

    def _startup_expired(self, epoch: int):
        with self._lock:
            if epoch != self._epoch or self._start_outcome is not None:
                return
            self._start_outcome = False
            self._startup_timer = None
            completions, self._pending_completions = self._pending_completions, []

        logger.warning(f"[NETWORK_CLOCK] No usable sample within {self.config.startup_timeout}s, "
                       f"still trying")
        for completion in completions:
            self._run_completion(completion, False)

    def _association_updated(self, epoch: int, association_id: int, snapshot: AssociationSnapshot):
        """Store a snapshot and re-aggregate; reports from a finished run are ignored."""
        with self._lock:
            if epoch != self._epoch or self._state is NetworkClockState.NOT_STARTED:
                logger.debug(f"[NETWORK_CLOCK] Ignoring stale report from {snapshot.server}")
                return
            self._snapshots[association_id] = snapshot
            changed, completions = self._aggregate()

        for completion in completions:
            self._run_completion(completion, True)
        # A completion may have called finish()
        if changed is not None and epoch == self._epoch:
            self._notify(changed)

    def _aggregate(self) -> Tuple[Optional[float], List[CompletionCallback]]:
        """
        Recompute and publish the combined offset. Caller holds the lock.

        Returns the offset to notify listeners with (None for no meaningful
        change) and the completions that are now due.
        """
        cfg = self.config
        offset, accepted, _ = combine_snapshots(
            self._snapshots.values(), cfg.outlier_mad_multiplier, cfg.outlier_min_threshold
        )
        previous = self._network_offset

        if offset is None:
            if math.isinf(previous):
                return None, []
            if cfg.hold_offset_when_unreachable:
                if not self._stale:
                    self._stale = True
                    logger.warning(f"[NETWORK_CLOCK] All associations unreachable, holding "
                                   f"offset {previous * 1000:.3f}ms")
                return None, []
            self._network_offset = math.inf
            logger.warning("[NETWORK_CLOCK] All associations unreachable, offset undetermined")
            return math.inf, []

        self._network_offset = offset
        self._stale = False
        self._last_update = datetime.fromtimestamp(self.time_source(), tz=timezone.utc)

        completions: List[CompletionCallback] = []
        if self._state is NetworkClockState.STARTING:
            self._state = NetworkClockState.STARTED
            if self._startup_timer is not None:
                self._startup_timer.cancel()
                self._startup_timer = None
            if self._start_outcome is None:
                completions, self._pending_completions = self._pending_completions, []
            self._start_outcome = True
            logger.info(f"[NETWORK_CLOCK] Started: offset={offset * 1000:.3f}ms "
                        f"from {len(accepted)} association(s)")

        if math.isinf(previous) or abs(offset - previous) > cfg.notify_epsilon:
            logger.info(f"[NETWORK_CLOCK] Offset {offset * 1000:.3f}ms "
                        f"({len(accepted)}/{len(self._associations)} associations)")
            return offset, completions
        return None, completions

    def _notify(self, offset: float):
        callback = self.network_offset_updated
        if callback is not None:
            try:
                callback(offset)
            except Exception as e:
                logger.error(f"[NETWORK_CLOCK] Offset listener failed: {e!r}")

        with self._lock:
            subscriptions = list(self._subscriptions)
        for subscription in subscriptions:
            subscription.push(offset)

    def _run_completion(self, completion: CompletionCallback, success: bool):
        try:
            completion(success)
        except Exception as e:
            logger.error(f"[NETWORK_CLOCK] Start completion failed: {e!r}")

    async def __aenter__(self) -> "NetworkClock":
        await self.start()
        return self

    async def __aexit__(self, exc_type, exc, tb):
        self.finish()
