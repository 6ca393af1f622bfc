"""
ServerAssociation: the ongoing exchange with one NTP server.

Each association runs its own polling task, keeps a bounded history of accepted
samples and reports a snapshot (best offset, quality, reachability) to its owner
after every state change.
"""

import asyncio
import logging
import time
from collections import deque
from typing import Callable, Deque, Optional

from .aggregation import offset_jitter, quality_score, select_best_sample
from .config import NetworkClockConfig
from .models import AssociationSnapshot, Sample
from .timestamps import is_plausible_delay
from .transport import Transport, TransportError

logger = logging.getLogger(__name__)

# report(association_id, snapshot)
ReportCallback = Callable[[int, AssociationSnapshot], None]


class ServerAssociation:
    """
    Exchange protocol and per-server statistics for one time server.

    The best estimate is the minimum-delay sample in history. Quality falls with
    delay and with the spread of recent offsets. Rejected exchanges only count
    towards unreachability and are never fatal.
    """

    def __init__(self,
                 server: str,
                 transport: Transport,
                 report: Optional[ReportCallback] = None,
                 config: Optional[NetworkClockConfig] = None,
                 time_source: Callable[[], float] = time.time,
                 association_id: int = 0):
        self.server = server
        self.transport = transport
        self.report = report
        self.config = (config or NetworkClockConfig()).validate()
        self.time_source = time_source
        self.association_id = association_id

        self.history: Deque[Sample] = deque(maxlen=self.config.history_size)
        self.best_sample: Optional[Sample] = None
        self.quality = 0.0
        self.jitter: Optional[float] = None
        self.reachable = False
        self.consecutive_failures = 0
        self.poll_interval = self.config.poll_interval_min

        # Bumped on stop(); exchanges started under an older epoch are discarded
        self._epoch = 0
        self._task: Optional[asyncio.Task] = None

    def __repr__(self):
        return (f"ServerAssociation({self.server!r}, reachable={self.reachable}, "
                f"samples={len(self.history)}, poll={self.poll_interval:g}s)")

    @property
    def is_running(self) -> bool:
        return self._task is not None and not self._task.done()

    @property
    def best_offset(self) -> Optional[float]:
        return self.best_sample.offset if self.best_sample is not None else None

    @property
    def best_delay(self) -> Optional[float]:
        return self.best_sample.delay if self.best_sample is not None else None

    def start(self):
        """Begin polling. A no-op while already running."""
        if self.is_running:
            logger.debug(f"[ASSOCIATION] {self.server} already running")
            return

        self.reset()
        self._epoch += 1
        self._task = asyncio.get_running_loop().create_task(
            self._poll_loop(self._epoch), name=f"netclock-association-{self.server}"
        )
        logger.debug(f"[ASSOCIATION] Started {self.server} (epoch {self._epoch})")

    def stop(self):
        """Cancel scheduled and in-flight requests; late results are discarded."""
        self._epoch += 1
        task, self._task = self._task, None
        if task is not None and not task.done():
            task.cancel()
            logger.debug(f"[ASSOCIATION] Stopped {self.server}")

    def reset(self):
        """Forget history and estimates; used when a new run begins."""
        self.history.clear()
        self.best_sample = None
        self.quality = 0.0
        self.jitter = None
        self.reachable = False
        self.consecutive_failures = 0
        self.poll_interval = self.config.poll_interval_min

    async def _poll_loop(self, epoch: int):
        while epoch == self._epoch:
            await self._exchange(epoch)
            if epoch != self._epoch:
                break
            await asyncio.sleep(self.poll_interval)

    async def _exchange(self, epoch: int):
        """Run one request/response exchange and feed the outcome back."""
        t1 = self.time_source()
        try:
            reply = await asyncio.wait_for(
                self.transport.send_request(self.server, t1),
                timeout=self.config.timeout_seconds,
            )
        except asyncio.TimeoutError:
            if epoch == self._epoch:
                self.record_failure(f"timeout after {self.config.timeout_seconds}s")
            return
        except TransportError as e:
            if epoch == self._epoch:
                self.record_failure(str(e))
            return
        except Exception as e:
            logger.error(f"[ASSOCIATION] Unexpected transport failure for {self.server}: {e!r}")
            if epoch == self._epoch:
                self.record_failure(f"unexpected error: {e!r}")
            return

        if epoch != self._epoch:
            logger.debug(f"[ASSOCIATION] Discarding late reply from {self.server}")
            return

        if reply.t1 is not None:
            t1 = reply.t1
        self.record_sample(Sample(t1=t1, t2=reply.t2, t3=reply.t3, t4=reply.t4, server=self.server))

    def record_sample(self, sample: Sample) -> bool:
        """
        Validate and store a completed exchange.

        Returns True if the sample was accepted into history.
        """
        delay = sample.delay
        if not is_plausible_delay(delay, self.config.max_delay):
            self.record_failure(f"implausible delay {delay * 1000:.1f}ms")
            return False

        self.consecutive_failures = 0
        self.reachable = True
        self.history.append(sample)

        self.best_sample = select_best_sample(self.history)
        self.jitter = offset_jitter(self.history)
        self.quality = quality_score(self.best_sample.delay, self.jitter, self.config.quality_floor)
        self._adjust_poll_interval()

        logger.debug(f"[ASSOCIATION] {self.server}: offset={sample.offset * 1000:.3f}ms, "
                     f"delay={delay * 1000:.1f}ms, best={self.best_sample.offset * 1000:.3f}ms, "
                     f"jitter={self.jitter * 1000:.2f}ms, quality={self.quality:.1f}")
        self._report()
        return True

    def record_failure(self, reason: str):
        """Count a rejected exchange; report once when the server becomes unreachable."""
        self.consecutive_failures += 1
        logger.warning(f"[ASSOCIATION] Rejected exchange with {self.server}: {reason} "
                       f"({self.consecutive_failures}/{self.config.failure_threshold})")

        if self.consecutive_failures >= self.config.failure_threshold and self.reachable:
            self.reachable = False
            logger.warning(f"[ASSOCIATION] {self.server} unreachable after "
                           f"{self.consecutive_failures} consecutive failures")
            self._report()

    def _adjust_poll_interval(self):
        """Double the interval once history is full and stable; halve it when jitter rises."""
        cfg = self.config
        if len(self.history) == self.history.maxlen and self.jitter <= cfg.stable_jitter:
            new_interval = min(self.poll_interval * 2, cfg.poll_interval_max)
        elif self.jitter > cfg.stable_jitter:
            new_interval = max(self.poll_interval / 2, cfg.poll_interval_min)
        else:
            return

        if new_interval != self.poll_interval:
            logger.info(f"[ASSOCIATION] {self.server} poll interval "
                        f"{self.poll_interval:g}s -> {new_interval:g}s")
            self.poll_interval = new_interval

    def snapshot(self) -> AssociationSnapshot:
        return AssociationSnapshot(
            association_id=self.association_id,
            server=self.server,
            best_offset=self.best_offset,
            best_delay=self.best_delay,
            quality=self.quality,
            jitter=self.jitter,
            reachable=self.reachable,
            sample_count=len(self.history),
            consecutive_failures=self.consecutive_failures,
            poll_interval=self.poll_interval,
        )

    def _report(self):
        if self.report is not None:
            self.report(self.association_id, self.snapshot())
