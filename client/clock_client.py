"""CoWatch client-side clock skew estimation."""
from __future__ import annotations
import asyncio
import logging
import time
from typing import Awaitable, Callable, Optional

from shared.clock_sync import SkewEstimator
from shared.protocol import Ping, Pong

logger = logging.getLogger("cowatch.client.clock")


def local_now_ms() -> float:
    return time.time() * 1000


class ClockClient:
    """
    Probes the server clock and keeps a smoothed skew estimate.
    One probe goes out on (re)connection and then every probe_interval seconds.
    """

    def __init__(self, send_func: Callable[[Ping], Awaitable[None]],
                 probe_interval: float = 2.0, alpha: float = 0.2,
                 clock: Callable[[], float] = local_now_ms):
        """
        send_func: async callable(message) that writes to the channel
        clock: local wall clock in ms
        """
        self.send = send_func
        self.probe_interval = probe_interval
        self.clock = clock
        self.estimator = SkewEstimator(alpha=alpha)
        self._probe_task: Optional[asyncio.Task] = None

    @property
    def skew_ms(self) -> float:
        return self.estimator.skew_ms

    @property
    def rtt_ms(self) -> float:
        return self.estimator.rtt_ms

    def server_now_ms(self) -> float:
        """Local clock corrected into estimated server time."""
        return self.estimator.server_now_ms(self.clock())

    async def probe(self) -> None:
        await self.send(Ping(t0=self.clock()))

    def handle_pong(self, pong: Pong) -> None:
        t2 = self.clock()
        if pong.t0 <= 0 or pong.t0 > t2:
            logger.debug("Ignoring pong with bogus t0=%s", pong.t0)
            return
        skew = self.estimator.add_probe(pong.t0, pong.t1, t2)
        logger.debug("Probe: rtt=%.1fms skew=%.1fms", self.estimator.rtt_ms, skew)

    def start(self) -> None:
        """Begin probing; call on every (re)connection."""
        self.stop()
        self._probe_task = asyncio.create_task(self._probe_loop())

    def stop(self) -> None:
        if self._probe_task:
            self._probe_task.cancel()
            self._probe_task = None

    async def _probe_loop(self) -> None:
        while True:
            try:
                await self.probe()
            except Exception as e:
                logger.warning("Clock probe failed: %s", e)
            await asyncio.sleep(self.probe_interval)
