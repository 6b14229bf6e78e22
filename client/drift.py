"""CoWatch follower drift correction and authoritative transition forwarding."""
from __future__ import annotations
import asyncio
import logging
import time
from typing import Awaitable, Callable, Optional

from shared.clock_sync import (
    DriftDecision, RateController, compute_drift_correction, transition_guard_ms,
)
from shared.config import SyncConfig
from shared.models import TimelineState
from shared.protocol import Message, Pause, Play, Rate, Seek

logger = logging.getLogger("cowatch.client.drift")


class DriftController:
    """
    Steers local playback onto the authoritative timeline.

    media: LocalMedia (see MpvController) with async get_position, is_paused,
           is_ready, play, pause, seek, set_rate and optionally wait_frame.
    clock: object exposing server_now_ms() and rtt_ms (ClockClient).
    """

    def __init__(self, media, clock, config: Optional[SyncConfig] = None,
                 monotonic: Callable[[], float] = time.monotonic):
        self.media = media
        self.clock = clock
        self.config = config or SyncConfig()
        self._monotonic = monotonic
        self.rate_controller = RateController(
            kp=self.config.kp,
            ki=self.config.ki,
            integral_limit=self.config.integral_limit,
            band=self.config.rate_band,
            rate_min=self.config.rate_min,
            rate_max=self.config.rate_max,
        )
        self.state: Optional[TimelineState] = None
        self.authoritative = False
        self.applied_rate = 1.0
        self.autostart_armed = False
        self._last_tick: Optional[float] = None
        self._last_transition: float = float("-inf")
        self._task: Optional[asyncio.Task] = None

    # ---- inputs ----

    def update_state(self, state: TimelineState) -> None:
        """Replace the timeline wholesale; broadcasts are never merged."""
        first = self.state is None
        self.state = state
        if first and state.is_playing and not self.authoritative:
            # Fires on the first tick where media reports ready.
            self.autostart_armed = True
            logger.info("Room already playing; auto-start armed")

    def note_local_transition(self) -> None:
        """Record a local play/pause/seek (ours or from the media itself)."""
        self._last_transition = self._monotonic()

    async def set_authoritative(self, authoritative: bool) -> None:
        if authoritative == self.authoritative:
            return
        self.authoritative = authoritative
        self.rate_controller.reset()
        self.autostart_armed = False
        self._last_tick = None
        if authoritative and self.state is not None:
            await self._apply_rate(self.state.playback_rate)
        logger.info("Drift correction %s", "suspended (authoritative)" if authoritative else "active")

    # ---- loop ----

    def start(self) -> None:
        self.stop()
        self._task = asyncio.create_task(self.run())

    def stop(self) -> None:
        if self._task:
            self._task.cancel()
            self._task = None

    async def run(self) -> None:
        interval = self.config.tick_interval_s
        wait_frame = getattr(self.media, "wait_frame", None)
        while True:
            await asyncio.sleep(interval)
            try:
                if wait_frame is not None:
                    await wait_frame(interval)
                await self.tick()
            except Exception as e:
                logger.error("Drift correction error: %s", e)

    def _guarded(self) -> bool:
        elapsed_ms = (self._monotonic() - self._last_transition) * 1000
        return elapsed_ms < transition_guard_ms(self.clock.rtt_ms, self.config.guard_min_ms)

    async def _apply_rate(self, rate: float) -> None:
        if abs(rate - self.applied_rate) <= self.config.rate_epsilon:
            return
        await self.media.set_rate(rate)
        self.applied_rate = rate

    async def tick(self) -> Optional[DriftDecision]:
        """Evaluate the target once and correct. Returns what was decided."""
        state = self.state
        if self.authoritative or state is None:
            return None
        now = self._monotonic()
        dt = 0.0 if self._last_tick is None else now - self._last_tick
        self._last_tick = now

        if self.autostart_armed:
            if not await self.media.is_ready():
                return None
            self.autostart_armed = False
            if state.is_playing:
                target = state.target(self.clock.server_now_ms())
                await self.media.seek(target)
                await self.media.play()
                self.rate_controller.reset()
                self.note_local_transition()
                logger.info("Auto-start at %.2fs", target)
                return DriftDecision("hard_seek", self.applied_rate, target, 0.0)

        position = await self.media.get_position()
        if position is None:
            return None
        target = state.target(self.clock.server_now_ms())
        paused = await self.media.is_paused()
        guarded = self._guarded()

        if state.is_playing == paused and not guarded:
            if state.is_playing:
                await self.media.play()
            else:
                await self.media.pause()
            paused = not state.is_playing
            self.note_local_transition()
            guarded = True

        if not state.is_playing:
            return await self._hold_paused(state, position, target, guarded)

        decision = compute_drift_correction(
            position=position,
            target=target,
            rtt_ms=self.clock.rtt_ms,
            controller=self.rate_controller,
            base_rate=state.playback_rate,
            applied_rate=self.applied_rate,
            dt=dt,
            playing=not paused,
            hard_seek_min_s=self.config.hard_seek_min_s,
            rate_epsilon=self.config.rate_epsilon,
        )
        if decision.action == "hard_seek":
            if guarded:
                return DriftDecision("none", self.applied_rate, target, decision.drift)
            await self.media.seek(decision.target)
            self.note_local_transition()
            await self._apply_rate(self.rate_controller.neutral(state.playback_rate))
            logger.info("Hard seek: drift %.2fs -> %.2fs", decision.drift, decision.target)
        elif decision.action == "rate_adjust":
            await self._apply_rate(decision.rate)
        logger.debug("Drift %.3fs action=%s rate=%.3f", decision.drift, decision.action, self.applied_rate)
        return decision

    async def _hold_paused(self, state: TimelineState, position: float, target: float,
                           guarded: bool) -> DriftDecision:
        self.rate_controller.reset()
        await self._apply_rate(self.rate_controller.neutral(state.playback_rate))
        drift = position - target
        if abs(drift) > self.config.paused_seek_tolerance_s and not guarded:
            await self.media.seek(target)
            self.note_local_transition()
            return DriftDecision("hard_seek", self.applied_rate, target, drift)
        return DriftDecision("none", self.applied_rate, target, drift)


class HostForwarder:
    """
    Forwards the authoritative participant's local transitions to the room.
    Play and pause go out immediately; seek and rate bursts are debounced and
    only the last value is sent.
    """

    def __init__(self, send_func: Callable[[Message], Awaitable[None]], debounce_ms: int = 130):
        self.send = send_func
        self.debounce_s = debounce_ms / 1000.0
        self.enabled = False
        self._pending: dict[str, asyncio.Task] = {}

    async def on_play(self) -> None:
        if self.enabled:
            await self.send(Play())

    async def on_pause(self, position: Optional[float]) -> None:
        if self.enabled:
            await self.send(Pause(at_media_time=position))

    def on_seek(self, position: float) -> None:
        if self.enabled:
            self._debounce(Seek(to_media_time=max(0.0, position)))

    def on_rate(self, rate: float) -> None:
        if self.enabled:
            self._debounce(Rate(playback_rate=rate))

    def _debounce(self, message: Message) -> None:
        previous = self._pending.pop(message.msg_type, None)
        if previous:
            previous.cancel()
        self._pending[message.msg_type] = asyncio.create_task(self._send_later(message))

    async def _send_later(self, message: Message) -> None:
        await asyncio.sleep(self.debounce_s)
        self._pending.pop(message.msg_type, None)
        try:
            await self.send(message)
        except Exception as e:
            logger.warning("Failed to forward %s: %s", message.msg_type, e)

    def cancel(self) -> None:
        for task in self._pending.values():
            task.cancel()
        self._pending.clear()
