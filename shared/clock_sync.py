"""CoWatch clock skew and drift correction math."""
from __future__ import annotations
import time
from dataclasses import dataclass
from typing import Optional


@dataclass
class ProbeSample:
    t0: float  # client send time (local ms)
    t1: float  # server reply time (server ms)
    t2: float  # client recv time (local ms)

    @property
    def rtt_ms(self) -> float:
        return self.t2 - self.t0

    @property
    def skew_ms(self) -> float:
        """Instantaneous server - local offset, assuming a symmetric path."""
        return (self.t1 + self.rtt_ms / 2.0) - self.t2


class SkewEstimator:
    """Exponentially smoothed estimate of serverClock - localClock."""

    def __init__(self, alpha: float = 0.2) -> None:
        self.alpha = alpha
        self._skew_ms: float = 0.0
        self._rtt_ms: float = 0.0
        self._samples = 0

    def add_probe(self, t0: float, t1: float, t2: float) -> float:
        sample = ProbeSample(t0=t0, t1=t1, t2=t2)
        self._rtt_ms = max(0.0, sample.rtt_ms)
        if self._samples == 0:
            self._skew_ms = sample.skew_ms
        else:
            self._skew_ms += self.alpha * (sample.skew_ms - self._skew_ms)
        self._samples += 1
        return self._skew_ms

    @property
    def skew_ms(self) -> float:
        return self._skew_ms

    @property
    def rtt_ms(self) -> float:
        """Most recent raw round-trip time."""
        return self._rtt_ms

    @property
    def sample_count(self) -> int:
        return self._samples

    def server_now_ms(self, local_ms: Optional[float] = None) -> float:
        """Convert local wall-clock ms to estimated server ms."""
        if local_ms is None:
            local_ms = time.time() * 1000
        return local_ms + self._skew_ms


def hard_seek_threshold(rtt_ms: float, minimum_s: float = 1.2) -> float:
    """Drift (seconds) beyond which a hard jump beats rate correction."""
    return max(minimum_s, rtt_ms / 250.0)


def transition_guard_ms(rtt_ms: float, minimum_ms: float = 300.0) -> float:
    """Quiet period after a local play/pause/seek before reconciling again."""
    return max(minimum_ms, 2 * rtt_ms + 200.0)


class RateController:
    """
    PI controller steering playback rate around the authoritative rate.

    drift > 0 means the local position is ahead of the target.
    """

    def __init__(
        self,
        kp: float = 0.25,
        ki: float = 0.05,
        integral_limit: float = 2.0,
        band: float = 0.15,
        rate_min: float = 0.5,
        rate_max: float = 2.0,
    ) -> None:
        self.kp = kp
        self.ki = ki
        self.integral_limit = integral_limit
        self.band = band
        self.rate_min = rate_min
        self.rate_max = rate_max
        self.integral: float = 0.0

    def reset(self) -> None:
        self.integral = 0.0

    def bounds(self, base_rate: float) -> tuple[float, float]:
        lo = max(base_rate - self.band, self.rate_min)
        hi = min(base_rate + self.band, self.rate_max)
        if lo > hi:
            # Base rate outside the absolute bound: pin to the nearest edge.
            edge = self.rate_min if base_rate < self.rate_min else self.rate_max
            return edge, edge
        return lo, hi

    def neutral(self, base_rate: float) -> float:
        """Uncorrected rate: the base rate pulled inside the bounds."""
        lo, hi = self.bounds(base_rate)
        return max(lo, min(hi, base_rate))

    def update(self, drift: float, dt: float, playing: bool, base_rate: float) -> float:
        if playing and dt > 0:
            self.integral += drift * dt
            self.integral = max(-self.integral_limit, min(self.integral_limit, self.integral))
        rate = base_rate - self.kp * drift - self.ki * self.integral
        lo, hi = self.bounds(base_rate)
        return max(lo, min(hi, rate))


@dataclass
class DriftDecision:
    action: str  # "none" | "rate_adjust" | "hard_seek"
    rate: float
    target: float
    drift: float


def compute_drift_correction(
    position: float,
    target: float,
    rtt_ms: float,
    controller: RateController,
    base_rate: float,
    applied_rate: float,
    dt: float,
    playing: bool,
    hard_seek_min_s: float = 1.2,
    rate_epsilon: float = 0.01,
) -> DriftDecision:
    """
    Decide one correction step.
    hard_seek: caller jumps to `target`; the controller integral is already reset.
    rate_adjust: caller applies `rate`.
    none: the rate change would be below epsilon.
    """
    drift = position - target
    if abs(drift) > hard_seek_threshold(rtt_ms, hard_seek_min_s):
        controller.reset()
        return DriftDecision("hard_seek", controller.neutral(base_rate), target, drift)
    rate = controller.update(drift, dt, playing, base_rate)
    if abs(rate - applied_rate) > rate_epsilon:
        return DriftDecision("rate_adjust", rate, target, drift)
    return DriftDecision("none", applied_rate, target, drift)
