"""
Target-tracking capacity planning for the fleet.
"""

import time
from collections import deque
from dataclasses import dataclass, field, replace
from typing import Any, Callable, Deque, Dict, List, Optional

import numpy as np

from fleetctl.config.base_types import CombinePolicy, ScaleDirection
from fleetctl.config.core_configs import ScalingConfig
from fleetctl.monitoring.resource_metrics import UtilizationSample
from fleetctl.utils.logger import get_logger

from .exceptions import NoSamplesError


@dataclass(frozen=True)
class ScalingDecision:
    """Outcome of one planner evaluation"""

    direction: ScaleDirection
    previous_count: int
    new_desired_count: int
    reason: str
    cooldown_until: Optional[float] = None
    metric: Optional[str] = None
    timestamp: float = field(default_factory=time.time)

    @property
    def is_hold(self) -> bool:
        return self.direction == ScaleDirection.HOLD

    def to_dict(self) -> Dict[str, Any]:
        return {
            "direction": self.direction.value,
            "previous_count": self.previous_count,
            "new_desired_count": self.new_desired_count,
            "reason": self.reason,
            "cooldown_until": self.cooldown_until,
            "metric": self.metric,
            "timestamp": self.timestamp,
        }


class CapacityPlanner:
    """Converts utilization samples into scaling decisions"""

    METRICS = ("cpu", "memory")

    def __init__(
        self,
        config: ScalingConfig,
        sample_period: float = 60.0,
        clock: Callable[[], float] = time.time,
    ):
        self.config = config
        self.sample_period = sample_period
        self._clock = clock

        self.thresholds = {
            "cpu": config.cpu_scale_target,
            "memory": config.mem_scale_target,
        }
        self._use_max = config.statistic == "maximum"

        self.samples: Deque[UtilizationSample] = deque(maxlen=10000)
        self.scaling_decisions: Deque[Dict[str, Any]] = deque(
            maxlen=config.history_size
        )

        self._scale_out_cooldown_until = float("-inf")
        self._scale_in_cooldown_until = float("-inf")

        self.logger = get_logger(__name__)

    @property
    def retention(self) -> float:
        return max(self.config.evaluation_window, self.config.scale_in_window) + (
            self.sample_period
        )

    def record_sample(self, sample: UtilizationSample) -> None:
        """Record a utilization sample"""
        self.samples.append(sample)

    def evaluate(
        self, current_desired: int, now: Optional[float] = None
    ) -> ScalingDecision:
        """Evaluate the window and decide. Never raises; falls back to Hold."""
        now = self._clock() if now is None else now

        try:
            decision = self._evaluate(current_desired, now)
        except NoSamplesError as e:
            self.logger.warning(f"Holding fleet size: {e}")
            decision = self._hold(current_desired, str(e), now)
        except Exception as e:
            self.logger.error(f"Error in capacity planning: {e}")
            decision = self._hold(current_desired, f"Error: {e}", now)

        self._record_scaling_decision(decision)
        return decision

    def _evaluate(self, current_desired: int, now: float) -> ScalingDecision:
        self._prune(now)

        bounded = self._clamp(current_desired)
        if bounded != current_desired:
            direction = (
                ScaleDirection.SCALE_OUT
                if bounded > current_desired
                else ScaleDirection.SCALE_IN
            )
            return ScalingDecision(
                direction=direction,
                previous_count=current_desired,
                new_desired_count=bounded,
                reason=(
                    f"Desired count {current_desired} outside "
                    f"[{self.config.min_count}, {self.config.max_count}]"
                ),
                timestamp=now,
            )

        window = self._window(now, self.config.evaluation_window)
        if not window:
            raise NoSamplesError(self.config.evaluation_window)

        proposals = [
            self._propose(metric, window, current_desired, now)
            for metric in self.METRICS
        ]
        decision = self._combine(proposals, current_desired, now)

        if decision.direction == ScaleDirection.SCALE_OUT:
            self._scale_out_cooldown_until = now + self.config.scale_out_cooldown
            decision = replace(decision, cooldown_until=self._scale_out_cooldown_until)
        elif decision.direction == ScaleDirection.SCALE_IN:
            self._scale_in_cooldown_until = now + self.config.scale_in_cooldown
            decision = replace(decision, cooldown_until=self._scale_in_cooldown_until)

        return decision

    def _propose(
        self,
        metric: str,
        window: List[UtilizationSample],
        current: int,
        now: float,
    ) -> ScalingDecision:
        threshold = self.thresholds[metric]
        value = self._window_statistic(metric, window)

        scale_out = value is not None and value > threshold
        if self.config.missing_data_breaching and any(
            not s.has_data for s in window
        ):
            scale_out = True
        scale_in = self._sustained_below(metric, threshold, now)

        shown = "no data" if value is None else f"{value:.1f}%"

        if scale_out and scale_in:
            return self._hold(
                current, f"{metric}: conflicting scale-out and scale-in signals", now
            )

        if scale_out:
            if now < self._scale_out_cooldown_until:
                return self._hold(
                    current,
                    f"{metric} {shown} above {threshold:g}% but scale-out "
                    f"cooldown active",
                    now,
                )
            new_count = min(self.config.max_count, current + self.config.step)
            if new_count == current:
                return self._hold(
                    current, f"{metric} {shown} above target, already at max_count", now
                )
            return ScalingDecision(
                direction=ScaleDirection.SCALE_OUT,
                previous_count=current,
                new_desired_count=new_count,
                reason=f"Scale out: high {metric} usage {shown} > {threshold:g}%",
                metric=metric,
                timestamp=now,
            )

        if scale_in:
            if now < self._scale_in_cooldown_until:
                return self._hold(
                    current,
                    f"{metric} below {threshold:g}% but scale-in cooldown active",
                    now,
                )
            new_count = max(self.config.min_count, current - self.config.step)
            if new_count == current:
                return self._hold(
                    current, f"{metric} below target, already at min_count", now
                )
            return ScalingDecision(
                direction=ScaleDirection.SCALE_IN,
                previous_count=current,
                new_desired_count=new_count,
                reason=(
                    f"Scale in: {metric} below {threshold:g}% for "
                    f"{self.config.scale_in_window}s"
                ),
                metric=metric,
                timestamp=now,
            )

        return self._hold(current, f"{metric} {shown} within target", now)

    def _combine(
        self, proposals: List[ScalingDecision], current: int, now: float
    ) -> ScalingDecision:
        actionable = [p for p in proposals if not p.is_hold]

        if self.config.combine_policy == CombinePolicy.FIRST:
            if actionable:
                return actionable[0]
        else:
            # Bias toward capacity: the higher desired count wins
            best = max(proposals, key=lambda p: p.new_desired_count)
            if not best.is_hold:
                return best

        return self._hold(current, "; ".join(p.reason for p in proposals), now)

    def _window_statistic(
        self, metric: str, window: List[UtilizationSample]
    ) -> Optional[float]:
        values = [
            s.value(metric, use_max=self._use_max) for s in window if s.has_data
        ]
        if not values:
            return None

        statistic = self.config.statistic
        if statistic == "average":
            return float(np.mean(values))
        if statistic == "maximum":
            return max(values)
        # pNN
        return float(np.percentile(values, float(statistic[1:])))

    def _sustained_below(self, metric: str, threshold: float, now: float) -> bool:
        window = self._window(now, self.config.scale_in_window)
        required = max(1, int(self.config.scale_in_window // self.sample_period))
        if len(window) < required:
            return False

        for sample in window:
            value = sample.value(metric, use_max=self._use_max)
            if value is None or value >= threshold:
                return False
        return True

    def _window(self, now: float, seconds: float) -> List[UtilizationSample]:
        return [s for s in self.samples if now - seconds < s.timestamp <= now]

    def _prune(self, now: float) -> None:
        while self.samples and now - self.samples[0].timestamp > self.retention:
            self.samples.popleft()

    def _clamp(self, count: int) -> int:
        return max(self.config.min_count, min(self.config.max_count, count))

    def _hold(self, current: int, reason: str, now: float) -> ScalingDecision:
        return ScalingDecision(
            direction=ScaleDirection.HOLD,
            previous_count=current,
            new_desired_count=current,
            reason=reason,
            timestamp=now,
        )

    def _record_scaling_decision(self, decision: ScalingDecision) -> None:
        self.scaling_decisions.append(decision.to_dict())
        if not decision.is_hold:
            self.logger.info(
                "Scaling decision",
                direction=decision.direction.value,
                previous_count=decision.previous_count,
                new_desired_count=decision.new_desired_count,
                reason=decision.reason,
                cooldown_until=decision.cooldown_until,
            )

    def cooldown_status(self, now: Optional[float] = None) -> Dict[str, float]:
        """Seconds left on each cooldown"""
        now = self._clock() if now is None else now
        return {
            "scale_out": max(0.0, self._scale_out_cooldown_until - now),
            "scale_in": max(0.0, self._scale_in_cooldown_until - now),
        }

    def get_scaling_history(self, limit: int = 20) -> List[Dict[str, Any]]:
        """Get recent scaling decisions"""
        return list(self.scaling_decisions)[-limit:]
