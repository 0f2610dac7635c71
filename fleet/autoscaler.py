"""
Autoscaler

Threshold/hysteresis control loop over the group that carries all traffic.
Scale-out reacts after a run of hot ticks; scale-in additionally waits out a
cooldown since the last scaling action. While a rollout is active the loop
keeps evaluating, but actions on the rollout's source group are deferred.
Each tick first drops instances the provider no longer reports, so drift
healing sees the real membership.
"""

import asyncio
import logging
import statistics
from dataclasses import dataclass
from typing import Protocol

import requests

from fleet import metrics
from fleet.errors import CapacityBoundViolation
from fleet.models import FleetSnapshot, Group, Instance, ScalingDecision

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class AutoscalerConfig:
    min_capacity: int = 2
    max_capacity: int = 6
    scale_out_threshold: float = 70.0
    scale_in_threshold: float = 30.0
    scale_out_evaluation_periods: int = 3
    scale_in_evaluation_periods: int = 5
    scale_in_cooldown: float = 300.0
    scale_step: int = 1
    tick_interval: float = 15.0

    @classmethod
    def from_settings(cls, settings) -> "AutoscalerConfig":
        return cls(
            min_capacity=settings.MIN_CAPACITY,
            max_capacity=settings.MAX_CAPACITY,
            scale_out_threshold=settings.SCALE_OUT_THRESHOLD,
            scale_in_threshold=settings.SCALE_IN_THRESHOLD,
            scale_out_evaluation_periods=settings.SCALE_OUT_EVALUATION_PERIODS,
            scale_in_evaluation_periods=settings.SCALE_IN_EVALUATION_PERIODS,
            scale_in_cooldown=settings.SCALE_IN_COOLDOWN,
            scale_step=settings.SCALE_STEP,
            tick_interval=settings.AUTOSCALER_TICK,
        )


def clamp_capacity(requested: int, config: AutoscalerConfig) -> int:
    """Return `requested` if within bounds, else raise with the clamped value."""
    clamped = max(config.min_capacity, min(config.max_capacity, requested))
    if clamped != requested:
        raise CapacityBoundViolation(requested, clamped)
    return requested


# ── Load sources ──────────────────────────────────────────────


class LoadSource(Protocol):
    async def sample(self, instances: list[Instance]) -> dict[str, float]:
        ...


class StaticLoadSource:
    """Returns one configurable utilization for every instance (tests, demo backend)."""

    def __init__(self, utilization: float = 50.0):
        self.utilization = utilization
        self.overrides: dict[str, float] = {}

    async def sample(self, instances: list[Instance]) -> dict[str, float]:
        return {i.id: self.overrides.get(i.id, self.utilization) for i in instances}


class HttpLoadSource:
    """Reads a numeric field from each instance's JSON status route."""

    def __init__(self, path: str = "/health/deep", field: str = "utilization", timeout: float = 3.0):
        self.path = path
        self.field = field
        self.timeout = timeout
        self.session = requests.Session()

    async def sample(self, instances: list[Instance]) -> dict[str, float]:
        readings = await asyncio.gather(
            *(asyncio.to_thread(self._read, i) for i in instances), return_exceptions=True
        )
        samples = {}
        for instance, reading in zip(instances, readings):
            if isinstance(reading, (requests.RequestException, ValueError, KeyError, TypeError)):
                logger.debug(f"No load reading from {instance.id}: {reading}")
            elif isinstance(reading, BaseException):
                raise reading
            else:
                samples[instance.id] = reading
        return samples

    def _read(self, instance: Instance) -> float:
        response = self.session.get(f"http://{instance.address}{self.path}", timeout=self.timeout)
        response.raise_for_status()
        return float(response.json()[self.field])


# ── Control loop ──────────────────────────────────────────────


class Autoscaler:
    def __init__(self, registry, executor, load_source: LoadSource, clock, config: AutoscalerConfig | None = None, rollout=None):
        self.registry = registry
        self.executor = executor
        self.load_source = load_source
        self.clock = clock
        self.config = config or AutoscalerConfig()
        self.rollout = rollout
        self.high_streak = 0
        self.low_streak = 0
        self.evaluated_group: Group | None = None
        self.last_scaled_at: float | None = None
        self.last_decision: ScalingDecision | None = None

    def _deferred(self, group: Group, decision: ScalingDecision) -> bool:
        """Whether an active rollout owns this action.

        The source group is left alone until the plan finishes. The target may
        grow while it carries all traffic, but shrinking it below the plan's
        count would read as a health regression.
        """
        plan = self.rollout.active_plan if self.rollout else None
        if plan is None:
            return False
        return group is plan.source_group or decision.action == "scale_in"

    async def tick(self) -> ScalingDecision | None:
        await self.executor.sync_inventory()
        snapshot = self.registry.snapshot()
        group = snapshot.serving_group()
        if group is not self.evaluated_group:
            # Streaks only count consecutive readings of one fleet
            self.high_streak = self.low_streak = 0
            self.evaluated_group = group
        if group is None:
            logger.debug("No single serving group; skipping autoscaler tick")
            return None

        serving = [i for i in snapshot.members(group) if i.is_healthy]
        samples = await self.load_source.sample(serving) if serving else {}
        if not samples:
            logger.debug(f"No load samples for {group.value}; skipping autoscaler tick")
            return None
        average = statistics.fmean(samples.values())

        decision = self.evaluate(snapshot, group, average)
        deferred = self._deferred(group, decision)

        if decision.action != "steady" and not deferred:
            decision = await self._apply(decision)
        elif decision.action != "steady":
            decision = ScalingDecision(
                group=group,
                previous_count=decision.previous_count,
                desired_count=decision.desired_count,
                reason=f"{decision.reason}; deferred while rollout is active",
                timestamp=decision.timestamp,
            )
        elif not deferred:
            await self._heal_drift(snapshot, group)

        self.last_decision = decision
        metrics.record_scaling_decision(decision)
        log = logger.info if decision.action != "steady" else logger.debug
        log(
            f"Scaling decision for {group.value}: {decision.action} "
            f"{decision.previous_count} -> {decision.desired_count} ({decision.reason})",
            extra={
                "event_type": "scaling_decision",
                "group": group.value,
                "action": decision.action,
                "previous_count": decision.previous_count,
                "desired_count": decision.desired_count,
                "reason": decision.reason,
                "average_load": round(average, 2),
            },
        )
        return decision

    def evaluate(self, snapshot: FleetSnapshot, group: Group, average: float) -> ScalingDecision:
        """Update the breach streaks with one reading and decide a desired count."""
        now = self.clock.now()
        current = snapshot.groups[group].desired_count
        cfg = self.config

        if average > cfg.scale_out_threshold:
            self.high_streak, self.low_streak = self.high_streak + 1, 0
        elif average < cfg.scale_in_threshold:
            self.high_streak, self.low_streak = 0, self.low_streak + 1
        else:
            self.high_streak = self.low_streak = 0

        def steady(reason: str) -> ScalingDecision:
            return ScalingDecision(group, current, current, reason, now)

        if self.high_streak >= cfg.scale_out_evaluation_periods:
            desired = self._bounded(current + cfg.scale_step)
            if desired <= current:
                return steady(f"load {average:.1f} above {cfg.scale_out_threshold:g} but at max capacity")
            return ScalingDecision(
                group, current, desired,
                f"load {average:.1f} above {cfg.scale_out_threshold:g} for {self.high_streak} periods",
                now,
            )

        if self.low_streak >= cfg.scale_in_evaluation_periods:
            if self.last_scaled_at is not None and now - self.last_scaled_at < cfg.scale_in_cooldown:
                return steady("scale-in cooling down")
            # Victims are picked unhealthy-first, so with min_capacity >= 1 a
            # healthy instance survives as long as one exists now
            if snapshot.healthy_count(group) == 0:
                return steady("no healthy instance to keep serving")
            desired = self._bounded(current - cfg.scale_step)
            if desired >= current:
                return steady(f"load {average:.1f} below {cfg.scale_in_threshold:g} but at min capacity")
            return ScalingDecision(
                group, current, desired,
                f"load {average:.1f} below {cfg.scale_in_threshold:g} for {self.low_streak} periods",
                now,
            )

        if self.high_streak:
            return steady(
                f"load {average:.1f} above {cfg.scale_out_threshold:g} "
                f"({self.high_streak}/{cfg.scale_out_evaluation_periods} periods)"
            )
        if self.low_streak:
            return steady(
                f"load {average:.1f} below {cfg.scale_in_threshold:g} "
                f"({self.low_streak}/{cfg.scale_in_evaluation_periods} periods)"
            )
        return steady(f"load {average:.1f} within bounds")

    def _bounded(self, requested: int) -> int:
        try:
            return clamp_capacity(requested, self.config)
        except CapacityBoundViolation as e:
            logger.warning(f"Capacity bound: {e}", extra={"desired_count": e.clamped})
            return e.clamped

    async def _apply(self, decision: ScalingDecision) -> ScalingDecision:
        result = await self.executor.reconcile(decision.group, decision.desired_count)
        self.high_streak = self.low_streak = 0
        self.last_scaled_at = self.clock.now()
        reason = decision.reason
        if not result.ok:
            logger.error(f"Scaling {decision.group.value} incomplete: {result.error}")
            reason = f"{reason}; incomplete: {result.error}"
        return ScalingDecision(
            group=decision.group,
            previous_count=decision.previous_count,
            desired_count=decision.desired_count,
            reason=reason,
            timestamp=decision.timestamp,
            applied=True,
        )

    async def _heal_drift(self, snapshot: FleetSnapshot, group: Group) -> None:
        desired = snapshot.groups[group].desired_count
        if len(snapshot.members(group)) != desired and not self.executor.is_busy(group):
            logger.info(f"Replacing drift in {group.value}: reconciling to {desired}")
            await self.executor.reconcile(group, desired)

    async def run(self) -> None:
        logger.info(f"Autoscaler started (tick={self.config.tick_interval}s)")
        while True:
            try:
                await self.tick()
            except Exception:
                logger.exception("Autoscaler tick failed")
            await self.clock.sleep(self.config.tick_interval)
