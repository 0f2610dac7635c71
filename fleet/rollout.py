"""
Rollout Controller

Drives one blue -> green cutover at a time:

    Idle -> Provisioning -> Ramping -> Verifying -> Completing  -> Idle
                 |              |           |
                 +--------------+-----------+--> RollingBack -> Idle

`decide()` is a pure function of (plan, fleet snapshot, now, config) that says
where the plan should go next; `RolloutController.tick()` applies it and
performs the side effects (provisioning, router weights, decommissioning).
Ticks are driven externally, so every transition can be exercised with a
logical clock.
"""

import asyncio
import logging
import uuid
from collections import OrderedDict
from dataclasses import dataclass

from fleet import metrics
from fleet.errors import ControllerError, HealthRegression, NotFound, RolloutInProgress, RoutingApplyError
from fleet.models import FleetSnapshot, PlanOutcome, RolloutPlan, RolloutState, StepRecord

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RolloutConfig:
    steps: tuple = (10, 30, 60, 100)
    step_soak_duration: float = 60.0
    provision_timeout: float = 300.0
    verification_window: float = 120.0
    min_healthy_fraction: float = 1.0
    routing_convergence_window: float = 5.0
    tick_interval: float = 1.0
    history_limit: int = 20

    @classmethod
    def from_settings(cls, settings) -> "RolloutConfig":
        return cls(
            steps=tuple(settings.RAMP_STEPS),
            step_soak_duration=settings.STEP_SOAK_DURATION,
            provision_timeout=settings.PROVISION_TIMEOUT,
            verification_window=settings.VERIFICATION_WINDOW,
            min_healthy_fraction=settings.MIN_HEALTHY_FRACTION,
            routing_convergence_window=settings.ROUTING_CONVERGENCE_WINDOW,
            tick_interval=settings.ROLLOUT_TICK,
        )


@dataclass(frozen=True)
class Decision:
    next_state: RolloutState
    reason: str | None = None
    advance: bool = False


# ── Pure transition logic ─────────────────────────────────────


def check_target_health(plan: RolloutPlan, snapshot: FleetSnapshot, config: RolloutConfig, where: str) -> None:
    fraction = snapshot.healthy_fraction(plan.target_group, plan.desired_count)
    if fraction < config.min_healthy_fraction:
        raise HealthRegression(f"health regression {where}")


def decide(plan: RolloutPlan, snapshot: FleetSnapshot, now: float, config: RolloutConfig) -> Decision:
    if plan.state is RolloutState.PROVISIONING:
        if snapshot.healthy_fraction(plan.target_group, plan.desired_count) >= config.min_healthy_fraction:
            return Decision(RolloutState.RAMPING, advance=True)
        if now - plan.state_entered_at >= config.provision_timeout:
            healthy = snapshot.healthy_count(plan.target_group)
            return Decision(
                RolloutState.ROLLING_BACK,
                f"provisioning timed out after {config.provision_timeout:g}s "
                f"({healthy}/{plan.desired_count} healthy)",
            )
        return Decision(RolloutState.PROVISIONING)

    if plan.state is RolloutState.RAMPING:
        try:
            check_target_health(plan, snapshot, config, f"at step {plan.current_weight}%")
        except HealthRegression as e:
            return Decision(RolloutState.ROLLING_BACK, e.reason)
        soak_until = plan.step_applied_at + config.routing_convergence_window + config.step_soak_duration
        if now < soak_until:
            return Decision(RolloutState.RAMPING)
        if plan.step_index >= len(config.steps) - 1:
            return Decision(RolloutState.VERIFYING)
        return Decision(RolloutState.RAMPING, advance=True)

    if plan.state is RolloutState.VERIFYING:
        try:
            check_target_health(plan, snapshot, config, "during verification")
        except HealthRegression as e:
            return Decision(RolloutState.ROLLING_BACK, e.reason)
        if now - plan.state_entered_at >= config.verification_window:
            return Decision(RolloutState.COMPLETING)
        return Decision(RolloutState.VERIFYING)

    # Completing and RollingBack are finished by their own actions
    return Decision(plan.state)


# ── Controller ────────────────────────────────────────────────


class RolloutController:
    def __init__(self, registry, router, executor, clock, config: RolloutConfig | None = None):
        self.registry = registry
        self.router = router
        self.executor = executor
        self.clock = clock
        self.config = config or RolloutConfig()
        self._active: RolloutPlan | None = None
        self._plans: OrderedDict[str, RolloutPlan] = OrderedDict()
        self._tick_lock = asyncio.Lock()

    @property
    def state(self) -> RolloutState:
        return self._active.state if self._active else RolloutState.IDLE

    @property
    def active_plan(self) -> RolloutPlan | None:
        return self._active

    # ── External interface ────────────────────────────────────

    def start_rollout(self, target_version: str, artifact_ref: str) -> str:
        if self._active is not None:
            raise RolloutInProgress(self._active.plan_id)

        snapshot = self.registry.snapshot()
        source = snapshot.serving_group()
        if source is None:
            raise ControllerError(f"no group carries all traffic: {snapshot.weights()}")

        now = self.clock.now()
        plan = RolloutPlan(
            plan_id=uuid.uuid4().hex[:12],
            target_version=target_version,
            artifact_ref=artifact_ref,
            source_group=source,
            target_group=source.other(),
            desired_count=max(1, snapshot.groups[source].desired_count),
            state=RolloutState.PROVISIONING,
            state_entered_at=now,
            started_at=now,
        )
        self._active = plan
        self._remember(plan)
        metrics.record_transition(RolloutState.IDLE, RolloutState.PROVISIONING)
        logger.info(
            f"ROLLOUT START: {plan.source_group.value} -> {plan.target_group.value} "
            f"({target_version}, {plan.desired_count} instances)",
            extra={
                "event_type": "rollout_transition",
                "plan_id": plan.plan_id,
                "from_state": RolloutState.IDLE.value,
                "to_state": RolloutState.PROVISIONING.value,
            },
        )
        return plan.plan_id

    def cancel(self, plan_id: str, reason: str = "operator request") -> RolloutPlan:
        """Abort a plan through the same edge a health regression takes."""
        plan = self._get(plan_id)
        if plan is not self._active:
            raise ControllerError(f"plan {plan_id} already finished ({plan.outcome.value})")
        if plan.state is RolloutState.COMPLETING:
            raise ControllerError(f"plan {plan_id} is already completing")
        if plan.state is not RolloutState.ROLLING_BACK:
            self._transition(plan, RolloutState.ROLLING_BACK, f"cancelled: {reason}")
        return plan

    def get_status(self, plan_id: str) -> dict:
        plan = self._get(plan_id)
        status = plan.to_dict()
        status["controller_state"] = self.state.value
        status["weights"] = {g.value: w for g, w in self.router.current_weights().items()}
        return status

    def list_rollouts(self) -> list[dict]:
        return [p.to_dict() for p in reversed(self._plans.values())]

    def _get(self, plan_id: str) -> RolloutPlan:
        plan = self._plans.get(plan_id)
        if plan is None:
            raise NotFound(f"unknown plan '{plan_id}'")
        return plan

    def _remember(self, plan: RolloutPlan) -> None:
        self._plans[plan.plan_id] = plan
        while len(self._plans) > self.config.history_limit:
            oldest = next(iter(self._plans))
            if self._plans[oldest] is self._active:
                break
            del self._plans[oldest]

    # ── Driving the state machine ─────────────────────────────

    async def tick(self) -> RolloutState:
        async with self._tick_lock:
            plan = self._active
            if plan is not None:
                await self._drive(plan)
            return self.state

    async def run(self) -> None:
        logger.info(f"Rollout controller started (tick={self.config.tick_interval}s)")
        while True:
            try:
                await self.tick()
            except Exception:
                logger.exception("Rollout tick failed")
            await self.clock.sleep(self.config.tick_interval)

    async def _drive(self, plan: RolloutPlan) -> None:
        if plan.state is RolloutState.PROVISIONING and not plan.provision_requested:
            plan.provision_requested = True
            error = await self._provision(plan)
            if error and plan.state is RolloutState.PROVISIONING:
                self._transition(plan, RolloutState.ROLLING_BACK, f"provisioning failed: {error}")

        if plan.state is RolloutState.ROLLING_BACK:
            await self._roll_back(plan)
            return
        if plan.state is RolloutState.COMPLETING:
            await self._complete(plan)
            return

        decision = decide(plan, self.registry.snapshot(), self.clock.now(), self.config)

        if decision.next_state is RolloutState.ROLLING_BACK:
            self._close_step(plan, "regressed")
            self._transition(plan, RolloutState.ROLLING_BACK, decision.reason)
            await self._roll_back(plan)
        elif decision.advance:
            self._close_step(plan, "passed")
            if plan.state is RolloutState.PROVISIONING:
                self._transition(plan, RolloutState.RAMPING)
            await self._apply_step(plan, plan.step_index + 1)
        elif decision.next_state is not plan.state:
            self._close_step(plan, "passed")
            self._transition(plan, decision.next_state)
            if plan.state is RolloutState.COMPLETING:
                await self._complete(plan)

    async def _provision(self, plan: RolloutPlan) -> str | None:
        target = plan.target_group
        if self.registry.snapshot().members(target):
            # Leftovers from an interrupted rollout never count toward the new fleet
            leftovers = await self.executor.decommission(target)
            if not leftovers.ok:
                return leftovers.error
        result = await self.executor.reconcile(
            target, plan.desired_count, plan.target_version, plan.artifact_ref
        )
        return result.error

    async def _apply_step(self, plan: RolloutPlan, index: int) -> None:
        weight = self.config.steps[index]
        now = self.clock.now()
        try:
            await self.router.set_weight(plan.target_group, weight)
        except RoutingApplyError as e:
            plan.steps.append(StepRecord(weight=weight, timestamp=now, outcome="routing_failed"))
            self._transition(plan, RolloutState.ROLLING_BACK, f"routing apply failed at step {weight}%: {e}")
            await self._roll_back(plan)
            return

        self.registry.set_weights({plan.target_group: weight, plan.source_group: 100 - weight})
        plan.step_index = index
        plan.step_applied_at = now
        plan.steps.append(StepRecord(weight=weight, timestamp=now))
        logger.info(
            f"Rollout {plan.plan_id}: step {index + 1}/{len(self.config.steps)} "
            f"{plan.target_group.value}={weight}%",
            extra={"event_type": "rollout_step", "plan_id": plan.plan_id, "weight": weight},
        )

    async def _roll_back(self, plan: RolloutPlan) -> None:
        if not plan.traffic_restored:
            try:
                await self.router.set_weight(plan.source_group, 100)
            except RoutingApplyError as e:
                logger.critical(
                    f"Rollout {plan.plan_id}: restoring traffic to {plan.source_group.value} failed: {e}",
                    extra={"plan_id": plan.plan_id},
                )
                return
            self.registry.set_weights({plan.source_group: 100})
            plan.traffic_restored = True
            self._close_step(plan, "rolled_back")

        result = await self.executor.decommission(plan.target_group)
        if not result.ok:
            logger.error(
                f"Rollout {plan.plan_id}: tearing down {plan.target_group.value} failed, "
                f"retrying next tick: {result.error}",
                extra={"plan_id": plan.plan_id},
            )
            return
        self.registry.set_group_version(plan.target_group, None)
        self._finish(plan, PlanOutcome.FAILED)

    async def _complete(self, plan: RolloutPlan) -> None:
        result = await self.executor.decommission(plan.source_group)
        if not result.ok:
            logger.error(
                f"Rollout {plan.plan_id}: decommissioning {plan.source_group.value} failed, "
                f"retrying next tick: {result.error}",
                extra={"plan_id": plan.plan_id},
            )
            return
        self.registry.set_group_version(plan.source_group, None)
        self._finish(plan, PlanOutcome.SUCCEEDED)

    # ── Bookkeeping ───────────────────────────────────────────

    def _close_step(self, plan: RolloutPlan, outcome: str) -> None:
        if plan.steps and plan.steps[-1].outcome == "soaking":
            plan.steps[-1].outcome = outcome

    def _transition(self, plan: RolloutPlan, new_state: RolloutState, reason: str | None = None) -> None:
        old_state = plan.state
        plan.state = new_state
        plan.state_entered_at = self.clock.now()
        if reason and plan.reason is None:
            plan.reason = reason
        metrics.record_transition(old_state, new_state)
        log = logger.warning if new_state is RolloutState.ROLLING_BACK else logger.info
        log(
            f"Rollout {plan.plan_id}: {old_state.value} -> {new_state.value}"
            + (f" ({reason})" if reason else ""),
            extra={
                "event_type": "rollout_transition",
                "plan_id": plan.plan_id,
                "from_state": old_state.value,
                "to_state": new_state.value,
                "reason": reason,
            },
        )

    def _finish(self, plan: RolloutPlan, outcome: PlanOutcome) -> None:
        plan.outcome = outcome
        plan.finished_at = self.clock.now()
        self._active = None
        metrics.record_outcome(outcome.value)
        if outcome is PlanOutcome.SUCCEEDED:
            logger.info(
                f"ROLLOUT COMPLETE: {plan.target_group.value} is now active ({plan.target_version})",
                extra={"event_type": "rollout_finished", "plan_id": plan.plan_id, "status": outcome.value},
            )
        else:
            logger.error(
                f"ROLLOUT FAILED: {plan.reason}; {plan.source_group.value} keeps all traffic",
                extra={
                    "event_type": "rollout_finished",
                    "plan_id": plan.plan_id,
                    "status": outcome.value,
                    "reason": plan.reason,
                },
            )
