import dataclasses

import pytest

from fleet.autoscaler import Autoscaler, AutoscalerConfig, StaticLoadSource, clamp_capacity
from fleet.config import Settings
from fleet.errors import CapacityBoundViolation
from fleet.models import Group, HealthStatus, RolloutState


async def ticks(autoscaler, clock, n, interval=15):
    decisions = []
    for _ in range(n):
        decisions.append(await autoscaler.tick())
        clock.advance(interval)
    return decisions


async def advance_rollout(controller, evaluator, clock, until, step=5.0):
    for _ in range(400):
        await evaluator.probe_once()
        await controller.tick()
        if until():
            return
        clock.advance(step)
    raise AssertionError("rollout did not reach the expected point")


class TestClampCapacity:
    def test_within_bounds(self, autoscaler_config):
        assert clamp_capacity(4, autoscaler_config) == 4

    @pytest.mark.parametrize("requested,clamped", [(7, 6), (1, 2), (0, 2)])
    def test_out_of_bounds(self, autoscaler_config, requested, clamped):
        with pytest.raises(CapacityBoundViolation) as exc:
            clamp_capacity(requested, autoscaler_config)
        assert exc.value.clamped == clamped
        assert exc.value.requested == requested


class TestScaleOut:
    @pytest.mark.asyncio
    async def test_sustained_load_adds_an_instance(self, seed, registry, load, autoscaler, clock):
        seed(2)
        load.utilization = 85

        first, second, third = await ticks(autoscaler, clock, 3)
        assert first.action == "steady" and second.action == "steady"
        assert second.reason == "load 85.0 above 70 (2/3 periods)"
        assert third.action == "scale_out"
        assert (third.previous_count, third.desired_count) == (2, 3)
        assert third.applied

        snap = registry.snapshot()
        assert snap.groups[Group.BLUE].desired_count == 3
        assert len(snap.members(Group.BLUE)) == 3
        assert autoscaler.high_streak == 0

    @pytest.mark.asyncio
    async def test_brief_spike_is_ignored(self, seed, registry, load, autoscaler, clock):
        seed(2)
        load.utilization = 90
        await ticks(autoscaler, clock, 2)
        load.utilization = 50
        await ticks(autoscaler, clock, 1)
        load.utilization = 90
        decisions = await ticks(autoscaler, clock, 2)
        assert {d.action for d in decisions} == {"steady"}
        assert registry.snapshot().groups[Group.BLUE].desired_count == 2

    @pytest.mark.asyncio
    async def test_capped_at_max_capacity(self, seed, registry, load, autoscaler, clock):
        seed(6)
        load.utilization = 95
        decisions = await ticks(autoscaler, clock, 3)
        assert decisions[-1].action == "steady"
        assert decisions[-1].reason.endswith("but at max capacity")
        assert registry.snapshot().groups[Group.BLUE].desired_count == 6

    @pytest.mark.asyncio
    async def test_step_is_clamped_to_max(self, seed, registry, executor, clock, autoscaler_config):
        seed(5)
        config = dataclasses.replace(autoscaler_config, scale_step=3)
        autoscaler = Autoscaler(registry, executor, StaticLoadSource(99), clock, config)
        decisions = await ticks(autoscaler, clock, 3)
        assert decisions[-1].desired_count == 6
        assert len(registry.snapshot().members(Group.BLUE)) == 6

    @pytest.mark.asyncio
    async def test_average_covers_healthy_members_only(self, seed, load, autoscaler, clock, mark):
        instances = seed(3)
        load.overrides = {instances[0].id: 100, instances[1].id: 40, instances[2].id: 0}
        mark(instances[2].id, HealthStatus.UNHEALTHY)
        decision = await autoscaler.tick()
        assert decision.reason == "load 70.0 within bounds"


class TestScaleIn:
    @pytest.mark.asyncio
    async def test_scale_in_respects_cooldown(self, seed, registry, load, autoscaler, clock):
        seed(4)
        load.utilization = 10

        first, second = await ticks(autoscaler, clock, 2)
        assert first.action == "steady"
        assert second.action == "scale_in"
        assert (second.previous_count, second.desired_count) == (4, 3)
        scaled_at = second.timestamp

        cooling = await ticks(autoscaler, clock, 2)
        assert cooling[-1].reason == "scale-in cooling down"
        assert registry.snapshot().groups[Group.BLUE].desired_count == 3

        clock.advance(scaled_at + 300 - clock.now())
        decision = await autoscaler.tick()
        assert decision.action == "scale_in"
        assert decision.desired_count == 2
        assert decision.timestamp - scaled_at >= 300

    @pytest.mark.asyncio
    async def test_never_below_min_capacity(self, seed, registry, load, autoscaler, clock):
        seed(2)
        load.utilization = 5
        decisions = await ticks(autoscaler, clock, 4)
        assert {d.action for d in decisions} == {"steady"}
        assert decisions[-1].reason.endswith("but at min capacity")
        assert len(registry.snapshot().members(Group.BLUE)) == 2

    @pytest.mark.asyncio
    async def test_scale_out_is_not_gated_by_cooldown(self, seed, registry, load, autoscaler, clock):
        seed(4)
        load.utilization = 10
        await ticks(autoscaler, clock, 2)
        assert registry.snapshot().groups[Group.BLUE].desired_count == 3

        load.utilization = 90
        decisions = await ticks(autoscaler, clock, 3)
        assert decisions[-1].action == "scale_out"
        assert registry.snapshot().groups[Group.BLUE].desired_count == 4

    @pytest.mark.asyncio
    async def test_scale_in_removes_unhealthy_first(self, seed, registry, load, autoscaler, clock, mark):
        instances = seed(4)
        mark(instances[3].id, HealthStatus.UNHEALTHY)
        load.utilization = 10
        await ticks(autoscaler, clock, 2)
        remaining = {i.id for i in registry.snapshot().members(Group.BLUE)}
        assert instances[3].id not in remaining
        assert registry.snapshot().healthy_count(Group.BLUE) == 3

    def test_keeps_a_healthy_instance(self, seed, registry, autoscaler, mark):
        instances = seed(3)
        for instance in instances:
            mark(instance.id, HealthStatus.UNHEALTHY)
        snap = registry.snapshot()
        autoscaler.evaluate(snap, Group.BLUE, 10)
        decision = autoscaler.evaluate(snap, Group.BLUE, 10)
        assert decision.action == "steady"
        assert decision.reason == "no healthy instance to keep serving"


class TestDuringRollout:
    @pytest.mark.asyncio
    async def test_actions_are_deferred(self, seed, registry, load, autoscaler, controller, clock):
        seed(2)
        controller.start_rollout("v2", "registry/app:v2")
        load.utilization = 90

        decisions = await ticks(autoscaler, clock, 3)
        assert decisions[-1].action == "scale_out"
        assert not decisions[-1].applied
        assert decisions[-1].reason.endswith("deferred while rollout is active")
        assert registry.snapshot().groups[Group.BLUE].desired_count == 2
        assert len(registry.snapshot().members(Group.BLUE)) == 2

    @pytest.mark.asyncio
    async def test_target_is_evaluated_once_it_serves(self, seed, load, autoscaler, controller, evaluator, clock):
        blue = seed(4)
        load.utilization = 25
        load.overrides = {i.id: 10 for i in blue}
        first = await autoscaler.tick()
        assert first.group is Group.BLUE
        assert first.reason == "load 10.0 below 30 (1/2 periods)"

        controller.start_rollout("v2", "registry/app:v2")
        await advance_rollout(controller, evaluator, clock, lambda: controller.state is RolloutState.VERIFYING)

        # Readings of the old fleet do not carry over to the new one
        decision = await autoscaler.tick()
        assert decision.group is Group.GREEN
        assert decision.reason == "load 25.0 below 30 (1/2 periods)"

    @pytest.mark.asyncio
    async def test_target_scale_in_waits_for_verification(
        self, seed, registry, load, autoscaler, controller, evaluator, clock
    ):
        seed(4)
        load.utilization = 20
        plan_id = controller.start_rollout("v2", "registry/app:v2")
        await advance_rollout(controller, evaluator, clock, lambda: controller.state is RolloutState.VERIFYING)

        first, second = await ticks(autoscaler, clock, 2, interval=0)
        assert first.group is Group.GREEN and first.action == "steady"
        assert second.action == "scale_in"
        assert not second.applied
        assert second.reason.endswith("deferred while rollout is active")
        assert len(registry.snapshot().members(Group.GREEN)) == 4

        await advance_rollout(controller, evaluator, clock, lambda: controller.active_plan is None)
        assert controller.get_status(plan_id)["outcome"] == "succeeded"

        decision = await autoscaler.tick()
        assert decision.action == "scale_in" and decision.applied
        assert len(registry.snapshot().members(Group.GREEN)) == 3

    @pytest.mark.asyncio
    async def test_target_may_grow_while_verifying(
        self, seed, registry, load, autoscaler, controller, evaluator, clock
    ):
        seed(2)
        load.utilization = 90
        plan_id = controller.start_rollout("v2", "registry/app:v2")
        await advance_rollout(controller, evaluator, clock, lambda: controller.state is RolloutState.VERIFYING)

        decisions = await ticks(autoscaler, clock, 3, interval=0)
        assert decisions[-1].action == "scale_out" and decisions[-1].applied
        assert len(registry.snapshot().members(Group.GREEN)) == 3

        await advance_rollout(controller, evaluator, clock, lambda: controller.active_plan is None)
        assert controller.get_status(plan_id)["outcome"] == "succeeded"

    @pytest.mark.asyncio
    async def test_no_serving_group_skips_tick(self, seed, registry, autoscaler):
        seed(2)
        registry.set_weights({Group.BLUE: 60, Group.GREEN: 40})
        assert await autoscaler.tick() is None


class TestDrift:
    @pytest.mark.asyncio
    async def test_lost_instance_is_replaced(self, seed, registry, provider, autoscaler):
        instances = seed(3)
        # Gone on the substrate side only; the registry still lists it
        del provider.instances[instances[0].id]

        decision = await autoscaler.tick()
        assert decision.action == "steady"
        members = registry.snapshot().members(Group.BLUE)
        assert len(members) == 3
        assert instances[0].id not in {i.id for i in members}
        assert set(provider.instances) == {i.id for i in members}

    @pytest.mark.asyncio
    async def test_no_healthy_samples(self, seed, autoscaler, mark):
        instances = seed(2)
        for instance in instances:
            mark(instance.id, HealthStatus.UNHEALTHY)
        assert await autoscaler.tick() is None
        assert autoscaler.last_decision is None

    def test_config_from_settings(self):
        config = AutoscalerConfig.from_settings(Settings(MIN_CAPACITY=1, MAX_CAPACITY=4))
        assert (config.min_capacity, config.max_capacity) == (1, 4)
