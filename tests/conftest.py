import pytest

from fleet.autoscaler import Autoscaler, AutoscalerConfig, StaticLoadSource
from fleet.clock import ManualClock
from fleet.executor import Executor, RetryPolicy
from fleet.health import HealthConfig, HealthEvaluator, StaticProbe
from fleet.models import Group, HealthStatus, HealthVerdict
from fleet.providers import InMemoryProvider
from fleet.registry import FleetRegistry
from fleet.rollout import RolloutConfig, RolloutController
from fleet.routing import InMemoryRouter


@pytest.fixture
def clock():
    return ManualClock(start=1000.0)


@pytest.fixture
def provider(clock):
    return InMemoryProvider(clock)


@pytest.fixture
def registry(clock):
    return FleetRegistry(clock)


@pytest.fixture
def mark(registry):
    """Force an instance's debounced status without running probes."""

    def _mark(instance_id: str, status: HealthStatus = HealthStatus.HEALTHY):
        healthy = status is HealthStatus.HEALTHY
        registry.set_health(
            instance_id,
            HealthVerdict(
                instance_id=instance_id,
                status=status,
                consecutive_successes=2 if healthy else 0,
                consecutive_failures=0 if healthy else 2,
            ),
        )

    return _mark


@pytest.fixture
def seed(provider, registry, mark):
    """Load `count` healthy blue instances running v1 with all traffic on blue."""

    def _seed(count: int = 3, version: str = "v1", artifact_ref: str = "registry/app:v1"):
        instances = provider.seed(Group.BLUE, version, artifact_ref, count)
        registry.load(instances)
        for instance in instances:
            mark(instance.id)
        return instances

    return _seed


@pytest.fixture
def router():
    return InMemoryRouter()


@pytest.fixture
def probe():
    return StaticProbe()


@pytest.fixture
def executor(registry, provider, clock):
    return Executor(registry, provider, clock, RetryPolicy(attempts=5, base_delay=0.5, max_delay=30))


@pytest.fixture
def evaluator(registry, probe, clock):
    return HealthEvaluator(registry, probe, clock, HealthConfig(timeout=0.05))


@pytest.fixture
def rollout_config():
    return RolloutConfig(
        steps=(10, 30, 60, 100),
        step_soak_duration=60,
        provision_timeout=300,
        verification_window=120,
        min_healthy_fraction=1.0,
        routing_convergence_window=5,
    )


@pytest.fixture
def controller(registry, router, executor, clock, rollout_config):
    return RolloutController(registry, router, executor, clock, rollout_config)


@pytest.fixture
def load():
    return StaticLoadSource(utilization=50)


@pytest.fixture
def autoscaler_config():
    return AutoscalerConfig(
        min_capacity=2,
        max_capacity=6,
        scale_out_threshold=70,
        scale_in_threshold=30,
        scale_out_evaluation_periods=3,
        scale_in_evaluation_periods=2,
        scale_in_cooldown=300,
        scale_step=1,
    )


@pytest.fixture
def autoscaler(registry, executor, load, clock, autoscaler_config, controller):
    return Autoscaler(registry, executor, load, clock, autoscaler_config, rollout=controller)
