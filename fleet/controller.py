import asyncio
import logging

from fleet import metrics
from fleet.autoscaler import Autoscaler, AutoscalerConfig, HttpLoadSource, StaticLoadSource
from fleet.clock import SystemClock
from fleet.errors import RoutingApplyError
from fleet.executor import Executor, RetryPolicy
from fleet.health import (
    CommandProbe,
    HealthConfig,
    HealthEvaluator,
    HttpReadinessProbe,
    StaticProbe,
    TcpProbe,
)
from fleet.models import Group
from fleet.providers import DockerProvider, InMemoryProvider
from fleet.registry import FleetRegistry
from fleet.rollout import RolloutConfig, RolloutController
from fleet.routing import InMemoryRouter, NginxUpstreamRouter

logger = logging.getLogger(__name__)


def build_provider(settings, clock):
    if settings.COMPUTE_BACKEND == "docker":
        return DockerProvider(
            settings.SERVICE_NAME,
            container_port=settings.CONTAINER_PORT,
            network=settings.DOCKER_NETWORK,
        )
    if settings.COMPUTE_BACKEND != "memory":
        raise ValueError(f"unknown COMPUTE_BACKEND '{settings.COMPUTE_BACKEND}'")
    provider = InMemoryProvider(clock, port=settings.CONTAINER_PORT)
    provider.seed(Group.BLUE, settings.INITIAL_VERSION, settings.INITIAL_ARTIFACT, settings.INITIAL_COUNT)
    return provider


def build_router(settings, registry):
    if settings.ROUTER_BACKEND == "nginx":
        return NginxUpstreamRouter(
            registry, settings.NGINX_CONF_PATH, container=settings.NGINX_CONTAINER
        )
    if settings.ROUTER_BACKEND != "memory":
        raise ValueError(f"unknown ROUTER_BACKEND '{settings.ROUTER_BACKEND}'")
    weights = registry.snapshot().weights()
    return InMemoryRouter({Group(g): w for g, w in weights.items()})


def build_probe(settings):
    # In-memory instances have no endpoints to probe
    if settings.PROBE_KIND == "static" or settings.COMPUTE_BACKEND == "memory":
        return StaticProbe()
    if settings.PROBE_KIND == "tcp":
        return TcpProbe()
    if settings.PROBE_KIND == "command":
        return CommandProbe(settings.HEALTH_COMMAND)
    return HttpReadinessProbe(settings.READINESS_PATH, timeout=settings.HEALTH_TIMEOUT)


def build_load_source(settings):
    if settings.COMPUTE_BACKEND == "memory":
        return StaticLoadSource()
    return HttpLoadSource(settings.LOAD_PATH, settings.LOAD_FIELD, timeout=settings.HEALTH_TIMEOUT)


class FleetController:
    """Owns the registry and wires the three control loops around it."""

    def __init__(self, settings, clock=None, provider=None, router=None, probe=None, load_source=None):
        self.settings = settings
        self.clock = clock or SystemClock()
        self.registry = FleetRegistry(self.clock)
        self.provider = provider or build_provider(settings, self.clock)
        self._router = router
        self.probe = probe or build_probe(settings)
        self.load_source = load_source or build_load_source(settings)
        self.executor = Executor(
            self.registry, self.provider, self.clock, RetryPolicy.from_settings(settings)
        )
        self.health = None
        self.rollout = None
        self.autoscaler = None
        self._tasks: list[asyncio.Task] = []
        self.started = False

    async def start(self, run_loops: bool = True) -> None:
        instances = await self.provider.list_instances()
        self.registry.load(instances)
        snapshot = self.registry.snapshot()

        router = self._router or build_router(self.settings, self.registry)
        self.health = HealthEvaluator(
            self.registry, self.probe, self.clock, HealthConfig.from_settings(self.settings)
        )
        self.rollout = RolloutController(
            self.registry, router, self.executor, self.clock,
            RolloutConfig.from_settings(self.settings),
        )
        self.autoscaler = Autoscaler(
            self.registry, self.executor, self.load_source, self.clock,
            AutoscalerConfig.from_settings(self.settings), rollout=self.rollout,
        )
        self.executor.router = router

        serving = snapshot.serving_group()
        if serving and snapshot.members(serving.other()):
            # An interrupted rollout left both groups running: pin traffic to the larger one
            logger.warning(
                f"Found {len(snapshot.members(serving.other()))} leftover {serving.other().value} "
                f"instances; routing all traffic to {serving.value}"
            )
            try:
                await router.set_weight(serving, 100)
            except RoutingApplyError as e:
                logger.critical(f"Could not pin traffic to {serving.value}: {e}")
        elif serving and snapshot.members(serving):
            try:
                await router.refresh()
            except RoutingApplyError as e:
                logger.critical(f"Could not render routing for the loaded fleet: {e}")

        metrics.set_controller_info(
            self.settings.SERVICE_NAME, self.settings.COMPUTE_BACKEND, self.settings.ROUTER_BACKEND
        )
        metrics.observe_fleet(snapshot)

        if run_loops:
            self._tasks = [
                asyncio.create_task(self.health.run(), name="health-evaluator"),
                asyncio.create_task(self.rollout.run(), name="rollout-controller"),
                asyncio.create_task(self.autoscaler.run(), name="autoscaler"),
            ]
        self.started = True
        logger.info(
            f"Fleet controller ready: {len(instances)} instances, serving={serving.value if serving else None}"
        )

    async def stop(self) -> None:
        for task in self._tasks:
            task.cancel()
        await asyncio.gather(*self._tasks, return_exceptions=True)
        self._tasks = []
        self.started = False
        logger.info("Fleet controller stopped")
