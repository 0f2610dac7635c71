"""
Health Evaluator

Probes every live instance on a fixed interval and debounces the raw results
into healthy/unhealthy verdicts written back to the registry. Probe transport
is pluggable; timeouts and transport errors simply count as failed probes.
"""

import asyncio
import logging
import shlex
from dataclasses import dataclass
from typing import Protocol

import requests

from fleet import metrics
from fleet.errors import NotFound
from fleet.models import HealthStatus, HealthVerdict, Instance, Lifecycle

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class HealthConfig:
    interval: float = 5.0
    timeout: float = 3.0
    healthy_threshold: int = 2
    unhealthy_threshold: int = 2
    concurrency: int = 16

    @classmethod
    def from_settings(cls, settings) -> "HealthConfig":
        return cls(
            interval=settings.HEALTH_INTERVAL,
            timeout=settings.HEALTH_TIMEOUT,
            healthy_threshold=settings.HEALTHY_THRESHOLD,
            unhealthy_threshold=settings.UNHEALTHY_THRESHOLD,
            concurrency=settings.PROBE_CONCURRENCY,
        )


def debounce(
    previous: HealthVerdict | None,
    instance_id: str,
    success: bool,
    observed_at: float,
    healthy_threshold: int = 2,
    unhealthy_threshold: int = 2,
) -> HealthVerdict:
    """Fold one probe result into a new verdict.

    The status only flips after `healthy_threshold` consecutive successes or
    `unhealthy_threshold` consecutive failures; otherwise it is carried over.
    """
    status = previous.status if previous else HealthStatus.UNKNOWN
    successes = previous.consecutive_successes if previous else 0
    failures = previous.consecutive_failures if previous else 0

    if success:
        successes, failures = successes + 1, 0
        if successes >= healthy_threshold:
            status = HealthStatus.HEALTHY
    else:
        successes, failures = 0, failures + 1
        if failures >= unhealthy_threshold:
            status = HealthStatus.UNHEALTHY

    return HealthVerdict(
        instance_id=instance_id,
        status=status,
        consecutive_successes=successes,
        consecutive_failures=failures,
        observed_at=observed_at,
    )


# ── Probes ────────────────────────────────────────────────────


class Probe(Protocol):
    async def check(self, instance: Instance) -> bool:
        ...


class HttpReadinessProbe:
    """GET the instance readiness route and expect `{"status": "ready"}`."""

    def __init__(self, path: str = "/ready", timeout: float = 3.0, session: requests.Session | None = None):
        self.path = path
        self.timeout = timeout
        self.session = session or requests.Session()

    async def check(self, instance: Instance) -> bool:
        return await asyncio.to_thread(self._check, instance)

    def _check(self, instance: Instance) -> bool:
        response = self.session.get(f"http://{instance.address}{self.path}", timeout=self.timeout)
        if response.status_code != 200:
            return False
        try:
            body = response.json()
        except ValueError:
            return False
        return body.get("status") == "ready"


class TcpProbe:
    async def check(self, instance: Instance) -> bool:
        host, _, port = instance.address.rpartition(":")
        reader, writer = await asyncio.open_connection(host or "localhost", int(port))
        writer.close()
        await writer.wait_closed()
        return True


class CommandProbe:
    """Run a command per instance; `{address}` and `{id}` are substituted."""

    def __init__(self, command: str):
        self.command = command

    async def check(self, instance: Instance) -> bool:
        argv = shlex.split(self.command.format(address=instance.address, id=instance.id))
        proc = await asyncio.create_subprocess_exec(
            *argv,
            stdout=asyncio.subprocess.DEVNULL,
            stderr=asyncio.subprocess.DEVNULL,
        )
        try:
            return await proc.wait() == 0
        finally:
            # Cancelled by the evaluator's timeout: don't leave the child behind
            if proc.returncode is None:
                try:
                    proc.kill()
                except ProcessLookupError:
                    pass
                await proc.wait()


class StaticProbe:
    """Scriptable probe: instances are ready unless marked otherwise."""

    def __init__(self, default: bool = True):
        self.default = default
        self.results: dict[str, bool] = {}
        self.hanging: set[str] = set()

    def set(self, instance_id: str, ready: bool) -> None:
        self.results[instance_id] = ready

    async def check(self, instance: Instance) -> bool:
        if instance.id in self.hanging:
            await asyncio.sleep(3600)
        return self.results.get(instance.id, self.default)


# ── Evaluator ─────────────────────────────────────────────────


class HealthEvaluator:
    def __init__(self, registry, probe: Probe, clock, config: HealthConfig | None = None):
        self.registry = registry
        self.probe = probe
        self.clock = clock
        self.config = config or HealthConfig()
        self._semaphore = asyncio.Semaphore(max(1, self.config.concurrency))

    async def _probe_instance(self, instance: Instance) -> bool:
        async with self._semaphore:
            try:
                ok = bool(await asyncio.wait_for(self.probe.check(instance), timeout=self.config.timeout))
            except asyncio.TimeoutError:
                logger.debug(f"Probe timed out for {instance.id}", extra={"instance_id": instance.id})
                ok = False
            except Exception as e:
                logger.debug(
                    f"Probe failed for {instance.id} ({type(e).__name__}: {e})",
                    extra={"instance_id": instance.id},
                )
                ok = False
        metrics.record_probe(ok)
        return ok

    async def probe_once(self) -> dict[str, HealthVerdict]:
        """Probe all live instances concurrently and publish new verdicts."""
        snapshot = self.registry.snapshot()
        targets = [
            i for i in snapshot.instances.values()
            if i.lifecycle is not Lifecycle.TERMINATING
        ]
        results = await asyncio.gather(*(self._probe_instance(i) for i in targets))
        now = self.clock.now()

        verdicts = {}
        for instance, ok in zip(targets, results):
            verdict = debounce(
                instance.health,
                instance.id,
                ok,
                now,
                self.config.healthy_threshold,
                self.config.unhealthy_threshold,
            )
            try:
                self.registry.set_health(instance.id, verdict)
            except NotFound:
                # Decommissioned while the probe was in flight
                continue
            verdicts[instance.id] = verdict
            if verdict.status is not instance.status:
                logger.info(
                    f"Instance {instance.id} is now {verdict.status.value}",
                    extra={
                        "event_type": "health_changed",
                        "instance_id": instance.id,
                        "group": instance.group.value,
                        "status": verdict.status.value,
                    },
                )
        return verdicts

    async def run(self) -> None:
        logger.info(f"Health evaluator started (interval={self.config.interval}s)")
        while True:
            try:
                await self.probe_once()
            except Exception:
                logger.exception("Health sweep failed")
            await self.clock.sleep(self.config.interval)
