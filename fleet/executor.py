"""
Scheduler/Executor

Converges a group's actual instance count on its desired count through the
compute provider. Mutations of one group are serialized by a per-group lock,
so the rollout controller and the autoscaler can never interleave creates and
terminates on the same group.
"""

import asyncio
import logging
from collections import defaultdict
from dataclasses import dataclass, field, replace

from fleet import metrics
from fleet.errors import ControllerError, NotFound, RoutingApplyError, TransientProviderError
from fleet.models import Group, HealthStatus, Instance, Lifecycle

logger = logging.getLogger(__name__)

# Scale-in removes the least useful instances first
_VICTIM_ORDER = {HealthStatus.UNHEALTHY: 0, HealthStatus.UNKNOWN: 1, HealthStatus.HEALTHY: 2}


@dataclass(frozen=True)
class RetryPolicy:
    attempts: int = 5
    base_delay: float = 0.5
    max_delay: float = 30.0

    @classmethod
    def from_settings(cls, settings) -> "RetryPolicy":
        return cls(
            attempts=settings.PROVIDER_RETRY_ATTEMPTS,
            base_delay=settings.PROVIDER_RETRY_BASE_DELAY,
            max_delay=settings.PROVIDER_RETRY_MAX_DELAY,
        )

    def backoff(self, attempt: int) -> float:
        return min((2 ** (attempt - 1)) * self.base_delay, self.max_delay)


@dataclass
class ReconcileResult:
    group: Group
    desired_count: int
    created: list[str] = field(default_factory=list)
    terminated: list[str] = field(default_factory=list)
    failures: list[str] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return not self.failures

    @property
    def error(self) -> str | None:
        return "; ".join(self.failures) if self.failures else None


class Executor:
    def __init__(self, registry, provider, clock, retry: RetryPolicy | None = None, router=None):
        self.registry = registry
        self.provider = provider
        self.clock = clock
        self.retry = retry or RetryPolicy()
        self.router = router
        self._locks: dict[Group, asyncio.Lock] = defaultdict(asyncio.Lock)

    def is_busy(self, group: Group) -> bool:
        return self._locks[group].locked()

    async def _with_retry(self, operation: str, call):
        for attempt in range(1, max(1, self.retry.attempts) + 1):
            try:
                return await call()
            except TransientProviderError as e:
                if attempt >= self.retry.attempts:
                    logger.error(
                        f"{operation} failed after {attempt} attempts: {e}",
                        extra={"attempt": attempt},
                    )
                    raise
                delay = self.retry.backoff(attempt)
                logger.warning(
                    f"{operation} attempt {attempt} failed: {e}; retrying in {delay}s",
                    extra={"attempt": attempt},
                )
                metrics.record_provider_retry(operation.split()[0])
                await self.clock.sleep(delay)

    async def _create(self, group: Group, version: str, artifact_ref: str) -> Instance:
        instance = await self._with_retry(
            f"provision {group.value}",
            lambda: self.provider.provision(group, version, artifact_ref),
        )
        # Not running until its first healthy verdict
        instance = replace(instance, lifecycle=Lifecycle.PROVISIONING)
        self.registry.register(instance)
        return instance

    async def _terminate(self, instance: Instance) -> None:
        self.registry.set_lifecycle(instance.id, Lifecycle.TERMINATING)
        try:
            await self._with_retry(
                f"terminate {instance.id}",
                lambda: self.provider.terminate(instance.id),
            )
        except NotFound:
            logger.info(f"  {instance.id} was already gone")
        except ControllerError:
            # Still there as far as we know; count it again so a later pass retries
            self.registry.set_lifecycle(instance.id, instance.lifecycle)
            raise
        self.registry.deregister(instance.id)

    async def reconcile(
        self,
        group: Group,
        desired_count: int,
        version: str | None = None,
        artifact_ref: str | None = None,
    ) -> ReconcileResult:
        """Issue the minimal creates/terminates to bring `group` to `desired_count`."""
        if desired_count < 0:
            raise ValueError(f"desired count must be >= 0, got {desired_count}")
        result = ReconcileResult(group=group, desired_count=desired_count)

        async with self._locks[group]:
            self.registry.set_group_desired(group, desired_count)
            snapshot = self.registry.snapshot()
            members = snapshot.members(group)
            actual = len(members)

            if desired_count > actual:
                version = version or snapshot.groups[group].version
                artifact_ref = artifact_ref or next(
                    (i.artifact_ref for i in reversed(members) if i.version == version), None
                )
                if not version or not artifact_ref:
                    result.failures.append(f"no version/artifact known for group {group.value}")
                    return result
                self.registry.set_group_version(group, version)

                outcomes = await asyncio.gather(
                    *(self._create(group, version, artifact_ref) for _ in range(desired_count - actual)),
                    return_exceptions=True,
                )
                for outcome in outcomes:
                    if isinstance(outcome, Instance):
                        result.created.append(outcome.id)
                    elif isinstance(outcome, ControllerError):
                        result.failures.append(f"provision failed: {outcome}")
                    else:
                        raise outcome

            elif desired_count < actual:
                victims = sorted(
                    members, key=lambda i: (_VICTIM_ORDER[i.status], i.created_at, i.id)
                )[: actual - desired_count]
                outcomes = await asyncio.gather(
                    *(self._terminate(v) for v in victims), return_exceptions=True
                )
                for victim, outcome in zip(victims, outcomes):
                    if outcome is None:
                        result.terminated.append(victim.id)
                    elif isinstance(outcome, ControllerError):
                        result.failures.append(f"terminate {victim.id} failed: {outcome}")
                    else:
                        raise outcome

            if result.created or result.terminated:
                await self._refresh_routing(group, result)

        if result.created or result.terminated or result.failures:
            logger.info(
                f"Reconciled {group.value} to {desired_count}: "
                f"+{len(result.created)} -{len(result.terminated)} failed={len(result.failures)}",
                extra={"group": group.value, "desired_count": desired_count},
            )
        return result

    async def decommission(self, group: Group) -> ReconcileResult:
        return await self.reconcile(group, 0)

    async def _refresh_routing(self, group: Group, result: ReconcileResult | None = None) -> None:
        if self.router is None or self.registry.snapshot().groups[group].weight == 0:
            return
        try:
            await self.router.refresh()
        except RoutingApplyError as e:
            logger.error(
                f"Routing refresh after {group.value} membership change failed: {e}",
                extra={"group": group.value},
            )
            if result is not None:
                result.failures.append(f"routing refresh failed: {e}")

    async def sync_inventory(self) -> list[str]:
        """Deregister instances the provider no longer reports.

        Groups with a reconcile in flight are skipped; their membership is in
        motion and the next pass picks them up.
        """
        lost = []
        for group in Group:
            lock = self._locks[group]
            if lock.locked():
                continue
            async with lock:
                members = self.registry.snapshot().members(group)
                if not members:
                    continue
                try:
                    inventory = await self._with_retry("list instances", self.provider.list_instances)
                except ControllerError as e:
                    logger.error(f"Inventory sync failed: {e}")
                    return lost
                live = {i.id for i in inventory}
                gone = [i for i in members if i.id not in live]
                for instance in gone:
                    try:
                        self.registry.deregister(instance.id)
                    except NotFound:
                        continue
                    lost.append(instance.id)
                    logger.warning(
                        f"Instance {instance.id} disappeared from the provider; deregistered",
                        extra={"instance_id": instance.id, "group": group.value},
                    )
                if gone:
                    await self._refresh_routing(group)
        return lost
