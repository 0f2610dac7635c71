"""
Fleet Registry

Single owner of instance and group state. Every mutation runs under one lock;
readers work from immutable snapshots so they never hold it across an await.
"""

import dataclasses
import logging
import threading
from typing import Iterable, Mapping

from fleet.errors import NotFound
from fleet.models import (
    FleetSnapshot,
    Group,
    GroupState,
    HealthStatus,
    HealthVerdict,
    Instance,
    Lifecycle,
    freeze,
)

logger = logging.getLogger(__name__)


def _resolve_group(group) -> Group:
    if isinstance(group, Group):
        return group
    try:
        return Group(group)
    except ValueError:
        raise NotFound(f"unknown group '{group}'")


class FleetRegistry:
    def __init__(self, clock=None):
        self._clock = clock
        self._lock = threading.Lock()
        self._instances: dict[str, Instance] = {}
        self._groups: dict[Group, GroupState] = {g: GroupState(name=g) for g in Group}

    def _now(self) -> float:
        return self._clock.now() if self._clock else 0.0

    # ── Instances ─────────────────────────────────────────────

    def register(self, instance: Instance) -> None:
        with self._lock:
            if instance.id in self._instances:
                raise ValueError(f"instance {instance.id} is already registered")
            group = self._groups[instance.group]
            self._instances[instance.id] = instance
            self._groups[instance.group] = dataclasses.replace(
                group, instance_ids=group.instance_ids | {instance.id}
            )
        logger.debug(
            f"Registered {instance.id}",
            extra={"instance_id": instance.id, "group": instance.group.value},
        )

    def deregister(self, instance_id: str) -> Instance:
        with self._lock:
            instance = self._instances.pop(instance_id, None)
            if instance is None:
                raise NotFound(f"unknown instance '{instance_id}'")
            group = self._groups[instance.group]
            self._groups[instance.group] = dataclasses.replace(
                group, instance_ids=group.instance_ids - {instance_id}
            )
        logger.debug(f"Deregistered {instance_id}", extra={"instance_id": instance_id})
        return instance

    def set_health(self, instance_id: str, verdict: HealthVerdict) -> None:
        """Record a verdict; the first healthy one promotes a provisioning instance."""
        with self._lock:
            current = self._instances.get(instance_id)
            if current is None:
                raise NotFound(f"unknown instance '{instance_id}'")
            changes = {"health": verdict}
            if current.lifecycle is Lifecycle.PROVISIONING and verdict.status is HealthStatus.HEALTHY:
                changes["lifecycle"] = Lifecycle.RUNNING
            self._instances[instance_id] = dataclasses.replace(current, **changes)

    def set_lifecycle(self, instance_id: str, lifecycle: Lifecycle) -> None:
        self._replace_instance(instance_id, lifecycle=lifecycle)

    def _replace_instance(self, instance_id: str, **changes) -> None:
        with self._lock:
            current = self._instances.get(instance_id)
            if current is None:
                raise NotFound(f"unknown instance '{instance_id}'")
            self._instances[instance_id] = dataclasses.replace(current, **changes)

    # ── Groups ────────────────────────────────────────────────

    def set_group_weight(self, group, percent: int) -> None:
        group = _resolve_group(group)
        if not 0 <= percent <= 100:
            raise ValueError(f"weight must be within 0..100, got {percent}")
        with self._lock:
            self._groups[group] = dataclasses.replace(self._groups[group], weight=percent)

    def set_weights(self, weights: Mapping) -> None:
        """Replace the whole weight table at once; it must sum to 100."""
        resolved = {_resolve_group(g): int(w) for g, w in weights.items()}
        if any(not 0 <= w <= 100 for w in resolved.values()):
            raise ValueError(f"weights must be within 0..100: {weights}")
        if sum(resolved.values()) != 100:
            raise ValueError(f"weights must sum to 100: {weights}")
        with self._lock:
            for group, state in self._groups.items():
                self._groups[group] = dataclasses.replace(
                    state, weight=resolved.get(group, 0)
                )

    def set_group_desired(self, group, count: int) -> None:
        group = _resolve_group(group)
        if count < 0:
            raise ValueError(f"desired count must be >= 0, got {count}")
        with self._lock:
            self._groups[group] = dataclasses.replace(
                self._groups[group], desired_count=count
            )

    def set_group_version(self, group, version: str | None) -> None:
        group = _resolve_group(group)
        with self._lock:
            self._groups[group] = dataclasses.replace(self._groups[group], version=version)

    # ── Cold start & reads ────────────────────────────────────

    def load(self, instances: Iterable[Instance], weights: Mapping | None = None) -> None:
        """Rebuild state from an external inventory.

        Without explicit weights, the group holding the most instances gets all
        traffic. Desired counts and versions are inferred from what is running.
        """
        instances = list(instances)
        by_group: dict[Group, list[Instance]] = {g: [] for g in Group}
        for instance in instances:
            by_group[instance.group].append(instance)

        if weights is None:
            serving = max(Group, key=lambda g: (len(by_group[g]), g is Group.BLUE))
            weights = {serving: 100}
        resolved = {_resolve_group(g): int(w) for g, w in weights.items()}

        with self._lock:
            self._instances = {i.id: i for i in instances}
            for group in Group:
                members = by_group[group]
                versions = {i.version for i in members}
                self._groups[group] = GroupState(
                    name=group,
                    instance_ids=frozenset(i.id for i in members),
                    weight=resolved.get(group, 0),
                    desired_count=len(members),
                    version=versions.pop() if len(versions) == 1 else None,
                )
        logger.info(
            f"Registry loaded with {len(instances)} instances",
            extra={"weights": {g.value: w for g, w in resolved.items()}},
        )

    def snapshot(self) -> FleetSnapshot:
        with self._lock:
            instances = dict(self._instances)
            groups = dict(self._groups)
        return FleetSnapshot(
            instances=freeze(instances), groups=freeze(groups), taken_at=self._now()
        )
