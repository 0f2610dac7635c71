from dataclasses import dataclass, field
from enum import Enum
from types import MappingProxyType
from typing import Mapping


class Group(str, Enum):
    BLUE = "blue"
    GREEN = "green"

    def other(self) -> "Group":
        return Group.GREEN if self is Group.BLUE else Group.BLUE


class Lifecycle(str, Enum):
    PROVISIONING = "provisioning"
    RUNNING = "running"
    TERMINATING = "terminating"


class HealthStatus(str, Enum):
    HEALTHY = "healthy"
    UNHEALTHY = "unhealthy"
    UNKNOWN = "unknown"


@dataclass(frozen=True)
class HealthVerdict:
    instance_id: str
    status: HealthStatus = HealthStatus.UNKNOWN
    consecutive_successes: int = 0
    consecutive_failures: int = 0
    observed_at: float = 0.0


@dataclass(frozen=True)
class Instance:
    id: str
    version: str
    group: Group
    address: str = ""
    artifact_ref: str = ""
    lifecycle: Lifecycle = Lifecycle.RUNNING
    health: HealthVerdict | None = None
    created_at: float = 0.0

    @property
    def status(self) -> HealthStatus:
        return self.health.status if self.health else HealthStatus.UNKNOWN

    @property
    def is_healthy(self) -> bool:
        return self.lifecycle is Lifecycle.RUNNING and self.status is HealthStatus.HEALTHY


@dataclass(frozen=True)
class GroupState:
    name: Group
    instance_ids: frozenset = frozenset()
    weight: int = 0
    desired_count: int = 0
    version: str | None = None

    @property
    def active(self) -> bool:
        return self.weight > 0


@dataclass(frozen=True)
class FleetSnapshot:
    """Immutable, point-in-time copy of the registry."""

    instances: Mapping[str, Instance]
    groups: Mapping[Group, GroupState]
    taken_at: float = 0.0

    def members(self, group: Group) -> list[Instance]:
        """Instances of a group that are not being torn down, oldest first."""
        ids = self.groups[group].instance_ids
        live = [
            self.instances[i] for i in ids
            if self.instances[i].lifecycle is not Lifecycle.TERMINATING
        ]
        return sorted(live, key=lambda i: (i.created_at, i.id))

    def healthy_count(self, group: Group) -> int:
        return sum(1 for i in self.members(group) if i.is_healthy)

    def healthy_fraction(self, group: Group, expected: int | None = None) -> float:
        """Healthy instances over `expected` (defaults to the group's desired count)."""
        if expected is None:
            expected = self.groups[group].desired_count
        if expected <= 0:
            return 0.0
        return min(1.0, self.healthy_count(group) / expected)

    def serving_group(self) -> Group | None:
        """The group carrying all traffic, if exactly one does."""
        for state in self.groups.values():
            if state.weight == 100:
                return state.name
        return None

    def active_groups(self) -> list[Group]:
        return [g.name for g in self.groups.values() if g.active]

    def weights(self) -> dict[str, int]:
        return {g.value: s.weight for g, s in self.groups.items()}

    def to_dict(self) -> dict:
        return {
            "taken_at": self.taken_at,
            "groups": {
                g.value: {
                    "weight": s.weight,
                    "desired_count": s.desired_count,
                    "version": s.version,
                    "healthy": self.healthy_count(g),
                    "instances": [
                        {
                            "id": i.id,
                            "version": i.version,
                            "address": i.address,
                            "lifecycle": i.lifecycle.value,
                            "status": i.status.value,
                            "created_at": i.created_at,
                        }
                        for i in self.members(g)
                    ],
                }
                for g, s in self.groups.items()
            },
        }


def freeze(mapping: dict) -> Mapping:
    return MappingProxyType(dict(mapping))


# ── Rollouts ──────────────────────────────────────────────────


class RolloutState(str, Enum):
    IDLE = "idle"
    PROVISIONING = "provisioning"
    RAMPING = "ramping"
    VERIFYING = "verifying"
    COMPLETING = "completing"
    ROLLING_BACK = "rolling_back"


class PlanOutcome(str, Enum):
    IN_PROGRESS = "in_progress"
    SUCCEEDED = "succeeded"
    FAILED = "failed"


@dataclass
class StepRecord:
    weight: int
    timestamp: float
    outcome: str = "soaking"


@dataclass
class RolloutPlan:
    plan_id: str
    target_version: str
    artifact_ref: str
    source_group: Group
    target_group: Group
    desired_count: int
    state: RolloutState = RolloutState.PROVISIONING
    state_entered_at: float = 0.0
    step_index: int = -1
    step_applied_at: float | None = None
    steps: list[StepRecord] = field(default_factory=list)
    outcome: PlanOutcome = PlanOutcome.IN_PROGRESS
    reason: str | None = None
    started_at: float = 0.0
    finished_at: float | None = None
    provision_requested: bool = False
    traffic_restored: bool = False

    @property
    def terminal(self) -> bool:
        return self.outcome is not PlanOutcome.IN_PROGRESS

    @property
    def current_weight(self) -> int:
        return self.steps[-1].weight if self.steps else 0

    def to_dict(self) -> dict:
        return {
            "plan_id": self.plan_id,
            "target_version": self.target_version,
            "artifact_ref": self.artifact_ref,
            "source_group": self.source_group.value,
            "target_group": self.target_group.value,
            "desired_count": self.desired_count,
            "state": self.state.value,
            "step_index": self.step_index,
            "steps": [
                {"weight": s.weight, "timestamp": s.timestamp, "outcome": s.outcome}
                for s in self.steps
            ],
            "outcome": self.outcome.value,
            "reason": self.reason,
            "started_at": self.started_at,
            "finished_at": self.finished_at,
        }


# ── Scaling ───────────────────────────────────────────────────


@dataclass(frozen=True)
class ScalingDecision:
    group: Group
    previous_count: int
    desired_count: int
    reason: str
    timestamp: float
    applied: bool = False

    @property
    def action(self) -> str:
        if self.desired_count > self.previous_count:
            return "scale_out"
        if self.desired_count < self.previous_count:
            return "scale_in"
        return "steady"

    def to_dict(self) -> dict:
        return {
            "group": self.group.value,
            "previous_count": self.previous_count,
            "desired_count": self.desired_count,
            "action": self.action,
            "reason": self.reason,
            "timestamp": self.timestamp,
            "applied": self.applied,
        }
