import time

import psutil
from prometheus_client import (
    CONTENT_TYPE_LATEST,
    Counter,
    Enum,
    Gauge,
    Histogram,
    Info,
    generate_latest,
)
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import Response

from fleet.models import FleetSnapshot, Group, HealthStatus, RolloutState, ScalingDecision

# ── Metric definitions ──

http_requests_total = Counter(
    "http_requests_total",
    "Total HTTP requests",
    ["method", "path", "status_code"],
)

http_request_duration_seconds = Histogram(
    "http_request_duration_seconds",
    "HTTP request latency in seconds",
    ["method", "path"],
    buckets=[0.005, 0.01, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5],
)

rollout_state = Enum(
    "rollout_state",
    "Current rollout controller state",
    states=[s.value for s in RolloutState],
)

rollout_transitions_total = Counter(
    "rollout_transitions_total",
    "Rollout state machine transitions",
    ["from_state", "to_state"],
)

rollout_outcomes_total = Counter(
    "rollout_outcomes_total",
    "Finished rollouts by outcome",
    ["outcome"],
)

group_weight_percent = Gauge(
    "group_weight_percent",
    "Traffic weight accepted by the router per group",
    ["group"],
)

group_instances = Gauge(
    "group_instances",
    "Instances per group by health status",
    ["group", "status"],
)

group_desired_count = Gauge(
    "group_desired_count",
    "Desired instance count per group",
    ["group"],
)

scaling_decisions_total = Counter(
    "scaling_decisions_total",
    "Autoscaler decisions by action",
    ["action", "applied"],
)

provider_retries_total = Counter(
    "provider_retries_total",
    "Compute provider calls retried after a transient error",
    ["operation"],
)

health_probes_total = Counter(
    "health_probes_total",
    "Readiness probes by result",
    ["result"],
)

memory_usage_bytes = Gauge("memory_usage_bytes", "Process RSS memory in bytes")

controller_info = Info("fleet_controller", "Controlled service and backends")


# ── Path normalization ──

def normalize_path(path: str) -> str:
    """Normalize dynamic path segments to prevent metric label explosion."""
    parts = path.strip("/").split("/")
    if len(parts) >= 2 and parts[0] == "rollouts":
        if len(parts) == 3 and parts[2] == "cancel":
            return "/rollouts/{plan_id}/cancel"
        return "/rollouts/{plan_id}"
    return path


# ── Helper functions ──

def record_transition(from_state: RolloutState, to_state: RolloutState) -> None:
    rollout_transitions_total.labels(from_state=from_state.value, to_state=to_state.value).inc()
    rollout_state.state(to_state.value)


def record_outcome(outcome: str) -> None:
    rollout_outcomes_total.labels(outcome=outcome).inc()
    rollout_state.state(RolloutState.IDLE.value)


def record_scaling_decision(decision: ScalingDecision) -> None:
    scaling_decisions_total.labels(
        action=decision.action, applied=str(decision.applied).lower()
    ).inc()


def record_provider_retry(operation: str) -> None:
    provider_retries_total.labels(operation=operation).inc()


def record_probe(ok: bool) -> None:
    health_probes_total.labels(result="success" if ok else "failure").inc()


def observe_fleet(snapshot: FleetSnapshot) -> None:
    """Refresh per-group gauges from a registry snapshot."""
    for group in Group:
        state = snapshot.groups[group]
        group_weight_percent.labels(group=group.value).set(state.weight)
        group_desired_count.labels(group=group.value).set(state.desired_count)
        members = snapshot.members(group)
        for status in HealthStatus:
            count = sum(1 for i in members if i.status is status)
            group_instances.labels(group=group.value, status=status.value).set(count)


def set_controller_info(service: str, compute: str, router: str) -> None:
    controller_info.info({"service": service, "compute": compute, "router": router})


def update_memory_metric():
    """Update the memory usage gauge."""
    process = psutil.Process()
    memory_usage_bytes.set(process.memory_info().rss)


def metrics_response() -> Response:
    """Generate Prometheus metrics response."""
    update_memory_metric()
    return Response(
        content=generate_latest(),
        media_type=CONTENT_TYPE_LATEST,
    )


# ── Middleware ──

class MetricsMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next) -> Response:
        if request.url.path == "/metrics":
            return await call_next(request)

        start = time.perf_counter()
        normalized = normalize_path(request.url.path)

        try:
            response = await call_next(request)
        except Exception:
            http_requests_total.labels(
                method=request.method,
                path=normalized,
                status_code=500,
            ).inc()
            raise

        http_requests_total.labels(
            method=request.method,
            path=normalized,
            status_code=response.status_code,
        ).inc()
        http_request_duration_seconds.labels(
            method=request.method,
            path=normalized,
        ).observe(time.perf_counter() - start)
        return response
