"""
Traffic Router Adapters

A router only accepts "set weight(group, percent)" and reports the weights it
last accepted. Acceptance is not propagation: callers allow for a convergence
window before judging traffic on the new weights.
"""

import asyncio
import logging
import math
from pathlib import Path
from typing import Protocol

from fleet.errors import RoutingApplyError
from fleet.models import Group
from fleet.shell import run_command

logger = logging.getLogger(__name__)


def split_weights(group: Group, percent: int) -> dict[Group, int]:
    if not isinstance(percent, int) or not 0 <= percent <= 100:
        raise RoutingApplyError(f"weight must be an integer within 0..100, got {percent!r}")
    return {group: percent, group.other(): 100 - percent}


class TrafficRouter(Protocol):
    async def set_weight(self, group: Group, percent: int) -> None:
        ...

    async def refresh(self) -> None:
        ...

    def current_weights(self) -> dict[Group, int]:
        ...


class InMemoryRouter:
    def __init__(self, weights: dict[Group, int] | None = None):
        self._weights = dict(weights or {Group.BLUE: 100, Group.GREEN: 0})
        self.fail_next = 0
        self.applied: list[dict[Group, int]] = []
        self.refreshes = 0

    async def set_weight(self, group: Group, percent: int) -> None:
        weights = split_weights(group, percent)
        if self.fail_next > 0:
            self.fail_next -= 1
            raise RoutingApplyError(f"router rejected {group.value}={percent}%")
        self._weights = weights
        self.applied.append(dict(weights))

    async def refresh(self) -> None:
        self.refreshes += 1

    def current_weights(self) -> dict[Group, int]:
        return dict(self._weights)


class NginxUpstreamRouter:
    """Weighted nginx upstream rendered from the registry's instance addresses.

    Per-server weights are scaled so each group's share of requests matches its
    percentage regardless of how many instances it has.
    """

    def __init__(
        self,
        registry,
        conf_path: str,
        container: str = "fleet-nginx",
        upstream: str = "fleet_backend",
        listen: int = 80,
        timeout: float = 5,
    ):
        self.registry = registry
        self.conf_path = Path(conf_path)
        self.container = container
        self.upstream = upstream
        self.listen = listen
        self.timeout = timeout
        self._weights = {
            Group(name): weight for name, weight in registry.snapshot().weights().items()
        }
        self._lock = asyncio.Lock()

    def render(self, weights: dict[Group, int]) -> str:
        snapshot = self.registry.snapshot()
        members = {
            g: [i for i in snapshot.members(g) if i.address]
            for g in Group if weights.get(g, 0) > 0
        }
        for group, instances in members.items():
            if not instances:
                raise RoutingApplyError(
                    f"group {group.value} has weight {weights[group]}% but no addressable instances"
                )
        scale = math.lcm(*(len(i) for i in members.values())) if members else 1

        lines = [f"upstream {self.upstream} {{"]
        for group, instances in members.items():
            per_server = weights[group] * scale // len(instances)
            lines.append(f"    # {group.value}: {weights[group]}%")
            for instance in instances:
                lines.append(f"    server {instance.address} weight={per_server};")
        lines += [
            "}",
            "",
            "server {",
            f"    listen {self.listen};",
            "    location / {",
            f"        proxy_pass http://{self.upstream};",
            "        proxy_next_upstream error timeout http_502 http_503;",
            "    }",
            "}",
            "",
        ]
        return "\n".join(lines)

    async def set_weight(self, group: Group, percent: int) -> None:
        weights = split_weights(group, percent)
        async with self._lock:
            await asyncio.to_thread(self._apply, weights)
            self._weights = weights

    async def refresh(self) -> None:
        """Re-render the upstream for the current weights after membership changes."""
        async with self._lock:
            await asyncio.to_thread(self._apply, dict(self._weights))

    def _apply(self, weights: dict[Group, int]) -> None:
        rendered = self.render(weights)

        # 1. Read current config as backup
        original_config = self.conf_path.read_text() if self.conf_path.exists() else None

        # 2. Write the new upstream
        self.conf_path.parent.mkdir(parents=True, exist_ok=True)
        self.conf_path.write_text(rendered)
        logger.info(
            f"  Wrote weighted upstream -> {self.conf_path}",
            extra={"weights": {g.value: w for g, w in weights.items()}},
        )

        # 3. Test nginx config
        try:
            run_command(
                ["docker", "exec", self.container, "nginx", "-t"],
                timeout=self.timeout,
                error_cls=RoutingApplyError,
            )
        except RoutingApplyError as e:
            logger.error("  nginx -t failed, restoring original config...")
            self._restore(original_config)
            raise RoutingApplyError(f"Nginx config test failed: {e}")

        # 4. Reload nginx
        try:
            run_command(
                ["docker", "exec", self.container, "nginx", "-s", "reload"],
                timeout=self.timeout,
                error_cls=RoutingApplyError,
            )
        except RoutingApplyError as e:
            logger.error("  nginx reload failed, restoring original config...")
            self._restore(original_config)
            try:
                run_command(
                    ["docker", "exec", self.container, "nginx", "-s", "reload"],
                    timeout=self.timeout,
                    error_cls=RoutingApplyError,
                )
            except RoutingApplyError:
                logger.critical("  Reload after restore failed; nginx state is unknown")
            raise RoutingApplyError(f"Nginx reload failed: {e}")

    def _restore(self, original_config: str | None) -> None:
        if original_config is None:
            self.conf_path.unlink(missing_ok=True)
        else:
            self.conf_path.write_text(original_config)

    def current_weights(self) -> dict[Group, int]:
        return dict(self._weights)
