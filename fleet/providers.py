"""
Compute providers: the substrate that actually starts and stops task instances.

The controller only needs provision / terminate / list. Providers raise
TransientProviderError for failures worth retrying and ProviderError for the
rest; retry policy lives in the executor.
"""

import asyncio
import itertools
import json
import logging
import time
import uuid
from datetime import datetime
from typing import Protocol

from fleet.errors import NotFound, ProviderError, TransientProviderError
from fleet.models import Group, Instance, Lifecycle
from fleet.shell import run_command

logger = logging.getLogger(__name__)


class ComputeProvider(Protocol):
    async def provision(self, group: Group, version: str, artifact_ref: str) -> Instance:
        ...

    async def terminate(self, instance_id: str) -> None:
        ...

    async def list_instances(self) -> list[Instance]:
        ...


class InMemoryProvider:
    """Fake substrate with failure injection.

    `fail_provisions` makes the next N provision calls fail transiently;
    `fail_terminations` maps instance ids to a number of transient failures.
    """

    def __init__(self, clock=None, port: int = 8000):
        self.clock = clock
        self.port = port
        self.instances: dict[str, Instance] = {}
        self.fail_provisions = 0
        self.fail_terminations: dict[str, int] = {}
        self.permanent_failure: str | None = None
        self.provision_calls = 0
        self.terminate_calls = 0
        self._ids = itertools.count(1)

    def seed(self, group: Group, version: str, artifact_ref: str, count: int) -> list[Instance]:
        return [self._create(group, version, artifact_ref) for _ in range(count)]

    def _create(self, group: Group, version: str, artifact_ref: str) -> Instance:
        n = next(self._ids)
        instance = Instance(
            id=f"{group.value}-{n}",
            version=version,
            group=group,
            address=f"10.0.{list(Group).index(group)}.{n}:{self.port}",
            artifact_ref=artifact_ref,
            lifecycle=Lifecycle.RUNNING,
            created_at=self.clock.now() if self.clock else float(n),
        )
        self.instances[instance.id] = instance
        return instance

    async def provision(self, group: Group, version: str, artifact_ref: str) -> Instance:
        self.provision_calls += 1
        if self.permanent_failure:
            raise ProviderError(self.permanent_failure)
        if self.fail_provisions > 0:
            self.fail_provisions -= 1
            raise TransientProviderError("capacity temporarily unavailable")
        return self._create(group, version, artifact_ref)

    async def terminate(self, instance_id: str) -> None:
        self.terminate_calls += 1
        if self.fail_terminations.get(instance_id, 0) > 0:
            self.fail_terminations[instance_id] -= 1
            raise TransientProviderError(f"terminate {instance_id} throttled")
        if self.instances.pop(instance_id, None) is None:
            raise NotFound(f"unknown instance '{instance_id}'")

    async def list_instances(self) -> list[Instance]:
        return list(self.instances.values())


# ── Docker ────────────────────────────────────────────────────

PERMANENT_DOCKER_ERRORS = ("No such image", "manifest unknown", "pull access denied", "invalid reference format")


class DockerProvider:
    """Runs each instance as a labelled container on the local Docker daemon."""

    def __init__(
        self,
        service: str,
        container_port: int = 8000,
        network: str | None = None,
        timeout: float = 60,
    ):
        self.service = service
        self.container_port = container_port
        self.network = network
        self.timeout = timeout

    def _docker(self, *args, timeout: float | None = None, check: bool = True):
        try:
            return run_command(
                ["docker", *args],
                timeout=timeout or self.timeout,
                check=check,
                error_cls=TransientProviderError,
            )
        except TransientProviderError as e:
            if any(marker in str(e) for marker in PERMANENT_DOCKER_ERRORS):
                raise ProviderError(str(e))
            raise

    async def provision(self, group: Group, version: str, artifact_ref: str) -> Instance:
        return await asyncio.to_thread(self._provision, group, version, artifact_ref)

    def _provision(self, group: Group, version: str, artifact_ref: str) -> Instance:
        name = f"{self.service}-{group.value}-{uuid.uuid4().hex[:8]}"
        cmd = [
            "run", "-d", "--name", name,
            "--label", f"fleet.service={self.service}",
            "--label", f"fleet.group={group.value}",
            "--label", f"fleet.version={version}",
            "--label", f"fleet.artifact={artifact_ref}",
            "-e", f"DEPLOYMENT_COLOR={group.value}",
        ]
        if self.network:
            cmd += ["--network", self.network]
        else:
            cmd += ["-p", str(self.container_port)]
        cmd.append(artifact_ref)

        container_id = self._docker(*cmd).stdout.strip()[:12]
        logger.info(f"  Started {name} ({container_id}) from {artifact_ref}")

        return Instance(
            id=container_id,
            version=version,
            group=group,
            address=self._address(container_id, name),
            artifact_ref=artifact_ref,
            lifecycle=Lifecycle.RUNNING,
            created_at=time.time(),
        )

    def _address(self, container_id: str, name: str) -> str:
        if self.network:
            return f"{name}:{self.container_port}"
        result = self._docker("port", container_id, str(self.container_port), timeout=10)
        # e.g. "0.0.0.0:49153" (first line; IPv6 bindings follow)
        binding = result.stdout.strip().splitlines()[0]
        return f"localhost:{binding.rpartition(':')[2]}"

    async def terminate(self, instance_id: str) -> None:
        await asyncio.to_thread(self._terminate, instance_id)

    def _terminate(self, instance_id: str) -> None:
        result = self._docker("rm", "-f", instance_id, timeout=30, check=False)
        if result.returncode != 0:
            if "No such container" in result.stderr:
                raise NotFound(f"unknown instance '{instance_id}'")
            raise TransientProviderError(f"docker rm -f {instance_id}: {result.stderr.strip()}")

    async def list_instances(self) -> list[Instance]:
        return await asyncio.to_thread(self._list)

    def _list(self) -> list[Instance]:
        result = self._docker(
            "ps", "--filter", f"label=fleet.service={self.service}", "--format", "{{json .}}",
            timeout=10,
        )
        instances = []
        for line in result.stdout.strip().splitlines():
            line = line.strip()
            if not line:
                continue
            try:
                row = json.loads(line)
            except json.JSONDecodeError:
                logger.warning(f"  Skipping unparseable docker ps line: {line[:80]}")
                continue
            labels = dict(
                part.split("=", 1) for part in row.get("Labels", "").split(",") if "=" in part
            )
            try:
                group = Group(labels.get("fleet.group", ""))
            except ValueError:
                continue
            instances.append(
                Instance(
                    id=row["ID"][:12],
                    version=labels.get("fleet.version", "unknown"),
                    group=group,
                    address=self._address_from_ports(row),
                    artifact_ref=labels.get("fleet.artifact", row.get("Image", "")),
                    lifecycle=Lifecycle.RUNNING,
                    created_at=_parse_created(row.get("CreatedAt", "")),
                )
            )
        return instances

    def _address_from_ports(self, row: dict) -> str:
        if self.network:
            return f"{row.get('Names', '')}:{self.container_port}"
        # "0.0.0.0:49153->8000/tcp, :::49153->8000/tcp"
        for mapping in row.get("Ports", "").split(","):
            host, _, target = mapping.strip().partition("->")
            if target.startswith(f"{self.container_port}/"):
                return f"localhost:{host.rpartition(':')[2]}"
        return ""


def _parse_created(value: str) -> float:
    # docker prints e.g. "2024-05-01 10:22:33 +0000 UTC"
    try:
        return datetime.strptime(" ".join(value.split()[:3]), "%Y-%m-%d %H:%M:%S %z").timestamp()
    except ValueError:
        return 0.0
