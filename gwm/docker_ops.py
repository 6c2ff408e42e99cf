from __future__ import annotations

import re
import time
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable

import docker
from docker.errors import DockerException, NotFound
from requests.exceptions import RequestException

from .errors import ContainerNotFound, ContainerUnhealthy, ExecFailed, HealthTimeout, RuntimeFailure

PROJECT_ID_RE = re.compile(r"^proj_[a-z0-9]{16}$")

# The SDK talks to the daemon over requests; transport errors are not DockerExceptions.
RUNTIME_ERRORS = (DockerException, RequestException)

_NS = 1_000_000_000

GATEWAY_HEALTHCHECK: dict[str, Any] = {
    "test": ["CMD", "curl", "-f", "http://localhost:3000/"],
    "interval": 30 * _NS,
    "timeout": 10 * _NS,
    "retries": 3,
    "start_period": 30 * _NS,
}


def validate_project_id(project_id: str) -> bool:
    return bool(project_id) and bool(PROJECT_ID_RE.match(project_id))


class ContainerState(str, Enum):
    ABSENT = "absent"
    STOPPED = "stopped"
    RUNNING = "running"
    HEALTHY = "healthy"
    UNHEALTHY = "unhealthy"

    @property
    def is_running(self) -> bool:
        return self in {ContainerState.RUNNING, ContainerState.HEALTHY, ContainerState.UNHEALTHY}


@dataclass(frozen=True)
class ContainerRef:
    id: str
    name: str


@dataclass(frozen=True)
class ExecResult:
    stdout: str
    stderr: str
    exit_code: int


@dataclass(frozen=True)
class ContainerSummary:
    name: str
    status: str
    health: str


def make_docker_client(base_url: str | None = None) -> docker.DockerClient:
    """Client for the access-filtered socket proxy, or the environment default."""
    if base_url:
        return docker.DockerClient(base_url=base_url)
    return docker.from_env()


def _decode(chunk: bytes | None) -> str:
    if not chunk:
        return ""
    return chunk.decode("utf-8", errors="replace").strip()


class ContainerClient:
    """Lifecycle intents translated into container runtime API calls.

    Not-found is surfaced as ContainerNotFound (callers often treat it as
    benign); every other runtime error becomes RuntimeFailure.
    """

    def __init__(
        self,
        client: docker.DockerClient,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], float] = time.monotonic,
    ):
        self._client = client
        self._sleep = sleep
        self._clock = clock

    def _get(self, name: str):
        try:
            return self._client.containers.get(name)
        except NotFound as e:
            raise ContainerNotFound(f"Container {name} not found") from e
        except RUNTIME_ERRORS as e:
            raise RuntimeFailure(f"Inspect of {name} failed: {e}") from e

    def _names(self, name: str, all_containers: bool) -> list[str]:
        # The name filter is a substring match; callers compare exactly.
        try:
            containers = self._client.containers.list(all=all_containers, filters={"name": name})
        except RUNTIME_ERRORS as e:
            raise RuntimeFailure(f"Listing containers failed: {e}") from e
        return [c.name for c in containers]

    def exists(self, name: str) -> bool:
        return name in self._names(name, all_containers=True)

    def is_running(self, name: str) -> bool:
        return name in self._names(name, all_containers=False)

    def health(self, name: str) -> str:
        try:
            cont = self._get(name)
        except ContainerNotFound:
            return "not_found"
        state = cont.attrs.get("State") or {}
        return (state.get("Health") or {}).get("Status") or "unknown"

    def state(self, name: str) -> ContainerState:
        try:
            cont = self._get(name)
        except ContainerNotFound:
            return ContainerState.ABSENT
        state = cont.attrs.get("State") or {}
        if not state.get("Running"):
            return ContainerState.STOPPED
        health = (state.get("Health") or {}).get("Status")
        if health == "healthy":
            return ContainerState.HEALTHY
        if health == "unhealthy":
            return ContainerState.UNHEALTHY
        return ContainerState.RUNNING

    def detect_network(self, container_name: str) -> str:
        """First network the given (always-on) container is attached to."""
        cont = self._get(container_name)
        networks = list(((cont.attrs.get("NetworkSettings") or {}).get("Networks") or {}).keys())
        if not networks:
            raise RuntimeFailure(f"Container {container_name} has no networks")
        return networks[0]

    def create(
        self,
        name: str,
        image: str,
        command: list[str] | None = None,
        env: dict[str, str] | None = None,
        network: str | None = None,
        volume_binds: list[str] | None = None,
        healthcheck: dict[str, Any] | None = None,
        labels: dict[str, str] | None = None,
    ) -> ContainerRef:
        """Create and start a container.

        The runtime rejects a duplicate name, which is what keeps concurrent
        spawns for the same tenant from producing two gateways.
        """
        try:
            container = self._client.containers.create(
                image,
                command=command,
                name=name,
                detach=True,
                environment=env or {},
                network=network,
                volumes=volume_binds or [],
                restart_policy={"Name": "unless-stopped"},
                healthcheck=healthcheck or GATEWAY_HEALTHCHECK,
                labels=labels or {},
            )
            container.start()
        except RUNTIME_ERRORS as e:
            raise RuntimeFailure(f"Creating container {name} failed: {e}") from e
        return ContainerRef(id=container.id, name=name)

    def stop(self, name: str, timeout_s: int = 10) -> None:
        # The API answers 304 for an already stopped container; the SDK treats it as success.
        cont = self._get(name)
        try:
            cont.stop(timeout=timeout_s)
        except NotFound as e:
            raise ContainerNotFound(f"Container {name} not found") from e
        except RUNTIME_ERRORS as e:
            raise RuntimeFailure(f"Stopping {name} failed: {e}") from e

    def remove(self, name: str, force: bool = False) -> None:
        try:
            self._client.containers.get(name).remove(force=force)
        except NotFound:
            return
        except RUNTIME_ERRORS as e:
            raise RuntimeFailure(f"Removing {name} failed: {e}") from e

    def signal(self, name: str, sig: str = "SIGHUP") -> None:
        cont = self._get(name)
        try:
            cont.kill(signal=sig)
        except NotFound as e:
            raise ContainerNotFound(f"Container {name} not found") from e
        except RUNTIME_ERRORS as e:
            raise RuntimeFailure(f"Sending {sig} to {name} failed: {e}") from e

    def exec_in_other(self, container_name: str, shell_command: str, user: str = "root") -> ExecResult:
        """Run a shell command inside another container.

        Success is decided by the exit code only: stderr output with exit 0
        is fine, a non-zero exit is a failure even with empty stderr.
        """
        cont = self._get(container_name)
        try:
            res = cont.exec_run(["sh", "-c", shell_command], user=user, demux=True)
        except RUNTIME_ERRORS as e:
            raise RuntimeFailure(f"Exec in {container_name} failed: {e}") from e

        out, err = res.output if res.output else (None, None)
        result = ExecResult(stdout=_decode(out), stderr=_decode(err), exit_code=res.exit_code)
        if result.exit_code is None or result.exit_code != 0:
            raise ExecFailed(
                f"Command failed with exit code {result.exit_code}: {result.stderr or result.stdout}",
                exit_code=result.exit_code if result.exit_code is not None else -1,
                stdout=result.stdout,
                stderr=result.stderr,
            )
        return result

    def wait_healthy(self, name: str, timeout_s: float = 90, interval_s: float = 2) -> None:
        start = self._clock()
        while self._clock() - start < timeout_s:
            status = self.health(name)
            if status == "healthy":
                return
            if status == "unhealthy":
                raise ContainerUnhealthy(f"Container {name} is unhealthy")
            self._sleep(interval_s)
        raise HealthTimeout(f"Container {name} did not become healthy within {timeout_s}s")

    def list_gateways(self, prefix: str) -> list[ContainerSummary]:
        try:
            containers = self._client.containers.list(filters={"name": prefix})
        except RUNTIME_ERRORS as e:
            raise RuntimeFailure(f"Listing containers failed: {e}") from e
        out: list[ContainerSummary] = []
        for c in containers:
            if not c.name.startswith(prefix):
                continue
            state = c.attrs.get("State") or {}
            health = (state.get("Health") or {}).get("Status") or "unknown"
            out.append(ContainerSummary(name=c.name, status=c.status, health=health))
        return out
