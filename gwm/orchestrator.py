from __future__ import annotations

import os
from dataclasses import dataclass
from typing import Callable, Protocol

from .alerts import alert_operator
from .config_render import config_hash, render_config
from .crypto import SecretCipher
from .db import log_event
from .docker_ops import ContainerClient, ContainerState, validate_project_id
from .errors import (
    ContainerNotFound,
    ContainerUnhealthy,
    DecryptionFailed,
    GatewayError,
    HealthTimeout,
    InvalidProjectId,
    PoolRegistrationFailed,
    ProjectNotActive,
    ProjectNotFound,
    SecretNotFound,
    SpawnFailed,
)
from .pool_registry import PoolRegistry
from .projects import TenantRecord
from .runtime import OperationRecord, RuntimeState
from .settings import Settings

# Spawn errors that already carry the right wire code.
_SPAWN_PASSTHROUGH = (
    InvalidProjectId,
    ProjectNotFound,
    ProjectNotActive,
    SecretNotFound,
    DecryptionFailed,
    PoolRegistrationFailed,
    HealthTimeout,
    SpawnFailed,
)


def _describe(err: Exception) -> str:
    if isinstance(err, GatewayError):
        return err.message
    return f"{type(err).__name__}: {err}"


class ProjectSource(Protocol):
    def get_project(self, project_id: str) -> TenantRecord | None: ...

    def get_secret(self, project_id: str, secret_type: str) -> bytes | None: ...


@dataclass(frozen=True)
class SpawnResult:
    project_id: str
    container_id: str
    container_name: str
    port: int
    status: str  # running|already_running|reloaded
    config_hash: str

    @property
    def created(self) -> bool:
        return self.status == "running"


@dataclass(frozen=True)
class DestroyResult:
    project_id: str
    status: str  # stopped|cleaned_up
    message: str


@dataclass(frozen=True)
class ReloadResult:
    project_id: str
    status: str
    message: str


@dataclass(frozen=True)
class GatewaySummary:
    project_id: str
    container_name: str
    port: int
    status: str
    health: str


@dataclass(frozen=True)
class GatewayStatus:
    project_id: str
    container_name: str
    state: ContainerState
    config_hash: str | None
    last_operation: OperationRecord | None


class GatewayOrchestrator:
    """Reconciles one tenant's gateway with its project record on demand.

    Every call observes container state fresh; nothing about the runtime is
    cached between operations. There is no background loop.
    """

    def __init__(
        self,
        settings: Settings,
        projects: ProjectSource,
        cipher: SecretCipher,
        containers: ContainerClient,
        registry: PoolRegistry,
        runtime: RuntimeState | None = None,
        alert: Callable[[str, str, str], bool] | None = None,
    ):
        self.settings = settings
        self.projects = projects
        self.cipher = cipher
        self.containers = containers
        self.registry = registry
        self.runtime = runtime or RuntimeState(settings.activity_cache_size)
        self._alert = alert or (lambda project_id, name, detail: alert_operator(project_id, name, detail, settings))

    # --- naming ---

    def container_name(self, project_id: str) -> str:
        return f"{self.settings.container_prefix}{project_id}"

    def config_path(self, project_id: str) -> str:
        return os.path.join(self.settings.config_dir, f"{project_id}.conf")

    @staticmethod
    def authenticator_user(project_id: str) -> str:
        return f"{project_id}_authenticator"

    def _check_id(self, project_id: str) -> None:
        if not validate_project_id(project_id):
            raise InvalidProjectId("Invalid projectId format. Expected: proj_xxxxxxxxxxxxxxxx (16 chars)")

    # --- config file ---

    def existing_config_hash(self, project_id: str) -> str | None:
        path = self.config_path(project_id)
        try:
            with open(path, encoding="utf-8") as f:
                return config_hash(f.read())
        except FileNotFoundError:
            return None
        except OSError as e:
            log_event("WARN", f"Error reading config {path}: {e}", project_id, "spawn")
            return None

    def _write_config(self, project_id: str, content: str) -> None:
        path = self.config_path(project_id)
        os.makedirs(self.settings.config_dir, exist_ok=True)
        fd = os.open(path, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o600)
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            f.write(content)
        # O_CREAT mode only applies to new files.
        os.chmod(path, 0o600)

    # --- spawn ---

    def spawn(self, project_id: str, authenticator_password: str | None = None) -> SpawnResult:
        self._check_id(project_id)
        try:
            result = self._spawn(project_id, authenticator_password)
        except _SPAWN_PASSTHROUGH as e:
            self._record_failure(project_id, "spawn", e)
            raise
        except GatewayError as e:
            err = SpawnFailed(e.message)
            self._record_failure(project_id, "spawn", err)
            raise err from e
        except Exception as e:
            err = SpawnFailed(f"{type(e).__name__}: {e}")
            self._record_failure(project_id, "spawn", err)
            raise err from e
        self.runtime.record(project_id, "spawn", result.status, config_hash=result.config_hash)
        return result

    def _spawn(self, project_id: str, authenticator_password: str | None) -> SpawnResult:
        project = self.projects.get_project(project_id)
        if project is None:
            raise ProjectNotFound(f"Project {project_id} not found")
        if not project.is_active:
            raise ProjectNotActive(f"Project status is {project.status}, expected active")

        jwt_secret, db_password = self._load_secrets(project_id)

        content = render_config(
            project_id=project_id,
            db_name=project.db_name,
            db_password=db_password,
            jwt_secret=jwt_secret,
            host=self.settings.pgbouncer_host,
            port=self.settings.pgbouncer_port,
        )
        new_hash = config_hash(content)
        changed = new_hash != self.existing_config_hash(project_id)
        if changed:
            self._write_config(project_id, content)
            log_event("INFO", f"Config written (hash: {new_hash})", project_id, "spawn")

        name = self.container_name(project_id)

        if self.containers.exists(name):
            if self.containers.is_running(name):
                if not changed:
                    return self._result(project_id, name, "already_running", new_hash)
                log_event("INFO", "Config changed for running container, sending SIGHUP", project_id, "spawn")
                self.containers.signal(name, "SIGHUP")
                return self._result(project_id, name, "reloaded", new_hash)

            # A stopped process only reads its config at startup; start clean.
            log_event("INFO", f"Removing stopped container {name}", project_id, "spawn")
            self.containers.remove(name)

        self._register_pool(project, authenticator_password)

        ref = self._start_gateway(project_id, name)
        log_event("INFO", f"Started container {name} from image {self.settings.gateway_image}", project_id, "spawn")

        try:
            self.containers.wait_healthy(
                name,
                timeout_s=self.settings.health_timeout_s,
                interval_s=self.settings.health_interval_s,
            )
        except (HealthTimeout, ContainerUnhealthy) as e:
            log_event("ERROR", f"{e.message}; container left for inspection", project_id, "spawn")
            self._alert(project_id, name, e.message)
            raise

        return SpawnResult(
            project_id=project_id,
            container_id=ref.id,
            container_name=name,
            port=self.settings.gateway_port,
            status="running",
            config_hash=new_hash,
        )

    def _result(self, project_id: str, name: str, status: str, hash_: str) -> SpawnResult:
        return SpawnResult(
            project_id=project_id,
            container_id=name,
            container_name=name,
            port=self.settings.gateway_port,
            status=status,
            config_hash=hash_,
        )

    def _load_secrets(self, project_id: str) -> tuple[str, str]:
        try:
            jwt_enc = self.projects.get_secret(project_id, "jwt_secret")
            pw_enc = self.projects.get_secret(project_id, "db_password")
        except Exception as e:
            raise SecretNotFound(f"Failed to fetch project secrets: {type(e).__name__}") from e
        if not jwt_enc:
            raise SecretNotFound("JWT secret not found for project")
        if not pw_enc:
            raise SecretNotFound("Database password not found for project")
        try:
            return self.cipher.decrypt(jwt_enc), self.cipher.decrypt(pw_enc)
        except DecryptionFailed as e:
            log_event("ERROR", f"Decryption failed: {e.message}", project_id, "spawn")
            raise DecryptionFailed("Failed to decrypt project secrets") from e

    def _register_pool(self, project: TenantRecord, authenticator_password: str | None) -> None:
        """Registry entries go in before the container exists; failure aborts the spawn.

        When the entries were already present (an earlier spawn may have
        written them and then failed to reload), PgBouncer is reloaded
        anyway so the new gateway never starts against a stale pooler.
        """
        try:
            changed = self.registry.add_database(project.id, project.db_name)
        except GatewayError as e:
            raise PoolRegistrationFailed(f"Failed to add project database to PgBouncer: {e.message}") from e

        if not authenticator_password:
            log_event("WARN", "No authenticatorPassword provided - PgBouncer auth may fail", project.id, "spawn")
        else:
            user = self.authenticator_user(project.id)
            try:
                changed = self.registry.add_user(user, authenticator_password) or changed
            except GatewayError as e:
                raise PoolRegistrationFailed(
                    f"Failed to add authenticator to PgBouncer userlist: {e.message}",
                    code="pgbouncer_user_add_failed",
                ) from e

        if changed:
            return
        try:
            self.registry.reload()
        except GatewayError as e:
            raise PoolRegistrationFailed(f"Failed to reload PgBouncer: {e.message}") from e

    def _start_gateway(self, project_id: str, name: str):
        network = self.settings.docker_network or self.containers.detect_network(self.settings.pgbouncer_container)
        config_dir = self.settings.container_config_dir
        env = {"DOMAIN": self.settings.domain} if self.settings.domain else {}
        return self.containers.create(
            name=name,
            image=self.settings.gateway_image,
            command=[f"{config_dir}/{project_id}.conf"],
            env=env,
            network=network,
            volume_binds=[f"{self.settings.config_volume}:{config_dir}:ro"],
            labels={"gwm.project": project_id, "gwm.role": "gateway"},
        )

    # --- destroy ---

    def destroy(self, project_id: str) -> DestroyResult:
        """Best-effort teardown; every step runs regardless of the others.

        Registry entries may exist from an earlier spawn that failed before
        any container was created, so cleanup never depends on the container.
        """
        self._check_id(project_id)
        name = self.container_name(project_id)
        removed = False

        try:
            if self.containers.exists(name):
                self.containers.stop(name)
                self.containers.remove(name)
                removed = True
                log_event("INFO", f"Stopped and removed {name}", project_id, "destroy")
            else:
                log_event("INFO", f"Container {name} not found, skipping container stop", project_id, "destroy")
        except Exception as e:
            log_event("WARN", f"Container stop failed (non-fatal): {_describe(e)}", project_id, "destroy")

        try:
            self.registry.remove_database(project_id)
        except Exception as e:
            log_event("WARN", f"PgBouncer database removal failed (non-fatal): {_describe(e)}", project_id, "destroy")

        try:
            self.registry.remove_user(self.authenticator_user(project_id))
        except Exception as e:
            log_event("WARN", f"PgBouncer user removal failed (non-fatal): {_describe(e)}", project_id, "destroy")

        status = "stopped" if removed else "cleaned_up"
        self.runtime.record(project_id, "destroy", status)
        message = "Container stopped and PgBouncer cleaned" if removed else "PgBouncer cleaned (container not found)"
        return DestroyResult(project_id=project_id, status=status, message=message)

    # --- reload / list / describe ---

    def reload(self, project_id: str) -> ReloadResult:
        """SIGHUP a running gateway. Config changes go through spawn, not here."""
        self._check_id(project_id)
        name = self.container_name(project_id)
        if not self.containers.is_running(name):
            raise ContainerNotFound("Container not running")
        self.containers.signal(name, "SIGHUP")
        log_event("INFO", f"Sent SIGHUP to {name}", project_id, "reload")
        self.runtime.record(project_id, "reload", "reloaded")
        return ReloadResult(project_id=project_id, status="reloaded", message="PostgREST configuration reloaded via SIGHUP")

    def list(self) -> list[GatewaySummary]:
        prefix = self.settings.container_prefix
        return [
            GatewaySummary(
                project_id=c.name[len(prefix) :],
                container_name=c.name,
                port=self.settings.gateway_port,
                status=c.status,
                health=c.health,
            )
            for c in self.containers.list_gateways(prefix)
        ]

    def describe(self, project_id: str) -> GatewayStatus:
        self._check_id(project_id)
        name = self.container_name(project_id)
        return GatewayStatus(
            project_id=project_id,
            container_name=name,
            state=self.containers.state(name),
            config_hash=self.existing_config_hash(project_id),
            last_operation=self.runtime.last_operation(project_id),
        )

    def _record_failure(self, project_id: str, operation: str, err: GatewayError) -> None:
        self.runtime.record(project_id, operation, "failed", error=err.code)
        log_event("ERROR", f"{operation} failed [{err.code}]: {err.message}", project_id, operation)
