import base64

import pytest

from gwm import db
from gwm.crypto import SecretCipher
from gwm.docker_ops import ContainerRef, ContainerState, ContainerSummary, ExecResult
from gwm.errors import ContainerNotFound, ContainerUnhealthy, ExecFailed, HealthTimeout, RuntimeFailure
from gwm.orchestrator import GatewayOrchestrator
from gwm.pool_registry import PoolRegistry
from gwm.projects import TenantRecord
from gwm.runtime import RuntimeState
from gwm.settings import Settings

MASTER_KEY = base64.b64encode(bytes(range(32))).decode()
PROJECT_ID = "proj_0000000000000001"

PGBOUNCER_INI = """\
;; pgbouncer configuration
[databases]
* = host=postgres port=5432

[pgbouncer]
listen_addr = 0.0.0.0
listen_port = 6432
auth_type = md5
auth_file = /etc/pgbouncer/userlist.txt
pool_mode = transaction
"""

USERLIST = '"pgbouncer" "md5d41d8cd98f00b204e9800998ecf8427e"\n'


@pytest.fixture(autouse=True)
def event_db(tmp_path, monkeypatch):
    """Keep the event log of every test in its own sqlite file."""
    monkeypatch.setattr(db, "settings", Settings(db_path=str(tmp_path / "events.db")))
    db.init_db()


class FakeContainers:
    """In-memory stand-in for ContainerClient."""

    def __init__(self):
        self.containers: dict[str, dict] = {}
        self.created: list[dict] = []
        self.removed: list[str] = []
        self.signals: list[tuple[str, str]] = []
        self.execs: list[tuple[str, str, str]] = []
        self.health_on_create = "healthy"
        self.exec_error: Exception | None = None
        self.stop_error: Exception | None = None

    def add(self, name: str, running: bool = True, health: str = "healthy") -> None:
        self.containers[name] = {"id": f"id-{name}", "running": running, "health": health}

    def exists(self, name):
        return name in self.containers

    def is_running(self, name):
        return name in self.containers and self.containers[name]["running"]

    def health(self, name):
        if name not in self.containers:
            return "not_found"
        return self.containers[name]["health"]

    def state(self, name):
        c = self.containers.get(name)
        if c is None:
            return ContainerState.ABSENT
        if not c["running"]:
            return ContainerState.STOPPED
        if c["health"] == "healthy":
            return ContainerState.HEALTHY
        if c["health"] == "unhealthy":
            return ContainerState.UNHEALTHY
        return ContainerState.RUNNING

    def detect_network(self, container_name):
        return "launchdb_internal"

    def create(self, name, image, command=None, env=None, network=None, volume_binds=None, healthcheck=None, labels=None):
        if name in self.containers:
            raise RuntimeFailure(f"Conflict. The container name {name} is already in use")
        self.created.append(
            {"name": name, "image": image, "command": command, "env": env, "network": network, "volume_binds": volume_binds}
        )
        self.add(name, running=True, health=self.health_on_create)
        return ContainerRef(id=f"id-{name}", name=name)

    def stop(self, name, timeout_s=10):
        if self.stop_error is not None:
            raise self.stop_error
        if name not in self.containers:
            raise ContainerNotFound(f"Container {name} not found")
        self.containers[name]["running"] = False

    def remove(self, name, force=False):
        if self.containers.pop(name, None) is not None:
            self.removed.append(name)

    def signal(self, name, sig="SIGHUP"):
        if not self.is_running(name):
            raise ContainerNotFound(f"Container {name} not found")
        self.signals.append((name, sig))

    def exec_in_other(self, container_name, shell_command, user="root"):
        if self.exec_error is not None:
            raise self.exec_error
        self.execs.append((container_name, shell_command, user))
        return ExecResult(stdout="", stderr="", exit_code=0)

    def wait_healthy(self, name, timeout_s=90, interval_s=2):
        status = self.health(name)
        if status == "healthy":
            return
        if status == "unhealthy":
            raise ContainerUnhealthy(f"Container {name} is unhealthy")
        raise HealthTimeout(f"Container {name} did not become healthy within {timeout_s}s")

    def list_gateways(self, prefix):
        return [
            ContainerSummary(name=n, status="running", health=c["health"])
            for n, c in sorted(self.containers.items())
            if n.startswith(prefix) and c["running"]
        ]


class FakeProjects:
    def __init__(self, cipher: SecretCipher):
        self.cipher = cipher
        self.records: dict[str, TenantRecord] = {}
        self.secrets: dict[tuple[str, str], bytes] = {}

    def add(self, project_id, status="active", db_name=None, password="s3cr3t+/=pw", jwt_secret="jwt-secret-value"):
        self.records[project_id] = TenantRecord(id=project_id, db_name=db_name or project_id, status=status)
        self.set_secrets(project_id, password=password, jwt_secret=jwt_secret)

    def set_secrets(self, project_id, password=None, jwt_secret=None):
        if password is not None:
            self.secrets[(project_id, "db_password")] = self.cipher.encrypt(password)
        if jwt_secret is not None:
            self.secrets[(project_id, "jwt_secret")] = self.cipher.encrypt(jwt_secret)

    def get_project(self, project_id):
        return self.records.get(project_id)

    def get_secret(self, project_id, secret_type):
        return self.secrets.get((project_id, secret_type))


@pytest.fixture
def cipher():
    return SecretCipher(MASTER_KEY)


@pytest.fixture
def containers():
    return FakeContainers()


@pytest.fixture
def projects(cipher):
    return FakeProjects(cipher)


@pytest.fixture
def pool_files(tmp_path):
    ini = tmp_path / "pgbouncer.ini"
    userlist = tmp_path / "userlist.txt"
    ini.write_text(PGBOUNCER_INI)
    userlist.write_text(USERLIST)
    return ini, userlist


@pytest.fixture
def registry(pool_files, containers):
    ini, userlist = pool_files
    return PoolRegistry(
        ini_path=str(ini),
        userlist_path=str(userlist),
        containers=containers,
        proxy_container="launchdb-pgbouncer",
    )


@pytest.fixture
def settings(tmp_path):
    return Settings(
        internal_api_key="test-key",
        platform_db_dsn="postgresql://unused",
        master_key=MASTER_KEY,
        config_dir=str(tmp_path / "projects"),
        docker_network=None,
        health_timeout_s=1,
        health_interval_s=0,
        activity_cache_size=16,
    )


@pytest.fixture
def alerts():
    return []


@pytest.fixture
def orchestrator(settings, projects, cipher, containers, registry, alerts):
    def alert(project_id, name, detail):
        alerts.append((project_id, name, detail))
        return True

    return GatewayOrchestrator(
        settings=settings,
        projects=projects,
        cipher=cipher,
        containers=containers,
        registry=registry,
        runtime=RuntimeState(settings.activity_cache_size),
        alert=alert,
    )


@pytest.fixture
def exec_failure():
    return ExecFailed("Command failed with exit code 1: ", exit_code=1)
