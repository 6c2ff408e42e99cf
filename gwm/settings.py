from __future__ import annotations

import base64
import binascii
import os
from dataclasses import dataclass


def _env_bool(name: str, default: bool = False) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip().lower() in {"1", "true", "yes", "y", "on"}


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None:
        return default
    try:
        return int(raw)
    except ValueError:
        return default


@dataclass(frozen=True)
class Settings:
    # Control surface
    internal_api_key: str | None = os.getenv("GWM_INTERNAL_API_KEY")
    db_path: str = os.getenv("GWM_DB_PATH", "gwm.db")

    # Platform database + secrets
    platform_db_dsn: str | None = os.getenv("GWM_PLATFORM_DB_DSN")
    master_key: str | None = os.getenv("GWM_MASTER_KEY")

    # Gateway containers
    config_dir: str = os.getenv("GWM_CONFIG_DIR", "/etc/postgrest/projects")
    container_config_dir: str = os.getenv("GWM_CONTAINER_CONFIG_DIR", "/etc/postgrest/projects")
    config_volume: str = os.getenv("GWM_CONFIG_VOLUME", "launchdb_postgrest-projects")
    gateway_image: str = os.getenv("GWM_GATEWAY_IMAGE", "launchdb/postgrest:v1")
    container_prefix: str = os.getenv("GWM_CONTAINER_PREFIX", "postgrest-")
    gateway_port: int = _env_int("GWM_GATEWAY_PORT", 3000)
    domain: str | None = os.getenv("GWM_DOMAIN")
    health_timeout_s: int = _env_int("GWM_HEALTH_TIMEOUT_S", 90)
    health_interval_s: int = _env_int("GWM_HEALTH_INTERVAL_S", 2)

    # Container runtime (socket proxy, never the raw host socket)
    docker_host: str | None = os.getenv("GWM_DOCKER_HOST")
    docker_network: str | None = os.getenv("GWM_DOCKER_NETWORK")

    # PgBouncer
    pgbouncer_container: str = os.getenv("GWM_PGBOUNCER_CONTAINER", "launchdb-pgbouncer")
    pgbouncer_host: str = os.getenv("GWM_PGBOUNCER_HOST", "pgbouncer")
    pgbouncer_port: int = _env_int("GWM_PGBOUNCER_PORT", 6432)
    pgbouncer_ini: str = os.getenv("GWM_PGBOUNCER_INI", "/etc/pgbouncer/pgbouncer.ini")
    pgbouncer_userlist: str = os.getenv("GWM_PGBOUNCER_USERLIST", "/etc/pgbouncer/userlist.txt")
    pgbouncer_backup: bool = _env_bool("GWM_PGBOUNCER_BACKUP", False)
    postgres_host: str = os.getenv("GWM_POSTGRES_HOST", "postgres")
    postgres_port: int = _env_int("GWM_POSTGRES_PORT", 5432)
    pool_size: int = _env_int("GWM_POOL_SIZE", 5)
    reserve_pool: int = _env_int("GWM_RESERVE_POOL", 2)

    # In-memory per-tenant activity cache
    activity_cache_size: int = _env_int("GWM_ACTIVITY_CACHE_SIZE", 1024)

    # Email alerting (optional)
    enable_email: bool = _env_bool("GWM_ENABLE_EMAIL", False)
    smtp_host: str = os.getenv("GWM_SMTP_HOST", "smtp.gmail.com")
    smtp_port: int = _env_int("GWM_SMTP_PORT", 587)
    smtp_user: str | None = os.getenv("GWM_SMTP_USER")
    smtp_password: str | None = os.getenv("GWM_SMTP_PASSWORD")
    email_from: str | None = os.getenv("GWM_EMAIL_FROM")
    email_to: str | None = os.getenv("GWM_EMAIL_TO")

    def missing_required(self) -> list[str]:
        """Names of required variables that are not set."""
        missing = []
        if not self.internal_api_key:
            missing.append("GWM_INTERNAL_API_KEY")
        if not self.platform_db_dsn:
            missing.append("GWM_PLATFORM_DB_DSN")
        if not self.master_key:
            missing.append("GWM_MASTER_KEY")
        return missing

    def validate(self) -> None:
        """Fail fast on incomplete configuration."""
        missing = self.missing_required()
        if missing:
            raise RuntimeError(f"Missing required environment variables: {', '.join(missing)}")
        try:
            key = base64.b64decode(self.master_key or "", validate=True)
        except binascii.Error as e:
            raise RuntimeError(f"Invalid GWM_MASTER_KEY: not base64 ({e})") from e
        if len(key) != 32:
            raise RuntimeError(f"Invalid GWM_MASTER_KEY: {len(key)} bytes (expected 32)")


settings = Settings()
