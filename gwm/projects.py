from __future__ import annotations

from dataclasses import dataclass
from threading import Lock

from psycopg.rows import dict_row
from psycopg_pool import ConnectionPool

PROJECT_STATUSES = {"provisioning", "active", "suspended", "failed", "deleted"}


@dataclass(frozen=True)
class TenantRecord:
    id: str
    db_name: str
    status: str

    @property
    def is_active(self) -> bool:
        return self.status == "active"


class ProjectStore:
    """Read-only access to platform.projects and platform.secrets.

    The pool is created lazily on first use so the app can boot (and be
    tested) without a reachable platform database.
    """

    def __init__(self, dsn: str, min_size: int = 1, max_size: int = 5, timeout_s: float = 5.0):
        self.dsn = dsn
        self.min_size = min_size
        self.max_size = max_size
        self.timeout_s = timeout_s
        self._pool: ConnectionPool | None = None
        self._lock = Lock()

    def _get_pool(self) -> ConnectionPool:
        with self._lock:
            if self._pool is None:
                self._pool = ConnectionPool(
                    self.dsn,
                    min_size=self.min_size,
                    max_size=self.max_size,
                    timeout=self.timeout_s,
                    kwargs={"row_factory": dict_row, "autocommit": True},
                    open=True,
                )
            return self._pool

    def get_project(self, project_id: str) -> TenantRecord | None:
        with self._get_pool().connection() as conn:
            row = conn.execute(
                "SELECT id, db_name, status FROM platform.projects WHERE id = %s",
                (project_id,),
            ).fetchone()
        if not row:
            return None
        return TenantRecord(id=row["id"], db_name=row["db_name"], status=row["status"])

    def get_secret(self, project_id: str, secret_type: str) -> bytes | None:
        """Latest key version of an encrypted secret ('jwt_secret' or 'db_password')."""
        with self._get_pool().connection() as conn:
            row = conn.execute(
                """
                SELECT encrypted_value FROM platform.secrets
                WHERE project_id = %s AND secret_type = %s
                ORDER BY key_version DESC
                LIMIT 1
                """,
                (project_id, secret_type),
            ).fetchone()
        if not row or row["encrypted_value"] is None:
            return None
        return bytes(row["encrypted_value"])

    def close(self) -> None:
        with self._lock:
            if self._pool is not None:
                self._pool.close()
                self._pool = None
