from __future__ import annotations

import fcntl
import hashlib
import os
import shutil
import time
from contextlib import contextmanager
from dataclasses import dataclass
from typing import Callable, Iterator

from .db import log_event
from .docker_ops import ContainerClient
from .errors import RegistryError

DATABASES_SECTION = "databases"
RELOAD_COMMAND = "kill -HUP 1"


@contextmanager
def locked(path: str) -> Iterator[None]:
    """Hold an exclusive advisory lock on ``<path>.lock``.

    Every process that edits ``path`` (any manager replica, or a script in the
    PgBouncer container using flock on the same file) serializes here. The
    lock is dropped on every exit path, including exceptions.
    """
    try:
        fd = os.open(f"{path}.lock", os.O_RDWR | os.O_CREAT, 0o600)
    except OSError as e:
        raise RegistryError(f"Cannot open lock file for {path}: {e}") from e
    try:
        fcntl.flock(fd, fcntl.LOCK_EX)
        try:
            yield
        finally:
            fcntl.flock(fd, fcntl.LOCK_UN)
    finally:
        os.close(fd)


def _read_lines(path: str) -> list[str]:
    try:
        with open(path, encoding="utf-8") as f:
            return f.read().splitlines()
    except OSError as e:
        raise RegistryError(f"Cannot read {path}: {e}") from e


def _write_lines(path: str, lines: list[str]) -> None:
    # Rewrite in place so a single-file bind mount keeps pointing at the same inode.
    try:
        with open(path, "r+", encoding="utf-8") as f:
            f.seek(0)
            f.write("\n".join(lines) + "\n" if lines else "")
            f.truncate()
            f.flush()
            os.fsync(f.fileno())
    except OSError as e:
        raise RegistryError(f"Cannot write {path}: {e}") from e


# --- pgbouncer.ini ---


@dataclass(frozen=True)
class DatabaseEntry:
    name: str
    host: str
    port: int
    dbname: str
    pool_size: int
    reserve_pool: int

    def render(self) -> str:
        return (
            f"{self.name} = host={self.host} port={self.port} dbname={self.dbname} "
            f"pool_size={self.pool_size} reserve_pool={self.reserve_pool}"
        )


def _section_name(line: str) -> str | None:
    s = line.strip()
    if s.startswith("[") and s.endswith("]"):
        return s[1:-1].strip().lower()
    return None


def _entry_key(line: str) -> str | None:
    s = line.strip()
    if not s or s[0] in "#;[" or "=" not in s:
        return None
    return s.split("=", 1)[0].strip()


class IniDocument:
    """Line-preserving view of pgbouncer.ini.

    Only entries inside ``[databases]`` are ever touched; comments, ordering
    and every other section round-trip unchanged.
    """

    def __init__(self, lines: list[str]):
        self.lines = list(lines)

    def _section_bounds(self, section: str) -> tuple[int, int] | None:
        start = None
        for i, line in enumerate(self.lines):
            name = _section_name(line)
            if name is None:
                continue
            if start is not None:
                return start, i
            if name == section:
                start = i
        if start is None:
            return None
        return start, len(self.lines)

    def has_key(self, section: str, key: str) -> bool:
        bounds = self._section_bounds(section)
        if bounds is None:
            return False
        header, end = bounds
        return any(_entry_key(line) == key for line in self.lines[header + 1 : end])

    def insert_after_header(self, section: str, line: str) -> None:
        bounds = self._section_bounds(section)
        if bounds is None:
            raise RegistryError(f"Section [{section}] not found")
        header, _ = bounds
        self.lines.insert(header + 1, line)

    def remove_key(self, section: str, key: str) -> int:
        bounds = self._section_bounds(section)
        if bounds is None:
            return 0
        header, end = bounds
        kept = [line for line in self.lines[header + 1 : end] if _entry_key(line) != key]
        removed = (end - header - 1) - len(kept)
        self.lines[header + 1 : end] = kept
        return removed


# --- userlist.txt ---


def md5_password(username: str, password: str) -> str:
    """PgBouncer md5 auth format: "md5" + md5(password + username)."""
    return "md5" + hashlib.md5((password + username).encode("utf-8")).hexdigest()


def _quote(value: str) -> str:
    return '"' + value.replace('"', '""') + '"'


def userlist_line(username: str, password_hash: str) -> str:
    return f"{_quote(username)} {_quote(password_hash)}"


def _userlist_user(line: str) -> str | None:
    s = line.strip()
    if not s.startswith('"'):
        return None
    out = []
    i = 1
    while i < len(s):
        ch = s[i]
        if ch == '"':
            if i + 1 < len(s) and s[i + 1] == '"':
                out.append('"')
                i += 2
                continue
            return "".join(out)
        out.append(ch)
        i += 1
    return None


class PoolRegistry:
    """Tenant entries in the shared PgBouncer configuration.

    Each mutation is a locked read-modify-write of one file followed, when
    the file actually changed, by a reload of the PgBouncer process.
    """

    def __init__(
        self,
        ini_path: str,
        userlist_path: str,
        containers: ContainerClient,
        proxy_container: str,
        db_host: str = "postgres",
        db_port: int = 5432,
        pool_size: int = 5,
        reserve_pool: int = 2,
        backup: bool = False,
        clock: Callable[[], float] = time.time,
    ):
        self.ini_path = ini_path
        self.userlist_path = userlist_path
        self.containers = containers
        self.proxy_container = proxy_container
        self.db_host = db_host
        self.db_port = db_port
        self.pool_size = pool_size
        self.reserve_pool = reserve_pool
        self.backup = backup
        self._clock = clock

    def _backup(self, path: str) -> None:
        if not self.backup:
            return
        try:
            shutil.copy2(path, f"{path}.backup.{int(self._clock())}")
        except OSError as e:
            log_event("WARN", f"Backup of {path} failed: {e}", operation="pool")

    def _edit(self, path: str, mutate: Callable[[list[str]], list[str] | None]) -> bool:
        """Apply ``mutate`` under the file lock; returns True when the file changed."""
        with locked(path):
            lines = _read_lines(path)
            new_lines = mutate(lines)
            if new_lines is None or new_lines == lines:
                return False
            self._backup(path)
            _write_lines(path, new_lines)
            return True

    def reload(self) -> None:
        """SIGHUP PgBouncer's control process so edits apply without dropping connections."""
        self.containers.exec_in_other(self.proxy_container, RELOAD_COMMAND, user="root")
        log_event("INFO", f"Reloaded {self.proxy_container}", operation="pool")

    # --- databases ---

    def database_entry(self, project_id: str, db_name: str | None = None) -> DatabaseEntry:
        return DatabaseEntry(
            name=project_id,
            host=self.db_host,
            port=self.db_port,
            dbname=db_name or project_id,
            pool_size=self.pool_size,
            reserve_pool=self.reserve_pool,
        )

    def has_database(self, project_id: str) -> bool:
        with locked(self.ini_path):
            return IniDocument(_read_lines(self.ini_path)).has_key(DATABASES_SECTION, project_id)

    def add_database(self, project_id: str, db_name: str | None = None) -> bool:
        entry = self.database_entry(project_id, db_name)

        def mutate(lines: list[str]) -> list[str] | None:
            doc = IniDocument(lines)
            if doc.has_key(DATABASES_SECTION, project_id):
                return None
            doc.insert_after_header(DATABASES_SECTION, entry.render())
            return doc.lines

        changed = self._edit(self.ini_path, mutate)
        if changed:
            log_event("INFO", f"Added database {project_id} to PgBouncer", project_id, "pool")
            self.reload()
        return changed

    def remove_database(self, project_id: str) -> bool:
        def mutate(lines: list[str]) -> list[str] | None:
            doc = IniDocument(lines)
            if not doc.remove_key(DATABASES_SECTION, project_id):
                return None
            return doc.lines

        changed = self._edit(self.ini_path, mutate)
        if changed:
            log_event("INFO", f"Removed database {project_id} from PgBouncer", project_id, "pool")
            self.reload()
        return changed

    # --- users ---

    def has_user(self, username: str) -> bool:
        with locked(self.userlist_path):
            return any(_userlist_user(line) == username for line in _read_lines(self.userlist_path))

    def add_user(self, username: str, password: str) -> bool:
        line = userlist_line(username, md5_password(username, password))

        def mutate(lines: list[str]) -> list[str] | None:
            current = [x for x in lines if _userlist_user(x) == username]
            if current == [line]:
                return None
            return [x for x in lines if _userlist_user(x) != username] + [line]

        changed = self._edit(self.userlist_path, mutate)
        if changed:
            log_event("INFO", f"Added user {username} to PgBouncer userlist", operation="pool")
            self.reload()
        return changed

    def remove_user(self, username: str) -> bool:
        def mutate(lines: list[str]) -> list[str] | None:
            return [x for x in lines if _userlist_user(x) != username]

        changed = self._edit(self.userlist_path, mutate)
        if changed:
            log_event("INFO", f"Removed user {username} from PgBouncer userlist", operation="pool")
            self.reload()
        return changed
