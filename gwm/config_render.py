from __future__ import annotations

import hashlib
from urllib.parse import quote

# Characters encodeURIComponent leaves alone beyond quote()'s own "_.-~".
_URI_COMPONENT_SAFE = "!*'()"


def render_config(
    project_id: str,
    db_name: str,
    db_password: str,
    jwt_secret: str,
    host: str = "pgbouncer",
    port: int = 6432,
) -> str:
    """Build the PostgREST config file for one tenant.

    Pure function: identical arguments always give byte-identical output,
    which is what makes the content hash usable as an idempotency key.
    """
    encoded_password = quote(db_password, safe=_URI_COMPONENT_SAFE)
    escaped_jwt_secret = jwt_secret.replace('"', '\\"')
    authenticator_role = f"{project_id}_authenticator"

    return f"""# PostgREST config for {project_id}
db-uri = "postgres://{authenticator_role}:{encoded_password}@{host}:{int(port)}/{db_name}"
db-schemas = "public,storage"
db-anon-role = "anon"
db-pool = 10
db-pool-timeout = 10

# PgBouncer runs in transaction pooling mode
db-prepared-statements = false

jwt-secret = "{escaped_jwt_secret}"
jwt-aud = "authenticated"

max-rows = 1000
db-tx-end = "commit"
"""


def config_hash(content: str) -> str:
    return hashlib.sha256(content.encode("utf-8")).hexdigest()[:16]
