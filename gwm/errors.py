from __future__ import annotations


class GatewayError(Exception):
    """Base error carrying the wire error code and HTTP status."""

    code = "internal_error"
    status_code = 500

    def __init__(self, message: str, *, code: str | None = None, status_code: int | None = None):
        super().__init__(message)
        self.message = message
        if code is not None:
            self.code = code
        if status_code is not None:
            self.status_code = status_code

    def to_dict(self) -> dict[str, str]:
        return {"error": self.code, "message": self.message}


# --- not found ---


class ProjectNotFound(GatewayError):
    code = "project_not_found"
    status_code = 404


class ContainerNotFound(GatewayError):
    code = "not_found"
    status_code = 404


# --- control key ---


class Unauthenticated(GatewayError):
    code = "unauthorized"
    status_code = 401


class Forbidden(GatewayError):
    code = "forbidden"
    status_code = 403


# --- client errors ---


class InvalidProjectId(GatewayError):
    code = "bad_request"
    status_code = 400


class ProjectNotActive(GatewayError):
    code = "project_not_active"
    status_code = 400


# --- upstream failures ---


class SecretNotFound(GatewayError):
    code = "secret_not_found"


class DecryptionFailed(GatewayError):
    code = "decryption_failed"


class RegistryError(GatewayError):
    """The pool registry files could not be read, parsed or written."""

    code = "registry_failed"


class PoolRegistrationFailed(GatewayError):
    code = "pgbouncer_add_failed"


class RuntimeFailure(GatewayError):
    """Any container-runtime error other than not-found."""

    code = "runtime_failed"


class ExecFailed(RuntimeFailure):
    code = "exec_failed"

    def __init__(self, message: str, exit_code: int, stdout: str = "", stderr: str = ""):
        super().__init__(message)
        self.exit_code = exit_code
        self.stdout = stdout
        self.stderr = stderr


class ContainerUnhealthy(RuntimeFailure):
    code = "spawn_failed"


class SpawnFailed(GatewayError):
    code = "spawn_failed"


# --- timeout ---


class HealthTimeout(GatewayError):
    code = "health_timeout"
    status_code = 504
