from __future__ import annotations

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


class _CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class SpawnRequest(_CamelModel):
    project_id: str = Field(..., description="Project id, proj_ + 16 lowercase alphanumerics")
    authenticator_password: str | None = Field(
        None, description="Password of <projectId>_authenticator, registered in the PgBouncer userlist"
    )


class SpawnResponse(_CamelModel):
    project_id: str
    container_id: str
    container_name: str
    port: int
    status: str = Field(..., description="running|already_running|reloaded")
    config_hash: str


class DestroyResponse(_CamelModel):
    project_id: str
    status: str = Field(..., description="stopped|cleaned_up")
    message: str


class ReloadResponse(_CamelModel):
    project_id: str
    status: str
    message: str


class GatewayInfo(_CamelModel):
    project_id: str
    container_name: str
    port: int
    status: str
    health: str


class GatewayList(_CamelModel):
    containers: list[GatewayInfo]


class LastOperation(_CamelModel):
    operation: str
    status: str
    config_hash: str | None = None
    error: str | None = None
    at: str


class GatewayStatusResponse(_CamelModel):
    project_id: str
    container_name: str
    state: str = Field(..., description="absent|stopped|running|healthy|unhealthy")
    config_hash: str | None = None
    last_operation: LastOperation | None = None


class ErrorResponse(BaseModel):
    error: str
    message: str
