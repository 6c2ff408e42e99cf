from __future__ import annotations

import os
import secrets

from fastapi import Depends, FastAPI, Header, Query, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from gwm import db
from gwm.api_models import (
    DestroyResponse,
    ErrorResponse,
    GatewayInfo,
    GatewayList,
    GatewayStatusResponse,
    LastOperation,
    ReloadResponse,
    SpawnRequest,
    SpawnResponse,
)
from gwm.crypto import SecretCipher
from gwm.docker_ops import ContainerClient, make_docker_client
from gwm.errors import Forbidden, GatewayError, Unauthenticated
from gwm.orchestrator import GatewayOrchestrator
from gwm.pool_registry import PoolRegistry
from gwm.projects import ProjectStore
from gwm.runtime import RuntimeState
from gwm.settings import Settings, settings

PREFIX = "/internal/postgrest"

ERRORS = {code: {"model": ErrorResponse} for code in (400, 401, 403, 404, 500, 504)}

app = FastAPI(title="Tenant Gateway Manager")


def build_orchestrator(cfg: Settings) -> GatewayOrchestrator:
    containers = ContainerClient(make_docker_client(cfg.docker_host))
    registry = PoolRegistry(
        ini_path=cfg.pgbouncer_ini,
        userlist_path=cfg.pgbouncer_userlist,
        containers=containers,
        proxy_container=cfg.pgbouncer_container,
        db_host=cfg.postgres_host,
        db_port=cfg.postgres_port,
        pool_size=cfg.pool_size,
        reserve_pool=cfg.reserve_pool,
        backup=cfg.pgbouncer_backup,
    )
    return GatewayOrchestrator(
        settings=cfg,
        projects=ProjectStore(cfg.platform_db_dsn or ""),
        cipher=SecretCipher(cfg.master_key or ""),
        containers=containers,
        registry=registry,
        runtime=RuntimeState(cfg.activity_cache_size),
    )


@app.on_event("startup")
def startup() -> None:
    settings.validate()
    db.init_db()
    os.makedirs(settings.config_dir, exist_ok=True)
    app.state.orchestrator = build_orchestrator(settings)
    db.log_event("INFO", "Gateway manager started")


@app.on_event("shutdown")
def shutdown() -> None:
    orch = getattr(app.state, "orchestrator", None)
    if orch is not None and isinstance(orch.projects, ProjectStore):
        orch.projects.close()


# --- dependencies ---


def get_settings() -> Settings:
    return settings


def get_orchestrator() -> GatewayOrchestrator:
    return app.state.orchestrator


def require_internal_key(
    x_internal_key: str | None = Header(None, alias="X-Internal-Key"),
    cfg: Settings = Depends(get_settings),
) -> None:
    if not x_internal_key:
        raise Unauthenticated("X-Internal-Key header required")
    expected = (cfg.internal_api_key or "").encode("utf-8")
    # compare_digest runs in time independent of where the inputs differ.
    if not expected or not secrets.compare_digest(x_internal_key.encode("utf-8"), expected):
        raise Forbidden("Invalid API key")


# --- error rendering ---


@app.exception_handler(GatewayError)
def gateway_error_handler(request: Request, exc: GatewayError) -> JSONResponse:
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())


@app.exception_handler(RequestValidationError)
def validation_error_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    fields = ", ".join(".".join(str(p) for p in err.get("loc", ())) for err in exc.errors())
    return JSONResponse(status_code=400, content={"error": "bad_request", "message": f"Invalid request: {fields}"})


# --- endpoints ---


@app.get("/health")
def health() -> dict[str, str]:
    return {"status": "healthy", "service": "gateway-manager"}


@app.post(f"{PREFIX}/spawn", response_model=SpawnResponse, responses=ERRORS, dependencies=[Depends(require_internal_key)])
def spawn(body: SpawnRequest, orch: GatewayOrchestrator = Depends(get_orchestrator)) -> JSONResponse:
    res = orch.spawn(body.project_id, body.authenticator_password)
    payload = SpawnResponse(
        project_id=res.project_id,
        container_id=res.container_id,
        container_name=res.container_name,
        port=res.port,
        status=res.status,
        config_hash=res.config_hash,
    )
    return JSONResponse(status_code=201 if res.created else 200, content=payload.model_dump(by_alias=True))


@app.get(PREFIX, response_model=GatewayList, responses=ERRORS, dependencies=[Depends(require_internal_key)])
def list_gateways(orch: GatewayOrchestrator = Depends(get_orchestrator)) -> GatewayList:
    return GatewayList(
        containers=[
            GatewayInfo(
                project_id=g.project_id,
                container_name=g.container_name,
                port=g.port,
                status=g.status,
                health=g.health,
            )
            for g in orch.list()
        ]
    )


@app.get(f"{PREFIX}/{{project_id}}", response_model=GatewayStatusResponse, responses=ERRORS, dependencies=[Depends(require_internal_key)])
def describe(project_id: str, orch: GatewayOrchestrator = Depends(get_orchestrator)) -> GatewayStatusResponse:
    st = orch.describe(project_id)
    last = st.last_operation
    return GatewayStatusResponse(
        project_id=st.project_id,
        container_name=st.container_name,
        state=st.state.value,
        config_hash=st.config_hash,
        last_operation=LastOperation(
            operation=last.operation,
            status=last.status,
            config_hash=last.config_hash,
            error=last.error,
            at=last.at,
        )
        if last
        else None,
    )


@app.delete(f"{PREFIX}/{{project_id}}", response_model=DestroyResponse, responses=ERRORS, dependencies=[Depends(require_internal_key)])
def destroy(project_id: str, orch: GatewayOrchestrator = Depends(get_orchestrator)) -> DestroyResponse:
    res = orch.destroy(project_id)
    return DestroyResponse(project_id=res.project_id, status=res.status, message=res.message)


@app.post(f"{PREFIX}/{{project_id}}/restart", response_model=ReloadResponse, responses=ERRORS, dependencies=[Depends(require_internal_key)])
def restart(project_id: str, orch: GatewayOrchestrator = Depends(get_orchestrator)) -> ReloadResponse:
    res = orch.reload(project_id)
    return ReloadResponse(project_id=res.project_id, status=res.status, message=res.message)


@app.get("/internal/events", dependencies=[Depends(require_internal_key)])
def events(limit: int = Query(100, ge=1, le=1000), project_id: str | None = Query(None, alias="projectId")) -> list[dict]:
    return db.latest_events(limit=limit, project_id=project_id)
