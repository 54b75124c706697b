"""FastAPI route handlers for the app-operator REST front door.

Error code conventions:
    400 INVALID_REQUEST     -- body missing a required field or carrying an invalid value
    404 RESOURCE_NOT_FOUND  -- no AppDeployment with that name
    409 CONFLICT            -- an AppDeployment with that name already exists
    500 INTERNAL_ERROR      -- the API server failed or could not be reached
"""

from __future__ import annotations

from typing import Any

import structlog
from fastapi import APIRouter, Request
from fastapi.responses import JSONResponse

from appoperator.api.schemas import (
    ActionResponse,
    DeployRequest,
    ErrorResponse,
    HealthStatus,
    StatusResponse,
)
from appoperator.k8s.errors import AlreadyExistsError, ClusterStateError, NotFoundError
from appoperator.models.resources import (
    AppDeployment,
    AppDeploymentSpec,
    Container,
    ContainerPort,
    LabelSelector,
    ObjectIdentity,
    PodTemplate,
    status_view,
)

_log = structlog.get_logger(component="api.routes")

MANAGED_BY: str = "app-operator"
_CONTAINER_PORT: int = 80

router = APIRouter()


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def build_record(body: DeployRequest, namespace: str) -> AppDeployment:
    """Translate a deploy request into the AppDeployment it creates."""
    min_replicas, max_replicas = body.normalised_replicas()
    app_labels = {"app": body.name}
    return AppDeployment(
        namespace=namespace,
        name=body.name,
        labels={
            "app.kubernetes.io/name": body.name,
            "app.kubernetes.io/managed-by": MANAGED_BY,
        },
        spec=AppDeploymentSpec(
            image=body.image,
            memory_limit=body.memory_limit,
            min_replicas=min_replicas,
            max_replicas=max_replicas,
            selector=LabelSelector(match_labels=dict(app_labels)),
            template=PodTemplate(
                labels=dict(app_labels),
                containers=[
                    Container(name=body.name, image=body.image, ports=[ContainerPort(_CONTAINER_PORT)]),
                ],
            ),
        ),
    )


def _error(status_code: int, error: str, detail: str) -> JSONResponse:
    return JSONResponse(
        status_code=status_code,
        content=ErrorResponse(error=error, detail=detail).model_dump(),
    )


def _state(request: Request) -> tuple[Any, Any, str]:
    state = request.app.state
    return state.client, state.cache, state.namespace


# ---------------------------------------------------------------------------
# Routes
# ---------------------------------------------------------------------------


@router.post(
    "/deploy",
    response_model=ActionResponse,
    summary="Create an AppDeployment",
    responses={
        400: {"model": ErrorResponse},
        409: {"model": ErrorResponse},
        500: {"model": ErrorResponse},
    },
)
async def post_deploy(request: Request, body: DeployRequest) -> ActionResponse:
    """``POST /deploy``"""
    client, _cache, namespace = _state(request)
    record = build_record(body, namespace)
    try:
        await client.create_record(record)
    except AlreadyExistsError:
        return _error(409, "CONFLICT", f"AppDeployment {body.name!r} already exists")  # type: ignore[return-value]
    except ClusterStateError as exc:
        _log.error("deploy_failed", record=str(record.identity), error=str(exc))
        return _error(500, "INTERNAL_ERROR", f"Failed to create AppDeployment: {exc}")  # type: ignore[return-value]

    _log.info("deploy_accepted", record=str(record.identity), image=body.image)
    return ActionResponse(message=f"AppDeployment {body.name} created")


@router.get(
    "/status/{name}",
    response_model=StatusResponse,
    summary="Get the status of an AppDeployment",
    responses={404: {"model": ErrorResponse}, 500: {"model": ErrorResponse}},
)
async def get_status(request: Request, name: str) -> StatusResponse:
    """``GET /status/{name}`` -- served from the watch cache, read-through on a miss."""
    _client, cache, namespace = _state(request)
    try:
        record = await cache.get_or_fetch(namespace, name)
    except ClusterStateError as exc:
        _log.error("status_lookup_failed", name=name, error=str(exc))
        return _error(500, "INTERNAL_ERROR", f"Failed to get AppDeployment: {exc}")  # type: ignore[return-value]
    if record is None:
        return _error(404, "RESOURCE_NOT_FOUND", f"AppDeployment {name!r} not found")  # type: ignore[return-value]

    view = status_view(record)
    return StatusResponse(status=view.state, replicas=view.available_replicas)


@router.delete(
    "/{name}",
    response_model=ActionResponse,
    summary="Delete an AppDeployment",
    responses={404: {"model": ErrorResponse}, 500: {"model": ErrorResponse}},
)
async def delete_deployment(request: Request, name: str) -> ActionResponse:
    """``DELETE /{name}`` -- the cache entry is dropped before the response is sent."""
    client, cache, namespace = _state(request)
    try:
        await client.delete_record(ObjectIdentity(namespace, name))
    except NotFoundError:
        cache.remove(name)
        return _error(404, "RESOURCE_NOT_FOUND", f"AppDeployment {name!r} not found")  # type: ignore[return-value]
    except ClusterStateError as exc:
        _log.error("delete_failed", name=name, error=str(exc))
        return _error(500, "INTERNAL_ERROR", f"Failed to delete AppDeployment: {exc}")  # type: ignore[return-value]

    cache.remove(name)
    _log.info("delete_accepted", name=name, namespace=namespace)
    return ActionResponse(message=f'AppDeployment "{name}" deleted')


@router.get(
    "/healthz",
    response_model=HealthStatus,
    summary="Health check",
    description="Lightweight liveness probe.  Always returns 200 if the process is up.",
)
async def get_health(request: Request) -> HealthStatus:
    """``GET /healthz``"""
    from appoperator import __version__

    cache = request.app.state.cache
    state_attr = getattr(cache, "state", None)
    cache_state = str(state_attr.value) if hasattr(state_attr, "value") else str(state_attr or "unknown")
    return HealthStatus(status="ok", version=__version__, cache_state=cache_state)
