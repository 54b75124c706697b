"""FastAPI application factory for the app-operator REST front door."""

from __future__ import annotations

from typing import Any

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse, Response
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest

from appoperator.api.routes import router
from appoperator.api.schemas import ErrorResponse


def create_app(client: Any, cache: Any, namespace: str = "default") -> FastAPI:
    """Build the FastAPI app.

    Args:
        client: Cluster-state client used to create and delete records.
        cache: Watch cache serving status reads.
        namespace: Namespace records are created in, read from and deleted from.
    """
    from appoperator import __version__

    app = FastAPI(
        title="app-operator",
        version=__version__,
        description="Deploy, inspect and delete AppDeployment records.",
    )
    app.state.client = client
    app.state.cache = cache
    app.state.namespace = namespace

    @app.exception_handler(RequestValidationError)
    async def _validation_error(_request: Request, exc: RequestValidationError) -> JSONResponse:
        errors = exc.errors()
        detail = "; ".join(_describe(err) for err in errors) or "invalid request body"
        return JSONResponse(
            status_code=400,
            content=ErrorResponse(error="INVALID_REQUEST", detail=detail).model_dump(),
        )

    @app.get("/metrics", include_in_schema=False)
    async def _metrics() -> Response:
        return Response(content=generate_latest(), media_type=CONTENT_TYPE_LATEST)

    app.include_router(router)
    return app


def _describe(err: dict[str, Any]) -> str:
    location = ".".join(str(part) for part in err.get("loc", ()) if part != "body")
    message = str(err.get("msg", "invalid value"))
    return f"{location}: {message}" if location else message
