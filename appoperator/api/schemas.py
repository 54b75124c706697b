"""Pydantic request/response models for the app-operator REST API.

All models use Pydantic v2 syntax.  Request bodies keep the camelCase field
names the command-line front end sends (``memoryLimit``, ``minReplicas``).
"""

from __future__ import annotations

from pydantic import BaseModel, ConfigDict, Field, field_validator

from appoperator.k8s.errors import MalformedSpecError
from appoperator.k8s.quantity import parse_quantity

# ---------------------------------------------------------------------------
# Request models
# ---------------------------------------------------------------------------


class DeployRequest(BaseModel):
    """Request body for ``POST /deploy``."""

    model_config = ConfigDict(populate_by_name=True)

    name: str = Field(..., min_length=1, description="AppDeployment name.", examples=["web"])
    image: str = Field(..., min_length=1, description="Container image reference.", examples=["nginx:latest"])
    memory_limit: str = Field(
        ...,
        alias="memoryLimit",
        min_length=1,
        description="Container memory limit as a Kubernetes quantity.",
        examples=["256Mi", "1Gi"],
    )
    min_replicas: int = Field(default=1, alias="minReplicas", description="Replica floor; values below 1 become 1.")
    max_replicas: int = Field(
        default=3,
        alias="maxReplicas",
        description="Replica ceiling; raised to ``minReplicas`` when lower.",
    )

    @field_validator("memory_limit")
    @classmethod
    def validate_memory_limit(cls, value: str) -> str:
        """Ensure the memory limit parses as a quantity."""
        try:
            parse_quantity(value)
        except MalformedSpecError as exc:
            raise ValueError(str(exc)) from exc
        return value

    def normalised_replicas(self) -> tuple[int, int]:
        """Return ``(min, max)`` with the floor raised to 1 and the ceiling to the floor."""
        minimum = self.min_replicas if self.min_replicas > 0 else 1
        maximum = self.max_replicas if self.max_replicas >= minimum else minimum
        return minimum, maximum


# ---------------------------------------------------------------------------
# Response models
# ---------------------------------------------------------------------------


class ActionResponse(BaseModel):
    """Response body for successful deploy and delete requests."""

    status: str = Field(default="success", examples=["success"])
    message: str = Field(..., examples=["AppDeployment web created successfully"])


class StatusResponse(BaseModel):
    """Response body for ``GET /status/{name}``."""

    status: str = Field(
        ...,
        description="Record state; empty before the first reconcile pass.",
        examples=["Pending", "Running", "Failed"],
    )
    replicas: int = Field(..., description="Available replicas reported in the record status.", examples=[1])


class HealthStatus(BaseModel):
    """Response body for ``GET /healthz``."""

    status: str = Field(
        ...,
        description="Always ``ok`` while the process is running.",
        examples=["ok"],
    )
    version: str = Field(
        ...,
        description="app-operator version string.",
        examples=["0.1.0"],
    )
    cache_state: str = Field(
        ...,
        description="Current watch cache state.",
        examples=["streaming", "disconnected", "draining"],
    )


class ErrorResponse(BaseModel):
    """Standard error envelope returned for all 4xx and 5xx responses."""

    error: str = Field(
        ...,
        description="Machine-readable error code.",
        examples=[
            "INVALID_REQUEST",
            "RESOURCE_NOT_FOUND",
            "CONFLICT",
            "INTERNAL_ERROR",
        ],
    )
    detail: str = Field(
        ...,
        description="Human-readable description of the error.",
        examples=["name is required"],
    )
