"""Thin async wrapper around the Kubernetes API for AppDeployments and Deployments."""

from appoperator.k8s.client import ClusterStateClient
from appoperator.k8s.errors import (
    AlreadyExistsError,
    ClusterStateError,
    ConflictError,
    MalformedSpecError,
    NotFoundError,
    TransientIOError,
    WatchExpiredError,
)

__all__ = [
    "AlreadyExistsError",
    "ClusterStateClient",
    "ClusterStateError",
    "ConflictError",
    "MalformedSpecError",
    "NotFoundError",
    "TransientIOError",
    "WatchExpiredError",
]
