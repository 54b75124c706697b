"""Error taxonomy for cluster-state access.

NotFound
    The record or workload is absent.  A normal condition; callers decide
    whether it is transient or terminal.
Conflict
    The resourceVersion sent with an update is stale.  Retried by the status
    updater only.
TransientIO
    Network trouble, throttling or a server-side failure.  Surfaced to the
    reconcile queue, which re-invokes the pass with back-off.
Malformed
    An invalid spec value (e.g. an unparsable memory limit).  Terminal for the
    current pass and recorded into status as ``Failed``.
"""

from __future__ import annotations

import asyncio

import aiohttp
from kubernetes_asyncio.client.exceptions import ApiException


class ClusterStateError(Exception):
    """Base class for all errors raised by the cluster-state layer."""

    status: int = 0

    def __init__(self, message: str, status: int | None = None) -> None:
        super().__init__(message)
        if status is not None:
            self.status = status


class NotFoundError(ClusterStateError):
    status = 404


class ConflictError(ClusterStateError):
    status = 409


class AlreadyExistsError(ConflictError):
    """A create hit an object that already exists (409 ``AlreadyExists``)."""


class TransientIOError(ClusterStateError):
    """The API could not be reached or answered with a retryable failure."""


class WatchExpiredError(ClusterStateError):
    """The watch resourceVersion is too old (410 Gone); the caller must relist."""

    status = 410


class MalformedSpecError(ClusterStateError):
    """A spec value could not be interpreted."""

    status = 422


def translate_api_exception(exc: ApiException, what: str) -> ClusterStateError:
    """Map a kubernetes_asyncio ``ApiException`` onto the error taxonomy.

    Args:
        exc: The exception raised by the generated API client.
        what: Short description of the object involved, used in the message.
    """
    status = int(exc.status or 0)
    reason = exc.reason or "unknown"
    if status == 404:
        return NotFoundError(f"{what} not found")
    if status == 409:
        if reason == "AlreadyExists" or "already exists" in str(exc.body or ""):
            return AlreadyExistsError(f"{what} already exists")
        return ConflictError(f"{what} was modified concurrently; resourceVersion is stale")
    if status == 410:
        return WatchExpiredError(f"watch on {what} expired: {reason}")
    if status == 422:
        return MalformedSpecError(f"{what} rejected as invalid: {reason}")
    return TransientIOError(f"API error on {what}: {status} {reason}", status=status)


def translate_exception(exc: Exception, what: str) -> Exception:
    """Translate transport-level failures; anything unrecognised is returned unchanged."""
    if isinstance(exc, ApiException):
        return translate_api_exception(exc, what)
    if isinstance(exc, aiohttp.ClientError | asyncio.TimeoutError):
        return TransientIOError(f"cannot reach the API server for {what}: {exc}")
    return exc
