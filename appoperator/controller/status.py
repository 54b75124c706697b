"""Conflict-safe status writes for AppDeployment records.

Every write starts from a fresh read of the record, so the update always
carries the latest resourceVersion and only the status sub-fields are
replaced.  Optimistic-concurrency conflicts are retried with exponential
back-off; every other error propagates immediately.
"""

from __future__ import annotations

import asyncio
from dataclasses import replace
from datetime import UTC, datetime

from appoperator.k8s.client import ClusterState
from appoperator.k8s.errors import ConflictError
from appoperator.models.resources import (
    AppDeployment,
    AppDeploymentStatus,
    Condition,
    DeploymentState,
    ObjectIdentity,
)
from appoperator.observability.logging import get_logger
from appoperator.observability.metrics import (
    status_conflicts_total,
    status_retry_exhausted_total,
    status_writes_total,
)

_log = get_logger("status_updater")

READY_CONDITION: str = "Ready"

_DEFAULT_MAX_ATTEMPTS: int = 5
_DEFAULT_BACKOFF_S: float = 1.0


class StatusUpdater:
    """Writes ``AppDeployment.status`` through the status subresource.

    Args:
        client: Cluster-state access.
        max_attempts: Retry ceiling for conflicting writes.
        backoff_base_s: First back-off delay; doubled after every conflict.
    """

    def __init__(
        self,
        client: ClusterState,
        max_attempts: int = _DEFAULT_MAX_ATTEMPTS,
        backoff_base_s: float = _DEFAULT_BACKOFF_S,
    ) -> None:
        self._client = client
        self._max_attempts = max(1, max_attempts)
        self._backoff_base_s = backoff_base_s

    async def update_status(self, identity: ObjectIdentity, desired: AppDeploymentStatus) -> AppDeployment | None:
        """Persist ``desired`` onto the record named by ``identity``.

        Returns the record as written, or None when the stored status already
        has the desired state and message.

        Raises:
            ConflictError: Every attempt up to the retry ceiling conflicted.
            ClusterStateError: Any other failure, raised on first occurrence.
        """
        delay = self._backoff_base_s
        last_conflict: ConflictError | None = None

        for attempt in range(1, self._max_attempts + 1):
            current = await self._client.get_record(identity)
            if current.status.matches(desired):
                status_writes_total.labels(result="unchanged").inc()
                _log.debug("status_unchanged", record=str(identity), state=desired.state)
                return None

            current.status = merge_status(current.status, desired)
            try:
                written = await self._client.update_record_status(current)
            except ConflictError as exc:
                last_conflict = exc
                status_conflicts_total.inc()
                _log.info(
                    "status_write_conflict",
                    record=str(identity),
                    attempt=attempt,
                    max_attempts=self._max_attempts,
                )
                if attempt < self._max_attempts:
                    await asyncio.sleep(delay)
                    delay *= 2
                continue
            except Exception:
                status_writes_total.labels(result="error").inc()
                raise

            status_writes_total.labels(result="written").inc()
            _log.info(
                "status_written",
                record=str(identity),
                state=desired.state,
                message=desired.message,
                available_replicas=desired.available_replicas,
                attempt=attempt,
            )
            return written

        status_retry_exhausted_total.inc()
        status_writes_total.labels(result="conflict").inc()
        _log.warning("status_retry_exhausted", record=str(identity), attempts=self._max_attempts)
        raise last_conflict or ConflictError(f"status of {identity} could not be written")


def merge_status(current: AppDeploymentStatus, desired: AppDeploymentStatus) -> AppDeploymentStatus:
    """Return ``desired`` with the Ready condition reconciled against ``current``.

    Conditions other than Ready are carried over from ``current``.  The Ready
    condition's transition time only moves when its status flips.
    """
    ready = desired.state == DeploymentState.RUNNING
    ready_status = "True" if ready else "False"
    previous = current.condition(READY_CONDITION)

    if previous is not None and previous.status == ready_status:
        transition_time = previous.last_transition_time
    else:
        transition_time = datetime.now(tz=UTC).strftime("%Y-%m-%dT%H:%M:%SZ")

    ready_condition = Condition(
        type=READY_CONDITION,
        status=ready_status,
        reason=desired.state or "Unknown",
        message=desired.message,
        last_transition_time=transition_time,
    )
    conditions = [c for c in current.conditions if c.type != READY_CONDITION]
    conditions.append(ready_condition)
    return replace(desired, conditions=conditions)
