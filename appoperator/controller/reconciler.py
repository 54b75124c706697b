"""Reconcile loop for AppDeployment records.

One pass takes a record identity, re-reads the record and its managed
Deployment, and applies exactly one corrective action:

1. record gone            -> nothing to do (ownership cascade deletes the workload)
2. workload missing       -> create it, status Pending
3. workload drifted       -> update image / replicas / memory limit, status Pending
4. workload matches spec  -> derive status from the replica counters

Status is only written when state or message changed.  Errors are raised to
the caller (the reconcile queue), which re-invokes the pass with back-off.
"""

from __future__ import annotations

import time
from dataclasses import dataclass

from appoperator.controller.status import StatusUpdater
from appoperator.k8s.client import ClusterState
from appoperator.k8s.errors import ClusterStateError, MalformedSpecError, NotFoundError
from appoperator.k8s.quantity import parse_quantity, quantities_equal
from appoperator.models.config import ResourceConfig
from appoperator.models.resources import (
    APP_DEPLOYMENT_KIND,
    AppDeployment,
    AppDeploymentStatus,
    Container,
    ContainerPort,
    Deployment,
    DeploymentState,
    LabelSelector,
    ObjectIdentity,
    OwnerReference,
    PodTemplate,
)
from appoperator.observability.logging import get_logger
from appoperator.observability.metrics import (
    reconcile_duration_seconds,
    reconcile_total,
    workload_actions_total,
)

_log = get_logger("reconciler")

_DEFAULT_CONTAINER_PORT: int = 80

MSG_CREATED = "Deployment created, waiting for replicas"
MSG_UPDATED = "Deployment updated, waiting for pods"
MSG_WAITING_SCHEDULE = "Deployment created, waiting for pods to be scheduled"


@dataclass(frozen=True)
class ReconcileResult:
    """Outcome of a successful pass.  ``requeue`` asks for another pass soon."""

    requeue: bool = False


# ---------------------------------------------------------------------------
# Pure helpers
# ---------------------------------------------------------------------------


def derive_status(available: int, desired: int, total: int, unavailable: int) -> tuple[DeploymentState, str]:
    """Map workload replica counters onto a (state, message) pair.

    Total over every integer input and free of side effects.
    """
    if available <= 0:
        if total == 0:
            return DeploymentState.PENDING, MSG_WAITING_SCHEDULE
        missing = unavailable if unavailable > 0 else total
        return DeploymentState.PENDING, f"Deployment has {missing} unavailable replica(s)"
    if available < desired:
        return DeploymentState.PENDING, f"Deployment is scaling up: {available}/{desired} replicas"
    return DeploymentState.RUNNING, f"Deployment is active with {available} replica(s)"


def desired_replicas(record: AppDeployment) -> int:
    """Replica target for the workload: ``spec.min_replicas``, or 1 when unset."""
    return record.spec.min_replicas if record.spec.min_replicas > 0 else 1


def build_workload(record: AppDeployment, api_version: str) -> Deployment:
    """Construct the Deployment a record asks for.

    Raises:
        MalformedSpecError: The memory limit is not a valid quantity.
    """
    spec = record.spec
    name = record.workload_name
    if spec.memory_limit:
        parse_quantity(spec.memory_limit)

    match_labels = dict(spec.selector.match_labels) if spec.selector and spec.selector.match_labels else {}
    if not match_labels:
        match_labels = {"app": name}

    containers = [
        Container(name=c.name, image=c.image, ports=list(c.ports), memory_limit=c.memory_limit)
        for c in spec.template.containers
    ]
    if not containers:
        containers = [
            Container(name=name, image=spec.image, ports=[ContainerPort(_DEFAULT_CONTAINER_PORT, name="http")])
        ]
    primary = containers[0]
    if spec.image:
        primary.image = spec.image
    if spec.memory_limit:
        primary.memory_limit = spec.memory_limit

    return Deployment(
        namespace=record.namespace,
        name=name,
        replicas=desired_replicas(record),
        selector=LabelSelector(match_labels=match_labels),
        template=PodTemplate(labels={**spec.template.labels, **match_labels}, containers=containers),
        labels={**record.labels, **match_labels},
        owner_references=[
            OwnerReference(
                api_version=api_version,
                kind=APP_DEPLOYMENT_KIND,
                name=record.name,
                uid=record.uid,
            )
        ],
    )


def workload_needs_update(record: AppDeployment, workload: Deployment) -> bool:
    """Return True when the workload's image, replica target or memory limit drifted.

    Memory limits are compared as quantities, so ``1Gi`` matches ``1024Mi``.

    Raises:
        MalformedSpecError: Either memory limit is not a valid quantity.
    """
    container = workload.primary_container
    if container is None:
        return True
    if record.spec.image and container.image != record.spec.image:
        return True
    if workload.replicas != desired_replicas(record):
        return True
    return not quantities_equal(container.memory_limit, record.spec.memory_limit)


def apply_spec(record: AppDeployment, workload: Deployment) -> Deployment:
    """Copy the drift-checked fields from the record onto ``workload`` in place."""
    if not workload.template.containers:
        workload.template.containers.append(Container(name=workload.name, image=record.spec.image))
    primary = workload.template.containers[0]
    if record.spec.image:
        primary.image = record.spec.image
    if record.spec.memory_limit:
        parse_quantity(record.spec.memory_limit)
    primary.memory_limit = record.spec.memory_limit
    workload.replicas = desired_replicas(record)
    return workload


# ---------------------------------------------------------------------------
# Reconciler
# ---------------------------------------------------------------------------


class Reconciler:
    """Drives one AppDeployment's Deployment toward its spec.

    Args:
        client: Cluster-state access.
        status_updater: Writer for the status subresource.
        resource: AppDeployment resource coordinates, used for owner references.
    """

    def __init__(
        self,
        client: ClusterState,
        status_updater: StatusUpdater,
        resource: ResourceConfig | None = None,
    ) -> None:
        self._client = client
        self._status = status_updater
        self._api_version = (resource or ResourceConfig()).api_version

    async def reconcile(self, identity: ObjectIdentity) -> ReconcileResult:
        """Run one pass for ``identity``.

        Raises:
            ClusterStateError: A fetch, create, update or status write failed.
        """
        start = time.monotonic()
        outcome = "error"
        try:
            result = await self._reconcile(identity)
            outcome = "requeue" if result.requeue else "done"
            return result
        finally:
            reconcile_total.labels(outcome=outcome).inc()
            reconcile_duration_seconds.observe(time.monotonic() - start)

    async def _reconcile(self, identity: ObjectIdentity) -> ReconcileResult:
        log = _log.bind(record=str(identity))
        try:
            record = await self._client.get_record(identity)
        except NotFoundError:
            log.info("record_not_found")
            return ReconcileResult()

        workload_id = ObjectIdentity(record.namespace, record.workload_name)
        try:
            workload = await self._client.get_workload(workload_id)
        except NotFoundError:
            return await self._create(record)

        try:
            drifted = workload_needs_update(record, workload)
        except MalformedSpecError as exc:
            log.error("workload_spec_invalid", error=str(exc))
            await self._record_failure(
                record, f"Failed to update deployment: {exc}", workload.status.available_replicas
            )
            raise
        if drifted:
            return await self._update(record, workload)

        counters = workload.status
        state, message = derive_status(
            counters.available_replicas,
            workload.replicas,
            counters.replicas,
            counters.unavailable_replicas,
        )
        desired = AppDeploymentStatus(state=state, message=message, available_replicas=counters.available_replicas)
        if record.status.matches(desired):
            log.debug("status_current", state=state)
            return ReconcileResult()

        await self._status.update_status(identity, desired)
        return ReconcileResult()

    async def _create(self, record: AppDeployment) -> ReconcileResult:
        log = _log.bind(record=str(record.identity), workload=record.workload_name)
        try:
            workload = build_workload(record, self._api_version)
            await self._client.create_workload(workload)
        except ClusterStateError as exc:
            workload_actions_total.labels(action="create", result="error").inc()
            log.error("workload_create_failed", error=str(exc))
            await self._record_failure(record, f"Failed to create deployment: {exc}", 0)
            raise

        workload_actions_total.labels(action="create", result="success").inc()
        log.info("workload_created", replicas=workload.replicas)
        await self._status.update_status(
            record.identity,
            AppDeploymentStatus(state=DeploymentState.PENDING, message=MSG_CREATED, available_replicas=0),
        )
        return ReconcileResult(requeue=True)

    async def _update(self, record: AppDeployment, workload: Deployment) -> ReconcileResult:
        log = _log.bind(record=str(record.identity), workload=workload.name)
        try:
            apply_spec(record, workload)
            await self._client.update_workload(workload)
        except ClusterStateError as exc:
            workload_actions_total.labels(action="update", result="error").inc()
            log.error("workload_update_failed", error=str(exc))
            await self._record_failure(
                record, f"Failed to update deployment: {exc}", workload.status.available_replicas
            )
            raise

        workload_actions_total.labels(action="update", result="success").inc()
        log.info("workload_updated", image=record.spec.image, replicas=workload.replicas)
        await self._status.update_status(
            record.identity,
            AppDeploymentStatus(
                state=DeploymentState.PENDING,
                message=MSG_UPDATED,
                available_replicas=workload.status.available_replicas,
            ),
        )
        return ReconcileResult(requeue=True)

    async def _record_failure(self, record: AppDeployment, message: str, available: int) -> None:
        """Best-effort Failed status; the original error is what the caller sees."""
        try:
            await self._status.update_status(
                record.identity,
                AppDeploymentStatus(
                    state=DeploymentState.FAILED,
                    message=message,
                    available_replicas=available,
                ),
            )
        except ClusterStateError as exc:
            _log.warning("failure_status_not_written", record=str(record.identity), error=str(exc))
