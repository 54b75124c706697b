"""Unit tests for appoperator.controller.reconciler."""

from __future__ import annotations

import pytest
from fakes import FakeCluster, make_record
from prometheus_client import REGISTRY

from appoperator.controller.reconciler import (
    MSG_CREATED,
    MSG_UPDATED,
    MSG_WAITING_SCHEDULE,
    ReconcileResult,
    Reconciler,
    apply_spec,
    build_workload,
    derive_status,
    desired_replicas,
    workload_needs_update,
)
from appoperator.k8s.errors import MalformedSpecError, TransientIOError
from appoperator.models.resources import (
    AppDeploymentSpec,
    Container,
    ContainerPort,
    DeploymentState,
    LabelSelector,
    ObjectIdentity,
    PodTemplate,
)

_API_VERSION = "platform.deskree.com/v1"
_WEB = ObjectIdentity("default", "web")


def _sample(name: str, labels: dict[str, str]) -> float:
    return REGISTRY.get_sample_value(name, labels) or 0.0


# ---------------------------------------------------------------------------
# derive_status
# ---------------------------------------------------------------------------


class TestDeriveStatus:
    def test_nothing_scheduled_yet(self) -> None:
        assert derive_status(0, 1, 0, 0) == (DeploymentState.PENDING, MSG_WAITING_SCHEDULE)

    def test_unavailable_count_reported(self) -> None:
        state, message = derive_status(0, 2, 2, 2)
        assert state == DeploymentState.PENDING
        assert message == "Deployment has 2 unavailable replica(s)"

    def test_falls_back_to_total_when_unavailable_unset(self) -> None:
        _, message = derive_status(0, 3, 3, 0)
        assert message == "Deployment has 3 unavailable replica(s)"

    def test_scaling_up(self) -> None:
        state, message = derive_status(1, 3, 3, 2)
        assert state == DeploymentState.PENDING
        assert message == "Deployment is scaling up: 1/3 replicas"

    def test_running_when_desired_reached(self) -> None:
        state, message = derive_status(3, 3, 3, 0)
        assert state == DeploymentState.RUNNING
        assert message == "Deployment is active with 3 replica(s)"

    def test_running_when_above_desired(self) -> None:
        state, _ = derive_status(5, 3, 5, 0)
        assert state == DeploymentState.RUNNING

    @pytest.mark.parametrize(
        "counters",
        [(-1, -1, -1, -1), (0, 0, 0, 0), (-5, 3, 2, -7), (2**31, 1, 0, 0), (1, -4, 0, 9)],
    )
    def test_total_over_odd_inputs(self, counters: tuple[int, int, int, int]) -> None:
        state, message = derive_status(*counters)
        assert state in set(DeploymentState)
        assert message

    def test_pure(self) -> None:
        assert derive_status(1, 2, 2, 1) == derive_status(1, 2, 2, 1)


# ---------------------------------------------------------------------------
# Workload construction and drift detection
# ---------------------------------------------------------------------------


class TestBuildWorkload:
    def test_defaults_for_bare_record(self) -> None:
        record = make_record(min_replicas=2)
        record.uid = "uid-web"
        workload = build_workload(record, _API_VERSION)

        assert workload.name == "web"
        assert workload.namespace == "default"
        assert workload.replicas == 2
        assert workload.selector.match_labels == {"app": "web"}
        assert workload.template.labels["app"] == "web"
        container = workload.primary_container
        assert container is not None
        assert container.image == "nginx:latest"
        assert container.memory_limit == "256Mi"
        assert container.ports == [ContainerPort(80, name="http")]

    def test_owner_reference_points_at_record(self) -> None:
        record = make_record()
        record.uid = "uid-123"
        owner = build_workload(record, _API_VERSION).controller_owner()
        assert owner is not None
        assert owner.kind == "AppDeployment"
        assert owner.api_version == _API_VERSION
        assert owner.name == "web"
        assert owner.uid == "uid-123"

    def test_app_name_overrides_workload_name(self) -> None:
        workload = build_workload(make_record(app_name="frontend"), _API_VERSION)
        assert workload.name == "frontend"
        assert workload.selector.match_labels == {"app": "frontend"}

    def test_template_containers_kept_with_spec_image(self) -> None:
        record = make_record(image="nginx:1.27")
        record.spec.selector = LabelSelector(match_labels={"tier": "web"})
        record.spec.template = PodTemplate(
            labels={"tier": "web"},
            containers=[Container(name="server", image="placeholder", ports=[ContainerPort(8080)])],
        )
        workload = build_workload(record, _API_VERSION)
        assert workload.selector.match_labels == {"tier": "web"}
        container = workload.primary_container
        assert container is not None
        assert container.name == "server"
        assert container.image == "nginx:1.27"
        assert container.ports == [ContainerPort(8080)]

    def test_invalid_memory_limit_raises(self) -> None:
        with pytest.raises(MalformedSpecError):
            build_workload(make_record(memory_limit="lots"), _API_VERSION)

    def test_zero_min_replicas_becomes_one(self) -> None:
        assert desired_replicas(make_record(min_replicas=0)) == 1


class TestWorkloadNeedsUpdate:
    def test_freshly_built_workload_matches(self) -> None:
        record = make_record()
        assert workload_needs_update(record, build_workload(record, _API_VERSION)) is False

    def test_equivalent_memory_quantities_match(self) -> None:
        record = make_record(memory_limit="1024Mi")
        workload = build_workload(make_record(memory_limit="1Gi"), _API_VERSION)
        assert workload_needs_update(record, workload) is False

    def test_image_drift(self) -> None:
        workload = build_workload(make_record(), _API_VERSION)
        assert workload_needs_update(make_record(image="nginx:1.27"), workload) is True

    def test_replica_drift(self) -> None:
        workload = build_workload(make_record(min_replicas=1), _API_VERSION)
        assert workload_needs_update(make_record(min_replicas=3), workload) is True

    def test_memory_drift(self) -> None:
        workload = build_workload(make_record(memory_limit="256Mi"), _API_VERSION)
        assert workload_needs_update(make_record(memory_limit="512Mi"), workload) is True

    def test_missing_container_is_drift(self) -> None:
        workload = build_workload(make_record(), _API_VERSION)
        workload.template.containers.clear()
        assert workload_needs_update(make_record(), workload) is True

    def test_apply_spec_converges(self) -> None:
        workload = build_workload(make_record(), _API_VERSION)
        target = make_record(image="nginx:1.27", memory_limit="1Gi", min_replicas=4)
        apply_spec(target, workload)
        assert workload_needs_update(target, workload) is False
        assert workload.replicas == 4


# ---------------------------------------------------------------------------
# Reconciler passes
# ---------------------------------------------------------------------------


class TestReconcileCreate:
    @pytest.mark.asyncio
    async def test_new_record_creates_workload_and_goes_pending(
        self, cluster: FakeCluster, reconciler: Reconciler
    ) -> None:
        cluster.add_record(make_record())

        result = await reconciler.reconcile(_WEB)

        assert result == ReconcileResult(requeue=True)
        assert cluster.workload_creates == 1
        workload = cluster.workloads[_WEB]
        assert workload.replicas == 1
        assert workload.primary_container is not None
        assert workload.primary_container.image == "nginx:latest"
        status = cluster.stored_record(_WEB).status
        assert status.state == DeploymentState.PENDING
        assert status.message == MSG_CREATED
        assert status.available_replicas == 0

    @pytest.mark.asyncio
    async def test_becomes_running_once_replicas_available(
        self, cluster: FakeCluster, reconciler: Reconciler
    ) -> None:
        cluster.add_record(make_record())
        await reconciler.reconcile(_WEB)
        cluster.set_replicas(_WEB, available=1)

        result = await reconciler.reconcile(_WEB)

        assert result == ReconcileResult()
        status = cluster.stored_record(_WEB).status
        assert status.state == DeploymentState.RUNNING
        assert status.message == "Deployment is active with 1 replica(s)"
        assert status.available_replicas == 1

    @pytest.mark.asyncio
    async def test_waiting_for_scheduling_before_pods_exist(
        self, cluster: FakeCluster, reconciler: Reconciler
    ) -> None:
        cluster.add_record(make_record())
        await reconciler.reconcile(_WEB)

        await reconciler.reconcile(_WEB)

        assert cluster.stored_record(_WEB).status.message == MSG_WAITING_SCHEDULE

    @pytest.mark.asyncio
    async def test_scaling_up_reported_as_pending(self, cluster: FakeCluster, reconciler: Reconciler) -> None:
        cluster.add_record(make_record(min_replicas=3))
        await reconciler.reconcile(_WEB)
        assert cluster.workloads[_WEB].replicas == 3
        cluster.set_replicas(_WEB, available=1, total=3, unavailable=2)

        await reconciler.reconcile(_WEB)

        status = cluster.stored_record(_WEB).status
        assert status.state == DeploymentState.PENDING
        assert status.message == "Deployment is scaling up: 1/3 replicas"
        assert status.available_replicas == 1

    @pytest.mark.asyncio
    async def test_deleted_workload_is_recreated(self, cluster: FakeCluster, reconciler: Reconciler) -> None:
        cluster.add_record(make_record())
        await reconciler.reconcile(_WEB)
        del cluster.workloads[_WEB]

        result = await reconciler.reconcile(_WEB)

        assert result.requeue is True
        assert cluster.workload_creates == 2
        assert _WEB in cluster.workloads


class TestReconcileUpdate:
    @pytest.mark.asyncio
    async def test_image_change_updates_workload(self, cluster: FakeCluster, reconciler: Reconciler) -> None:
        cluster.add_record(make_record())
        await reconciler.reconcile(_WEB)
        cluster.set_replicas(_WEB, available=1)
        await reconciler.reconcile(_WEB)
        cluster.edit_spec(_WEB, image="nginx:1.27")

        result = await reconciler.reconcile(_WEB)

        assert result.requeue is True
        assert cluster.workload_updates == 1
        container = cluster.workloads[_WEB].primary_container
        assert container is not None
        assert container.image == "nginx:1.27"
        status = cluster.stored_record(_WEB).status
        assert status.state == DeploymentState.PENDING
        assert status.message == MSG_UPDATED

    @pytest.mark.asyncio
    async def test_update_leaves_other_containers_and_ports_alone(
        self, cluster: FakeCluster, reconciler: Reconciler
    ) -> None:
        cluster.add_record(make_record())
        await reconciler.reconcile(_WEB)
        live = cluster.workloads[_WEB]
        live.template.containers.append(Container(name="log-shipper", image="fluent-bit:2.2", memory_limit="64Mi"))
        cluster.edit_spec(_WEB, image="nginx:1.27", min_replicas=2)

        await reconciler.reconcile(_WEB)

        updated = cluster.workloads[_WEB]
        assert [c.name for c in updated.template.containers] == ["web", "log-shipper"]
        web, sidecar = updated.template.containers
        assert (web.image, web.ports[0].container_port) == ("nginx:1.27", 80)
        assert (sidecar.image, sidecar.memory_limit) == ("fluent-bit:2.2", "64Mi")
        assert updated.replicas == 2
        sent = cluster.sent_workload_patches[-1]
        assert set(sent["spec"]) == {"replicas", "template"}
        assert [c["name"] for c in sent["spec"]["template"]["spec"]["containers"]] == ["web"]

    @pytest.mark.asyncio
    async def test_equivalent_memory_limit_is_not_drift(self, cluster: FakeCluster, reconciler: Reconciler) -> None:
        cluster.add_record(make_record(memory_limit="1Gi"))
        await reconciler.reconcile(_WEB)
        cluster.edit_spec(_WEB, memory_limit="1024Mi")

        await reconciler.reconcile(_WEB)

        assert cluster.workload_updates == 0

    @pytest.mark.asyncio
    async def test_update_failure_records_failed_status(self, cluster: FakeCluster, reconciler: Reconciler) -> None:
        cluster.add_record(make_record())
        await reconciler.reconcile(_WEB)
        cluster.edit_spec(_WEB, min_replicas=2)
        cluster.update_workload_error = TransientIOError("apiserver unavailable")

        with pytest.raises(TransientIOError):
            await reconciler.reconcile(_WEB)

        status = cluster.stored_record(_WEB).status
        assert status.state == DeploymentState.FAILED
        assert status.message.startswith("Failed to update deployment:")


class TestReconcileSteadyState:
    @pytest.mark.asyncio
    async def test_second_pass_performs_no_writes(self, cluster: FakeCluster, reconciler: Reconciler) -> None:
        cluster.add_record(make_record())
        await reconciler.reconcile(_WEB)
        cluster.set_replicas(_WEB, available=1)
        await reconciler.reconcile(_WEB)
        writes = cluster.status_update_attempts
        creates, updates = cluster.workload_creates, cluster.workload_updates

        result = await reconciler.reconcile(_WEB)

        assert result == ReconcileResult()
        assert cluster.status_update_attempts == writes
        assert (cluster.workload_creates, cluster.workload_updates) == (creates, updates)

    @pytest.mark.asyncio
    async def test_missing_record_is_not_an_error(self, cluster: FakeCluster, reconciler: Reconciler) -> None:
        result = await reconciler.reconcile(ObjectIdentity("default", "ghost"))
        assert result == ReconcileResult()
        assert cluster.workload_creates == 0
        assert cluster.status_update_attempts == 0

    @pytest.mark.asyncio
    async def test_spec_is_never_written(self, cluster: FakeCluster, reconciler: Reconciler) -> None:
        cluster.add_record(make_record())
        before = AppDeploymentSpec(**vars(cluster.stored_record(_WEB).spec))
        await reconciler.reconcile(_WEB)
        cluster.set_replicas(_WEB, available=1)
        await reconciler.reconcile(_WEB)
        assert cluster.stored_record(_WEB).spec == before


class TestReconcileFailures:
    @pytest.mark.asyncio
    async def test_create_failure_sets_failed_and_raises(self, cluster: FakeCluster, reconciler: Reconciler) -> None:
        cluster.add_record(make_record())
        cluster.create_workload_error = TransientIOError("quota exceeded")
        errors_before = _sample("appop_reconcile_total", {"outcome": "error"})

        with pytest.raises(TransientIOError):
            await reconciler.reconcile(_WEB)

        status = cluster.stored_record(_WEB).status
        assert status.state == DeploymentState.FAILED
        assert status.message == "Failed to create deployment: quota exceeded"
        assert status.available_replicas == 0
        assert _sample("appop_reconcile_total", {"outcome": "error"}) == errors_before + 1

    @pytest.mark.asyncio
    async def test_malformed_memory_on_create(self, cluster: FakeCluster, reconciler: Reconciler) -> None:
        cluster.add_record(make_record(memory_limit="plenty"))

        with pytest.raises(MalformedSpecError):
            await reconciler.reconcile(_WEB)

        assert cluster.workload_creates == 0
        assert cluster.stored_record(_WEB).status.state == DeploymentState.FAILED

    @pytest.mark.asyncio
    async def test_malformed_memory_on_existing_workload(self, cluster: FakeCluster, reconciler: Reconciler) -> None:
        cluster.add_record(make_record())
        await reconciler.reconcile(_WEB)
        cluster.edit_spec(_WEB, memory_limit="12 parsecs")

        with pytest.raises(MalformedSpecError):
            await reconciler.reconcile(_WEB)

        status = cluster.stored_record(_WEB).status
        assert status.state == DeploymentState.FAILED
        assert status.message.startswith("Failed to update deployment:")
        assert cluster.workload_updates == 0

    @pytest.mark.asyncio
    async def test_failed_status_write_does_not_mask_original_error(
        self, cluster: FakeCluster, reconciler: Reconciler
    ) -> None:
        cluster.add_record(make_record())
        cluster.create_workload_error = TransientIOError("create failed")
        cluster.status_error = TransientIOError("status failed")

        with pytest.raises(TransientIOError, match="create failed"):
            await reconciler.reconcile(_WEB)

    @pytest.mark.asyncio
    async def test_record_fetch_error_propagates(self, cluster: FakeCluster, reconciler: Reconciler) -> None:
        cluster.get_record_error = TransientIOError("connection reset")
        with pytest.raises(TransientIOError):
            await reconciler.reconcile(_WEB)
