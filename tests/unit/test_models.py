"""Unit tests for appoperator.models.resources."""

from __future__ import annotations

from appoperator.models.resources import (
    AppDeployment,
    AppDeploymentStatus,
    Condition,
    Deployment,
    DeploymentState,
    ObjectIdentity,
    status_view,
)

_API_VERSION = "platform.deskree.com/v1"


class TestObjectIdentity:
    def test_str(self) -> None:
        assert str(ObjectIdentity("default", "web")) == "default/web"

    def test_from_metadata(self) -> None:
        assert ObjectIdentity.from_metadata({"name": "web", "namespace": "apps"}) == ObjectIdentity("apps", "web")

    def test_from_metadata_without_name(self) -> None:
        assert ObjectIdentity.from_metadata({"namespace": "apps"}) is None

    def test_hashable_and_ordered(self) -> None:
        ids = {ObjectIdentity("b", "x"), ObjectIdentity("a", "y"), ObjectIdentity("a", "y")}
        assert sorted(ids) == [ObjectIdentity("a", "y"), ObjectIdentity("b", "x")]


# ---------------------------------------------------------------------------
# AppDeployment
# ---------------------------------------------------------------------------


class TestAppDeployment:
    def test_from_dict_full(self) -> None:
        record = AppDeployment.from_dict(
            {
                "metadata": {
                    "name": "web",
                    "namespace": "default",
                    "resourceVersion": "12",
                    "uid": "u-1",
                    "generation": 3,
                    "labels": {"team": "core"},
                },
                "spec": {
                    "image": "nginx",
                    "appName": "frontend",
                    "memoryLimit": "1Gi",
                    "minReplicas": 2,
                    "maxReplicas": 5,
                    "selector": {"matchLabels": {"app": "frontend"}},
                    "template": {
                        "metadata": {"labels": {"app": "frontend"}},
                        "spec": {"containers": [{"name": "web", "image": "nginx", "ports": [{"containerPort": 80}]}]},
                    },
                },
                "status": {
                    "state": "Running",
                    "message": "ok",
                    "availableReplicas": 2,
                    "conditions": [{"type": "Ready", "status": "True"}],
                },
            }
        )
        assert record.identity == ObjectIdentity("default", "web")
        assert record.workload_name == "frontend"
        assert record.generation == 3
        assert record.spec.selector is not None
        assert record.spec.selector.match_labels == {"app": "frontend"}
        assert record.spec.template.containers[0].ports[0].container_port == 80
        assert record.status.condition("Ready") == Condition(type="Ready", status="True")

    def test_from_dict_tolerates_missing_and_mistyped_fields(self) -> None:
        record = AppDeployment.from_dict({"metadata": {"name": "web"}, "spec": {"minReplicas": "many"}, "status": None})
        assert record.spec.min_replicas == 0
        assert record.spec.selector is None
        assert record.status == AppDeploymentStatus()

    def test_workload_name_defaults_to_record_name(self) -> None:
        assert AppDeployment(namespace="default", name="web").workload_name == "web"

    def test_to_dict_shape(self) -> None:
        record = AppDeployment(namespace="default", name="web", resource_version="5", uid="u-1")
        data = record.to_dict(_API_VERSION)
        assert data["apiVersion"] == _API_VERSION
        assert data["kind"] == "AppDeployment"
        assert data["metadata"] == {"name": "web", "namespace": "default", "resourceVersion": "5", "uid": "u-1"}
        assert "selector" not in data["spec"]
        assert AppDeployment.from_dict(data) == record


class TestAppDeploymentStatus:
    def test_matches_ignores_replicas_and_conditions(self) -> None:
        a = AppDeploymentStatus(state="Running", message="ok", available_replicas=1)
        b = AppDeploymentStatus(
            state="Running", message="ok", available_replicas=3, conditions=[Condition("Ready", "True")]
        )
        assert a.matches(b)

    def test_message_difference_breaks_match(self) -> None:
        assert not AppDeploymentStatus(state="Pending", message="a").matches(
            AppDeploymentStatus(state="Pending", message="b")
        )

    def test_status_view(self) -> None:
        record = AppDeployment(namespace="default", name="web")
        record.status = AppDeploymentStatus(state=DeploymentState.RUNNING, available_replicas=2)
        view = status_view(record)
        assert (view.state, view.available_replicas) == ("Running", 2)


# ---------------------------------------------------------------------------
# Deployment
# ---------------------------------------------------------------------------


class TestDeployment:
    def test_omitted_replicas_default_to_one(self) -> None:
        assert Deployment.from_dict({"metadata": {"name": "web"}, "spec": {}}).replicas == 1

    def test_explicit_zero_replicas_kept(self) -> None:
        assert Deployment.from_dict({"metadata": {"name": "web"}, "spec": {"replicas": 0}}).replicas == 0

    def test_status_counters(self) -> None:
        workload = Deployment.from_dict(
            {
                "metadata": {"name": "web", "namespace": "default"},
                "status": {"replicas": 3, "readyReplicas": 2, "availableReplicas": 2, "unavailableReplicas": 1},
            }
        )
        assert workload.status.unavailable_replicas == 1
        assert workload.status.ready_replicas == 2

    def test_memory_limit_maps_to_resources(self) -> None:
        workload = Deployment.from_dict(
            {
                "metadata": {"name": "web"},
                "spec": {
                    "template": {
                        "spec": {
                            "containers": [{"name": "web", "image": "nginx", "resources": {"limits": {"memory": "1Gi"}}}]
                        }
                    }
                },
            }
        )
        container = workload.primary_container
        assert container is not None
        assert container.memory_limit == "1Gi"
        out = workload.to_dict()["spec"]["template"]["spec"]["containers"][0]
        assert out["resources"] == {"limits": {"memory": "1Gi"}}

    def test_no_containers(self) -> None:
        assert Deployment(namespace="default", name="web").primary_container is None

    def test_drift_patch_carries_only_tracked_fields(self) -> None:
        workload = Deployment.from_dict(
            {
                "metadata": {"name": "web", "namespace": "default", "resourceVersion": "41"},
                "spec": {
                    "replicas": 1,
                    "strategy": {"type": "Recreate"},
                    "template": {
                        "metadata": {"annotations": {"prometheus.io/scrape": "true"}},
                        "spec": {
                            "serviceAccountName": "web",
                            "containers": [
                                {
                                    "name": "web",
                                    "image": "nginx:1.25",
                                    "env": [{"name": "MODE", "value": "prod"}],
                                    "resources": {
                                        "limits": {"cpu": "500m", "memory": "256Mi"},
                                        "requests": {"cpu": "100m"},
                                    },
                                }
                            ],
                        },
                    },
                },
            }
        )
        container = workload.primary_container
        assert container is not None
        container.image = "nginx:1.27"
        workload.replicas = 3

        assert workload.drift_patch() == {
            "metadata": {"resourceVersion": "41"},
            "spec": {
                "replicas": 3,
                "template": {
                    "spec": {
                        "containers": [
                            {"name": "web", "image": "nginx:1.27", "resources": {"limits": {"memory": "256Mi"}}}
                        ]
                    }
                },
            },
        }

    def test_drift_patch_removes_cleared_memory_limit(self) -> None:
        workload = Deployment.from_dict(
            {"metadata": {"name": "web"}, "spec": {"template": {"spec": {"containers": [{"name": "web"}]}}}}
        )
        patch = workload.drift_patch()
        assert "metadata" not in patch
        assert patch["spec"]["template"]["spec"]["containers"][0]["resources"] == {"limits": {"memory": None}}
