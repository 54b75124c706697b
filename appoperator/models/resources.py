"""AppDeployment, Deployment and watch-event data structures.

Every model converts to and from the camelCase JSON shape the Kubernetes API
server speaks via ``to_dict()`` / ``from_dict()``.  ``from_dict`` is lenient:
missing or mistyped fields fall back to their defaults, mirroring how the API
server omits empty fields.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import StrEnum
from typing import Any

APP_DEPLOYMENT_KIND: str = "AppDeployment"
DEPLOYMENT_API_VERSION: str = "apps/v1"
DEPLOYMENT_KIND: str = "Deployment"


class DeploymentState(StrEnum):
    """Lifecycle state reported in ``AppDeployment.status.state``."""

    PENDING = "Pending"
    RUNNING = "Running"
    FAILED = "Failed"


class CacheState(StrEnum):
    """Connection state of the watch cache's change stream."""

    DISCONNECTED = "disconnected"
    STREAMING = "streaming"
    DRAINING = "draining"


class WatchEventType(StrEnum):
    """Event types delivered by a Kubernetes watch stream."""

    ADDED = "ADDED"
    MODIFIED = "MODIFIED"
    DELETED = "DELETED"
    ERROR = "ERROR"
    BOOKMARK = "BOOKMARK"


@dataclass(frozen=True, order=True)
class ObjectIdentity:
    """Namespace + name of a namespaced object."""

    namespace: str
    name: str

    def __str__(self) -> str:
        return f"{self.namespace}/{self.name}"

    @classmethod
    def from_metadata(cls, metadata: dict[str, Any]) -> ObjectIdentity | None:
        """Build an identity from an object's ``metadata`` dict, or None without a name."""
        name = str(metadata.get("name") or "")
        if not name:
            return None
        return cls(namespace=str(metadata.get("namespace") or ""), name=name)


# ---------------------------------------------------------------------------
# Shared pod template pieces
# ---------------------------------------------------------------------------


@dataclass
class ContainerPort:
    container_port: int
    name: str = ""

    def to_dict(self) -> dict[str, Any]:
        out: dict[str, Any] = {"containerPort": self.container_port}
        if self.name:
            out["name"] = self.name
        return out

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> ContainerPort:
        return cls(container_port=_int(data.get("containerPort")), name=str(data.get("name") or ""))


@dataclass
class Container:
    """A single container; ``memory_limit`` maps to ``resources.limits.memory``."""

    name: str
    image: str
    ports: list[ContainerPort] = field(default_factory=list)
    memory_limit: str = ""

    def to_dict(self) -> dict[str, Any]:
        out: dict[str, Any] = {"name": self.name, "image": self.image}
        if self.ports:
            out["ports"] = [p.to_dict() for p in self.ports]
        if self.memory_limit:
            out["resources"] = {"limits": {"memory": self.memory_limit}}
        return out

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Container:
        resources = _dict(data.get("resources"))
        limits = _dict(resources.get("limits"))
        return cls(
            name=str(data.get("name") or ""),
            image=str(data.get("image") or ""),
            ports=[ContainerPort.from_dict(p) for p in _list(data.get("ports")) if isinstance(p, dict)],
            memory_limit=str(limits.get("memory") or ""),
        )


@dataclass
class PodTemplate:
    labels: dict[str, str] = field(default_factory=dict)
    containers: list[Container] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "metadata": {"labels": dict(self.labels)},
            "spec": {"containers": [c.to_dict() for c in self.containers]},
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> PodTemplate:
        metadata = _dict(data.get("metadata"))
        spec = _dict(data.get("spec"))
        return cls(
            labels=_str_map(metadata.get("labels")),
            containers=[Container.from_dict(c) for c in _list(spec.get("containers")) if isinstance(c, dict)],
        )


@dataclass
class LabelSelector:
    match_labels: dict[str, str] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {"matchLabels": dict(self.match_labels)}

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> LabelSelector:
        return cls(match_labels=_str_map(data.get("matchLabels")))


# ---------------------------------------------------------------------------
# AppDeployment (desired-state record)
# ---------------------------------------------------------------------------


@dataclass
class AppDeploymentSpec:
    """Author-owned desired state.  Never written by the controller."""

    image: str = ""
    app_name: str = ""
    memory_limit: str = ""
    min_replicas: int = 0
    max_replicas: int = 0
    selector: LabelSelector | None = None
    template: PodTemplate = field(default_factory=PodTemplate)

    def to_dict(self) -> dict[str, Any]:
        out: dict[str, Any] = {
            "image": self.image,
            "appName": self.app_name,
            "memoryLimit": self.memory_limit,
            "minReplicas": self.min_replicas,
            "maxReplicas": self.max_replicas,
            "template": self.template.to_dict(),
        }
        if self.selector is not None:
            out["selector"] = self.selector.to_dict()
        return out

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> AppDeploymentSpec:
        selector = data.get("selector")
        return cls(
            image=str(data.get("image") or ""),
            app_name=str(data.get("appName") or ""),
            memory_limit=str(data.get("memoryLimit") or ""),
            min_replicas=_int(data.get("minReplicas")),
            max_replicas=_int(data.get("maxReplicas")),
            selector=LabelSelector.from_dict(selector) if isinstance(selector, dict) else None,
            template=PodTemplate.from_dict(_dict(data.get("template"))),
        )


@dataclass
class Condition:
    type: str
    status: str
    reason: str = ""
    message: str = ""
    last_transition_time: str = ""

    def to_dict(self) -> dict[str, Any]:
        return {
            "type": self.type,
            "status": self.status,
            "reason": self.reason,
            "message": self.message,
            "lastTransitionTime": self.last_transition_time,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Condition:
        return cls(
            type=str(data.get("type") or ""),
            status=str(data.get("status") or ""),
            reason=str(data.get("reason") or ""),
            message=str(data.get("message") or ""),
            last_transition_time=str(data.get("lastTransitionTime") or ""),
        )


@dataclass
class AppDeploymentStatus:
    """Controller-owned observed state.

    ``state`` is a :class:`DeploymentState` value, or the empty string before
    the first reconcile pass has written anything.
    """

    state: str = ""
    message: str = ""
    available_replicas: int = 0
    conditions: list[Condition] = field(default_factory=list)

    def matches(self, other: AppDeploymentStatus) -> bool:
        """Return True when state and message are equal.

        Replica counts and conditions are deliberately ignored; they only
        travel along with a write that state or message already forces.
        """
        return self.state == other.state and self.message == other.message

    def condition(self, condition_type: str) -> Condition | None:
        for cond in self.conditions:
            if cond.type == condition_type:
                return cond
        return None

    def to_dict(self) -> dict[str, Any]:
        out: dict[str, Any] = {
            "state": self.state,
            "message": self.message,
            "availableReplicas": self.available_replicas,
        }
        if self.conditions:
            out["conditions"] = [c.to_dict() for c in self.conditions]
        return out

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> AppDeploymentStatus:
        return cls(
            state=str(data.get("state") or ""),
            message=str(data.get("message") or ""),
            available_replicas=_int(data.get("availableReplicas")),
            conditions=[Condition.from_dict(c) for c in _list(data.get("conditions")) if isinstance(c, dict)],
        )


@dataclass
class AppDeployment:
    namespace: str
    name: str
    spec: AppDeploymentSpec = field(default_factory=AppDeploymentSpec)
    status: AppDeploymentStatus = field(default_factory=AppDeploymentStatus)
    resource_version: str = ""
    uid: str = ""
    generation: int = 0
    labels: dict[str, str] = field(default_factory=dict)

    @property
    def identity(self) -> ObjectIdentity:
        return ObjectIdentity(self.namespace, self.name)

    @property
    def workload_name(self) -> str:
        """Name of the managed Deployment: the explicit app name, else the record name."""
        return self.spec.app_name or self.name

    def to_dict(self, api_version: str) -> dict[str, Any]:
        metadata: dict[str, Any] = {"name": self.name, "namespace": self.namespace}
        if self.labels:
            metadata["labels"] = dict(self.labels)
        if self.resource_version:
            metadata["resourceVersion"] = self.resource_version
        if self.uid:
            metadata["uid"] = self.uid
        return {
            "apiVersion": api_version,
            "kind": APP_DEPLOYMENT_KIND,
            "metadata": metadata,
            "spec": self.spec.to_dict(),
            "status": self.status.to_dict(),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> AppDeployment:
        metadata = _dict(data.get("metadata"))
        return cls(
            namespace=str(metadata.get("namespace") or ""),
            name=str(metadata.get("name") or ""),
            spec=AppDeploymentSpec.from_dict(_dict(data.get("spec"))),
            status=AppDeploymentStatus.from_dict(_dict(data.get("status"))),
            resource_version=str(metadata.get("resourceVersion") or ""),
            uid=str(metadata.get("uid") or ""),
            generation=_int(metadata.get("generation")),
            labels=_str_map(metadata.get("labels")),
        )


# ---------------------------------------------------------------------------
# Deployment (managed workload)
# ---------------------------------------------------------------------------


@dataclass
class OwnerReference:
    api_version: str
    kind: str
    name: str
    uid: str
    controller: bool = True
    block_owner_deletion: bool = True

    def to_dict(self) -> dict[str, Any]:
        return {
            "apiVersion": self.api_version,
            "kind": self.kind,
            "name": self.name,
            "uid": self.uid,
            "controller": self.controller,
            "blockOwnerDeletion": self.block_owner_deletion,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> OwnerReference:
        return cls(
            api_version=str(data.get("apiVersion") or ""),
            kind=str(data.get("kind") or ""),
            name=str(data.get("name") or ""),
            uid=str(data.get("uid") or ""),
            controller=bool(data.get("controller", False)),
            block_owner_deletion=bool(data.get("blockOwnerDeletion", False)),
        )


@dataclass
class WorkloadReplicaStatus:
    """Replica counters maintained by the Deployment controller, not by us."""

    replicas: int = 0
    ready_replicas: int = 0
    available_replicas: int = 0
    unavailable_replicas: int = 0

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> WorkloadReplicaStatus:
        return cls(
            replicas=_int(data.get("replicas")),
            ready_replicas=_int(data.get("readyReplicas")),
            available_replicas=_int(data.get("availableReplicas")),
            unavailable_replicas=_int(data.get("unavailableReplicas")),
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "replicas": self.replicas,
            "readyReplicas": self.ready_replicas,
            "availableReplicas": self.available_replicas,
            "unavailableReplicas": self.unavailable_replicas,
        }


@dataclass
class Deployment:
    namespace: str
    name: str
    replicas: int = 1
    selector: LabelSelector = field(default_factory=LabelSelector)
    template: PodTemplate = field(default_factory=PodTemplate)
    labels: dict[str, str] = field(default_factory=dict)
    owner_references: list[OwnerReference] = field(default_factory=list)
    resource_version: str = ""
    status: WorkloadReplicaStatus = field(default_factory=WorkloadReplicaStatus)

    @property
    def identity(self) -> ObjectIdentity:
        return ObjectIdentity(self.namespace, self.name)

    @property
    def primary_container(self) -> Container | None:
        return self.template.containers[0] if self.template.containers else None

    def controller_owner(self) -> OwnerReference | None:
        """Return the owner reference flagged as controller, if any."""
        for ref in self.owner_references:
            if ref.controller:
                return ref
        return None

    def to_dict(self) -> dict[str, Any]:
        metadata: dict[str, Any] = {"name": self.name, "namespace": self.namespace}
        if self.labels:
            metadata["labels"] = dict(self.labels)
        if self.owner_references:
            metadata["ownerReferences"] = [r.to_dict() for r in self.owner_references]
        if self.resource_version:
            metadata["resourceVersion"] = self.resource_version
        return {
            "apiVersion": DEPLOYMENT_API_VERSION,
            "kind": DEPLOYMENT_KIND,
            "metadata": metadata,
            "spec": {
                "replicas": self.replicas,
                "selector": self.selector.to_dict(),
                "template": self.template.to_dict(),
            },
        }

    def drift_patch(self) -> dict[str, Any]:
        """Strategic-merge patch carrying the replica count and the primary
        container's image and memory limit, nothing else.

        The server merges containers by name, so other containers and every
        field this model does not track (env, probes, requests, strategy,
        volumes, annotations) stay as they are.  An empty memory limit is
        sent as null, which removes the key.  ``resourceVersion`` rides along
        so a concurrent writer turns the patch into a 409.
        """
        spec: dict[str, Any] = {"replicas": self.replicas}
        primary = self.primary_container
        if primary is not None:
            spec["template"] = {
                "spec": {
                    "containers": [
                        {
                            "name": primary.name,
                            "image": primary.image,
                            "resources": {"limits": {"memory": primary.memory_limit or None}},
                        }
                    ]
                }
            }
        patch: dict[str, Any] = {"spec": spec}
        if self.resource_version:
            patch["metadata"] = {"resourceVersion": self.resource_version}
        return patch

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Deployment:
        metadata = _dict(data.get("metadata"))
        spec = _dict(data.get("spec"))
        replicas = spec.get("replicas")
        return cls(
            namespace=str(metadata.get("namespace") or ""),
            name=str(metadata.get("name") or ""),
            # The API server defaults an omitted replica count to 1
            replicas=1 if replicas is None else _int(replicas),
            selector=LabelSelector.from_dict(_dict(spec.get("selector"))),
            template=PodTemplate.from_dict(_dict(spec.get("template"))),
            labels=_str_map(metadata.get("labels")),
            owner_references=[
                OwnerReference.from_dict(r) for r in _list(metadata.get("ownerReferences")) if isinstance(r, dict)
            ],
            resource_version=str(metadata.get("resourceVersion") or ""),
            status=WorkloadReplicaStatus.from_dict(_dict(data.get("status"))),
        )


# ---------------------------------------------------------------------------
# Watch events and read-path views
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class WatchEvent:
    """One event from a watch stream.

    ``identity`` is None for ERROR and BOOKMARK events, which carry no object
    identity.  ``raw`` holds the raw object dict (a ``Status`` for ERROR).
    """

    type: WatchEventType
    identity: ObjectIdentity | None
    raw: dict[str, Any] = field(default_factory=dict)
    resource_version: str = ""


@dataclass(frozen=True)
class StatusView:
    """What the front door reports for a record."""

    state: str
    available_replicas: int


def status_view(record: AppDeployment) -> StatusView:
    return StatusView(state=record.status.state, available_replicas=record.status.available_replicas)


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _dict(value: Any) -> dict[str, Any]:
    return value if isinstance(value, dict) else {}


def _list(value: Any) -> list[Any]:
    return value if isinstance(value, list) else []


def _str_map(value: Any) -> dict[str, str]:
    if not isinstance(value, dict):
        return {}
    return {str(k): str(v) for k, v in value.items()}


def _int(value: Any) -> int:
    try:
        return int(value)
    except (TypeError, ValueError):
        return 0
