"""Shared fixtures: in-memory cluster store, chart applier and object builders."""

import asyncio
import copy
import pytest
from typing import Any, Dict, List, Optional
from kubernetes_asyncio.client import (
    CoreV1Event,
    V1Deployment,
    V1DeploymentCondition,
    V1DeploymentSpec,
    V1DeploymentStatus,
    V1LabelSelector,
    V1ObjectMeta,
    V1ObjectReference,
    V1Pod,
    V1PodCondition,
    V1PodStatus,
    V1PodTemplateSpec,
)
from ketch.chart import ChartApplier, ChartConfig
from ketch.controllers.events import EventRecorder
from ketch.controllers.registry import CancelWatchRegistry
from ketch.types.settings import Settings
from ketch.utils.errors import ConflictError

GROUP = "theketch.io"
NAMESPACE = "ketch-demo"


class FakeStore:
    """In-memory stand-in for ClusterStore.

    Writes of Apps and Framework status patches are checked against the
    stored resourceVersion like the API server does.
    """

    def __init__(self) -> None:
        self.apps: Dict[str, Dict[str, Any]] = {}
        self.frameworks: Dict[str, Dict[str, Any]] = {}
        self.deployments: Dict[tuple, V1Deployment] = {}
        self.pods: List[V1Pod] = []
        self.pod_events: Dict[str, List[CoreV1Event]] = {}
        self.hpas: Dict[str, list] = {}
        self.events: List[CoreV1Event] = []
        #: Queue feeding stream_pod_events, None closes the stream immediately.
        self.event_stream: Optional[asyncio.Queue] = None
        self.app_updates = 0
        self.status_updates = 0
        self.framework_patches = 0
        self._rv = 100

    def _next_rv(self) -> str:
        self._rv += 1
        return str(self._rv)

    def add_app(self, body: Dict[str, Any]) -> None:
        body = copy.deepcopy(body)
        body["metadata"]["resourceVersion"] = self._next_rv()
        self.apps[body["metadata"]["name"]] = body

    def add_framework(self, body: Dict[str, Any]) -> None:
        body = copy.deepcopy(body)
        body["metadata"]["resourceVersion"] = self._next_rv()
        self.frameworks[body["metadata"]["name"]] = body

    def add_deployment(self, deployment: V1Deployment) -> None:
        self.deployments[(deployment.metadata.namespace, deployment.metadata.name)] = deployment

    def _check_rv(self, stored: Dict[str, Any], body: Dict[str, Any]) -> None:
        rv = body.get("metadata", {}).get("resourceVersion")
        if rv is not None and rv != stored["metadata"]["resourceVersion"]:
            raise ConflictError(
                f'Operation cannot be fulfilled on "{stored["metadata"]["name"]}": '
                "the object has been modified"
            )

    async def get_app(self, name: str) -> Optional[Dict[str, Any]]:
        body = self.apps.get(name)
        return copy.deepcopy(body) if body is not None else None

    async def update_app(self, body: Dict[str, Any]) -> Dict[str, Any]:
        name = body["metadata"]["name"]
        stored = self.apps[name]
        self._check_rv(stored, body)
        updated = copy.deepcopy(body)
        updated["status"] = copy.deepcopy(stored.get("status"))
        updated["metadata"]["resourceVersion"] = self._next_rv()
        if stored["metadata"].get("deletionTimestamp") and not updated["metadata"].get("finalizers"):
            del self.apps[name]
        else:
            self.apps[name] = updated
        self.app_updates += 1
        return copy.deepcopy(updated)

    async def update_app_status(self, body: Dict[str, Any]) -> Dict[str, Any]:
        name = body["metadata"]["name"]
        stored = self.apps[name]
        self._check_rv(stored, body)
        stored["status"] = copy.deepcopy(body.get("status"))
        stored["metadata"]["resourceVersion"] = self._next_rv()
        self.status_updates += 1
        return copy.deepcopy(stored)

    async def get_framework(self, name: str) -> Optional[Dict[str, Any]]:
        if not name:
            return None
        body = self.frameworks.get(name)
        return copy.deepcopy(body) if body is not None else None

    async def list_frameworks(self) -> List[Dict[str, Any]]:
        return [copy.deepcopy(f) for f in self.frameworks.values()]

    async def patch_framework_status(self, name: str, patch: Dict[str, Any]) -> Dict[str, Any]:
        stored = self.frameworks[name]
        self._check_rv(stored, patch)
        stored.setdefault("status", {}).update(copy.deepcopy(patch.get("status") or {}))
        stored["metadata"]["resourceVersion"] = self._next_rv()
        self.framework_patches += 1
        return copy.deepcopy(stored)

    async def get_deployment(self, namespace: str, name: str) -> Optional[V1Deployment]:
        return self.deployments.get((namespace, name))

    async def list_pods_by_labels(self, namespace: Optional[str], labels: Dict[str, str]) -> List[V1Pod]:
        return [
            pod
            for pod in self.pods
            if (namespace is None or pod.metadata.namespace == namespace)
            and all((pod.metadata.labels or {}).get(k) == v for k, v in labels.items())
        ]

    async def list_pod_events(self, namespace: str, pod_name: str) -> List[CoreV1Event]:
        return list(self.pod_events.get(pod_name, []))

    async def list_hpas(self, namespace: str) -> list:
        return list(self.hpas.get(namespace, []))

    async def create_event(self, namespace: str, event: CoreV1Event) -> CoreV1Event:
        self.events.append(event)
        return event

    async def stream_pod_events(self, namespace: str):
        if self.event_stream is None:
            return
        while True:
            event = await self.event_stream.get()
            if event is None:
                return
            yield event

    # ---- helpers for assertions ----

    def events_by_reason(self, reason: str) -> List[CoreV1Event]:
        return [e for e in self.events if e.reason == reason]

    def messages(self, reason: str = None) -> List[str]:
        return [e.message for e in self.events if reason is None or e.reason == reason]


class FakeChart(ChartApplier):
    def __init__(self) -> None:
        self.updates: List[tuple] = []
        self.deleted: List[str] = []
        self.update_error: Optional[Exception] = None
        self.delete_error: Optional[Exception] = None

    async def update_chart(self, values: Dict[str, Any], config: ChartConfig) -> Dict[str, Any]:
        if self.update_error is not None:
            raise self.update_error
        self.updates.append((values, config))
        return {"name": config.app_name}

    async def delete_chart(self, app_name: str) -> None:
        if self.delete_error is not None:
            raise self.delete_error
        self.deleted.append(app_name)


class FakeChartFactory:
    def __init__(self, chart: FakeChart) -> None:
        self.chart = chart
        self.namespaces: List[str] = []

    def __call__(self, namespace: str) -> FakeChart:
        self.namespaces.append(namespace)
        return self.chart


def app_body(
    name: str = "sample",
    framework: str = "demo",
    deployments: List[Dict[str, Any]] = None,
    canary: Dict[str, Any] = None,
    finalizers: List[str] = None,
    annotations: Dict[str, str] = None,
    deletion_timestamp: str = None,
) -> Dict[str, Any]:
    if deployments is None:
        deployments = [deployment_spec(1, {"web": 3})]
    spec = {
        "framework": framework,
        "deployments": deployments,
        "deploymentsCount": len(deployments),
    }
    if canary is not None:
        spec["canary"] = canary
    metadata = {"name": name, "uid": f"uid-{name}", "generation": 1}
    if finalizers is not None:
        metadata["finalizers"] = finalizers
    if annotations is not None:
        metadata["annotations"] = annotations
    if deletion_timestamp is not None:
        metadata["deletionTimestamp"] = deletion_timestamp
    return {
        "apiVersion": f"{GROUP}/v1beta1",
        "kind": "App",
        "metadata": metadata,
        "spec": spec,
    }


def deployment_spec(version: int, units: Dict[str, int], weight: int = 100) -> Dict[str, Any]:
    return {
        "image": f"registry.example.com/sample:{version}",
        "version": version,
        "processes": [{"name": name, "units": n, "cmd": ["run"]} for name, n in units.items()],
        "routingSettings": {"weight": weight},
    }


def framework_body(
    name: str = "demo",
    namespace: Optional[str] = NAMESPACE,
    quota: int = -1,
    apps: List[str] = None,
) -> Dict[str, Any]:
    status: Dict[str, Any] = {"apps": list(apps or [])}
    if namespace is not None:
        status["namespace"] = {"name": namespace}
    return {
        "apiVersion": f"{GROUP}/v1beta1",
        "kind": "Framework",
        "metadata": {"name": name},
        "spec": {"namespaceName": namespace, "appQuotaLimit": quota},
        "status": status,
    }


def kube_deployment(
    name: str = "sample-web-1",
    replicas: int = 3,
    updated: int = 3,
    total: int = None,
    unavailable: int = 0,
    generation: int = 1,
    observed_generation: int = 1,
    conditions: List[V1DeploymentCondition] = None,
    namespace: str = NAMESPACE,
) -> V1Deployment:
    return V1Deployment(
        metadata=V1ObjectMeta(name=name, namespace=namespace, generation=generation),
        spec=V1DeploymentSpec(
            replicas=replicas,
            selector=V1LabelSelector(match_labels={f"{GROUP}/app-name": "sample"}),
            template=V1PodTemplateSpec(),
        ),
        status=V1DeploymentStatus(
            replicas=replicas if total is None else total,
            updated_replicas=updated,
            unavailable_replicas=unavailable,
            ready_replicas=updated - unavailable,
            observed_generation=observed_generation,
            conditions=conditions,
        ),
    )


def kube_pod(
    name: str,
    app_name: str = "sample",
    version: int = 1,
    phase: str = "Running",
    conditions: Dict[str, str] = None,
    namespace: str = NAMESPACE,
    message: str = None,
) -> V1Pod:
    if conditions is None:
        conditions = {"Ready": "True"}
    return V1Pod(
        metadata=V1ObjectMeta(
            name=name,
            namespace=namespace,
            labels={
                f"{GROUP}/app-name": app_name,
                f"{GROUP}/app-deployment-version": str(version),
            },
        ),
        status=V1PodStatus(
            phase=phase,
            message=message,
            conditions=[V1PodCondition(type=t, status=s) for t, s in conditions.items()],
        ),
    )


def pod_event(pod_name: str, reason: str, message: str) -> CoreV1Event:
    return CoreV1Event(
        metadata=V1ObjectMeta(name=f"{pod_name}.1", namespace=NAMESPACE),
        involved_object=V1ObjectReference(kind="Pod", name=pod_name, namespace=NAMESPACE),
        reason=reason,
        message=message,
    )


@pytest.fixture
def conf():
    return Settings(
        group=GROUP,
        version="v1beta1",
        reconcile_requeue_seconds=10,
        reconcile_error_backoff_seconds=5,
        reconcile_max_backoff_seconds=300,
        canary_timeout_seconds=600,
        pod_running_timeout_seconds=2,
        healthcheck_timeout_seconds=1,
        watch_poll_interval_seconds=0.01,
    )


@pytest.fixture
def store():
    return FakeStore()


@pytest.fixture
def recorder(store):
    return EventRecorder(store, namespace="default")


@pytest.fixture
def registry():
    return CancelWatchRegistry()


@pytest.fixture
def chart():
    return FakeChart()


@pytest.fixture
def chart_factory(chart):
    return FakeChartFactory(chart)
