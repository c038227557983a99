import copy
from typing import Any, Dict, Iterable, List, Optional, Set
from marshmallow import ValidationError
from kubernetes_asyncio.client import V1ObjectReference, V2HorizontalPodAutoscaler
from ketch.types.models import AppSpec, CanarySpec, DeploymentSpec
from ketch.types.schemas import AppSpecSchema
from ketch.utils.errors import InvalidAppSpecError
from ketch.utils.helpers import is_truthy, upsert_condition

SCHEDULED = "Scheduled"


class App:
    """An App custom resource.

    Wraps the raw object returned by the API server. The spec is loaded into
    models the controller can mutate; `to_body` writes it back on top of the
    raw object so fields the controller does not manage are left untouched.
    """

    KIND = "App"
    HPA_TARGET_KIND = "Deployment"
    HPA_TARGET_API_VERSION = "apps/v1"

    spec: AppSpec

    def __init__(self, body: Dict[str, Any], spec: AppSpec, group: str) -> None:
        self._body = body
        self.spec = spec
        self.group = group
        if self.spec.canary is None:
            self.spec.canary = CanarySpec(active=False)

    @classmethod
    def from_body(cls, body: Dict[str, Any], group: str) -> "App":
        try:
            spec = AppSpecSchema().load(copy.deepcopy(body.get("spec") or {}))
        except ValidationError as e:
            name = body.get("metadata", {}).get("name")
            raise InvalidAppSpecError(f"invalid spec of app {name}: {e.messages}") from e
        return cls(body, spec, group)

    @property
    def metadata(self) -> Dict[str, Any]:
        return self._body.setdefault("metadata", {})

    @property
    def status(self) -> Dict[str, Any]:
        status = self._body.get("status")
        if status is None:
            status = self._body["status"] = {}
        return status

    @property
    def name(self) -> str:
        return self.metadata.get("name")

    @property
    def uid(self) -> Optional[str]:
        return self.metadata.get("uid")

    @property
    def api_version(self) -> str:
        return self._body.get("apiVersion", "")

    @property
    def resource_version(self) -> Optional[str]:
        return self.metadata.get("resourceVersion")

    @property
    def annotations(self) -> Dict[str, str]:
        return self.metadata.get("annotations") or {}

    @property
    def finalizers(self) -> List[str]:
        return list(self.metadata.get("finalizers") or [])

    @property
    def marked_for_deletion(self) -> bool:
        return bool(self.metadata.get("deletionTimestamp"))

    @property
    def object_reference(self) -> V1ObjectReference:
        return V1ObjectReference(
            api_version=self.api_version,
            kind=self.KIND,
            name=self.name,
            uid=self.uid,
            resource_version=self.resource_version,
        )

    @property
    def deployments(self) -> List[DeploymentSpec]:
        return self.spec.deployments

    @property
    def latest_deployment(self) -> Optional[DeploymentSpec]:
        return self.spec.deployments[-1] if self.spec.deployments else None

    @property
    def latest_version(self) -> int:
        latest = self.latest_deployment
        return latest.version if latest else 0

    @property
    def canary(self) -> CanarySpec:
        return self.spec.canary

    @property
    def deployments_count(self) -> int:
        return self.spec.deployments_count or 0

    @property
    def uninstall_chart(self) -> bool:
        """Whether deleting the App also uninstalls its chart."""
        return is_truthy(self.annotations.get(f"{self.group}/uninstall-chart"))

    def has_finalizer(self, finalizer: str) -> bool:
        return finalizer in self.finalizers

    def add_finalizer(self, finalizer: str) -> bool:
        if self.has_finalizer(finalizer):
            return False
        self.metadata["finalizers"] = self.finalizers + [finalizer]
        return True

    def remove_finalizer(self, finalizer: str) -> bool:
        if not self.has_finalizer(finalizer):
            return False
        self.metadata["finalizers"] = [f for f in self.finalizers if f != finalizer]
        return True

    def deployment_name(self, process_name: str, version: int) -> str:
        return f"{self.name}-{process_name}-{version}"

    def reset_canary(self) -> None:
        self.spec.canary = CanarySpec(active=False)

    def hpa_targets(self, hpas: Iterable[V2HorizontalPodAutoscaler]) -> Set[str]:
        """Names of the processes whose Deployment is scaled by an HPA."""
        targets = {}
        for hpa in hpas:
            ref = hpa.spec.scale_target_ref if hpa.spec else None
            if ref is not None:
                targets[ref.name] = ref
        excluded = set()
        for deployment in self.deployments:
            for process in deployment.processes:
                ref = targets.get(self.deployment_name(process.name, deployment.version))
                if (
                    ref is not None
                    and ref.kind == self.HPA_TARGET_KIND
                    and ref.api_version == self.HPA_TARGET_API_VERSION
                ):
                    excluded.add(process.name)
        return excluded

    def set_condition(self, type: str, status: bool, message: str = "") -> None:
        condition = {
            "type": type,
            "status": "True" if status else "False",
            "message": message,
        }
        if not status:
            condition["reason"] = "ReconcileError"
        else:
            condition["reason"] = "Scheduled"
        self.status["conditions"] = upsert_condition(self.status.get("conditions"), condition)

    def condition(self, type: str) -> Optional[Dict[str, Any]]:
        return next(
            (c for c in self.status.get("conditions") or [] if c.get("type") == type), None
        )

    def to_body(self) -> Dict[str, Any]:
        """Raw object with the current spec, ready to be written back."""
        body = copy.deepcopy(self._body)
        body["spec"] = AppSpecSchema().dump(self.spec)
        return body

    def refresh(self, body: Dict[str, Any]) -> None:
        """Adopt metadata and status of a freshly written object, keeping the spec."""
        self._body = body
