from typing import Any, Dict, List, Optional
from ketch.types.models import FrameworkSpec, FrameworkStatus
from ketch.types.schemas import FrameworkSpecSchema, FrameworkStatusSchema

UNLIMITED_QUOTA = -1


class Framework:
    """A Framework custom resource: the namespace and quota hosting apps."""

    KIND = "Framework"

    spec: FrameworkSpec
    status: FrameworkStatus

    def __init__(self, body: Dict[str, Any]) -> None:
        self._body = body
        self.spec = FrameworkSpecSchema().load(dict(body.get("spec") or {}))
        self.status = FrameworkStatusSchema().load(dict(body.get("status") or {}))

    @property
    def metadata(self) -> Dict[str, Any]:
        return self._body.get("metadata") or {}

    @property
    def name(self) -> str:
        return self.metadata.get("name")

    @property
    def resource_version(self) -> Optional[str]:
        return self.metadata.get("resourceVersion")

    @property
    def apps(self) -> List[str]:
        return list(self.status.apps or [])

    @property
    def linked(self) -> bool:
        """Whether the framework is linked to a kubernetes namespace."""
        return self.status.namespace is not None

    @property
    def namespace(self) -> Optional[str]:
        if self.status.namespace and self.status.namespace.get("name"):
            return self.status.namespace["name"]
        return self.spec.namespace_name

    def has_app(self, app_name: str) -> bool:
        return app_name in self.apps

    def quota_exceeded(self, app_name: str) -> bool:
        """Whether adding `app_name` would go over the app quota.

        Members never exceed the quota, neither do apps of a framework without
        a limit (absent or -1).
        """
        limit = self.spec.app_quota_limit
        if self.has_app(app_name) or limit is None or limit == UNLIMITED_QUOTA:
            return False
        return len(self.apps) >= limit

    def _apps_patch(self, apps: List[str]) -> Dict[str, Any]:
        patch = {"status": {"apps": apps}}
        if self.resource_version:
            patch["metadata"] = {"resourceVersion": self.resource_version}
        return patch

    def add_app_patch(self, app_name: str) -> Optional[Dict[str, Any]]:
        """Merge patch adding the app to the members, None if already a member."""
        if self.has_app(app_name):
            return None
        return self._apps_patch(self.apps + [app_name])

    def remove_app_patch(self, app_name: str) -> Optional[Dict[str, Any]]:
        """Merge patch removing the app from the members, None if not a member."""
        if not self.has_app(app_name):
            return None
        return self._apps_patch([a for a in self.apps if a != app_name])

    def reference(self) -> Dict[str, Any]:
        ref = {
            "apiVersion": self._body.get("apiVersion"),
            "kind": self.KIND,
            "name": self.name,
            "uid": self.metadata.get("uid"),
            "resourceVersion": self.resource_version,
        }
        return {k: v for k, v in ref.items() if v is not None}
