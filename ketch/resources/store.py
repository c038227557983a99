import logging
from typing import Any, AsyncIterator, Dict, List, Optional
from kubernetes_asyncio import watch
from kubernetes_asyncio.client import (
    ApiException,
    AppsV1Api,
    AutoscalingV2Api,
    CoreV1Api,
    CoreV1Event,
    CustomObjectsApi,
    V1Deployment,
    V1Pod,
    V2HorizontalPodAutoscaler,
)
from kubernetes_asyncio.client.api_client import ApiClient
from ketch.resources.base import BaseResource
from ketch.utils.errors import TRANSPORT_ERRORS, classify_api_exception, classify_transport_error

MERGE_PATCH = "application/merge-patch+json"


class ClusterStore(BaseResource):
    """Access to the objects the App controller reads and writes.

    Apps and Frameworks are cluster scoped custom resources handled as plain
    dicts. Writes of Apps are guarded by `metadata.resourceVersion`, a stale
    write raises ConflictError.
    """

    APP_PLURAL = "apps"
    FRAMEWORK_PLURAL = "frameworks"
    POD_EVENTS_SELECTOR = "involvedObject.kind=Pod"

    def __init__(
        self,
        api_client: ApiClient = None,
        group: str = "theketch.io",
        version: str = "v1beta1",
        watch_timeout_seconds: int = 600,
        logger: logging.Logger = None,
    ) -> None:
        self.group = group
        self.version = version
        self.watch_timeout_seconds = watch_timeout_seconds
        self.logger = logger or logging.getLogger(__name__)
        self.core_v1_api = CoreV1Api(api_client)
        self.apps_v1_api = AppsV1Api(api_client)
        self.autoscaling_v2_api = AutoscalingV2Api(api_client)
        self.custom_objects_api = CustomObjectsApi(api_client)

    # ------------------------------------------------
    # ---- Apps ----
    # ------------------------------------------------

    async def get_app(self, name: str) -> Optional[Dict[str, Any]]:
        return await self.fetch(
            self.custom_objects_api.get_cluster_custom_object(
                group=self.group, version=self.version, plural=self.APP_PLURAL, name=name
            )
        )

    async def update_app(self, body: Dict[str, Any]) -> Dict[str, Any]:
        """Replace the App, failing with ConflictError if it changed meanwhile."""
        return await self.call(
            self.custom_objects_api.replace_cluster_custom_object(
                group=self.group,
                version=self.version,
                plural=self.APP_PLURAL,
                name=body["metadata"]["name"],
                body=body,
            )
        )

    async def update_app_status(self, body: Dict[str, Any]) -> Dict[str, Any]:
        return await self.call(
            self.custom_objects_api.replace_cluster_custom_object_status(
                group=self.group,
                version=self.version,
                plural=self.APP_PLURAL,
                name=body["metadata"]["name"],
                body=body,
            )
        )

    # ------------------------------------------------
    # ---- Frameworks ----
    # ------------------------------------------------

    async def get_framework(self, name: str) -> Optional[Dict[str, Any]]:
        if not name:
            return None
        return await self.fetch(
            self.custom_objects_api.get_cluster_custom_object(
                group=self.group,
                version=self.version,
                plural=self.FRAMEWORK_PLURAL,
                name=name,
            )
        )

    async def list_frameworks(self) -> List[Dict[str, Any]]:
        result = await self.call(
            self.custom_objects_api.list_cluster_custom_object(
                group=self.group, version=self.version, plural=self.FRAMEWORK_PLURAL
            )
        )
        return result.get("items", []) if result else []

    async def patch_framework_status(self, name: str, patch: Dict[str, Any]) -> Dict[str, Any]:
        """Merge patch the Framework status.

        Including `metadata.resourceVersion` in the patch makes it optimistic.
        """
        return await self.call(
            self.custom_objects_api.patch_cluster_custom_object_status(
                group=self.group,
                version=self.version,
                plural=self.FRAMEWORK_PLURAL,
                name=name,
                body=patch,
                _content_type=MERGE_PATCH,
            )
        )

    # ------------------------------------------------
    # ---- Workloads, pods and events ----
    # ------------------------------------------------

    async def get_deployment(self, namespace: str, name: str) -> Optional[V1Deployment]:
        return await self.fetch(
            self.apps_v1_api.read_namespaced_deployment(name=name, namespace=namespace)
        )

    async def list_pods_by_labels(
        self, namespace: Optional[str], labels: Dict[str, str]
    ) -> List[V1Pod]:
        """List pods matching every label, in all namespaces when `namespace` is None."""
        if namespace:
            pods = await self.list_pods(self.core_v1_api, namespace, labels)
        else:
            pods = await self.call(
                self.core_v1_api.list_pod_for_all_namespaces(
                    label_selector=",".join(f"{k}={v}" for k, v in labels.items())
                )
            )
        return list(pods.items or [])

    async def list_pod_events(self, namespace: str, pod_name: str) -> List[CoreV1Event]:
        events = await self.call(
            self.core_v1_api.list_namespaced_event(
                namespace=namespace,
                field_selector=f"involvedObject.name={pod_name},involvedObject.namespace={namespace}",
            )
        )
        return list(events.items or [])

    async def list_hpas(self, namespace: str) -> List[V2HorizontalPodAutoscaler]:
        hpas = await self.call(
            self.autoscaling_v2_api.list_namespaced_horizontal_pod_autoscaler(
                namespace=namespace
            )
        )
        return list(hpas.items or [])

    async def create_event(self, namespace: str, event: CoreV1Event) -> CoreV1Event:
        return await self.call(
            self.core_v1_api.create_namespaced_event(namespace=namespace, body=event)
        )

    async def stream_pod_events(self, namespace: str) -> AsyncIterator[CoreV1Event]:
        """Yield pod events of the namespace as they happen.

        The stream ends when the server closes the watch.
        """
        async with watch.Watch() as w:
            try:
                async for event in w.stream(
                    self.core_v1_api.list_namespaced_event,
                    namespace=namespace,
                    field_selector=self.POD_EVENTS_SELECTOR,
                    timeout_seconds=self.watch_timeout_seconds,
                ):
                    obj = event.get("object") if isinstance(event, dict) else None
                    if isinstance(obj, CoreV1Event):
                        yield obj
            except ApiException as ex:
                raise classify_api_exception(ex) from ex
            except TRANSPORT_ERRORS as ex:
                raise classify_transport_error(ex) from ex
