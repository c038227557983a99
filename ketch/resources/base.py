from typing import Awaitable, Optional, TypeVar
from kubernetes_asyncio.client import ApiException, CoreV1Api, V1PodList
from ketch.utils.errors import (
    TRANSPORT_ERRORS,
    classify_api_exception,
    classify_transport_error,
    not_found_error,
)

T = TypeVar("T")


class BaseResource:
    """Base for objects talking to the kubernetes API.

    Every call goes through `call` or `fetch`, so kubernetes ApiExceptions
    are converted into ketch errors before leaving this layer.
    """

    async def call(self, request: Awaitable[T]) -> T:
        """Await a kubernetes API request, classifying failures."""
        try:
            return await request
        except ApiException as ex:
            raise classify_api_exception(ex) from ex
        except TRANSPORT_ERRORS as ex:
            raise classify_transport_error(ex) from ex

    async def fetch(self, request: Awaitable[T]) -> Optional[T]:
        """Like `call`, but a missing object is returned as None."""
        try:
            return await request
        except ApiException as ex:
            if not_found_error(ex):
                return None
            raise classify_api_exception(ex) from ex
        except TRANSPORT_ERRORS as ex:
            raise classify_transport_error(ex) from ex

    async def list_pods(
        self, core_v1_api: CoreV1Api, namespace: str, label_selector: dict = None
    ) -> V1PodList:
        """List pods in namespace, optionally filtered by label selector.

        Args:
            core_v1_api: CoreV1Api instance
            namespace: Namespace to list pods in
            label_selector: Dictionary of label key-value pairs to filter pods

        Returns:
            V1PodList object containing matching pods
        """
        label_selector_str = None
        if label_selector:
            label_selector_str = ",".join([f"{k}={v}" for k, v in label_selector.items()])

        return await self.call(
            core_v1_api.list_namespaced_pod(
                namespace=namespace, label_selector=label_selector_str
            )
        )
