"""Events posted about App objects.

Deployment progress events carry a set of annotations (app name, deployment
version, process, ...) so clients can follow a rollout by filtering events
on the App instead of parsing their messages.
"""

import logging
from typing import Any, Dict, NamedTuple, Optional
from kubernetes_asyncio.client import (
    CoreV1Event,
    V1EventSource,
    V1ObjectMeta,
    V1ObjectReference,
)
from ketch.utils.helpers import utc_now
from ketch.utils.errors import KetchError
from ketch.sensors import OperatorSensor

NORMAL = "Normal"
WARNING = "Warning"

APP_RECONCILE_OUTCOME = "AppReconcileOutcome"
APP_RECONCILE_STARTED = "AppReconcileStarted"
APP_RECONCILE_UPDATE = "AppReconcileUpdate"
APP_RECONCILE_COMPLETE = "AppReconcileComplete"
APP_RECONCILE_ERROR = "AppReconcileError"

CANARY_NEXT_STEP = "CanaryNextStep"
CANARY_FINISHED = "CanaryFinished"
CANARY_ROLLBACK = "CanaryRollback"
CANARY_STEP_FAILED = "CanaryStepFailed"
CHART_UNINSTALL_FAILED = "ChartUninstallFailed"

ANNOTATION_APP_NAME = "app-name"
ANNOTATION_DEPLOYMENT_VERSION = "app-deployment-version"
ANNOTATION_EVENT_NAME = "event-name"
ANNOTATION_DESCRIPTION = "event-description"
ANNOTATION_PROCESS_NAME = "process-name"
ANNOTATION_INVOLVED_OBJECT_NAME = "involved-object-name"
ANNOTATION_INVOLVED_OBJECT_FIELD_PATH = "involved-object-field-path"
ANNOTATION_SOURCE_HOST = "source-host"
ANNOTATION_SOURCE_COMPONENT = "source-component"


class DeploymentEvent(NamedTuple):
    """Progress of a deployment rollout, ready to be posted on the App."""

    name: str
    deployment_version: int
    process_name: str
    reason: str
    description: str
    annotations: Dict[str, str]


def _annotation(group: str, suffix: str) -> str:
    return f"{group}/{suffix}"


def new_app_deployment_event(
    group: str, app_name: str, version: int, reason: str, description: str, process_name: str
) -> DeploymentEvent:
    annotations = {
        _annotation(group, ANNOTATION_APP_NAME): app_name,
        _annotation(group, ANNOTATION_DEPLOYMENT_VERSION): str(version),
        _annotation(group, ANNOTATION_EVENT_NAME): reason,
        _annotation(group, ANNOTATION_DESCRIPTION): description,
        _annotation(group, ANNOTATION_PROCESS_NAME): process_name,
    }
    return DeploymentEvent(app_name, version, process_name, reason, description, annotations)


def deployment_event_from_watch_event(
    group: str, app_name: str, version: int, event: CoreV1Event, process_name: str
) -> DeploymentEvent:
    """Wrap a pod event seen in the cluster into a deployment event of the app."""
    involved = event.involved_object
    source = event.source
    reason = event.reason or ""
    message = event.message or ""
    annotations = {
        _annotation(group, ANNOTATION_APP_NAME): app_name,
        _annotation(group, ANNOTATION_DEPLOYMENT_VERSION): str(version),
        _annotation(group, ANNOTATION_EVENT_NAME): reason,
        _annotation(group, ANNOTATION_DESCRIPTION): message,
        _annotation(group, ANNOTATION_PROCESS_NAME): process_name,
        _annotation(group, ANNOTATION_INVOLVED_OBJECT_NAME): (involved.name if involved else "") or "",
        _annotation(group, ANNOTATION_INVOLVED_OBJECT_FIELD_PATH): (involved.field_path if involved else "") or "",
        _annotation(group, ANNOTATION_SOURCE_HOST): (source.host if source else "") or "",
        _annotation(group, ANNOTATION_SOURCE_COMPONENT): (source.component if source else "") or "",
    }
    return DeploymentEvent(app_name, version, process_name, reason, message, annotations)


class AppReconcileOutcome(NamedTuple):
    app_name: str
    deployment_count: int

    def message(self, error: Optional[BaseException] = None) -> str:
        if error is None:
            return f"app {self.app_name} {self.deployment_count} reconcile success"
        return f"app {self.app_name} {self.deployment_count} reconcile fail: [{error}]"


class EventRecorder:
    """Posts core/v1 events about App objects.

    Posting is best effort: failures are logged and never raised to the
    caller, a missing event must not fail a reconciliation.
    """

    def __init__(
        self,
        store,
        component: str = "ketch-operator",
        namespace: str = "default",
        sensor: OperatorSensor = None,
        logger: logging.Logger = None,
    ) -> None:
        self.store = store
        self.component = component
        self.namespace = namespace
        self.sensor = sensor
        self.logger = logger or logging.getLogger(__name__)

    def build(
        self,
        ref: V1ObjectReference,
        type: str,
        reason: str,
        message: str,
        annotations: Dict[str, str] = None,
    ) -> CoreV1Event:
        timestamp = utc_now()
        namespace = ref.namespace or self.namespace
        return CoreV1Event(
            metadata=V1ObjectMeta(
                generate_name=f"{ref.name}.",
                namespace=namespace,
                annotations=dict(annotations) if annotations else None,
            ),
            involved_object=ref,
            reason=reason,
            message=message,
            type=type,
            count=1,
            first_timestamp=timestamp,
            last_timestamp=timestamp,
            source=V1EventSource(component=self.component),
            reporting_component=self.component,
        )

    async def event(
        self,
        ref: V1ObjectReference,
        type: str,
        reason: str,
        message: str,
        annotations: Dict[str, str] = None,
    ) -> Optional[Any]:
        body = self.build(ref, type, reason, message, annotations)
        try:
            result = await self.store.create_event(body.metadata.namespace, body)
        except KetchError as e:
            self.logger.warning(f"Failed to post {type} event {reason} for {ref.name}: {e}")
            self._record(reason, type, False)
            return None
        self._record(reason, type, True)
        return result

    async def deployment_event(
        self, ref: V1ObjectReference, type: str, event: DeploymentEvent
    ) -> Optional[Any]:
        return await self.event(ref, type, event.reason, event.description, event.annotations)

    def _record(self, reason: str, type: str, success: bool) -> None:
        if self.sensor:
            self.sensor.on_event_posted(reason, type, success)
