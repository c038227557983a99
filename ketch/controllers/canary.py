"""Progressive rollout of a new deployment version.

While a canary is active an App has two deployments: the stable one first
and the canary last. Each step moves `stepWeight` percent of the traffic
from the stable deployment to the canary and scales the processes of both
accordingly, until the canary gets all the traffic and replaces the stable
deployment. A canary whose pods do not become healthy in time is rolled back.
"""

import logging
import math
from datetime import datetime, timedelta
from typing import AbstractSet, Optional
from ketch.common.models.labels import Labels
from ketch.controllers.events import (
    NORMAL,
    WARNING,
    CANARY_FINISHED,
    CANARY_NEXT_STEP,
    CANARY_ROLLBACK,
    EventRecorder,
)
from ketch.resources.app import App
from ketch.sensors import OperatorSensor
from ketch.types.models import DeploymentSpec
from ketch.types.settings import Settings
from ketch.utils.errors import (
    CanaryPendingError,
    InvalidArgumentsError,
    InvalidCanaryStateError,
    PodsNotReadyError,
)

POD_SUCCEEDED = "Succeeded"
POD_RUNNING = "Running"
CONDITION_TRUE = "True"

PENDING = "pending"
ADVANCED = "advanced"
PROMOTED = "promoted"
ROLLED_BACK = "rolled_back"
SKIPPED = "skipped"


async def check_pod_status(
    store, group: str, app_name: str, version: int, namespace: Optional[str] = None
) -> None:
    """Check that the pods of one deployment version of an app are healthy.

    Pods are healthy when one of them succeeded, or when all of them are
    running with every condition true. No pods at all counts as healthy.

    Raises:
        InvalidArgumentsError: app name is empty or version is not positive.
        PodsNotReadyError: pods are not healthy.
    """
    if not app_name or version is None or version <= 0:
        raise InvalidArgumentsError("invalid app specifications")

    selector = Labels.pod_selector(group, app_name, version).as_dict()
    pods = await store.list_pods_by_labels(namespace, selector)

    if any(pod.status is not None and pod.status.phase == POD_SUCCEEDED for pod in pods):
        return

    for pod in pods:
        status = pod.status
        if status is None or status.phase != POD_RUNNING:
            raise PodsNotReadyError("all pods are not running")
        for condition in status.conditions or []:
            if condition.status != CONDITION_TRUE:
                raise PodsNotReadyError("all pods are not in healthy state")


class CanaryController:
    """Runs one canary step of an App per reconciliation pass.

    The App is mutated in place; `changed` tells the caller whether it has to
    be written back.
    """

    def __init__(
        self,
        app: App,
        store,
        recorder: EventRecorder,
        conf: Settings,
        namespace: Optional[str] = None,
        sensor: OperatorSensor = None,
        logger: logging.Logger = None,
    ) -> None:
        self.app = app
        self.store = store
        self.recorder = recorder
        self.conf = conf
        self.namespace = namespace
        self.sensor = sensor
        self.logger = logger or logging.getLogger(__name__)
        self.changed = False

    @property
    def timeout(self) -> timedelta:
        return timedelta(seconds=self.conf.canary_timeout_seconds)

    def timeout_expired(self, now: datetime) -> bool:
        started = self.app.canary.started
        return started is not None and started + self.timeout < now

    async def step(self, now: datetime, hpa_excluded: AbstractSet[str] = frozenset()) -> str:
        """Advance, promote or roll back the canary.

        Args:
            now: Current time
            hpa_excluded: Processes scaled by an HPA, their units are never changed

        Returns:
            What the step did: advanced, promoted, rolled_back or skipped.

        Raises:
            InvalidCanaryStateError: the App has less than two deployments.
            CanaryPendingError: canary pods are not healthy yet.
        """
        app = self.app
        if len(app.deployments) < 2:
            app.reset_canary()
            self.changed = True
            raise InvalidCanaryStateError("no canary deployment found")

        if app.canary.started is None:
            app.canary.started = now
            self.changed = True

        canary = app.deployments[1]
        try:
            await check_pod_status(
                self.store, self.conf.group, app.name, canary.version, self.namespace
            )
        except (PodsNotReadyError, InvalidArgumentsError) as e:
            if not self.timeout_expired(now):
                self._record(PENDING)
                raise CanaryPendingError(f"canary update failed: {e}") from e
            await self.rollback(hpa_excluded, reason=str(e))
            return ROLLED_BACK

        return await self.advance(now, hpa_excluded)

    async def advance(self, now: datetime, hpa_excluded: AbstractSet[str]) -> str:
        app = self.app
        spec = app.canary
        if spec.next_scheduled_time is not None and now < spec.next_scheduled_time:
            self._record(SKIPPED)
            return SKIPPED

        stable, canary = app.deployments[0], app.deployments[1]
        if not spec.target:
            spec.target = {p.name: p.units or 0 for p in canary.processes}

        steps = spec.steps if spec.steps and spec.steps > 0 else 1
        step_weight = spec.step_weight if spec.step_weight and spec.step_weight > 0 else math.ceil(100 / steps)
        spec.current_step = (spec.current_step or 0) + 1
        weight = min(100, canary.weight + step_weight)
        self.changed = True

        if spec.current_step >= steps or weight >= 100:
            await self.promote(hpa_excluded)
            return PROMOTED

        canary.weight = weight
        stable.weight = 100 - weight
        self._scale(canary, weight, hpa_excluded)
        self._scale(stable, stable.weight, hpa_excluded)
        spec.next_scheduled_time = now + (spec.step_time_interval or timedelta(0))

        self._record(ADVANCED)
        await self.recorder.event(
            app.object_reference,
            NORMAL,
            CANARY_NEXT_STEP,
            f"Canary step {spec.current_step} of {steps}: deployment {canary.version} "
            f"weight {canary.weight}, deployment {stable.version} weight {stable.weight}",
        )
        return ADVANCED

    async def promote(self, hpa_excluded: AbstractSet[str]) -> None:
        app = self.app
        target = app.canary.target or {}
        canary = app.deployments[1]
        canary.weight = 100
        self._restore_units(canary, target, hpa_excluded)
        app.spec.deployments = [canary]
        app.reset_canary()
        self.changed = True

        self._record(PROMOTED)
        await self.recorder.event(
            app.object_reference,
            NORMAL,
            CANARY_FINISHED,
            f"Canary finished: deployment {canary.version} receives all the traffic",
        )

    async def rollback(self, hpa_excluded: AbstractSet[str], reason: str = "") -> None:
        """Drop the canary deployment and give all the traffic back to the stable one."""
        app = self.app
        target = app.canary.target or {}
        stable, canary = app.deployments[0], app.deployments[-1]
        stable.weight = 100
        self._restore_units(stable, target, hpa_excluded)
        app.spec.deployments = [stable]
        app.reset_canary()
        self.changed = True

        self.logger.warning(f"Rolling back canary deployment {canary.version} of {app.name}: {reason}")
        self._record(ROLLED_BACK)
        await self.recorder.event(
            app.object_reference,
            WARNING,
            CANARY_ROLLBACK,
            f"Canary deployment {canary.version} rolled back after "
            f"{int(self.timeout.total_seconds())}s: {reason}",
        )

    def _scale(self, deployment: DeploymentSpec, weight: int, hpa_excluded: AbstractSet[str]) -> None:
        target = self.app.canary.target or {}
        for process in deployment.processes:
            if process.name in hpa_excluded or process.name not in target:
                continue
            process.units = max(1, math.ceil(target[process.name] * weight / 100))

    def _restore_units(self, deployment: DeploymentSpec, target, hpa_excluded: AbstractSet[str]) -> None:
        for process in deployment.processes:
            if process.name in hpa_excluded or process.name not in target:
                continue
            process.units = target[process.name]

    def _record(self, action: str) -> None:
        if self.sensor:
            self.sensor.on_canary_step(self.app.name, action)
