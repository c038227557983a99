"""Watching the rollout of one process of an App.

A RolloutWatcher follows the Deployment of a process of the latest
deployment version and posts its progress as events on the App: units
created, units ready, old units terminating, and finally either completion
or the reason the rollout failed.

The watcher first waits, inside the reconciliation pass, for the Deployment
controller to observe the new generation. It then registers itself in the
CancelWatchRegistry, which cancels any older watcher of the same Deployment,
and continues in a background task.
"""

import asyncio
import enum
import logging
from typing import Optional, Tuple
from kubernetes_asyncio.client import CoreV1Event, V1Deployment, V1DeploymentStatus, V1Pod
from ketch.common.models.labels import Labels
from ketch.controllers.canary import check_pod_status
from ketch.controllers.events import (
    NORMAL,
    WARNING,
    APP_RECONCILE_COMPLETE,
    APP_RECONCILE_ERROR,
    APP_RECONCILE_STARTED,
    APP_RECONCILE_UPDATE,
    AppReconcileOutcome,
    EventRecorder,
    deployment_event_from_watch_event,
    new_app_deployment_event,
)
from ketch.controllers.registry import CancelWatchRegistry
from ketch.resources.app import App
from ketch.sensors import OperatorSensor
from ketch.types.settings import Settings
from ketch.utils.errors import (
    ClusterApiError,
    GenerationTimeoutError,
    KetchError,
    ProgressDeadlineExceededError,
    RolloutTimeoutError,
)
from ketch.utils.helpers import format_duration

DEPLOYMENT_PROGRESSING = "Progressing"
PROGRESS_DEADLINE_EXCEEDED = "ProgressDeadlineExceeded"
POD_READY = "Ready"


class RolloutPhase(str, enum.Enum):
    WAIT_GENERATION = "wait_generation"
    WAIT_REPLICA_COUNT = "wait_replica_count"
    WAIT_HEALTHCHECK = "wait_healthcheck"
    WAIT_FULL_ROLLOUT = "wait_full_rollout"
    COMPLETE = "complete"
    FAILED = "failed"
    TIMED_OUT = "timed_out"
    CANCELLED = "cancelled"

    @property
    def terminal(self) -> bool:
        return self in (
            RolloutPhase.COMPLETE,
            RolloutPhase.FAILED,
            RolloutPhase.TIMED_OUT,
            RolloutPhase.CANCELLED,
        )


class _Wake(enum.Enum):
    TICK = "tick"
    EVENT = "event"
    HEALTHCHECK_EXPIRED = "healthcheck_expired"
    TIMEOUT = "timeout"
    CANCELLED = "cancelled"


class RolloutWatcher:
    """Follows one Deployment until its rollout completes, fails or times out."""

    def __init__(
        self,
        app: App,
        namespace: str,
        deployment: V1Deployment,
        process_name: str,
        store,
        recorder: EventRecorder,
        registry: CancelWatchRegistry,
        conf: Settings,
        sensor: OperatorSensor = None,
        logger: logging.Logger = None,
    ) -> None:
        self.app_name = app.name
        self.version = app.latest_version
        self.ref = app.object_reference
        self.namespace = namespace
        self.deployment = deployment
        self.name = deployment.metadata.name
        self.process_name = process_name
        self.store = store
        self.recorder = recorder
        self.registry = registry
        self.conf = conf
        self.sensor = sensor
        self.logger = logger or logging.getLogger(__name__)

        self.phase = RolloutPhase.WAIT_GENERATION
        self.error: Optional[KetchError] = None
        self.cancelled = asyncio.Event()
        self.task: Optional[asyncio.Task] = None
        self._cleanup = None
        self._sensor_state = None
        self._started_at = 0.0
        self._deadline = 0.0

    @property
    def _loop_time(self) -> float:
        return asyncio.get_running_loop().time()

    def cancel(self) -> None:
        """Ask the watcher to stop. Safe to call more than once."""
        self.cancelled.set()

    async def start(self) -> asyncio.Task:
        """Wait for the new generation and spawn the background watch.

        Raises:
            GenerationTimeoutError: the Deployment generation was not observed in time.
        """
        self._started_at = self._loop_time
        self._deadline = self._started_at + self.conf.pod_running_timeout_seconds
        await self.wait_generation()

        self._cleanup = self.registry.replace_and_cancel_previous(self.name, self.cancel)
        await self._emit(NORMAL, APP_RECONCILE_STARTED, f"Updating units [{self.process_name}]")
        if self.sensor:
            self._sensor_state = self.sensor.on_watch_start(self.app_name, self.name, self.process_name)

        self.task = asyncio.create_task(self.run(), name=f"rollout-watch-{self.name}")
        self.task.add_done_callback(self._done)
        return self.task

    async def wait_generation(self) -> V1Deployment:
        dep = self.deployment
        while _observed_generation(dep) < (dep.metadata.generation or 0):
            if self._loop_time >= self._deadline:
                message = "timeout waiting for deployment generation to update"
                await self.recorder.event(self.ref, WARNING, APP_RECONCILE_ERROR, message)
                self.phase = RolloutPhase.FAILED
                raise GenerationTimeoutError(message)
            await asyncio.sleep(self.conf.watch_poll_interval_seconds)
            try:
                dep = await self._fetch_deployment()
            except KetchError as e:
                await self.recorder.event(
                    self.ref, WARNING, APP_RECONCILE_ERROR, f"error getting deployments: {e}"
                )
                self.phase = RolloutPhase.FAILED
                raise
        self.deployment = dep
        return dep

    async def run(self) -> RolloutPhase:
        """Watch the rollout until it reaches a terminal phase."""
        events: asyncio.Queue = asyncio.Queue()
        pump = asyncio.create_task(self._pump(events), name=f"rollout-events-{self.name}")
        try:
            await self._watch(events)
        except KetchError as e:
            self.error = e
            if not self.phase.terminal:
                self.phase = RolloutPhase.FAILED
            self.logger.warning(f"Rollout of {self.name} {self.phase.value}: {e}")
        finally:
            pump.cancel()
            try:
                await pump
            except asyncio.CancelledError:
                pass
        return self.phase

    async def _watch(self, events: asyncio.Queue) -> None:
        dep = self.deployment
        spec_replicas = (dep.spec.replicas if dep.spec else None) or 0
        old_updated = old_ready = old_pending = -1
        healthcheck_deadline: Optional[float] = None
        self.phase = RolloutPhase.WAIT_REPLICA_COUNT

        while True:
            status = dep.status or V1DeploymentStatus()
            for condition in status.conditions or []:
                if (
                    condition.type == DEPLOYMENT_PROGRESSING
                    and condition.reason == PROGRESS_DEADLINE_EXCEEDED
                ):
                    message = f'deployment "{self.name}" exceeded its progress deadline'
                    await self._emit(WARNING, APP_RECONCILE_ERROR, message)
                    self.phase = RolloutPhase.FAILED
                    raise ProgressDeadlineExceededError(message)

            updated = status.updated_replicas or 0
            if old_updated != updated:
                await self._emit(
                    NORMAL, APP_RECONCILE_UPDATE, f"{updated} of {spec_replicas} new units created"
                )

            if healthcheck_deadline is None and updated == spec_replicas:
                if await self._pods_healthy():
                    healthcheck_deadline = self._loop_time + self.conf.healthcheck_timeout_seconds
                    await self._emit(
                        NORMAL,
                        APP_RECONCILE_UPDATE,
                        f"waiting healthcheck on {spec_replicas} created units",
                    )

            ready = updated - (status.unavailable_replicas or 0)
            if old_ready != ready and ready >= 0:
                await self._emit(
                    NORMAL, APP_RECONCILE_UPDATE, f"{ready} of {spec_replicas} new units ready"
                )

            pending = (status.replicas or 0) - updated
            if old_pending != pending and pending > 0:
                await self._emit(
                    NORMAL, APP_RECONCILE_UPDATE, f"{pending} old units pending termination"
                )

            old_updated, old_ready, old_pending = updated, ready, pending
            if ready == spec_replicas and (status.replicas or 0) == spec_replicas:
                break

            if healthcheck_deadline is None:
                self.phase = RolloutPhase.WAIT_REPLICA_COUNT
            elif ready < spec_replicas:
                self.phase = RolloutPhase.WAIT_HEALTHCHECK
            else:
                self.phase = RolloutPhase.WAIT_FULL_ROLLOUT

            wake, event = await self._wait(events, healthcheck_deadline)
            if wake is _Wake.CANCELLED:
                self.phase = RolloutPhase.CANCELLED
                self.logger.debug(f"Watch of {self.name} superseded")
                return
            elif wake is _Wake.EVENT:
                deployment_event = deployment_event_from_watch_event(
                    self.conf.group, self.app_name, self.version, event, self.process_name
                )
                await self.recorder.event(
                    self.ref,
                    NORMAL,
                    APP_RECONCILE_UPDATE,
                    deployment_event.description,
                    deployment_event.annotations,
                )
            elif wake is _Wake.HEALTHCHECK_EXPIRED:
                error = await self._timeout_error("healthcheck")
                await self._emit(WARNING, APP_RECONCILE_ERROR, f"error waiting for healthcheck: {error}")
                self.phase = RolloutPhase.FAILED
                raise error
            elif wake is _Wake.TIMEOUT:
                error = await self._timeout_error("full rollout")
                await self._emit(WARNING, APP_RECONCILE_ERROR, f"deployment timeout: {error}")
                self.phase = RolloutPhase.TIMED_OUT
                raise error

            try:
                dep = await self._fetch_deployment()
            except KetchError as e:
                await self._emit(WARNING, APP_RECONCILE_ERROR, f"error getting deployments: {e}")
                self.phase = RolloutPhase.FAILED
                raise

        self.deployment = dep
        self.phase = RolloutPhase.COMPLETE
        outcome = AppReconcileOutcome(self.app_name, (dep.status.ready_replicas if dep.status else 0) or 0)
        await self._emit(NORMAL, APP_RECONCILE_COMPLETE, outcome.message())

    async def _wait(
        self, events: asyncio.Queue, healthcheck_deadline: Optional[float]
    ) -> Tuple[_Wake, Optional[CoreV1Event]]:
        """Block until the first of: poll tick, pod event, deadline or cancellation."""
        if self.cancelled.is_set():
            return _Wake.CANCELLED, None
        expired = self._expired(healthcheck_deadline)
        if expired is not None:
            return expired, None
        if not events.empty():
            return _Wake.EVENT, events.get_nowait()

        now = self._loop_time
        timeout = min(self.conf.watch_poll_interval_seconds, self._deadline - now)
        if healthcheck_deadline is not None:
            timeout = min(timeout, healthcheck_deadline - now)

        next_event = asyncio.ensure_future(events.get())
        cancelled = asyncio.ensure_future(self.cancelled.wait())
        try:
            done, _ = await asyncio.wait(
                {next_event, cancelled},
                timeout=max(timeout, 0),
                return_when=asyncio.FIRST_COMPLETED,
            )
        finally:
            for waiter in (next_event, cancelled):
                if not waiter.done():
                    waiter.cancel()

        if cancelled in done:
            return _Wake.CANCELLED, None
        if next_event in done:
            return _Wake.EVENT, next_event.result()
        expired = self._expired(healthcheck_deadline)
        if expired is not None:
            return expired, None
        return _Wake.TICK, None

    def _expired(self, healthcheck_deadline: Optional[float]) -> Optional[_Wake]:
        now = self._loop_time
        if healthcheck_deadline is not None and now >= healthcheck_deadline:
            return _Wake.HEALTHCHECK_EXPIRED
        if now >= self._deadline:
            return _Wake.TIMEOUT
        return None

    async def _pump(self, events: asyncio.Queue) -> None:
        """Forward pod events of this Deployment from the cluster event stream.

        When the stream ends or fails the watcher keeps going on poll ticks.
        """
        try:
            async for event in self.store.stream_pod_events(self.namespace):
                name = event.metadata.name if event.metadata else None
                if name and name.startswith(self.name):
                    events.put_nowait(event)
        except KetchError as e:
            self.logger.warning(f"Event stream of {self.name} failed, polling only: {e}")
        else:
            self.logger.debug(f"Event stream of {self.name} closed, polling only")

    async def _fetch_deployment(self) -> V1Deployment:
        dep = await self.store.get_deployment(self.namespace, self.name)
        if dep is None:
            raise ClusterApiError(f'deployment "{self.name}" not found')
        return dep

    async def _pods_healthy(self) -> bool:
        try:
            await check_pod_status(
                self.store, self.conf.group, self.app_name, self.version, self.namespace
            )
        except KetchError as e:
            # Listing failures are retried on the next tick like unready pods
            self.logger.debug(f"Pods of {self.name} not healthy yet: {e}")
            return False
        return True

    async def _timeout_error(self, label: str) -> RolloutTimeoutError:
        """Timeout error listing the pods that are not ready and why."""
        elapsed = format_duration(self._loop_time - self._started_at)
        message = f"timeout waiting {label} after {elapsed} waiting for units"
        selector = Labels.pod_selector(self.conf.group, self.app_name, self.version).as_dict()
        try:
            pods = await self.store.list_pods_by_labels(self.namespace, selector)
        except KetchError as e:
            self.logger.warning(f"Failed to list pods of {self.app_name}: {e}")
            return RolloutTimeoutError(message)

        details = []
        for pod in pods:
            conditions = (pod.status.conditions if pod.status else None) or []
            if any(c.type == POD_READY and c.status != "True" for c in conditions):
                details.append(f"Pod {pod.metadata.name}: {await self._pod_phase_error(pod)}")
        if details:
            message = f"{message}: {', '.join(details)}"
        return RolloutTimeoutError(message)

    async def _pod_phase_error(self, pod: V1Pod) -> str:
        phase = pod.status.phase if pod.status else None
        text = f'invalid pod phase "{phase or ""}"'
        if pod.status and pod.status.message:
            text = f'{text}("{pod.status.message}")'
        try:
            events = await self.store.list_pod_events(self.namespace, pod.metadata.name)
        except KetchError:
            events = []
        if events:
            text = f"{text} - last event: {events[-1].message}"
        return text

    async def _emit(self, type: str, reason: str, description: str) -> None:
        event = new_app_deployment_event(
            self.conf.group, self.app_name, self.version, reason, description, self.process_name
        )
        await self.recorder.deployment_event(self.ref, type, event)

    def _done(self, task: asyncio.Task) -> None:
        if self._cleanup is not None:
            self._cleanup()
        if task.cancelled():
            self.phase = RolloutPhase.CANCELLED
        else:
            error = task.exception()
            if error is not None:
                self.phase = RolloutPhase.FAILED
                self.logger.error(f"Rollout watch of {self.name} crashed: {error}", exc_info=error)
        if self.sensor:
            self.sensor.on_watch_complete(
                self.app_name, self.name, self.process_name, self._sensor_state, self.phase.value
            )


def _observed_generation(dep: V1Deployment) -> int:
    return (dep.status.observed_generation if dep.status else None) or 0
