"""Reconciliation of App objects.

One `AppReconciler.reconcile` call is one pass of the control loop for one
App: it makes sure the App is registered with its Framework, installs its
chart, steps an active canary, starts watching the rollout of the latest
deployment and reports the outcome on the App status and as an event.

Passes are idempotent. All writes are guarded by resourceVersion; a
conflicting write ends the pass with a ConflictError and the App is simply
reconciled again.
"""

import asyncio
import logging
from datetime import datetime
from typing import Any, Callable, Dict, NamedTuple, Optional, Set
from kubernetes_asyncio.client import V1ObjectReference
from ketch.chart import ChartApplier, chart_config, chart_values
from ketch.controllers.canary import CanaryController
from ketch.controllers.events import (
    NORMAL,
    WARNING,
    APP_RECONCILE_OUTCOME,
    CANARY_STEP_FAILED,
    CHART_UNINSTALL_FAILED,
    AppReconcileOutcome,
    EventRecorder,
)
from ketch.controllers.registry import CancelWatchRegistry
from ketch.controllers.watcher import RolloutWatcher
from ketch.resources.app import SCHEDULED, App
from ketch.resources.framework import Framework
from ketch.sensors import OperatorSensor
from ketch.types.settings import Settings
from ketch.utils.errors import (
    CanaryPendingError,
    ClusterApiError,
    ConflictError,
    FrameworkReferenceError,
    InvalidAppSpecError,
    InvalidCanaryStateError,
    KetchError,
)
from ketch.utils.helpers import utc_now

ChartFactory = Callable[[str], ChartApplier]


class ReconcileResult(NamedTuple):
    #: Seconds after which the App should be reconciled again, None for never.
    requeue_after: Optional[float] = None
    error: Optional[Exception] = None


class ScheduleResult(NamedTuple):
    framework: Optional[Dict[str, Any]] = None
    use_timeout: bool = False
    error: Optional[KetchError] = None


class AppReconciler:
    """Drives App objects toward their declared state."""

    def __init__(
        self,
        store,
        recorder: EventRecorder,
        registry: CancelWatchRegistry,
        chart_factory: ChartFactory,
        conf: Settings,
        sensor: OperatorSensor = None,
        now: Callable[[], datetime] = utc_now,
        logger: logging.Logger = None,
    ) -> None:
        self.store = store
        self.recorder = recorder
        self.registry = registry
        self.chart_factory = chart_factory
        self.conf = conf
        self.sensor = sensor
        self.now = now
        self.logger = logger or logging.getLogger(__name__)
        #: Background watch tasks, kept referenced until they finish.
        self.watch_tasks: Set[asyncio.Task] = set()

    async def reconcile(self, name: str, trigger_source: str = "event") -> ReconcileResult:
        """Run one reconciliation pass for the App `name`."""
        sensor_state = None
        if self.sensor:
            sensor_state = self.sensor.on_reconcile_start(name, trigger_source)
        result = ReconcileResult()
        try:
            result = await self._reconcile(name)
            return result
        except KetchError as e:
            result = ReconcileResult(error=e)
            return result
        finally:
            if self.sensor:
                self.sensor.on_reconcile_complete(
                    name, sensor_state, result.error is None, result.error
                )

    async def _reconcile(self, name: str) -> ReconcileResult:
        body = await self.store.get_app(name)
        if body is None:
            self.logger.debug(f"App {name} not found, nothing to reconcile")
            return ReconcileResult()

        try:
            app = App.from_body(body, self.conf.group)
        except InvalidAppSpecError as e:
            await self.recorder.event(
                _reference(body), WARNING, APP_RECONCILE_OUTCOME, AppReconcileOutcome(name, 0).message(e)
            )
            raise

        if app.marked_for_deletion:
            if app.has_finalizer(self.conf.finalizer):
                await self.delete(app)
            return ReconcileResult()

        if app.add_finalizer(self.conf.finalizer):
            try:
                app.refresh(await self.store.update_app(app.to_body()))
            except KetchError as e:
                self.logger.error(f"Failed to add finalizer to app {name}: {e}")
                raise

        schedule = await self.schedule(app)
        if isinstance(schedule.error, ConflictError):
            # Not shown to users, the app is reconciled again.
            self.logger.warning(f"Failed to reconcile app {name}: {schedule.error}")
            return ReconcileResult(error=schedule.error)

        outcome = AppReconcileOutcome(app.name, app.deployments_count)
        if schedule.error is not None:
            await self.recorder.event(
                app.object_reference, WARNING, APP_RECONCILE_OUTCOME, outcome.message(schedule.error)
            )
            app.set_condition(SCHEDULED, False, str(schedule.error))
        else:
            app.status["framework"] = schedule.framework
            await self.recorder.event(
                app.object_reference, NORMAL, APP_RECONCILE_OUTCOME, outcome.message()
            )
            app.set_condition(SCHEDULED, True)
        app.status["deploymentsCount"] = app.deployments_count

        try:
            await self.store.update_app_status(app.to_body())
        except ConflictError as e:
            self.logger.warning(f"Failed to update status of app {name}: {e}")
            return ReconcileResult(error=e)
        except KetchError as e:
            await self.recorder.event(
                app.object_reference, WARNING, APP_RECONCILE_OUTCOME, outcome.message(e)
            )
            return ReconcileResult(error=e)

        requeue_after = None
        if app.canary.active and app.canary.step_time_interval is not None:
            requeue_after = app.canary.step_time_interval.total_seconds()
        if schedule.use_timeout:
            requeue_after = self.conf.reconcile_requeue_seconds
        return ReconcileResult(requeue_after=requeue_after, error=schedule.error)

    async def schedule(self, app: App) -> ScheduleResult:
        """Register the App with its Framework, install it and watch the rollout."""
        try:
            return await self._schedule(app)
        except KetchError as e:
            return ScheduleResult(error=e)

    async def _schedule(self, app: App) -> ScheduleResult:
        body = await self.store.get_framework(app.spec.framework)
        if body is None:
            raise FrameworkReferenceError(f'framework "{app.spec.framework}" is not found')
        framework = Framework(body)
        if not framework.linked:
            raise FrameworkReferenceError(
                f'framework "{framework.name}" is not linked to a kubernetes namespace'
            )
        if framework.quota_exceeded(app.name):
            raise FrameworkReferenceError("you have reached the limit of apps")

        patch = framework.add_app_patch(app.name)
        if patch is not None:
            try:
                await self.store.patch_framework_status(framework.name, patch)
            except KetchError as e:
                raise e.with_context("failed to update framework status")

        namespace = framework.namespace
        chart = self.chart_factory(namespace)

        if app.canary.active:
            pending = await self._step_canary(app, namespace)
            if pending is not None:
                return ScheduleResult(use_timeout=True, error=pending)

        try:
            await chart.update_chart(
                chart_values(app, framework, self.conf.group), chart_config(app)
            )
        except KetchError as e:
            raise e.with_context("failed to update helm chart")

        if app.deployments and not app.canary.active:
            latest = app.latest_deployment
            for process in latest.processes:
                deployment_name = app.deployment_name(process.name, latest.version)
                try:
                    deployment = await self.store.get_deployment(namespace, deployment_name)
                except KetchError as e:
                    raise e.with_context("failed to get deployment")
                if deployment is None:
                    raise ClusterApiError(
                        f'failed to get deployment: deployment "{deployment_name}" not found', status=404
                    )
                watcher = RolloutWatcher(
                    app,
                    namespace,
                    deployment,
                    process.name,
                    self.store,
                    self.recorder,
                    self.registry,
                    self.conf,
                    sensor=self.sensor,
                    logger=self.logger,
                )
                try:
                    task = await watcher.start()
                except KetchError as e:
                    raise e.with_context("failed to get deploy events")
                self.watch_tasks.add(task)
                task.add_done_callback(self.watch_tasks.discard)
            return ScheduleResult(framework=framework.reference(), use_timeout=True)

        return ScheduleResult(framework=framework.reference())

    async def _step_canary(self, app: App, namespace: str) -> Optional[CanaryPendingError]:
        """Step the canary and persist the App.

        Returns:
            The pending error when canary pods are still converging.
        """
        controller = CanaryController(
            app,
            self.store,
            self.recorder,
            self.conf,
            namespace=namespace,
            sensor=self.sensor,
            logger=self.logger,
        )
        try:
            try:
                hpas = await self.store.list_hpas(namespace)
            except KetchError as e:
                raise e.with_context("failed to find HPAs")
            await controller.step(self.now(), app.hpa_targets(hpas))
        except CanaryPendingError as e:
            if controller.changed:
                await self._update_app(app)
            return e
        except InvalidCanaryStateError as e:
            await self._update_app(app)
            await self.recorder.event(app.object_reference, WARNING, CANARY_STEP_FAILED, str(e))
            raise
        if controller.changed:
            await self._update_app(app)
        return None

    async def _update_app(self, app: App) -> None:
        try:
            app.refresh(await self.store.update_app(app.to_body()))
        except KetchError as e:
            raise e.with_context("canary update failed")

    async def delete(self, app: App) -> None:
        """Uninstall the App and release it from its Framework, then drop the finalizer.

        A failed uninstall is reported as a Warning event and does not hold
        the App back; only failures of the bookkeeping writes propagate.
        """
        for body in await self.store.list_frameworks():
            framework = Framework(body)
            if not framework.has_app(app.name):
                continue
            if app.uninstall_chart:
                try:
                    await self.chart_factory(framework.namespace).delete_chart(app.name)
                except KetchError as e:
                    await self.recorder.event(
                        app.object_reference,
                        WARNING,
                        CHART_UNINSTALL_FAILED,
                        f"failed to uninstall chart of app {app.name}: {e}",
                    )
                    self.logger.warning(f"Failed to uninstall chart of app {app.name}: {e}")
            patch = framework.remove_app_patch(app.name)
            if patch is not None:
                await self.store.patch_framework_status(framework.name, patch)
            break

        if app.remove_finalizer(self.conf.finalizer):
            app.refresh(await self.store.update_app(app.to_body()))
        self.logger.info(f"App {app.name} released")

    async def stop(self) -> None:
        """Cancel every rollout watch and wait for the watch tasks to exit."""
        self.registry.cancel_all()
        tasks = list(self.watch_tasks)
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)


def _reference(body: Dict[str, Any]) -> V1ObjectReference:
    metadata = body.get("metadata") or {}
    return V1ObjectReference(
        api_version=body.get("apiVersion"),
        kind=body.get("kind", App.KIND),
        name=metadata.get("name"),
        uid=metadata.get("uid"),
    )
