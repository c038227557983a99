"""Unit tests for AppReconciler."""

import pytest
from datetime import datetime, timedelta, timezone
from conftest import (
    GROUP,
    NAMESPACE,
    app_body,
    deployment_spec,
    framework_body,
    kube_deployment,
    kube_pod,
)
from ketch.controllers.events import (
    APP_RECONCILE_OUTCOME,
    APP_RECONCILE_STARTED,
    CANARY_STEP_FAILED,
    CHART_UNINSTALL_FAILED,
)
from ketch.controllers.reconciler import AppReconciler, ReconcileResult
from ketch.utils.errors import (
    CanaryPendingError,
    ChartError,
    ClusterApiError,
    ConflictError,
    FrameworkReferenceError,
    InvalidAppSpecError,
    InvalidCanaryStateError,
)
from ketch.utils.helpers import to_rfc3339

NOW = datetime(2026, 1, 1, 12, 0, tzinfo=timezone.utc)
FINALIZER = f"{GROUP}/app-finalizer"


@pytest.fixture
async def reconciler(store, recorder, registry, chart_factory, conf):
    reconciler = AppReconciler(
        store, recorder, registry, chart_factory, conf, now=lambda: NOW
    )
    yield reconciler
    await reconciler.stop()


def outcome_events(store):
    return store.events_by_reason(APP_RECONCILE_OUTCOME)


def scheduled(store, name="sample"):
    conditions = store.apps[name]["status"]["conditions"]
    return next(c for c in conditions if c["type"] == "Scheduled")


class TestSampleApp:
    @pytest.fixture(autouse=True)
    def cluster(self, store):
        store.add_framework(framework_body("demo", quota=-1))
        store.add_app(app_body("sample", framework="demo"))
        # Rollout still in progress so the watcher stays alive
        store.add_deployment(kube_deployment("sample-web-1", replicas=3, updated=1, unavailable=1))

    async def test_reconciles_and_watches_web(self, store, registry, chart, chart_factory, reconciler):
        result = await reconciler.reconcile("sample")

        assert result == ReconcileResult(requeue_after=10, error=None)
        [event] = outcome_events(store)
        assert event.type == "Normal"
        assert event.message == "app sample 1 reconcile success"
        assert store.messages(APP_RECONCILE_STARTED) == ["Updating units [web]"]
        assert len(registry) == 1
        assert "sample-web-1" in registry
        assert len(reconciler.watch_tasks) == 1

        assert store.frameworks["demo"]["status"]["apps"] == ["sample"]
        assert store.apps["sample"]["metadata"]["finalizers"] == [FINALIZER]
        status = store.apps["sample"]["status"]
        assert status["deploymentsCount"] == 1
        assert status["framework"]["name"] == "demo"
        assert scheduled(store)["status"] == "True"
        assert chart_factory.namespaces == [NAMESPACE]
        [(values, config)] = chart.updates
        assert config.app_name == "sample"
        assert values["app"]["namespace"] == NAMESPACE

    async def test_reconcile_is_idempotent(self, store, registry, reconciler):
        await reconciler.reconcile("sample")
        first = scheduled(store)
        await reconciler.reconcile("sample")

        assert store.framework_patches == 1
        assert store.app_updates == 1
        assert scheduled(store)["lastTransitionTime"] == first["lastTransitionTime"]
        assert store.apps["sample"]["metadata"]["finalizers"] == [FINALIZER]
        assert store.frameworks["demo"]["status"]["apps"] == ["sample"]
        assert len(registry) == 1
        assert [e.type for e in outcome_events(store)] == ["Normal", "Normal"]

    async def test_missing_app(self, reconciler):
        assert await reconciler.reconcile("nope") == ReconcileResult()


class TestFrameworkReference:
    async def test_quota_reached(self, store, reconciler):
        store.add_framework(framework_body("demo", quota=1, apps=["other"]))
        store.add_app(app_body("sample"))

        result = await reconciler.reconcile("sample")

        assert isinstance(result.error, FrameworkReferenceError)
        assert result.requeue_after is None
        [event] = outcome_events(store)
        assert event.type == "Warning"
        assert event.message == "app sample 1 reconcile fail: [you have reached the limit of apps]"
        assert scheduled(store)["status"] == "False"
        assert store.frameworks["demo"]["status"]["apps"] == ["other"]

    async def test_quota_ignores_members(self, store, reconciler):
        store.add_framework(framework_body("demo", quota=1, apps=["sample"]))
        store.add_app(app_body("sample"))
        store.add_deployment(kube_deployment("sample-web-1"))

        result = await reconciler.reconcile("sample")

        assert result.error is None
        assert store.framework_patches == 0

    async def test_missing_framework(self, store, reconciler):
        store.add_app(app_body("sample", framework="demo"))

        result = await reconciler.reconcile("sample")

        assert isinstance(result.error, FrameworkReferenceError)
        assert scheduled(store)["message"] == 'framework "demo" is not found'

    async def test_unlinked_framework(self, store, reconciler):
        store.add_framework(framework_body("demo", namespace=None))
        store.add_app(app_body("sample"))

        result = await reconciler.reconcile("sample")

        assert str(result.error) == 'framework "demo" is not linked to a kubernetes namespace'


class TestFailures:
    async def test_conflict_is_not_reported(self, store, reconciler):
        store.add_framework(framework_body("demo"))
        store.add_app(app_body("sample"))

        async def conflict(name, patch):
            raise ConflictError("the object has been modified")

        store.patch_framework_status = conflict

        result = await reconciler.reconcile("sample")

        assert isinstance(result.error, ConflictError)
        assert outcome_events(store) == []
        assert store.status_updates == 0

    async def test_chart_failure(self, store, chart, reconciler):
        store.add_framework(framework_body("demo"))
        store.add_app(app_body("sample"))
        chart.update_error = ChartError("helm upgrade failed: boom")

        result = await reconciler.reconcile("sample")

        assert isinstance(result.error, ChartError)
        [event] = outcome_events(store)
        assert event.message == (
            "app sample 1 reconcile fail: [failed to update helm chart: helm upgrade failed: boom]"
        )

    async def test_invalid_spec(self, store, reconciler):
        body = app_body(deployments=[deployment_spec(2, {"web": 1}), deployment_spec(1, {"web": 1})])
        store.add_app(body)

        result = await reconciler.reconcile("sample")

        assert isinstance(result.error, InvalidAppSpecError)
        [event] = outcome_events(store)
        assert event.type == "Warning"
        assert store.app_updates == 0


class TestCanary:
    @pytest.fixture(autouse=True)
    def cluster(self, store):
        store.add_framework(framework_body("demo", apps=["sample"]))

    def add_canary_app(self, store, started):
        store.add_app(
            app_body(
                deployments=[
                    deployment_spec(1, {"web": 4}, weight=100),
                    deployment_spec(2, {"web": 4}, weight=0),
                ],
                canary={
                    "active": True,
                    "steps": 4,
                    "stepWeight": 25,
                    "stepTimeInterval": "1m",
                    "started": to_rfc3339(started),
                },
                finalizers=[FINALIZER],
            )
        )

    async def test_pending_canary_requeues(self, store, chart, reconciler):
        self.add_canary_app(store, NOW - timedelta(seconds=30))
        store.pods = [kube_pod("sample-web-2-a", version=2, phase="Pending")]

        result = await reconciler.reconcile("sample")

        assert isinstance(result.error, CanaryPendingError)
        assert result.requeue_after == 10
        assert chart.updates == []
        [event] = outcome_events(store)
        assert "canary update failed: all pods are not running" in event.message

    async def test_canary_step_is_persisted(self, store, chart, registry, reconciler):
        self.add_canary_app(store, NOW - timedelta(seconds=30))
        store.pods = [kube_pod("sample-web-2-a", version=2)]

        result = await reconciler.reconcile("sample")

        assert result == ReconcileResult(requeue_after=60.0, error=None)
        deployments = store.apps["sample"]["spec"]["deployments"]
        assert [d["routingSettings"]["weight"] for d in deployments] == [75, 25]
        assert [d["processes"][0]["units"] for d in deployments] == [3, 1]
        assert store.apps["sample"]["spec"]["canary"]["currentStep"] == 1
        assert len(chart.updates) == 1
        assert len(registry) == 0

    async def test_rollback_after_timeout(self, store, reconciler):
        self.add_canary_app(store, NOW - timedelta(hours=1))
        store.pods = [kube_pod("sample-web-2-a", version=2, phase="Pending")]
        store.add_deployment(kube_deployment("sample-web-1", replicas=4, updated=4))

        result = await reconciler.reconcile("sample")

        assert result.error is None
        spec = store.apps["sample"]["spec"]
        assert [d["version"] for d in spec["deployments"]] == [1]
        assert spec["canary"]["active"] is False

    async def test_invalid_canary_state(self, store, reconciler):
        store.add_app(app_body(canary={"active": True, "steps": 2}, finalizers=[FINALIZER]))

        result = await reconciler.reconcile("sample")

        assert isinstance(result.error, InvalidCanaryStateError)
        assert len(store.events_by_reason(CANARY_STEP_FAILED)) == 1
        assert store.apps["sample"]["spec"]["canary"]["active"] is False
        assert outcome_events(store)[0].type == "Warning"


class TestDelete:
    @pytest.fixture(autouse=True)
    def cluster(self, store):
        store.add_framework(framework_body("demo", apps=["sample", "other"]))

    def add_deleted_app(self, store, annotations=None):
        store.add_app(
            app_body(
                finalizers=[FINALIZER],
                annotations=annotations,
                deletion_timestamp="2026-01-01T12:00:00Z",
            )
        )

    async def test_releases_app(self, store, chart, reconciler):
        self.add_deleted_app(store)

        result = await reconciler.reconcile("sample")

        assert result == ReconcileResult()
        assert chart.deleted == []
        assert store.frameworks["demo"]["status"]["apps"] == ["other"]
        assert "sample" not in store.apps

    async def test_uninstalls_chart_when_annotated(self, store, chart, reconciler):
        self.add_deleted_app(store, annotations={f"{GROUP}/uninstall-chart": "true"})

        await reconciler.reconcile("sample")

        assert chart.deleted == ["sample"]
        assert "sample" not in store.apps

    async def test_uninstall_failure_still_releases_app(self, store, chart, reconciler):
        self.add_deleted_app(store, annotations={f"{GROUP}/uninstall-chart": "yes"})
        chart.delete_error = ChartError("helm uninstall failed: release is locked")

        result = await reconciler.reconcile("sample")

        assert result.error is None
        assert "sample" not in store.apps
        assert store.frameworks["demo"]["status"]["apps"] == ["other"]
        assert chart.deleted == []
        [event] = store.events_by_reason(CHART_UNINSTALL_FAILED)
        assert event.type == "Warning"

    async def test_framework_patch_failure_keeps_finalizer(self, store, reconciler, monkeypatch):
        self.add_deleted_app(store)

        async def fail(name, patch):
            raise ClusterApiError("etcdserver: request timed out", status=500)

        monkeypatch.setattr(store, "patch_framework_status", fail)

        result = await reconciler.reconcile("sample")

        assert isinstance(result.error, ClusterApiError)
        assert store.apps["sample"]["metadata"]["finalizers"] == [FINALIZER]

    async def test_without_finalizer_is_a_no_op(self, store, reconciler):
        store.add_app(app_body(deletion_timestamp="2026-01-01T12:00:00Z"))

        assert await reconciler.reconcile("sample") == ReconcileResult()
        assert store.app_updates == 0
        assert store.frameworks["demo"]["status"]["apps"] == ["sample", "other"]
