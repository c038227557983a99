"""Unit tests for the App and Framework resources and their schemas."""

import pytest
from datetime import timedelta
from kubernetes_asyncio.client import (
    V2CrossVersionObjectReference,
    V2HorizontalPodAutoscaler,
    V2HorizontalPodAutoscalerSpec,
    V1ObjectMeta,
)
from marshmallow import ValidationError
from conftest import GROUP, app_body, deployment_spec, framework_body
from ketch.resources.app import App
from ketch.resources.framework import Framework
from ketch.types.base import parse_duration
from ketch.types.schemas import AppSpecSchema
from ketch.utils.errors import InvalidAppSpecError


def hpa(target, kind="Deployment", api_version="apps/v1"):
    return V2HorizontalPodAutoscaler(
        metadata=V1ObjectMeta(name=f"{target}-hpa"),
        spec=V2HorizontalPodAutoscalerSpec(
            max_replicas=5,
            scale_target_ref=V2CrossVersionObjectReference(
                api_version=api_version, kind=kind, name=target
            ),
        ),
    )


class TestAppSpecSchema:
    def test_unknown_fields_survive_round_trip(self):
        spec = {
            "framework": "demo",
            "ingress": {"generateDefaultCname": True},
            "deployments": [dict(deployment_spec(1, {"web": 2}), labels=[{"key": "v"}])],
        }
        dumped = AppSpecSchema().dump(AppSpecSchema().load(spec))
        assert dumped["ingress"] == {"generateDefaultCname": True}
        assert dumped["deployments"][0]["labels"] == [{"key": "v"}]
        assert dumped["deployments"][0]["processes"][0] == {"name": "web", "units": 2, "cmd": ["run"]}

    def test_duplicate_process_names(self):
        deployment = deployment_spec(1, {"web": 1})
        deployment["processes"].append({"name": "web", "units": 2})
        with pytest.raises(ValidationError):
            AppSpecSchema().load({"deployments": [deployment]})

    def test_versions_must_increase(self):
        with pytest.raises(ValidationError):
            AppSpecSchema().load(
                {"deployments": [deployment_spec(1, {"web": 1}), deployment_spec(1, {"web": 1})]}
            )

    def test_canary_durations(self):
        spec = AppSpecSchema().load({"canary": {"active": True, "stepTimeInterval": 60_000_000_000}})
        assert spec.canary.step_time_interval == timedelta(minutes=1)
        dumped = AppSpecSchema().dump(spec)
        assert dumped["canary"]["stepTimeInterval"] == 60_000_000_000

    @pytest.mark.parametrize(
        "text,seconds", [("30s", 30), ("5m", 300), ("1h30m", 5400), ("250ms", 0.25), ("1000000000", 1)]
    )
    def test_parse_duration(self, text, seconds):
        assert parse_duration(text) == pytest.approx(seconds)

    def test_invalid_duration(self):
        with pytest.raises(ValidationError):
            parse_duration("5 minutes")


class TestApp:
    def test_invalid_spec(self):
        body = app_body(deployments=[{"processes": []}])
        with pytest.raises(InvalidAppSpecError):
            App.from_body(body, GROUP)

    def test_defaults(self):
        app = App.from_body(app_body(), GROUP)
        assert app.canary.active is False
        assert app.canary.steps is None
        assert app.latest_version == 1
        assert app.deployment_name("web", 1) == "sample-web-1"
        assert not app.marked_for_deletion

    def test_finalizers(self):
        app = App.from_body(app_body(finalizers=["other/finalizer"]), GROUP)
        assert app.add_finalizer(f"{GROUP}/app-finalizer") is True
        assert app.add_finalizer(f"{GROUP}/app-finalizer") is False
        assert app.finalizers == ["other/finalizer", f"{GROUP}/app-finalizer"]
        assert app.remove_finalizer(f"{GROUP}/app-finalizer") is True
        assert app.finalizers == ["other/finalizer"]

    @pytest.mark.parametrize("value,expected", [("true", True), ("1", True), ("yes", True), ("false", False), (None, False)])
    def test_uninstall_chart_annotation(self, value, expected):
        annotations = {f"{GROUP}/uninstall-chart": value} if value is not None else {}
        app = App.from_body(app_body(annotations=annotations), GROUP)
        assert app.uninstall_chart is expected

    def test_uninstall_chart_annotation_follows_group(self):
        body = app_body(annotations={f"{GROUP}/uninstall-chart": "true"})
        assert App.from_body(body, "apps.example.com").uninstall_chart is False

        body = app_body(annotations={"apps.example.com/uninstall-chart": "true"})
        assert App.from_body(body, "apps.example.com").uninstall_chart is True

    def test_to_body_keeps_unmanaged_fields(self):
        body = app_body()
        body["status"] = {"custom": "kept"}
        body["metadata"]["labels"] = {"team": "a"}
        app = App.from_body(body, GROUP)
        app.deployments[0].processes[0].units = 5

        written = app.to_body()
        assert written["status"] == {"custom": "kept"}
        assert written["metadata"]["labels"] == {"team": "a"}
        assert written["spec"]["deployments"][0]["processes"][0]["units"] == 5
        assert body["spec"]["deployments"][0]["processes"][0]["units"] == 3

    def test_hpa_targets(self):
        body = app_body(deployments=[deployment_spec(1, {"web": 1, "worker": 1, "cron": 1})])
        app = App.from_body(body, GROUP)
        hpas = [
            hpa("sample-worker-1"),
            hpa("sample-cron-1", kind="StatefulSet"),
            hpa("other-web-1"),
        ]
        assert app.hpa_targets(hpas) == {"worker"}

    def test_condition_transition_time_only_changes_on_flip(self):
        app = App.from_body(app_body(), GROUP)
        app.set_condition("Scheduled", True)
        first = app.condition("Scheduled")["lastTransitionTime"]
        app.set_condition("Scheduled", True)
        assert app.condition("Scheduled")["lastTransitionTime"] == first
        app.set_condition("Scheduled", False, "boom")
        condition = app.condition("Scheduled")
        assert condition["status"] == "False"
        assert condition["reason"] == "ReconcileError"
        assert condition["message"] == "boom"


class TestFramework:
    def test_linked(self):
        assert Framework(framework_body()).linked
        assert not Framework(framework_body(namespace=None)).linked

    def test_quota(self):
        framework = Framework(framework_body(quota=2, apps=["a", "b"]))
        assert framework.quota_exceeded("c")
        assert not framework.quota_exceeded("a")
        assert not Framework(framework_body(quota=-1, apps=["a", "b"])).quota_exceeded("c")

    def test_membership_patches(self):
        body = framework_body(apps=["a"])
        body["metadata"]["resourceVersion"] = "7"
        framework = Framework(body)
        assert framework.add_app_patch("a") is None
        assert framework.add_app_patch("b") == {
            "status": {"apps": ["a", "b"]},
            "metadata": {"resourceVersion": "7"},
        }
        assert framework.remove_app_patch("b") is None
        assert framework.remove_app_patch("a")["status"]["apps"] == []
