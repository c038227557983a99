import os
from typing import Any

_TRUE, _FALSE = {"True", "true", "yes", "1"}, {"False", "false", "no", "0"}


def _getenv(name: str, *default: Any) -> Any:
    try:
        v = os.environ[name]
        if v in _TRUE:
            return True
        elif v in _FALSE:
            return False
        else:
            return v
    except KeyError:
        pass
    if default:
        return default[0]
    raise KeyError(name)


# ------------------------------------------------
# ---- Defaults and environment variables ----
# ------------------------------------------------

#: API group of the App and Framework custom resources, also used as label prefix
KETCH_GROUP = str(_getenv("KETCH_GROUP", "theketch.io"))

#: API version of the App and Framework custom resources
KETCH_VERSION = str(_getenv("KETCH_VERSION", "v1beta1"))

#: Number of workers processing reconciliation requests concurrently
RECONCILE_WORKERS = int(_getenv("RECONCILE_WORKERS", 2))

#: Seconds to wait before reconciling again while a rollout is being watched
RECONCILE_REQUEUE_SECONDS = float(_getenv("RECONCILE_REQUEUE_SECONDS", 10))

#: Base delay in seconds before retrying a failed reconciliation
RECONCILE_ERROR_BACKOFF_SECONDS = float(_getenv("RECONCILE_ERROR_BACKOFF_SECONDS", 5))

#: Upper bound in seconds for the exponential error backoff
RECONCILE_MAX_BACKOFF_SECONDS = float(_getenv("RECONCILE_MAX_BACKOFF_SECONDS", 300))

#: Seconds a canary may stay unhealthy before it is rolled back
CANARY_TIMEOUT_SECONDS = float(_getenv("CANARY_TIMEOUT_SECONDS", 600))

#: Overall seconds to wait for a deployment rollout to finish
POD_RUNNING_TIMEOUT_SECONDS = float(_getenv("POD_RUNNING_TIMEOUT_SECONDS", 600))

#: Seconds to wait for created units to pass their health checks
HEALTHCHECK_TIMEOUT_SECONDS = float(_getenv("HEALTHCHECK_TIMEOUT_SECONDS", 120))

#: Seconds between deployment polls while watching a rollout
WATCH_POLL_INTERVAL_SECONDS = float(_getenv("WATCH_POLL_INTERVAL_SECONDS", 0.1))

#: Namespace receiving events about cluster scoped objects
EVENTS_NAMESPACE = str(_getenv("EVENTS_NAMESPACE", "default"))

#: Helm executable used to install application charts
HELM_BINARY = str(_getenv("HELM_BINARY", "helm"))

#: Location of the chart installed for every application
CHART_PATH = str(_getenv("CHART_PATH", "/charts/ketch-app"))

#: Seconds before a helm invocation is aborted
HELM_TIMEOUT_SECONDS = float(_getenv("HELM_TIMEOUT_SECONDS", 300))

#: Port of the prometheus metrics endpoint
METRICS_PORT = int(_getenv("METRICS_PORT", 8000))


class Settings:
    """Operator settings"""

    group: str = KETCH_GROUP
    version: str = KETCH_VERSION
    reconcile_workers: int = RECONCILE_WORKERS
    reconcile_requeue_seconds: float = RECONCILE_REQUEUE_SECONDS
    reconcile_error_backoff_seconds: float = RECONCILE_ERROR_BACKOFF_SECONDS
    reconcile_max_backoff_seconds: float = RECONCILE_MAX_BACKOFF_SECONDS
    canary_timeout_seconds: float = CANARY_TIMEOUT_SECONDS
    pod_running_timeout_seconds: float = POD_RUNNING_TIMEOUT_SECONDS
    healthcheck_timeout_seconds: float = HEALTHCHECK_TIMEOUT_SECONDS
    watch_poll_interval_seconds: float = WATCH_POLL_INTERVAL_SECONDS
    events_namespace: str = EVENTS_NAMESPACE
    helm_binary: str = HELM_BINARY
    chart_path: str = CHART_PATH
    helm_timeout_seconds: float = HELM_TIMEOUT_SECONDS
    metrics_port: int = METRICS_PORT

    def __init__(
        self,
        *args,
        group: str = None,
        version: str = None,
        reconcile_workers: int = None,
        reconcile_requeue_seconds: float = None,
        reconcile_error_backoff_seconds: float = None,
        reconcile_max_backoff_seconds: float = None,
        canary_timeout_seconds: float = None,
        pod_running_timeout_seconds: float = None,
        healthcheck_timeout_seconds: float = None,
        watch_poll_interval_seconds: float = None,
        events_namespace: str = None,
        helm_binary: str = None,
        chart_path: str = None,
        helm_timeout_seconds: float = None,
        metrics_port: int = None,
        **kwargs,
    ):
        if group is not None:
            self.group = group

        if version is not None:
            self.version = version

        if reconcile_workers is not None:
            self.reconcile_workers = reconcile_workers

        if reconcile_requeue_seconds is not None:
            self.reconcile_requeue_seconds = reconcile_requeue_seconds

        if reconcile_error_backoff_seconds is not None:
            self.reconcile_error_backoff_seconds = reconcile_error_backoff_seconds

        if reconcile_max_backoff_seconds is not None:
            self.reconcile_max_backoff_seconds = reconcile_max_backoff_seconds

        if canary_timeout_seconds is not None:
            self.canary_timeout_seconds = canary_timeout_seconds

        if pod_running_timeout_seconds is not None:
            self.pod_running_timeout_seconds = pod_running_timeout_seconds

        if healthcheck_timeout_seconds is not None:
            self.healthcheck_timeout_seconds = healthcheck_timeout_seconds

        if watch_poll_interval_seconds is not None:
            self.watch_poll_interval_seconds = watch_poll_interval_seconds

        if events_namespace is not None:
            self.events_namespace = events_namespace

        if helm_binary is not None:
            self.helm_binary = helm_binary

        if chart_path is not None:
            self.chart_path = chart_path

        if helm_timeout_seconds is not None:
            self.helm_timeout_seconds = helm_timeout_seconds

        if metrics_port is not None:
            self.metrics_port = metrics_port

    @property
    def finalizer(self) -> str:
        return f"{self.group}/app-finalizer"
