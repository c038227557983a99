import kopf
import logging
import ketch.handlers.app as app_handlers
import ketch.handlers.probes as probes
from ketch.types.settings import Settings
from ketch.chart import HelmChartFactory
from ketch.controllers import (
    AppReconciler,
    CancelWatchRegistry,
    EventRecorder,
    ReconcileQueue,
)
from ketch.resources import ClusterStore
from ketch.sensors import init_metrics_server, SensorDelegate, PrometheusMonitor
from kubernetes_asyncio import config
from kubernetes_asyncio.client.api_client import ApiClient


@kopf.on.startup()
async def setup(
    settings: kopf.OperatorSettings, memo: kopf.Memo, logger: logging.Logger, **kwargs
):
    # Load Kubernetes config - try in-cluster first (for production), then local kubeconfig (for dev)
    try:
        config.load_incluster_config()
        logger.info("Loaded in-cluster Kubernetes configuration")
    except config.ConfigException:
        logger.info("In-cluster config not found, trying local kubeconfig")
        try:
            await config.load_kube_config()
            logger.info("Loaded local Kubernetes configuration")
        except config.ConfigException as e:
            logger.error(f"Failed to load Kubernetes configuration: {e}")
            raise

    conf = memo.conf = Settings()

    # One ApiClient shared by every component to prevent connection leaks
    memo.api_client = ApiClient()
    logger.info("Shared Kubernetes API client initialized")

    sensor_delegate = SensorDelegate()
    sensor_delegate.add(PrometheusMonitor())
    memo.sensor = sensor_delegate
    logger.info("Sensor infrastructure initialized with PrometheusMonitor")

    try:
        init_metrics_server(conf.metrics_port)
    except Exception as e:
        logger.error(f"Failed to start metrics server: {e}")
        logger.warning("Continuing without metrics server")

    store = ClusterStore(
        memo.api_client,
        group=conf.group,
        version=conf.version,
        watch_timeout_seconds=int(conf.pod_running_timeout_seconds),
    )
    recorder = EventRecorder(store, namespace=conf.events_namespace, sensor=sensor_delegate)
    memo.registry = CancelWatchRegistry()
    memo.reconciler = AppReconciler(
        store,
        recorder,
        memo.registry,
        HelmChartFactory(conf),
        conf,
        sensor=sensor_delegate,
    )
    memo.queue = ReconcileQueue(memo.reconciler.reconcile, conf, sensor=sensor_delegate)
    memo.queue.start(conf.reconcile_workers)

    # Disable posting events to the Kubernetes API for logging < Warning
    settings.posting.enabled = True
    settings.posting.level = logging.WARNING


@kopf.on.cleanup()
async def cleanup(memo: kopf.Memo, logger: logging.Logger, **kwargs):
    """Cleanup handler for operator shutdown."""
    logger.info("Shutting down operator...")

    queue = getattr(memo, "queue", None)
    if queue is not None:
        await queue.stop()
        logger.info("Reconcile workers stopped")

    reconciler = getattr(memo, "reconciler", None)
    if reconciler is not None:
        await reconciler.stop()
        logger.info("Rollout watchers cancelled")

    api_client = getattr(memo, "api_client", None)
    if api_client is not None:
        await api_client.close()
        logger.info("Shared API client closed")

    logger.info("Operator shutdown complete")


__all__ = [
    "app_handlers",
    "probes",
]
