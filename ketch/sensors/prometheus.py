"""Prometheus monitoring backend for the ketch operator.

This module provides PrometheusMonitor, which collects operator lifecycle events
and exposes them as Prometheus metrics:

1. Reconciliation Loop Health - Duration, queue depth, throughput, errors
2. Rollout Watchers - Active watchers, outcomes, rollout duration
3. Canary Steps - Step actions per app
4. Events - Events posted on App objects
"""

from typing import Dict, Optional, Any
import time
import logging

from prometheus_client import REGISTRY, CollectorRegistry, Counter, Histogram, Gauge

from ketch.sensors.base import OperatorSensor

logger = logging.getLogger(__name__)


class PrometheusMonitor(OperatorSensor):
    """Prometheus metrics monitor for the ketch operator.

    Metrics are organized as:
    - ketch_reconcile_* - Reconciliation loop metrics
    - ketch_watch_* - Rollout watcher metrics
    - ketch_canary_* - Canary metrics
    - ketch_events_* - Event posting metrics

    Example:
        monitor = PrometheusMonitor()
        state = monitor.on_reconcile_start("my-app", "event")
        monitor.on_reconcile_complete("my-app", state, True)
    """

    def __init__(self, registry: CollectorRegistry = REGISTRY):
        """Initialize Prometheus metrics.

        Args:
            registry: Registry the metrics are registered with
        """
        super().__init__()

        # =============================================================================
        # Reconciliation Loop Metrics
        # =============================================================================

        self.reconcile_duration = Histogram(
            'ketch_reconcile_duration_seconds',
            'Time spent in reconciliation loop',
            labelnames=['app_name', 'trigger_source', 'result'],
            buckets=[0.1, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0, 60.0, 120.0],
            registry=registry,
        )

        self.reconcile_total = Counter(
            'ketch_reconcile_total',
            'Total number of reconciliation attempts',
            labelnames=['app_name', 'trigger_source', 'result'],
            registry=registry,
        )

        self.reconcile_errors = Counter(
            'ketch_reconcile_errors_total',
            'Total number of reconciliation errors',
            labelnames=['app_name', 'error_type'],
            registry=registry,
        )

        self.reconcile_queue_depth = Gauge(
            'ketch_reconcile_queue_depth',
            'Number of apps waiting to be reconciled',
            registry=registry,
        )

        self.reconcile_queue_wait_seconds = Histogram(
            'ketch_reconcile_queue_wait_seconds',
            'Time spent waiting in reconciliation queue',
            labelnames=['app_name'],
            buckets=[0.01, 0.05, 0.1, 0.5, 1.0, 5.0, 10.0, 30.0],
            registry=registry,
        )

        # =============================================================================
        # Rollout Watcher Metrics
        # =============================================================================

        self.watch_active = Gauge(
            'ketch_watch_active',
            'Number of rollout watchers currently running',
            registry=registry,
        )

        self.watch_total = Counter(
            'ketch_watch_total',
            'Total number of finished rollout watchers by terminal phase',
            labelnames=['app_name', 'process_name', 'phase'],
            registry=registry,
        )

        self.watch_duration = Histogram(
            'ketch_watch_duration_seconds',
            'Time between watcher start and its terminal phase',
            labelnames=['app_name', 'process_name', 'phase'],
            buckets=[1.0, 5.0, 15.0, 30.0, 60.0, 120.0, 300.0, 600.0],
            registry=registry,
        )

        # =============================================================================
        # Canary and Event Metrics
        # =============================================================================

        self.canary_steps = Counter(
            'ketch_canary_steps_total',
            'Total number of canary steps by action',
            labelnames=['app_name', 'action'],
            registry=registry,
        )

        self.events_posted = Counter(
            'ketch_events_posted_total',
            'Total number of events posted on App objects',
            labelnames=['reason', 'type', 'result'],
            registry=registry,
        )

        logger.info("PrometheusMonitor initialized with all metrics")

    # =============================================================================
    # Reconciliation Lifecycle Hooks
    # =============================================================================

    def on_reconcile_start(self, app_name: str, trigger_source: str) -> Dict[str, Any]:
        return {
            'start_time': time.monotonic(),
            'trigger_source': trigger_source,
        }

    def on_reconcile_complete(
        self,
        app_name: str,
        state: Optional[Dict[str, Any]],
        success: bool,
        error: Optional[Exception] = None,
    ) -> None:
        result = 'success' if success else 'error'
        trigger_source = state.get('trigger_source', 'unknown') if state else 'unknown'
        self.reconcile_total.labels(
            app_name=app_name, trigger_source=trigger_source, result=result
        ).inc()
        if state and 'start_time' in state:
            duration = time.monotonic() - state['start_time']
            self.reconcile_duration.labels(
                app_name=app_name, trigger_source=trigger_source, result=result
            ).observe(duration)
        if error is not None:
            self.reconcile_errors.labels(
                app_name=app_name,
                error_type=getattr(error, 'reason', type(error).__name__),
            ).inc()

    def on_reconcile_queued(self, app_name: str, queue_depth: int) -> None:
        self.reconcile_queue_depth.set(queue_depth)

    def on_reconcile_dequeued(self, app_name: str, wait_time: float) -> None:
        self.reconcile_queue_wait_seconds.labels(app_name=app_name).observe(wait_time)

    # =============================================================================
    # Rollout Watcher Hooks
    # =============================================================================

    def on_watch_start(
        self, app_name: str, deployment_name: str, process_name: str
    ) -> Dict[str, Any]:
        self.watch_active.inc()
        return {'start_time': time.monotonic()}

    def on_watch_complete(
        self,
        app_name: str,
        deployment_name: str,
        process_name: str,
        state: Optional[Dict[str, Any]],
        phase: str,
    ) -> None:
        self.watch_active.dec()
        self.watch_total.labels(
            app_name=app_name, process_name=process_name, phase=phase
        ).inc()
        if state and 'start_time' in state:
            self.watch_duration.labels(
                app_name=app_name, process_name=process_name, phase=phase
            ).observe(time.monotonic() - state['start_time'])

    # =============================================================================
    # Canary and Event Hooks
    # =============================================================================

    def on_canary_step(self, app_name: str, action: str) -> None:
        self.canary_steps.labels(app_name=app_name, action=action).inc()

    def on_event_posted(self, reason: str, type: str, success: bool) -> None:
        self.events_posted.labels(
            reason=reason, type=type, result='success' if success else 'error'
        ).inc()
