"""Sensor delegation for fan-out pattern.

This module provides SensorDelegate, which routes sensor events to multiple
monitoring backends simultaneously. Each backend receives the same events
and can maintain independent state.
"""

from typing import Set, Dict, Optional, Any
import logging

from ketch.sensors.base import OperatorSensor

logger = logging.getLogger(__name__)


class SensorDelegate(OperatorSensor):
    """Delegate sensor that fans out events to multiple backends.

    State tracking is handled per-sensor, so each backend receives its own
    state dict from start/complete hook pairs. An error raised by one sensor
    is logged and never reaches the operator or the other sensors.

    Example:
        delegate = SensorDelegate()
        delegate.add(LoggingSensor())
        delegate.add(PrometheusMonitor())

        state = delegate.on_reconcile_start("my-app", "event")
        delegate.on_reconcile_complete("my-app", state, True)
    """

    def __init__(self) -> None:
        """Initialize empty sensor delegate."""
        self._sensors: Set[OperatorSensor] = set()

    def add(self, sensor: OperatorSensor) -> None:
        """Add a sensor to the delegate.

        Args:
            sensor: Sensor instance to add
        """
        logger.info(f"Adding sensor: {sensor.__class__.__name__}")
        self._sensors.add(sensor)

    def remove(self, sensor: OperatorSensor) -> None:
        """Remove a sensor from the delegate.

        Args:
            sensor: Sensor instance to remove
        """
        logger.info(f"Removing sensor: {sensor.__class__.__name__}")
        self._sensors.discard(sensor)

    def clear(self) -> None:
        """Remove all sensors from the delegate."""
        logger.info(f"Clearing {len(self._sensors)} sensors")
        self._sensors.clear()

    def _start(self, hook: str, *args) -> Optional[Dict[OperatorSensor, Any]]:
        if not self._sensors:
            return None
        states = {}
        for sensor in self._sensors:
            try:
                state = getattr(sensor, hook)(*args)
                if state is not None:
                    states[sensor] = state
            except Exception as e:
                logger.error(
                    f"Error in {sensor.__class__.__name__}.{hook}: {e}",
                    exc_info=True,
                )
        return states if states else None

    def _fan_out(self, hook: str, *args, state=None, with_state: bool = False, **kwargs) -> None:
        for sensor in self._sensors:
            try:
                if with_state:
                    sensor_state = state.get(sensor) if state else None
                    getattr(sensor, hook)(*args, sensor_state, **kwargs)
                else:
                    getattr(sensor, hook)(*args, **kwargs)
            except Exception as e:
                logger.error(
                    f"Error in {sensor.__class__.__name__}.{hook}: {e}",
                    exc_info=True,
                )

    # =============================================================================
    # Reconciliation Lifecycle Hooks
    # =============================================================================

    def on_reconcile_start(
        self, app_name: str, trigger_source: str
    ) -> Optional[Dict[OperatorSensor, Any]]:
        """Delegate reconcile_start to all sensors.

        Returns:
            Dict mapping each sensor to its returned state, or None if no sensors
        """
        return self._start("on_reconcile_start", app_name, trigger_source)

    def on_reconcile_complete(
        self,
        app_name: str,
        state: Optional[Dict[OperatorSensor, Any]],
        success: bool,
        error: Optional[Exception] = None,
    ) -> None:
        """Delegate reconcile_complete to all sensors with their specific state."""
        self._fan_out(
            "on_reconcile_complete", app_name, state=state, with_state=True,
            success=success, error=error,
        )

    def on_reconcile_queued(self, app_name: str, queue_depth: int) -> None:
        self._fan_out("on_reconcile_queued", app_name, queue_depth)

    def on_reconcile_dequeued(self, app_name: str, wait_time: float) -> None:
        self._fan_out("on_reconcile_dequeued", app_name, wait_time)

    # =============================================================================
    # Rollout Watcher Hooks
    # =============================================================================

    def on_watch_start(
        self, app_name: str, deployment_name: str, process_name: str
    ) -> Optional[Dict[OperatorSensor, Any]]:
        return self._start("on_watch_start", app_name, deployment_name, process_name)

    def on_watch_complete(
        self,
        app_name: str,
        deployment_name: str,
        process_name: str,
        state: Optional[Dict[OperatorSensor, Any]],
        phase: str,
    ) -> None:
        self._fan_out(
            "on_watch_complete", app_name, deployment_name, process_name,
            state=state, with_state=True, phase=phase,
        )

    # =============================================================================
    # Canary and Event Hooks
    # =============================================================================

    def on_canary_step(self, app_name: str, action: str) -> None:
        self._fan_out("on_canary_step", app_name, action)

    def on_event_posted(self, reason: str, type: str, success: bool) -> None:
        self._fan_out("on_event_posted", reason, type, success)
