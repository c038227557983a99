"""Base sensor classes for operator monitoring.

This module defines the base OperatorSensor class that provides lifecycle hooks
for monitoring various operator events. All hooks are no-ops by default, allowing
subclasses to override only the events they care about.

The hook pattern:
- Hooks come in pairs: on_X_start() and on_X_complete()
- Start hooks return an optional state dict for tracking multi-phase operations
- Complete hooks receive the state dict from their corresponding start hook
- All hooks are optional - sensors only implement what they need
"""

from typing import Dict, Optional, Any
import logging

logger = logging.getLogger(__name__)


class OperatorSensor:
    """Base sensor class for ketch operator monitoring.

    This class defines lifecycle hooks for four categories:
    1. Reconciliation lifecycle (queue and reconcile passes)
    2. Rollout watchers
    3. Canary steps
    4. Events posted on App objects

    All methods are no-ops by default. Subclasses override only the hooks
    they need to monitor.

    Example:
        class LoggingSensor(OperatorSensor):
            def on_reconcile_start(self, app_name: str, trigger_source: str) -> Dict:
                return {'start_time': time.time()}

            def on_reconcile_complete(self, app_name: str, state: Dict, success: bool, error=None) -> None:
                duration = time.time() - state['start_time']
                logger.info(f"Reconciled {app_name} in {duration}s")
    """

    # =============================================================================
    # Reconciliation Lifecycle Hooks
    # =============================================================================

    def on_reconcile_start(
        self,
        app_name: str,
        trigger_source: str,
    ) -> Optional[Dict[str, Any]]:
        """Called when a reconciliation pass begins.

        Args:
            app_name: App resource name
            trigger_source: What triggered reconciliation (event, requeue, retry)

        Returns:
            Optional state dict passed to on_reconcile_complete
        """
        pass

    def on_reconcile_complete(
        self,
        app_name: str,
        state: Optional[Dict[str, Any]],
        success: bool,
        error: Optional[Exception] = None,
    ) -> None:
        """Called when a reconciliation pass completes.

        Args:
            app_name: App resource name
            state: State dict returned from on_reconcile_start
            success: Whether reconciliation succeeded
            error: Exception if reconciliation failed
        """
        pass

    def on_reconcile_queued(
        self,
        app_name: str,
        queue_depth: int,
    ) -> None:
        """Called when a reconciliation request is queued.

        Args:
            app_name: App resource name
            queue_depth: Number of apps waiting to be reconciled
        """
        pass

    def on_reconcile_dequeued(
        self,
        app_name: str,
        wait_time: float,
    ) -> None:
        """Called when a reconciliation request is picked up by a worker.

        Args:
            app_name: App resource name
            wait_time: Time spent in queue (seconds)
        """
        pass

    # =============================================================================
    # Rollout Watcher Hooks
    # =============================================================================

    def on_watch_start(
        self,
        app_name: str,
        deployment_name: str,
        process_name: str,
    ) -> Optional[Dict[str, Any]]:
        """Called when a rollout watcher starts observing a deployment.

        Args:
            app_name: App resource name
            deployment_name: Name of the watched Deployment
            process_name: Process the Deployment runs

        Returns:
            Optional state dict passed to on_watch_complete
        """
        pass

    def on_watch_complete(
        self,
        app_name: str,
        deployment_name: str,
        process_name: str,
        state: Optional[Dict[str, Any]],
        phase: str,
    ) -> None:
        """Called when a rollout watcher exits.

        Args:
            app_name: App resource name
            deployment_name: Name of the watched Deployment
            process_name: Process the Deployment runs
            state: State dict returned from on_watch_start
            phase: Terminal phase (complete, failed, timed_out, cancelled)
        """
        pass

    # =============================================================================
    # Canary Hooks
    # =============================================================================

    def on_canary_step(
        self,
        app_name: str,
        action: str,
    ) -> None:
        """Called after each canary step.

        Args:
            app_name: App resource name
            action: What the step did (pending, advanced, promoted, rolled_back, skipped)
        """
        pass

    # =============================================================================
    # Event Hooks
    # =============================================================================

    def on_event_posted(
        self,
        reason: str,
        type: str,
        success: bool,
    ) -> None:
        """Called after an event was posted, or failed to post.

        Args:
            reason: Event reason
            type: Normal or Warning
            success: Whether the event was accepted by the API server
        """
        pass
