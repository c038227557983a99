from .registry import CancelWatchRegistry
from .events import EventRecorder
from .canary import CanaryController, check_pod_status
from .watcher import RolloutWatcher, RolloutPhase
from .reconciler import AppReconciler, ReconcileResult
from .queue import ReconcileQueue

__all__ = [
    "CancelWatchRegistry",
    "EventRecorder",
    "CanaryController",
    "check_pod_status",
    "RolloutWatcher",
    "RolloutPhase",
    "AppReconciler",
    "ReconcileResult",
    "ReconcileQueue",
]
