"""Registry of running rollout watches.

A watch is keyed by the name of the workload it observes. Registering a
new watch for a key cancels the one currently registered for it, so at most
one watch per workload is ever live.
"""

import itertools
import logging
import threading
from typing import Callable, Dict, Tuple

logger = logging.getLogger(__name__)

CancelFn = Callable[[], None]
CleanupFn = Callable[[], bool]


class CancelWatchRegistry:
    """Concurrency-safe map from watch key to its cancellation handle.

    Each registration is stamped with a generation token. The cleanup
    function handed back to the caller only removes the entry while that
    token is still the current one, so a superseded watcher finishing late
    cannot evict its successor.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._entries: Dict[str, Tuple[int, CancelFn]] = {}
        self._tokens = itertools.count(1)

    def replace_and_cancel_previous(self, key: str, cancel: CancelFn) -> CleanupFn:
        """Register `cancel` under `key`, cancelling the previous handle.

        The previous handle is invoked while the lock is held so that no
        other caller can observe both handles as live. Handles must not block.

        Returns:
            A cleanup function that removes this registration if it is still
            current. It returns True when it removed the entry.
        """
        with self._lock:
            token = next(self._tokens)
            previous = self._entries.get(key)
            self._entries[key] = (token, cancel)
            if previous is not None:
                _, previous_cancel = previous
                try:
                    previous_cancel()
                except Exception as e:
                    logger.error(f"Error cancelling previous watch for {key}: {e}", exc_info=True)

        def cleanup() -> bool:
            with self._lock:
                current = self._entries.get(key)
                if current is not None and current[0] == token:
                    del self._entries[key]
                    return True
                return False

        return cleanup

    def cancel_all(self) -> int:
        """Cancel and forget every registered watch. Returns how many were cancelled."""
        with self._lock:
            entries = list(self._entries.items())
            self._entries.clear()
            for key, (_, cancel) in entries:
                try:
                    cancel()
                except Exception as e:
                    logger.error(f"Error cancelling watch for {key}: {e}", exc_info=True)
        return len(entries)

    def __contains__(self, key: str) -> bool:
        with self._lock:
            return key in self._entries

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)
