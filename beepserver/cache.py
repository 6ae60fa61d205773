"""In-memory registry of tasks that are currently running."""

from __future__ import annotations

import threading
from typing import Any, Optional


class RunningTaskStore:
    """A thread-safe mapping from task id to the state of its running execution."""

    def __init__(self) -> None:
        self._items: dict[int, Any] = {}
        self._lock = threading.Lock()

    def put(self, task_id: int, running: Any) -> None:
        """Register running under task_id, replacing any earlier entry."""
        with self._lock:
            self._items[task_id] = running

    def get(self, task_id: int) -> Optional[Any]:
        """Return the entry for task_id, or None when the task is not running."""
        with self._lock:
            return self._items.get(task_id)

    def remove(self, task_id: int) -> None:
        """Forget task_id; removing an unknown id does nothing."""
        with self._lock:
            self._items.pop(task_id, None)

    def items(self) -> list[tuple[int, Any]]:
        """Return a snapshot of all (task id, entry) pairs."""
        with self._lock:
            return list(self._items.items())

    def __len__(self) -> int:
        with self._lock:
            return len(self._items)

    def __contains__(self, task_id: object) -> bool:
        with self._lock:
            return task_id in self._items


TASK_RUNNING_STORE = RunningTaskStore()