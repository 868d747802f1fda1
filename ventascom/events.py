# Task events - per-task and broadcast listener channels

import logging
import threading
from collections import defaultdict
from typing import Callable, Dict, List

from .models import ProcessingTask

logger = logging.getLogger(__name__)

TaskListener = Callable[[ProcessingTask], None]


class TaskEventBus:
    """Fan-out of task snapshots to subscribers"""

    def __init__(self):
        self._lock = threading.Lock()
        self._task_listeners: Dict[str, List[TaskListener]] = defaultdict(list)
        self._global_listeners: List[TaskListener] = []

    def subscribe(self, task_id: str, listener: TaskListener) -> Callable[[], None]:
        with self._lock:
            self._task_listeners[task_id].append(listener)

        def unsubscribe():
            with self._lock:
                listeners = self._task_listeners.get(task_id)
                if listeners and listener in listeners:
                    listeners.remove(listener)
                if listeners == []:
                    del self._task_listeners[task_id]
        return unsubscribe

    def subscribe_all(self, listener: TaskListener) -> Callable[[], None]:
        with self._lock:
            self._global_listeners.append(listener)

        def unsubscribe():
            with self._lock:
                if listener in self._global_listeners:
                    self._global_listeners.remove(listener)
        return unsubscribe

    def deliver(self, listener: TaskListener, task: ProcessingTask):
        try:
            listener(task.copy())
        except Exception as e:
            logger.error(f"Error in task listener for {task.id}: {e}")

    def publish(self, task: ProcessingTask):
        """Call every listener of task.id, then every global listener, each with its own copy"""
        with self._lock:
            listeners = list(self._task_listeners.get(task.id, [])) + list(self._global_listeners)
        for listener in listeners:
            self.deliver(listener, task)

    def forget(self, task_id: str):
        with self._lock:
            self._task_listeners.pop(task_id, None)
