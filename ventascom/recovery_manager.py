# Recovery Manager - startup reload of processing tasks
# Purges expired terminal tasks and picks the task to resume as active

import logging
import time
from datetime import datetime
from typing import Callable, Dict, List, Optional, Tuple

from .models import ProcessingTask
from .task_store import ACTIVE_TASK_KEY, TaskStore

logger = logging.getLogger(__name__)

RETENTION_SECONDS = 24 * 60 * 60


def expired_task_ids(tasks, now: float, retention_seconds: float = RETENTION_SECONDS) -> List[str]:
    """Terminal tasks last touched more than retention_seconds ago"""
    return [
        t.id for t in tasks
        if t.is_terminal and now - t.timestamp > retention_seconds
    ]


def pick_active_task(tasks) -> Optional[ProcessingTask]:
    """Most recent non-terminal task, else most recent task"""
    ordered = sorted(tasks, key=lambda t: t.timestamp, reverse=True)
    for task in ordered:
        if not task.is_terminal:
            return task
    return ordered[0] if ordered else None


class RecoveryManager:
    """Restores task state written by a previous run"""

    def __init__(self, store: TaskStore, retention_seconds: float = RETENTION_SECONDS,
                 clock: Callable[[], float] = time.time):
        self.store = store
        self.retention_seconds = retention_seconds
        self.clock = clock
        self.last_report: Optional[Dict] = None

    def on_startup(self) -> Tuple[Dict[str, ProcessingTask], Optional[str]]:
        """Load tasks, purge expired ones; returns (tasks by id, active task id)"""
        report = {
            'started_at': datetime.now().isoformat(),
            'tasks_loaded': 0,
            'tasks_purged': 0,
            'interrupted': [],
            'active_task_id': None,
        }

        try:
            tasks = self.store.load_tasks()
        except Exception as e:
            logger.error(f"Could not load stored tasks, starting empty: {e}")
            tasks = []
        report['tasks_loaded'] = len(tasks)

        expired = set(expired_task_ids(tasks, self.clock(), self.retention_seconds))
        if expired:
            try:
                self.store.delete_tasks(expired)
            except Exception as e:
                logger.error(f"Could not purge expired tasks: {e}")
            report['tasks_purged'] = len(expired)
            logger.info(f"Purged {len(expired)} task(s) older than {self.retention_seconds / 3600:.0f}h")

        by_id = {t.id: t for t in tasks if t.id not in expired}

        # Left mid-pipeline by the previous process; resumed when resubmitted
        interrupted = [t.id for t in by_id.values() if not t.is_terminal]
        if interrupted:
            report['interrupted'] = interrupted
            logger.warning(f"Found {len(interrupted)} interrupted task(s): {', '.join(interrupted)}")

        stored_active = self.store.load_state(ACTIVE_TASK_KEY)
        active = pick_active_task(by_id.values())
        active_id = active.id if active else None
        if stored_active in by_id and (active is None or active.is_terminal):
            active_id = stored_active
        report['active_task_id'] = active_id

        report['completed_at'] = datetime.now().isoformat()
        self.last_report = report
        try:
            self.store.save_state('last_recovery', report)
        except Exception as e:
            logger.warning(f"Could not record recovery report: {e}")

        return by_id, active_id

    def on_shutdown(self, active_task_id: Optional[str]):
        """Save state before shutdown"""
        try:
            self.store.save_state(ACTIVE_TASK_KEY, active_task_id)
            self.store.save_state('last_shutdown', datetime.now().isoformat())
            pending = self.store.get_stats().get('pending_sync', 0)
            logger.info(f"Shutdown: {pending} task(s) pending sync")
        except Exception as e:
            logger.warning(f"Could not save shutdown state: {e}")

    def get_recovery_status(self) -> Dict:
        return {
            'last_recovery': self.last_report,
            'store_stats': self.store.get_stats(),
        }
