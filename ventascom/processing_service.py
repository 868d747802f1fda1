# Processing Service - persisted, observable task runner for order messages
# parse -> analyze -> validate -> AI refine -> group, one worker thread per message

import logging
import threading
import time
import uuid
from typing import Callable, Dict, List, Optional, Sequence

from .events import TaskEventBus, TaskListener
from .grouping import group_orders
from .logging_config import task_logger
from .message_parser import MessageParser
from .models import Client, GroupedOrder, Product, ProcessingTask, Stage, TaskStatus
from .order_validator import analyze_drafts, validate_orders
from .recovery_manager import RETENTION_SECONDS, RecoveryManager, expired_task_ids, pick_active_task
from .refinement import OrderRefiner
from .task_store import ACTIVE_TASK_KEY, CLEARED_TASKS_KEY, TaskStore

logger = logging.getLogger(__name__)

SYNC_POLICIES = ('terminal', 'all')


def message_key(message: str) -> str:
    return (message or '').strip()


def _micros(ts: float) -> int:
    # Mirror timestamps travel as ISO strings with microsecond resolution
    return round(ts * 1_000_000)


class MessageProcessingService:
    """
    Owns every ProcessingTask. Consumers get copies through getters and
    listeners; only this service mutates tasks, the store and the mirror.
    """

    def __init__(self, store: TaskStore, text_client=None, mirror=None,
                 parser: Optional[MessageParser] = None,
                 refiner: Optional[OrderRefiner] = None,
                 retention_seconds: float = RETENTION_SECONDS,
                 sync_policy: str = 'terminal',
                 fetch_limit: int = 20,
                 clock: Callable[[], float] = time.time):
        if sync_policy not in SYNC_POLICIES:
            raise ValueError(f"Unknown sync policy: {sync_policy}")

        self.store = store
        self.mirror = mirror
        self.parser = parser or MessageParser()
        self.refiner = refiner or OrderRefiner(text_client)
        self.retention_seconds = retention_seconds
        self.sync_policy = sync_policy
        self.fetch_limit = fetch_limit
        self.clock = clock

        self.events = TaskEventBus()
        self.recovery = RecoveryManager(store, retention_seconds, clock)

        self._lock = threading.RLock()
        self._tasks: Dict[str, ProcessingTask] = {}
        self._message_index: Dict[str, str] = {}
        # task id -> time it was cleared; keeps the mirror from bringing it back
        self._cleared: Dict[str, float] = {}
        # Active task restored from the previous run, until something new is submitted
        self._restored_active_id: Optional[str] = None
        # message key -> worker running its pipeline
        self._in_flight: Dict[str, threading.Thread] = {}
        self._sync_lock = threading.Lock()
        self._stop_event = threading.Event()
        self._sync_thread: Optional[threading.Thread] = None
        self._started = False

    # Lifecycle

    def start(self, initial_sync: bool = True):
        """Reload persisted tasks; optionally kick off a background sync"""
        with self._lock:
            if self._started:
                return
            tasks, active_id = self.recovery.on_startup()
            self._tasks = tasks
            self._restored_active_id = active_id
            self._rebuild_index()
            self._load_cleared()
            self._started = True
            self._stop_event.clear()
        logger.info(f"Processing service started with {len(tasks)} task(s), active: {active_id}")

        if initial_sync and self.mirror is not None:
            self.trigger_sync()

    def stop(self, timeout: float = 5):
        """Stop periodic sync and wait briefly for running pipelines"""
        self._stop_event.set()
        if self._sync_thread is not None:
            self._sync_thread.join(timeout=timeout)
            self._sync_thread = None

        with self._lock:
            workers = list(self._in_flight.values())
        for worker in workers:
            worker.join(timeout=timeout)

        active = self._active_task()
        self.recovery.on_shutdown(active.id if active else None)
        with self._lock:
            self._started = False
        logger.info("Processing service stopped")

    # Submission

    def submit(self, message: str, clients: Sequence[Client], products: Sequence[Product]) -> str:
        """
        Start processing message and return its task id. Identical (trimmed)
        text that is running or completed returns the existing task id.
        """
        key = message_key(message)
        if not key:
            raise ValueError("Cannot process an empty message")

        with self._lock:
            self._purge_expired()
            existing = self._find_by_key(key)

            if existing is not None:
                if self._is_running(existing) or existing.stage == Stage.COMPLETED:
                    logger.info(f"Reusing task {existing.id} for message: {key[:50]}")
                    return existing.id
                if not existing.is_terminal:
                    # Interrupted by a previous shutdown: run it again under the same id
                    logger.info(f"Resuming interrupted task {existing.id}")
                    task = existing
                    task.stage = Stage.NOT_STARTED
                    task.status = TaskStatus.PENDING
                    task.progress = 0
                    task.error = None
                    task.timestamp = self.clock()
                    task.synced = False
                else:
                    task = self._new_task(message)
            else:
                task = self._new_task(message)

            self._tasks[task.id] = task
            self._message_index[key] = task.id
            self._restored_active_id = None
            self._persist(task)
            snapshot = task.copy()

            worker = threading.Thread(
                target=self._run_pipeline,
                args=(task.id, message, list(clients), list(products)),
                name=f"pipeline-{task.id[:8]}",
                daemon=True,
            )
            self._in_flight[key] = worker

        self.events.publish(snapshot)
        worker.start()
        return task.id

    def _new_task(self, message: str) -> ProcessingTask:
        now = self.clock()
        return ProcessingTask(id=str(uuid.uuid4()), message=message, timestamp=now, created_at=now)

    def wait(self, task_id: str, timeout: Optional[float] = None) -> Optional[ProcessingTask]:
        """Block until the task's pipeline finishes (or timeout); returns a snapshot"""
        with self._lock:
            task = self._tasks.get(task_id)
            worker = self._in_flight.get(message_key(task.message)) if task else None
        if worker is not None and worker is not threading.current_thread():
            worker.join(timeout)
        return self.get_task(task_id)

    def _run_pipeline(self, task_id: str, message: str,
                      clients: List[Client], products: List[Product]):
        log = task_logger(logger, task_id)
        try:
            self._update(task_id, stage=Stage.PARSING)
            drafts = self.parser.parse(message)
            log.info(f"Parsed {len(drafts)} draft item(s)")

            self._update(task_id, stage=Stage.ANALYZING)
            analyzed = analyze_drafts(drafts, clients, products)

            self._update(task_id, stage=Stage.VALIDATING)
            validated = validate_orders(analyzed, clients, products)

            self._update(task_id, stage=Stage.AI_PROCESSING, result=validated)
            outcome = self.refiner.refine(message, validated, clients, products)
            if outcome.raw_response is not None:
                self._update(task_id, raw_response=outcome.raw_response)

            # Groups are a derived view of the result, rebuilt by get_grouped_orders
            self._update(task_id, stage=Stage.GROUPING)
            groups = group_orders(outcome.items)
            log.info(f"{len(outcome.items)} item(s) for {len(groups)} client(s), refined={outcome.refined}")

            self._update(task_id, stage=Stage.COMPLETED, status=TaskStatus.SUCCESS, result=outcome.items)
        except Exception as e:
            log.exception(f"Processing failed: {e}")
            self._update(
                task_id,
                stage=Stage.FAILED,
                status=TaskStatus.ERROR,
                error=str(e) or type(e).__name__,
            )
        finally:
            with self._lock:
                key = message_key(message)
                if self._in_flight.get(key) is threading.current_thread():
                    del self._in_flight[key]

        self._push_finished(task_id)

    def _update(self, task_id: str, **changes):
        """Apply changes, persist, then notify listeners synchronously"""
        with self._lock:
            task = self._tasks.get(task_id)
            if task is None:
                return

            stage = changes.pop('stage', None)
            if stage is not None:
                if not Stage.can_advance(task.stage, stage):
                    logger.warning(f"Ignoring stage change {task.stage} -> {stage} for task {task_id}")
                else:
                    task.stage = stage
                    task.progress = max(task.progress, Stage.PROGRESS[stage])

            for name, value in changes.items():
                setattr(task, name, value)
            task.timestamp = max(self.clock(), task.timestamp)
            task.synced = False

            self._persist(task)
            snapshot = task.copy()

        self.events.publish(snapshot)

    def _persist(self, task: ProcessingTask):
        """Local write; failures are logged and the in-memory state stays authoritative"""
        try:
            self.store.save_task(task)
            active = self._active_task()
            self.store.save_state(ACTIVE_TASK_KEY, active.id if active else None)
        except Exception as e:
            logger.error(f"Could not persist task {task.id}: {e}")

    # Reads

    def get_task(self, task_id: str) -> Optional[ProcessingTask]:
        with self._lock:
            task = self._tasks.get(task_id)
            return task.copy() if task else None

    def list_tasks(self) -> List[ProcessingTask]:
        """All tasks, most recently touched first"""
        with self._lock:
            ordered = sorted(self._tasks.values(), key=lambda t: t.timestamp, reverse=True)
            return [t.copy() for t in ordered]

    def _active_task(self) -> Optional[ProcessingTask]:
        with self._lock:
            active = pick_active_task(self._tasks.values())
            restored = self._tasks.get(self._restored_active_id) if self._restored_active_id else None
            if restored is not None and (active is None or active.is_terminal):
                return restored
            return active

    def get_active_task(self) -> Optional[ProcessingTask]:
        """Most recently touched running task, else the one active at last shutdown, else the newest"""
        task = self._active_task()
        return task.copy() if task else None

    def find_task_by_message(self, message: str) -> Optional[ProcessingTask]:
        with self._lock:
            task = self._find_by_key(message_key(message))
            return task.copy() if task else None

    def get_grouped_orders(self, task_id: str) -> List[GroupedOrder]:
        task = self.get_task(task_id)
        if task is None or not task.result:
            return []
        return group_orders(task.result)

    def is_running(self, task_id: str) -> bool:
        with self._lock:
            task = self._tasks.get(task_id)
            return task is not None and self._is_running(task)

    def clear_task(self, task_id: str) -> bool:
        """
        Drop a task (e.g. once its orders were saved). The id is remembered
        for the retention period so a later sync does not pull it back.
        """
        with self._lock:
            task = self._tasks.get(task_id)
            if task is None or self._is_running(task):
                return False
            del self._tasks[task_id]
            key = message_key(task.message)
            if self._message_index.get(key) == task_id:
                del self._message_index[key]
            if self._restored_active_id == task_id:
                self._restored_active_id = None
            self._cleared[task_id] = self.clock()
            try:
                self.store.delete_tasks([task_id])
                self.store.save_state(CLEARED_TASKS_KEY, self._cleared)
            except Exception as e:
                logger.error(f"Could not delete task {task_id}: {e}")
        self.events.forget(task_id)
        return True

    def _load_cleared(self):
        try:
            stored = self.store.load_state(CLEARED_TASKS_KEY, {}) or {}
        except Exception as e:
            logger.error(f"Could not load cleared task ids: {e}")
            stored = {}
        self._cleared = {task_id: float(cleared_at) for task_id, cleared_at in stored.items()}
        self._prune_cleared()

    def _prune_cleared(self):
        """Forget cleared ids the mirror would drop as expired anyway (caller holds the lock)"""
        now = self.clock()
        stale = [i for i, cleared_at in self._cleared.items() if now - cleared_at > self.retention_seconds]
        if not stale:
            return
        for task_id in stale:
            del self._cleared[task_id]
        try:
            self.store.save_state(CLEARED_TASKS_KEY, self._cleared)
        except Exception as e:
            logger.error(f"Could not save cleared task ids: {e}")

    # Listeners

    def subscribe(self, task_id: str, listener: TaskListener) -> Callable[[], None]:
        return self.events.subscribe(task_id, listener)

    def subscribe_all(self, listener: TaskListener) -> Callable[[], None]:
        """Listen to every task; the active task is replayed once right away"""
        unsubscribe = self.events.subscribe_all(listener)
        active = self._active_task()
        if active is not None:
            self.events.deliver(listener, active)
        return unsubscribe

    # Index helpers (caller holds the lock)

    def _rebuild_index(self):
        self._message_index.clear()
        for task in sorted(self._tasks.values(), key=lambda t: t.timestamp):
            self._message_index[message_key(task.message)] = task.id

    def _find_by_key(self, key: str) -> Optional[ProcessingTask]:
        task_id = self._message_index.get(key)
        if task_id and task_id in self._tasks:
            return self._tasks[task_id]
        for task in self._tasks.values():
            if message_key(task.message) == key:
                return task
        return None

    def _is_running(self, task: ProcessingTask) -> bool:
        worker = self._in_flight.get(message_key(task.message))
        return (
            worker is not None
            and self._message_index.get(message_key(task.message)) == task.id
            and (worker.is_alive() or not task.is_terminal)
        )

    def _purge_expired(self) -> int:
        with self._lock:
            self._prune_cleared()
            ids = [
                task_id for task_id in expired_task_ids(self._tasks.values(), self.clock(), self.retention_seconds)
                if not self._is_running(self._tasks[task_id])
            ]
            if not ids:
                return 0
            for task_id in ids:
                task = self._tasks.pop(task_id)
                key = message_key(task.message)
                if self._message_index.get(key) == task_id:
                    del self._message_index[key]
            try:
                self.store.delete_tasks(ids)
            except Exception as e:
                logger.error(f"Could not purge expired tasks: {e}")
        for task_id in ids:
            self.events.forget(task_id)
        logger.info(f"Purged {len(ids)} expired task(s)")
        return len(ids)

    def purge_expired(self) -> int:
        return self._purge_expired()

    # Remote mirror

    def _mirror_ready(self) -> bool:
        if self.mirror is None:
            return False
        try:
            return bool(self.mirror.functions_exist())
        except Exception as e:
            logger.warning(f"Mirror availability check failed: {e}")
            return False

    def _push(self, snapshot: ProcessingTask) -> bool:
        try:
            result = self.mirror.upsert_task(snapshot)
        except Exception as e:
            logger.error(f"Error saving task {snapshot.id} to mirror: {e}")
            return False
        if not result.get('success'):
            logger.warning(f"Mirror did not accept task {snapshot.id}: {result.get('error', 'unknown')}")
            return False

        with self._lock:
            current = self._tasks.get(snapshot.id)
            # A newer local mutation still needs pushing
            if current is not None and current.timestamp == snapshot.timestamp:
                current.synced = True
                try:
                    self.store.mark_synced(snapshot.id)
                except Exception as e:
                    logger.error(f"Could not mark task {snapshot.id} synced: {e}")
        return True

    def _push_finished(self, task_id: str):
        if not self._mirror_ready():
            return
        snapshot = self.get_task(task_id)
        if snapshot is not None and not snapshot.synced:
            self._push(snapshot)

    def _pull(self) -> int:
        remote_tasks = self.mirror.fetch_tasks(self.fetch_limit)
        now = self.clock()
        changed = []
        with self._lock:
            for remote in remote_tasks:
                if remote.is_terminal and now - remote.timestamp > self.retention_seconds:
                    continue
                if remote.id in self._cleared:
                    continue
                local = self._tasks.get(remote.id)
                if local is not None and self._is_running(local):
                    continue
                if local is None or _micros(local.timestamp) < _micros(remote.timestamp):
                    remote.synced = True
                    self._tasks[remote.id] = remote
                    key = message_key(remote.message)
                    current_id = self._message_index.get(key)
                    current = self._tasks.get(current_id) if current_id else None
                    if current is None or _micros(current.timestamp) <= _micros(remote.timestamp):
                        self._message_index[key] = remote.id
                    self._persist(remote)
                    changed.append(remote.copy())

        for snapshot in changed:
            self.events.publish(snapshot)
        if changed:
            logger.info(f"Merged {len(changed)} task(s) from mirror")
        return len(changed)

    def sync(self) -> bool:
        """
        Push unsynced tasks and pull newer remote ones (last write wins).
        A sync already in progress makes this call return False at once.
        """
        if self.mirror is None:
            return False
        if not self._sync_lock.acquire(blocking=False):
            logger.info("Sync already in progress, skipping")
            return False
        try:
            if not self._mirror_ready():
                logger.info("Mirror functions not provisioned, skipping sync")
                return False

            self._purge_expired()
            with self._lock:
                unsynced = [
                    t.copy() for t in self._tasks.values()
                    if not t.synced and (self.sync_policy == 'all' or t.is_terminal)
                    and not self._is_running(t)
                ]
            if unsynced:
                logger.info(f"Syncing {len(unsynced)} task(s) to mirror")
            for snapshot in unsynced:
                self._push(snapshot)

            self._pull()
            return True
        except Exception as e:
            logger.error(f"Error syncing with mirror: {e}")
            return False
        finally:
            self._sync_lock.release()

    def trigger_sync(self) -> threading.Thread:
        """Run sync on a background thread"""
        thread = threading.Thread(target=self.sync, name="mirror-sync", daemon=True)
        thread.start()
        return thread

    def notify_online(self):
        logger.info("Connectivity regained, syncing")
        return self.trigger_sync()

    def notify_visible(self):
        return self.trigger_sync()

    def start_periodic_sync(self, interval: float):
        """Sync every interval seconds until stop()"""
        if self._sync_thread is not None and self._sync_thread.is_alive():
            return

        def loop():
            while not self._stop_event.wait(interval):
                self.sync()

        self._stop_event.clear()
        self._sync_thread = threading.Thread(target=loop, name="mirror-sync-loop", daemon=True)
        self._sync_thread.start()
        logger.info(f"Periodic sync every {interval:.0f}s")

    def get_status(self) -> Dict:
        with self._lock:
            running = sum(1 for t in self._tasks.values() if self._is_running(t))
            unsynced = sum(1 for t in self._tasks.values() if not t.synced)
            total = len(self._tasks)
        active = self._active_task()
        return {
            'tasks': total,
            'running': running,
            'unsynced': unsynced,
            'active_task_id': active.id if active else None,
            'mirror': self.mirror is not None,
            'refinement': self.refiner.text_client is not None,
        }
