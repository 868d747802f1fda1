# Task Store - SQLite storage for VentasCom processing tasks
# Local durable copy of every task plus small key/value state (active task pointer)

import sqlite3
import json
import logging
import threading
from datetime import datetime
from typing import Any, Dict, Iterable, List

from .models import ProcessingTask

logger = logging.getLogger(__name__)

ACTIVE_TASK_KEY = 'active_task_id'
CLEARED_TASKS_KEY = 'cleared_task_ids'


class TaskStore:
    """SQLite-backed task storage"""

    DB_PATH = "ventascom_tasks.db"

    def __init__(self, db_path: str = None):
        self.db_path = db_path or self.DB_PATH
        self.lock = threading.Lock()
        self._init_db()

    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(self.db_path)
        conn.row_factory = sqlite3.Row
        return conn

    def _init_db(self):
        """Initialize database schema"""
        with self.lock:
            conn = self._connect()
            cursor = conn.cursor()

            cursor.execute('''
                CREATE TABLE IF NOT EXISTS tasks (
                    id TEXT PRIMARY KEY,
                    message TEXT NOT NULL,
                    stage TEXT NOT NULL,
                    status TEXT NOT NULL,
                    progress INTEGER DEFAULT 0,
                    error TEXT,
                    result_json TEXT,
                    raw_response TEXT,
                    timestamp REAL NOT NULL,
                    created_at REAL NOT NULL,
                    synced INTEGER DEFAULT 0,
                    updated_at TEXT
                )
            ''')
            cursor.execute('''
                CREATE INDEX IF NOT EXISTS idx_tasks_timestamp ON tasks(timestamp DESC)
            ''')

            cursor.execute('''
                CREATE TABLE IF NOT EXISTS state (
                    key TEXT PRIMARY KEY,
                    value TEXT,
                    updated_at TEXT
                )
            ''')

            conn.commit()
            conn.close()

    def save_task(self, task: ProcessingTask):
        """Insert or replace a task row"""
        result_json = None
        if task.result is not None:
            result_json = json.dumps([item.to_dict() for item in task.result], ensure_ascii=False)
        raw_response = json.dumps(task.raw_response, ensure_ascii=False) if task.raw_response is not None else None

        with self.lock:
            conn = self._connect()
            cursor = conn.cursor()
            cursor.execute('''
                INSERT OR REPLACE INTO tasks
                (id, message, stage, status, progress, error, result_json, raw_response,
                 timestamp, created_at, synced, updated_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            ''', (task.id, task.message, task.stage, task.status, task.progress, task.error,
                  result_json, raw_response, task.timestamp, task.created_at,
                  1 if task.synced else 0, datetime.now().isoformat()))
            conn.commit()
            conn.close()

    def _row_to_task(self, row: sqlite3.Row) -> ProcessingTask:
        data = dict(row)
        data['result'] = json.loads(data.pop('result_json')) if data.get('result_json') else None
        data['raw_response'] = json.loads(data['raw_response']) if data.get('raw_response') else None
        return ProcessingTask.from_dict(data)

    def load_tasks(self) -> List[ProcessingTask]:
        """All stored tasks, most recent first; unreadable rows are skipped"""
        with self.lock:
            conn = self._connect()
            cursor = conn.cursor()
            cursor.execute('SELECT * FROM tasks ORDER BY timestamp DESC')
            rows = cursor.fetchall()
            conn.close()

        tasks = []
        for row in rows:
            try:
                tasks.append(self._row_to_task(row))
            except (ValueError, KeyError, TypeError) as e:
                logger.error(f"Skipping unreadable task {row['id']}: {e}")
        return tasks

    def get_task(self, task_id: str):
        with self.lock:
            conn = self._connect()
            cursor = conn.cursor()
            cursor.execute('SELECT * FROM tasks WHERE id = ?', (task_id,))
            row = cursor.fetchone()
            conn.close()
        return self._row_to_task(row) if row else None

    def delete_tasks(self, task_ids: Iterable[str]) -> int:
        ids = list(task_ids)
        if not ids:
            return 0
        with self.lock:
            conn = self._connect()
            cursor = conn.cursor()
            cursor.executemany('DELETE FROM tasks WHERE id = ?', [(i,) for i in ids])
            deleted = cursor.rowcount
            conn.commit()
            conn.close()
        return deleted

    def mark_synced(self, task_id: str):
        with self.lock:
            conn = self._connect()
            cursor = conn.cursor()
            cursor.execute('UPDATE tasks SET synced = 1 WHERE id = ?', (task_id,))
            conn.commit()
            conn.close()

    def save_state(self, key: str, value: Any):
        """Save state key-value"""
        with self.lock:
            conn = self._connect()
            cursor = conn.cursor()
            cursor.execute('''
                INSERT OR REPLACE INTO state (key, value, updated_at)
                VALUES (?, ?, ?)
            ''', (key, json.dumps(value), datetime.now().isoformat()))
            conn.commit()
            conn.close()

    def load_state(self, key: str, default: Any = None) -> Any:
        """Load state value"""
        with self.lock:
            conn = self._connect()
            cursor = conn.cursor()
            cursor.execute('SELECT value FROM state WHERE key = ?', (key,))
            row = cursor.fetchone()
            conn.close()

        if row:
            try:
                return json.loads(row[0])
            except (TypeError, ValueError):
                return row[0]
        return default

    def get_stats(self) -> Dict:
        """Get store statistics"""
        with self.lock:
            conn = self._connect()
            cursor = conn.cursor()

            stats = {}
            cursor.execute('SELECT COUNT(*) FROM tasks')
            stats['total_tasks'] = cursor.fetchone()[0]

            cursor.execute('SELECT COUNT(*) FROM tasks WHERE synced = 0')
            stats['pending_sync'] = cursor.fetchone()[0]

            cursor.execute("SELECT COUNT(*) FROM tasks WHERE stage NOT IN ('completed', 'failed')")
            stats['in_progress'] = cursor.fetchone()[0]

            cursor.execute("SELECT COUNT(*) FROM tasks WHERE stage = 'failed'")
            stats['failed'] = cursor.fetchone()[0]

            conn.close()
            return stats
