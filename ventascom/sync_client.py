# Sync Client - remote mirror of processing tasks (Supabase RPC over REST)
# Best effort: failures come back as result dicts, never as exceptions

import json
import logging
import time
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

import requests

from .models import ProcessingTask

logger = logging.getLogger(__name__)


def _iso(ts: float) -> str:
    return datetime.fromtimestamp(ts, tz=timezone.utc).isoformat()


def _epoch(value) -> Optional[float]:
    if value in (None, ''):
        return None
    if isinstance(value, (int, float)):
        return float(value)
    return datetime.fromisoformat(str(value).replace('Z', '+00:00')).timestamp()


def _maybe_json(value):
    if isinstance(value, str):
        return json.loads(value)
    return value


def task_to_record(task: ProcessingTask) -> Dict[str, Any]:
    """Arguments for the upsert_processing_task function"""
    return {
        'p_id': task.id,
        'p_message': task.message,
        'p_stage': task.stage,
        'p_progress': int(task.progress),
        'p_status': task.status,
        'p_error': task.error,
        'p_result': (
            json.dumps([i.to_dict() for i in task.result], ensure_ascii=False)
            if task.result is not None else None
        ),
        'p_raw_response': json.dumps(task.raw_response, ensure_ascii=False) if task.raw_response is not None else None,
        'p_created_at': _iso(task.created_at),
        'p_updated_at': _iso(task.timestamp),
    }


def record_to_task(record: Dict[str, Any]) -> ProcessingTask:
    """Build a task from a processing_tasks row; raises ValueError on bad rows"""
    try:
        created = _epoch(record.get('created_at'))
        updated = _epoch(record.get('updated_at')) or created
        return ProcessingTask.from_dict({
            'id': record['id'],
            'message': record.get('message'),
            'stage': record.get('stage'),
            'status': record.get('status'),
            'progress': record.get('progress'),
            'error': record.get('error'),
            'result': _maybe_json(record.get('result')),
            'raw_response': _maybe_json(record.get('raw_response')),
            'timestamp': updated,
            'created_at': created,
            'synced': True,
        })
    except (KeyError, TypeError) as e:
        raise ValueError(f"Malformed task record: {e}") from e


class TaskMirrorClient:
    """REST client for the remote processing_tasks mirror"""

    def __init__(self, base_url: str, api_key: str = None, timeout: int = 30):
        self.base_url = base_url.rstrip('/')
        self.api_key = api_key
        self.timeout = timeout
        self.session = requests.Session()

        if api_key:
            self.session.headers.update({
                'apikey': api_key,
                'Authorization': f'Bearer {api_key}',
            })

        self.session.headers.update({
            'Content-Type': 'application/json',
            'User-Agent': 'VentasCom-Order-Agent/1.0'
        })

        # Retry settings
        self.max_retries = 3
        self.retry_delay = 2  # seconds

    def _rpc_url(self, function: str) -> str:
        return f"{self.base_url}/rest/v1/rpc/{function}"

    def functions_exist(self) -> bool:
        """Whether the remote schema/functions are provisioned"""
        try:
            response = self.session.post(
                self._rpc_url('check_processing_functions_exist'),
                json={},
                timeout=5
            )
            return response.status_code == 200 and response.json() is not None
        except (requests.exceptions.RequestException, ValueError) as e:
            logger.debug(f"Mirror functions check failed: {e}")
            return False

    def upsert_task(self, task: ProcessingTask) -> Dict[str, Any]:
        """Push a single task to the mirror"""
        endpoint = self._rpc_url('upsert_processing_task')
        payload = task_to_record(task)

        for attempt in range(self.max_retries):
            try:
                response = self.session.post(endpoint, json=payload, timeout=self.timeout)

                if response.status_code in (200, 201, 204):
                    logger.info(f"Task {task.id} saved to mirror")
                    return {'success': True, 'status_code': response.status_code}

                elif response.status_code in (400, 404):
                    logger.error(f"Mirror rejected task {task.id}: {response.text}")
                    return {
                        'success': False,
                        'error': response.text,
                        'status_code': response.status_code,
                        'retry': False
                    }

                elif response.status_code in (401, 403):
                    logger.error("Mirror authentication failed - check Supabase key")
                    return {
                        'success': False,
                        'error': 'Authentication failed',
                        'status_code': response.status_code,
                        'retry': False
                    }

                else:
                    logger.warning(f"Mirror error {response.status_code}, retry {attempt + 1}/{self.max_retries}")
                    time.sleep(self.retry_delay * (attempt + 1))

            except requests.exceptions.Timeout:
                logger.warning(f"Timeout, retry {attempt + 1}/{self.max_retries}")
                time.sleep(self.retry_delay * (attempt + 1))

            except requests.exceptions.ConnectionError:
                logger.warning(f"Connection error, retry {attempt + 1}/{self.max_retries}")
                time.sleep(self.retry_delay * (attempt + 1))

            except Exception as e:
                logger.error(f"Unexpected error saving task {task.id}: {e}")
                return {'success': False, 'error': str(e), 'retry': False}

        return {
            'success': False,
            'error': 'Max retries exceeded',
            'status_code': 0,
            'retry': True
        }

    def fetch_tasks(self, limit: int = 20) -> List[ProcessingTask]:
        """Most recent remote tasks; bad rows are skipped, errors give []"""
        try:
            response = self.session.post(
                self._rpc_url('get_processing_tasks'),
                json={'limit_count': limit},
                timeout=self.timeout
            )
            if response.status_code != 200:
                logger.error(f"Error loading tasks from mirror: {response.status_code} {response.text}")
                return []
            records = response.json() or []
        except (requests.exceptions.RequestException, ValueError) as e:
            logger.error(f"Error loading tasks from mirror: {e}")
            return []

        tasks = []
        for record in records:
            if not record:
                continue
            try:
                tasks.append(record_to_task(record))
            except ValueError as e:
                logger.error(f"Error parsing mirrored task: {e}")
        return tasks


class StubTaskMirror:
    """In-memory mirror for tests and offline use"""

    def __init__(self, provisioned: bool = True):
        self.provisioned = provisioned
        self.records: Dict[str, ProcessingTask] = {}
        self.upsert_count = 0
        self.fetch_count = 0

    def functions_exist(self) -> bool:
        return self.provisioned

    def upsert_task(self, task: ProcessingTask) -> Dict[str, Any]:
        self.upsert_count += 1
        stored = task.copy()
        stored.synced = True
        self.records[task.id] = stored
        logger.info(f"[STUB] Mirrored task {task.id}")
        return {'success': True, 'status_code': 200}

    def fetch_tasks(self, limit: int = 20) -> List[ProcessingTask]:
        self.fetch_count += 1
        ordered = sorted(self.records.values(), key=lambda t: t.timestamp, reverse=True)
        return [t.copy() for t in ordered[:limit]]
