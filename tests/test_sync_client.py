# Tests for the remote task mirror client

import json
from unittest.mock import MagicMock

import pytest
import requests
from ventascom.models import ProcessingTask, Stage, TaskStatus
from ventascom.sync_client import StubTaskMirror, TaskMirrorClient, record_to_task, task_to_record


def make_response(status_code=200, payload=None, text=''):
    response = MagicMock()
    response.status_code = status_code
    response.text = text
    response.json.return_value = payload
    return response


def make_task():
    return ProcessingTask(id='t1', message='Daniel M 3', stage=Stage.COMPLETED,
                          status=TaskStatus.SUCCESS, progress=100, result=[],
                          raw_response='{"pedidos": []}', timestamp=1_700_000_100.0,
                          created_at=1_700_000_000.0)


class TestRecords:
    """Test task <-> remote record mapping"""

    def test_task_to_record(self):
        record = task_to_record(make_task())

        assert record['p_id'] == 't1'
        assert record['p_stage'] == Stage.COMPLETED
        assert record['p_progress'] == 100
        assert json.loads(record['p_result']) == []
        assert record['p_updated_at'].startswith('2023-11-14')

    def test_record_roundtrip(self):
        record = {k[2:]: v for k, v in task_to_record(make_task()).items()}

        task = record_to_task(record)

        assert task.id == 't1'
        assert task.timestamp == 1_700_000_100.0
        assert task.created_at == 1_700_000_000.0
        assert task.raw_response == '{"pedidos": []}'
        assert task.synced is True

    def test_record_without_id(self):
        with pytest.raises(ValueError):
            record_to_task({'message': 'x'})


class TestTaskMirrorClient:
    """Test RPC calls against a mocked session"""

    def setup_method(self):
        self.client = TaskMirrorClient('https://example.supabase.co/', api_key='key', timeout=5)
        self.client.session = MagicMock()
        self.client.retry_delay = 0

    def test_headers(self):
        client = TaskMirrorClient('https://example.supabase.co', api_key='secret')

        assert client.session.headers['apikey'] == 'secret'
        assert client.session.headers['Authorization'] == 'Bearer secret'

    def test_functions_exist(self):
        self.client.session.post.return_value = make_response(200, True)

        assert self.client.functions_exist() is True
        url = self.client.session.post.call_args[0][0]
        assert url == 'https://example.supabase.co/rest/v1/rpc/check_processing_functions_exist'

    def test_functions_missing(self):
        self.client.session.post.return_value = make_response(404, None)

        assert self.client.functions_exist() is False

    def test_functions_check_offline(self):
        self.client.session.post.side_effect = requests.exceptions.ConnectionError()

        assert self.client.functions_exist() is False

    def test_upsert_success(self):
        self.client.session.post.return_value = make_response(200)

        result = self.client.upsert_task(make_task())

        assert result['success'] is True
        payload = self.client.session.post.call_args[1]['json']
        assert payload['p_id'] == 't1'

    def test_upsert_rejected_not_retried(self):
        self.client.session.post.return_value = make_response(400, text='bad')

        result = self.client.upsert_task(make_task())

        assert result['success'] is False
        assert result['retry'] is False
        assert self.client.session.post.call_count == 1

    def test_upsert_retries_server_errors(self):
        self.client.session.post.side_effect = [
            make_response(503),
            requests.exceptions.Timeout(),
            make_response(201),
        ]

        result = self.client.upsert_task(make_task())

        assert result['success'] is True
        assert self.client.session.post.call_count == 3

    def test_upsert_gives_up(self):
        self.client.session.post.return_value = make_response(500)

        result = self.client.upsert_task(make_task())

        assert result == {'success': False, 'error': 'Max retries exceeded', 'status_code': 0, 'retry': True}

    def test_fetch_tasks(self):
        good = {k[2:]: v for k, v in task_to_record(make_task()).items()}
        self.client.session.post.return_value = make_response(200, [good, {'message': 'no id'}, None])

        tasks = self.client.fetch_tasks(limit=5)

        assert [t.id for t in tasks] == ['t1']
        assert self.client.session.post.call_args[1]['json'] == {'limit_count': 5}

    def test_fetch_tasks_error(self):
        self.client.session.post.return_value = make_response(500, text='boom')

        assert self.client.fetch_tasks() == []


class TestStubTaskMirror:
    def test_records_copies(self):
        mirror = StubTaskMirror()
        task = make_task()

        mirror.upsert_task(task)
        task.stage = Stage.FAILED

        assert mirror.fetch_tasks()[0].stage == Stage.COMPLETED
        assert mirror.upsert_count == 1
