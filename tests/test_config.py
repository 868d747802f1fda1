# Tests for configuration loading and logging setup

import json
import logging

import pytest
from ventascom import config as config_module
from ventascom.config import AgentConfig, load_config
from ventascom.logging_config import set_error_alert_callback, setup_logging, task_logger


@pytest.fixture(autouse=True)
def clean_env(monkeypatch):
    for name in config_module.ENV_OVERRIDES:
        monkeypatch.delenv(name, raising=False)
    # Keep a developer's .env out of the tests
    monkeypatch.setattr(config_module, 'load_dotenv', lambda: None)


class TestLoadConfig:
    """Test defaults, file values and environment overrides"""

    def test_defaults_without_file(self, tmp_path):
        config = load_config(tmp_path / 'missing.json')

        assert config == AgentConfig()
        assert config.retention_seconds == 24 * 3600

    def test_file_values(self, tmp_path):
        path = tmp_path / 'config.json'
        path.write_text(json.dumps({'retention_hours': 2, 'sync_policy': 'all', 'bogus': 1}))

        config = load_config(path)

        assert config.retention_seconds == 7200
        assert config.sync_policy == 'all'

    def test_environment_overrides(self, tmp_path, monkeypatch):
        path = tmp_path / 'config.json'
        path.write_text(json.dumps({'http_port': 9000}))
        monkeypatch.setenv('VENTASCOM_HTTP_PORT', '9100')
        monkeypatch.setenv('GEMINI_API_KEY', 'abc')
        monkeypatch.setenv('GEMINI_TIMEOUT_SECONDS', '7.5')

        config = load_config(path)

        assert config.http_port == 9100
        assert config.gemini_api_key == 'abc'
        assert config.gemini_timeout_seconds == 7.5

    def test_invalid_sync_policy(self, tmp_path):
        path = tmp_path / 'config.json'
        path.write_text(json.dumps({'sync_policy': 'never'}))

        with pytest.raises(ValueError):
            load_config(path)


class TestLogging:
    """Test log setup and task-scoped messages"""

    def teardown_method(self):
        set_error_alert_callback(None)
        root = logging.getLogger()
        for handler in list(root.handlers):
            root.removeHandler(handler)
            handler.close()

    def test_error_alert_and_task_prefix(self, tmp_path):
        log_path = tmp_path / 'logs' / 'agent.log'
        alerts = []
        setup_logging(log_path=log_path, console=False)
        set_error_alert_callback(lambda message, level: alerts.append((message, level)))

        log = task_logger(logging.getLogger('ventascom.test'), 'abc123')
        log.info("parsed")
        log.error("failed")

        assert len(alerts) == 1
        assert alerts[0][1] == 'ERROR'
        assert '[task abc123] failed' in alerts[0][0]
        for handler in logging.getLogger().handlers:
            handler.flush()
        assert '[task abc123] parsed' in log_path.read_text(encoding='utf-8')
