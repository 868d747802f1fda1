# Configuration - config.json values with environment overrides
# Secrets (Gemini / Supabase keys) come from the environment or a .env file

import json
import logging
import os
from dataclasses import dataclass, fields
from pathlib import Path
from typing import Optional

from dotenv import load_dotenv

logger = logging.getLogger(__name__)

DEFAULT_CONFIG_PATH = Path(__file__).resolve().parent.parent / 'config.json'

# env var -> config field
ENV_OVERRIDES = {
    'GEMINI_API_KEY': 'gemini_api_key',
    'GEMINI_MODEL': 'gemini_model',
    'GEMINI_TIMEOUT_SECONDS': 'gemini_timeout_seconds',
    'SUPABASE_URL': 'supabase_url',
    'SUPABASE_KEY': 'supabase_key',
    'VENTASCOM_DB_PATH': 'db_path',
    'VENTASCOM_SYNC_INTERVAL': 'sync_interval_seconds',
    'VENTASCOM_HTTP_PORT': 'http_port',
    'VENTASCOM_CATALOG_PATH': 'catalog_path',
    'VENTASCOM_LOG_PATH': 'log_path',
}


@dataclass
class AgentConfig:
    db_path: str = 'ventascom_tasks.db'
    retention_hours: float = 24.0
    sync_interval_seconds: float = 300.0
    sync_policy: str = 'terminal'  # 'terminal' | 'all'
    remote_fetch_limit: int = 20

    gemini_api_key: Optional[str] = None
    gemini_model: str = 'gemini-2.0-flash'
    gemini_temperature: float = 0.2
    gemini_max_output_tokens: int = 1000
    gemini_timeout_seconds: float = 30.0

    supabase_url: Optional[str] = None
    supabase_key: Optional[str] = None

    catalog_path: Optional[str] = None
    http_port: int = 8080
    log_path: Optional[str] = None

    tolerate_typos: bool = True
    detect_partial_names: bool = True

    @property
    def retention_seconds(self) -> float:
        return self.retention_hours * 3600


def _coerce(value, current_default):
    """Cast env strings to the type of the field default"""
    if isinstance(current_default, bool):
        return str(value).lower() in ('1', 'true', 't', 'yes', 'y')
    if isinstance(current_default, int):
        return int(value)
    if isinstance(current_default, float):
        return float(value)
    return value


def load_config(path=None) -> AgentConfig:
    """Defaults < config.json < environment (.env loaded first)"""
    load_dotenv()
    config = AgentConfig()
    known = {f.name for f in fields(AgentConfig)}

    config_path = Path(path) if path else DEFAULT_CONFIG_PATH
    if config_path.exists():
        with open(config_path, encoding='utf-8') as f:
            data = json.load(f)
        for key, value in data.items():
            if key in known:
                setattr(config, key, value)
            else:
                logger.warning(f"Ignoring unknown config key '{key}' in {config_path}")

    for env_name, field_name in ENV_OVERRIDES.items():
        value = os.getenv(env_name)
        if value in (None, ''):
            continue
        default = getattr(AgentConfig, field_name, None)
        setattr(config, field_name, _coerce(value, default))

    if config.sync_policy not in ('terminal', 'all'):
        raise ValueError(f"sync_policy must be 'terminal' or 'all', got {config.sync_policy!r}")
    return config
