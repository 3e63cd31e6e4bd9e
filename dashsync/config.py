"""Application configuration for the dashboard sync client."""

from __future__ import annotations

import logging
import os
from collections.abc import Mapping
from dataclasses import dataclass, fields, replace
from pathlib import Path
from typing import Any

import yaml
from dotenv import load_dotenv

logger = logging.getLogger(__name__)

API_BASE_URL = "http://localhost:8000/api"
STREAM_PATH = "/events/stream"

AUTH_REFRESH_ENDPOINT = "/auth/refresh"
AUTH_LOGIN_ENDPOINT = "/auth/login"
AUTH_MFA_ENDPOINT_PREFIX = "/auth/mfa"
NOTEBOOKS_ENDPOINT = "/notebooks"
NOTEBOOK_ENDPOINT_TEMPLATE = "/notebooks/{notebook_id}"
NOTEBOOK_EXECUTE_ENDPOINT_TEMPLATE = "/notebooks/{notebook_id}/execute"
NOTEBOOK_TEMPLATES_ENDPOINT = "/notebooks/templates"
EXECUTION_ENDPOINT_TEMPLATE = "/executions/{execution_id}"
DASHBOARD_SUMMARY_ENDPOINT = "/dashboard/summary"
CPI_COMPARE_ENDPOINT = "/cpi/compare"
CACHE_STATS_ENDPOINT = "/cache/stats"
CACHE_CLEAR_ENDPOINT = "/cache/clear"

# 401s on these never trigger a token refresh.
AUTH_EXEMPT_ENDPOINTS = (AUTH_REFRESH_ENDPOINT, AUTH_LOGIN_ENDPOINT, AUTH_MFA_ENDPOINT_PREFIX)

REQUEST_TIMEOUT_SECONDS = 30
MAX_RETRIES = 3
RECONNECT_BASE_DELAY_SECONDS = 5.0
MAX_RECONNECT_ATTEMPTS = 5
RECONNECT_MAX_DELAY_SECONDS: float | None = None
POLL_INTERVAL_SECONDS = 2.0
DASHBOARD_CACHE_TTL_SECONDS = 60.0
DASHBOARD_CACHE_RESOURCE = "dashboard"

ENV_API_URL = "DASHSYNC_API_URL"
ENV_ACCESS_TOKEN = "DASHSYNC_ACCESS_TOKEN"
ENV_REFRESH_TOKEN = "DASHSYNC_REFRESH_TOKEN"
ENV_SETTINGS_FILE = "DASHSYNC_SETTINGS_FILE"


@dataclass(frozen=True)
class Settings:
    api_base_url: str = API_BASE_URL
    stream_path: str = STREAM_PATH
    access_token: str = ""
    refresh_token: str = ""
    request_timeout_seconds: float = REQUEST_TIMEOUT_SECONDS
    max_retries: int = MAX_RETRIES
    reconnect_base_delay_seconds: float = RECONNECT_BASE_DELAY_SECONDS
    max_reconnect_attempts: int = MAX_RECONNECT_ATTEMPTS
    reconnect_max_delay_seconds: float | None = RECONNECT_MAX_DELAY_SECONDS
    poll_interval_seconds: float = POLL_INTERVAL_SECONDS
    dashboard_cache_ttl_seconds: float = DASHBOARD_CACHE_TTL_SECONDS

    @property
    def stream_url(self) -> str:
        return f"{self.api_base_url.rstrip('/')}/{self.stream_path.lstrip('/')}"


def load_settings(
    path: Path | str | None = None,
    *,
    env: Mapping[str, str] | None = None,
) -> Settings:
    """Build ``Settings`` from defaults, an optional YAML file and the environment.

    Resolution order (later wins):
        1. Module defaults above.
        2. YAML file at ``path`` (or ``$DASHSYNC_SETTINGS_FILE``).
        3. ``DASHSYNC_*`` environment variables.

    A missing or unparsable YAML file is logged and skipped.
    """
    if env is None:
        load_dotenv()
        env = os.environ

    settings = Settings()

    yaml_path = path or env.get(ENV_SETTINGS_FILE)
    if yaml_path:
        settings = replace(settings, **_load_yaml_overrides(Path(yaml_path)))

    env_overrides: dict[str, Any] = {}
    if env.get(ENV_API_URL):
        env_overrides["api_base_url"] = env[ENV_API_URL]
    if env.get(ENV_ACCESS_TOKEN):
        env_overrides["access_token"] = env[ENV_ACCESS_TOKEN]
    if env.get(ENV_REFRESH_TOKEN):
        env_overrides["refresh_token"] = env[ENV_REFRESH_TOKEN]

    return replace(settings, **env_overrides)


def _load_yaml_overrides(yaml_path: Path) -> dict[str, Any]:
    if not yaml_path.exists():
        logger.warning("Settings file %s not found; using defaults.", yaml_path)
        return {}

    try:
        raw = yaml.safe_load(yaml_path.read_text(encoding="utf-8"))
    except (yaml.YAMLError, OSError) as exc:
        logger.warning("Failed to parse settings YAML at %s: %s", yaml_path, exc)
        return {}

    if not isinstance(raw, dict):
        return {}

    known = {f.name for f in fields(Settings)}
    unknown = sorted(set(raw) - known)
    if unknown:
        logger.warning("Ignoring unknown settings keys: %s", ", ".join(unknown))
    return {key: value for key, value in raw.items() if key in known}
