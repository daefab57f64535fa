"""Engine configuration loaded from the environment."""

from __future__ import annotations

import os
from dataclasses import dataclass

from dotenv import load_dotenv

from .constants import (
    DEFAULT_CONFIRM_TIMEOUT_MS,
    DEFAULT_CONNECT_TIMEOUT_S,
    DEFAULT_DUPLICATE_WINDOW_MS,
    DEFAULT_HEARTBEAT_INTERVAL_S,
    DEFAULT_HEARTBEAT_TIMEOUT_S,
    DEFAULT_HISTORY_PAGE_SIZE,
    DEFAULT_LOG_LEVEL,
    DEFAULT_MATCH_WINDOW_MS,
    DEFAULT_MAX_RECONNECT_ATTEMPTS,
    DEFAULT_RECONNECT_BASE_DELAY_S,
    DEFAULT_RECONNECT_MAX_DELAY_S,
    DEFAULT_RESEND_GRACE_MS,
    DEFAULT_SWEEP_INTERVAL_S,
    DEFAULT_TYPING_GRACE_S,
    DEFAULT_TYPING_WINDOW_S,
)

ENV_BASE_URL = "CHAT_SYNC_BASE_URL"
ENV_WS_PATH = "CHAT_SYNC_WS_PATH"
ENV_MAX_RECONNECT_ATTEMPTS = "CHAT_SYNC_MAX_RECONNECT_ATTEMPTS"
ENV_RECONNECT_BASE_DELAY = "CHAT_SYNC_RECONNECT_BASE_DELAY"
ENV_RECONNECT_MAX_DELAY = "CHAT_SYNC_RECONNECT_MAX_DELAY"
ENV_HEARTBEAT_INTERVAL = "CHAT_SYNC_HEARTBEAT_INTERVAL"
ENV_HEARTBEAT_TIMEOUT = "CHAT_SYNC_HEARTBEAT_TIMEOUT"
ENV_MATCH_WINDOW_MS = "CHAT_SYNC_MATCH_WINDOW_MS"
ENV_DUPLICATE_WINDOW_MS = "CHAT_SYNC_DUPLICATE_WINDOW_MS"
ENV_TYPING_WINDOW = "CHAT_SYNC_TYPING_WINDOW"
ENV_LOG_LEVEL = "CHAT_SYNC_LOG_LEVEL"


@dataclass
class SyncConfig:
    base_url: str = "http://localhost:4000"
    ws_path: str = "/ws"
    max_reconnect_attempts: int = DEFAULT_MAX_RECONNECT_ATTEMPTS
    reconnect_base_delay_s: float = DEFAULT_RECONNECT_BASE_DELAY_S
    reconnect_max_delay_s: float = DEFAULT_RECONNECT_MAX_DELAY_S
    heartbeat_interval_s: float = DEFAULT_HEARTBEAT_INTERVAL_S
    heartbeat_timeout_s: float = DEFAULT_HEARTBEAT_TIMEOUT_S
    connect_timeout_s: float = DEFAULT_CONNECT_TIMEOUT_S
    match_window_ms: int = DEFAULT_MATCH_WINDOW_MS
    duplicate_window_ms: int = DEFAULT_DUPLICATE_WINDOW_MS
    resend_grace_ms: int = DEFAULT_RESEND_GRACE_MS
    confirm_timeout_ms: int = DEFAULT_CONFIRM_TIMEOUT_MS
    typing_window_s: float = DEFAULT_TYPING_WINDOW_S
    typing_grace_s: float = DEFAULT_TYPING_GRACE_S
    sweep_interval_s: float = DEFAULT_SWEEP_INTERVAL_S
    history_page_size: int = DEFAULT_HISTORY_PAGE_SIZE
    log_level: str = DEFAULT_LOG_LEVEL

    @property
    def ws_url(self) -> str:
        base = self.base_url.rstrip("/")
        if base.startswith("https://"):
            base = "wss://" + base[len("https://") :]
        elif base.startswith("http://"):
            base = "ws://" + base[len("http://") :]
        return f"{base}{self.ws_path}"


def load_environment() -> None:
    """Load variables from a ``.env`` file when one is present."""

    load_dotenv()


def _get_env_int(name: str, default: int) -> int:
    value = os.getenv(name)
    if value is None:
        return default
    try:
        return int(value)
    except ValueError:
        return default


def _get_env_float(name: str, default: float) -> float:
    value = os.getenv(name)
    if value is None:
        return default
    try:
        return float(value)
    except ValueError:
        return default


def load_config() -> SyncConfig:
    """Build a :class:`SyncConfig` from ``CHAT_SYNC_*`` environment variables."""

    load_environment()
    defaults = SyncConfig()
    return SyncConfig(
        base_url=os.getenv(ENV_BASE_URL, defaults.base_url).rstrip("/"),
        ws_path=os.getenv(ENV_WS_PATH, defaults.ws_path),
        max_reconnect_attempts=_get_env_int(ENV_MAX_RECONNECT_ATTEMPTS, defaults.max_reconnect_attempts),
        reconnect_base_delay_s=_get_env_float(ENV_RECONNECT_BASE_DELAY, defaults.reconnect_base_delay_s),
        reconnect_max_delay_s=_get_env_float(ENV_RECONNECT_MAX_DELAY, defaults.reconnect_max_delay_s),
        heartbeat_interval_s=_get_env_float(ENV_HEARTBEAT_INTERVAL, defaults.heartbeat_interval_s),
        heartbeat_timeout_s=_get_env_float(ENV_HEARTBEAT_TIMEOUT, defaults.heartbeat_timeout_s),
        match_window_ms=_get_env_int(ENV_MATCH_WINDOW_MS, defaults.match_window_ms),
        duplicate_window_ms=_get_env_int(ENV_DUPLICATE_WINDOW_MS, defaults.duplicate_window_ms),
        typing_window_s=_get_env_float(ENV_TYPING_WINDOW, defaults.typing_window_s),
        log_level=os.getenv(ENV_LOG_LEVEL, defaults.log_level),
    )
