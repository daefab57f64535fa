"""Reference gateway settings."""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from typing import Dict

from dotenv import load_dotenv

from chat_sync.models import UserIdentity

ENV_HOST = "CHAT_GATEWAY_HOST"
ENV_PORT = "CHAT_GATEWAY_PORT"
ENV_PING_INTERVAL = "CHAT_GATEWAY_PING_INTERVAL"
ENV_TOKENS = "CHAT_GATEWAY_TOKENS"
ENV_LOG_LEVEL = "CHAT_GATEWAY_LOG_LEVEL"


@dataclass
class GatewayConfig:
    host: str = "127.0.0.1"
    port: int = 4000
    ping_interval_s: float = 30.0
    ping_miss_limit: int = 2
    max_msg_size: int = 1_048_576
    log_level: str = "INFO"
    tokens: Dict[str, UserIdentity] = field(default_factory=dict)


def parse_tokens(raw: str) -> Dict[str, UserIdentity]:
    """Parse ``token=user_id[:Display Name]`` pairs separated by commas."""

    tokens: Dict[str, UserIdentity] = {}
    for item in raw.split(","):
        item = item.strip()
        if not item or "=" not in item:
            continue
        token, _, identity = item.partition("=")
        user_id, _, name = identity.partition(":")
        token, user_id = token.strip(), user_id.strip()
        if token and user_id:
            tokens[token] = UserIdentity(user_id=user_id, display_name=name.strip() or user_id)
    return tokens


def load_config() -> GatewayConfig:
    load_dotenv()
    defaults = GatewayConfig()
    try:
        port = int(os.getenv(ENV_PORT, str(defaults.port)))
    except ValueError:
        port = defaults.port
    try:
        ping_interval_s = float(os.getenv(ENV_PING_INTERVAL, str(defaults.ping_interval_s)))
    except ValueError:
        ping_interval_s = defaults.ping_interval_s
    return GatewayConfig(
        host=os.getenv(ENV_HOST, defaults.host),
        port=port,
        ping_interval_s=ping_interval_s,
        log_level=os.getenv(ENV_LOG_LEVEL, defaults.log_level),
        tokens=parse_tokens(os.getenv(ENV_TOKENS, "")),
    )
