"""Tests for the reference gateway: message log, rooms, REST and websocket surfaces."""

import logging
import warnings

warnings.filterwarnings(
    "ignore",
    message=r".*drain.*deprecated.*",
    category=DeprecationWarning,
)

logging.getLogger("asyncio").setLevel(logging.ERROR)
