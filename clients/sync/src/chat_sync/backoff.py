from __future__ import annotations

from typing import Iterator


def backoff_delays(base_s: float, max_s: float) -> Iterator[float]:
    """Yield exponentially growing reconnect delays capped at ``max_s``."""

    delay = base_s
    while True:
        yield delay
        delay = min(delay * 2, max_s)
