"""
Sliding-window request log for the relay's abuse protection.
"""

import time
from dataclasses import dataclass
from typing import Dict, List

from shared.logging import get_logger

WINDOW_MS = 60_000


def current_time_ms() -> float:
    """Wall-clock time in milliseconds."""
    return time.time() * 1000


@dataclass(frozen=True)
class ClientActivity:
    """Snapshot of one client's stored request history."""
    client_id: str
    request_count: int
    last_request_ms: float


class RateTracker:
    """Per-client request timestamps over a trailing 60 second window.

    Pruning happens only inside ``record``: the stored list is replaced by
    the entries with ``now - t < WINDOW_MS``. There is no background sweep
    and no read-only counting query.
    """

    def __init__(self, window_ms: int = WINDOW_MS):
        self.window_ms = window_ms
        self.logger = get_logger("relay.rate_tracker")
        self._requests: Dict[str, List[float]] = {}

    def record(self, client_id: str, now: float) -> int:
        """Log a request at ``now`` and return the in-window count."""
        timestamps = self._requests.setdefault(client_id, [])
        timestamps.append(now)

        recent = [t for t in timestamps if now - t < self.window_ms]
        self._requests[client_id] = recent
        return len(recent)

    def forget(self, client_id: str) -> bool:
        """Drop a client's history. Returns whether anything was stored."""
        return self._requests.pop(client_id, None) is not None

    def active_clients(self) -> List[ClientActivity]:
        """Report stored history as last pruned; does not prune."""
        return [
            ClientActivity(
                client_id=client_id,
                request_count=len(timestamps),
                last_request_ms=max(timestamps),
            )
            for client_id, timestamps in self._requests.items()
            if timestamps
        ]

    def __len__(self) -> int:
        return len(self._requests)

    def __contains__(self, client_id: str) -> bool:
        return client_id in self._requests
