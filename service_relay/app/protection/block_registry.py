"""
Blocklist with self-expiring entries.
"""

from dataclasses import dataclass
from typing import Callable, Dict, List, Optional

from shared.logging import get_logger
from .rate_tracker import RateTracker, current_time_ms


@dataclass(frozen=True)
class BlockEntry:
    """A blocked client and the window of its block."""
    client_id: str
    blocked_at_ms: float
    duration_ms: int

    @property
    def expires_at_ms(self) -> float:
        return self.blocked_at_ms + self.duration_ms

    def is_expired(self, now: float) -> bool:
        return now - self.blocked_at_ms >= self.duration_ms


class BlockRegistry:
    """Set of blocked clients.

    Expiry is evaluated lazily: every query first releases entries whose
    duration has elapsed, through the same path as a manual ``unblock``, so
    the client's request history is cleared either way. Presence here always
    wins over the rate tracker's state.
    """

    def __init__(self, rate_tracker: RateTracker, clock: Callable[[], float] = current_time_ms):
        self.rate_tracker = rate_tracker
        self.clock = clock
        self.logger = get_logger("relay.block_registry")
        self._entries: Dict[str, BlockEntry] = {}

    def is_blocked(self, client_id: str) -> bool:
        entry = self._entries.get(client_id)
        if entry is None:
            return False
        if entry.is_expired(self.clock()):
            self._release(client_id, reason="expired")
            return False
        return True

    def block(self, client_id: str, duration_ms: int) -> BlockEntry:
        """Block a client for ``duration_ms`` from now.

        A client that is already blocked keeps its original expiry.
        """
        if self.is_blocked(client_id):
            return self._entries[client_id]

        entry = BlockEntry(client_id=client_id, blocked_at_ms=self.clock(), duration_ms=duration_ms)
        self._entries[client_id] = entry
        self.logger.warning(
            "Client blocked",
            client_id=client_id,
            duration_ms=duration_ms,
        )
        return entry

    def unblock(self, client_id: str) -> bool:
        """Remove a block and the client's history.

        Unblocking a client that is not blocked changes nothing.
        """
        was_blocked = client_id in self._entries
        self._release(client_id, reason="manual")
        return was_blocked

    def get(self, client_id: str) -> Optional[BlockEntry]:
        if not self.is_blocked(client_id):
            return None
        return self._entries[client_id]

    def entries(self) -> List[BlockEntry]:
        self.purge_expired()
        return list(self._entries.values())

    def purge_expired(self) -> int:
        now = self.clock()
        expired = [client_id for client_id, entry in self._entries.items() if entry.is_expired(now)]
        for client_id in expired:
            self._release(client_id, reason="expired")
        return len(expired)

    def __len__(self) -> int:
        self.purge_expired()
        return len(self._entries)

    def _release(self, client_id: str, reason: str) -> None:
        removed = self._entries.pop(client_id, None)
        if removed is None:
            return
        self.rate_tracker.forget(client_id)
        self.logger.info("Client unblocked", client_id=client_id, reason=reason)
