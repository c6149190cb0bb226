"""
In-memory store of chats the front-end has seen.
"""

from datetime import datetime, timezone
from typing import Any, Dict, List

from shared.logging import get_logger
from shared.errors import ValidationError


def _utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat(timespec="milliseconds").replace("+00:00", "Z")


class ConnectionRegistry:
    """Upsert store keyed by the record's ``id``. Not persisted."""

    def __init__(self):
        self.logger = get_logger("relay.connections")
        self._records: List[Dict[str, Any]] = []
        self._by_id: Dict[Any, Dict[str, Any]] = {}

    def list(self) -> List[Dict[str, Any]]:
        return [dict(record) for record in self._records]

    def upsert(self, connection: Dict[str, Any]) -> Dict[str, Any]:
        if not isinstance(connection, dict) or not isinstance(connection.get("id"), (str, int)):
            raise ValidationError("Connection must be an object with an id")

        now = _utc_now_iso()
        existing = self._by_id.get(connection["id"])

        if existing is None:
            record = {
                **connection,
                "firstSeen": now,
                "lastSeen": now,
                "messageCount": 1,
            }
            self._records.append(record)
            self._by_id[connection["id"]] = record
            return dict(record)

        existing["lastSeen"] = now
        existing["messageCount"] = (existing.get("messageCount") or 0) + 1
        if connection.get("name") and not existing.get("name"):
            existing["name"] = connection["name"]
        if connection.get("type") and existing.get("type") == "unknown":
            existing["type"] = connection["type"]
        return dict(existing)

    def clear(self) -> int:
        removed = len(self._records)
        self._records = []
        self._by_id = {}
        self.logger.info("Connections cleared", removed=removed)
        return removed

    def __len__(self) -> int:
        return len(self._records)
