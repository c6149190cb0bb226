"""
Sequential bulk sending with fixed pacing.
"""

import asyncio
import math
import re
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, List, Optional, Tuple

from shared.logging import get_logger
from service_relay.app.adapters.telegram_client import Attachment, TelegramClient

PACING_DELAY_SECONDS = 0.1

_LEADING_INT = re.compile(r"^\s*([+-]?\d+)")


def coerce_count(value: Any) -> int:
    """Parse a message count, falling back to 1.

    Leading digits are honoured ("3 times" is 3); anything without them,
    and zero, becomes 1. Negative values pass through and send nothing.
    """
    if isinstance(value, bool):
        return 1
    if isinstance(value, int):
        return value or 1
    if isinstance(value, float):
        if not math.isfinite(value):
            return 1
        return int(value) or 1
    if value is None:
        return 1
    match = _LEADING_INT.match(str(value))
    if not match:
        return 1
    return int(match.group(1)) or 1


@dataclass(frozen=True)
class DispatchResult:
    """Aggregate outcome of one bulk dispatch."""
    success_count: int
    failure_count: int
    errors: Tuple[str, ...] = ()

    def to_dict(self) -> Dict[str, Any]:
        # Wire keys are the ones the front-end reads: success and failed.
        return {
            "success": self.success_count,
            "failed": self.failure_count,
            "errors": list(self.errors),
        }


class BulkDispatcher:
    """Sends the same message ``count`` times, one after another.

    Calls are never overlapped, and every iteration is followed by the same
    fixed pause whether it succeeded or not. A failed send is recorded and
    the loop moves on.
    """

    def __init__(
        self,
        client: TelegramClient,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        self.client = client
        self.sleep = sleep
        self.logger = get_logger("relay.bulk_dispatcher")

    async def dispatch_many(
        self,
        token: str,
        chat_id: Any,
        text: Optional[str] = None,
        attachment: Optional[Attachment] = None,
        count: Any = 1,
    ) -> DispatchResult:
        total = coerce_count(count)
        success_count = 0
        failure_count = 0
        errors: List[str] = []

        for i in range(total):
            record = await self.client.send(
                token,
                chat_id,
                text=text,
                attachment=attachment,
                fallback_text=f"Message {i + 1}",
            )

            if record.ok:
                success_count += 1
            else:
                failure_count += 1
                errors.append(f"Message {i + 1}: {record.description}")

            await self.sleep(PACING_DELAY_SECONDS)

        self.logger.info(
            "Bulk dispatch finished",
            chat_id=chat_id,
            requested=total,
            succeeded=success_count,
            failed=failure_count,
        )
        return DispatchResult(
            success_count=success_count,
            failure_count=failure_count,
            errors=tuple(errors),
        )
