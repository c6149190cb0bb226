"""
Abuse protection for the relay.

Holds the sliding-window request log, the self-expiring blocklist and the
admission gate/middleware that combines them per request.
"""

from .rate_tracker import RateTracker, ClientActivity, current_time_ms
from .block_registry import BlockRegistry, BlockEntry
from .admission import AdmissionGate, AdmissionDecision, AdmissionMiddleware, Verdict

__all__ = [
    "RateTracker",
    "ClientActivity",
    "current_time_ms",
    "BlockRegistry",
    "BlockEntry",
    "AdmissionGate",
    "AdmissionDecision",
    "AdmissionMiddleware",
    "Verdict",
]
