"""
Bulk dispatch for the relay: sequential, paced fan-out of one message.
"""

from .bulk import BulkDispatcher, DispatchResult, coerce_count, PACING_DELAY_SECONDS

__all__ = ["BulkDispatcher", "DispatchResult", "coerce_count", "PACING_DELAY_SECONDS"]
