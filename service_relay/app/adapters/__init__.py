"""
Adapters package for the Relay Service.

Contains the HTTP client wrapper for the messaging provider. Adapters own
URLs, request shapes and the mapping of provider replies onto relay types.
"""

from .telegram_client import TelegramClient, Attachment, OutboundRecord

__all__ = [
    "TelegramClient",
    "Attachment",
    "OutboundRecord",
]
