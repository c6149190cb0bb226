"""
Telegram Bot API client for the relay.
"""

import json
from dataclasses import dataclass, field
from typing import Any, Dict, Optional

import httpx

from shared.logging import get_logger
from shared.errors import ExternalServiceError

DEFAULT_PHOTO_FILENAME = "photo.jpg"
DEFAULT_PHOTO_CONTENT_TYPE = "image/jpeg"
DEFAULT_MESSAGE_TEXT = "Test message"


@dataclass(frozen=True)
class Attachment:
    """An uploaded file to forward as a photo."""
    content: bytes
    filename: Optional[str] = None
    content_type: Optional[str] = None


@dataclass(frozen=True)
class OutboundRecord:
    """Normalized result of one provider call."""
    ok: bool
    description: str = ""
    response: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "ok": self.ok,
            "description": self.description,
            "result": self.response.get("result"),
        }


class TelegramClient:
    """Client for the Telegram Bot API.

    ``send`` never raises: transport failures and malformed replies come
    back as failed records. ``call`` is the raw passthrough and raises
    ``ExternalServiceError`` when the provider cannot be reached.
    """

    def __init__(
        self,
        base_url: str = "https://api.telegram.org",
        timeout: float = 30.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.transport = transport
        self.logger = get_logger("relay.telegram_client")

    def _method_url(self, token: str, method: str) -> str:
        return f"{self.base_url}/bot{token}/{method}"

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(timeout=self.timeout, transport=self.transport)

    async def call(
        self,
        token: str,
        endpoint: str,
        method: Optional[str] = None,
        params: Optional[Dict[str, Any]] = None,
    ) -> Any:
        """Forward an arbitrary Bot API call and return the decoded reply."""
        http_method = (method or "GET").upper()
        url = self._method_url(token, endpoint)

        request_kwargs: Dict[str, Any] = {}
        if params:
            if http_method == "POST":
                request_kwargs["data"] = {key: _form_value(value) for key, value in params.items()}
            else:
                request_kwargs["params"] = {key: _form_value(value) for key, value in params.items()}

        try:
            async with self._client() as client:
                response = await client.request(http_method, url, **request_kwargs)
            data = response.json()
        except (httpx.HTTPError, httpx.InvalidURL, ValueError) as e:
            self.logger.error("Telegram API error", endpoint=endpoint, error=str(e))
            raise ExternalServiceError("telegram", str(e) or e.__class__.__name__, details={"endpoint": endpoint})

        ok = isinstance(data, dict) and bool(data.get("ok"))
        self.logger.info("Telegram API call", endpoint=endpoint, ok=ok)
        return data

    async def send(
        self,
        token: str,
        chat_id: Any,
        text: Optional[str] = None,
        attachment: Optional[Attachment] = None,
        fallback_text: str = DEFAULT_MESSAGE_TEXT,
    ) -> OutboundRecord:
        """Send one text message, or one photo when an attachment is given.

        Never raises: any failure to reach or parse the provider comes back as
        a record with ``ok=False``.
        """
        if attachment is not None and attachment.content:
            kind = "photo"
            url = self._method_url(token, "sendPhoto")
            request_kwargs = {
                "data": {"chat_id": str(chat_id), "caption": text or ""},
                "files": {
                    "photo": (
                        attachment.filename or DEFAULT_PHOTO_FILENAME,
                        attachment.content,
                        attachment.content_type or DEFAULT_PHOTO_CONTENT_TYPE,
                    )
                },
            }
        else:
            kind = "text"
            url = self._method_url(token, "sendMessage")
            request_kwargs = {"data": {"chat_id": str(chat_id), "text": text or fallback_text}}

        try:
            async with self._client() as client:
                response = await client.post(url, **request_kwargs)
            data = response.json()
        except Exception as e:
            self.logger.error("Send failed", kind=kind, chat_id=chat_id, error=str(e))
            return OutboundRecord(ok=False, description=str(e) or e.__class__.__name__)

        if not isinstance(data, dict):
            self.logger.error("Malformed provider response", kind=kind, chat_id=chat_id)
            return OutboundRecord(ok=False, description="Malformed provider response")

        if data.get("ok"):
            self.logger.info("Message sent", kind=kind, chat_id=chat_id)
            return OutboundRecord(ok=True, response=data)

        description = str(data.get("description") or "Unknown error")
        self.logger.warning("Message rejected by provider", kind=kind, chat_id=chat_id, description=description)
        return OutboundRecord(ok=False, description=description, response=data)


def _form_value(value: Any) -> str:
    """Stringify a parameter the way a form encoder would."""
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, (dict, list)):
        return json.dumps(value)
    return str(value)
