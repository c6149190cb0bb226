"""
Relay service: HTTP front-end for the Telegram Bot API.
"""

import asyncio
import os
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Awaitable, Callable, Dict, Optional, Tuple

import httpx
from fastapi import Request
from fastapi.responses import FileResponse, JSONResponse, PlainTextResponse
from starlette.datastructures import UploadFile

from shared.base_service import BaseService
from shared.errors import ExternalServiceError, PayloadTooLargeError, ValidationError
from service_relay.app.adapters.telegram_client import Attachment, TelegramClient
from service_relay.app.connections.registry import ConnectionRegistry
from service_relay.app.dispatch.bulk import BulkDispatcher
from service_relay.app.protection import (
    AdmissionGate,
    AdmissionMiddleware,
    BlockRegistry,
    RateTracker,
    current_time_ms,
)


def _format_ms(value: float) -> str:
    """Format epoch milliseconds as ISO-8601 with a Z suffix."""
    moment = datetime.fromtimestamp(value / 1000, tz=timezone.utc)
    return moment.isoformat(timespec="milliseconds").replace("+00:00", "Z")


class RelayService(BaseService):
    """Relay service implementation.

    Protection state (request log and blocklist) lives on the instance and
    is only touched from the event loop, never across an ``await``, so
    requests see each mutation as atomic without a lock.
    """

    def __init__(
        self,
        telegram_transport: Optional[httpx.AsyncBaseTransport] = None,
        clock: Callable[[], float] = current_time_ms,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
        **config_overrides,
    ):
        super().__init__("relay", int(os.getenv("PORT", "3000")), **config_overrides)

        self.rate_tracker = RateTracker()
        self.block_registry = BlockRegistry(self.rate_tracker, clock=clock)
        self.admission_gate = AdmissionGate(
            self.rate_tracker,
            self.block_registry,
            max_requests_per_minute=self.config.max_requests_per_minute,
            block_duration_ms=self.config.block_duration_ms,
            clock=clock,
        )
        self.telegram_client = TelegramClient(
            self.config.telegram_api_base_url,
            timeout=self.config.provider_timeout_seconds,
            transport=telegram_transport,
        )
        self.bulk_dispatcher = BulkDispatcher(self.telegram_client, sleep=sleep)
        self.connections = ConnectionRegistry()
        self.static_dir = Path(self.config.static_dir).resolve()

        self.app.add_middleware(
            AdmissionMiddleware,
            gate=self.admission_gate,
            metrics=self.metrics,
            trust_forwarded_headers=self.config.trust_forwarded_headers,
        )

        @self.app.on_event("startup")
        async def _startup():
            self.logger.info(
                "Relay started",
                port=self.config.port,
                static_dir=str(self.static_dir),
                max_requests_per_minute=self.config.max_requests_per_minute,
                block_duration_ms=self.config.block_duration_ms,
            )

        @self.app.on_event("shutdown")
        async def _shutdown():
            self.logger.info(
                "Relay stopping",
                connections=len(self.connections),
                active_clients=len(self.rate_tracker),
                blocked_clients=len(self.block_registry),
            )

        self._setup_relay_routes()
        self._setup_connection_routes()
        self._setup_admin_routes()
        # Catch-all page routes must be registered last.
        self._setup_page_routes()

        self.app.state.relay_service = self

    async def _health_details(self) -> Dict[str, Any]:
        return {
            "connections": len(self.connections),
            "active_clients": len(self.rate_tracker),
            "blocked_clients": len(self.block_registry),
            "static_dir": self.config.static_dir,
        }

    async def _read_body(self, request: Request) -> Dict[str, Any]:
        """Decode a JSON or form body into a dict of fields."""
        content_type = request.headers.get("content-type", "")
        if content_type.startswith("application/json"):
            try:
                body = await request.json()
            except ValueError as exc:
                raise ValidationError("Request body is not valid JSON") from exc
            if not isinstance(body, dict):
                raise ValidationError("Request body must be a JSON object")
            return body

        if content_type.startswith(("multipart/form-data", "application/x-www-form-urlencoded")):
            form = await request.form()
            return {key: value for key, value in form.items() if isinstance(value, str)}

        return {}

    async def _read_send_payload(self, request: Request) -> Tuple[Dict[str, Any], Optional[Attachment]]:
        """Return the text fields and the optional ``photo`` upload."""
        content_type = request.headers.get("content-type", "")
        if not content_type.startswith("multipart/form-data"):
            return await self._read_body(request), None

        form = await request.form()
        fields = {key: value for key, value in form.items() if isinstance(value, str)}
        upload = form.get("photo")
        if not isinstance(upload, UploadFile):
            return fields, None

        content = await upload.read()
        if len(content) > self.config.max_upload_bytes:
            raise PayloadTooLargeError(
                "Uploaded file is too large",
                details={"max_bytes": self.config.max_upload_bytes, "size": len(content)},
            )
        if not content:
            return fields, None

        return fields, Attachment(
            content=content,
            filename=upload.filename or None,
            content_type=upload.content_type or None,
        )

    def _require_target(self, fields: Dict[str, Any]) -> Tuple[str, Any]:
        token = fields.get("token")
        chat_id = fields.get("chatId")
        if not token or chat_id in (None, ""):
            raise ValidationError("token and chatId are required")
        return str(token), chat_id

    @staticmethod
    def _optional_text(fields: Dict[str, Any]) -> Optional[str]:
        text = fields.get("text")
        return None if text is None else str(text)

    def _setup_relay_routes(self):
        """Set up the provider-facing API routes."""

        @self.app.post("/api/telegram")
        async def telegram_proxy(request: Request):
            """Pass a raw Bot API call through to the provider."""
            body = await self._read_body(request)
            token = body.get("token")
            endpoint = body.get("endpoint")
            if not token or not endpoint:
                raise ValidationError("token and endpoint are required")

            params = body.get("params")
            if params is not None and not isinstance(params, dict):
                raise ValidationError("params must be an object")

            try:
                return await self.telegram_client.call(str(token), str(endpoint), body.get("method"), params)
            except ExternalServiceError as exc:
                return JSONResponse(status_code=500, content={"ok": False, "description": exc.message})

        @self.app.post("/api/send-message")
        async def send_message(request: Request):
            """Send one text message or photo."""
            fields, attachment = await self._read_send_payload(request)
            token, chat_id = self._require_target(fields)

            record = await self.telegram_client.send(
                token,
                chat_id,
                text=self._optional_text(fields),
                attachment=attachment,
            )
            self.metrics.increment_counter(
                "outbound_messages_total",
                kind="photo" if attachment else "text",
                outcome="ok" if record.ok else "failed",
            )
            return record.to_dict()

        @self.app.post("/api/send-bulk")
        async def send_bulk(request: Request):
            """Send the same message ``count`` times, paced."""
            fields, attachment = await self._read_send_payload(request)
            token, chat_id = self._require_target(fields)

            with self.metrics.time_operation("bulk_dispatch_duration_seconds"):
                result = await self.bulk_dispatcher.dispatch_many(
                    token,
                    chat_id,
                    text=self._optional_text(fields),
                    attachment=attachment,
                    count=fields.get("count"),
                )

            kind = "photo" if attachment else "text"
            self.metrics.increment_counter("outbound_messages_total", result.success_count, kind=kind, outcome="ok")
            self.metrics.increment_counter("outbound_messages_total", result.failure_count, kind=kind, outcome="failed")
            return {"success": True, "results": result.to_dict()}

    def _setup_connection_routes(self):
        """Set up connection bookkeeping routes."""

        @self.app.get("/api/connections")
        async def list_connections():
            return self.connections.list()

        @self.app.post("/api/connections")
        async def upsert_connection(request: Request):
            body = await self._read_body(request)
            self.connections.upsert(body)
            return {"success": True}

        @self.app.delete("/api/connections")
        async def clear_connections():
            self.connections.clear()
            return {"success": True}

    def _setup_admin_routes(self):
        """Set up protection administration routes."""

        @self.app.get("/admin/protection")
        async def protection_status():
            """Current request log, blocklist and limits."""
            return {
                "active_clients": [
                    {
                        "client_id": activity.client_id,
                        "request_count": activity.request_count,
                        "last_request": _format_ms(activity.last_request_ms),
                    }
                    for activity in self.rate_tracker.active_clients()
                ],
                "blocked_clients": [
                    {
                        "client_id": entry.client_id,
                        "blocked_at": _format_ms(entry.blocked_at_ms),
                        "expires_at": _format_ms(entry.expires_at_ms),
                    }
                    for entry in self.block_registry.entries()
                ],
                "config": {
                    "max_requests_per_minute": self.admission_gate.max_requests_per_minute,
                    "block_duration_ms": self.admission_gate.block_duration_ms,
                    "window_ms": self.rate_tracker.window_ms,
                },
            }

        @self.app.post("/admin/unblock-ip")
        async def unblock_ip(request: Request):
            """Lift a block and clear the client's history."""
            body = await self._read_body(request)
            ip = body.get("ip")
            if not ip:
                return JSONResponse(status_code=400, content={"success": False, "error": "IP address is required"})

            was_blocked = self.block_registry.unblock(str(ip))
            self.logger.info("Manual unblock", client_id=ip, was_blocked=was_blocked)
            return {
                "success": True,
                "was_blocked": was_blocked,
                "message": f"IP {ip} has been unblocked",
            }

    def _setup_page_routes(self):
        """Serve the static front-end with index.html fallback."""

        def _index():
            index_path = self.static_dir / "index.html"
            if not index_path.is_file():
                return PlainTextResponse("index.html not found", status_code=404)
            return FileResponse(index_path)

        @self.app.get("/", include_in_schema=False)
        async def root():
            return _index()

        @self.app.get("/{full_path:path}", include_in_schema=False)
        async def fallback(full_path: str):
            if full_path.startswith("api/"):
                return JSONResponse(status_code=404, content={"error": "API endpoint not found"})

            candidate = (self.static_dir / full_path).resolve()
            try:
                candidate.relative_to(self.static_dir)
            except ValueError:
                return PlainTextResponse("File not found", status_code=404)

            if candidate.is_file():
                return FileResponse(candidate)
            if "." in full_path:
                return PlainTextResponse("File not found", status_code=404)
            return _index()


def create_app():
    """Create FastAPI application."""
    service = RelayService()
    return service.app


def main():
    service = RelayService()
    service.run()


if __name__ == "__main__":
    main()
