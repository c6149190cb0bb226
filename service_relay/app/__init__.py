"""
Relay Service package.

The relay fronts a browser UI and forwards its calls to the Telegram Bot
API, enforcing:
- Abuse protection: per-client sliding window with a self-expiring blocklist
- Paced bulk sending: sequential fan-out with a fixed pause per message

Structure:
- app.main: FastAPI app, routes, and middleware wiring.
- app.adapters: HTTP client for the messaging provider.
- app.protection: Request log, blocklist, admission gate and middleware.
- app.dispatch: Bulk dispatcher.
- app.connections: In-memory store of seen chats.
"""
