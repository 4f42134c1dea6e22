"""
Channel Protocol - Sender Server.

============================================================
PURPOSE
============================================================
aiohttp application exposing the sender side of the channel.

ROUTES:
- GET  /health                       liveness
- GET  /sync/capabilities            protocol version and features
- GET  /sync/ws                      WebSocket channel
- POST /sync/connections             registration request from a remote site
- POST /sync/connections/status      peer mirrors a status change
- POST /sync/connections/delete      peer deleted its half
- POST /sync/connections/verify      does this side still have it
- POST /sync/connections/get-status  receiver reads the sender half

AUTHENTICATION (at WebSocket upgrade):
- ?code=XXXXXXXX            pairing code, single use
- Authorization: Bearer ... connection token, full access check,
                            plus X-Download-Password when the
                            connection has one

Refused credentials get an HTTP error before the upgrade, so the
receiver never sees an open channel it cannot use.

============================================================
"""

import asyncio
import json
import logging
from datetime import datetime, timezone
from typing import Any, Optional, Set, Tuple

from aiohttp import WSMsgType, web
from pydantic import ValidationError as PydanticValidationError

from channel.envelope import FEATURES, PROTOCOL_VERSION
from channel.handler import ChannelContext, RequestHandler
from connections.registry import ConnectionRegistry
from connections.schemas import (
    ConnectionDirection,
    ConnectionResponse,
    RemoteConnectionRef,
    RemoteStatusChange,
)
from core.exceptions import (
    DuplicateConnectionError,
    InvalidTransitionError,
    NotFoundError,
    PolicyDeniedError,
    SyncException,
    ValidationError,
)
from pairing.broker import SessionBroker


logger = logging.getLogger(__name__)


PASSWORD_HEADER = "X-Download-Password"


def json_response(data: Any, status: int = 200) -> web.Response:
    return web.Response(
        text=json.dumps(data, default=str),
        status=status,
        content_type="application/json",
    )


def _bearer_token(request: web.Request) -> Optional[str]:
    header = request.headers.get("Authorization", "")
    scheme, _, token = header.partition(" ")
    if scheme.lower() != "bearer" or not token.strip():
        return None
    return token.strip()


# ============================================================
# SERVER
# ============================================================

class ChannelServer:
    """
    Sender-side HTTP/WebSocket endpoints.

    One WebSocket is one channel; its requests are served
    concurrently and replied to in completion order.
    """

    def __init__(
        self,
        handler: RequestHandler,
        registry: ConnectionRegistry,
        broker: Optional[SessionBroker] = None,
        heartbeat: float = 20.0,
    ):
        self._handler = handler
        self._registry = registry
        self._broker = broker
        self._heartbeat = heartbeat
        self._channels: Set[web.WebSocketResponse] = set()

    @property
    def channel_count(self) -> int:
        return len(self._channels)

    # ---------------------------------------------------------
    # HTTP
    # ---------------------------------------------------------

    async def health(self, request: web.Request) -> web.Response:
        return json_response({
            "status": "ok",
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "channels": self.channel_count,
        })

    async def capabilities(self, request: web.Request) -> web.Response:
        return json_response({"version": PROTOCOL_VERSION, "features": list(FEATURES)})

    async def register(self, request: web.Request) -> web.Response:
        """
        POST /sync/connections

        Body: connection attributes plus an optional "password".
        The configured incoming mode decides whether the result is
        active, pending or refused. The token is returned once.
        """
        try:
            body = await request.json()
        except json.JSONDecodeError:
            return json_response({"error": "invalid_json"}, status=400)
        if not isinstance(body, dict):
            return json_response({"error": "invalid_json"}, status=400)

        password = body.pop("password", None)
        try:
            conn, token = await asyncio.to_thread(self._registry.accept_incoming, body, password)
        except PolicyDeniedError as e:
            return json_response({"error": e.reason}, status=403)
        except DuplicateConnectionError as e:
            return json_response({"error": e.reason}, status=409)
        except ValidationError as e:
            return json_response({"error": e.reason, "details": e.errors}, status=422)

        data = ConnectionResponse.model_validate(conn).model_dump(mode="json")
        return json_response({"connection": data, "token": token}, status=201)

    # ---------------------------------------------------------
    # PEER MAINTENANCE
    # ---------------------------------------------------------

    async def _peer_body(self, request: web.Request, schema: type) -> Tuple[Any, Optional[web.Response]]:
        if not self._registry.config.sync_enabled:
            return None, json_response({"error": "sync_disabled"}, status=503)
        try:
            body = await request.json()
        except json.JSONDecodeError:
            return None, json_response({"error": "invalid_json"}, status=400)
        if not isinstance(body, dict):
            return None, json_response({"error": "invalid_json"}, status=400)
        try:
            return schema.model_validate(body), None
        except PydanticValidationError as e:
            fields = sorted({str(err["loc"][0]) for err in e.errors() if err["loc"]})
            return None, json_response({"error": "invalid_attributes", "fields": fields}, status=400)

    async def _shared_connection(self, ref: RemoteConnectionRef, direction: Optional[str] = None):
        site_url = ref.site_url if direction is None else None
        return await asyncio.to_thread(
            self._registry.find_shared, site_url, ref.auth_token_hash, direction,
        )

    async def update_status(self, request: web.Request) -> web.Response:
        """
        POST /sync/connections/status

        Body: site_url, auth_token_hash, status. The peer changed
        its half; mirror it here.
        """
        ref, error = await self._peer_body(request, RemoteStatusChange)
        if error is not None:
            return error
        conn = await self._shared_connection(ref)
        if conn is None:
            return json_response({"error": "connection_not_found"}, status=404)

        try:
            conn = await asyncio.to_thread(self._registry.apply_remote_status, conn.id, ref.status.value)
        except InvalidTransitionError as e:
            return json_response({"error": e.reason, "status": conn.status}, status=409)
        return json_response({"connection_id": conn.id, "status": conn.status})

    async def delete_connection(self, request: web.Request) -> web.Response:
        """POST /sync/connections/delete"""
        ref, error = await self._peer_body(request, RemoteConnectionRef)
        if error is not None:
            return error
        conn = await self._shared_connection(ref)
        if conn is None:
            return json_response({"error": "connection_not_found"}, status=404)

        await asyncio.to_thread(self._registry.apply_remote_delete, conn.id)
        logger.info(f"Connection {conn.id} deleted at the request of {ref.site_url}")
        return json_response({"deleted": True})

    async def verify_connection(self, request: web.Request) -> web.Response:
        """POST /sync/connections/verify"""
        ref, error = await self._peer_body(request, RemoteConnectionRef)
        if error is not None:
            return error
        conn = await self._shared_connection(ref)
        if conn is None:
            return json_response({"exists": False}, status=404)
        return json_response({"exists": True, "status": conn.status})

    async def connection_status(self, request: web.Request) -> web.Response:
        """
        POST /sync/connections/get-status

        A receiver asks for our sender half. Matched on the token
        hash alone; the receiver's own idea of its URL may differ
        from the one stored here.
        """
        ref, error = await self._peer_body(request, RemoteConnectionRef)
        if error is not None:
            return error
        conn = await self._shared_connection(ref, direction=ConnectionDirection.SENDER.value)
        if conn is None:
            return json_response({"error": "connection_not_found"}, status=404)
        return json_response({"connection_id": conn.id, "status": conn.status, "name": conn.name})

    # ---------------------------------------------------------
    # WEBSOCKET
    # ---------------------------------------------------------

    async def _authenticate(self, request: web.Request) -> ChannelContext:
        client_ip = request.remote
        user_agent = request.headers.get("User-Agent")

        code = request.query.get("code")
        if code:
            if self._broker is None:
                raise PolicyDeniedError("invalid_code")
            session = self._broker.validate_code(code)
            return ChannelContext.for_session(session.code, client_ip, user_agent)

        token = _bearer_token(request)
        if token is None:
            raise PolicyDeniedError("unauthenticated")
        conn = await asyncio.to_thread(self._registry.validate_connection, token, client_ip)
        if not self._registry.verify_download_password(conn, request.headers.get(PASSWORD_HEADER)):
            raise PolicyDeniedError("invalid_password")
        await asyncio.to_thread(self._registry.touch_connected, conn.id)
        return ChannelContext.for_connection(conn, client_ip, user_agent)

    async def websocket(self, request: web.Request) -> web.StreamResponse:
        """GET /sync/ws"""
        try:
            context = await self._authenticate(request)
        except NotFoundError as e:
            logger.warning(f"Channel refused from {request.remote}: {e.reason}")
            return json_response({"error": e.reason}, status=401)
        except SyncException as e:
            logger.warning(f"Channel refused from {request.remote}: {e.reason}")
            return json_response({"error": e.reason}, status=403)

        ws = web.WebSocketResponse(heartbeat=self._heartbeat)
        await ws.prepare(request)
        self._channels.add(ws)
        tasks: Set[asyncio.Task] = set()
        logger.info(
            f"Channel opened from {request.remote} "
            f"(connection={context.connection_id}, session={context.session_code})"
        )

        try:
            async for msg in ws:
                if msg.type == WSMsgType.TEXT:
                    task = asyncio.create_task(self._serve(ws, msg.data, context))
                    tasks.add(task)
                    task.add_done_callback(tasks.discard)
                elif msg.type == WSMsgType.ERROR:
                    logger.warning(f"Channel error: {ws.exception()}")
        finally:
            for task in list(tasks):
                task.cancel()
            self._channels.discard(ws)
            logger.info(f"Channel from {request.remote} closed")

        return ws

    async def _serve(self, ws: web.WebSocketResponse, data: str, context: ChannelContext) -> None:
        try:
            message = json.loads(data)
        except json.JSONDecodeError:
            message = None
        response = await self._handler.handle(message, context)
        if not ws.closed:
            await ws.send_json(response)

    async def close_all(self) -> None:
        for ws in list(self._channels):
            await ws.close()


# ============================================================
# APPLICATION FACTORY
# ============================================================

def create_channel_app(server: ChannelServer) -> web.Application:
    """Build the aiohttp application with every route configured."""
    app = web.Application()
    app.router.add_get("/health", server.health)
    app.router.add_get("/sync/capabilities", server.capabilities)
    app.router.add_get("/sync/ws", server.websocket)
    app.router.add_post("/sync/connections", server.register)
    app.router.add_post("/sync/connections/status", server.update_status)
    app.router.add_post("/sync/connections/delete", server.delete_connection)
    app.router.add_post("/sync/connections/verify", server.verify_connection)
    app.router.add_post("/sync/connections/get-status", server.connection_status)

    async def on_shutdown(_app: web.Application) -> None:
        await server.close_all()

    app.on_shutdown.append(on_shutdown)
    return app


async def run_server(
    server: ChannelServer,
    host: str = "0.0.0.0",
    port: int = 8765,
    stop_event: Optional[asyncio.Event] = None,
) -> None:
    """Serve until ``stop_event`` is set (or forever)."""
    runner = web.AppRunner(create_channel_app(server))
    await runner.setup()
    site = web.TCPSite(runner, host, port)
    await site.start()
    logger.info(f"Channel server listening on {host}:{port}")

    try:
        if stop_event is None:
            stop_event = asyncio.Event()
        await stop_event.wait()
    finally:
        await runner.cleanup()
        logger.info("Channel server stopped")
