"""
Channel Protocol - Transports.

A transport moves JSON-ready envelopes between a receiver and a
sender. Replies may arrive in any order; the client matches them
by ref.

- LoopbackTransport: same process, calls a RequestHandler directly
- WebSocketTransport: aiohttp client WebSocket to a ChannelServer
"""

import asyncio
import json
import logging
from abc import ABC, abstractmethod
from typing import Any, Dict, Optional, Set

import aiohttp

from channel.handler import ChannelContext, RequestHandler
from core.exceptions import PolicyDeniedError, TransportError


logger = logging.getLogger(__name__)


class Transport(ABC):
    """Message pipe carrying request and response envelopes."""

    @abstractmethod
    async def send(self, message: Dict[str, Any]) -> None:
        """Send one request. Raises TransportError when closed."""
        pass

    @abstractmethod
    async def receive(self) -> Dict[str, Any]:
        """Wait for the next response. Raises TransportError("closed")."""
        pass

    @abstractmethod
    async def close(self) -> None:
        pass

    @property
    @abstractmethod
    def closed(self) -> bool:
        pass

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.close()


# ============================================================
# LOOPBACK
# ============================================================

_CLOSE = object()


class LoopbackTransport(Transport):
    """
    In-process transport that hands each request to a handler.

    Each request is served in its own task, as a real sender would.
    """

    def __init__(self, handler: RequestHandler, context: ChannelContext):
        self._handler = handler
        self._context = context
        self._responses: asyncio.Queue = asyncio.Queue()
        self._tasks: Set[asyncio.Task] = set()
        self._closed = False

    @property
    def context(self) -> ChannelContext:
        return self._context

    @property
    def closed(self) -> bool:
        return self._closed

    async def send(self, message: Dict[str, Any]) -> None:
        if self._closed:
            raise TransportError("Transport closed", reason="closed")
        # Serialize as the wire would
        message = json.loads(json.dumps(message))
        task = asyncio.create_task(self._serve(message))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def _serve(self, message: Dict[str, Any]) -> None:
        response = await self._handler.handle(message, self._context)
        if not self._closed:
            await self._responses.put(json.loads(json.dumps(response)))

    async def receive(self) -> Dict[str, Any]:
        if self._closed and self._responses.empty():
            raise TransportError("Transport closed", reason="closed")
        item = await self._responses.get()
        if item is _CLOSE:
            raise TransportError("Transport closed", reason="closed")
        return item

    async def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        for task in list(self._tasks):
            task.cancel()
        await self._responses.put(_CLOSE)


# ============================================================
# WEBSOCKET
# ============================================================

class WebSocketTransport(Transport):
    """
    aiohttp WebSocket client.

    Authenticates at connect time with either a pairing code
    (query parameter) or a connection bearer token.
    """

    def __init__(
        self,
        url: str,
        token: Optional[str] = None,
        code: Optional[str] = None,
        download_password: Optional[str] = None,
        heartbeat: float = 20.0,
        connect_timeout: float = 30.0,
        session: Optional[aiohttp.ClientSession] = None,
    ):
        if not token and not code:
            raise ValueError("A token or a pairing code is required")
        self._url = url
        self._token = token
        self._code = code
        self._download_password = download_password
        self._heartbeat = heartbeat
        self._connect_timeout = connect_timeout
        self._session = session
        self._owns_session = session is None
        self._ws: Optional[aiohttp.ClientWebSocketResponse] = None

    @property
    def closed(self) -> bool:
        return self._ws is None or self._ws.closed

    async def connect(self) -> None:
        """
        Open the WebSocket.

        Raises:
            PolicyDeniedError: the sender refused the credentials
            TransportError: the sender could not be reached
        """
        if self._session is None:
            self._session = aiohttp.ClientSession(
                timeout=aiohttp.ClientTimeout(total=None, connect=self._connect_timeout),
            )

        headers = {}
        params = {}
        if self._token:
            headers["Authorization"] = f"Bearer {self._token}"
        if self._download_password:
            headers["X-Download-Password"] = self._download_password
        if self._code:
            params["code"] = self._code

        try:
            self._ws = await self._session.ws_connect(
                self._url,
                headers=headers,
                params=params,
                heartbeat=self._heartbeat,
            )
        except aiohttp.WSServerHandshakeError as e:
            await self._close_session()
            if e.status in (401, 403):
                raise PolicyDeniedError("unauthorized", f"Sender refused channel: {e.message}") from e
            raise TransportError(f"Handshake failed: {e.status} {e.message}", reason="handshake_failed") from e
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            await self._close_session()
            raise TransportError(f"Cannot reach {self._url}: {e}", reason="closed") from e

        logger.info(f"Channel opened to {self._url}")

    async def send(self, message: Dict[str, Any]) -> None:
        if self.closed:
            raise TransportError("Channel closed", reason="closed")
        try:
            await self._ws.send_json(message)
        except (aiohttp.ClientError, ConnectionResetError) as e:
            raise TransportError(f"Send failed: {e}", reason="closed") from e

    async def receive(self) -> Dict[str, Any]:
        if self._ws is None:
            raise TransportError("Channel not connected", reason="closed")

        while True:
            msg = await self._ws.receive()
            if msg.type == aiohttp.WSMsgType.TEXT:
                try:
                    return json.loads(msg.data)
                except json.JSONDecodeError:
                    logger.warning("Dropping malformed channel message")
                    continue
            if msg.type in (aiohttp.WSMsgType.CLOSE, aiohttp.WSMsgType.CLOSING,
                            aiohttp.WSMsgType.CLOSED, aiohttp.WSMsgType.ERROR):
                raise TransportError("Channel closed by peer", reason="closed")

    async def close(self) -> None:
        if self._ws is not None and not self._ws.closed:
            await self._ws.close()
        await self._close_session()
        logger.info(f"Channel to {self._url} closed")

    async def _close_session(self) -> None:
        if self._owns_session and self._session is not None:
            await self._session.close()
            self._session = None
