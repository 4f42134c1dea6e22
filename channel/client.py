"""
Channel Protocol - Receiver-side Client.

============================================================
PURPOSE
============================================================
Issues requests over a transport and waits for the reply that
carries the same ref. A reply that does not arrive within the
timeout resolves to an error response with reason "timeout";
the request is then forgotten and a late reply is dropped.

Other requests on the same channel are not blocked while one
request waits.

============================================================
USAGE
============================================================
```python
async with ChannelClient(transport) as client:
    response = await client.request_records("users", offset=0, limit=500)
    if response.ok:
        records = response.payload["records"]
```

============================================================
"""

import asyncio
import logging
from typing import Any, Dict, Optional

from channel.envelope import ChannelRequest, ChannelResponse, RequestType
from channel.transport import Transport
from core.exceptions import TransportError, ValidationError


logger = logging.getLogger(__name__)


DEFAULT_TIMEOUT_SECONDS = 30.0


class ChannelClient:
    """Request/reply rendezvous over one transport."""

    def __init__(self, transport: Transport, timeout: float = DEFAULT_TIMEOUT_SECONDS):
        self._transport = transport
        self._timeout = timeout
        self._pending: Dict[str, asyncio.Future] = {}
        self._reader: Optional[asyncio.Task] = None
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def pending_count(self) -> int:
        return len(self._pending)

    async def start(self) -> None:
        if self._reader is None:
            self._reader = asyncio.create_task(self._read_loop())

    async def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        await self._transport.close()
        if self._reader is not None:
            self._reader.cancel()
            try:
                await self._reader
            except asyncio.CancelledError:
                pass
        self._fail_pending("closed")

    async def __aenter__(self):
        await self.start()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.close()

    # =========================================================
    # READER
    # =========================================================

    async def _read_loop(self) -> None:
        while True:
            try:
                message = await self._transport.receive()
            except TransportError as e:
                logger.warning(f"Channel reader stopped: {e.reason}")
                self._closed = True
                self._fail_pending(e.reason)
                return

            try:
                response = ChannelResponse.from_dict(message)
            except ValidationError:
                logger.warning("Dropping malformed response")
                continue

            future = self._pending.pop(response.ref, None)
            if future is None:
                logger.debug(f"Dropping reply for unknown or expired ref {response.ref}")
                continue
            if not future.done():
                future.set_result(response)

    def _fail_pending(self, reason: str) -> None:
        pending, self._pending = self._pending, {}
        for ref, future in pending.items():
            if not future.done():
                future.set_result(ChannelResponse.failure(ref, reason))

    # =========================================================
    # REQUESTS
    # =========================================================

    async def request(
        self,
        request_type: RequestType,
        table: Optional[str] = None,
        pagination: Optional[Dict[str, Any]] = None,
    ) -> ChannelResponse:
        """
        Send one request and wait for its reply.

        Never raises for transport problems: a closed channel gives
        an error response "closed", no reply in time gives "timeout".
        """
        request = ChannelRequest(
            request_type=RequestType(request_type),
            table=table,
            pagination=pagination,
        )
        if self._closed:
            return ChannelResponse.failure(request.ref, "closed")
        await self.start()

        future = asyncio.get_running_loop().create_future()
        self._pending[request.ref] = future

        try:
            await self._transport.send(request.to_dict())
        except TransportError as e:
            self._pending.pop(request.ref, None)
            return ChannelResponse.failure(request.ref, e.reason)

        try:
            return await asyncio.wait_for(future, timeout=self._timeout)
        except asyncio.TimeoutError:
            self._pending.pop(request.ref, None)
            logger.warning(
                f"Channel request {request.request_type.value} {table or ''} "
                f"timed out after {self._timeout}s"
            )
            return ChannelResponse.failure(request.ref, "timeout")

    async def request_capabilities(self) -> ChannelResponse:
        return await self.request(RequestType.CAPABILITIES)

    async def request_tables(self) -> ChannelResponse:
        return await self.request(RequestType.TABLES)

    async def request_schema(self, table: str) -> ChannelResponse:
        return await self.request(RequestType.SCHEMA, table=table)

    async def request_count(self, table: str) -> ChannelResponse:
        return await self.request(RequestType.COUNT, table=table)

    async def request_records(self, table: str, offset: int = 0, limit: int = 100) -> ChannelResponse:
        return await self.request(
            RequestType.RECORDS,
            table=table,
            pagination={"offset": offset, "limit": limit},
        )
