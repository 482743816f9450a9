"""Asyncio websocket transport for one Remootio device (aiohttp client)."""

from __future__ import annotations

import asyncio
import time
from collections.abc import AsyncIterator

import aiohttp

from remootio_controller.const import REMOOTIO_CONNECT_TIMEOUT
from remootio_controller.instrumentation import measure_time, timed_async
from remootio_controller.logging_abstraction import get_logger
from remootio_controller.transport.exceptions import (
    TransportClosedError,
    TransportConnectError,
    TransportSendError,
)

logger = get_logger(__name__)


class WebSocketTransport:
    """Websocket connection to ``ws://<host>:<port>`` with timeouts and instrumentation.

    One instance per device; nothing is shared between instances. An
    ``aiohttp.ClientSession`` may be injected, otherwise the transport owns
    (and closes) its own.
    """

    def __init__(
        self,
        url: str,
        connect_timeout: float = REMOOTIO_CONNECT_TIMEOUT,
        session: aiohttp.ClientSession | None = None,
    ) -> None:
        """Initialize transport parameters.

        Args:
            url: Websocket endpoint, e.g. ``ws://192.168.1.20:8080``
            connect_timeout: Seconds allowed for the TCP connect and upgrade
            session: Shared client session (optional)

        """
        self.url: str = url
        self.connect_timeout: float = connect_timeout
        self._session: aiohttp.ClientSession | None = session
        self._owns_session: bool = session is None
        self._ws: aiohttp.ClientWebSocketResponse | None = None

    @property
    def is_connected(self) -> bool:
        return self._ws is not None and not self._ws.closed

    @timed_async("ws_connect")
    async def connect(self) -> None:
        """Open the websocket.

        Raises:
            TransportConnectError: refused, timed out, or upgrade rejected

        """
        if self.is_connected:
            return
        start_time = time.perf_counter()
        logger.info(
            "→ Connecting to %s (timeout: %.1fs)",
            self.url,
            self.connect_timeout,
            extra={"url": self.url, "timeout": self.connect_timeout},
        )
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession()
            self._owns_session = True
        try:
            self._ws = await asyncio.wait_for(
                self._session.ws_connect(self.url, autoping=True),
                timeout=self.connect_timeout,
            )
        except TimeoutError as e:
            await self._release_session()
            logger.warning(
                "✗ Connection to %s timed out after %.1fms",
                self.url,
                measure_time(start_time),
                extra={"url": self.url, "error": "timeout"},
            )
            raise TransportConnectError("timeout", self.url) from e
        except (aiohttp.ClientError, OSError) as e:
            await self._release_session()
            logger.warning(
                "✗ Connection to %s failed after %.1fms: %s",
                self.url,
                measure_time(start_time),
                e,
                extra={"url": self.url, "error": str(e), "error_type": type(e).__name__},
            )
            raise TransportConnectError(str(e) or type(e).__name__, self.url) from e
        logger.info(
            "✓ Connected to %s in %.1fms",
            self.url,
            measure_time(start_time),
            extra={"url": self.url},
        )

    async def send_text(self, text: str) -> None:
        """Send one text frame.

        Raises:
            TransportClosedError: not connected
            TransportSendError: the write failed

        """
        if self._ws is None or self._ws.closed:
            raise TransportClosedError("not_connected")
        try:
            await self._ws.send_str(text)
        except (aiohttp.ClientError, ConnectionError, RuntimeError) as e:
            logger.warning(
                "✗ Send to %s failed: %s",
                self.url,
                e,
                extra={"url": self.url, "error": str(e), "bytes": len(text)},
            )
            raise TransportSendError(str(e) or type(e).__name__) from e
        logger.debug("Sent %d bytes to %s", len(text), self.url, extra={"url": self.url, "bytes": len(text)})

    async def frames(self) -> AsyncIterator[str]:
        """Yield inbound text frames until the websocket closes.

        Binary frames are decoded as UTF-8.

        Raises:
            TransportClosedError: always, once the stream ends

        """
        ws = self._ws
        if ws is None:
            raise TransportClosedError("not_connected")
        async for msg in ws:
            if msg.type == aiohttp.WSMsgType.TEXT:
                yield msg.data
            elif msg.type == aiohttp.WSMsgType.BINARY:
                yield msg.data.decode("utf-8", errors="replace")
            elif msg.type == aiohttp.WSMsgType.ERROR:
                error = ws.exception()
                raise TransportClosedError(str(error) if error else "websocket_error", ws.close_code)
        raise TransportClosedError("closed_by_peer", ws.close_code)

    async def close(self) -> None:
        ws, self._ws = self._ws, None
        if ws is not None and not ws.closed:
            logger.debug("Closing websocket to %s", self.url, extra={"url": self.url})
            _ = await ws.close()
        await self._release_session()

    async def _release_session(self) -> None:
        if self._owns_session and self._session is not None:
            session, self._session = self._session, None
            if not session.closed:
                await session.close()
