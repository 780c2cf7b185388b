"""
Relay Client
Persistent WebSocket connection from a participant (playback node or
controller) to the relay, with automatic reconnect and exponential backoff.
"""

import asyncio
import inspect
import logging
from typing import Any, Callable, Optional
from urllib.parse import urlencode, urlsplit, urlunsplit

import websockets

from .config import ClientConfig
from .errors import ConnectionLoss, MalformedMessage
from .messages import Message, encode_message, parse_message

logger = logging.getLogger(__name__)


def relay_url(server_url: str, role: str) -> str:
    """Turn http://host:port into ws://host:port/?role=<role>."""
    parts = urlsplit(server_url)
    scheme = {'https': 'wss', 'wss': 'wss'}.get(parts.scheme, 'ws')
    return urlunsplit((scheme, parts.netloc, '/', urlencode({'role': role}), ''))


async def _maybe_await(result: Any) -> None:
    if inspect.isawaitable(result):
        await result


class RelayClient:
    """
    Keeps one relay connection alive for the lifetime of run().

    Inbound messages are parsed and passed to on_message in arrival order.
    Outbound messages are queued and written in order by a writer task;
    anything sent while disconnected is dropped.
    """

    def __init__(self, role: str, config: Optional[ClientConfig] = None,
                 on_message: Optional[Callable[[Message], Any]] = None,
                 on_connected: Optional[Callable[[], Any]] = None,
                 on_connection_lost: Optional[Callable[[], Any]] = None):
        self.role = role
        self.config = config or ClientConfig()
        self.url = relay_url(self.config.server_url, role)

        self.on_message = on_message
        self.on_connected = on_connected
        self.on_connection_lost = on_connection_lost

        self._ws = None
        self._outbox: Optional[asyncio.Queue] = None
        self._delay = self.config.reconnect_delay
        self._closing = False

    @property
    def connected(self) -> bool:
        return self._ws is not None

    def send(self, message: Message) -> bool:
        """Queue a message for the relay. Returns False when disconnected."""
        if self._ws is None or self._outbox is None:
            logger.debug("Not connected, dropping %s", message.ACTION)
            return False
        self._outbox.put_nowait(encode_message(message))
        return True

    async def run(self) -> None:
        """Connect and reconnect until close() is called."""
        while not self._closing:
            try:
                await self._session()
            except ConnectionLoss as e:
                if self._closing:
                    break
                logger.warning("Relay connection lost (%s). Retrying in %.0fs...", e, self._delay)
                if self.on_connection_lost:
                    await _maybe_await(self.on_connection_lost())
                await asyncio.sleep(self._delay)
                self._delay = min(self._delay * 2, self.config.max_reconnect_delay)

    async def close(self) -> None:
        self._closing = True
        if self._ws is not None:
            await self._ws.close()

    async def _session(self) -> None:
        """One connection attempt; raises ConnectionLoss when it ends."""
        try:
            async with websockets.connect(self.url) as ws:
                self._ws = ws
                self._outbox = asyncio.Queue()
                self._delay = self.config.reconnect_delay
                logger.info("Connected to relay at %s as %s", self.url, self.role)

                writer = asyncio.create_task(self._write_loop(ws, self._outbox))
                try:
                    if self.on_connected:
                        await _maybe_await(self.on_connected())
                    async for raw in ws:
                        await self._dispatch(raw)
                finally:
                    self._ws = None
                    self._outbox = None
                    writer.cancel()
        except (websockets.exceptions.WebSocketException, OSError, asyncio.TimeoutError) as e:
            raise ConnectionLoss(str(e) or type(e).__name__) from e

        if not self._closing:
            raise ConnectionLoss('closed by server')

    async def _write_loop(self, ws, outbox: asyncio.Queue) -> None:
        while True:
            text = await outbox.get()
            try:
                await ws.send(text)
            except websockets.exceptions.ConnectionClosed:
                return

    async def _dispatch(self, raw) -> None:
        try:
            message = parse_message(raw)
        except MalformedMessage as e:
            logger.warning("Ignoring malformed message from relay: %s", e)
            return

        if self.on_message:
            await _maybe_await(self.on_message(message))
