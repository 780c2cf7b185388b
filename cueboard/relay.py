"""
Relay
Fans messages out between controller connections and the playback node.

Settings updates go through the SettingsStore and are echoed to every
connection, sender included. Playback commands and events are forwarded
verbatim to every connection except the sender.
"""

import asyncio
import itertools
import logging
from enum import Enum
from typing import Any, Dict, List, Optional, Union

from .errors import MalformedMessage, PersistenceError
from .messages import (
    PLAYBACK_MESSAGES, SERVER_EVENTS, Message, SettingsInitialized, SettingsSaveFailed,
    SettingsUpdated, UpdateSetting, encode_message, parse_message,
)
from .settings_store import GlobalSettings, SettingsPatch, SettingsStore

logger = logging.getLogger(__name__)

# Close code sent to a second playback connection
CLOSE_PLAYBACK_TAKEN = 4409

_connection_ids = itertools.count(1)


class Role(Enum):
    CONTROLLER = 'controller'
    PLAYBACK = 'playback'


class Connection:
    """A live channel to one participant.

    Subclasses implement send() and close() for a concrete transport.
    """

    def __init__(self, role: Role, peer: str = ''):
        self.id = next(_connection_ids)
        self.role = role
        self.peer = peer
        self.alive = True

    async def send(self, text: str) -> None:
        raise NotImplementedError

    async def close(self, code: int = 1000, reason: str = '') -> None:
        raise NotImplementedError

    def __repr__(self) -> str:
        if self.peer:
            return f"<{self.role.value} #{self.id} {self.peer}>"
        return f"<{self.role.value} #{self.id}>"


class Relay:
    """Connection registry and message fan-out."""

    def __init__(self, store: SettingsStore):
        self.store = store
        self.connections: Dict[int, Connection] = {}

    @property
    def playback_connection(self) -> Optional[Connection]:
        for conn in self.connections.values():
            if conn.role == Role.PLAYBACK and conn.alive:
                return conn
        return None

    def counts(self) -> Dict[str, int]:
        """Number of live connections per role."""
        result = {role.value: 0 for role in Role}
        for conn in self.connections.values():
            result[conn.role.value] += 1
        return result

    # === Connection lifecycle ===

    async def on_connect(self, conn: Connection) -> bool:
        """Register a connection and send it the full settings snapshot.

        Returns False if the connection was refused (a playback node is
        already connected).
        """
        if conn.role == Role.PLAYBACK and self.playback_connection is not None:
            logger.warning("Refusing %r: playback node %r already connected",
                           conn, self.playback_connection)
            conn.alive = False
            await conn.close(CLOSE_PLAYBACK_TAKEN, 'playback node already connected')
            return False

        self.connections[conn.id] = conn
        logger.info("Client connected: %r (total %d)", conn, len(self.connections))

        snapshot = SettingsInitialized(settings=self.store.get().to_dict())
        await self.send_message(conn, snapshot)
        return True

    async def on_disconnect(self, conn: Connection) -> None:
        conn.alive = False
        if self.connections.pop(conn.id, None) is not None:
            logger.info("Client disconnected: %r (total %d)", conn, len(self.connections))

    # === Message handling ===

    async def on_message(self, conn: Connection, raw: Union[str, bytes]) -> None:
        """Handle one inbound message. Malformed messages are logged and dropped."""
        if isinstance(raw, bytes):
            try:
                raw = raw.decode('utf-8')
            except UnicodeDecodeError:
                logger.warning("Dropping non UTF-8 message from %r", conn)
                return

        try:
            message = parse_message(raw)
            if isinstance(message, SERVER_EVENTS):
                raise MalformedMessage(f"{message.ACTION} may only be sent by the server")
        except MalformedMessage as e:
            logger.warning("Dropping malformed message from %r: %s", conn, e)
            return

        if isinstance(message, UpdateSetting):
            await self.update_setting(conn, message)
        elif isinstance(message, PLAYBACK_MESSAGES):
            logger.debug("%r -> %s", conn, message.ACTION)
            await self.broadcast(raw, exclude=conn)

    async def update_setting(self, conn: Optional[Connection], update: UpdateSetting) -> None:
        """Persist one setting change, then echo it to every connection.

        A persistence failure is reported to the initiating connection only.
        """
        try:
            changes = self.store.apply_patch(SettingsPatch.from_update(update))
        except PersistenceError as e:
            logger.error("Setting %s not saved: %s", update.setting, e)
            if conn is not None:
                failure = SettingsSaveFailed(setting=update.setting, error=str(e),
                                             sound_id=update.sound_id)
                await self.send_message(conn, failure)
            return

        for change in changes:
            await self.broadcast(encode_message(change))

    async def apply_document(self, document: Any) -> GlobalSettings:
        """Apply a partial settings document and broadcast the full result.

        Raises:
            MalformedMessage: the document is invalid.
            PersistenceError: the write failed; nothing is broadcast.
        """
        settings = self.store.apply_document(document)
        await self.broadcast(encode_message(SettingsUpdated(settings=settings.to_dict())))
        return settings

    # === Delivery ===

    async def send_message(self, conn: Connection, message: Message) -> None:
        await self._send(conn, encode_message(message))

    async def broadcast(self, text: str, exclude: Optional[Connection] = None) -> None:
        """Send to every live connection, optionally skipping one."""
        targets: List[Connection] = [
            c for c in self.connections.values() if c is not exclude and c.alive
        ]
        if not targets:
            return

        results = await asyncio.gather(
            *[c.send(text) for c in targets],
            return_exceptions=True
        )
        for conn, result in zip(targets, results):
            if isinstance(result, Exception):
                logger.warning("Send to %r failed: %s", conn, result)

    async def _send(self, conn: Connection, text: str) -> None:
        try:
            await conn.send(text)
        except Exception as e:
            logger.warning("Send to %r failed: %s", conn, e)
