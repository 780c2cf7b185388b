"""
Playback Node
Connects a PlaybackEngine to the relay: consumes play/stop commands and
settings events, and reports sound_started / sound_ended back.
"""

import asyncio
import logging
from typing import Optional

import aiohttp

from .audio_playback import PlaybackEngine
from .catalog import clip_id_for
from .client import RelayClient
from .config import ClientConfig
from .errors import CorruptState, MalformedMessage
from .messages import (
    Message, Play, SettingChanged, SettingsInitialized, SettingsUpdated, StopAll, validate_setting,
)
from .relay import Role
from .settings_store import GlobalSettings

logger = logging.getLogger(__name__)


class PlaybackNode:
    """Relay participant in the playback role."""

    def __init__(self, engine: PlaybackEngine, config: Optional[ClientConfig] = None):
        self.engine = engine
        self.config = config or ClientConfig()
        self.client = RelayClient(
            Role.PLAYBACK.value, self.config,
            on_message=self.handle_message,
            on_connected=self.refresh_catalog
        )
        self.engine.set_event_callback(self._on_engine_event)

    def _on_engine_event(self, message: Message):
        self.client.send(message)

    async def handle_message(self, message: Message) -> None:
        """Apply one relay message to the engine."""
        if isinstance(message, (SettingsInitialized, SettingsUpdated)):
            try:
                settings = GlobalSettings.from_dict(message.settings)
            except CorruptState as e:
                logger.warning("Ignoring invalid settings snapshot: %s", e)
                return
            self.engine.apply_settings(settings)

        elif isinstance(message, SettingChanged):
            try:
                validate_setting(message.sound_id, message.setting, message.value)
            except MalformedMessage as e:
                logger.warning("Ignoring invalid setting change: %s", e)
                return
            self.engine.apply_setting_change(message)

        elif isinstance(message, Play):
            self.engine.play(message.sound_id)

        elif isinstance(message, StopAll):
            self.engine.stop_all()

    async def refresh_catalog(self) -> None:
        """Fetch the clip list so play() can reject unknown ids."""
        url = f"{self.config.server_url.rstrip('/')}/catalog"
        try:
            async with aiohttp.ClientSession(timeout=aiohttp.ClientTimeout(total=5.0)) as session:
                async with session.get(url) as resp:
                    resp.raise_for_status()
                    names = await resp.json()
        except (aiohttp.ClientError, asyncio.TimeoutError, ValueError) as e:
            logger.warning("Could not fetch catalog from %s: %s", url, e)
            return

        self.engine.set_catalog(clip_id_for(name) for name in names)
        logger.info("Catalog: %d clip(s)", len(names))

    async def run(self) -> None:
        if not self.engine.start():
            raise RuntimeError('audio output could not be started')
        try:
            await self.client.run()
        finally:
            await self.engine.stop()
            await self.engine.loader.close()
