"""
Controller View Model
Controller-side state: which clips are playing, slider positions, colors and
column layout. Every inbound event is applied as an absolute overwrite so
replaying an event never changes the result.
"""

import logging
from dataclasses import dataclass
from typing import Iterable, List, Optional, Set

from .catalog import ClipDescriptor
from .errors import CorruptState, MalformedMessage
from .messages import (
    COLOR, COLUMNS, MASTER_VOLUME, VOLUME, Message, Play, SettingChanged,
    SettingsInitialized, SettingsSaveFailed, SettingsUpdated, SoundEnded, SoundStarted,
    StopAll, UpdateSetting,
)
from .settings_store import GlobalSettings, SettingsPatch

logger = logging.getLogger(__name__)

COLOR_PRESETS = ('#007bff', '#28a745', '#dc3545', '#ffc107', '#17a2b8', '#6f42c1')


@dataclass(frozen=True)
class ButtonState:
    """What a surface needs to draw one clip button."""
    clip_id: str
    label: str
    volume: float
    color: Optional[str]
    playing: bool


class ControllerViewModel:
    """State of one controller surface."""

    def __init__(self, clips: Iterable[ClipDescriptor] = ()):
        self.clips: List[ClipDescriptor] = list(clips)
        self.settings = GlobalSettings()
        self.playing: Set[str] = set()
        self.needs_snapshot = True
        self.last_save_error: Optional[str] = None

    def set_catalog(self, clips: Iterable[ClipDescriptor]):
        self.clips = list(clips)

    # === Inbound events ===

    def apply(self, message: Message) -> bool:
        """Apply one relay message. Returns True if visible state may have changed."""
        if isinstance(message, (SettingsInitialized, SettingsUpdated)):
            try:
                self.settings = GlobalSettings.from_dict(message.settings)
            except CorruptState as e:
                logger.warning("Ignoring invalid settings snapshot: %s", e)
                return False
            self.needs_snapshot = False
            return True

        if isinstance(message, SettingChanged):
            if self.needs_snapshot:
                # Incremental updates are only trusted on top of a snapshot
                logger.debug("Skipping %s until snapshot arrives", message.setting)
                return False
            return self._apply_change(message)

        if isinstance(message, SoundStarted):
            self.playing.add(message.sound_id)
            return True

        if isinstance(message, SoundEnded):
            self.playing.discard(message.sound_id)
            return True

        if isinstance(message, SettingsSaveFailed):
            self.last_save_error = message.error
            return True

        # Commands from other controllers (play, stopAll) carry no state
        return False

    def _apply_change(self, change: SettingChanged) -> bool:
        try:
            if change.sound_id:
                patch = SettingsPatch.for_clip(change.sound_id, **{change.setting: change.value})
            else:
                patch = SettingsPatch.for_global(**{change.setting: change.value})
        except MalformedMessage as e:
            logger.warning("Ignoring invalid setting change: %s", e)
            return False
        self.settings = patch.apply_to(self.settings)
        return True

    def connection_lost(self):
        """Forget transient state; wait for a fresh snapshot."""
        self.needs_snapshot = True
        self.playing.clear()

    # === Outbound commands ===

    def play(self, clip_id: str) -> Play:
        return Play(sound_id=clip_id)

    def stop_all(self) -> StopAll:
        return StopAll()

    def set_clip_volume(self, clip_id: str, volume: float) -> UpdateSetting:
        return UpdateSetting(setting=VOLUME, value=max(0.0, min(1.0, float(volume))), sound_id=clip_id)

    def set_clip_color(self, clip_id: str, color: str) -> UpdateSetting:
        return UpdateSetting(setting=COLOR, value=color, sound_id=clip_id)

    def set_master_volume(self, volume: float) -> UpdateSetting:
        return UpdateSetting(setting=MASTER_VOLUME, value=max(0.0, min(1.0, float(volume))))

    def set_columns(self, columns: int) -> UpdateSetting:
        return UpdateSetting(setting=COLUMNS, value=max(1, int(columns)))

    # === Read side ===

    @property
    def master_volume(self) -> float:
        return self.settings.master_volume

    @property
    def columns(self) -> int:
        return self.settings.columns

    def is_playing(self, clip_id: str) -> bool:
        return clip_id in self.playing

    def find_clip(self, key: str) -> Optional[ClipDescriptor]:
        """Look a clip up by 1-based position, id, filename or display name."""
        if key.isdigit():
            index = int(key) - 1
            return self.clips[index] if 0 <= index < len(self.clips) else None
        for clip in self.clips:
            if key in (clip.id, clip.filename, clip.display_name):
                return clip
        return None

    def buttons(self) -> List[ButtonState]:
        result = []
        for clip in self.clips:
            clip_settings = self.settings.clip(clip.id)
            result.append(ButtonState(
                clip_id=clip.id,
                label=clip.display_name,
                volume=clip_settings.volume,
                color=clip_settings.color,
                playing=clip.id in self.playing
            ))
        return result

    def rows(self) -> List[List[ButtonState]]:
        """Buttons laid out in rows of `columns` buttons."""
        buttons = self.buttons()
        width = max(1, self.columns)
        return [buttons[i:i + width] for i in range(0, len(buttons), width)]
