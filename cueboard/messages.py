"""
Relay Protocol Messages
Tagged message types exchanged over the relay, keyed by their 'action' field.
"""

import json
from dataclasses import dataclass
from typing import Any, ClassVar, Dict, Optional, Union

from .errors import MalformedMessage

# Setting names as they appear on the wire
MASTER_VOLUME = 'masterVolume'
COLUMNS = 'columns'
VOLUME = 'volume'
COLOR = 'color'

GLOBAL_SETTINGS = (MASTER_VOLUME, COLUMNS)
CLIP_SETTINGS = (VOLUME, COLOR)


def validate_setting(sound_id: Optional[str], setting: str, value: Any) -> Any:
    """Check a setting name/value pair and return the normalized value.

    Raises:
        MalformedMessage: unknown setting for the scope or wrong value type.
    """
    allowed = CLIP_SETTINGS if sound_id else GLOBAL_SETTINGS
    if setting not in allowed:
        scope = 'clip' if sound_id else 'global'
        raise MalformedMessage(f"unknown {scope} setting {setting!r}")

    if setting in (VOLUME, MASTER_VOLUME):
        if isinstance(value, bool) or not isinstance(value, (int, float)):
            raise MalformedMessage(f"{setting} must be a number")
        return max(0.0, min(1.0, float(value)))

    if setting == COLUMNS:
        if isinstance(value, float) and value.is_integer():
            value = int(value)
        if isinstance(value, bool) or not isinstance(value, int) or value < 1:
            raise MalformedMessage('columns must be a positive integer')
        return value

    # COLOR
    if not isinstance(value, str):
        raise MalformedMessage('color must be a string')
    return value


@dataclass(frozen=True)
class SettingsInitialized:
    """Full settings document sent to a connection as it joins."""
    ACTION: ClassVar[str] = 'settings_initialized'
    settings: Dict[str, Any]

    def to_dict(self) -> dict:
        return {'action': self.ACTION, 'settings': self.settings}


@dataclass(frozen=True)
class SettingsUpdated:
    """Full settings document broadcast after a bulk update."""
    ACTION: ClassVar[str] = 'settings_updated'
    settings: Dict[str, Any]

    def to_dict(self) -> dict:
        return {'action': self.ACTION, 'settings': self.settings}


@dataclass(frozen=True)
class SettingChanged:
    """One setting field changed; sound_id is None for global settings."""
    ACTION: ClassVar[str] = 'setting_changed'
    setting: str
    value: Any
    sound_id: Optional[str] = None

    def to_dict(self) -> dict:
        data = {'action': self.ACTION, 'setting': self.setting, 'value': self.value}
        if self.sound_id:
            data['soundId'] = self.sound_id
        return data


@dataclass(frozen=True)
class SettingsSaveFailed:
    """Sent only to the controller whose update could not be persisted."""
    ACTION: ClassVar[str] = 'settings_save_failed'
    setting: str
    error: str
    sound_id: Optional[str] = None

    def to_dict(self) -> dict:
        data = {'action': self.ACTION, 'setting': self.setting, 'error': self.error}
        if self.sound_id:
            data['soundId'] = self.sound_id
        return data


@dataclass(frozen=True)
class UpdateSetting:
    """Controller request to change one setting."""
    ACTION: ClassVar[str] = 'update_setting'
    setting: str
    value: Any
    sound_id: Optional[str] = None

    def to_dict(self) -> dict:
        data = {'action': self.ACTION, 'setting': self.setting, 'value': self.value}
        if self.sound_id:
            data['soundId'] = self.sound_id
        return data


@dataclass(frozen=True)
class Play:
    ACTION: ClassVar[str] = 'play'
    sound_id: str

    def to_dict(self) -> dict:
        return {'action': self.ACTION, 'soundId': self.sound_id}


@dataclass(frozen=True)
class StopAll:
    ACTION: ClassVar[str] = 'stopAll'

    def to_dict(self) -> dict:
        return {'action': self.ACTION}


@dataclass(frozen=True)
class SoundStarted:
    ACTION: ClassVar[str] = 'sound_started'
    sound_id: str

    def to_dict(self) -> dict:
        return {'action': self.ACTION, 'soundId': self.sound_id}


@dataclass(frozen=True)
class SoundEnded:
    ACTION: ClassVar[str] = 'sound_ended'
    sound_id: str

    def to_dict(self) -> dict:
        return {'action': self.ACTION, 'soundId': self.sound_id}


Message = Union[
    SettingsInitialized, SettingsUpdated, SettingChanged, SettingsSaveFailed,
    UpdateSetting, Play, StopAll, SoundStarted, SoundEnded,
]

# Messages a relay forwards to every connection except the sender
PLAYBACK_MESSAGES = (Play, StopAll, SoundStarted, SoundEnded)

# Messages only the server may originate
SERVER_EVENTS = (SettingsInitialized, SettingsUpdated, SettingChanged, SettingsSaveFailed)


def _require_sound_id(data: dict) -> str:
    sound_id = data.get('soundId')
    if not isinstance(sound_id, str) or not sound_id:
        raise MalformedMessage(f"{data.get('action')} requires a soundId", data)
    return sound_id


def _optional_sound_id(data: dict) -> Optional[str]:
    sound_id = data.get('soundId')
    if sound_id is None or sound_id == '':
        return None
    if not isinstance(sound_id, str):
        raise MalformedMessage('soundId must be a string', data)
    return sound_id


def _require_settings(data: dict) -> Dict[str, Any]:
    settings = data.get('settings')
    if not isinstance(settings, dict):
        raise MalformedMessage(f"{data.get('action')} requires a settings object", data)
    return settings


def _require_setting(data: dict) -> str:
    setting = data.get('setting')
    if not isinstance(setting, str) or not setting:
        raise MalformedMessage(f"{data.get('action')} requires a setting name", data)
    return setting


def _parse_update_setting(data: dict) -> UpdateSetting:
    sound_id = _optional_sound_id(data)
    setting = _require_setting(data)
    if 'value' not in data:
        raise MalformedMessage('update_setting requires a value', data)
    value = validate_setting(sound_id, setting, data['value'])
    return UpdateSetting(setting=setting, value=value, sound_id=sound_id)


def _parse_setting_changed(data: dict) -> SettingChanged:
    sound_id = _optional_sound_id(data)
    setting = _require_setting(data)
    if 'value' not in data:
        raise MalformedMessage('setting_changed requires a value', data)
    return SettingChanged(setting=setting, value=data['value'], sound_id=sound_id)


def _parse_save_failed(data: dict) -> SettingsSaveFailed:
    return SettingsSaveFailed(
        setting=_require_setting(data),
        error=str(data.get('error', '')),
        sound_id=_optional_sound_id(data)
    )


_PARSERS = {
    SettingsInitialized.ACTION: lambda d: SettingsInitialized(settings=_require_settings(d)),
    SettingsUpdated.ACTION: lambda d: SettingsUpdated(settings=_require_settings(d)),
    SettingChanged.ACTION: _parse_setting_changed,
    SettingsSaveFailed.ACTION: _parse_save_failed,
    UpdateSetting.ACTION: _parse_update_setting,
    Play.ACTION: lambda d: Play(sound_id=_require_sound_id(d)),
    StopAll.ACTION: lambda d: StopAll(),
    SoundStarted.ACTION: lambda d: SoundStarted(sound_id=_require_sound_id(d)),
    SoundEnded.ACTION: lambda d: SoundEnded(sound_id=_require_sound_id(d)),
}


def parse_message(raw: Union[str, bytes, dict]) -> Message:
    """Parse a wire payload into a message object.

    Raises:
        MalformedMessage: the payload is not JSON, not an object, or carries
            an unknown action or invalid fields.
    """
    if isinstance(raw, dict):
        data = raw
    else:
        try:
            data = json.loads(raw)
        except (ValueError, RecursionError) as e:
            # RecursionError: deeply nested arrays or objects
            raise MalformedMessage(f"invalid JSON: {e}", raw) from e

    if not isinstance(data, dict):
        raise MalformedMessage('message must be a JSON object', raw)

    action = data.get('action')
    if not isinstance(action, str):
        raise MalformedMessage(f"action must be a string, got {type(action).__name__}", raw)
    parser = _PARSERS.get(action)
    if parser is None:
        raise MalformedMessage(f"unknown action {action!r}", raw)
    return parser(data)


def encode_message(message: Message) -> str:
    return json.dumps(message.to_dict())
