"""Cueboard: soundboard relay, settings store and playback node."""

from .audio_playback import ClipState, PlaybackEngine
from .catalog import ClipCatalog, ClipDescriptor, clip_id_for
from .config import ClientConfig, CueboardConfig, PlaybackConfig, ServerConfig, load_config
from .controller import ControllerViewModel
from .relay import Relay, Role
from .server import CueboardServer
from .settings_store import GlobalSettings, SettingsPatch, SettingsStore

__all__ = [
    'ClipState',
    'PlaybackEngine',
    'ClipCatalog',
    'ClipDescriptor',
    'clip_id_for',
    'ClientConfig',
    'CueboardConfig',
    'PlaybackConfig',
    'ServerConfig',
    'load_config',
    'ControllerViewModel',
    'Relay',
    'Role',
    'CueboardServer',
    'GlobalSettings',
    'SettingsPatch',
    'SettingsStore',
]
