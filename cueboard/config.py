"""
Configuration
Dataclass configs for the server, the playback node and relay clients.

Values come from, in increasing priority: dataclass defaults, an optional
JSON config file, and command line flags. The file is found via --config or
the CUEBOARD_CONFIG environment variable and may hold any of the sections:

    {
        "server":   {"port": 3000, "sounds_dir": "sounds"},
        "playback": {"sample_rate": 48000, "device": 3},
        "client":   {"reconnect_delay": 2.0}
    }
"""

import json
import logging
import os
from dataclasses import dataclass, field, fields
from typing import Any, Dict, Optional

logger = logging.getLogger(__name__)

CONFIG_ENV_VAR = 'CUEBOARD_CONFIG'


@dataclass
class ServerConfig:
    """Relay/HTTP server configuration."""
    host: str = '0.0.0.0'
    port: int = 3000
    sounds_dir: str = 'sounds'
    settings_file: str = 'settings.json'


@dataclass
class PlaybackConfig:
    """Audio output configuration for the playback node."""
    sample_rate: int = 44100
    buffer_size: int = 512  # ~11ms latency at 44100Hz
    channels: int = 2
    device: Optional[int] = None
    sounds_dir: Optional[str] = None  # load clips from disk instead of HTTP


@dataclass
class ClientConfig:
    """Relay connection settings for participants."""
    server_url: str = 'http://localhost:3000'
    reconnect_delay: float = 2.0
    max_reconnect_delay: float = 30.0


@dataclass
class CueboardConfig:
    server: ServerConfig = field(default_factory=ServerConfig)
    playback: PlaybackConfig = field(default_factory=PlaybackConfig)
    client: ClientConfig = field(default_factory=ClientConfig)


def _apply_section(target: Any, values: Dict[str, Any], section: str, path: str) -> None:
    known = {f.name for f in fields(target)}
    for key, value in values.items():
        if key not in known:
            logger.warning("Config %s: unknown key '%s.%s'", path, section, key)
            continue
        setattr(target, key, value)


def load_config(path: Optional[str] = None) -> CueboardConfig:
    """Load configuration, falling back to defaults for anything missing."""
    config = CueboardConfig()
    path = path or os.environ.get(CONFIG_ENV_VAR)
    if not path:
        return config

    try:
        with open(path) as f:
            data = json.load(f)
    except FileNotFoundError:
        logger.warning("Config file %s not found, using defaults", path)
        return config
    except json.JSONDecodeError as e:
        logger.error("Invalid JSON in %s: %s", path, e)
        return config

    if not isinstance(data, dict):
        logger.error("Config %s: top level must be an object", path)
        return config

    for section in ('server', 'playback', 'client'):
        values = data.get(section)
        if isinstance(values, dict):
            _apply_section(getattr(config, section), values, section, path)

    logger.info("Config loaded from %s", path)
    return config
