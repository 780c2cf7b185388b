"""
Settings Store
Holds the authoritative settings document (master volume, layout, per-clip
volume and color) and persists every change before it is acknowledged.
"""

import json
import logging
import os
import stat
import tempfile
import threading
from dataclasses import dataclass, field, replace
from pathlib import Path
from types import MappingProxyType
from typing import Any, Dict, Iterable, List, Mapping, Optional

from .errors import CorruptState, MalformedMessage, PersistenceError
from .messages import (
    COLOR, COLUMNS, MASTER_VOLUME, VOLUME, SettingChanged, UpdateSetting, validate_setting,
)

logger = logging.getLogger(__name__)

DEFAULT_MASTER_VOLUME = 1.0
DEFAULT_COLUMNS = 3
DEFAULT_CLIP_VOLUME = 1.0

DEFAULT_FILE_MODE = 0o644


def _stored_value(sound_id: Optional[str], setting: str, value: Any) -> Any:
    """Validate a value read from a settings document.

    Stored documents are taken as-is: a value that would need clamping or
    conversion is rejected rather than silently rewritten.
    """
    normalized = validate_setting(sound_id, setting, value)
    if normalized != value:
        raise CorruptState(f"{setting} out of range: {value!r}")
    return normalized


@dataclass(frozen=True)
class ClipSettings:
    """Per-clip playback settings."""
    volume: float = DEFAULT_CLIP_VOLUME
    color: Optional[str] = None

    def to_dict(self) -> dict:
        data = {'volume': self.volume}
        if self.color is not None:
            data['color'] = self.color
        return data


@dataclass(frozen=True)
class GlobalSettings:
    """Immutable snapshot of the whole settings document."""
    master_volume: float = DEFAULT_MASTER_VOLUME
    columns: int = DEFAULT_COLUMNS
    sounds: Mapping[str, ClipSettings] = field(default_factory=lambda: MappingProxyType({}))

    def clip(self, sound_id: str) -> ClipSettings:
        """Settings for a clip, falling back to defaults for unknown clips."""
        return self.sounds.get(sound_id) or ClipSettings()

    def to_dict(self) -> dict:
        """Convert to the persisted/wire document layout."""
        return {
            'masterVolume': self.master_volume,
            'columns': self.columns,
            'sounds': {sound_id: clip.to_dict() for sound_id, clip in self.sounds.items()}
        }

    @classmethod
    def from_dict(cls, data: Any) -> 'GlobalSettings':
        """Build settings from a persisted document.

        Raises:
            CorruptState: the document does not match the settings schema.
        """
        if not isinstance(data, dict):
            raise CorruptState('settings document must be an object')

        try:
            master_volume = _stored_value(None, MASTER_VOLUME,
                                          data.get(MASTER_VOLUME, DEFAULT_MASTER_VOLUME))
            columns = _stored_value(None, COLUMNS, data.get(COLUMNS, DEFAULT_COLUMNS))

            sounds_data = data.get('sounds', {})
            if not isinstance(sounds_data, dict):
                raise CorruptState("'sounds' must be an object")

            sounds = {}
            for sound_id, clip_data in sounds_data.items():
                if not isinstance(clip_data, dict):
                    raise CorruptState(f"settings for {sound_id} must be an object")
                color = clip_data.get('color')
                sounds[sound_id] = ClipSettings(
                    volume=_stored_value(sound_id, VOLUME,
                                         clip_data.get(VOLUME, DEFAULT_CLIP_VOLUME)),
                    color=_stored_value(sound_id, COLOR, color) if color is not None else None
                )
        except MalformedMessage as e:
            raise CorruptState(str(e)) from e

        return cls(
            master_volume=master_volume,
            columns=columns,
            sounds=MappingProxyType(sounds)
        )


@dataclass(frozen=True)
class SettingsPatch:
    """A partial update: global fields and/or the fields of a single clip."""
    global_fields: Mapping[str, Any] = field(default_factory=dict)
    sound_id: Optional[str] = None
    clip_fields: Mapping[str, Any] = field(default_factory=dict)

    @classmethod
    def from_update(cls, update: UpdateSetting) -> 'SettingsPatch':
        if update.sound_id:
            return cls(sound_id=update.sound_id, clip_fields={update.setting: update.value})
        return cls(global_fields={update.setting: update.value})

    @classmethod
    def for_clip(cls, sound_id: str, **clip_fields) -> 'SettingsPatch':
        return cls.validated(sound_id=sound_id, clip_fields=clip_fields)

    @classmethod
    def for_global(cls, **global_fields) -> 'SettingsPatch':
        return cls.validated(global_fields=global_fields)

    @classmethod
    def validated(cls, global_fields: Optional[Mapping[str, Any]] = None,
                  sound_id: Optional[str] = None,
                  clip_fields: Optional[Mapping[str, Any]] = None) -> 'SettingsPatch':
        """Build a patch, normalizing every value.

        Raises:
            MalformedMessage: unknown setting name or invalid value.
        """
        global_fields = {
            name: validate_setting(None, name, value)
            for name, value in (global_fields or {}).items()
        }
        clip_fields = clip_fields or {}
        if clip_fields and not sound_id:
            raise MalformedMessage('clip settings require a sound id')
        clip_fields = {
            name: validate_setting(sound_id, name, value)
            for name, value in clip_fields.items()
        }
        return cls(global_fields=global_fields, sound_id=sound_id, clip_fields=clip_fields)

    def changes(self) -> List[SettingChanged]:
        """The change events describing exactly the patched fields."""
        result = [SettingChanged(setting=name, value=value)
                  for name, value in self.global_fields.items()]
        result.extend(SettingChanged(setting=name, value=value, sound_id=self.sound_id)
                      for name, value in self.clip_fields.items())
        return result

    def apply_to(self, settings: GlobalSettings) -> GlobalSettings:
        """Return a new snapshot with this patch merged field-by-field."""
        updated = settings
        if MASTER_VOLUME in self.global_fields:
            updated = replace(updated, master_volume=self.global_fields[MASTER_VOLUME])
        if COLUMNS in self.global_fields:
            updated = replace(updated, columns=self.global_fields[COLUMNS])

        if self.sound_id and self.clip_fields:
            clip = updated.clip(self.sound_id)
            if VOLUME in self.clip_fields:
                clip = replace(clip, volume=self.clip_fields[VOLUME])
            if COLOR in self.clip_fields:
                clip = replace(clip, color=self.clip_fields[COLOR])
            sounds = dict(updated.sounds)
            sounds[self.sound_id] = clip
            updated = replace(updated, sounds=MappingProxyType(sounds))

        return updated


def patches_from_document(document: Any) -> List[SettingsPatch]:
    """Split a partial settings document into patches.

    Accepts the persisted layout with any subset of keys, e.g.
    {"columns": 4, "sounds": {"sound-kick.wav": {"color": "#dc3545"}}}.

    Raises:
        MalformedMessage: the document is not a valid partial settings object.
    """
    if not isinstance(document, dict):
        raise MalformedMessage('settings body must be an object', document)

    unknown = set(document) - {MASTER_VOLUME, COLUMNS, 'sounds'}
    if unknown:
        raise MalformedMessage(f"unknown settings keys: {sorted(unknown)}", document)

    patches = []
    global_fields = {name: document[name] for name in (MASTER_VOLUME, COLUMNS) if name in document}
    if global_fields:
        patches.append(SettingsPatch.validated(global_fields=global_fields))

    sounds = document.get('sounds', {})
    if not isinstance(sounds, dict):
        raise MalformedMessage("'sounds' must be an object", document)
    for sound_id, clip_fields in sounds.items():
        if not isinstance(clip_fields, dict):
            raise MalformedMessage(f"settings for {sound_id} must be an object", document)
        if clip_fields:
            patches.append(SettingsPatch.validated(sound_id=sound_id, clip_fields=clip_fields))

    return patches


class SettingsStore:
    """Single owner of the settings document.

    Mutations are serialized under a lock and written to disk with an
    atomic replace before the new snapshot becomes visible.
    """

    def __init__(self, path: str):
        self.path = Path(path)
        self._settings = GlobalSettings()
        self._lock = threading.Lock()

    def load(self) -> GlobalSettings:
        """Load settings from disk, creating the file with defaults if missing.

        Raises:
            CorruptState: the file exists but cannot be parsed.
            PersistenceError: defaults could not be written.
        """
        with self._lock:
            try:
                with open(self.path, 'r') as f:
                    data = json.load(f)
            except FileNotFoundError:
                settings = GlobalSettings()
                self._write(settings)
                self._settings = settings
                logger.info("Created default settings at %s", self.path)
                return settings
            except (json.JSONDecodeError, UnicodeDecodeError) as e:
                raise CorruptState(f"{self.path}: {e}") from e
            except OSError as e:
                raise PersistenceError(f"cannot read {self.path}: {e}") from e

            settings = GlobalSettings.from_dict(data)
            self._settings = settings
            logger.info("Settings loaded from %s (%d clip entries)", self.path, len(settings.sounds))
            return settings

    def get(self) -> GlobalSettings:
        """Current snapshot. Never touches the disk."""
        return self._settings

    def apply_patch(self, patch: SettingsPatch) -> List[SettingChanged]:
        """Merge and persist one patch.

        Returns:
            The change events for exactly the patched fields.

        Raises:
            PersistenceError: the write failed; the previous settings stay in effect.
        """
        return self.apply_patches([patch])

    def apply_patches(self, patches: Iterable[SettingsPatch]) -> List[SettingChanged]:
        """Merge and persist several patches as one mutation."""
        patches = list(patches)
        with self._lock:
            updated = self._settings
            for patch in patches:
                updated = patch.apply_to(updated)

            # Disk first: the in-memory snapshot only moves once the write succeeded
            self._write(updated)
            self._settings = updated

        changes = []
        for patch in patches:
            changes.extend(patch.changes())
        logger.debug("Applied %d setting change(s)", len(changes))
        return changes

    def apply_document(self, document: Any) -> GlobalSettings:
        """Apply a partial settings document (the REST update path).

        Raises:
            MalformedMessage: the document is invalid.
            PersistenceError: the write failed.
        """
        self.apply_patches(patches_from_document(document))
        return self._settings

    def _write(self, settings: GlobalSettings) -> None:
        """Atomically write settings: temp file in the same directory, then rename."""
        directory = self.path.parent
        tmp = None
        try:
            directory.mkdir(parents=True, exist_ok=True)
            fd, tmp = tempfile.mkstemp(dir=directory, prefix=self.path.name, suffix='.tmp')
            with os.fdopen(fd, 'w') as f:
                json.dump(settings.to_dict(), f, indent=2)
                f.write('\n')
                f.flush()
                os.fsync(f.fileno())
            # mkstemp creates 0600; keep the mode of the file being replaced
            try:
                mode = stat.S_IMODE(os.stat(self.path).st_mode)
            except FileNotFoundError:
                mode = DEFAULT_FILE_MODE
            os.chmod(tmp, mode)
            os.replace(tmp, self.path)
        except OSError as e:
            if tmp is not None:
                try:
                    os.unlink(tmp)
                except OSError:
                    pass
            logger.error("Failed to write settings to %s: %s", self.path, e)
            raise PersistenceError(f"cannot write {self.path}: {e}") from e
