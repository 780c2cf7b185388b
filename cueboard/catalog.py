"""
Clip Catalog
Maps clip filenames to stable clip ids and enumerates the sounds directory.
"""

import logging
from dataclasses import dataclass
from pathlib import Path
from typing import List, Optional
from urllib.parse import quote, unquote

logger = logging.getLogger(__name__)

CLIP_ID_PREFIX = 'sound-'
AUDIO_EXTENSIONS = ('.mp3', '.wav', '.ogg', '.flac', '.m4a')

# Characters left unescaped by a URI component encoder
_URI_COMPONENT_SAFE = "-_.!~*'()"


def clip_id_for(name: str) -> str:
    """Derive the clip id for a filename.

    The id is the percent-encoded filename with a fixed prefix, so it is
    injective and can be reversed with name_for_clip_id().
    """
    return CLIP_ID_PREFIX + quote(name, safe=_URI_COMPONENT_SAFE)


def name_for_clip_id(clip_id: str) -> Optional[str]:
    """Recover the filename a clip id was derived from."""
    if not clip_id.startswith(CLIP_ID_PREFIX):
        return None
    return unquote(clip_id[len(CLIP_ID_PREFIX):])


def is_audio_file(name: str) -> bool:
    return Path(name).suffix.lower() in AUDIO_EXTENSIONS


@dataclass(frozen=True)
class ClipDescriptor:
    """A clip known to the catalog."""
    id: str
    filename: str
    display_name: str

    @classmethod
    def from_filename(cls, filename: str) -> 'ClipDescriptor':
        return cls(
            id=clip_id_for(filename),
            filename=filename,
            display_name=Path(filename).stem
        )


class ClipCatalog:
    """Lists the audio clips available in a sounds directory."""

    def __init__(self, sounds_dir: str):
        self.sounds_dir = Path(sounds_dir)

    def list_names(self) -> List[str]:
        """Return the sorted audio filenames, creating the directory if missing."""
        if not self.sounds_dir.exists():
            self.sounds_dir.mkdir(parents=True, exist_ok=True)
            logger.info("Created sounds directory %s", self.sounds_dir)
            return []

        return sorted(
            entry.name for entry in self.sounds_dir.iterdir()
            if entry.is_file() and is_audio_file(entry.name)
        )

    def path_for(self, clip_id: str) -> Optional[Path]:
        """Resolve a clip id to a file inside the sounds directory."""
        name = name_for_clip_id(clip_id)
        if not name or Path(name).name != name:
            return None
        path = self.sounds_dir / name
        return path if path.is_file() else None
