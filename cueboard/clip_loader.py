"""
Clip Loading
Fetches clip files (from disk or from the server over HTTP) and decodes them
into float32 buffers at the output sample rate and channel count.
"""

import asyncio
import io
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Optional, Union
from urllib.parse import quote

import aiohttp
import numpy as np
import soundfile as sf
from scipy import signal

from .catalog import ClipCatalog, name_for_clip_id
from .errors import ClipLoadFailure

logger = logging.getLogger(__name__)

_DECODE_ERRORS = (sf.SoundFileError, RuntimeError, OSError, ValueError)


@dataclass
class ClipData:
    """Decoded audio for one clip, ready for mixing."""
    clip_id: str
    audio_data: np.ndarray  # float32, shape (frames, channels)
    sample_rate: int

    @property
    def duration_samples(self) -> int:
        return self.audio_data.shape[0]

    @property
    def duration_seconds(self) -> float:
        return self.duration_samples / float(self.sample_rate)


def resample(audio: np.ndarray, src_rate: int, dst_rate: int) -> np.ndarray:
    """Polyphase resampling along the time axis."""
    if src_rate == dst_rate:
        return audio
    g = np.gcd(src_rate, dst_rate)
    return signal.resample_poly(audio, dst_rate // g, src_rate // g, axis=0).astype(np.float32)


def fit_channels(audio: np.ndarray, channels: int) -> np.ndarray:
    """Convert a (frames, n) buffer to (frames, channels)."""
    if audio.shape[1] == channels:
        return audio
    if audio.shape[1] == 1:
        return np.repeat(audio, channels, axis=1)
    mono = audio.mean(axis=1, keepdims=True)
    if channels == 1:
        return mono
    return np.repeat(mono, channels, axis=1)


def decode_audio(source: Union[str, Path, io.BytesIO], sample_rate: int,
                 channels: int) -> np.ndarray:
    """Decode an audio file to float32 at the given rate and channel count."""
    data, src_rate = sf.read(source, dtype='float32', always_2d=True)
    data = resample(data, src_rate, sample_rate)
    data = fit_channels(data, channels)
    return np.ascontiguousarray(data, dtype=np.float32)


class ClipLoader:
    """Base class: turn a clip id into decoded ClipData."""

    def __init__(self, sample_rate: int = 44100, channels: int = 2):
        self.sample_rate = sample_rate
        self.channels = channels

    async def load(self, clip_id: str) -> ClipData:
        """Fetch and decode a clip.

        Raises:
            ClipLoadFailure: the clip could not be fetched or decoded.
        """
        raise NotImplementedError

    async def close(self) -> None:
        pass

    async def _decode(self, clip_id: str, source: Union[Path, io.BytesIO]) -> ClipData:
        try:
            audio = await asyncio.to_thread(decode_audio, source, self.sample_rate, self.channels)
        except _DECODE_ERRORS as e:
            raise ClipLoadFailure(clip_id, f"decode failed: {e}") from e
        if audio.shape[0] == 0:
            raise ClipLoadFailure(clip_id, 'clip is empty')
        return ClipData(clip_id=clip_id, audio_data=audio, sample_rate=self.sample_rate)


class FileClipLoader(ClipLoader):
    """Loads clips straight from a local sounds directory."""

    def __init__(self, catalog: ClipCatalog, sample_rate: int = 44100, channels: int = 2):
        super().__init__(sample_rate, channels)
        self.catalog = catalog

    async def load(self, clip_id: str) -> ClipData:
        path = self.catalog.path_for(clip_id)
        if path is None:
            raise ClipLoadFailure(clip_id, f"no such file in {self.catalog.sounds_dir}")
        logger.debug("Decoding %s", path)
        return await self._decode(clip_id, path)


class HttpClipLoader(ClipLoader):
    """Fetches clips from the server's /sounds/{filename} endpoint."""

    def __init__(self, server_url: str, sample_rate: int = 44100, channels: int = 2,
                 session: Optional[aiohttp.ClientSession] = None):
        super().__init__(sample_rate, channels)
        self.server_url = server_url.rstrip('/')
        self._session = session
        self._owns_session = session is None

    async def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None:
            self._session = aiohttp.ClientSession(timeout=aiohttp.ClientTimeout(total=30.0))
        return self._session

    async def load(self, clip_id: str) -> ClipData:
        name = name_for_clip_id(clip_id)
        if not name:
            raise ClipLoadFailure(clip_id, 'not a clip id')

        url = f"{self.server_url}/sounds/{quote(name)}"
        session = await self._get_session()
        try:
            async with session.get(url) as resp:
                if resp.status != 200:
                    raise ClipLoadFailure(clip_id, f"GET {url} returned HTTP {resp.status}")
                body = await resp.read()
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            raise ClipLoadFailure(clip_id, f"GET {url} failed: {e}") from e

        return await self._decode(clip_id, io.BytesIO(body))

    async def close(self) -> None:
        if self._session is not None and self._owns_session:
            await self._session.close()
        self._session = None
