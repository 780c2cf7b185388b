"""
Audio Playback Module
Plays triggered clips on the playback node.

Each clip id moves through UNLOADED -> LOADING -> READY and has at most one
current Voice. Retriggering a clip silently replaces its Voice; only the
current Voice may report a natural end. Output gain per Voice is
clip volume x master volume.
"""

import asyncio
import itertools
import logging
import threading
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Dict, Iterable, List, Optional, Set

import numpy as np

from .clip_loader import ClipData, ClipLoader
from .config import PlaybackConfig
from .errors import ClipLoadFailure
from .messages import MASTER_VOLUME, VOLUME, Message, SettingChanged, SoundEnded, SoundStarted
from .settings_store import DEFAULT_CLIP_VOLUME, GlobalSettings

logger = logging.getLogger(__name__)


class ClipState(Enum):
    UNLOADED = "unloaded"
    LOADING = "loading"
    READY = "ready"


@dataclass(eq=False)
class Voice:
    """One in-flight playback of a clip."""
    clip: ClipData
    generation: int
    gain: float
    position: int = 0

    @property
    def clip_id(self) -> str:
        return self.clip.clip_id

    @property
    def finished(self) -> bool:
        return self.position >= self.clip.duration_samples


def _clamp_volume(value: float) -> float:
    return max(0.0, min(1.0, float(value)))


class PlaybackEngine:
    """
    Owns clip buffers, per-clip gains and the current Voice of every clip.
    Commands (play, stop_all, volume changes) must be issued from the event
    loop thread; the sounddevice callback only mixes.
    """

    def __init__(self, loader: ClipLoader, config: Optional[PlaybackConfig] = None):
        self.loader = loader
        self.config = config or PlaybackConfig()

        # Audio output stream
        self.stream = None  # sounddevice.OutputStream while running
        self._loop: Optional[asyncio.AbstractEventLoop] = None

        # Clip state machine
        self._states: Dict[str, ClipState] = {}
        self._clips: Dict[str, ClipData] = {}
        self._load_tasks: Dict[str, asyncio.Task] = {}
        self._pending_play: Set[str] = set()
        self._known_clips: Optional[Set[str]] = None

        # Current voice per clip id, shared with the audio thread
        self._voices: Dict[str, Voice] = {}
        self._generations = itertools.count(1)
        self._lock = threading.Lock()

        # Gain stages
        self._clip_volumes: Dict[str, float] = {}
        self.master_volume: float = 1.0

        # Callback
        self._event_callback: Optional[Callable[[Message], None]] = None

    def set_event_callback(self, callback: Callable[[Message], None]):
        """Set callback for sound_started / sound_ended events."""
        self._event_callback = callback

    def set_catalog(self, clip_ids: Optional[Iterable[str]]):
        """Restrict play() to known clip ids. None accepts any id."""
        self._known_clips = set(clip_ids) if clip_ids is not None else None

    def state(self, clip_id: str) -> ClipState:
        return self._states.get(clip_id, ClipState.UNLOADED)

    # === Commands ===

    def play(self, clip_id: str) -> Optional[asyncio.Task]:
        """Start (or restart) a clip.

        Loads the clip first if needed; the play is queued until the load
        finishes. Returns the load task when one was started.
        """
        if self._known_clips is not None and clip_id not in self._known_clips:
            logger.warning("Ignoring play for unknown clip %s", clip_id)
            return None

        state = self.state(clip_id)
        if state == ClipState.READY:
            self._start_voice(clip_id)
            return None

        self._pending_play.add(clip_id)
        if state == ClipState.LOADING:
            return self._load_tasks.get(clip_id)

        self._states[clip_id] = ClipState.LOADING
        task = asyncio.get_running_loop().create_task(self._load(clip_id))
        self._load_tasks[clip_id] = task
        return task

    def stop_all(self) -> List[str]:
        """Stop every current Voice, reporting an end for each.

        Returns:
            The clip ids that were playing.
        """
        with self._lock:
            stopped = list(self._voices.keys())
            self._voices.clear()

        self._pending_play.clear()

        for clip_id in stopped:
            self._emit(SoundEnded(sound_id=clip_id))
        if stopped:
            logger.info("Stopped %d clip(s)", len(stopped))
        return stopped

    def set_volume(self, clip_id: str, volume: float):
        """Set one clip's volume and rescale its current Voice."""
        self._clip_volumes[clip_id] = _clamp_volume(volume)
        with self._lock:
            voice = self._voices.get(clip_id)
            if voice is not None:
                voice.gain = self._effective_gain(clip_id)

    def set_master_volume(self, volume: float):
        """Set master volume and rescale every current Voice."""
        self.master_volume = _clamp_volume(volume)
        with self._lock:
            for clip_id, voice in self._voices.items():
                voice.gain = self._effective_gain(clip_id)

    def apply_settings(self, settings: GlobalSettings):
        """Take master and per-clip volumes from a full settings snapshot."""
        self._clip_volumes = {
            sound_id: clip.volume for sound_id, clip in settings.sounds.items()
        }
        self.set_master_volume(settings.master_volume)

    def apply_setting_change(self, change: SettingChanged):
        """Apply one setting_changed event. Non-audio settings are ignored."""
        if change.sound_id and change.setting == VOLUME:
            self.set_volume(change.sound_id, change.value)
        elif not change.sound_id and change.setting == MASTER_VOLUME:
            self.set_master_volume(change.value)

    # === Queries ===

    def clip_volume(self, clip_id: str) -> float:
        return self._clip_volumes.get(clip_id, DEFAULT_CLIP_VOLUME)

    def effective_gain(self, clip_id: str) -> Optional[float]:
        """Output gain of the clip's current Voice, or None if it is idle."""
        with self._lock:
            voice = self._voices.get(clip_id)
            return voice.gain if voice is not None else None

    def is_playing(self, clip_id: str) -> bool:
        with self._lock:
            return clip_id in self._voices

    def get_active_clips(self) -> List[str]:
        """Get list of currently playing clip IDs."""
        with self._lock:
            return list(self._voices.keys())

    # === Internals ===

    def _effective_gain(self, clip_id: str) -> float:
        return self.clip_volume(clip_id) * self.master_volume

    def _emit(self, message: Message):
        if self._event_callback:
            self._event_callback(message)

    async def _load(self, clip_id: str):
        """Load task: fetch + decode, then run the queued play."""
        clip = None
        try:
            clip = await self.loader.load(clip_id)
        except ClipLoadFailure as e:
            logger.error("Failed to load clip %s: %s", clip_id, e.reason)
        finally:
            self._load_tasks.pop(clip_id, None)
            if clip is None:
                # No automatic retry: the next play() starts a new load
                self._states[clip_id] = ClipState.UNLOADED
                self._pending_play.discard(clip_id)

        if clip is None:
            return

        self._clips[clip_id] = clip
        self._states[clip_id] = ClipState.READY
        logger.info("Loaded %s (%.2fs)", clip_id, clip.duration_seconds)

        if clip_id in self._pending_play:
            self._pending_play.discard(clip_id)
            self._start_voice(clip_id)

    def _start_voice(self, clip_id: str):
        voice = Voice(
            clip=self._clips[clip_id],
            generation=next(self._generations),
            gain=self._effective_gain(clip_id)
        )

        # Replacing the entry removes the previous Voice from the mix before
        # the new one can be rendered
        with self._lock:
            previous = self._voices.get(clip_id)
            self._voices[clip_id] = voice

        if previous is not None:
            logger.debug("Retrigger %s (generation %d -> %d)",
                         clip_id, previous.generation, voice.generation)
        self._emit(SoundStarted(sound_id=clip_id))

    def _finish(self, voices: List[Voice]):
        """Report natural ends for voices that are still current."""
        ended = []
        with self._lock:
            for voice in voices:
                current = self._voices.get(voice.clip_id)
                if current is not None and current.generation == voice.generation:
                    del self._voices[voice.clip_id]
                    ended.append(voice.clip_id)

        for clip_id in ended:
            self._emit(SoundEnded(sound_id=clip_id))

    def _mix(self, outdata: np.ndarray) -> List[Voice]:
        """Mix all current voices into outdata; return voices that just ran out."""
        outdata.fill(0)
        frames = outdata.shape[0]
        finished = []

        with self._lock:
            for voice in self._voices.values():
                remaining = voice.clip.duration_samples - voice.position
                if remaining <= 0:
                    continue
                take = min(frames, remaining)
                chunk = voice.clip.audio_data[voice.position:voice.position + take]
                outdata[:take] += chunk * voice.gain
                voice.position += take
                if voice.finished:
                    finished.append(voice)

        # Clip output to prevent distortion
        np.clip(outdata, -1.0, 1.0, out=outdata)
        return finished

    def render(self, frames: int) -> np.ndarray:
        """Render one block synchronously and process completions.

        Used when no output stream is running (offline rendering, tests).
        """
        outdata = np.zeros((frames, self.config.channels), dtype=np.float32)
        finished = self._mix(outdata)
        if finished:
            self._finish(finished)
        return outdata

    def _audio_callback(self, outdata: np.ndarray, frames: int,
                        time_info, status) -> None:
        """Internal callback called by sounddevice for output."""
        if status:
            logger.debug("Output stream status: %s", status)

        finished = self._mix(outdata)
        if finished and self._loop is not None:
            self._loop.call_soon_threadsafe(self._finish, finished)

    # === Output stream ===

    def start(self) -> bool:
        """Open the audio output stream. Must be called from the event loop."""
        if self.stream is not None:
            return True

        self._loop = asyncio.get_running_loop()

        stream_kwargs = {
            'samplerate': self.config.sample_rate,
            'blocksize': self.config.buffer_size,
            'channels': self.config.channels,
            'dtype': 'float32',
            'callback': self._audio_callback
        }
        if self.config.device is not None:
            stream_kwargs['device'] = self.config.device

        try:
            import sounddevice as sd
        except OSError as e:
            # Raised when the PortAudio shared library is missing
            logger.error("Audio output unavailable: %s", e)
            return False

        try:
            self.stream = sd.OutputStream(**stream_kwargs)
            self.stream.start()
        except sd.PortAudioError as e:
            logger.error("Failed to start audio output: %s", e)
            self.stream = None
            return False

        device_name = f"device {self.config.device}" if self.config.device is not None else "default device"
        logger.info("Audio output started on %s: %dHz, buffer=%d samples",
                    device_name, self.config.sample_rate, self.config.buffer_size)
        return True

    async def stop(self):
        """Close the output stream and cancel pending loads."""
        for task in list(self._load_tasks.values()):
            task.cancel()
        if self._load_tasks:
            await asyncio.gather(*self._load_tasks.values(), return_exceptions=True)

        if self.stream is not None:
            import sounddevice as sd
            try:
                self.stream.stop()
                self.stream.close()
            except sd.PortAudioError as e:
                logger.warning("Error stopping audio stream: %s", e)
            self.stream = None

        with self._lock:
            self._voices.clear()
        logger.info("Audio output stopped")

    @staticmethod
    def list_output_devices() -> List[dict]:
        """List available audio output devices."""
        import sounddevice as sd
        devices = sd.query_devices()
        output_devices = []
        for i, dev in enumerate(devices):
            if dev['max_output_channels'] > 0:
                output_devices.append({
                    'id': i,
                    'name': dev['name'],
                    'channels': dev['max_output_channels'],
                    'sample_rate': dev['default_samplerate']
                })
        return output_devices
