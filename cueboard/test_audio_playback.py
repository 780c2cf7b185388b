"""
Playback engine tests.

No audio device is opened: clips come from an in-memory loader and the mixer
is driven with render().
"""

import asyncio

import numpy as np
import pytest

from .audio_playback import ClipState, PlaybackEngine
from .clip_loader import ClipData, ClipLoader
from .config import PlaybackConfig
from .errors import ClipLoadFailure
from .messages import SettingChanged, SoundEnded, SoundStarted
from .settings_store import GlobalSettings, SettingsPatch

KICK = 'sound-kick.wav'
SNARE = 'sound-snare.wav'
HAT = 'sound-hat.wav'


class MemoryLoader(ClipLoader):
    """Serves constant-amplitude clips; ids missing from `lengths` fail to load."""

    def __init__(self, lengths, amplitude=0.5):
        super().__init__(sample_rate=44100, channels=2)
        self.lengths = lengths
        self.amplitude = amplitude
        self.loads = []
        self.gate = None

    async def load(self, clip_id):
        self.loads.append(clip_id)
        if self.gate is not None:
            await self.gate.wait()
        if clip_id not in self.lengths:
            raise ClipLoadFailure(clip_id, 'decode failed')
        audio = np.full((self.lengths[clip_id], 2), self.amplitude, dtype=np.float32)
        return ClipData(clip_id=clip_id, audio_data=audio, sample_rate=44100)


@pytest.fixture
def loader():
    return MemoryLoader({KICK: 1000, SNARE: 2000, HAT: 500})


@pytest.fixture
def events():
    return []


@pytest.fixture
def engine(loader, events):
    e = PlaybackEngine(loader, PlaybackConfig(channels=2))
    e.set_event_callback(events.append)
    return e


async def play_and_wait(engine, clip_id):
    task = engine.play(clip_id)
    if task is not None:
        await task


async def test_unloaded_clip_loads_then_starts_once(engine, loader, events):
    task = engine.play(KICK)
    assert engine.state(KICK) == ClipState.LOADING
    await task

    assert engine.state(KICK) == ClipState.READY
    assert events == [SoundStarted(KICK)]
    assert engine.is_playing(KICK)
    assert loader.loads == [KICK]


async def test_repeated_play_while_loading_starts_once(engine, loader, events):
    loader.gate = asyncio.Event()
    first = engine.play(KICK)
    second = engine.play(KICK)
    assert first is second

    loader.gate.set()
    await first

    assert loader.loads == [KICK]
    assert events == [SoundStarted(KICK)]


async def test_failed_load_emits_nothing_and_can_retry(engine, loader, events):
    await play_and_wait(engine, 'sound-broken.wav')

    assert events == []
    assert engine.state('sound-broken.wav') == ClipState.UNLOADED
    assert not engine.is_playing('sound-broken.wav')

    # A later play starts a fresh load
    await play_and_wait(engine, 'sound-broken.wav')
    assert loader.loads == ['sound-broken.wav', 'sound-broken.wav']


async def test_retrigger_replaces_voice(engine, events):
    await play_and_wait(engine, KICK)
    engine.render(600)
    engine.play(KICK)

    assert engine.get_active_clips() == [KICK]
    assert events == [SoundStarted(KICK), SoundStarted(KICK)]

    # The new voice restarts from the top, so 600 more frames do not end it
    engine.render(600)
    assert engine.is_playing(KICK)
    block = engine.render(600)
    assert events == [SoundStarted(KICK), SoundStarted(KICK), SoundEnded(KICK)]
    # One voice only: output never exceeds a single clip's level
    assert np.max(block) <= 0.5 + 1e-6


async def test_stale_completion_is_ignored(engine, events):
    await play_and_wait(engine, HAT)

    # The audio thread finishes the old voice while a retrigger is in flight
    finished = engine._mix(np.zeros((500, 2), dtype=np.float32))
    engine.play(HAT)
    engine._finish(finished)

    assert SoundEnded(HAT) not in events
    assert engine.is_playing(HAT)


async def test_natural_end_reported_once(engine, events):
    await play_and_wait(engine, HAT)
    engine.render(512)
    engine.render(512)

    assert events.count(SoundEnded(HAT)) == 1
    assert not engine.is_playing(HAT)


async def test_effective_gain_follows_volume_changes(engine):
    await play_and_wait(engine, KICK)
    await play_and_wait(engine, SNARE)
    assert engine.effective_gain(KICK) == pytest.approx(1.0)

    engine.set_volume(KICK, 0.5)
    assert engine.effective_gain(KICK) == pytest.approx(0.5)

    engine.set_master_volume(0.4)
    assert engine.effective_gain(KICK) == pytest.approx(0.2)
    assert engine.effective_gain(SNARE) == pytest.approx(0.4)

    engine.stop_all()
    engine.set_volume(SNARE, 0.5)
    await play_and_wait(engine, SNARE)
    assert engine.effective_gain(SNARE) == pytest.approx(0.2)


async def test_render_applies_gain(engine):
    engine.set_master_volume(0.5)
    await play_and_wait(engine, KICK)
    block = engine.render(100)
    np.testing.assert_allclose(block, 0.25, rtol=1e-6)


async def test_stop_all_ends_each_playing_clip_once(engine, events):
    await play_and_wait(engine, KICK)
    await play_and_wait(engine, SNARE)
    await play_and_wait(engine, HAT)
    engine.render(500)  # hat runs out naturally
    events.clear()

    stopped = engine.stop_all()

    assert sorted(stopped) == [KICK, SNARE]
    assert sorted(e.sound_id for e in events) == [KICK, SNARE]
    assert all(isinstance(e, SoundEnded) for e in events)
    assert engine.get_active_clips() == []
    assert not engine.render(100).any()


async def test_stop_all_drops_queued_play(engine, loader, events):
    loader.gate = asyncio.Event()
    task = engine.play(KICK)
    engine.stop_all()
    loader.gate.set()
    await task

    assert engine.state(KICK) == ClipState.READY
    assert events == []


async def test_unknown_clip_ignored_when_catalog_known(engine, loader):
    engine.set_catalog([KICK])
    assert engine.play('sound-nope.wav') is None
    assert loader.loads == []


async def test_settings_snapshot_and_changes(engine):
    settings = SettingsPatch.for_clip(KICK, volume=0.5).apply_to(GlobalSettings(master_volume=0.8))
    engine.apply_settings(settings)
    await play_and_wait(engine, KICK)
    assert engine.effective_gain(KICK) == pytest.approx(0.4)

    engine.apply_setting_change(SettingChanged('masterVolume', 0.5))
    assert engine.effective_gain(KICK) == pytest.approx(0.25)

    engine.apply_setting_change(SettingChanged('volume', 1.0, KICK))
    assert engine.effective_gain(KICK) == pytest.approx(0.5)

    # Colors and layout do not affect audio
    engine.apply_setting_change(SettingChanged('color', '#dc3545', KICK))
    engine.apply_setting_change(SettingChanged('columns', 4))
    assert engine.effective_gain(KICK) == pytest.approx(0.5)


async def test_slow_load_does_not_hold_up_other_clips(engine, loader, events):
    await play_and_wait(engine, SNARE)
    events.clear()

    loader.gate = asyncio.Event()
    task = engine.play(KICK)
    await asyncio.sleep(0)
    engine.play(SNARE)

    assert engine.state(KICK) == ClipState.LOADING
    assert events == [SoundStarted(SNARE)]
    assert engine.is_playing(SNARE)

    loader.gate.set()
    await task
    assert events == [SoundStarted(SNARE), SoundStarted(KICK)]
