"""
Wire message and clip id tests.
"""

import json

import pytest

from .catalog import ClipCatalog, ClipDescriptor, clip_id_for, name_for_clip_id
from .errors import MalformedMessage
from .messages import (
    Play, SettingChanged, SettingsInitialized, SettingsSaveFailed, SoundEnded, SoundStarted,
    StopAll, UpdateSetting, encode_message, parse_message,
)


# === Parsing ===

def test_parse_play():
    assert parse_message('{"action": "play", "soundId": "sound-kick.wav"}') == Play('sound-kick.wav')


def test_parse_stop_all_from_bytes():
    assert parse_message(b'{"action": "stopAll"}') == StopAll()


def test_parse_update_setting_global_and_clip():
    assert parse_message({'action': 'update_setting', 'setting': 'columns', 'value': 4}) == \
        UpdateSetting(setting='columns', value=4)
    assert parse_message({
        'action': 'update_setting', 'soundId': 'sound-kick.wav', 'setting': 'volume', 'value': 0.5
    }) == UpdateSetting(setting='volume', value=0.5, sound_id='sound-kick.wav')


def test_parse_update_setting_normalizes_values():
    message = parse_message({'action': 'update_setting', 'setting': 'masterVolume', 'value': 2})
    assert message.value == 1.0
    message = parse_message({'action': 'update_setting', 'setting': 'columns', 'value': 3.0})
    assert message.value == 3 and isinstance(message.value, int)


@pytest.mark.parametrize('raw', [
    'not json',
    '[1, 2, 3]',
    '{"action": ["play"], "soundId": "sound-kick.wav"}',
    '{"action": {"x": 1}}',
    pytest.param('[' * 100000 + ']' * 100000, id='deeply-nested'),
    '{"soundId": "sound-kick.wav"}',
    '{"action": "explode"}',
    '{"action": "play"}',
    '{"action": "play", "soundId": 7}',
    '{"action": "update_setting", "setting": "volume", "value": 0.5}',
    '{"action": "update_setting", "setting": "columns", "value": 0}',
    '{"action": "update_setting", "setting": "masterVolume", "value": true}',
    '{"action": "update_setting", "soundId": "sound-a.wav", "setting": "color", "value": 3}',
    '{"action": "update_setting", "setting": "columns"}',
    '{"action": "settings_initialized"}',
])
def test_malformed_messages(raw):
    with pytest.raises(MalformedMessage):
        parse_message(raw)


def test_encode_uses_wire_names():
    assert json.loads(encode_message(SoundStarted('sound-kick.wav'))) == \
        {'action': 'sound_started', 'soundId': 'sound-kick.wav'}
    assert json.loads(encode_message(SettingChanged('columns', 4))) == \
        {'action': 'setting_changed', 'setting': 'columns', 'value': 4}
    assert json.loads(encode_message(SettingsSaveFailed('volume', 'disk full', 'sound-a.wav'))) == \
        {'action': 'settings_save_failed', 'setting': 'volume', 'error': 'disk full',
         'soundId': 'sound-a.wav'}


def test_encoded_server_events_parse_back():
    for message in (SettingsInitialized({'columns': 3}), SoundEnded('sound-a.wav'),
                    SettingChanged('volume', 0.5, 'sound-a.wav')):
        assert parse_message(encode_message(message)) == message


# === Clip ids ===

def test_clip_id_matches_uri_component_encoding():
    assert clip_id_for('kick.wav') == 'sound-kick.wav'
    assert clip_id_for('air horn (long).mp3') == 'sound-air%20horn%20(long).mp3'
    assert clip_id_for('ü/x.wav') == 'sound-%C3%BC%2Fx.wav'


def test_clip_id_is_reversible():
    for name in ('kick.wav', 'air horn.mp3', '100%.ogg', 'a+b&c.flac'):
        assert name_for_clip_id(clip_id_for(name)) == name
    assert name_for_clip_id('kick.wav') is None


def test_descriptor_from_filename():
    clip = ClipDescriptor.from_filename('air horn.mp3')
    assert clip.id == 'sound-air%20horn.mp3'
    assert clip.display_name == 'air horn'


def test_catalog_lists_audio_files_sorted(tmp_path):
    for name in ('snare.wav', 'Kick.MP3', 'notes.txt', 'hat.ogg'):
        (tmp_path / name).write_bytes(b'')
    (tmp_path / 'folder.wav').mkdir()

    catalog = ClipCatalog(str(tmp_path))
    assert catalog.list_names() == ['Kick.MP3', 'hat.ogg', 'snare.wav']
    assert catalog.path_for('sound-snare.wav') == tmp_path / 'snare.wav'
    assert catalog.path_for('sound-missing.wav') is None
    assert catalog.path_for('sound-..%2Fsnare.wav') is None


def test_catalog_creates_missing_directory(tmp_path):
    catalog = ClipCatalog(str(tmp_path / 'sounds'))
    assert catalog.list_names() == []
    assert (tmp_path / 'sounds').is_dir()
