"""
Settings store tests.

Covers:
1. Defaults are created when the settings file is missing
2. Patches change exactly the patched fields and are idempotent
3. A failed write leaves the previous settings in effect
4. Unparseable files are reported instead of overwritten
"""

import json
import os
import stat
import threading

import pytest

from .errors import CorruptState, MalformedMessage, PersistenceError
from .messages import SettingChanged, UpdateSetting
from .settings_store import (
    DEFAULT_COLUMNS, DEFAULT_MASTER_VOLUME, ClipSettings, GlobalSettings, SettingsPatch,
    SettingsStore, patches_from_document,
)


@pytest.fixture
def store(tmp_path):
    s = SettingsStore(str(tmp_path / 'settings.json'))
    s.load()
    return s


def read_file(store):
    with open(store.path) as f:
        return json.load(f)


def test_missing_file_creates_defaults(tmp_path):
    path = tmp_path / 'nested' / 'settings.json'
    store = SettingsStore(str(path))
    settings = store.load()

    assert settings.master_volume == DEFAULT_MASTER_VOLUME
    assert settings.columns == DEFAULT_COLUMNS
    assert dict(settings.sounds) == {}
    assert json.loads(path.read_text()) == {
        'masterVolume': DEFAULT_MASTER_VOLUME,
        'columns': DEFAULT_COLUMNS,
        'sounds': {}
    }


def test_load_existing_document(tmp_path):
    path = tmp_path / 'settings.json'
    path.write_text(json.dumps({
        'masterVolume': 0.8,
        'columns': 4,
        'sounds': {'sound-kick.wav': {'volume': 0.5, 'color': '#dc3545'}}
    }))
    settings = SettingsStore(str(path)).load()

    assert settings.master_volume == 0.8
    assert settings.columns == 4
    assert settings.clip('sound-kick.wav') == ClipSettings(volume=0.5, color='#dc3545')
    assert settings.clip('sound-unknown.wav') == ClipSettings()


def test_corrupt_json_is_not_overwritten(tmp_path):
    path = tmp_path / 'settings.json'
    path.write_text('{"masterVolume": ')

    with pytest.raises(CorruptState):
        SettingsStore(str(path)).load()
    assert path.read_text() == '{"masterVolume": '


def test_invalid_schema_is_corrupt(tmp_path):
    path = tmp_path / 'settings.json'
    path.write_text(json.dumps({'columns': 'three'}))

    with pytest.raises(CorruptState):
        SettingsStore(str(path)).load()


def test_patch_changes_only_patched_fields(store):
    store.apply_patch(SettingsPatch.for_clip('sound-snare.wav', color='#28a745'))
    changes = store.apply_patch(SettingsPatch.for_clip('sound-kick.wav', volume=0.5))

    assert changes == [SettingChanged(setting='volume', value=0.5, sound_id='sound-kick.wav')]
    settings = store.get()
    assert settings.clip('sound-kick.wav').volume == 0.5
    assert settings.clip('sound-kick.wav').color is None
    assert settings.clip('sound-snare.wav') == ClipSettings(volume=1.0, color='#28a745')
    assert settings.master_volume == DEFAULT_MASTER_VOLUME
    assert settings.columns == DEFAULT_COLUMNS


def test_patch_merges_fields_of_one_clip(store):
    store.apply_patch(SettingsPatch.for_clip('sound-kick.wav', volume=0.3))
    store.apply_patch(SettingsPatch.for_clip('sound-kick.wav', color='#ffc107'))

    assert store.get().clip('sound-kick.wav') == ClipSettings(volume=0.3, color='#ffc107')


def test_identical_patch_is_idempotent(store):
    patch = SettingsPatch.for_global(masterVolume=0.25, columns=5)
    store.apply_patch(patch)
    first = store.get().to_dict()
    store.apply_patch(patch)

    assert store.get().to_dict() == first
    assert read_file(store) == first


def test_patch_is_persisted_before_snapshot_changes(store):
    store.apply_patch(SettingsPatch.for_global(columns=6))
    assert read_file(store)['columns'] == 6
    assert SettingsStore(str(store.path)).load().columns == 6


def test_failed_write_keeps_previous_settings(store, monkeypatch):
    store.apply_patch(SettingsPatch.for_global(masterVolume=0.5))

    def fail_replace(src, dst):
        raise OSError(28, 'No space left on device')

    monkeypatch.setattr(os, 'replace', fail_replace)
    with pytest.raises(PersistenceError):
        store.apply_patch(SettingsPatch.for_global(masterVolume=0.9))

    assert store.get().master_volume == 0.5
    assert read_file(store)['masterVolume'] == 0.5
    # The temp file is cleaned up
    assert [p.name for p in store.path.parent.iterdir()] == ['settings.json']


def test_from_update_message(store):
    update = UpdateSetting(setting='volume', value=0.7, sound_id='sound-hat.wav')
    store.apply_patch(SettingsPatch.from_update(update))
    assert store.get().clip('sound-hat.wav').volume == 0.7


def test_volume_values_are_clamped():
    patch = SettingsPatch.for_clip('sound-kick.wav', volume=1.5)
    assert patch.apply_to(GlobalSettings()).clip('sound-kick.wav').volume == 1.0


def test_invalid_patch_values_rejected():
    with pytest.raises(MalformedMessage):
        SettingsPatch.for_global(columns=0)
    with pytest.raises(MalformedMessage):
        SettingsPatch.for_global(volume=0.5)
    with pytest.raises(MalformedMessage):
        SettingsPatch.for_clip('sound-kick.wav', masterVolume=0.5)


def test_document_update(store):
    settings = store.apply_document({
        'columns': 4,
        'sounds': {'sound-kick.wav': {'volume': 0.2, 'color': '#17a2b8'}}
    })

    assert settings.columns == 4
    assert settings.clip('sound-kick.wav') == ClipSettings(volume=0.2, color='#17a2b8')
    assert read_file(store)['sounds'] == {'sound-kick.wav': {'volume': 0.2, 'color': '#17a2b8'}}


def test_document_with_unknown_keys_rejected(store):
    with pytest.raises(MalformedMessage):
        store.apply_document({'theme': 'dark'})
    with pytest.raises(MalformedMessage):
        patches_from_document(['columns', 3])
    assert store.get().to_dict() == GlobalSettings().to_dict()


def test_out_of_range_stored_values_are_corrupt(tmp_path):
    path = tmp_path / 'settings.json'
    path.write_text(json.dumps({'masterVolume': 1.5, 'columns': 3, 'sounds': {}}))
    with pytest.raises(CorruptState):
        SettingsStore(str(path)).load()

    path.write_text(json.dumps({'sounds': {'sound-kick.wav': {'volume': -0.2}}}))
    with pytest.raises(CorruptState):
        SettingsStore(str(path)).load()


def test_concurrent_patches_are_all_kept(store):
    clip_ids = [f"sound-clip{i}.wav" for i in range(16)]
    start = threading.Barrier(len(clip_ids))
    errors = []

    def worker(index, clip_id):
        start.wait()
        try:
            for step in range(5):
                store.apply_patch(SettingsPatch.for_clip(clip_id, volume=(index + step) / 100))
        except Exception as e:
            errors.append(e)

    threads = [threading.Thread(target=worker, args=(i, cid)) for i, cid in enumerate(clip_ids)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert errors == []
    expected = {cid: (i + 4) / 100 for i, cid in enumerate(clip_ids)}
    assert {cid: store.get().clip(cid).volume for cid in clip_ids} == expected

    reloaded = SettingsStore(str(store.path)).load()
    assert {cid: reloaded.clip(cid).volume for cid in clip_ids} == expected


def test_write_keeps_file_permissions(store):
    os.chmod(store.path, 0o664)
    store.apply_patch(SettingsPatch.for_global(columns=5))
    assert stat.S_IMODE(os.stat(store.path).st_mode) == 0o664


def test_new_file_is_not_private(tmp_path):
    store = SettingsStore(str(tmp_path / 'settings.json'))
    store.load()
    assert stat.S_IMODE(os.stat(store.path).st_mode) == 0o644
