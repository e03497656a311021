import pytest

from pet_identification.storage import InMemoryKeyValueStore, JsonFileKeyValueStore


def test_in_memory_store():
    store = InMemoryKeyValueStore({'a': '1'})

    assert store.get('a') == '1'
    store.set('b', '2')
    store.remove('a')
    store.remove('missing')

    assert store.get('a') is None
    assert store.get('b') == '2'


def test_json_file_store_persists_across_instances(tmp_path):
    path = tmp_path / "nested" / "storage.json"
    JsonFileKeyValueStore(path).set('pair-array', '[]')

    reopened = JsonFileKeyValueStore(path)
    assert reopened.get('pair-array') == '[]'

    reopened.remove('pair-array')
    assert JsonFileKeyValueStore(path).get('pair-array') is None


def test_json_file_store_rejects_non_object(tmp_path):
    path = tmp_path / "storage.json"
    path.write_text('[1, 2]')

    with pytest.raises(ValueError):
        JsonFileKeyValueStore(path).get('anything')
