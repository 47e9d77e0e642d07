"""
Tests for the storage backends.
"""

import pytest

from ntuple.exceptions import StorageError
from ntuple.training.storage import FileStorage, MemoryStorage


@pytest.fixture(params=['file', 'memory'])
def storage(request, tmp_path):
    if request.param == 'file':
        return FileStorage(tmp_path)
    return MemoryStorage()


class TestStorage:
    """Behaviour shared by every backend."""

    def test_write_and_read(self, storage):
        storage.write_atomic('weights.json', b'{}')
        assert storage.exists('weights.json')
        assert storage.read_all('weights.json') == b'{}'

    def test_overwrite(self, storage):
        storage.write_atomic('a', b'old')
        storage.write_atomic('a', b'new')
        assert storage.read_all('a') == b'new'

    def test_missing(self, storage):
        assert storage.read_all('missing') is None
        assert not storage.exists('missing')
        assert not storage.delete('missing')

    def test_delete(self, storage):
        storage.write_atomic('a', b'1')
        assert storage.delete('a')
        assert not storage.exists('a')

    def test_list_prefix(self, storage):
        for name in ('ckpt.emergency.2.json', 'ckpt.emergency.1.json', 'ckpt.json'):
            storage.write_atomic(name, b'1')
        assert storage.list('ckpt.emergency.') == ['ckpt.emergency.1.json', 'ckpt.emergency.2.json']


class TestFileStorage:
    """Tests specific to files."""

    def test_no_temporary_files_left(self, tmp_path):
        storage = FileStorage(tmp_path)
        storage.write_atomic('run/weights.json', b'data')
        assert [path.name for path in (tmp_path / 'run').iterdir()] == ['weights.json']

    def test_write_failure(self, tmp_path):
        """A write into a path blocked by a file raises StorageError."""
        (tmp_path / 'blocked').write_bytes(b'')
        with pytest.raises(StorageError):
            FileStorage(tmp_path).write_atomic('blocked/weights.json', b'data')

    def test_list_missing_directory(self, tmp_path):
        assert FileStorage(tmp_path / 'nowhere').list() == []
