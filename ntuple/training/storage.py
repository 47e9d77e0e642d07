"""
Durable storage of named byte blobs.
"""

from __future__ import annotations

import logging
import os
import tempfile
from abc import ABC, abstractmethod
from pathlib import Path

from ntuple.exceptions import StorageError

logger = logging.getLogger(__name__)


class Storage(ABC):
    """Read and atomically write named byte blobs."""

    @abstractmethod
    def write_atomic(self, name: str, data: bytes) -> None:
        """Replace ``name`` with ``data``; readers see either the old or the new content."""

    @abstractmethod
    def read_all(self, name: str) -> bytes | None:
        """Content of ``name``, or None when it does not exist."""

    @abstractmethod
    def exists(self, name: str) -> bool:
        """Whether ``name`` exists."""

    @abstractmethod
    def delete(self, name: str) -> bool:
        """Remove ``name``; returns whether something was removed."""

    @abstractmethod
    def list(self, prefix: str = '') -> list[str]:
        """Names starting with ``prefix``, sorted."""


class FileStorage(Storage):
    """
    Files under a root directory, written through a temporary file and ``os.replace``.

    Parameters
    ----------
    root : str | Path
        Directory holding the blobs; names may contain sub-directories.
    """

    def __init__(self, root: str | Path = '.'):
        self.root = Path(root)

    def _path(self, name: str) -> Path:
        return self.root / name

    def write_atomic(self, name: str, data: bytes) -> None:
        path = self._path(name)
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            descriptor, temporary = tempfile.mkstemp(dir=path.parent, prefix=f'.{path.name}.', suffix='.tmp')
            try:
                with os.fdopen(descriptor, 'wb') as handle:
                    handle.write(data)
                    handle.flush()
                    os.fsync(handle.fileno())
                os.replace(temporary, path)
            except BaseException:
                Path(temporary).unlink(missing_ok=True)
                raise
        except OSError as error:
            raise StorageError(f'Cannot write {path}: {error}') from error
        logger.debug('Wrote %d bytes to %s', len(data), path)

    def read_all(self, name: str) -> bytes | None:
        path = self._path(name)
        try:
            return path.read_bytes()
        except FileNotFoundError:
            return None
        except OSError as error:
            raise StorageError(f'Cannot read {path}: {error}') from error

    def exists(self, name: str) -> bool:
        return self._path(name).is_file()

    def delete(self, name: str) -> bool:
        path = self._path(name)
        try:
            path.unlink()
        except FileNotFoundError:
            return False
        except OSError as error:
            raise StorageError(f'Cannot delete {path}: {error}') from error
        return True

    def list(self, prefix: str = '') -> list[str]:
        directory = self._path(prefix).parent if prefix else self.root
        if not directory.is_dir():
            return []
        names = (str(path.relative_to(self.root)) for path in directory.iterdir() if path.is_file())
        return sorted(name for name in names if name.startswith(prefix))


class MemoryStorage(Storage):
    """In-process storage, handy for tests and dry runs."""

    def __init__(self):
        self.blobs: dict[str, bytes] = {}

    def write_atomic(self, name: str, data: bytes) -> None:
        self.blobs[name] = bytes(data)

    def read_all(self, name: str) -> bytes | None:
        return self.blobs.get(name)

    def exists(self, name: str) -> bool:
        return name in self.blobs

    def delete(self, name: str) -> bool:
        return self.blobs.pop(name, None) is not None

    def list(self, prefix: str = '') -> list[str]:
        return sorted(name for name in self.blobs if name.startswith(prefix))
