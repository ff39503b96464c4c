"""File system access used by collection and archiving.

``RealFileSystem`` works on disk. ``FakeFileSystem`` keeps everything in
memory so layout and archive logic can be tested without touching disk.
"""

import io
import os
import posixpath
import shutil
import tempfile
import threading
import time
from abc import ABC, abstractmethod
from typing import BinaryIO, Dict, List, NamedTuple, Optional, Set


class FileInfo(NamedTuple):
    name: str
    size: int
    is_dir: bool
    mtime: float
    mode: int


class FileSystem(ABC):
    """Operations the collector needs from a file system."""

    @abstractmethod
    def stat(self, path: str) -> FileInfo:
        """Raises FileNotFoundError when ``path`` does not exist."""

    @abstractmethod
    def create(self, path: str) -> BinaryIO:
        """Open ``path`` for writing, truncating it."""

    @abstractmethod
    def open(self, path: str) -> BinaryIO:
        """Open ``path`` for reading."""

    @abstractmethod
    def mkdir_all(self, path: str, mode: int = 0o750) -> None:
        """Create ``path`` and any missing parents."""

    @abstractmethod
    def read_dir(self, path: str) -> List[str]:
        """Sorted entry names in ``path``."""

    @abstractmethod
    def remove(self, path: str) -> None:
        """Delete a file."""

    @abstractmethod
    def rename(self, src: str, dst: str) -> None:
        """Move a file."""

    @abstractmethod
    def temp_dir(self) -> str:
        """A fresh directory for staging a run's output."""


class RealFileSystem(FileSystem):
    """The local disk."""

    def stat(self, path: str) -> FileInfo:
        st = os.stat(path)
        return FileInfo(os.path.basename(path), st.st_size, os.path.isdir(path), st.st_mtime, st.st_mode & 0o777)

    def create(self, path: str) -> BinaryIO:
        return open(path, "wb")

    def open(self, path: str) -> BinaryIO:
        return open(path, "rb")

    def mkdir_all(self, path: str, mode: int = 0o750) -> None:
        os.makedirs(path, mode=mode, exist_ok=True)

    def read_dir(self, path: str) -> List[str]:
        return sorted(os.listdir(path))

    def remove(self, path: str) -> None:
        os.remove(path)

    def rename(self, src: str, dst: str) -> None:
        shutil.move(src, dst)

    def temp_dir(self) -> str:
        return tempfile.mkdtemp(prefix="ddc-")


class _FakeWriter(io.BytesIO):
    """Buffer that stores its contents in the fake file system on close."""

    def __init__(self, fs: "FakeFileSystem", path: str):
        super().__init__()
        self._fs = fs
        self._path = path

    def close(self) -> None:
        if not self.closed:
            self._fs._store(self._path, self.getvalue())
        super().close()


class FakeFileSystem(FileSystem):
    """In-memory file system with POSIX style paths."""

    TEMP_DIR = posixpath.join("tmp", "dir1", "random")

    def __init__(self):
        self.files: Dict[str, bytes] = {}
        self.dirs: Set[str] = set()
        self._mtimes: Dict[str, float] = {}
        self._lock = threading.Lock()

    @staticmethod
    def _norm(path: str) -> str:
        return posixpath.normpath(path)

    def _store(self, path: str, data: bytes) -> None:
        with self._lock:
            self.files[path] = data
            self._mtimes[path] = time.time()

    def write_file(self, path: str, data: bytes, mtime: Optional[float] = None) -> None:
        """Test helper: add a file and its parent directories."""
        path = self._norm(path)
        self.mkdir_all(posixpath.dirname(path))
        self._store(path, data)
        if mtime is not None:
            self._mtimes[path] = mtime

    def stat(self, path: str) -> FileInfo:
        path = self._norm(path)
        with self._lock:
            if path in self.files:
                return FileInfo(posixpath.basename(path), len(self.files[path]), False, self._mtimes[path], 0o640)
            if path in self.dirs:
                return FileInfo(posixpath.basename(path), 0, True, 0.0, 0o750)
        raise FileNotFoundError(path)

    def create(self, path: str) -> BinaryIO:
        path = self._norm(path)
        parent = posixpath.dirname(path)
        if parent and parent not in self.dirs:
            raise FileNotFoundError(parent)
        return _FakeWriter(self, path)

    def open(self, path: str) -> BinaryIO:
        path = self._norm(path)
        with self._lock:
            if path not in self.files:
                raise FileNotFoundError(path)
            return io.BytesIO(self.files[path])

    def mkdir_all(self, path: str, mode: int = 0o750) -> None:
        path = self._norm(path)
        with self._lock:
            while path not in ("", ".", "/"):
                self.dirs.add(path)
                path = posixpath.dirname(path)

    def read_dir(self, path: str) -> List[str]:
        path = self._norm(path)
        with self._lock:
            if path not in self.dirs:
                raise FileNotFoundError(path)
            names = {
                posixpath.basename(p)
                for p in list(self.files) + list(self.dirs)
                if posixpath.dirname(p) == path
            }
        return sorted(names)

    def remove(self, path: str) -> None:
        path = self._norm(path)
        with self._lock:
            if path not in self.files:
                raise FileNotFoundError(path)
            del self.files[path]
            del self._mtimes[path]

    def rename(self, src: str, dst: str) -> None:
        data = self.open(src).read()
        self.remove(src)
        self.write_file(dst, data)

    def temp_dir(self) -> str:
        self.mkdir_all(self.TEMP_DIR)
        return self.TEMP_DIR
