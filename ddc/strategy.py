"""Output layout and archiving for a collection run.

Every artifact lives under ``<tmp_dir>/<base_dir>/<role>s/<node>/<kind>`` so
two jobs collecting the same kind for different nodes or roles never write
the same path.
"""

import gzip
import logging
import os
import shutil
import tarfile
import threading
from datetime import datetime
from typing import Iterable, List, Optional
from .errors import ArchiveError
from .fs import FileSystem
from .models import CollectedFile, Role

logger = logging.getLogger(__name__)

BASE_DIR_FORMAT = "%Y%m%d-%H%M%S-DDC"


def _add_entry(tar: tarfile.TarFile, fs: FileSystem, path: str, name: str) -> None:
    info = fs.stat(path)
    entry = tarfile.TarInfo(name)
    entry.mtime = int(info.mtime)
    entry.mode = info.mode
    if info.is_dir:
        entry.type = tarfile.DIRTYPE
        tar.addfile(entry)
        return
    entry.size = info.size
    with fs.open(path) as f:
        tar.addfile(entry, f)


def _arcname(rel: str) -> str:
    rel = rel.replace(os.sep, "/")
    if rel in ("", "."):
        return "."
    return "./" + rel


def tar_gz_dir(fs: FileSystem, src_dir: str, dest: str) -> None:
    """Write ``src_dir`` to a gzip compressed tarball at ``dest``.

    Entry names are relative to ``src_dir`` and start with ``./``. Empty
    directories are kept.
    """
    src_dir = os.path.normpath(src_dir)
    with fs.create(dest) as out:
        with tarfile.open(fileobj=out, mode="w:gz") as tar:
            stack = [src_dir]
            while stack:
                current = stack.pop(0)
                _add_entry(tar, fs, current, _arcname(os.path.relpath(current, src_dir)))
                if not fs.stat(current).is_dir:
                    continue
                children = [os.path.join(current, name) for name in fs.read_dir(current)]
                stack[0:0] = children


def gzip_file(fs: FileSystem, src: str, dst: str) -> None:
    """Gzip ``src`` into ``dst`` without touching ``src``."""
    with fs.open(src) as reader, fs.create(dst) as raw:
        with gzip.GzipFile(filename=os.path.basename(src), mode="wb", fileobj=raw) as writer:
            shutil.copyfileobj(reader, writer)


class CopyStrategy:
    """Lays out collected files for one run and archives them."""

    def __init__(self, fs: FileSystem, now: Optional[datetime] = None, tmp_dir: Optional[str] = None):
        self.fs = fs
        self.base_dir = (now or datetime.now()).strftime(BASE_DIR_FORMAT)
        self.tmp_dir = tmp_dir or fs.temp_dir()
        self._files: List[CollectedFile] = []
        self._lock = threading.Lock()

    @property
    def output_dir(self) -> str:
        return os.path.join(self.tmp_dir, self.base_dir)

    def create_path(self, kind: str, node: str, role: str) -> str:
        """Return (and create) the directory for ``kind`` collected from ``node``.

        Raises:
            ValueError: ``role`` is not a coordinator or executor role
        """
        role_dir = Role.parse(role).directory
        path = os.path.join(self.output_dir, role_dir, node, kind)
        self.fs.mkdir_all(path, 0o750)
        return path

    def record_file(self, path: str, size: int) -> None:
        with self._lock:
            self._files.append(CollectedFile(path=path, size=size))

    @property
    def collected_files(self) -> List[CollectedFile]:
        with self._lock:
            return list(self._files)

    def archive(self, label: str, destination: str, files: Optional[Iterable[CollectedFile]] = None) -> None:
        """Package the run into a tar.gz at ``destination``.

        Without ``files`` the whole output directory is archived. With
        ``files`` only those are included, named relative to the output
        directory when they live under it.

        Raises:
            ArchiveError: the archive could not be written
        """
        recorded = self.collected_files
        logger.info("archiving %s to %s (%d files recorded)", label, destination, len(recorded))
        try:
            if files is None:
                self.fs.mkdir_all(self.output_dir)
                tar_gz_dir(self.fs, self.output_dir, destination)
            else:
                self._archive_files(list(files), destination)
        except (OSError, tarfile.TarError) as e:
            raise ArchiveError(
                f"unable to create archive {destination} for {label}, output left in {self.output_dir}: {e}"
            ) from e

    def _archive_files(self, files: List[CollectedFile], destination: str) -> None:
        root = os.path.normpath(self.output_dir)
        with self.fs.create(destination) as out:
            with tarfile.open(fileobj=out, mode="w:gz") as tar:
                for collected in files:
                    path = os.path.normpath(collected.path)
                    if path.startswith(root + os.sep):
                        rel = os.path.relpath(path, root)
                    else:
                        rel = os.path.basename(path)
                    _add_entry(tar, self.fs, path, _arcname(rel))

    def compress_file(self, src: str, dst: str) -> None:
        """Gzip a single large artifact such as a heap dump."""
        gzip_file(self.fs, src, dst)
