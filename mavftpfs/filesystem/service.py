"""Module that exposes a local directory as flight controller storage over RPC."""

import errno
import functools
import os
import os.path
import stat
import threading
from typing import Any, Callable, List, Set

from mavftpfs.constants import PROTOCOL_VERSION
from mavftpfs.filesystem.common import (
    Chunk,
    EntryType,
    FileEntry,
    OpenMode,
    ProtocolError,
    Session,
)

OPEN_FLAGS = {
    OpenMode.READ: os.O_RDONLY,
    OpenMode.WRITE: os.O_WRONLY,
    OpenMode.CREATE: os.O_WRONLY | os.O_CREAT | os.O_TRUNC,
    OpenMode.APPEND: os.O_WRONLY | os.O_APPEND,
}


def _protocol_errors(fn: Callable[..., Any]) -> Callable[..., Any]:
    """Report local I/O errors the way the remote storage does, as errno codes."""

    @functools.wraps(fn)
    def wrapper(*args: Any, **kwargs: Any) -> Any:
        try:
            return fn(*args, **kwargs)
        except OSError as e:
            raise ProtocolError(e.errno or errno.EIO)

    return wrapper


class LocalStorageService:
    """
    RPC service that offers the file operations of flight controller storage.

    The operations mirror what the storage of a flight controller supports: directory
    listings that only report names, types and sizes, file sessions with a position that
    is moved explicitly, and a handful of structural operations. All failures are
    reported as ProtocolError with an errno code.

    It is backed by a local directory, which makes it usable on a companion computer
    that mirrors the flight controller's storage and as a simulated device for testing.
    Paths are interpreted relative to the root directory and can't escape it.
    """

    def __init__(self, root: str) -> None:
        """Instantiate service for the given root directory."""
        self._root = os.path.abspath(root)

        self._sessions: Set[int] = set()
        self._sessions_lock = threading.Lock()

    @staticmethod
    def protocol_version() -> str:
        return PROTOCOL_VERSION

    #
    # File sessions
    #

    @_protocol_errors
    def open(self, path: str, mode: str) -> Session:
        try:
            flags = OPEN_FLAGS[OpenMode(mode)]
        except ValueError:
            raise ProtocolError(errno.EINVAL, f"unsupported open mode '{mode}'")

        fh = os.open(self._local_path(path), flags, 0o644)

        try:
            st = os.fstat(fh)

            if stat.S_ISDIR(st.st_mode):
                raise IsADirectoryError(errno.EISDIR, os.strerror(errno.EISDIR))
        except OSError:
            os.close(fh)
            raise

        with self._sessions_lock:
            self._sessions.add(fh)

        return Session(fh=fh, size=st.st_size)

    @_protocol_errors
    def seek(self, fh: int, offset: int) -> None:
        os.lseek(self._session(fh), offset, os.SEEK_SET)

    @_protocol_errors
    def read(self, fh: int, size: int) -> Chunk:
        return Chunk.from_data(os.read(self._session(fh), size))

    @_protocol_errors
    def write(self, fh: int, chunk: Chunk) -> int:
        return os.write(self._session(fh), chunk.data)

    @_protocol_errors
    def truncate(self, fh: int, length: int) -> None:
        os.ftruncate(self._session(fh), length)

    @_protocol_errors
    def close(self, fh: int) -> None:
        with self._sessions_lock:
            if fh not in self._sessions:
                raise ProtocolError(errno.EBADF)

            self._sessions.remove(fh)

        os.close(fh)

    #
    # Directory listings
    #

    @_protocol_errors
    def listdir(self, path: str) -> List[FileEntry]:
        entries = []

        with os.scandir(self._local_path(path)) as it:
            for entry in it:
                if entry.is_dir(follow_symlinks=False):
                    entries.append(FileEntry(entry.name, EntryType.DIRECTORY))
                elif entry.is_file(follow_symlinks=False):
                    size = entry.stat(follow_symlinks=False).st_size
                    entries.append(FileEntry(entry.name, EntryType.FILE, size))

        return sorted(entries, key=lambda e: e.name)

    #
    # File system structure
    #

    @_protocol_errors
    def mkdir(self, path: str) -> None:
        os.mkdir(self._local_path(path))

    @_protocol_errors
    def rmdir(self, path: str) -> None:
        os.rmdir(self._local_path(path))

    @_protocol_errors
    def unlink(self, path: str) -> None:
        os.unlink(self._local_path(path))

    @_protocol_errors
    def rename(self, old: str, new: str) -> None:
        os.rename(self._local_path(old), self._local_path(new))

    #
    # Helpers
    #

    def _local_path(self, path: str) -> str:
        """Map a storage path onto the root directory."""
        if not path.startswith("/"):
            raise ProtocolError(errno.EINVAL, f"relative path '{path}'")

        local_path = os.path.normpath(os.path.join(self._root, path.lstrip("/")))

        if os.path.commonpath([local_path, self._root]) != self._root:
            raise ProtocolError(errno.EACCES, f"path '{path}' is outside of storage")

        return local_path

    def _session(self, fh: int) -> int:
        """Check that a file handle belongs to an open session."""
        with self._sessions_lock:
            if fh not in self._sessions:
                raise ProtocolError(errno.EBADF)

        return fh
