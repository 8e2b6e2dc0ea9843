"""Data structures and interfaces used by multiple file system components."""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass
from enum import Enum
import errno
import os
import stat
from typing import Any, Dict, List, Optional

import lz4.frame


class EntryType(str, Enum):
    """Kind of entry reported in a remote directory listing."""

    FILE = "file"
    DIRECTORY = "directory"


@dataclass(frozen=True)
class FileEntry:
    """Snapshot of a single entry in a remote directory listing."""

    name: str
    type: EntryType
    size: int = 0

    def __post_init__(self) -> None:
        # Deserialized entries carry the enum by value
        object.__setattr__(self, "type", EntryType(self.type))

        if self.size < 0:
            raise ValueError(f"negative size for entry '{self.name}'")


@dataclass(frozen=True)
class Attributes:
    """
    POSIX attributes synthesized for a remote file system entry.

    The remote storage only knows names, types and sizes, so permissions and ownership
    are filled in locally.
    """

    st_mode: int
    st_size: int
    st_uid: int
    st_gid: int
    st_nlink: int = 1

    @staticmethod
    def directory(permissions: int, uid: int, gid: int) -> Attributes:
        """Create attributes for a directory with the given permission bits."""
        return Attributes(
            st_mode=stat.S_IFDIR | permissions,
            st_size=0,
            st_uid=uid,
            st_gid=gid,
            st_nlink=2,
        )

    @staticmethod
    def file(permissions: int, size: int, uid: int, gid: int) -> Attributes:
        """Create attributes for a regular file with the given permission bits."""
        return Attributes(
            st_mode=stat.S_IFREG | permissions, st_size=size, st_uid=uid, st_gid=gid
        )

    @property
    def is_dir(self) -> bool:
        return stat.S_ISDIR(self.st_mode)

    def as_dict(self) -> Dict[str, int]:
        """Return the attributes as st_* keys for the FUSE getattr() callback."""
        return dict(self.__dict__)


class OpenMode(str, Enum):
    """Ways in which a remote file can be opened."""

    READ = "read"
    WRITE = "write"
    CREATE = "create"
    APPEND = "append"


class ProtocolError(Exception):
    """
    Failure reported by the remote storage or the link to it.

    The code is an errno value, which is passed on unchanged to the file system caller.
    """

    def __init__(self, code: int, message: Optional[str] = None) -> None:
        """Instantiate with an errno code and an optional description."""
        if message is None:
            message = os.strerror(code)

        super().__init__(code, message)

        self.code = code
        self.message = message

    def __str__(self) -> str:
        return f"[{errno.errorcode.get(self.code, self.code)}] {self.message}"


@dataclass
class Session:
    """Remote file session as returned by the storage service when opening a file."""

    fh: int
    size: int


@dataclass
class Chunk:
    """
    Block of file data in transit over the telemetry link.

    Data is compressed with LZ4 since bandwidth on the link is scarce and log files
    compress well.
    """

    compressed_data: bytes
    size: int

    @staticmethod
    def from_data(data: bytes) -> Chunk:
        """Wrap raw file data into a Chunk object."""
        return Chunk(compressed_data=lz4.frame.compress(data), size=len(data))

    @property
    def data(self) -> bytes:
        """Retrieve and decompress the original file data."""
        return lz4.frame.decompress(self.compressed_data)


class FileHandle(ABC):
    """
    Session for a single opened remote file.

    A handle is owned by exactly one file system call and must be closed before that
    call returns, which is easiest to guarantee by using it as a context manager.
    """

    @abstractmethod
    def seek(self, offset: int) -> None:
        """Move the session's position to the given absolute offset."""

    @abstractmethod
    def read(self, max_bytes: int) -> bytes:
        """Read up to max_bytes from the current position."""

    @abstractmethod
    def write(self, data: bytes) -> int:
        """Write data at the current position and return the number of bytes written."""

    @abstractmethod
    def truncate(self, length: int) -> None:
        """Truncate or extend the file to the given length."""

    @abstractmethod
    def size(self) -> int:
        """Return the size of the file as reported by the remote storage."""

    @abstractmethod
    def close(self) -> None:
        """End the session."""

    def __enter__(self) -> FileHandle:
        return self

    def __exit__(self, *_: Any) -> None:
        self.close()


class RemoteFileService(ABC):
    """File operations offered by the remote storage; all fail with ProtocolError."""

    @abstractmethod
    def listdir(self, path: str) -> List[FileEntry]:
        """List the files and directories in a remote directory."""

    @abstractmethod
    def open(self, path: str, mode: OpenMode) -> FileHandle:
        """Open a remote file in the given mode."""

    @abstractmethod
    def mkdir(self, path: str) -> None:
        """Create a remote directory."""

    @abstractmethod
    def rmdir(self, path: str) -> None:
        """Remove an empty remote directory."""

    @abstractmethod
    def unlink(self, path: str) -> None:
        """Remove a remote file."""

    @abstractmethod
    def rename(self, old: str, new: str) -> None:
        """Rename a remote file or directory."""
