"""Module that implements the remote file service on top of the storage RPC service."""

from __future__ import annotations

import errno
import functools
from typing import Any, Callable, List, Optional

from mavftpfs.filesystem.common import (
    Chunk,
    FileEntry,
    FileHandle,
    OpenMode,
    ProtocolError,
    RemoteFileService,
    Session,
)
from mavftpfs.filesystem.service import LocalStorageService
import mavftpfs.rpc as rpc


def _link_errors(fn: Callable[..., Any]) -> Callable[..., Any]:
    """
    Report failures of the link itself (like timeouts) as ProtocolError.

    Errors reported by the storage already are ProtocolErrors and pass through as-is.
    """

    @functools.wraps(fn)
    def wrapper(*args: Any, **kwargs: Any) -> Any:
        try:
            return fn(*args, **kwargs)
        except OSError as e:
            raise ProtocolError(e.errno or errno.EIO, str(e))
        except rpc.InvalidTokenError as e:
            raise ProtocolError(errno.EACCES, str(e))

    return wrapper


class StorageFile(FileHandle):
    """Session for a file opened through the storage service."""

    def __init__(self, client: Any, session: Session) -> None:
        """Instantiate for a session that was opened with the given client."""
        self._client = client
        self._session = session
        self._closed = False

    @_link_errors
    def seek(self, offset: int) -> None:
        self._client.seek(self._session.fh, offset)

    @_link_errors
    def read(self, max_bytes: int) -> bytes:
        chunk: Chunk = self._client.read(self._session.fh, max_bytes)
        return chunk.data

    @_link_errors
    def write(self, data: bytes) -> int:
        return self._client.write(self._session.fh, Chunk.from_data(data))

    @_link_errors
    def truncate(self, length: int) -> None:
        self._client.truncate(self._session.fh, length)

    def size(self) -> int:
        """Return the size of the file at the time it was opened."""
        return self._session.size

    @_link_errors
    def close(self) -> None:
        if self._closed:
            return

        self._closed = True
        self._client.close(self._session.fh)


class StorageClient(RemoteFileService):
    """
    Remote file service that forwards all calls to a storage service.

    The client is normally an rpc.Client for LocalStorageService, but any object with
    the same methods will do, like a LocalStorageService instance itself.
    """

    def __init__(self, client: Any) -> None:
        """Instantiate with the client to make calls on."""
        self._client = client

    @staticmethod
    def connect(
        endpoint: str, token: Optional[str] = None, timeout_ms: int = -1
    ) -> StorageClient:
        """Create a client for the storage service at the given endpoint."""
        client = rpc.Client(
            LocalStorageService,
            endpoint,
            token,
            timeout_ms=timeout_ms,
            exceptions=[ProtocolError],
        )

        return StorageClient(client)

    def ping(self, timeout_ms: Optional[int] = None) -> None:
        """Check if the storage service is available."""
        self._client.ping(timeout_ms)

    @_link_errors
    def protocol_version(self) -> str:
        return self._client.protocol_version()

    @_link_errors
    def listdir(self, path: str) -> List[FileEntry]:
        return self._client.listdir(path)

    @_link_errors
    def open(self, path: str, mode: OpenMode) -> StorageFile:
        return StorageFile(self._client, self._client.open(path, mode.value))

    @_link_errors
    def mkdir(self, path: str) -> None:
        self._client.mkdir(path)

    @_link_errors
    def rmdir(self, path: str) -> None:
        self._client.rmdir(path)

    @_link_errors
    def unlink(self, path: str) -> None:
        self._client.unlink(path)

    @_link_errors
    def rename(self, old: str, new: str) -> None:
        self._client.rename(old, new)
