"""Module that contains the FUSE file system backed by flight controller storage."""

import contextlib
import errno
import functools
import os
import posixpath
from typing import Any, Callable, Dict, Iterator, List, Optional

from mavftpfs.filesystem.cache import AttributeCache
from mavftpfs.filesystem.common import (
    Attributes,
    EntryType,
    OpenMode,
    ProtocolError,
    RemoteFileService,
)
from mavftpfs.filesystem.context import Owner, resolve_owner
import mavftpfs.filesystem.fuse as fuse
from mavftpfs.filesystem.policy import PathPolicy, READ_ONLY_DIRECTORY_MODE
from mavftpfs.logger import log


def translate_errors(fn: Callable[..., Any]) -> Callable[..., Any]:
    """
    Decorate a file system operation to report remote failures as OSErrors.

    The errno code of a ProtocolError is passed on verbatim. Nothing is retried.
    """

    @functools.wraps(fn)
    def wrapper(*args: Any, **kwargs: Any) -> Any:
        try:
            return fn(*args, **kwargs)
        except ProtocolError as e:
            raise OSError(e.code, e.message) from e

    return wrapper


class RemoteFileSystem(fuse.Operations):
    """
    Class that implements a FUSE file system on top of a remote file service.

    Metadata calls are answered from an attribute cache where possible, and a cache miss
    is resolved by listing the parent directory on the remote side. Calls that change
    the file system always go to the remote side and drop the cached entries of every
    directory they touch.

    Remote files are opened, used and closed within a single call. No remote session
    outlives the call that opened it, at the cost of an extra round trip for every read
    and write.
    """

    def __init__(
        self,
        service: RemoteFileService,
        cache: AttributeCache,
        policy: PathPolicy,
        context: Callable[[], fuse.FuseContext] = fuse.get_context,
        mount_callback: Optional[Callable[[], None]] = None,
    ) -> None:
        """Instantiate file system on top of the remote service and attribute cache."""
        self._service = service
        self._cache = cache
        self._policy = policy
        self._context = context
        self._mount_callback = mount_callback

    def init(self) -> None:
        """File system has been successfully mounted by FUSE."""
        if self._mount_callback is not None:
            self._mount_callback()

    def destroy(self) -> None:
        """
        File system has been unmounted.

        Writes are never buffered, so there is nothing left to send to the remote side.
        """
        log.debug(f"unmounted with {self._cache.count()} cached entries")

    #
    # Metadata access
    #

    @translate_errors
    def getattr(self, path: str, fh: Optional[int]) -> Dict[str, int]:
        self._check_path(path)

        if path == "/":
            owner = self._owner()
            return Attributes.directory(
                READ_ONLY_DIRECTORY_MODE, owner.uid, owner.gid
            ).as_dict()

        attr = self._cache.lookup(path)

        if attr is None:
            attr = self._refresh(posixpath.dirname(path)).get(path)

        if attr is None:
            raise FileNotFoundError(errno.ENOENT, os.strerror(errno.ENOENT), path)

        return attr.as_dict()

    @translate_errors
    def readdir(self, path: str) -> List[str]:
        self._check_path(path)

        return [".", ".."] + [posixpath.basename(p) for p in self._refresh(path)]

    #
    # File operations
    #

    @translate_errors
    def create(self, path: str, flags: int, mode: int) -> int:
        """Create an empty file on the remote side by opening it in create mode."""
        self._check_path(path)

        with self._invalidating(posixpath.dirname(path)):
            with self._service.open(path, OpenMode.CREATE):
                pass

        return 0

    @translate_errors
    def read(self, path: str, fh: int, offset: int, size: int) -> bytes:
        self._check_path(path)

        with self._service.open(path, OpenMode.READ) as handle:
            # The size reported by the remote side is authoritative
            self._cache.update_size(path, handle.size())

            handle.seek(offset)
            return handle.read(size)

    @translate_errors
    def write(self, path: str, fh: int, offset: int, data: bytes) -> int:
        self._check_path(path)

        with self._service.open(path, OpenMode.WRITE) as handle:
            handle.seek(offset)
            written = handle.write(data)

            self._cache.update_size(path, max(handle.size(), offset + written))

            return written

    @translate_errors
    def truncate(self, path: str, fh: Optional[int], size: int) -> None:
        self._check_path(path)

        with self._service.open(path, OpenMode.WRITE) as handle:
            handle.truncate(size)

        self._cache.update_size(path, size)

    #
    # File system structure
    #

    @translate_errors
    def mkdir(self, path: str, mode: int) -> None:
        self._check_path(path)

        with self._invalidating(posixpath.dirname(path)):
            self._service.mkdir(path)

    @translate_errors
    def rmdir(self, path: str) -> None:
        self._check_path(path)

        with self._invalidating(posixpath.dirname(path)):
            self._service.rmdir(path)

    @translate_errors
    def unlink(self, path: str) -> None:
        self._check_path(path)

        with self._invalidating(posixpath.dirname(path)):
            self._service.unlink(path)

    @translate_errors
    def rename(self, old: str, new: str) -> None:
        self._check_path(old)
        self._check_path(new)

        with self._invalidating(posixpath.dirname(old), posixpath.dirname(new)):
            self._service.rename(old, new)

    #
    # Helpers
    #

    @staticmethod
    def _check_path(path: str) -> None:
        """Reject paths that are not absolute and normalized."""
        if (
            not path.startswith("/")
            or path.startswith("//")
            or "\0" in path
            or posixpath.normpath(path) != path
        ):
            raise OSError(errno.EINVAL, f"malformed path {path!r}")

    def _owner(self) -> Owner:
        return resolve_owner(self._context())

    def _refresh(self, dir_path: str) -> Dict[str, Attributes]:
        """
        List a remote directory and replace its cached entries with the result.

        Returns the records of the entries in the order reported by the remote side.
        They are returned even if a concurrent mutation kept them out of the cache,
        since they still are the answer to the call that requested the listing.
        """
        owner = self._owner()
        generation = self._cache.generation(dir_path)

        records: Dict[str, Attributes] = {}

        for entry in self._service.listdir(dir_path):
            if entry.name in (".", ".."):
                continue

            path = posixpath.join(dir_path, entry.name)
            permissions = self._policy.permissions(path, entry.type)

            if entry.type == EntryType.DIRECTORY:
                attr = Attributes.directory(permissions, owner.uid, owner.gid)
            else:
                attr = Attributes.file(permissions, entry.size, owner.uid, owner.gid)

            records[path] = attr

        self._cache.populate(dir_path, records, generation)

        return records

    @contextlib.contextmanager
    def _invalidating(self, *dir_paths: str) -> Iterator[None]:
        """
        Drop the cached entries of directories around a remote mutation.

        They are dropped again once the remote call has finished, whether it succeeded
        or not, because a concurrent listing may have cached the state from before the
        mutation. Both invalidations also move the directory to a new generation, so a
        listing that was requested before and completes after them is not cached.
        """
        for dir_path in dir_paths:
            self._cache.invalidate(dir_path)

        try:
            yield
        finally:
            for dir_path in dir_paths:
                self._cache.invalidate(dir_path)
