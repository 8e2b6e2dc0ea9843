"""
Module with high-level bindings for FUSE 3.x.

Only the callbacks needed to expose remote flight controller storage are bound: metadata
lookups, directory listings, file creation and removal, reads, writes and truncation.
Everything else (links, extended attributes, permission changes) is left unregistered so
that the kernel reports it as unsupported.
"""

import ctypes
from dataclasses import dataclass
import errno
import os
import sys
import threading
import traceback
from typing import Callable, List, Optional, Type

from mavftpfs.logger import log
from .fuse import (
    FUSE_ARGS_INIT,
    fuse_config_p,
    fuse_conn_info_p,
    fuse_file_info_p,
    fuse_fill_dir_t,
    fuse_operations,
    fuse_opt_proc_t,
    library,
    stat,
    stat_p,
)


@dataclass
class FuseConfig:
    """
    FUSE options to apply when mounting.

    The timeouts control how long the kernel itself may cache attributes and directory
    entries before asking the file system again. See the FUSE documentation about mount
    options for more information:

    * https://man7.org/linux/man-pages/man8/mount.fuse.8.html
    """

    default_permissions: bool = True
    auto_unmount: bool = True

    attr_timeout: float = 1.0
    entry_timeout: float = 1.0

    debug: bool = False


@dataclass(frozen=True)
class FuseContext:
    """Identity of the process that issued the file system call being handled."""

    uid: int
    gid: int
    pid: int
    umask: int = 0o022


def get_context() -> FuseContext:
    """
    Retrieve the context of the file system call handled by the current thread.

    Only meaningful when called from within a FUSE operation callback.
    """
    ctx = library().fuse_get_context()

    if not ctx:
        raise RuntimeError("no FUSE context available in this thread")

    return FuseContext(
        uid=ctx.contents.uid,
        gid=ctx.contents.gid,
        pid=ctx.contents.pid,
        umask=ctx.contents.umask,
    )


def _encode(path: str) -> bytes:
    """Encode a path for FUSE, restoring bytes that are not valid UTF-8."""
    return path.encode(errors="surrogateescape")


def _decode(path: bytes) -> str:
    """Decode a path from FUSE, keeping bytes that are not valid UTF-8 intact."""
    return path.decode(errors="surrogateescape")


class Operations:
    """
    Base class for a FUSE file system.

    File systems should inherit this class and implement the file system functions
    they wish to support.

    The implementation should expect functions to be invoked simultaneously from an
    arbitrary number of threads.

    Functions can return errors by raising the built-in OSError exception with the errno
    set:

        raise FileNotFoundError(errno.ENOENT, os.strerror(errno.ENOENT))
    """

    def init(self) -> None:
        """Initialize data after the file system has been mounted."""

    def destroy(self) -> None:
        """Clean up after the file system has been unmounted."""

    def getattr(self, path: str, fh: Optional[int]) -> dict:
        """
        Retrieve the attributes of a file system entry.

        The function should return a dict with st_* keys that correspond to stat data.
        """
        raise NotImplementedError()

    def readdir(self, path: str) -> List[str]:
        """List the contents of a directory."""
        raise NotImplementedError()

    def mkdir(self, path: str, mode: int) -> None:
        """Create a directory."""
        raise NotImplementedError()

    def unlink(self, path: str) -> None:
        """Remove a file."""
        raise NotImplementedError()

    def rmdir(self, path: str) -> None:
        """Remove an empty directory."""
        raise NotImplementedError()

    def rename(self, old: str, new: str) -> None:
        """Rename a file system entry."""
        raise NotImplementedError()

    def truncate(self, path: str, fh: Optional[int], size: int) -> None:
        """Truncate a file."""
        raise NotImplementedError()

    def open(self, path: str, flags: int) -> int:
        """
        Open a file.

        The default implementation hands out file handle 0 for file systems that don't
        keep per-open state.
        """
        return 0

    def create(self, path: str, flags: int, mode: int) -> int:
        """Create a file."""
        raise NotImplementedError()

    def read(self, path: str, fh: int, offset: int, size: int) -> bytes:
        """Read from a file."""
        raise NotImplementedError()

    def write(self, path: str, fh: int, offset: int, data: bytes) -> int:
        """Write to a file."""
        raise NotImplementedError()

    def release(self, path: str, fh: int) -> None:
        """Close a file handle."""


class FUSE:
    """
    File system wrapper class that handles the FUSE connection.

    This class starts the FUSE main loop and serves as the layer between the C callbacks
    and the Operations interface.
    """

    def __init__(self, operations: Operations, config: FuseConfig):
        """Specify the operations and configuration for FUSE."""

        self._operations = operations
        self._config = config

        # Keeps the callback objects alive for as long as FUSE may invoke them
        self._callbacks = fuse_operations()

    def mount(self, name: str, mount_path: str) -> int:
        """
        Mount the FUSE file system at the specified path with a given name.

        Blocks in the foreground until the file system is unmounted.
        """
        fuse3 = library()

        # File system name and mount path arguments for FUSE
        argv = (ctypes.POINTER(ctypes.c_char) * 2)()
        argv[:] = [
            ctypes.create_string_buffer(_encode(name)),
            ctypes.create_string_buffer(_encode(mount_path)),
        ]
        args = FUSE_ARGS_INIT(2, argv)

        fuse3.fuse_opt_parse(
            ctypes.pointer(args), None, None, ctypes.cast(None, fuse_opt_proc_t)
        )

        # Additional options
        if self._config.auto_unmount:
            fuse3.fuse_opt_add_arg(ctypes.pointer(args), b"-oauto_unmount")

        if self._config.default_permissions:
            fuse3.fuse_opt_add_arg(ctypes.pointer(args), b"-odefault_permissions")

        if self._config.debug:
            fuse3.fuse_opt_add_arg(ctypes.pointer(args), b"-d")

        fuse3.fuse_opt_add_arg(ctypes.pointer(args), b"-f")

        # Operation callbacks
        operations = self._callbacks

        operations.init = self._wrap_operation("init", self._op_init)
        operations.destroy = self._wrap_operation("destroy", self._op_destroy)
        operations.getattr = self._wrap_operation("getattr", self._op_getattr)
        operations.readdir = self._wrap_operation("readdir", self._op_readdir)
        operations.mkdir = self._wrap_operation("mkdir", self._op_mkdir)
        operations.unlink = self._wrap_operation("unlink", self._op_unlink)
        operations.rmdir = self._wrap_operation("rmdir", self._op_rmdir)
        operations.rename = self._wrap_operation("rename", self._op_rename)
        operations.truncate = self._wrap_operation("truncate", self._op_truncate)
        operations.open = self._wrap_operation("open", self._op_open)
        operations.create = self._wrap_operation("create", self._op_create)
        operations.read = self._wrap_operation("read", self._op_read)
        operations.write = self._wrap_operation("write", self._op_write)
        operations.release = self._wrap_operation("release", self._op_release)

        # FUSE main loop
        return fuse3.fuse_main_real(
            args.argc,
            args.argv,
            ctypes.pointer(operations),
            ctypes.sizeof(operations),
            None,
        )

    def _wrap_operation(self, name: str, fn: Callable) -> Callable:
        """Wrap an operation callback to capture self and handle exceptions."""

        def wrapper(*args, **kwargs):
            # Support coverage.py within FUSE threads.
            if hasattr(threading, "_trace_hook"):
                sys.settrace(getattr(threading, "_trace_hook"))

            try:
                res = fn(*args, **kwargs)

                if res is None:
                    res = 0

                return res
            except OSError as e:
                # FUSE expects an error to be returned as negative errno.
                if e.errno:
                    return -e.errno
                else:
                    return -errno.EIO
            except NotImplementedError:
                log.debug(f"fuse::{name}() not implemented!")

                return -errno.ENOSYS
            except Exception:
                log.warning(f"fuse::{name}() raised an unexpected exception:")
                log.warning(traceback.format_exc())

                return -errno.EIO

        return self._typeof(fuse_operations, name)(wrapper)

    @staticmethod
    def _typeof(struct: Type[ctypes.Structure], field: str) -> Type:
        """Return the type of a field in a ctypes Structure."""

        for name, t in getattr(struct, "_fields_"):
            if name == field:
                return t

        raise ValueError(f"cannot determine type of nonexistent field {field}")

    def _op_init(self, _conn: fuse_conn_info_p, config: fuse_config_p) -> None:
        """
        Handle fuse_operations.init.

        Applies the kernel caching timeouts from the FUSE config.
        """
        config.contents.attr_timeout = self._config.attr_timeout
        config.contents.entry_timeout = self._config.entry_timeout

        self._operations.init()

    def _op_destroy(self, _private_data: ctypes.c_void_p) -> None:
        """Handle fuse_operations.destroy."""
        self._operations.destroy()

    def _op_getattr(self, path: bytes, stbuf: stat_p, fi: fuse_file_info_p) -> None:
        """Handle fuse_operations.getattr."""
        stat_values = self._operations.getattr(
            _decode(path), fi.contents.fh if fi else None
        )

        ctypes.memset(stbuf, 0, ctypes.sizeof(stat))

        for key, value in stat_values.items():
            if hasattr(stbuf.contents, key):
                setattr(stbuf.contents, key, value)

    def _op_readdir(
        self,
        path: bytes,
        buf: ctypes.c_void_p,
        filler: fuse_fill_dir_t,
        _offset: int,
        _fi: fuse_file_info_p,
        _flags: int,
    ) -> None:
        """
        Handle fuse_operations.readdir.

        Offsets and FUSE_FILL_DIR_PLUS are not supported, so all entries are passed in
        a single pass.
        """
        entries = self._operations.readdir(_decode(path))

        for entry in entries:
            if filler(buf, _encode(entry), None, 0, 0):
                break

    def _op_mkdir(self, path: bytes, mode: int) -> None:
        """Handle fuse_operations.mkdir."""
        self._operations.mkdir(_decode(path), mode)

    def _op_unlink(self, path: bytes) -> None:
        """Handle fuse_operations.unlink."""
        self._operations.unlink(_decode(path))

    def _op_rmdir(self, path: bytes) -> None:
        """Handle fuse_operations.rmdir."""
        self._operations.rmdir(_decode(path))

    def _op_rename(self, old: bytes, new: bytes, flags: int) -> None:
        """
        Handle fuse_operations.rename.

        There is no support for renameat2 flags.
        """
        if flags:
            raise OSError(errno.EINVAL, os.strerror(errno.EINVAL))

        self._operations.rename(_decode(old), _decode(new))

    def _op_truncate(self, path: bytes, size: int, fi: fuse_file_info_p) -> None:
        """Handle fuse_operations.truncate."""
        self._operations.truncate(_decode(path), fi.contents.fh if fi else None, size)

    def _op_create(self, path: bytes, mode: int, fi: fuse_file_info_p) -> None:
        """Handle fuse_operations.create."""
        fi.contents.fh = self._operations.create(_decode(path), fi.contents.flags, mode)

    def _op_open(self, path: bytes, fi: fuse_file_info_p) -> None:
        """Handle fuse_operations.open."""
        fi.contents.fh = self._operations.open(_decode(path), fi.contents.flags)

    def _op_read(
        self,
        path: bytes,
        buf: ctypes.POINTER(ctypes.c_char),
        size: int,
        offset: int,
        fi: fuse_file_info_p,
    ) -> int:
        """Handle fuse_operations.read."""
        data = self._operations.read(_decode(path), fi.contents.fh, offset, size)
        actual_size = len(data)

        assert actual_size <= size

        ctypes.memmove(buf, data, actual_size)

        return actual_size

    def _op_write(
        self,
        path: bytes,
        buf: ctypes.POINTER(ctypes.c_char),
        size: int,
        offset: int,
        fi: fuse_file_info_p,
    ) -> int:
        """Handle fuse_operations.write."""
        data = ctypes.string_at(buf, size)
        return self._operations.write(_decode(path), fi.contents.fh, offset, data)

    def _op_release(self, path: bytes, fi: fuse_file_info_p) -> None:
        """Handle fuse_operations.release."""
        self._operations.release(_decode(path), fi.contents.fh)
