"""
Modules that expose the storage of a flight controller as a local file system.

Flight controllers like PX4 keep logs, parameters and mission data on onboard flash or
an SD card. The only way to get at those files in flight (or without opening up the
vehicle) is through the telemetry link, which supports a small set of request/response
file operations: listing a directory, opening a file session, reading and writing at an
offset, and creating, removing and renaming entries. Every one of these takes at least a
full round trip over a slow link.

This package turns that into a FUSE file system, so that ordinary tools like ls, cp and
tail work on the vehicle's storage. It is made up of the following parts:

* The storage service runs next to the telemetry link and offers the file operations of
the flight controller over RPC. A directory-backed implementation is included.
* The storage client implements the remote file service interface on top of RPC.
* The FUSE file system maps every file system call onto the remote file service.

Since the remote side only reports names, types and sizes, the file system synthesizes
the rest of the POSIX attributes: permissions come from a path policy (most of the
storage is read-only, the SD card is writable) and ownership from the calling process.

Latency is hidden by caching the attributes of all entries of a directory whenever it is
listed. A directory listing reports everything getattr() needs, so one listing answers
all getattr() calls for the entries in that directory. Mutations always go to the remote
side and drop the cached entries of the directories they affect.
"""

from .cache import AttributeCache
from .client import StorageClient
from .filesystem import RemoteFileSystem
from .policy import PathPolicy
from .service import LocalStorageService

__all__ = [
    "AttributeCache",
    "LocalStorageService",
    "PathPolicy",
    "RemoteFileSystem",
    "StorageClient",
]
