"""Module that determines who the synthesized file system entries belong to."""

from dataclasses import dataclass
import os

from mavftpfs.filesystem.fuse import FuseContext


@dataclass(frozen=True)
class Owner:
    """User and group that own a file system entry."""

    uid: int
    gid: int


def resolve_owner(context: FuseContext) -> Owner:
    """
    Derive the owner of all entries from the process that makes a file system call.

    The remote storage has no notion of users, so every entry is presented as belonging
    to whoever is looking at it. Calls that the kernel makes on its own behalf have no
    process attached (pid 0); those see the user that mounted the file system.
    """
    if context.pid == 0:
        return Owner(os.getuid(), os.getgid())

    return Owner(context.uid, context.gid)
