"""Module that implements the attribute cache of the remote file system."""

import dataclasses
import posixpath
import threading
from typing import Dict, Mapping, Optional

from mavftpfs.filesystem.common import Attributes
from mavftpfs.logger import log


class AttributeCache:
    """
    Cache of synthesized attributes, organized by the directory they were listed from.

    Every round trip over the telemetry link is expensive, so the attributes of all
    entries of a directory are stored when it's listed. This makes a sequence of
    getattr() calls on files in the same directory (like `ls -l` does) cost only a
    single remote listing.

    The cache is never updated incrementally from the outcome of a mutation. Instead,
    any mutation drops all cached entries of the affected directory, and the next
    lookup in it is answered by a fresh listing. The only in-place update is the size
    of an already known file, which the remote side reports whenever a file is opened.

    Entries are kept per parent directory so that population and invalidation only
    touch the entries of that directory.
    """

    def __init__(self) -> None:
        """Instantiate an empty cache."""
        self._lock = threading.Lock()
        self._directories: Dict[str, Dict[str, Attributes]] = {}

        # Bumped by every invalidation of a directory
        self._generations: Dict[str, int] = {}

    def lookup(self, path: str) -> Optional[Attributes]:
        """Retrieve the cached attributes of a path, if any."""
        with self._lock:
            return self._directories.get(posixpath.dirname(path), {}).get(path)

    def generation(self, dir_path: str) -> int:
        """Return how many times the entries of a directory have been invalidated."""
        with self._lock:
            return self._generations.get(dir_path, 0)

    def populate(
        self,
        dir_path: str,
        records: Mapping[str, Attributes],
        generation: Optional[int] = None,
    ) -> bool:
        """
        Replace all cached entries of a directory.

        The records are keyed by absolute path and must all be direct children of the
        directory.

        A listing that was started before a mutation may complete after it. To keep such
        a listing out of the cache, pass the generation() of the directory from before
        the listing was requested. The records are then discarded if the directory was
        invalidated in the meantime. Returns whether the records were stored.
        """
        for path in records:
            if posixpath.dirname(path) != dir_path:
                raise ValueError(f"{path} is not an entry of {dir_path}")

        with self._lock:
            if generation is not None and generation != self._generations.get(
                dir_path, 0
            ):
                stored = False
            else:
                self._directories[dir_path] = dict(records)
                stored = True

        if stored:
            log.debug(f"cache::populate({dir_path}) - {len(records)} entries")
        else:
            log.debug(f"cache::populate({dir_path}) - discarded outdated listing")

        return stored

    def invalidate(self, dir_path: str) -> None:
        """Remove all cached entries of a directory."""
        with self._lock:
            self._directories.pop(dir_path, None)
            self._generations[dir_path] = self._generations.get(dir_path, 0) + 1

        log.debug(f"cache::invalidate({dir_path})")

    def update_size(self, path: str, size: int) -> None:
        """Overwrite the size of a cached entry. Unknown paths are left alone."""
        with self._lock:
            entries = self._directories.get(posixpath.dirname(path))

            if entries is not None and path in entries:
                entries[path] = dataclasses.replace(entries[path], st_size=size)

    def count(self) -> int:
        """Return the number of cached entries."""
        with self._lock:
            return sum(len(entries) for entries in self._directories.values())
