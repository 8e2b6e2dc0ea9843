"""Module that decides which parts of the remote storage may be written to."""

from __future__ import annotations

from dataclasses import dataclass
import posixpath
from typing import Iterable, Tuple

from mavftpfs.filesystem.common import EntryType

READ_ONLY_DIRECTORY_MODE = 0o555
READ_ONLY_FILE_MODE = 0o444

READ_WRITE_DIRECTORY_MODE = 0o755
READ_WRITE_FILE_MODE = 0o644


@dataclass(frozen=True)
class PolicyRule:
    """Permission bits for directories and files located under a path prefix."""

    prefix: str
    directory_mode: int
    file_mode: int

    def __post_init__(self) -> None:
        if not posixpath.isabs(self.prefix):
            raise ValueError(f"path prefix '{self.prefix}' is not absolute")

    def matches(self, path: str) -> bool:
        """Check if the path is the prefix itself or located somewhere below it."""
        return posixpath.commonpath([path, self.prefix]) == self.prefix


class PathPolicy:
    """
    Mapping from path prefixes to permission bits.

    The flight controller does not report permissions, but most of its storage (ROM file
    systems, procfs-like trees) can't be modified. Everything is therefore exposed as
    read-only, except for explicitly configured regions like the SD card. When rules are
    nested, the one with the longest matching prefix wins.
    """

    DEFAULT_RULE = PolicyRule("/", READ_ONLY_DIRECTORY_MODE, READ_ONLY_FILE_MODE)

    def __init__(self, rules: Iterable[PolicyRule] = ()) -> None:
        """Instantiate with rules that refine the default read-only rule."""
        # Longest prefixes first so the first match is the most specific one
        self._rules: Tuple[PolicyRule, ...] = tuple(
            sorted(
                [self.DEFAULT_RULE, *rules], key=lambda r: len(r.prefix), reverse=True
            )
        )

    @staticmethod
    def with_writable_paths(paths: Iterable[str]) -> PathPolicy:
        """Create a policy with read-write access to the given prefixes."""
        return PathPolicy(
            PolicyRule(
                posixpath.normpath(p), READ_WRITE_DIRECTORY_MODE, READ_WRITE_FILE_MODE
            )
            for p in paths
        )

    def rule(self, path: str) -> PolicyRule:
        """Return the most specific rule that applies to the path."""
        for rule in self._rules:
            if rule.matches(path):
                return rule

        return self.DEFAULT_RULE

    def permissions(self, path: str, entry_type: EntryType) -> int:
        """Return the permission bits for an entry of the given type at the path."""
        rule = self.rule(path)

        if entry_type == EntryType.DIRECTORY:
            return rule.directory_mode
        else:
            return rule.file_mode
