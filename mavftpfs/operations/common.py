"""Shared functionality between the command-line actions."""

from abc import ABC, abstractmethod
import os.path
from typing import Optional

from mavftpfs.args import Arguments
from mavftpfs.config import Config


class Operations(ABC):
    """Base class for the logic of a command-line action."""

    def __init__(self, args: Arguments, config: Config):
        """Initialize operations based on the command-line arguments and config."""
        self._args = args
        self._config = config

    @abstractmethod
    def run(self) -> int:
        """Run the operations and return the exit code."""

    @property
    def _endpoint(self) -> str:
        return self._args.endpoint or self._config.link.endpoint

    @property
    def _token(self) -> Optional[str]:
        return self._args.token or self._config.link.token

    @staticmethod
    def _check_directory(path: str) -> str:
        """Return the absolute path of a directory that must already exist."""
        path = os.path.abspath(os.path.expanduser(path))

        if not os.path.isdir(path):
            raise RuntimeError(f"{path} is not a directory")

        return path
