"""Module that implements serving a directory as flight controller storage."""

from mavftpfs.filesystem import LocalStorageService
from mavftpfs.filesystem.common import ProtocolError
from mavftpfs.logger import log
import mavftpfs.rpc as rpc
from .common import Operations


class ServeOperations(Operations):
    """Class that runs the storage service for a local directory."""

    def run(self) -> int:
        """Serve the directory until the process is interrupted."""
        root = self._check_directory(self._args.root)

        server = rpc.Server(
            LocalStorageService(root),
            self._token,
            self._args.workers,
            exceptions=[ProtocolError],
        )

        log.info(f"serving {root} on {self._endpoint}")

        server.serve(self._endpoint)
