"""Module that implements mounting the storage of a flight controller."""

from semver import VersionInfo

import mavftpfs.constants as constants
from mavftpfs.filesystem import (
    AttributeCache,
    PathPolicy,
    RemoteFileSystem,
    StorageClient,
)
from mavftpfs.filesystem.fuse import FUSE, FuseConfig
from mavftpfs.logger import log
from .common import Operations


class MountOperations(Operations):
    """Class that connects to the storage service and mounts it in the foreground."""

    def run(self) -> int:
        """Mount the remote storage until the file system is unmounted."""
        mountpoint = self._check_directory(self._args.mountpoint)

        writable_paths = self._args.writable or self._config.permissions.writable_paths

        try:
            policy = PathPolicy.with_writable_paths(writable_paths)
        except ValueError as e:
            raise RuntimeError(f"invalid writable path: {e}")

        log.info(f"writable paths: {', '.join(writable_paths)}")

        timeout = self._args.timeout or self._config.link.timeout
        service = StorageClient.connect(self._endpoint, self._token, timeout)

        # Ensure availability of the storage service.
        try:
            service.ping()
        except OSError:
            raise RuntimeError(f"storage service at {self._endpoint} is not reachable")

        self._check_protocol(service.protocol_version())

        def mount_callback() -> None:
            log.info(f"mounted {self._endpoint} on {mountpoint}")

        fs = RemoteFileSystem(
            service,
            AttributeCache(),
            policy,
            mount_callback=mount_callback,
        )

        instance = FUSE(fs, FuseConfig(debug=self._args.debug))
        exit_code = instance.mount(constants.FILESYSTEM_NAME, mountpoint)

        log.info(f"unmounted {mountpoint}")

        return exit_code

    @staticmethod
    def _check_protocol(version: str) -> None:
        """Check if the storage service speaks a compatible protocol."""
        remote = VersionInfo.parse(version)
        local = VersionInfo.parse(constants.PROTOCOL_VERSION)

        if remote.major != local.major:
            raise RuntimeError(f"incompatible protocol ({remote} != {local})")
