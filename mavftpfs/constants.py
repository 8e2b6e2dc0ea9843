"""Module defining various global constants."""

# mavftpfs version
VERSION = "1.0.0"

# Storage service protocol
# The major version must be identical on the mount and the storage service.
PROTOCOL_VERSION = "1.0.0"

# Special exit code for when mavftpfs itself fails.
MAVFTPFS_ERROR_CODE = 254

# Name of the FUSE file system
FILESYSTEM_NAME = "mavftpfs"

# Endpoint of the storage service next to the telemetry link
DEFAULT_ENDPOINT = "tcp://localhost:5761"

# Storage region of PX4 flight controllers that accepts writes
DEFAULT_WRITABLE_PATHS = ("/fs/microsd",)
