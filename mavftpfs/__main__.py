"""
Module implementing the command-line interface and invoking the main logic of mavftpfs.

mavftpfs has two sides. The storage service runs next to the telemetry link of the
flight controller and offers its file operations over RPC ("mavftpfs serve"). The mount
connects to that service and exposes the storage as a FUSE file system, staying in the
foreground until the file system is unmounted ("mavftpfs mount").
"""

import logging
import os.path
import signal
import sys
from typing import List, NoReturn, Optional

import mavftpfs.constants as constants
from mavftpfs.config import Config
from mavftpfs.logger import log
import mavftpfs.operations as operations
from .args import Arguments


def main(arguments: Optional[List[str]] = None) -> NoReturn:
    """
    Run the action specified by the given arguments.

    Defaults to parsing command-line arguments from sys.argv if none are specified.
    """
    # Parse command-line arguments.
    args = Arguments.parse(arguments)

    # Configure logging.
    if args.debug:
        log.setLevel(logging.DEBUG)
    elif args.verbose:
        log.setLevel(logging.INFO)
    else:
        log.setLevel(logging.ERROR)

    config = Config.load(os.path.expanduser(args.config))

    ops: operations.Operations

    if args.action == "mount":
        ops = operations.MountOperations(args, config)
    else:
        ops = operations.ServeOperations(args, config)

    try:
        exit_code = ops.run()
    except KeyboardInterrupt:
        exit_code = 128 + signal.SIGINT
    except Exception as e:
        log.error(f"failed to {args.action}: {e}")
        exit_code = constants.MAVFTPFS_ERROR_CODE

    sys.exit(exit_code)


if __name__ == "__main__":
    main()
