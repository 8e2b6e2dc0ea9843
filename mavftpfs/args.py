"""Module defining the command-line arguments and providing a parser for them."""

from __future__ import annotations

import argparse
from typing import List, Optional

from mavftpfs.constants import PROTOCOL_VERSION, VERSION


class Arguments(argparse.Namespace):
    """Parsed command-line arguments."""

    action: str

    # mount
    mountpoint: str
    writable: Optional[List[str]]

    # serve
    root: str
    workers: int

    endpoint: Optional[str]
    token: Optional[str]
    timeout: Optional[int]

    config: str

    verbose: bool
    debug: bool

    @classmethod
    def parse(cls, args: Optional[List[str]] = None) -> Arguments:
        """
        Parse command-line arguments from the given list of strings.

        Defaults to sys.argv if none are specified.
        """
        return cls._get_parser().parse_args(args, namespace=cls())

    @classmethod
    def _get_parser(cls) -> argparse.ArgumentParser:
        parser = argparse.ArgumentParser(
            description="Mount the onboard storage of a flight controller.",
        )

        parser.add_argument(
            "--version",
            action="version",
            version=f"%(prog)s {VERSION} (protocol {PROTOCOL_VERSION})",
            help="show the program version and protocol version",
        )

        actions = parser.add_subparsers(dest="action", metavar="action")
        actions.required = True

        # Mount the remote storage in the foreground
        mount = actions.add_parser(
            "mount",
            help="mount the storage of a flight controller",
            description="Mount the storage of a flight controller and stay in the "
            "foreground until it is unmounted.",
        )
        mount.add_argument("mountpoint", type=str, help="directory to mount on")
        mount.add_argument(
            "--writable",
            type=str,
            action="append",
            metavar="PREFIX",
            help="path prefix on the device that accepts writes (repeatable, default "
            "is /fs/microsd)",
        )
        mount.add_argument(
            "--timeout",
            type=cls._parse_timeout,
            help="timeout for calls to the storage service in milliseconds",
        )

        # Expose a local directory as device storage
        serve = actions.add_parser(
            "serve",
            help="serve a directory as flight controller storage",
            description="Serve a directory as flight controller storage, for example "
            "on a companion computer or as a simulated device.",
        )
        serve.add_argument("root", type=str, help="directory to serve")
        serve.add_argument(
            "--workers", type=int, help="number of service workers", default=4
        )

        for sub in (mount, serve):
            sub.add_argument(
                "--endpoint",
                type=str,
                help="ZeroMQ endpoint of the storage service "
                "(default is tcp://localhost:5761)",
            )
            sub.add_argument(
                "--token", type=str, help="shared secret for the storage service"
            )
            sub.add_argument(
                "--config",
                type=str,
                help="path to config file (default is ~/.mavftpfs/config)",
                default="~/.mavftpfs/config",
            )
            sub.add_argument(
                "-v", "--verbose", action="store_true", help="report progress"
            )
            sub.add_argument(
                "--debug", action="store_true", help="enable debug information"
            )

        return parser

    @staticmethod
    def _parse_timeout(arg: str) -> int:
        try:
            val = int(arg)
            assert val > 0
            return val
        except (ValueError, AssertionError):
            raise argparse.ArgumentTypeError("expected number > 0")
