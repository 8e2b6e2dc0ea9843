"""Module for configuration variables with defaults that are overridable by a file."""

from __future__ import annotations

from configparser import ConfigParser, SectionProxy
from dataclasses import dataclass, field
from typing import List, Optional

from mavftpfs.constants import DEFAULT_ENDPOINT, DEFAULT_WRITABLE_PATHS
from mavftpfs.logger import log


@dataclass
class LinkConfig:
    """Configuration variables related to the connection with the storage service."""

    endpoint: str = DEFAULT_ENDPOINT
    token: Optional[str] = field(default=None, repr=False)

    # Transfers over a serial telemetry link can take a long time
    timeout: int = 30000

    @staticmethod
    def load(section: SectionProxy) -> LinkConfig:
        """Load overridden variables from a section within a config file."""
        config = LinkConfig()

        config.endpoint = section.get("endpoint", fallback=config.endpoint)
        config.token = section.get("token", fallback=config.token)
        config.timeout = section.getint("timeout", fallback=config.timeout)

        return config


@dataclass
class PermissionsConfig:
    """Configuration variables related to the permissions of remote entries."""

    writable_paths: List[str] = field(
        default_factory=lambda: list(DEFAULT_WRITABLE_PATHS)
    )

    @staticmethod
    def load(section: SectionProxy) -> PermissionsConfig:
        """Load overridden variables from a section within a config file."""
        config = PermissionsConfig()

        if "writable_paths" in section:
            config.writable_paths = section["writable_paths"].split()

        return config


@dataclass
class Config:
    """Configuration variables."""

    link: LinkConfig = field(default_factory=LinkConfig)
    permissions: PermissionsConfig = field(default_factory=PermissionsConfig)

    @staticmethod
    def load(filename: str) -> Config:
        """Load overridden configuration variables from a config file."""
        parser = ConfigParser()

        config = Config()

        try:
            with open(filename, "r") as f:
                parser.read_string(f.read(), filename)

            if "link" in parser:
                config.link = LinkConfig.load(parser["link"])

            if "permissions" in parser:
                config.permissions = PermissionsConfig.load(parser["permissions"])
        except FileNotFoundError:
            log.info(f"no config file at {filename}")
        except Exception as e:
            # An unreadable config file is not considered a fatal error since we can
            # fall back to defaults.
            log.error(f"failed to read config file {filename}: {e}")
        else:
            log.info(f"loaded config: {config}")

        return config
