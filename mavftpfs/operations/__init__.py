"""Modules that implement the actions that can be run from the command line."""

from .common import Operations
from .mount import MountOperations
from .serve import ServeOperations

__all__ = [
    "Operations",
    "MountOperations",
    "ServeOperations",
]
