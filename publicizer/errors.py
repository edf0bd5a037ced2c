"""
Publicizer error taxonomy.

Reader and writer failures are raised as the classes below; the batch
driver catches them at the per-file boundary and turns them into
Failure outcomes.

    PublicizerError
    ├── ReadError
    │   ├── InputError      file missing or unreadable
    │   └── FormatError     bytes are not a valid managed assembly
    ├── WriteError
    │   ├── OutputError     destination cannot be written
    │   └── StructureError  in-memory model cannot be serialized
    └── ConfigError         settings file is malformed
"""

from __future__ import annotations

from pathlib import Path
from typing import Optional, Union


class PublicizerError(Exception):
    """Base class for every error raised by the publicizer."""

    def __init__(self, message: str, path: Optional[Union[str, Path]] = None) -> None:
        self.message = message
        self.path = str(path) if path is not None else None
        super().__init__(f"{self.path}: {message}" if self.path else message)


class ReadError(PublicizerError):
    """An assembly could not be loaded."""


class InputError(ReadError):
    """The input file is missing or cannot be read."""


class FormatError(ReadError):
    """The input is not a valid PE image with ECMA-335 metadata."""


class WriteError(PublicizerError):
    """An assembly could not be serialized."""


class OutputError(WriteError):
    """The destination could not be created or overwritten."""


class StructureError(WriteError):
    """The in-memory module is not valid for re-serialization."""


class ConfigError(PublicizerError):
    """A settings file is unreadable or holds unexpected values."""
