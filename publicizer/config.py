"""
publicizer.config
-----------------

Batch configuration and settings-file handling.

Settings resolve in three layers, later layers winning:
    defaults  <  JSON settings file (--config)  <  command-line overrides
"""

from __future__ import annotations

import json
from dataclasses import asdict, dataclass, fields
from pathlib import Path
from typing import TYPE_CHECKING, Any, Dict, Optional, Union

from publicizer.errors import ConfigError

if TYPE_CHECKING:
    from publicizer.driver import BatchReport

DEFAULT_SUFFIX = "_publicized"
DEFAULT_OUTPUT_DIR = "publicized_assemblies"


@dataclass
class BatchConfig:
    """Everything the batch driver and its caller need to know.

    `pause_on_exit` and `strict` only affect the CLI's exit behaviour; they
    live here so nothing about process exit is global state.
    """
    output_dir: Path = Path(DEFAULT_OUTPUT_DIR)
    suffix: str = DEFAULT_SUFFIX
    dry_run: bool = False
    pause_on_exit: bool = False
    strict: bool = False

    def __post_init__(self) -> None:
        self.output_dir = Path(self.output_dir)
        if not self.suffix or any(sep in self.suffix for sep in ("/", "\\")):
            raise ConfigError(f"Invalid output suffix: {self.suffix!r}")
        for name in ("dry_run", "pause_on_exit", "strict"):
            value = getattr(self, name)
            if not isinstance(value, bool):
                raise ConfigError(f"Setting {name} must be true or false, not {value!r}")

    def exit_status(self, report: BatchReport) -> int:
        """0 on success; 1 when strict and any input failed."""
        if self.strict and report.failed:
            return 1
        return 0

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["output_dir"] = str(self.output_dir)
        return data

    @classmethod
    def from_settings(cls, settings: Dict[str, Any]) -> BatchConfig:
        known = {f.name for f in fields(cls)}
        unknown = sorted(set(settings) - known)
        if unknown:
            raise ConfigError(f"Unknown setting(s): {', '.join(unknown)}")
        try:
            return cls(**settings)
        except TypeError as e:
            raise ConfigError(f"Invalid setting value: {e}") from e


def load_settings(path: Union[str, Path]) -> Dict[str, Any]:
    """Load a JSON settings object from `path`."""
    path = Path(path)
    try:
        with open(path, "r", encoding="utf-8") as f:
            data = json.load(f)
    except OSError as e:
        raise ConfigError(f"Cannot read settings: {e.strerror or e}", path) from e
    except (UnicodeDecodeError, ValueError) as e:
        raise ConfigError(f"Settings are not valid JSON: {e}", path) from e

    if not isinstance(data, dict):
        raise ConfigError("Settings file must hold a JSON object", path)
    return data


def merge_settings(
    *,
    defaults: Optional[Dict[str, Any]] = None,
    persistent: Optional[Dict[str, Any]] = None,
    overrides: Optional[Dict[str, Any]] = None,
) -> Dict[str, Any]:
    """Merge defaults + persistent + overrides (overrides win, None is skipped)."""

    merged: Dict[str, Any] = {}

    if defaults:
        merged.update(defaults)

    if persistent:
        merged.update(persistent)

    if overrides:
        for key, value in overrides.items():
            if value is not None:
                merged[key] = value

    return merged
