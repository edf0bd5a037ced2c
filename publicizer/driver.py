"""
Batch Driver

Runs read → flatten → publicize → write for each input assembly in order.
Every input is independent: a file that cannot be read, parsed or written
becomes a Failure outcome and the batch moves on to the next one.

Per-file state machine:

    UNPROCESSED → READ → FLATTENED → REWRITTEN → WRITTEN
         │                                  │
         └──────────── FAILED ◄─────────────┘   (at READ or WRITE)
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Callable, Iterable, Optional, Union

from publicizer import assembly
from publicizer.config import BatchConfig
from publicizer.errors import FormatError, InputError, ReadError, WriteError
from publicizer.rewriter import ChangeCounts, publicize
from publicizer.walker import flatten, iter_members

log = logging.getLogger(__name__)

PathLike = Union[str, Path]


class Stage(Enum):
    """Last step an input reached (success) or the step that failed."""
    READ = "read"
    REWRITTEN = "rewritten"
    WRITTEN = "written"


class FailureReason(Enum):
    INPUT = "file-not-found/unreadable"
    FORMAT = "read-parse-error"
    OUTPUT = "write-error"


@dataclass(frozen=True)
class Success:
    input_path: Path
    output_path: Path
    counts: ChangeCounts
    stage: Stage = Stage.WRITTEN

    @property
    def ok(self) -> bool:
        return True


@dataclass(frozen=True)
class Failure:
    input_path: Path
    reason: FailureReason
    stage: Stage
    message: str

    @property
    def ok(self) -> bool:
        return False


Outcome = Union[Success, Failure]


@dataclass
class BatchReport:
    outcomes: list[Outcome] = field(default_factory=list)

    @property
    def succeeded(self) -> list[Success]:
        return [o for o in self.outcomes if isinstance(o, Success)]

    @property
    def failed(self) -> list[Failure]:
        return [o for o in self.outcomes if isinstance(o, Failure)]

    @property
    def ok(self) -> bool:
        return not self.failed

    def __repr__(self) -> str:
        return (
            f"<BatchReport: {len(self.succeeded)} succeeded, "
            f"{len(self.failed)} failed>"
        )


def output_path_for(input_path: PathLike, output_dir: PathLike, suffix: str) -> Path:
    """`Foo.dll` + `_publicized` in `out/` → `out/Foo_publicized.dll`."""
    input_path = Path(input_path)
    return Path(output_dir) / f"{input_path.stem}{suffix}{input_path.suffix}"


def process_file(input_path: PathLike, config: BatchConfig) -> Outcome:
    """Publicize one assembly. Never raises for read, parse or write errors."""
    input_path = Path(input_path)
    log.info("Processing: %s", input_path)

    try:
        module = assembly.read(input_path)
    except ReadError as e:
        reason = FailureReason.FORMAT if isinstance(e, FormatError) else FailureReason.INPUT
        if isinstance(e, InputError):
            log.warning("%s: file doesn't exist or can't be read: %s", input_path, e.message)
        else:
            log.warning("%s: cannot read the assembly: %s", input_path, e.message)
        return Failure(input_path, reason, Stage.READ, e.message)

    types = flatten(module.types)
    methods, fields = iter_members(types)
    log.debug(
        "%s: %d types, %d methods, %d fields",
        input_path, len(types), len(methods), len(fields),
    )

    counts = publicize(types, methods, fields)

    output_path = output_path_for(input_path, config.output_dir, config.suffix)
    if config.dry_run:
        log.info("Dry run, not writing: %s", output_path)
        return Success(input_path, output_path, counts, stage=Stage.REWRITTEN)

    try:
        assembly.write(module, output_path)
    except WriteError as e:
        log.warning("%s: cannot create/overwrite the new assembly: %s", output_path, e.message)
        return Failure(input_path, FailureReason.OUTPUT, Stage.WRITTEN, e.message)

    log.info("Saved: %s", output_path)
    return Success(input_path, output_path, counts)


def run_batch(
    inputs: Iterable[PathLike],
    config: BatchConfig,
    on_outcome: Optional[Callable[[Outcome], None]] = None,
) -> BatchReport:
    """Process `inputs` in order; `on_outcome` sees each result as it lands."""
    report = BatchReport()
    for path in inputs:
        outcome = process_file(path, config)
        report.outcomes.append(outcome)
        if on_outcome is not None:
            on_outcome(outcome)
    log.info("%r", report)
    return report
