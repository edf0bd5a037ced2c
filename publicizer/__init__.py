"""
publicizer - make every member of a .NET assembly public

Reads managed assemblies (PE images carrying ECMA-335 metadata), widens
the accessibility of every type, method and field to public, and writes a
copy usable as a compile-time reference.

    Reader/Writer   assembly.read / assembly.write (pefile + metadata layout)
    Walker          walker.flatten over arbitrarily nested types
    Rewriter        rewriter.publicize with pre-mutation change counts
    Driver          driver.run_batch with per-file failure isolation
"""

__version__ = "1.0.0"

from publicizer.assembly import read, write
from publicizer.config import BatchConfig
from publicizer.driver import (
    BatchReport,
    Failure,
    FailureReason,
    Success,
    output_path_for,
    process_file,
    run_batch,
)
from publicizer.errors import (
    FormatError,
    InputError,
    OutputError,
    PublicizerError,
    ReadError,
    StructureError,
    WriteError,
)
from publicizer.model import (
    FieldDef,
    MemberAccess,
    MethodDef,
    Module,
    TypeDef,
    TypeVisibility,
)
from publicizer.rewriter import ChangeCounts, publicize, publicize_module
from publicizer.walker import flatten

__all__ = [
    "read",
    "write",
    "BatchConfig",
    "BatchReport",
    "Failure",
    "FailureReason",
    "Success",
    "output_path_for",
    "process_file",
    "run_batch",
    "FormatError",
    "InputError",
    "OutputError",
    "PublicizerError",
    "ReadError",
    "StructureError",
    "WriteError",
    "FieldDef",
    "MemberAccess",
    "MethodDef",
    "Module",
    "TypeDef",
    "TypeVisibility",
    "ChangeCounts",
    "publicize",
    "publicize_module",
    "flatten",
]
