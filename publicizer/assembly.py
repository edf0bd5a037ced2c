"""
Binary Container Reader/Writer

Loads a managed assembly into a mutable Module and serializes it back.

Reading goes through `pefile` for the PE container (headers, sections,
RVA → file offset mapping, the COM descriptor directory) and through
`publicizer.metadata` for the ECMA-335 structures inside it. Every
TypeDef, MethodDef and Field row remembers the file offset of its Flags
column.

Writing re-opens the original bytes with pefile, patches each Flags column
in place, refreshes the PE checksum when the image carries one and writes
the result atomically. Accessibility lives in fixed-width columns, so no
table, heap or section moves: every token, RVA and coded index in the
image stays valid.

Usage:
    module = read("Assembly-CSharp.dll")
    ...mutate visibilities...
    write(module, "out/Assembly-CSharp_publicized.dll")
"""

from __future__ import annotations

import logging
import os
import tempfile
from pathlib import Path
from typing import Callable, Optional, Union

import pefile

from publicizer.errors import FormatError, InputError, OutputError, StructureError
from publicizer.graph import NestingGraph
from publicizer.metadata import (
    CliHeader,
    MetadataRoot,
    StreamHeader,
    Table,
    TableStream,
    read_string,
)
from publicizer.model import (
    MEMBER_ACCESS_MASK,
    AssemblyImage,
    FieldDef,
    MemberAccess,
    MethodDef,
    Module,
    TypeDef,
)
from publicizer.walker import flatten

log = logging.getLogger(__name__)

CLR_DIRECTORY_INDEX = pefile.DIRECTORY_ENTRY["IMAGE_DIRECTORY_ENTRY_COM_DESCRIPTOR"]

PathLike = Union[str, Path]


# ============================================================================
# Reading
# ============================================================================

def read(path: PathLike) -> Module:
    """Load the assembly at `path`.

    Raises:
        InputError: the file is missing, a directory, or unreadable
        FormatError: the bytes are not a PE image with valid CLI metadata
    """
    path = Path(path)
    try:
        data = path.read_bytes()
    except FileNotFoundError as e:
        raise InputError("File doesn't exist", path) from e
    except PermissionError as e:
        raise InputError("Insufficient permissions to read the file", path) from e
    except OSError as e:
        raise InputError(f"Cannot read the file: {e.strerror or e}", path) from e

    try:
        return load(data, name=path.name, path=path)
    except FormatError as e:
        if e.path is None:
            raise FormatError(e.message, path) from e
        raise


def load(data: bytes, name: str = "<bytes>", path: Optional[Path] = None) -> Module:
    """Parse assembly bytes into a Module."""
    try:
        pe = pefile.PE(data=data, fast_load=True)
    except pefile.PEFormatError as e:
        raise FormatError(f"Not a PE image: {e.value}") from e

    try:
        cli = _locate_cli_header(pe, data)
        root_offset = _rva_to_offset(pe, cli.metadata_rva, "Metadata root")
    finally:
        pe.close()

    root = MetadataRoot.parse(data, root_offset)
    tables = TableStream.parse(data, root.table_stream)
    strings = root.strings_heap
    log.debug("%s: runtime %s, %r", name, root.version, tables)

    types = _read_types(data, tables, strings)
    graph = NestingGraph.from_pairs(len(types), _nesting_pairs(data, tables))
    log.debug("%s: %d types, %r", name, len(types), graph)

    by_rid = {t.rid: t for t in types}
    for t in types:
        for child in graph.children(t.rid):
            t.add_nested(by_rid[child])

    module_name = name
    if tables.has(Table.MODULE):
        module_name = read_string(data, strings, tables.read_row(data, Table.MODULE, 1)["Name"])

    return Module(
        name=module_name,
        types=[by_rid[rid] for rid in graph.roots()],
        path=path,
        image=AssemblyImage(
            data=bytes(data),
            metadata_version=root.version,
            table_stream=tables.name,
            strong_name_signed=cli.is_strong_name_signed,
        ),
    )


def _rva_to_offset(pe: pefile.PE, rva: int, what: str) -> int:
    try:
        return pe.get_offset_from_rva(rva)
    except pefile.PEFormatError as e:
        raise FormatError(f"{what} RVA {rva:#x} is not mapped by any section") from e


def _locate_cli_header(pe: pefile.PE, data: bytes) -> CliHeader:
    directories = pe.OPTIONAL_HEADER.DATA_DIRECTORY
    if len(directories) <= CLR_DIRECTORY_INDEX:
        raise FormatError("PE image has no CLR runtime header (not a managed assembly)")
    entry = directories[CLR_DIRECTORY_INDEX]
    if entry.VirtualAddress == 0 or entry.Size == 0:
        raise FormatError("PE image has no CLR runtime header (not a managed assembly)")
    offset = _rva_to_offset(pe, entry.VirtualAddress, "CLI header")
    return CliHeader.parse(data, offset)


def _member_rids(
    data: bytes,
    tables: TableStream,
    starts: list[int],
    table: Table,
    ptr_table: Table,
    ptr_column: str,
) -> list[list[int]]:
    """Resolve each TypeDef's FieldList/MethodList run into row ids.

    A type owns rows from its list index up to the next type's list index.
    Uncompressed streams may route the run through a *Ptr table.
    """
    indirect = tables.has(ptr_table)
    count = tables.row_count(ptr_table if indirect else table)
    runs: list[list[int]] = []

    for i, start in enumerate(starts):
        end = starts[i + 1] if i + 1 < len(starts) else count + 1
        if not 1 <= start <= count + 1 or end < start:
            raise FormatError(
                f"TypeDef row {i + 1} has an invalid {table.name} list ({start}..{end - 1})"
            )
        run = list(range(start, end))
        if indirect:
            run = [tables.read_row(data, ptr_table, idx)[ptr_column] for idx in run]
            for rid in run:
                if not 1 <= rid <= tables.row_count(table):
                    raise FormatError(f"{ptr_table.name} points at missing {table.name} row {rid}")
        runs.append(run)
    return runs


def _read_types(data: bytes, tables: TableStream, strings: StreamHeader) -> list[TypeDef]:
    if not tables.has(Table.TYPE_DEF):
        return []

    rows = tables.rows(data, Table.TYPE_DEF)
    field_runs = _member_rids(
        data, tables, [r["FieldList"] for r in rows], Table.FIELD, Table.FIELD_PTR, "Field",
    )
    method_runs = _member_rids(
        data, tables, [r["MethodList"] for r in rows], Table.METHOD_DEF, Table.METHOD_PTR, "Method",
    )

    type_info = tables.tables[Table.TYPE_DEF]
    type_flags = type_info.column("Flags").offset

    types: list[TypeDef] = []
    for rid, row in enumerate(rows, start=1):
        t = TypeDef(
            rid=rid,
            name=read_string(data, strings, row["TypeName"]),
            namespace=read_string(data, strings, row["TypeNamespace"]),
            flags=row["Flags"],
            flags_offset=type_info.row_offset(rid) + type_flags,
        )
        t.fields = [_read_field(data, tables, strings, frid) for frid in field_runs[rid - 1]]
        t.methods = [_read_method(data, tables, strings, mrid) for mrid in method_runs[rid - 1]]
        types.append(t)
    return types


def _check_member_access(table: Table, rid: int, flags: int) -> None:
    # Access value 7 is reserved by ECMA-335
    access = flags & MEMBER_ACCESS_MASK
    if access > MemberAccess.PUBLIC:
        raise FormatError(f"{table.name} row {rid} has reserved member access {access}")


def _read_field(data: bytes, tables: TableStream, strings: StreamHeader, rid: int) -> FieldDef:
    info = tables.tables[Table.FIELD]
    row = tables.read_row(data, Table.FIELD, rid)
    _check_member_access(Table.FIELD, rid, row["Flags"])
    return FieldDef(
        rid=rid,
        name=read_string(data, strings, row["Name"]),
        flags=row["Flags"],
        flags_offset=info.row_offset(rid) + info.column("Flags").offset,
    )


def _read_method(data: bytes, tables: TableStream, strings: StreamHeader, rid: int) -> MethodDef:
    info = tables.tables[Table.METHOD_DEF]
    row = tables.read_row(data, Table.METHOD_DEF, rid)
    _check_member_access(Table.METHOD_DEF, rid, row["Flags"])
    return MethodDef(
        rid=rid,
        name=read_string(data, strings, row["Name"]),
        flags=row["Flags"],
        flags_offset=info.row_offset(rid) + info.column("Flags").offset,
    )


def _nesting_pairs(data: bytes, tables: TableStream) -> list[tuple[int, int]]:
    return [
        (row["NestedClass"], row["EnclosingClass"])
        for row in tables.rows(data, Table.NESTED_CLASS)
    ]


# ============================================================================
# Writing
# ============================================================================

def write(module: Module, path: PathLike) -> Path:
    """Serialize `module` to `path`.

    The image is written to a temporary file beside the destination and
    moved into place, so a failed write never leaves a partial assembly.

    Raises:
        StructureError: the module cannot be serialized
        OutputError: the destination cannot be created or overwritten
    """
    path = Path(path)
    data = serialize(module)
    _write_atomic(data, path)
    return path


def serialize(module: Module) -> bytes:
    """Return the image bytes of `module` with its current flags applied."""
    image = module.image
    if image is None:
        raise StructureError(f"Module {module.name} is not bound to an assembly image")

    types = flatten(module.types)
    _check_structure(types, len(image.data))

    try:
        pe = pefile.PE(data=image.data, fast_load=True)
    except pefile.PEFormatError as e:
        raise StructureError(f"Image of {module.name} no longer parses: {e.value}") from e

    try:
        for t in types:
            _patch(pe.set_dword_at_offset, t.flags_offset, t.flags, t.full_name)
            for m in t.methods:
                _patch(pe.set_word_at_offset, m.flags_offset, m.flags, f"{t.full_name}::{m.name}")
            for f in t.fields:
                _patch(pe.set_word_at_offset, f.flags_offset, f.flags, f"{t.full_name}::{f.name}")

        if pe.OPTIONAL_HEADER.CheckSum:
            pe.OPTIONAL_HEADER.CheckSum = pe.generate_checksum()

        return bytes(pe.write())
    finally:
        pe.close()


def _patch(setter: Callable[[int, int], bool], offset: int, value: int, what: str) -> None:
    if not setter(offset, value):
        raise StructureError(f"Flags of {what} lie outside the image (offset {offset:#x})")


def _check_structure(types: list[TypeDef], image_size: int) -> None:
    for t in types:
        _check_flags(t.full_name, t.flags_offset, t.flags, 4, image_size)
        visibility = t.visibility
        if t.is_nested and not visibility.is_nested_kind:
            raise StructureError(
                f"Nested type {t.full_name} carries top-level visibility {visibility.name}"
            )
        if not t.is_nested and visibility.is_nested_kind:
            raise StructureError(
                f"Top-level type {t.full_name} carries nested visibility {visibility.name}"
            )
        for member in [*t.methods, *t.fields]:
            _check_flags(f"{t.full_name}::{member.name}", member.flags_offset, member.flags, 2, image_size)


def _check_flags(what: str, offset: int, flags: int, width: int, image_size: int) -> None:
    if not 0 <= offset <= image_size - width:
        raise StructureError(f"{what} has no flags location inside the image")
    if not 0 <= flags < 1 << (8 * width):
        raise StructureError(f"Flags of {what} ({flags:#x}) do not fit in {width} bytes")


def _write_atomic(data: bytes, path: Path) -> None:
    try:
        fd, tmp_name = tempfile.mkstemp(
            prefix=f".{path.name}.", suffix=".tmp", dir=path.parent,
        )
    except OSError as e:
        raise OutputError(f"Cannot create the new assembly: {e.strerror or e}", path) from e

    tmp = Path(tmp_name)
    try:
        with os.fdopen(fd, "wb") as fh:
            fh.write(data)
        os.chmod(tmp, 0o644)
        os.replace(tmp, path)
    except OSError as e:
        tmp.unlink(missing_ok=True)
        raise OutputError(f"Cannot create/overwrite the new assembly: {e.strerror or e}", path) from e
