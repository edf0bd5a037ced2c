"""
ECMA-335 Metadata Layout

Parses the structures a managed assembly carries inside its PE image:

- CLI header (IMAGE_COR20_HEADER) pointed to by the COM descriptor directory
- Metadata root ("BSJB") and its stream headers
- The table stream (#~ compressed or #- uncompressed) with full column
  layout for every table defined by ECMA-335 Partition II, Section 22

Only layout is computed here: which file offset holds which column of which
row. Every offset is absolute within the file so the writer can patch
columns without moving anything.
"""

from __future__ import annotations

import struct
from dataclasses import dataclass, field
from enum import IntEnum
from typing import ClassVar, Optional, Union

from publicizer.errors import FormatError


METADATA_SIGNATURE = 0x424A5342  # "BSJB"

# HeapSizes bits of the table stream header
HEAP_STRING_WIDE = 0x01
HEAP_GUID_WIDE = 0x02
HEAP_BLOB_WIDE = 0x04
HEAP_EXTRA_DATA = 0x40

COMIMAGE_FLAGS_ILONLY = 0x01
COMIMAGE_FLAGS_STRONGNAMESIGNED = 0x08

TABLE_STREAM_NAMES = ("#~", "#-")
STRINGS_STREAM = "#Strings"


class Table(IntEnum):
    MODULE = 0x00
    TYPE_REF = 0x01
    TYPE_DEF = 0x02
    FIELD_PTR = 0x03
    FIELD = 0x04
    METHOD_PTR = 0x05
    METHOD_DEF = 0x06
    PARAM_PTR = 0x07
    PARAM = 0x08
    INTERFACE_IMPL = 0x09
    MEMBER_REF = 0x0A
    CONSTANT = 0x0B
    CUSTOM_ATTRIBUTE = 0x0C
    FIELD_MARSHAL = 0x0D
    DECL_SECURITY = 0x0E
    CLASS_LAYOUT = 0x0F
    FIELD_LAYOUT = 0x10
    STAND_ALONE_SIG = 0x11
    EVENT_MAP = 0x12
    EVENT_PTR = 0x13
    EVENT = 0x14
    PROPERTY_MAP = 0x15
    PROPERTY_PTR = 0x16
    PROPERTY = 0x17
    METHOD_SEMANTICS = 0x18
    METHOD_IMPL = 0x19
    MODULE_REF = 0x1A
    TYPE_SPEC = 0x1B
    IMPL_MAP = 0x1C
    FIELD_RVA = 0x1D
    ENC_LOG = 0x1E
    ENC_MAP = 0x1F
    ASSEMBLY = 0x20
    ASSEMBLY_PROCESSOR = 0x21
    ASSEMBLY_OS = 0x22
    ASSEMBLY_REF = 0x23
    ASSEMBLY_REF_PROCESSOR = 0x24
    ASSEMBLY_REF_OS = 0x25
    FILE = 0x26
    EXPORTED_TYPE = 0x27
    MANIFEST_RESOURCE = 0x28
    NESTED_CLASS = 0x29
    GENERIC_PARAM = 0x2A
    METHOD_SPEC = 0x2B
    GENERIC_PARAM_CONSTRAINT = 0x2C


@dataclass(frozen=True)
class CodedIndex:
    """A column that encodes (table tag, row index) in one integer.

    `tables` lists the tag order; None marks tags that are reserved.
    """
    name: str
    tables: tuple[Optional[Table], ...]

    @property
    def tag_bits(self) -> int:
        return (len(self.tables) - 1).bit_length()


T = Table

TYPE_DEF_OR_REF = CodedIndex("TypeDefOrRef", (T.TYPE_DEF, T.TYPE_REF, T.TYPE_SPEC))
HAS_CONSTANT = CodedIndex("HasConstant", (T.FIELD, T.PARAM, T.PROPERTY))
HAS_CUSTOM_ATTRIBUTE = CodedIndex("HasCustomAttribute", (
    T.METHOD_DEF, T.FIELD, T.TYPE_REF, T.TYPE_DEF, T.PARAM, T.INTERFACE_IMPL,
    T.MEMBER_REF, T.MODULE, T.DECL_SECURITY, T.PROPERTY, T.EVENT,
    T.STAND_ALONE_SIG, T.MODULE_REF, T.TYPE_SPEC, T.ASSEMBLY, T.ASSEMBLY_REF,
    T.FILE, T.EXPORTED_TYPE, T.MANIFEST_RESOURCE, T.GENERIC_PARAM,
    T.GENERIC_PARAM_CONSTRAINT, T.METHOD_SPEC,
))
HAS_FIELD_MARSHAL = CodedIndex("HasFieldMarshal", (T.FIELD, T.PARAM))
HAS_DECL_SECURITY = CodedIndex("HasDeclSecurity", (T.TYPE_DEF, T.METHOD_DEF, T.ASSEMBLY))
MEMBER_REF_PARENT = CodedIndex("MemberRefParent", (
    T.TYPE_DEF, T.TYPE_REF, T.MODULE_REF, T.METHOD_DEF, T.TYPE_SPEC,
))
HAS_SEMANTICS = CodedIndex("HasSemantics", (T.EVENT, T.PROPERTY))
METHOD_DEF_OR_REF = CodedIndex("MethodDefOrRef", (T.METHOD_DEF, T.MEMBER_REF))
MEMBER_FORWARDED = CodedIndex("MemberForwarded", (T.FIELD, T.METHOD_DEF))
IMPLEMENTATION = CodedIndex("Implementation", (T.FILE, T.ASSEMBLY_REF, T.EXPORTED_TYPE))
CUSTOM_ATTRIBUTE_TYPE = CodedIndex("CustomAttributeType", (
    None, None, T.METHOD_DEF, T.MEMBER_REF, None,
))
RESOLUTION_SCOPE = CodedIndex("ResolutionScope", (
    T.MODULE, T.MODULE_REF, T.ASSEMBLY_REF, T.TYPE_REF,
))
TYPE_OR_METHOD_DEF = CodedIndex("TypeOrMethodDef", (T.TYPE_DEF, T.METHOD_DEF))

# Heap index column kinds
STRING = "string"
GUID = "guid"
BLOB = "blob"

ColumnKind = Union[int, str, Table, CodedIndex]

# ECMA-335 Partition II, Section 22. Integers are fixed widths in bytes.
SCHEMA: dict[Table, tuple[tuple[str, ColumnKind], ...]] = {
    T.MODULE: (("Generation", 2), ("Name", STRING), ("Mvid", GUID),
               ("EncId", GUID), ("EncBaseId", GUID)),
    T.TYPE_REF: (("ResolutionScope", RESOLUTION_SCOPE), ("TypeName", STRING),
                 ("TypeNamespace", STRING)),
    T.TYPE_DEF: (("Flags", 4), ("TypeName", STRING), ("TypeNamespace", STRING),
                 ("Extends", TYPE_DEF_OR_REF), ("FieldList", T.FIELD),
                 ("MethodList", T.METHOD_DEF)),
    T.FIELD_PTR: (("Field", T.FIELD),),
    T.FIELD: (("Flags", 2), ("Name", STRING), ("Signature", BLOB)),
    T.METHOD_PTR: (("Method", T.METHOD_DEF),),
    T.METHOD_DEF: (("RVA", 4), ("ImplFlags", 2), ("Flags", 2), ("Name", STRING),
                   ("Signature", BLOB), ("ParamList", T.PARAM)),
    T.PARAM_PTR: (("Param", T.PARAM),),
    T.PARAM: (("Flags", 2), ("Sequence", 2), ("Name", STRING)),
    T.INTERFACE_IMPL: (("Class", T.TYPE_DEF), ("Interface", TYPE_DEF_OR_REF)),
    T.MEMBER_REF: (("Class", MEMBER_REF_PARENT), ("Name", STRING), ("Signature", BLOB)),
    T.CONSTANT: (("Type", 1), ("Padding", 1), ("Parent", HAS_CONSTANT), ("Value", BLOB)),
    T.CUSTOM_ATTRIBUTE: (("Parent", HAS_CUSTOM_ATTRIBUTE),
                         ("Type", CUSTOM_ATTRIBUTE_TYPE), ("Value", BLOB)),
    T.FIELD_MARSHAL: (("Parent", HAS_FIELD_MARSHAL), ("NativeType", BLOB)),
    T.DECL_SECURITY: (("Action", 2), ("Parent", HAS_DECL_SECURITY),
                      ("PermissionSet", BLOB)),
    T.CLASS_LAYOUT: (("PackingSize", 2), ("ClassSize", 4), ("Parent", T.TYPE_DEF)),
    T.FIELD_LAYOUT: (("Offset", 4), ("Field", T.FIELD)),
    T.STAND_ALONE_SIG: (("Signature", BLOB),),
    T.EVENT_MAP: (("Parent", T.TYPE_DEF), ("EventList", T.EVENT)),
    T.EVENT_PTR: (("Event", T.EVENT),),
    T.EVENT: (("EventFlags", 2), ("Name", STRING), ("EventType", TYPE_DEF_OR_REF)),
    T.PROPERTY_MAP: (("Parent", T.TYPE_DEF), ("PropertyList", T.PROPERTY)),
    T.PROPERTY_PTR: (("Property", T.PROPERTY),),
    T.PROPERTY: (("Flags", 2), ("Name", STRING), ("Type", BLOB)),
    T.METHOD_SEMANTICS: (("Semantics", 2), ("Method", T.METHOD_DEF),
                         ("Association", HAS_SEMANTICS)),
    T.METHOD_IMPL: (("Class", T.TYPE_DEF), ("MethodBody", METHOD_DEF_OR_REF),
                    ("MethodDeclaration", METHOD_DEF_OR_REF)),
    T.MODULE_REF: (("Name", STRING),),
    T.TYPE_SPEC: (("Signature", BLOB),),
    T.IMPL_MAP: (("MappingFlags", 2), ("MemberForwarded", MEMBER_FORWARDED),
                 ("ImportName", STRING), ("ImportScope", T.MODULE_REF)),
    T.FIELD_RVA: (("RVA", 4), ("Field", T.FIELD)),
    T.ENC_LOG: (("Token", 4), ("FuncCode", 4)),
    T.ENC_MAP: (("Token", 4),),
    T.ASSEMBLY: (("HashAlgId", 4), ("MajorVersion", 2), ("MinorVersion", 2),
                 ("BuildNumber", 2), ("RevisionNumber", 2), ("Flags", 4),
                 ("PublicKey", BLOB), ("Name", STRING), ("Culture", STRING)),
    T.ASSEMBLY_PROCESSOR: (("Processor", 4),),
    T.ASSEMBLY_OS: (("OSPlatformID", 4), ("OSMajorVersion", 4), ("OSMinorVersion", 4)),
    T.ASSEMBLY_REF: (("MajorVersion", 2), ("MinorVersion", 2), ("BuildNumber", 2),
                     ("RevisionNumber", 2), ("Flags", 4), ("PublicKeyOrToken", BLOB),
                     ("Name", STRING), ("Culture", STRING), ("HashValue", BLOB)),
    T.ASSEMBLY_REF_PROCESSOR: (("Processor", 4), ("AssemblyRef", T.ASSEMBLY_REF)),
    T.ASSEMBLY_REF_OS: (("OSPlatformID", 4), ("OSMajorVersion", 4),
                        ("OSMinorVersion", 4), ("AssemblyRef", T.ASSEMBLY_REF)),
    T.FILE: (("Flags", 4), ("Name", STRING), ("HashValue", BLOB)),
    T.EXPORTED_TYPE: (("Flags", 4), ("TypeDefId", 4), ("TypeName", STRING),
                      ("TypeNamespace", STRING), ("Implementation", IMPLEMENTATION)),
    T.MANIFEST_RESOURCE: (("Offset", 4), ("Flags", 4), ("Name", STRING),
                          ("Implementation", IMPLEMENTATION)),
    T.NESTED_CLASS: (("NestedClass", T.TYPE_DEF), ("EnclosingClass", T.TYPE_DEF)),
    T.GENERIC_PARAM: (("Number", 2), ("Flags", 2), ("Owner", TYPE_OR_METHOD_DEF),
                      ("Name", STRING)),
    T.METHOD_SPEC: (("Method", METHOD_DEF_OR_REF), ("Instantiation", BLOB)),
    T.GENERIC_PARAM_CONSTRAINT: (("Owner", T.GENERIC_PARAM),
                                 ("Constraint", TYPE_DEF_OR_REF)),
}

del T

_UINT_FORMATS = {1: "<B", 2: "<H", 4: "<I"}


def _unpack(fmt: str, data: bytes, offset: int, what: str) -> tuple:
    if offset < 0:
        raise FormatError(f"Negative offset while reading {what}")
    try:
        return struct.unpack_from(fmt, data, offset)
    except struct.error as e:
        raise FormatError(f"Truncated {what} at {offset:#x}") from e


def read_uint(data: bytes, offset: int, size: int, what: str = "column") -> int:
    return _unpack(_UINT_FORMATS[size], data, offset, what)[0]


# ============================================================================
# CLI header
# ============================================================================

@dataclass(frozen=True)
class CliHeader:
    """IMAGE_COR20_HEADER (ECMA-335 Partition II, Section 25.3.3)."""
    cb: int
    major_runtime_version: int
    minor_runtime_version: int
    metadata_rva: int
    metadata_size: int
    flags: int
    entry_point_token: int
    strong_name_rva: int = 0
    strong_name_size: int = 0

    SIZE: ClassVar[int] = 72

    @classmethod
    def parse(cls, data: bytes, offset: int) -> CliHeader:
        values = _unpack("<IHH16I", data, offset, "CLI header")
        header = cls(
            cb=values[0],
            major_runtime_version=values[1],
            minor_runtime_version=values[2],
            metadata_rva=values[3],
            metadata_size=values[4],
            flags=values[5],
            entry_point_token=values[6],
            strong_name_rva=values[9],
            strong_name_size=values[10],
        )
        if header.metadata_rva == 0 or header.metadata_size == 0:
            raise FormatError("CLI header has no metadata directory")
        return header

    @property
    def is_il_only(self) -> bool:
        return bool(self.flags & COMIMAGE_FLAGS_ILONLY)

    @property
    def is_strong_name_signed(self) -> bool:
        return bool(self.flags & COMIMAGE_FLAGS_STRONGNAMESIGNED)


# ============================================================================
# Metadata root and streams
# ============================================================================

@dataclass(frozen=True)
class StreamHeader:
    """A metadata stream; `offset` is absolute within the file."""
    name: str
    offset: int
    size: int

    @property
    def end(self) -> int:
        return self.offset + self.size


@dataclass(frozen=True)
class MetadataRoot:
    offset: int
    version: str
    streams: dict[str, StreamHeader]

    @classmethod
    def parse(cls, data: bytes, offset: int) -> MetadataRoot:
        signature, _major, _minor, _reserved, length = _unpack(
            "<IHHII", data, offset, "metadata root",
        )
        if signature != METADATA_SIGNATURE:
            raise FormatError(f"Bad metadata signature: {signature:#010x}")

        pos = offset + 16
        raw_version = data[pos:pos + length]
        if len(raw_version) != length:
            raise FormatError("Truncated metadata version string")
        version = raw_version.split(b"\x00", 1)[0].decode("ascii", errors="replace")
        pos += length

        _flags, count = _unpack("<HH", data, pos, "metadata root")
        pos += 4

        streams: dict[str, StreamHeader] = {}
        for _ in range(count):
            rel_offset, size = _unpack("<II", data, pos, "stream header")
            pos += 8
            name_end = data.find(b"\x00", pos, pos + 32)
            if name_end < 0:
                raise FormatError(f"Unterminated stream name at {pos:#x}")
            name = data[pos:name_end].decode("ascii", errors="replace")
            # Name plus terminator, padded to a 4-byte boundary
            pos += (name_end - pos + 1 + 3) & ~3

            stream = StreamHeader(name, offset + rel_offset, size)
            if stream.end > len(data):
                raise FormatError(f"Stream {name} runs past end of file")
            # First occurrence wins, as the runtime loader does
            streams.setdefault(name, stream)

        return cls(offset=offset, version=version, streams=streams)

    @property
    def table_stream(self) -> StreamHeader:
        for name in TABLE_STREAM_NAMES:
            if name in self.streams:
                return self.streams[name]
        raise FormatError("Metadata has no table stream (#~ or #-)")

    @property
    def strings_heap(self) -> StreamHeader:
        if STRINGS_STREAM not in self.streams:
            raise FormatError("Metadata has no #Strings heap")
        return self.streams[STRINGS_STREAM]


def read_string(data: bytes, heap: StreamHeader, index: int) -> str:
    """Read a null-terminated UTF-8 string from the #Strings heap."""
    if index >= heap.size:
        raise FormatError(f"String index {index:#x} outside #Strings heap")
    start = heap.offset + index
    end = data.find(b"\x00", start, heap.end)
    if end < 0:
        end = heap.end
    return data[start:end].decode("utf-8", errors="replace")


# ============================================================================
# Table stream
# ============================================================================

@dataclass(frozen=True)
class ColumnLayout:
    name: str
    offset: int  # within the row
    size: int


@dataclass(frozen=True)
class TableInfo:
    """Location and row layout of one metadata table."""
    table: Table
    rows: int
    offset: int  # file offset of row 1
    row_size: int
    columns: tuple[ColumnLayout, ...]

    def column(self, name: str) -> ColumnLayout:
        for col in self.columns:
            if col.name == name:
                return col
        raise KeyError(f"{self.table.name} has no column '{name}'")

    def row_offset(self, rid: int) -> int:
        """File offset of row `rid` (1-based, as in metadata tokens)."""
        if not 1 <= rid <= self.rows:
            raise FormatError(f"{self.table.name} row {rid} out of range (1..{self.rows})")
        return self.offset + (rid - 1) * self.row_size

    @property
    def end(self) -> int:
        return self.offset + self.rows * self.row_size


@dataclass
class TableStream:
    """The parsed #~ / #- stream header with every table's layout."""
    name: str
    heap_sizes: int
    row_counts: dict[Table, int]
    tables: dict[Table, TableInfo] = field(default_factory=dict)

    @property
    def is_uncompressed(self) -> bool:
        return self.name == "#-"

    def row_count(self, table: Table) -> int:
        return self.row_counts.get(table, 0)

    def has(self, table: Table) -> bool:
        return self.row_count(table) > 0

    def column_size(self, kind: ColumnKind) -> int:
        if isinstance(kind, CodedIndex):
            largest = max(self.row_count(t) for t in kind.tables if t is not None)
            return 4 if largest >= 1 << (16 - kind.tag_bits) else 2
        if isinstance(kind, Table):
            return 4 if self.row_count(kind) >= 1 << 16 else 2
        if kind == STRING:
            return 4 if self.heap_sizes & HEAP_STRING_WIDE else 2
        if kind == GUID:
            return 4 if self.heap_sizes & HEAP_GUID_WIDE else 2
        if kind == BLOB:
            return 4 if self.heap_sizes & HEAP_BLOB_WIDE else 2
        return kind

    def read_row(self, data: bytes, table: Table, rid: int) -> dict[str, int]:
        info = self.tables.get(table)
        if info is None:
            raise FormatError(f"Metadata has no {table.name} table")
        base = info.row_offset(rid)
        return {
            col.name: read_uint(data, base + col.offset, col.size, f"{table.name} row {rid}")
            for col in info.columns
        }

    def rows(self, data: bytes, table: Table) -> list[dict[str, int]]:
        return [self.read_row(data, table, rid) for rid in range(1, self.row_count(table) + 1)]

    @classmethod
    def parse(cls, data: bytes, header: StreamHeader) -> TableStream:
        """Parse the table stream header and lay out every present table.

        ECMA-335 Partition II, Section 24.2.6: a fixed header, one u32 row
        count per bit set in `Valid`, then the tables back to back in
        table-number order.
        """
        _reserved, _major, _minor, heap_sizes, _reserved2, valid, _sorted = _unpack(
            "<IBBBBQQ", data, header.offset, "table stream header",
        )
        pos = header.offset + 24

        row_counts: dict[Table, int] = {}
        for bit in range(64):
            if not (valid >> bit) & 1:
                continue
            try:
                table = Table(bit)
            except ValueError:
                raise FormatError(f"Unsupported metadata table {bit:#04x}") from None
            row_counts[table] = read_uint(data, pos, 4, "table row count")
            pos += 4

        if heap_sizes & HEAP_EXTRA_DATA:
            pos += 4

        stream = cls(name=header.name, heap_sizes=heap_sizes, row_counts=row_counts)

        for table in sorted(row_counts):
            columns = []
            row_size = 0
            for name, kind in SCHEMA[table]:
                size = stream.column_size(kind)
                columns.append(ColumnLayout(name, row_size, size))
                row_size += size
            stream.tables[table] = TableInfo(
                table=table,
                rows=row_counts[table],
                offset=pos,
                row_size=row_size,
                columns=tuple(columns),
            )
            pos += row_size * row_counts[table]

        if pos > header.end:
            raise FormatError(
                f"Table stream {header.name} is truncated "
                f"(tables need {pos - header.offset}B, stream holds {header.size}B)"
            )
        return stream

    def __repr__(self) -> str:
        present = ", ".join(f"{t.name}={n}" for t, n in sorted(self.row_counts.items()))
        return f"<TableStream {self.name}: {present}>"
