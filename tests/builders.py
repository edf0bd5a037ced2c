"""
Test fixtures: managed assemblies built from scratch.

build_minimal_assembly() lays out a PE32 DLL with a single .text section
holding a CLI header followed by ECMA-335 metadata (#~ or #- table stream,
#Strings, #GUID, #Blob). Types are described with TypeSketch trees; row 1 of
TypeDef is always the implicit <Module> type, as compilers emit it.
"""

import struct
from dataclasses import dataclass, field


# TypeAttributes
NOT_PUBLIC = 0x0
PUBLIC = 0x1
NESTED_PUBLIC = 0x2
NESTED_PRIVATE = 0x3
NESTED_FAMILY = 0x4
NESTED_ASSEMBLY = 0x5
NESTED_FAM_OR_ASSEM = 0x7
ABSTRACT = 0x00000080
SEALED = 0x00000100
BEFORE_FIELD_INIT = 0x00100000

# MethodAttributes / FieldAttributes access
COMPILER_CONTROLLED = 0x0
PRIVATE = 0x1
FAM_AND_ASSEM = 0x2
ASSEMBLY = 0x3
FAMILY = 0x4
FAM_OR_ASSEM = 0x5
MEMBER_PUBLIC = 0x6
STATIC = 0x0010
HIDE_BY_SIG = 0x0080
SPECIAL_NAME = 0x0800

TEXT_RVA = 0x2000
FILE_ALIGNMENT = 0x200
SECTION_ALIGNMENT = 0x2000
CLI_HEADER_SIZE = 72
CHECKSUM_OFFSET = 0x80 + 4 + 20 + 64
METADATA_OFFSET = FILE_ALIGNMENT + CLI_HEADER_SIZE

FIELD_SIG = b"\x06\x08"          # FIELD int32
METHOD_SIG = b"\x20\x00\x01"     # HASTHIS, 0 params, void


@dataclass
class TypeSketch:
    name: str
    visibility: int = NOT_PUBLIC
    namespace: str = ""
    extra_flags: int = 0
    methods: list = field(default_factory=list)  # (name, flags)
    fields: list = field(default_factory=list)   # (name, flags)
    nested: list = field(default_factory=list)   # TypeSketch


def _align(value: int, alignment: int) -> int:
    return (value + alignment - 1) // alignment * alignment


def _pad4(data: bytes) -> bytes:
    return bytes(data) + b"\x00" * (_align(len(data), 4) - len(data))


class _StringHeap:
    def __init__(self):
        self.data = bytearray(b"\x00")
        self.index = {"": 0}

    def add(self, text: str) -> int:
        if text not in self.index:
            self.index[text] = len(self.data)
            self.data += text.encode("utf-8") + b"\x00"
        return self.index[text]


class _BlobHeap:
    def __init__(self):
        self.data = bytearray(b"\x00")
        self.index = {}

    def add(self, blob: bytes) -> int:
        if blob not in self.index:
            self.index[blob] = len(self.data)
            self.data += bytes([len(blob)]) + blob
        return self.index[blob]


def _preorder(sketches, parent, out):
    for sketch in sketches:
        out.append((sketch, parent))
        rid = len(out)
        _preorder(sketch.nested, rid, out)


def build_metadata(
    types=(),
    module_name: str = "Test.dll",
    field_ptr: bool = False,
    method_ptr: bool = False,
    extra_nesting=(),
) -> bytes:
    """Metadata root plus streams for the given type sketches.

    field_ptr: emit an uncompressed #- stream whose Field rows are stored in
    reverse order and reached through a FieldPtr table.
    method_ptr: the same for MethodDef rows behind a MethodPtr table.
    extra_nesting: raw (nested, enclosing) NestedClass rows to append.
    """
    ordered = [(TypeSketch("<Module>"), None)]
    _preorder(types, None, ordered)

    strings = _StringHeap()
    blobs = _BlobHeap()
    field_sig = blobs.add(FIELD_SIG)
    method_sig = blobs.add(METHOD_SIG)

    typedef_rows = []
    field_rows = []
    method_rows = []
    nesting = []
    for rid, (sketch, parent) in enumerate(ordered, start=1):
        typedef_rows.append(struct.pack(
            "<IHHHHH",
            sketch.visibility | sketch.extra_flags,
            strings.add(sketch.name),
            strings.add(sketch.namespace),
            0,                        # Extends: null
            len(field_rows) + 1,      # FieldList
            len(method_rows) + 1,     # MethodList
        ))
        for name, flags in sketch.fields:
            field_rows.append(struct.pack("<HHH", flags, strings.add(name), field_sig))
        for name, flags in sketch.methods:
            method_rows.append(struct.pack(
                "<IHHHHH", 0, 0, flags, strings.add(name), method_sig, 1,
            ))
        if parent is not None:
            nesting.append((rid, parent))
    nesting.extend(extra_nesting)
    nesting.sort()

    tables = {
        0x00: [struct.pack("<HHHHH", 0, strings.add(module_name), 1, 0, 0)],
        0x02: typedef_rows,
    }
    if field_rows:
        if field_ptr:
            count = len(field_rows)
            tables[0x03] = [struct.pack("<H", count - i) for i in range(count)]
            field_rows = list(reversed(field_rows))
        tables[0x04] = field_rows
    if method_rows:
        if method_ptr:
            count = len(method_rows)
            tables[0x05] = [struct.pack("<H", count - i) for i in range(count)]
            method_rows = list(reversed(method_rows))
        tables[0x06] = method_rows
    if nesting:
        tables[0x29] = [struct.pack("<HH", n, e) for n, e in nesting]

    valid = 0
    for number in tables:
        valid |= 1 << number
    table_stream = struct.pack("<IBBBBQQ", 0, 2, 0, 0, 1, valid, 0x000016003301FA00)
    for number in sorted(tables):
        table_stream += struct.pack("<I", len(tables[number]))
    for number in sorted(tables):
        table_stream += b"".join(tables[number])

    streams = [
        ("#-" if field_ptr or method_ptr else "#~", _pad4(table_stream)),
        ("#Strings", _pad4(strings.data)),
        ("#GUID", bytes(range(16))),
        ("#Blob", _pad4(blobs.data)),
    ]

    version = b"v4.0.30319\x00\x00"
    header_size = 16 + len(version) + 4
    for name, _ in streams:
        header_size += 8 + _align(len(name) + 1, 4)

    stream_headers = b""
    stream_data = b""
    offset = header_size
    for name, data in streams:
        raw_name = name.encode("ascii") + b"\x00"
        stream_headers += struct.pack("<II", offset, len(data))
        stream_headers += raw_name + b"\x00" * (_align(len(raw_name), 4) - len(raw_name))
        stream_data += data
        offset += len(data)

    return (
        struct.pack("<IHHII", 0x424A5342, 1, 1, 0, len(version))
        + version
        + struct.pack("<HH", 0, len(streams))
        + stream_headers
        + stream_data
    )


def build_minimal_assembly(
    types=(),
    module_name: str = "Test.dll",
    checksum: int = 0,
    with_clr: bool = True,
    **metadata_options,
) -> bytes:
    """Construct a minimal managed PE32 DLL for testing."""
    metadata = build_metadata(types, module_name=module_name, **metadata_options)
    metadata_rva = TEXT_RVA + CLI_HEADER_SIZE

    cli_header = struct.pack(
        "<IHHIIII",
        CLI_HEADER_SIZE,  # cb
        2, 5,             # runtime version
        metadata_rva,
        len(metadata),
        0x1,              # COMIMAGE_FLAGS_ILONLY
        0,                # EntryPointToken
    )
    cli_header += b"\x00" * (CLI_HEADER_SIZE - len(cli_header))

    payload = cli_header + metadata
    raw_size = _align(len(payload), FILE_ALIGNMENT)

    # DOS Header
    dos_header = bytearray(0x80)
    dos_header[0:2] = b"MZ"
    struct.pack_into("<I", dos_header, 0x3C, 0x80)  # e_lfanew

    # COFF Header (i386, 1 section, DLL)
    coff = struct.pack("<HHIIIHH",
        0x14C,   # Machine: i386
        1,       # NumberOfSections
        0,       # TimeDateStamp
        0,       # PointerToSymbolTable
        0,       # NumberOfSymbols
        224,     # SizeOfOptionalHeader (PE32)
        0x2102,  # EXECUTABLE_IMAGE | 32BIT_MACHINE | DLL
    )

    # Optional Header (PE32)
    opt = bytearray(224)
    struct.pack_into("<H", opt, 0, 0x10B)                # Magic: PE32
    struct.pack_into("<I", opt, 4, raw_size)             # SizeOfCode
    struct.pack_into("<I", opt, 20, TEXT_RVA)            # BaseOfCode
    struct.pack_into("<I", opt, 28, 0x10000000)          # ImageBase
    struct.pack_into("<I", opt, 32, SECTION_ALIGNMENT)
    struct.pack_into("<I", opt, 36, FILE_ALIGNMENT)
    struct.pack_into("<H", opt, 40, 4)                   # MajorOperatingSystemVersion
    struct.pack_into("<H", opt, 48, 4)                   # MajorSubsystemVersion
    struct.pack_into("<I", opt, 56, TEXT_RVA + _align(len(payload), SECTION_ALIGNMENT))
    struct.pack_into("<I", opt, 60, FILE_ALIGNMENT)      # SizeOfHeaders
    struct.pack_into("<I", opt, 64, checksum)            # CheckSum
    struct.pack_into("<H", opt, 68, 3)                   # Subsystem: console
    struct.pack_into("<H", opt, 70, 0x8540)              # DllCharacteristics
    struct.pack_into("<IIII", opt, 72, 0x100000, 0x1000, 0x100000, 0x1000)
    struct.pack_into("<I", opt, 92, 16)                  # NumberOfRvaAndSizes
    if with_clr:
        struct.pack_into("<II", opt, 96 + 14 * 8, TEXT_RVA, CLI_HEADER_SIZE)

    # Section Header (.text)
    section = bytearray(40)
    section[0:6] = b".text\x00"
    struct.pack_into("<I", section, 8, len(payload))         # VirtualSize
    struct.pack_into("<I", section, 12, TEXT_RVA)            # VirtualAddress
    struct.pack_into("<I", section, 16, raw_size)            # SizeOfRawData
    struct.pack_into("<I", section, 20, FILE_ALIGNMENT)      # PointerToRawData
    struct.pack_into("<I", section, 36, 0x60000020)          # CODE|EXECUTE|READ

    headers = bytes(dos_header) + b"PE\x00\x00" + coff + bytes(opt) + bytes(section)
    headers += b"\x00" * (FILE_ALIGNMENT - len(headers))

    return headers + payload + b"\x00" * (raw_size - len(payload))


def sample_types():
    """A small tree: public class with two levels of nesting plus an internal class.

    TypeDef rows: 1 <Module>, 2 Game.Player, 3 Player/State,
    4 Player/State/Flags, 5 Game.Internals
    """
    flags_enum = TypeSketch(
        "Flags", NESTED_FAMILY, extra_flags=SEALED,
        fields=[("value__", MEMBER_PUBLIC), ("None", MEMBER_PUBLIC | STATIC)],
    )
    state = TypeSketch(
        "State", NESTED_PRIVATE, extra_flags=BEFORE_FIELD_INIT,
        methods=[("Reset", ASSEMBLY | HIDE_BY_SIG)],
        fields=[("_flags", PRIVATE)],
        nested=[flags_enum],
    )
    player = TypeSketch(
        "Player", PUBLIC, namespace="Game",
        methods=[
            ("get_Health", MEMBER_PUBLIC | HIDE_BY_SIG | SPECIAL_NAME),
            ("set_Health", PRIVATE | HIDE_BY_SIG | SPECIAL_NAME),
            ("OnDamage", FAMILY | HIDE_BY_SIG),
            (".ctor", MEMBER_PUBLIC | HIDE_BY_SIG | SPECIAL_NAME),
        ],
        fields=[("_health", PRIVATE), ("Name", MEMBER_PUBLIC), ("_cache", FAM_OR_ASSEM)],
        nested=[state],
    )
    internals = TypeSketch(
        "Internals", NOT_PUBLIC, namespace="Game", extra_flags=ABSTRACT | SEALED,
        methods=[("Tick", COMPILER_CONTROLLED | STATIC), ("Log", FAM_AND_ASSEM | STATIC)],
    )
    return [player, internals]
