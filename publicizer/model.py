"""
Publicizer data model: Module, TypeDef, MethodDef, FieldDef

The in-memory form of an assembly as far as visibility rewriting cares.
Accessibility lives in the low three bits of each entity's flags; the
enums below are views over those bits so the rewrite policy can be stated
in terms of named values instead of masks. Setting a visibility never
touches the other flag bits (Sealed, Abstract, Static, HideBySig, ...).

Ownership is strictly hierarchical:

    Module ─┬─ TypeDef ─┬─ TypeDef (nested, any depth)
            │           ├─ MethodDef
            │           └─ FieldDef
            └─ ...
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import IntEnum
from pathlib import Path
from typing import Optional


TYPE_VISIBILITY_MASK = 0x00000007
MEMBER_ACCESS_MASK = 0x0007


class TypeVisibility(IntEnum):
    """TypeAttributes.VisibilityMask values."""
    NOT_PUBLIC = 0
    PUBLIC = 1
    NESTED_PUBLIC = 2
    NESTED_PRIVATE = 3
    NESTED_FAMILY = 4
    NESTED_ASSEMBLY = 5
    NESTED_FAM_AND_ASSEM = 6
    NESTED_FAM_OR_ASSEM = 7

    @property
    def is_nested_kind(self) -> bool:
        """Whether this value is only legal on a nested type."""
        return self >= TypeVisibility.NESTED_PUBLIC


class MemberAccess(IntEnum):
    """MethodAttributes / FieldAttributes.MemberAccessMask values."""
    COMPILER_CONTROLLED = 0
    PRIVATE = 1
    FAM_AND_ASSEM = 2
    ASSEMBLY = 3
    FAMILY = 4
    FAM_OR_ASSEM = 5
    PUBLIC = 6


@dataclass(eq=False)
class MethodDef:
    rid: int
    name: str
    flags: int
    flags_offset: int = field(default=-1, repr=False)

    @property
    def access(self) -> MemberAccess:
        return MemberAccess(self.flags & MEMBER_ACCESS_MASK)

    @access.setter
    def access(self, value: MemberAccess) -> None:
        self.flags = (self.flags & ~MEMBER_ACCESS_MASK) | int(value)

    @property
    def is_public(self) -> bool:
        return (self.flags & MEMBER_ACCESS_MASK) == MemberAccess.PUBLIC


@dataclass(eq=False)
class FieldDef:
    rid: int
    name: str
    flags: int
    flags_offset: int = field(default=-1, repr=False)

    @property
    def access(self) -> MemberAccess:
        return MemberAccess(self.flags & MEMBER_ACCESS_MASK)

    @access.setter
    def access(self, value: MemberAccess) -> None:
        self.flags = (self.flags & ~MEMBER_ACCESS_MASK) | int(value)

    @property
    def is_public(self) -> bool:
        return (self.flags & MEMBER_ACCESS_MASK) == MemberAccess.PUBLIC


@dataclass(eq=False)
class TypeDef:
    """A TypeDef row and everything it owns.

    `declaring_type` is a back-reference for nested types, not ownership;
    the parent owns the child through `nested_types`.
    """
    rid: int
    name: str
    namespace: str
    flags: int
    flags_offset: int = field(default=-1, repr=False)
    nested_types: list[TypeDef] = field(default_factory=list, repr=False)
    methods: list[MethodDef] = field(default_factory=list, repr=False)
    fields: list[FieldDef] = field(default_factory=list, repr=False)
    declaring_type: Optional[TypeDef] = field(default=None, repr=False)

    @property
    def visibility(self) -> TypeVisibility:
        return TypeVisibility(self.flags & TYPE_VISIBILITY_MASK)

    @visibility.setter
    def visibility(self, value: TypeVisibility) -> None:
        self.flags = (self.flags & ~TYPE_VISIBILITY_MASK) | int(value)

    @property
    def is_nested(self) -> bool:
        return self.declaring_type is not None

    @property
    def is_public(self) -> bool:
        return self.visibility == TypeVisibility.PUBLIC

    @property
    def is_nested_public(self) -> bool:
        return self.visibility == TypeVisibility.NESTED_PUBLIC

    @property
    def full_name(self) -> str:
        if self.declaring_type is not None:
            return f"{self.declaring_type.full_name}/{self.name}"
        return f"{self.namespace}.{self.name}" if self.namespace else self.name

    def add_nested(self, child: TypeDef) -> None:
        child.declaring_type = self
        self.nested_types.append(child)


@dataclass(frozen=True)
class AssemblyImage:
    """Original bytes of a loaded assembly plus what the writer needs."""
    data: bytes
    metadata_version: str = ""
    table_stream: str = "#~"
    strong_name_signed: bool = False


@dataclass(eq=False)
class Module:
    """A parsed assembly: the top-level types and the image they came from.

    `image` is None once the module is detached from its source bytes;
    such a module can be inspected and rewritten but not written.
    """
    name: str
    types: list[TypeDef] = field(default_factory=list)
    path: Optional[Path] = None
    image: Optional[AssemblyImage] = field(default=None, repr=False)

    def __repr__(self) -> str:
        origin = f" from {self.path}" if self.path else ""
        return f"<Module {self.name}: {len(self.types)} top-level types{origin}>"
