"""
Visibility Rewriter

Widens every type, method and field of a flattened type sequence to public:

- top-level types become PUBLIC, nested types become NESTED_PUBLIC
- methods and fields become PUBLIC whatever their prior access
  (private, family, assembly, fam-and/or-assem, compiler-controlled)

Property and event accessors are ordinary MethodDefs and need nothing
special. The pass is idempotent; a second run changes and reports nothing.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Iterable

from publicizer.model import FieldDef, MemberAccess, MethodDef, Module, TypeDef, TypeVisibility
from publicizer.walker import flatten, iter_members

log = logging.getLogger(__name__)


@dataclass(frozen=True)
class ChangeCounts:
    """How many entities were non-public before a publicize pass."""
    types: int = 0
    methods: int = 0
    fields: int = 0

    @property
    def total(self) -> int:
        return self.types + self.methods + self.fields

    def __repr__(self) -> str:
        return f"<Changes: types={self.types} methods={self.methods} fields={self.fields}>"


def publicize(
    types: Iterable[TypeDef],
    methods: Iterable[MethodDef],
    fields: Iterable[FieldDef],
) -> ChangeCounts:
    """Make every supplied type, method and field public, in place.

    Counts are taken from the state before mutation: a type counts when it
    is neither public nor nested-public, a member when it is not public.
    """
    types = list(types)
    methods = list(methods)
    fields = list(fields)

    type_count = sum(1 for t in types if not t.is_public and not t.is_nested_public)
    for t in types:
        # Each type is either top-level or nested; both checks run anyway.
        if not t.is_nested and not t.is_public:
            t.visibility = TypeVisibility.PUBLIC
        if t.is_nested and not t.is_nested_public:
            t.visibility = TypeVisibility.NESTED_PUBLIC
    log.info("Changed %d types to public.", type_count)

    method_count = sum(1 for m in methods if not m.is_public)
    for m in methods:
        if not m.is_public:
            m.access = MemberAccess.PUBLIC
    log.info("Changed %d methods to public.", method_count)

    field_count = sum(1 for f in fields if not f.is_public)
    for f in fields:
        if not f.is_public:
            f.access = MemberAccess.PUBLIC
    log.info("Changed %d fields to public.", field_count)

    return ChangeCounts(types=type_count, methods=method_count, fields=field_count)


def pending_changes(types: Iterable[TypeDef]) -> ChangeCounts:
    """Counts a publicize pass over `types` would report, without mutating."""
    flat = flatten(types)
    methods, fields = iter_members(flat)
    return ChangeCounts(
        types=sum(1 for t in flat if not t.is_public and not t.is_nested_public),
        methods=sum(1 for m in methods if not m.is_public),
        fields=sum(1 for f in fields if not f.is_public),
    )


def publicize_module(module: Module) -> ChangeCounts:
    """Flatten `module`'s type tree and publicize everything in it."""
    flat = flatten(module.types)
    methods, fields = iter_members(flat)
    return publicize(flat, methods, fields)
