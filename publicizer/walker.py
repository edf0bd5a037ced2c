"""
Type Graph Walker

Flattens a module's type tree into one ordered sequence: each type is
followed by its nested types, depth-first, in declaration order at every
level. Nesting is a tree (checked on read), so no visited-set is kept.
"""

from __future__ import annotations

from typing import Iterable, Sequence

from publicizer.model import FieldDef, MethodDef, TypeDef


def flatten(types: Iterable[TypeDef]) -> list[TypeDef]:
    """Return every type reachable from `types`, parents before children.

    An explicit stack replaces recursion so pathological nesting depth
    cannot hit the interpreter's recursion limit.
    """
    result: list[TypeDef] = []
    stack = list(reversed(list(types)))
    while stack:
        current = stack.pop()
        result.append(current)
        stack.extend(reversed(current.nested_types))
    return result


def iter_members(types: Sequence[TypeDef]) -> tuple[list[MethodDef], list[FieldDef]]:
    """Methods and fields owned by an already flattened type sequence."""
    methods = [m for t in types for m in t.methods]
    fields = [f for t in types for f in t.fields]
    return methods, fields
