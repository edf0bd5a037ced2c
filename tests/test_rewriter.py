"""
Publicizer Rewriter Test Suite

Tests the walker and the visibility rewrite on in-memory type trees:
1. Flattening order and completeness at arbitrary nesting depth
2. Member enumeration over a flattened sequence
3. Visibility policy for top-level types, nested types, methods, fields
4. Change counts taken before mutation, and idempotence
5. Untouched non-visibility flag bits
"""

import os
import sys

import pytest

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from publicizer.model import (
    FieldDef,
    MemberAccess,
    MethodDef,
    Module,
    TypeDef,
    TypeVisibility,
)
from publicizer.rewriter import ChangeCounts, pending_changes, publicize, publicize_module
from publicizer.walker import flatten, iter_members


def make_type(name, visibility=TypeVisibility.NOT_PUBLIC, extra=0, methods=(), fields=()):
    t = TypeDef(rid=0, name=name, namespace="", flags=int(visibility) | extra)
    t.methods = [MethodDef(rid=0, name=n, flags=f) for n, f in methods]
    t.fields = [FieldDef(rid=0, name=n, flags=f) for n, f in fields]
    return t


def sample_tree():
    """A (public) ─┬─ B (nested private) ── C (nested family)
                   └─ D (nested public)
       E (not public)
    """
    a = make_type("A", TypeVisibility.PUBLIC,
                  methods=[("Run", MemberAccess.PRIVATE), ("Stop", MemberAccess.PUBLIC)],
                  fields=[("_x", MemberAccess.PRIVATE)])
    b = make_type("B", TypeVisibility.NESTED_PRIVATE,
                  methods=[("Step", MemberAccess.FAMILY)])
    c = make_type("C", TypeVisibility.NESTED_FAMILY,
                  fields=[("y", MemberAccess.ASSEMBLY), ("z", MemberAccess.FAM_AND_ASSEM)])
    d = make_type("D", TypeVisibility.NESTED_PUBLIC)
    e = make_type("E", TypeVisibility.NOT_PUBLIC,
                  methods=[("Helper", MemberAccess.COMPILER_CONTROLLED)])
    a.add_nested(b)
    b.add_nested(c)
    a.add_nested(d)
    return [a, e]


# ============================================================================
# Walker
# ============================================================================

def test_flatten_preorder():
    assert [t.name for t in flatten(sample_tree())] == ["A", "B", "C", "D", "E"]


def test_flatten_each_type_once():
    flat = flatten(sample_tree())
    assert len({id(t) for t in flat}) == len(flat) == 5


def test_flatten_empty():
    assert flatten([]) == []


def test_flatten_deep_nesting():
    root = make_type("L0", TypeVisibility.PUBLIC)
    current = root
    for depth in range(1, 5000):
        child = make_type(f"L{depth}", TypeVisibility.NESTED_PRIVATE)
        current.add_nested(child)
        current = child
    flat = flatten([root])
    assert len(flat) == 5000
    assert flat[-1].name == "L4999"


def test_iter_members():
    methods, fields = iter_members(flatten(sample_tree()))
    assert [m.name for m in methods] == ["Run", "Stop", "Step", "Helper"]
    assert [f.name for f in fields] == ["_x", "y", "z"]


# ============================================================================
# Rewrite policy
# ============================================================================

def test_publicize_counts_before_mutation():
    flat = flatten(sample_tree())
    methods, fields = iter_members(flat)
    counts = publicize(flat, methods, fields)
    # B, C, E; A is public and D nested-public
    assert counts == ChangeCounts(types=3, methods=3, fields=3)
    assert counts.total == 9


def test_publicize_visibilities():
    roots = sample_tree()
    flat = flatten(roots)
    publicize(flat, *iter_members(flat))

    by_name = {t.name: t for t in flat}
    assert by_name["A"].visibility is TypeVisibility.PUBLIC
    assert by_name["E"].visibility is TypeVisibility.PUBLIC
    for name in ("B", "C", "D"):
        assert by_name[name].visibility is TypeVisibility.NESTED_PUBLIC

    methods, fields = iter_members(flat)
    assert all(m.access is MemberAccess.PUBLIC for m in methods)
    assert all(f.access is MemberAccess.PUBLIC for f in fields)


@pytest.mark.parametrize("access", [a for a in MemberAccess if a is not MemberAccess.PUBLIC])
def test_every_member_access_becomes_public(access):
    t = make_type("T", methods=[("m", access)], fields=[("f", access)])
    counts = publicize([t], t.methods, t.fields)
    assert counts.methods == 1 and counts.fields == 1
    assert t.methods[0].is_public and t.fields[0].is_public


@pytest.mark.parametrize("visibility", [
    TypeVisibility.NESTED_PRIVATE,
    TypeVisibility.NESTED_FAMILY,
    TypeVisibility.NESTED_ASSEMBLY,
    TypeVisibility.NESTED_FAM_AND_ASSEM,
    TypeVisibility.NESTED_FAM_OR_ASSEM,
])
def test_every_nested_visibility_becomes_nested_public(visibility):
    outer = make_type("Outer", TypeVisibility.PUBLIC)
    inner = make_type("Inner", visibility)
    outer.add_nested(inner)
    counts = publicize([outer, inner], [], [])
    assert counts.types == 1
    assert inner.is_nested_public
    assert not inner.is_public


def test_publicize_preserves_other_flag_bits():
    sealed_abstract = 0x0100 | 0x0080
    before_field_init = 0x00100000
    t = make_type("T", extra=sealed_abstract | before_field_init,
                  methods=[("m", MemberAccess.PRIVATE | 0x0010 | 0x0080 | 0x0800)],
                  fields=[("f", MemberAccess.FAMILY | 0x0010 | 0x0020)])
    publicize([t], t.methods, t.fields)
    assert t.flags == TypeVisibility.PUBLIC | sealed_abstract | before_field_init
    assert t.methods[0].flags == MemberAccess.PUBLIC | 0x0010 | 0x0080 | 0x0800
    assert t.fields[0].flags == MemberAccess.PUBLIC | 0x0010 | 0x0020


def test_publicize_is_idempotent():
    flat = flatten(sample_tree())
    methods, fields = iter_members(flat)
    publicize(flat, methods, fields)
    snapshot = [t.flags for t in flat] + [m.flags for m in methods] + [f.flags for f in fields]

    counts = publicize(flat, methods, fields)
    assert counts == ChangeCounts()
    assert [t.flags for t in flat] + [m.flags for m in methods] + [f.flags for f in fields] == snapshot


def test_publicize_empty():
    assert publicize([], [], []) == ChangeCounts(0, 0, 0)


def test_publicize_logs_counts(caplog):
    flat = flatten(sample_tree())
    with caplog.at_level("INFO", logger="publicizer.rewriter"):
        publicize(flat, *iter_members(flat))
    assert "Changed 3 types to public." in caplog.messages
    assert "Changed 3 methods to public." in caplog.messages
    assert "Changed 3 fields to public." in caplog.messages


def test_pending_changes_does_not_mutate():
    roots = sample_tree()
    before = [t.flags for t in flatten(roots)]
    assert pending_changes(roots) == ChangeCounts(types=3, methods=3, fields=3)
    assert [t.flags for t in flatten(roots)] == before


def test_publicize_module():
    module = Module(name="Test.dll", types=sample_tree())
    assert publicize_module(module) == ChangeCounts(types=3, methods=3, fields=3)
    assert publicize_module(module).total == 0


def test_reserved_access_bits_are_not_public():
    t = make_type("T", methods=[("m", 0x7)], fields=[("f", 0x7)])
    assert not t.methods[0].is_public and not t.fields[0].is_public
    counts = publicize([t], t.methods, t.fields)
    assert counts == ChangeCounts(types=1, methods=1, fields=1)
    assert t.methods[0].flags == MemberAccess.PUBLIC
