"""
Publicizer Nesting Graph

Type nesting in ECMA-335 is recorded as a flat NestedClass table of
(nested, enclosing) TypeDef row pairs. This module turns those pairs into a
directed graph (enclosing → nested) and checks that it is a forest of
arborescences: every type has at most one enclosing type and no type
encloses itself, directly or transitively. Only after that check does the
reader build the owned TypeDef tree, which is what lets the walker treat
nesting as a plain tree.
"""

from __future__ import annotations

from typing import Iterable

import networkx as nx

from publicizer.errors import FormatError


class NestingGraph:
    """Enclosing → nested relation over TypeDef row ids.

    Usage:
        graph = NestingGraph(type_count=5)
        graph.add_nesting(nested=3, enclosing=2)
        graph.validate()
        graph.roots()        # [1, 2, 4, 5]
        graph.children(2)    # [3]
    """

    def __init__(self, type_count: int) -> None:
        self._g = nx.DiGraph()
        self._g.add_nodes_from(range(1, type_count + 1))
        self._type_count = type_count

    @classmethod
    def from_pairs(cls, type_count: int, pairs: Iterable[tuple[int, int]]) -> NestingGraph:
        graph = cls(type_count)
        for nested, enclosing in pairs:
            graph.add_nesting(nested, enclosing)
        graph.validate()
        return graph

    @property
    def graph(self) -> nx.DiGraph:
        """Access the underlying networkx graph directly."""
        return self._g

    def add_nesting(self, nested: int, enclosing: int) -> None:
        for rid in (nested, enclosing):
            if not 1 <= rid <= self._type_count:
                raise FormatError(
                    f"NestedClass references TypeDef row {rid} "
                    f"(table has {self._type_count} rows)"
                )
        if nested == enclosing:
            raise FormatError(f"TypeDef row {nested} is nested inside itself")
        if self._g.in_degree(nested):
            parent = next(iter(self._g.predecessors(nested)))
            raise FormatError(
                f"TypeDef row {nested} has two enclosing types ({parent} and {enclosing})"
            )
        self._g.add_edge(enclosing, nested)

    def validate(self) -> None:
        """Reject nesting that is not a forest (cycles between types)."""
        if self._type_count == 0:
            return
        if not nx.is_branching(self._g):
            cycle = nx.find_cycle(self._g)
            path = " → ".join(str(u) for u, _ in cycle)
            raise FormatError(f"Type nesting contains a cycle: {path}")

    def roots(self) -> list[int]:
        """Top-level types, in declaration (row) order."""
        return sorted(n for n in self._g.nodes if self._g.in_degree(n) == 0)

    def children(self, rid: int) -> list[int]:
        """Directly nested types of `rid`, in declaration (row) order."""
        return sorted(self._g.successors(rid))

    def __len__(self) -> int:
        return self._type_count

    def __repr__(self) -> str:
        return (
            f"<NestingGraph: {self._type_count} types, "
            f"{self._g.number_of_edges()} nestings>"
        )
