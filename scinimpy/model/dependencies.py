# Copyright (c) Microsoft Corporation.
# Licensed under the MIT license.

"""Dependency resolution over a model graph.

The dependency set of a group of target nodes is the minimal ordered set of nodes
that must be recomputed after the targets change: the targets themselves, the
deterministic nodes downstream of them, and the first stochastic node on each
downstream path (whose log probability changes). Traversal stops at those
stochastic nodes unless told otherwise.

Resolution is deterministic. Nodes are visited breadth-first, filtered by kind,
and returned in a stable topological order in which ties are broken by
declaration index. The graph is trusted to be acyclic, since it was checked when
it was built.
"""

from __future__ import annotations

from collections import deque
from typing import Iterable, Optional, TYPE_CHECKING

import networkx as nx
import numpy.typing as npt

if TYPE_CHECKING:
    from scinimpy import custom_types
    from scinimpy.model.components.abstract_model_component import AbstractNode


class DependencyResolver:
    """Compute dependency sets on a fixed model graph.

    :param digraph: Directed graph of parent-to-child edges between node indices
    :type digraph: nx.DiGraph
    :param nodes: Nodes in declaration order. ``nodes[i].index == i``.
    :type nodes: tuple[AbstractNode, ...]
    """

    def __init__(self, digraph: nx.DiGraph, nodes: tuple["AbstractNode", ...]):
        self._digraph = digraph
        self._nodes = nodes

    def resolve(
        self,
        targets: Iterable[int],
        *,
        include_self: bool = True,
        include_stochastic: bool = True,
        include_deterministic: bool = True,
        include_data: bool = True,
        through_stochastic: Optional[bool] = None,
        direction: "custom_types.DependencyDirection" = "downstream",
        is_data: Optional[npt.NDArray] = None,
    ) -> tuple[int, ...]:
        """Resolve the dependency set of a group of target nodes.

        :param targets: Indices of the target nodes
        :type targets: Iterable[int]
        :param include_self: Whether the targets appear in the result. Defaults to
            True.
        :type include_self: bool
        :param include_stochastic: Whether non-target stochastic nodes appear in
            the result. Defaults to True.
        :type include_stochastic: bool
        :param include_deterministic: Whether non-target deterministic nodes appear
            in the result. Defaults to True.
        :type include_deterministic: bool
        :param include_data: Whether non-target data nodes appear in the result.
            Defaults to True.
        :type include_data: bool
        :param through_stochastic: Whether traversal continues past stochastic
            nodes. Defaults to None, meaning False downstream and True upstream so
            that upstream resolution yields every ancestor.
        :type through_stochastic: Optional[bool]
        :param direction: "downstream" follows parent-to-child edges, "upstream"
            follows child-to-parent edges and yields ancestors. Defaults to
            "downstream".
        :type direction: custom_types.DependencyDirection
        :param is_data: Data flags, one per node. Required to filter data nodes.
            Defaults to None (no node is data).
        :type is_data: Optional[npt.NDArray]

        :returns: Node indices in stable topological order
        :rtype: tuple[int, ...]
        """
        # Choose the edge relation
        if direction == "downstream":
            neighbors = self._digraph.successors
        elif direction == "upstream":
            neighbors = self._digraph.predecessors
        else:
            raise ValueError(f"Unknown direction '{direction}'")
        if through_stochastic is None:
            through_stochastic = direction == "upstream"

        # Breadth-first traversal from the targets
        targets = tuple(dict.fromkeys(int(target) for target in targets))
        visited = set(targets)
        queue = deque(targets)
        while queue:
            current = queue.popleft()
            for neighbor in neighbors(current):
                if neighbor in visited:
                    continue
                visited.add(neighbor)

                # Stochastic nodes end the path unless traversing through them
                if self._nodes[neighbor].is_stochastic and not through_stochastic:
                    continue
                queue.append(neighbor)

        # Filter by kind
        target_set = set(targets)
        keep = {
            index
            for index in visited
            if (
                include_self
                if index in target_set
                else self._keep(
                    index,
                    include_stochastic=include_stochastic,
                    include_deterministic=include_deterministic,
                    include_data=include_data,
                    is_data=is_data,
                )
            )
        }

        # Stable topological order
        return tuple(
            nx.lexicographical_topological_sort(
                self._digraph.subgraph(keep), key=lambda index: index
            )
        )

    def _keep(
        self,
        index: int,
        *,
        include_stochastic: bool,
        include_deterministic: bool,
        include_data: bool,
        is_data: Optional[npt.NDArray],
    ) -> bool:
        node = self._nodes[index]
        if node.is_stochastic:
            if not include_stochastic:
                return False
            return include_data or is_data is None or not bool(is_data[index])
        if node.is_deterministic:
            return include_deterministic
        return True

    def downstream_data(self, target: int, is_data: npt.NDArray) -> bool:
        """Whether any data node lies downstream of a target, at any depth.

        :param target: Index of the target node
        :type target: int
        :param is_data: Data flags, one per node
        :type is_data: npt.NDArray

        :returns: Whether a data node is a descendant of the target
        :rtype: bool
        """
        return any(bool(is_data[index]) for index in nx.descendants(self._digraph, target))

    def topological_order(self) -> tuple[int, ...]:
        """All node indices in stable topological order."""
        return tuple(
            nx.lexicographical_topological_sort(self._digraph, key=lambda index: index)
        )

    @property
    def digraph(self) -> nx.DiGraph:
        """The underlying graph."""
        return self._digraph
