# Copyright (c) Microsoft Corporation.
# Licensed under the MIT license.

"""Abstract base class for SciNimPy model graph nodes.

This module defines the foundational abstract class shared by every node of a
model graph: constants, stochastic nodes, and deterministic nodes. Users typically
do not interact with this module directly; nodes are created by
:py:class:`~scinimpy.model.graph.ModelGraph` from relation lists.

A node holds only *structure*: its name, declaration index, kind, fixed shape,
and links to parents and children. Node *values* live in a
:py:class:`~scinimpy.model.calculation.ValueStore`, one buffer per node, and
every operation that reads or writes values takes the store as an argument. This
lets independent copies of a graph share nodes while keeping separate values.

Core responsibilities:

    - Parent-child linkage for dependency tracking
    - Compilation of defining expressions into closures over the value store
    - Calculation, simulation, and cached log-probability access against a store
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Mapping, Optional, TYPE_CHECKING

import numpy as np

if TYPE_CHECKING:
    from scinimpy import custom_types
    from scinimpy.model.calculation import ValueStore


class AbstractNode(ABC):
    """Base class for all nodes of a model graph.

    :param name: Name of the node. Unique within a graph.
    :type name: str
    :param index: Declaration index of the node. Also the position of the node's
        buffer in the value store.
    :type index: custom_types.Integer
    :param shape: Fixed shape of the node's value
    :type shape: tuple[int, ...]
    :param parents: Nodes this node depends on directly. Defaults to ().
    :type parents: tuple[AbstractNode, ...]

    :cvar KIND: Kind of the node
    """

    KIND: "custom_types.NodeKind"

    def __init__(
        self,
        name: str,
        index: "custom_types.Integer",
        shape: tuple[int, ...],
        parents: tuple["AbstractNode", ...] = (),
    ):
        self._name = name
        self._index = int(index)
        self._shape = tuple(shape)
        self._parents = tuple(parents)
        self._children: list[AbstractNode] = []

        # Link parents to this node
        for parent in self._parents:
            parent._record_child(self)  # pylint: disable=protected-access

    def _record_child(self, child: "AbstractNode") -> None:
        """Record a child node. A child appears at most once.

        :param child: The child node
        :type child: AbstractNode
        """
        if child not in self._children:
            self._children.append(child)

    def compile(self, index_of: Mapping[str, int]) -> None:  # pylint: disable=unused-argument
        """Compile any defining expressions against the value store layout.

        :param index_of: Store index of every node, by name
        :type index_of: Mapping[str, int]
        """

    @abstractmethod
    def calculate(self, store: "ValueStore") -> float:
        """Recompute the node against the store.

        Deterministic nodes recompute their value; stochastic nodes recompute and
        cache their log probability.

        :param store: Value store to read from and write to
        :type store: ValueStore

        :returns: The node's log probability (0.0 for non-stochastic nodes)
        :rtype: float
        """

    def calculate_diff(self, store: "ValueStore") -> float:
        """Recompute the node and return the change in its log probability.

        :param store: Value store to read from and write to
        :type store: ValueStore

        :returns: New minus previously cached log probability
        :rtype: float
        """
        self.calculate(store)
        return 0.0

    def simulate(
        self, store: "ValueStore", rng: np.random.Generator
    ) -> None:  # pylint: disable=unused-argument
        """Draw or recompute the node's value in the store.

        :param store: Value store to write to
        :type store: ValueStore
        :param rng: Random number generator
        :type rng: np.random.Generator
        """

    def get_log_prob(self, store: "ValueStore") -> float:  # pylint: disable=unused-argument
        """Return the cached log probability of the node.

        :param store: Value store to read from
        :type store: ValueStore

        :returns: Cached log probability (0.0 for non-stochastic nodes)
        :rtype: float
        """
        return 0.0

    def get_value(self, store: "ValueStore") -> np.ndarray:
        """Return the node's buffer in the store (not a copy)."""
        return store.values[self._index]

    def __str__(self) -> str:
        return self._name

    def __repr__(self) -> str:
        return f"{self.__class__.__name__}('{self._name}', shape={self._shape})"

    @property
    def name(self) -> str:
        """Name of the node."""
        return self._name

    @property
    def index(self) -> int:
        """Declaration index of the node."""
        return self._index

    @property
    def kind(self) -> "custom_types.NodeKind":
        """Kind of the node: "stochastic", "deterministic", or "constant"."""
        return self.KIND

    @property
    def shape(self) -> tuple[int, ...]:
        """Shape of the node's value."""
        return self._shape

    @property
    def ndim(self) -> int:
        """Number of dimensions of the node's value."""
        return len(self._shape)

    @property
    def size(self) -> int:
        """Number of elements of the node's value."""
        return int(np.prod(self._shape, dtype=int))

    @property
    def is_scalar(self) -> bool:
        """Whether the node holds a single value."""
        return self.size == 1

    @property
    def parents(self) -> tuple["AbstractNode", ...]:
        """Nodes this node depends on directly, in first-reference order."""
        return self._parents

    @property
    def children(self) -> tuple["AbstractNode", ...]:
        """Nodes that depend directly on this node, in declaration order."""
        return tuple(self._children)

    @property
    def is_stochastic(self) -> bool:
        """Whether the node is stochastic."""
        return self.KIND == "stochastic"

    @property
    def is_deterministic(self) -> bool:
        """Whether the node is deterministic."""
        return self.KIND == "deterministic"

    @property
    def description(self) -> Optional[str]:
        """Short description of how the node is defined."""
        return None
