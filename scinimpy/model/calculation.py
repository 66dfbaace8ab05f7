# Copyright (c) Microsoft Corporation.
# Licensed under the MIT license.

"""Value storage and precomputed calculation plans.

The :py:class:`ValueStore` is the only mutable part of a model graph. It holds one
float64 buffer per node (overwritten in place, never resized), the cached log
probability of every node, the data flags, and a random number generator.

A :py:class:`CalculationPlan` is an ordered tuple of nodes, normally a dependency
set produced by the :py:class:`~scinimpy.model.dependencies.DependencyResolver`.
Plans are computed once, at specialization time, and then executed repeatedly
against a store. Executing a plan never resolves names or walks the graph.
"""

from __future__ import annotations

from typing import Iterable, Optional, TYPE_CHECKING

import numpy as np
import numpy.typing as npt

if TYPE_CHECKING:
    from scinimpy.model.components.abstract_model_component import AbstractNode


class ValueStore:
    """Mutable per-graph state: node values, cached log probabilities, data flags
    and the random number generator.

    :param values: One buffer per node, in declaration order
    :type values: list[npt.NDArray]
    :param token: Identifier of the graph structure the store belongs to. Copies of
        a graph share the token.
    :type token: object
    :param rng: Random number generator owned by the store
    :type rng: np.random.Generator
    :param is_data: Data flags, one per node. Defaults to all False.
    :type is_data: Optional[npt.NDArray]
    :param logprobs: Cached log probabilities, one per node. Defaults to NaN
        (not yet calculated).
    :type logprobs: Optional[npt.NDArray]
    """

    def __init__(
        self,
        values: list[npt.NDArray],
        token: object,
        rng: np.random.Generator,
        is_data: Optional[npt.NDArray] = None,
        logprobs: Optional[npt.NDArray] = None,
    ):
        self.values = values
        self.token = token
        self.rng = rng
        self.is_data = (
            np.zeros(len(values), dtype=bool) if is_data is None else is_data
        )
        self.logprobs = (
            np.full(len(values), np.nan, dtype=np.float64) if logprobs is None else logprobs
        )

    def copy(self, rng: Optional[np.random.Generator] = None) -> "ValueStore":
        """Deep-copy the values, flags and cached log probabilities.

        :param rng: Generator for the copy. Defaults to a copy of the current
            generator's state.
        :type rng: Optional[np.random.Generator]

        :returns: Independent store for the same graph structure
        :rtype: ValueStore
        """
        if rng is None:
            rng = np.random.Generator(type(self.rng.bit_generator)())
            rng.bit_generator.state = self.rng.bit_generator.state
        return ValueStore(
            [value.copy() for value in self.values],
            self.token,
            rng,
            self.is_data.copy(),
            self.logprobs.copy(),
        )

    def __len__(self) -> int:
        return len(self.values)


class PlanBackup:
    """Preallocated buffers for saving and restoring the state touched by a plan.

    :param plan: The plan whose nodes are backed up
    :type plan: CalculationPlan
    """

    def __init__(self, plan: "CalculationPlan"):
        self.indices = plan.indices
        self._index_list = list(self.indices)
        self.values = [np.empty(node.shape, dtype=np.float64) for node in plan.nodes]
        self.logprobs = np.empty(len(self.indices), dtype=np.float64)

    def save(self, store: ValueStore) -> None:
        """Copy the plan's values and cached log probabilities into the backup."""
        for buffer, i in zip(self.values, self.indices):
            buffer[...] = store.values[i]
        self.logprobs[:] = store.logprobs[self._index_list]

    def restore(self, store: ValueStore) -> None:
        """Copy the backup into the store."""
        for buffer, i in zip(self.values, self.indices):
            store.values[i][...] = buffer
        store.logprobs[self._index_list] = self.logprobs


class CalculationPlan:
    """An ordered set of nodes to calculate, simulate, or sum over.

    :param nodes: Nodes in dependency order
    :type nodes: Iterable[AbstractNode]
    """

    def __init__(self, nodes: Iterable["AbstractNode"]):
        self._nodes = tuple(nodes)
        self._stochastic = tuple(node for node in self._nodes if node.is_stochastic)

    def calculate(self, store: ValueStore) -> float:
        """Recompute every node in order.

        :param store: Store to calculate against
        :type store: ValueStore

        :returns: Sum of the log probabilities of the stochastic nodes in the plan
        :rtype: float
        """
        total = 0.0
        for node in self._nodes:
            total += node.calculate(store)
        return total

    def calculate_diff(self, store: ValueStore) -> float:
        """Recompute every node and return the change in total log probability.

        :param store: Store to calculate against
        :type store: ValueStore

        :returns: New minus previously cached total log probability
        :rtype: float
        """
        total = 0.0
        for node in self._nodes:
            total += node.calculate_diff(store)
        return total

    def get_log_prob(self, store: ValueStore) -> float:
        """Sum the cached log probabilities of the plan's stochastic nodes."""
        return float(sum(node.get_log_prob(store) for node in self._stochastic))

    def simulate(
        self, store: ValueStore, rng: np.random.Generator, include_data: bool = False
    ) -> None:
        """Simulate every node in order.

        Stochastic nodes are drawn from their distributions and deterministic nodes
        are recomputed. Data nodes keep their observed values unless
        ``include_data`` is set.

        :param store: Store to write to
        :type store: ValueStore
        :param rng: Random number generator
        :type rng: np.random.Generator
        :param include_data: Whether to overwrite data nodes. Defaults to False.
        :type include_data: bool
        """
        for node in self._nodes:
            if not include_data and store.is_data[node.index]:
                continue
            node.simulate(store, rng)

    def backup(self) -> PlanBackup:
        """Allocate save/restore buffers for this plan."""
        return PlanBackup(self)

    def __iter__(self):
        return iter(self._nodes)

    def __len__(self) -> int:
        return len(self._nodes)

    def __repr__(self) -> str:
        return f"CalculationPlan({', '.join(self.names)})"

    @property
    def nodes(self) -> tuple["AbstractNode", ...]:
        """Nodes of the plan, in execution order."""
        return self._nodes

    @property
    def indices(self) -> tuple[int, ...]:
        """Store indices of the plan's nodes, in execution order."""
        return tuple(node.index for node in self._nodes)

    @property
    def names(self) -> tuple[str, ...]:
        """Names of the plan's nodes, in execution order."""
        return tuple(node.name for node in self._nodes)
