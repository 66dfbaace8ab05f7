# Copyright (c) Microsoft Corporation.
# Licensed under the MIT license.

"""Non-sampler algorithm templates.

These templates turn a model graph into plain numeric functions:

    - :py:class:`LogProbabilityCalculator` returns the log probability of a set of
      stochastic nodes given the current values of their ancestors
    - :py:class:`ObjectiveFunction` exposes the log posterior as a function of a
      flat parameter vector, for use with an external optimizer
    - :py:class:`NodeSimulator` draws a set of nodes and propagates the draws to
      their downstream deterministic nodes

Example:
    >>> from scipy import optimize
    >>> objective = specialize(ObjectiveFunction, graph, wrt=["b0", "b1"],
    ...                        control={"negate": True})
    >>> result = optimize.minimize(objective.run, objective.pack())
"""

from __future__ import annotations

from typing import Any, Optional, TYPE_CHECKING

import numpy as np
import numpy.typing as npt

from scinimpy.algorithms.template import (
    AlgorithmTemplate,
    DependencySpec,
    FlatLayout,
    ScratchSpec,
)

if TYPE_CHECKING:
    from scinimpy import custom_types
    from scinimpy.algorithms.specialization import Binding, SpecializedAlgorithm
    from scinimpy.model.calculation import ValueStore
    from scinimpy.model.graph import ModelGraph


class LogProbabilityCalculator(AlgorithmTemplate):
    """Log probability of target stochastic nodes.

    The deterministic nodes between the targets and their nearest stochastic
    ancestors are recomputed first, so the result reflects the current values of
    those ancestors.
    """

    NAME = "log_prob"
    MAX_TARGET_NODES = None
    ALLOW_DATA_TARGETS = True
    DEPENDENCIES = {
        "calc": DependencySpec(
            direction="upstream", include_stochastic=False, through_stochastic=False
        )
    }

    def run(self, instance: "SpecializedAlgorithm", store: "ValueStore") -> float:
        return instance.binding.plans["calc"].calculate(store)


class ObjectiveFunction(AlgorithmTemplate):
    """Log posterior, up to a constant, as a function of a flat vector.

    The vector concatenates the flattened values of the ``wrt`` nodes in the order
    given. Running the instance with a vector writes it into the nodes, recomputes
    their dependents and returns the sum of the log probabilities that depend on
    them. Running without a vector evaluates at the current values.

    Control values:

        - ``negate``: Return the negative log posterior, for minimizers
    """

    NAME = "objective"
    TARGETS = ("wrt",)
    MAX_TARGET_NODES = None
    CONTINUOUS_ONLY = True
    DEPENDENCIES = {"calc": DependencySpec("wrt")}
    SCRATCH = {"vector": ScratchSpec("wrt:flat")}
    CONTROL = {"negate": False}
    METHODS = ("pack", "unpack")

    def setup(self, graph: "ModelGraph", binding: "Binding") -> dict[str, Any]:
        return {"layout": FlatLayout(binding.targets["wrt"])}

    def run(
        self,
        instance: "SpecializedAlgorithm",
        store: "ValueStore",
        vector: Optional["custom_types.SampleType"] = None,
    ) -> float:
        if vector is not None:
            self.unpack(instance, store, vector)
        logprob = instance.binding.plans["calc"].calculate(store)
        return -logprob if instance.control["negate"] else logprob

    def pack(self, instance: "SpecializedAlgorithm", store: "ValueStore") -> npt.NDArray:
        """Current values of the ``wrt`` nodes as a new flat vector."""
        binding = instance.binding
        return binding.extras["layout"].gather(store, binding.scratch["vector"]).copy()

    def unpack(
        self,
        instance: "SpecializedAlgorithm",
        store: "ValueStore",
        vector: "custom_types.SampleType",
    ) -> None:
        """Write a flat vector into the ``wrt`` nodes.

        :raises ValueError: If the vector has the wrong size
        """
        binding = instance.binding
        layout = binding.extras["layout"]
        vector = np.asarray(vector, dtype=np.float64).reshape(-1)
        if vector.size != layout.size:
            raise ValueError(f"Expected a vector of size {layout.size}, got {vector.size}")
        binding.scratch["vector"][:] = vector
        layout.scatter(store, binding.scratch["vector"])


class NodeSimulator(AlgorithmTemplate):
    """Draws target stochastic nodes and recomputes downstream deterministic nodes.

    Control values:

        - ``include_data``: Whether data nodes among the targets are redrawn
    """

    NAME = "simulate"
    MAX_TARGET_NODES = None
    ALLOW_DATA_TARGETS = True
    DEPENDENCIES = {"simulate": DependencySpec(include_stochastic=False)}
    CONTROL = {"include_data": False}

    def run(self, instance: "SpecializedAlgorithm", store: "ValueStore") -> None:
        instance.binding.plans["simulate"].simulate(
            store, store.rng, include_data=instance.control["include_data"]
        )
