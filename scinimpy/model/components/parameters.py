# Copyright (c) Microsoft Corporation.
# Licensed under the MIT license.

"""Stochastic nodes: nodes whose values follow a registered distribution.

A stochastic node holds:

    - The :py:class:`~scinimpy.distributions.descriptor.DistributionDescriptor`
      looked up once, at build time
    - The parameter expressions as supplied by the user (possibly in an alternate
      parameterization)
    - The canonical parameter expressions derived from them, compiled into
      closures over the value store

Every density evaluation and every draw goes straight to the descriptor with the
compiled canonical parameters. There is no name-based dispatch after build.

A stochastic node becomes a *data* node when a value is observed for it. Data
flags live in the value store rather than on the node, so separate copies of a
graph can observe different data.
"""

from __future__ import annotations

from typing import Mapping, TYPE_CHECKING

import numpy as np
import numpy.typing as npt

from scinimpy.model.components import abstract_model_component
from scinimpy.model.components.expressions import Ref

if TYPE_CHECKING:
    from scinimpy import custom_types
    from scinimpy.distributions.descriptor import DistributionDescriptor
    from scinimpy.model.calculation import ValueStore
    from scinimpy.model.components.expressions import CompiledExpression, Expression


class StochasticNode(abstract_model_component.AbstractNode):
    """A node distributed according to a registered distribution.

    :param name: Name of the node
    :type name: str
    :param index: Declaration index of the node
    :type index: custom_types.Integer
    :param shape: Shape of the node
    :type shape: tuple[int, ...]
    :param descriptor: Distribution of the node
    :type descriptor: DistributionDescriptor
    :param supplied: Parameter expressions as supplied
    :type supplied: dict[str, Expression]
    :param canonical: Canonical parameter expressions
    :type canonical: dict[str, Expression]
    :param parents: Nodes referenced by the parameter expressions
    :type parents: tuple[AbstractNode, ...]
    """

    KIND = "stochastic"

    def __init__(
        self,
        name: str,
        index: "custom_types.Integer",
        shape: tuple[int, ...],
        descriptor: "DistributionDescriptor",
        supplied: dict[str, "Expression"],
        canonical: dict[str, "Expression"],
        parents: tuple[abstract_model_component.AbstractNode, ...],
    ):
        super().__init__(name, index, shape, parents)
        self._descriptor = descriptor
        self._supplied = dict(supplied)
        self._canonical = dict(canonical)
        self._canonical_fns: dict[str, "CompiledExpression"] = {}
        self._supplied_fns: dict[str, "CompiledExpression"] = {}

    def compile(self, index_of: Mapping[str, int]) -> None:
        self._canonical_fns = {
            paramname: expr.compile(index_of) for paramname, expr in self._canonical.items()
        }
        self._supplied_fns = {
            paramname: expr.compile(index_of) for paramname, expr in self._supplied.items()
        }

    def params(self, store: "ValueStore") -> dict[str, npt.NDArray]:
        """Evaluate the canonical parameters against the store.

        :param store: Value store to read from
        :type store: ValueStore

        :returns: Canonical parameter values, keyed by name
        :rtype: dict[str, npt.NDArray]
        """
        with np.errstate(all="ignore"):
            return {
                paramname: np.asarray(function(store.values), dtype=np.float64)
                for paramname, function in self._canonical_fns.items()
            }

    def get_param(self, store: "ValueStore", paramname: str) -> npt.NDArray:
        """Evaluate a canonical, supplied, or alternate parameter.

        :param store: Value store to read from
        :type store: ValueStore
        :param paramname: Name of the parameter
        :type paramname: str

        :returns: Value of the parameter
        :rtype: npt.NDArray

        :raises KeyError: If the distribution has no such parameter
        """
        if paramname in self._supplied_fns and paramname not in self._canonical_fns:
            return np.asarray(self._supplied_fns[paramname](store.values), dtype=np.float64)
        with np.errstate(all="ignore"):
            return np.asarray(
                self._descriptor.get_param(paramname, self.params(store)),
                dtype=np.float64,
            )

    def log_density(self, store: "ValueStore") -> float:
        """Compute the log density of the current value without caching it."""
        return self._descriptor.log_density(store.values[self._index], self.params(store))

    def calculate(self, store: "ValueStore") -> float:
        logprob = self.log_density(store)
        store.logprobs[self._index] = logprob
        return logprob

    def calculate_diff(self, store: "ValueStore") -> float:
        previous = float(store.logprobs[self._index])
        return self.calculate(store) - previous

    def simulate(self, store: "ValueStore", rng: np.random.Generator) -> None:
        store.values[self._index][...] = self._descriptor.sample(
            self.params(store), self._shape, rng
        )

    def get_log_prob(self, store: "ValueStore") -> float:
        return float(store.logprobs[self._index])

    def is_data(self, store: "ValueStore") -> bool:
        """Whether the node is observed in the given store."""
        return bool(store.is_data[self._index])

    def links_directly(self, paramname: str, node_name: str) -> bool:
        """Check whether a supplied parameter is exactly a reference to a node,
        and no other supplied parameter references that node.

        :param paramname: Supplied parameter name
        :type paramname: str
        :param node_name: Name of the referenced node
        :type node_name: str

        :returns: Whether the node enters only through ``paramname``, unmodified
        :rtype: bool
        """
        expr = self._supplied.get(paramname)
        if not isinstance(expr, Ref) or expr.name != node_name:
            return False
        return all(
            node_name not in other.references()
            for othername, other in self._supplied.items()
            if othername != paramname
        )

    def linking_params(self, node_name: str) -> tuple[str, ...]:
        """Names of the supplied parameters that reference a node."""
        return tuple(
            paramname
            for paramname, expr in self._supplied.items()
            if node_name in expr.references()
        )

    @property
    def descriptor(self) -> "DistributionDescriptor":
        """Distribution of the node."""
        return self._descriptor

    @property
    def distribution(self) -> str:
        """Registry name of the node's distribution."""
        return self._descriptor.name

    @property
    def supplied(self) -> dict[str, "Expression"]:
        """Parameter expressions as supplied."""
        return dict(self._supplied)

    @property
    def canonical(self) -> dict[str, "Expression"]:
        """Canonical parameter expressions."""
        return dict(self._canonical)

    @property
    def discrete(self) -> bool:
        """Whether the node's distribution is discrete."""
        return self._descriptor.DISCRETE

    @property
    def support(self) -> tuple[float, float]:
        """Support interval of the node's distribution."""
        return self._descriptor.support

    @property
    def description(self) -> str:
        params = ", ".join(f"{k}={v!r}" for k, v in self._supplied.items())
        return f"{self._descriptor.name}({params})"
