# Copyright (c) Microsoft Corporation.
# Licensed under the MIT license.

"""Core model graph class for SciNimPy.

This module contains the :py:class:`ModelGraph` class, which turns an ordered list
of :py:class:`~scinimpy.model.relations.NodeRelation` objects into an immutable
directed acyclic graph of constant, stochastic, and deterministic nodes, together
with a mutable :py:class:`~scinimpy.model.calculation.ValueStore`.

Building a graph:

    - Looks up every distribution in the registry exactly once
    - Resolves alternate parameterizations to canonical parameter expressions
    - Checks that every relation references only previously declared nodes
    - Infers and validates node shapes using NumPy broadcasting rules
    - Compiles every expression into a closure over the value store

Either the whole graph is built or an exception is raised; a partially built graph
is never returned.

Once built, the topology never changes. Values, cached log probabilities, data
flags, and the random number generator live in the store, which is the only
mutable state. :py:meth:`ModelGraph.copy` creates a graph that shares the topology
but owns an independent store, which is how independent MCMC chains are run.

Example:
    >>> import scinimpy as snp
    >>> from scinimpy.model import relations as rel
    >>> graph = snp.ModelGraph(
    ...     [
    ...         rel.stochastic("lam", "gamma", alpha=2.0, beta=1.0),
    ...         rel.stochastic("y", "pois", lambda_=rel.ref("lam"), data=[3, 1, 4]),
    ...     ]
    ... )
    >>> graph.get_dependencies("lam")
    ('lam', 'y')
"""

from __future__ import annotations

import copy
import warnings

from typing import Any, Iterable, Optional, TYPE_CHECKING

import networkx as nx
import numpy as np
import numpy.typing as npt
import pandas as pd

from scinimpy import utils
from scinimpy.distributions.registry import DistributionRegistry, REGISTRY
from scinimpy.exceptions import (
    CyclicDependency,
    GraphBuildError,
    ShapeMismatch,
)
from scinimpy.model.calculation import CalculationPlan, ValueStore
from scinimpy.model.components.abstract_model_component import AbstractNode
from scinimpy.model.components.constants import ConstantNode
from scinimpy.model.components.deterministic import DeterministicNode
from scinimpy.model.components.expressions import as_expression
from scinimpy.model.components.parameters import StochasticNode
from scinimpy.model.dependencies import DependencyResolver
from scinimpy.model.relations import NodeRelation

if TYPE_CHECKING:
    from scinimpy import custom_types


def _infer_stochastic_shape(
    name: str,
    descriptor,
    param_shapes: dict[str, tuple[int, ...]],
    declared: Optional[tuple[int, ...]],
) -> tuple[int, ...]:
    """Infer the shape of a stochastic node from its parameter shapes.

    Each canonical parameter splits into batch dimensions and the trailing
    dimensions belonging to one parameter value (its rank). Batch dimensions are
    broadcast together. Vector-valued distributions append the common event size.

    :raises ShapeMismatch: If the parameter shapes are incompatible with each other
        or with the declared shape
    """
    batches, events = [], []
    for param in descriptor.PARAMETERS:
        shape = param_shapes[param.name]
        if len(shape) < param.rank:
            raise ShapeMismatch(
                f"Parameter '{param.name}' of node '{name}' must have at least "
                f"{param.rank} dimension(s), got shape {shape}"
            )
        split = len(shape) - param.rank
        batches.append(shape[:split])
        if param.rank > 0:
            events.append(shape[split:])

    # Broadcast the batch dimensions
    try:
        batch = np.broadcast_shapes(*batches)
        event = np.broadcast_shapes(*events) if events else ()
    except ValueError as error:
        raise ShapeMismatch(
            f"Parameters of node '{name}' have incompatible shapes: {param_shapes}"
        ) from error

    # Vector-valued distributions carry the event dimension
    inferred = tuple(batch) + (tuple(event) if descriptor.VALUE_RANK == 1 else ())
    if declared is None:
        return inferred

    # The declared shape must be reachable by broadcasting
    if not utils.broadcasts_to(inferred, declared):
        raise ShapeMismatch(
            f"Declared shape {declared} of node '{name}' does not match the shape "
            f"{inferred} implied by its parameters"
        )
    if descriptor.VALUE_RANK == 1 and (
        len(declared) == 0 or (event and declared[-1:] != tuple(event))
    ):
        raise ShapeMismatch(
            f"Declared shape {declared} of vector-valued node '{name}' must end in "
            f"the event size {tuple(event)}"
        )
    return declared


class ModelGraph:
    """A built probabilistic graphical model.

    :param relations: Ordered node declarations
    :type relations: Iterable[NodeRelation]
    :param registry: Registry supplying distributions. Defaults to
        :py:data:`scinimpy.REGISTRY`.
    :type registry: Optional[DistributionRegistry]
    :param data: Observed values, keyed by node name, applied after any data given
        in the relations. Defaults to None.
    :type data: Optional[dict[str, custom_types.SampleType]]
    :param inits: Initial values of latent stochastic nodes, keyed by node name.
        Defaults to None.
    :type inits: Optional[dict[str, custom_types.SampleType]]
    :param seed: Seed for the graph's random number generator. Defaults to None,
        meaning a generator derived from :py:data:`scinimpy.RNG`.
    :type seed: Optional[custom_types.Integer]

    :raises CyclicDependency: If a relation references itself, a later node, or an
        undeclared node
    :raises GraphBuildError: If two relations declare the same name
    :raises ShapeMismatch: If declared shapes, parameter shapes, expression shapes,
        and data shapes disagree
    :raises UnknownDistribution: If a distribution is not registered
    :raises UnsupportedParameterization: If supplied parameters match no
        parameterization of their distribution
    """

    def __init__(
        self,
        relations: Iterable[NodeRelation],
        registry: Optional[DistributionRegistry] = None,
        *,
        data: Optional[dict[str, Any]] = None,
        inits: Optional[dict[str, Any]] = None,
        seed: Optional["custom_types.Integer"] = None,
    ):
        relations = list(relations)
        self._registry = REGISTRY if registry is None else registry

        # Build the immutable structure
        nodes, initial_values = self._build_nodes(relations)
        self._nodes: tuple[AbstractNode, ...] = nodes
        self._node_dict: dict[str, AbstractNode] = {node.name: node for node in nodes}
        self._digraph = self._build_digraph(nodes)
        self._resolver = DependencyResolver(self._digraph, nodes)
        self._token = object()

        # Compile every expression against the store layout
        index_of = {node.name: node.index for node in nodes}
        for node in nodes:
            node.compile(index_of)

        # Create the store
        self._store = ValueStore(
            [np.full(node.shape, np.nan, dtype=np.float64) for node in nodes],
            self._token,
            utils.get_rng(seed),
        )
        for node in nodes:
            if isinstance(node, ConstantNode):
                self._store.values[node.index][...] = node.value

        # Apply data and inits from the relations, then from the arguments
        relation_data = {
            name: value for name, (value, _) in initial_values.items() if value is not None
        }
        relation_inits = {
            name: value for name, (_, value) in initial_values.items() if value is not None
        }
        self.set_data({**relation_data, **(data or {})})
        self.set_inits({**relation_inits, **(inits or {})})

        # Bring deterministic nodes up to date with whatever is known
        self._calculate_deterministic()

    def _build_nodes(
        self, relations: list[NodeRelation]
    ) -> tuple[tuple[AbstractNode, ...], dict[str, tuple[Any, Any]]]:
        """Create the nodes from the relations, in declaration order.

        :returns: The nodes, and the (data, init) values given in the relations
        """
        # Names must be unique
        declared_at: dict[str, int] = {}
        for i, relation in enumerate(relations):
            if relation.name in declared_at:
                raise GraphBuildError(f"Node '{relation.name}' is declared more than once")
            declared_at[relation.name] = i

        nodes: list[AbstractNode] = []
        built: dict[str, AbstractNode] = {}
        initial_values: dict[str, tuple[Any, Any]] = {}
        for index, relation in enumerate(relations):

            # References must point at previously declared nodes
            for refname in relation.references():
                if refname == relation.name:
                    raise CyclicDependency(f"Node '{relation.name}' references itself")
                if refname not in built:
                    if refname in declared_at:
                        raise CyclicDependency(
                            f"Node '{relation.name}' references '{refname}', which is "
                            "declared later"
                        )
                    raise CyclicDependency(
                        f"Node '{relation.name}' references undeclared node '{refname}'"
                    )
            parents = tuple(built[refname] for refname in relation.references())
            shapes = {node.name: node.shape for node in parents}
            declared = None if relation.shape is None else utils.normalize_shape(relation.shape)

            # Build the node
            if relation.kind == "constant":
                node = self._build_constant(relation, index, declared)
            elif relation.kind == "deterministic":
                node = self._build_deterministic(relation, index, declared, shapes, parents)
            else:
                node = self._build_stochastic(relation, index, declared, shapes, parents)
                initial_values[relation.name] = (relation.data, relation.init)

            nodes.append(node)
            built[node.name] = node

        return tuple(nodes), initial_values

    @staticmethod
    def _build_constant(
        relation: NodeRelation, index: int, declared: Optional[tuple[int, ...]]
    ) -> ConstantNode:
        value = utils.as_value_array(relation.value)
        if declared is not None and value.shape != declared:
            raise ShapeMismatch(
                f"Declared shape {declared} of constant '{relation.name}' does not "
                f"match its value's shape {value.shape}"
            )
        return ConstantNode(relation.name, index, value)

    @staticmethod
    def _build_deterministic(
        relation: NodeRelation,
        index: int,
        declared: Optional[tuple[int, ...]],
        shapes: dict[str, tuple[int, ...]],
        parents: tuple[AbstractNode, ...],
    ) -> DeterministicNode:
        try:
            inferred = relation.expression.infer_shape(shapes)
        except ShapeMismatch as error:
            raise ShapeMismatch(f"Node '{relation.name}': {error}") from error
        if declared is not None and not utils.broadcasts_to(inferred, declared):
            raise ShapeMismatch(
                f"Declared shape {declared} of node '{relation.name}' does not match "
                f"the shape {inferred} of its expression"
            )
        return DeterministicNode(
            relation.name,
            index,
            inferred if declared is None else declared,
            relation.expression,
            parents,
        )

    def _build_stochastic(
        self,
        relation: NodeRelation,
        index: int,
        declared: Optional[tuple[int, ...]],
        shapes: dict[str, tuple[int, ...]],
        parents: tuple[AbstractNode, ...],
    ) -> StochasticNode:
        # Resolve the distribution and its canonical parameters
        descriptor = self._registry.lookup(relation.distribution)
        supplied = {name: as_expression(expr) for name, expr in relation.params.items()}
        canonical = {
            name: as_expression(expr) for name, expr in descriptor.resolve(supplied).items()
        }

        # Infer the shape. Observed data can fix an undeclared shape.
        try:
            param_shapes = {name: expr.infer_shape(shapes) for name, expr in canonical.items()}
        except ShapeMismatch as error:
            raise ShapeMismatch(f"Node '{relation.name}': {error}") from error
        if declared is None and relation.data is not None:
            declared = np.shape(relation.data)
        shape = _infer_stochastic_shape(relation.name, descriptor, param_shapes, declared)

        return StochasticNode(
            relation.name, index, shape, descriptor, supplied, canonical, parents
        )

    @staticmethod
    def _build_digraph(nodes: tuple[AbstractNode, ...]) -> nx.DiGraph:
        """Build a frozen graph of parent-to-child edges between node indices."""
        digraph = nx.DiGraph()
        for node in nodes:
            digraph.add_node(node.index, name=node.name, kind=node.kind)
            digraph.add_edges_from((parent.index, node.index) for parent in node.parents)
        return nx.freeze(digraph)

    def _calculate_deterministic(self) -> None:
        for node in self._nodes:
            if node.is_deterministic:
                node.calculate(self._store)

    def _lookup(self, name: str) -> AbstractNode:
        try:
            return self._node_dict[name]
        except KeyError as error:
            raise KeyError(f"Node '{name}' is not in the model") from error

    def _indices(self, nodes: Optional["custom_types.NodeNames"]) -> list[int]:
        """Resolve node names to indices. None means every node."""
        if nodes is None:
            return list(range(len(self._nodes)))
        if isinstance(nodes, str):
            nodes = [nodes]
        return [self._lookup(name).index for name in nodes]

    def _plan(self, nodes: Optional["custom_types.NodeNames"]) -> CalculationPlan:
        """Plan over exactly the given nodes, in topological order."""
        indices = set(self._indices(nodes))
        return CalculationPlan(
            self._nodes[index]
            for index in self._resolver.topological_order()
            if index in indices
        )

    def node(self, name: str) -> AbstractNode:
        """Get a node by name.

        :param name: Name of the node
        :type name: str

        :returns: The node
        :rtype: AbstractNode

        :raises KeyError: If there is no such node
        """
        return self._lookup(name)

    def get_dependencies(
        self,
        targets: "custom_types.NodeNames",
        *,
        include_self: bool = True,
        include_stochastic: bool = True,
        include_deterministic: bool = True,
        include_data: bool = True,
        through_stochastic: Optional[bool] = None,
        direction: "custom_types.DependencyDirection" = "downstream",
    ) -> tuple[str, ...]:
        """Get the names of the nodes that depend on (or are depended on by) targets.

        Downstream, this is the set of nodes to recompute after the targets change:
        the targets, their downstream deterministic nodes, and the first stochastic
        node on each path. Upstream, it is the targets' ancestors.

        Note that the default direction is "downstream". Pass
        ``direction="upstream"`` to get every transitive ancestor of the targets,
        for example the nodes a prediction needs before it can be computed.

        :param targets: Target node name(s)
        :type targets: custom_types.NodeNames
        :param include_self: Whether the targets are included. Defaults to True.
        :type include_self: bool
        :param include_stochastic: Whether other stochastic nodes are included.
            Defaults to True.
        :type include_stochastic: bool
        :param include_deterministic: Whether deterministic nodes are included.
            Defaults to True.
        :type include_deterministic: bool
        :param include_data: Whether data nodes are included. Defaults to True.
        :type include_data: bool
        :param through_stochastic: Whether to continue past stochastic nodes.
            Defaults to None, meaning only when resolving upstream.
        :type through_stochastic: Optional[bool]
        :param direction: "downstream" or "upstream". Defaults to "downstream".
        :type direction: custom_types.DependencyDirection

        :returns: Node names in stable topological order
        :rtype: tuple[str, ...]

        :raises KeyError: If a target does not exist
        """
        return tuple(
            self._nodes[index].name
            for index in self.resolve_dependencies(
                self._indices(targets),
                include_self=include_self,
                include_stochastic=include_stochastic,
                include_deterministic=include_deterministic,
                include_data=include_data,
                through_stochastic=through_stochastic,
                direction=direction,
            )
        )

    def resolve_dependencies(self, indices: Iterable[int], **options: Any) -> tuple[int, ...]:
        """Index-level version of :py:meth:`get_dependencies`, using this graph's
        current data flags.
        """
        return self._resolver.resolve(indices, is_data=self._store.is_data, **options)

    def has_downstream_data(self, name: str) -> bool:
        """Whether any data node descends from a node, at any depth."""
        return self._resolver.downstream_data(self._lookup(name).index, self._store.is_data)

    def get_node_names(
        self,
        kind: Optional["custom_types.NodeKind"] = None,
        *,
        data_only: bool = False,
        include_data: bool = True,
        latent_only: bool = False,
        top_only: bool = False,
        end_only: bool = False,
    ) -> tuple[str, ...]:
        """Get node names in declaration order, optionally filtered.

        :param kind: Only nodes of this kind. Defaults to None (all kinds).
        :type kind: Optional[custom_types.NodeKind]
        :param data_only: Only data nodes. Defaults to False.
        :type data_only: bool
        :param include_data: Whether data nodes are included. Defaults to True.
        :type include_data: bool
        :param latent_only: Only non-data stochastic nodes. Defaults to False.
        :type latent_only: bool
        :param top_only: Only stochastic nodes without stochastic ancestors.
            Defaults to False.
        :type top_only: bool
        :param end_only: Only stochastic nodes without stochastic descendants.
            Defaults to False.
        :type end_only: bool

        :returns: Matching node names
        :rtype: tuple[str, ...]
        """
        names = []
        for node in self._nodes:
            flagged = bool(self._store.is_data[node.index])
            if kind is not None and node.kind != kind:
                continue
            if (data_only and not flagged) or (flagged and not include_data):
                continue
            if latent_only and (not node.is_stochastic or flagged):
                continue
            if top_only and (
                not node.is_stochastic
                or any(
                    self._nodes[i].is_stochastic
                    for i in nx.ancestors(self._digraph, node.index)
                )
            ):
                continue
            if end_only and (
                not node.is_stochastic
                or any(
                    self._nodes[i].is_stochastic
                    for i in nx.descendants(self._digraph, node.index)
                )
            ):
                continue
            names.append(node.name)
        return tuple(names)

    def get_parents(self, name: str) -> tuple[str, ...]:
        """Names of the direct parents of a node."""
        return tuple(parent.name for parent in self._lookup(name).parents)

    def get_children(self, name: str) -> tuple[str, ...]:
        """Names of the direct children of a node."""
        return tuple(child.name for child in self._lookup(name).children)

    def get_param(self, node: str, param: str) -> npt.NDArray:
        """Evaluate a parameter of a stochastic node at the current values.

        :param node: Name of the stochastic node
        :type node: str
        :param param: Canonical, supplied, or alternate parameter name
        :type param: str

        :returns: Parameter value
        :rtype: npt.NDArray

        :raises TypeError: If the node is not stochastic
        :raises KeyError: If the distribution has no such parameter
        """
        target = self._lookup(node)
        if not isinstance(target, StochasticNode):
            raise TypeError(f"Node '{node}' is not stochastic")
        return target.get_param(self._store, param)

    def simulate(
        self,
        nodes: Optional["custom_types.NodeNames"] = None,
        *,
        include_data: bool = False,
        seed: Optional["custom_types.Integer"] = None,
    ) -> None:
        """Draw stochastic nodes and recompute downstream deterministic nodes.

        :param nodes: Stochastic node name(s) to draw. Defaults to None, meaning
            every stochastic node.
        :type nodes: Optional[custom_types.NodeNames]
        :param include_data: Whether data nodes are redrawn. Defaults to False.
        :type include_data: bool
        :param seed: Seed for reproducible draws. Defaults to None, meaning the
            graph's own generator.
        :type seed: Optional[custom_types.Integer]
        """
        rng = self._store.rng if seed is None else utils.get_rng(seed)
        if nodes is None:
            plan = CalculationPlan(self._nodes)
        else:
            plan = CalculationPlan(
                self._nodes[index]
                for index in self.resolve_dependencies(
                    self._indices(nodes), include_stochastic=False
                )
            )
        plan.simulate(self._store, rng, include_data=include_data)

    def calculate(self, nodes: Optional["custom_types.NodeNames"] = None) -> float:
        """Recompute the given nodes in topological order, caching log
        probabilities.

        :param nodes: Node name(s). Defaults to None, meaning every node.
        :type nodes: Optional[custom_types.NodeNames]

        :returns: Sum of the log probabilities of the stochastic nodes among them
        :rtype: float
        """
        return self._plan(nodes).calculate(self._store)

    def calculate_diff(self, nodes: Optional["custom_types.NodeNames"] = None) -> float:
        """Recompute the given nodes and return the change in log probability."""
        return self._plan(nodes).calculate_diff(self._store)

    def get_log_prob(self, nodes: Optional["custom_types.NodeNames"] = None) -> float:
        """Sum the cached log probabilities of the given stochastic nodes."""
        return self._plan(nodes).get_log_prob(self._store)

    def calculate_log_prob(self, nodes: Optional["custom_types.NodeNames"] = None) -> float:
        """Sum the log densities of the given stochastic nodes at current values.

        Deterministic nodes are not recomputed and nothing is cached. Values outside
        a node's support contribute exactly ``-inf``.

        :param nodes: Node name(s). Defaults to None, meaning every stochastic node.
        :type nodes: Optional[custom_types.NodeNames]

        :returns: Total log probability
        :rtype: float
        """
        return float(
            sum(
                self._nodes[index].log_density(self._store)
                for index in self._indices(nodes)
                if self._nodes[index].is_stochastic
            )
        )

    def get_value(self, name: str) -> npt.NDArray:
        """Get a copy of a node's current value."""
        return self._lookup(name).get_value(self._store).copy()

    def set_value(self, name: str, value: "custom_types.SampleType") -> None:
        """Overwrite a node's value in place.

        Downstream nodes are not recalculated.

        :param name: Name of the node
        :type name: str
        :param value: New value. Must have exactly the node's shape.
        :type value: custom_types.SampleType

        :raises ShapeMismatch: If the value has the wrong shape
        :raises TypeError: If the node is a constant
        """
        node = self._lookup(name)
        if isinstance(node, ConstantNode):
            raise TypeError(f"Node '{name}' is a constant and cannot be changed")
        try:
            array = utils.as_value_array(value, node.shape)
        except ValueError as error:
            raise ShapeMismatch(f"Node '{name}': {error}") from error
        self._store.values[node.index][...] = array

    def set_data(self, data: Optional[dict[str, Any]] = None, **kwargs: Any) -> None:
        """Observe values for stochastic nodes, making them data nodes.

        :param data: Observed values keyed by node name. Defaults to None.
        :type data: Optional[dict[str, custom_types.SampleType]]
        :param kwargs: More observed values keyed by node name

        :raises TypeError: If a node is not stochastic
        :raises ShapeMismatch: If a value has the wrong shape
        """
        for name, value in {**(data or {}), **kwargs}.items():
            if not self._lookup(name).is_stochastic:
                raise TypeError(f"Only stochastic nodes can be data; '{name}' is not")
            self.set_value(name, value)
            self._store.is_data[self._node_dict[name].index] = True

    def reset_data(self) -> None:
        """Remove every data flag. Values are kept."""
        self._store.is_data[:] = False

    def is_data(self, name: str) -> bool:
        """Whether a node is observed."""
        return bool(self._store.is_data[self._lookup(name).index])

    def set_inits(self, inits: Optional[dict[str, Any]] = None, **kwargs: Any) -> None:
        """Set initial values of latent stochastic nodes.

        :param inits: Initial values keyed by node name. Defaults to None.
        :type inits: Optional[dict[str, custom_types.SampleType]]
        :param kwargs: More initial values keyed by node name

        :raises TypeError: If a node is not a latent stochastic node
        :raises ShapeMismatch: If a value has the wrong shape
        """
        for name, value in {**(inits or {}), **kwargs}.items():
            if not self._lookup(name).is_stochastic or self.is_data(name):
                raise TypeError(f"Only latent stochastic nodes take inits; '{name}' is not")
            self.set_value(name, value)

    def initialize(self, seed: Optional["custom_types.Integer"] = None) -> float:
        """Fill in any uninitialized latent nodes, then calculate the whole graph.

        Latent stochastic nodes whose values contain NaN are simulated from their
        priors, in topological order. A warning is issued if the resulting total log
        probability is not finite.

        :param seed: Seed for the simulation. Defaults to None, meaning the graph's
            own generator.
        :type seed: Optional[custom_types.Integer]

        :returns: Total log probability of the graph
        :rtype: float
        """
        rng = self._store.rng if seed is None else utils.get_rng(seed)
        for index in self._resolver.topological_order():
            node = self._nodes[index]
            if node.is_deterministic:
                node.calculate(self._store)
            elif (
                node.is_stochastic
                and not self._store.is_data[index]
                and np.any(np.isnan(self._store.values[index]))
            ):
                node.simulate(self._store, rng)

        logprob = self.calculate()
        if not np.isfinite(logprob):
            offenders = [
                node.name
                for node in self._nodes
                if node.is_stochastic and not np.isfinite(node.get_log_prob(self._store))
            ]
            warnings.warn(
                "Model log probability is not finite after initialization. Nodes "
                f"with non-finite log probability: {', '.join(offenders)}"
            )
        return logprob

    def copy(self, seed: Optional["custom_types.Integer"] = None) -> "ModelGraph":
        """Create a graph sharing this graph's structure with an independent store.

        :param seed: Seed for the copy's generator. Defaults to None, meaning a
            generator derived from :py:data:`scinimpy.RNG`.
        :type seed: Optional[custom_types.Integer]

        :returns: The copy
        :rtype: ModelGraph
        """
        new = copy.copy(self)
        new._store = self._store.copy(rng=utils.get_rng(seed))  # pylint: disable=protected-access
        return new

    def summary(self) -> pd.DataFrame:
        """Tabulate the nodes of the graph and their current state.

        :returns: One row per node, indexed by name
        :rtype: pd.DataFrame
        """
        rows = []
        for node in self._nodes:
            value = self._store.values[node.index]
            rows.append(
                {
                    "name": node.name,
                    "kind": node.kind,
                    "definition": node.description,
                    "shape": node.shape,
                    "data": bool(self._store.is_data[node.index]),
                    "value": value.item() if value.size == 1 else f"<{value.shape}>",
                    "logprob": (
                        node.get_log_prob(self._store) if node.is_stochastic else np.nan
                    ),
                    "parents": ", ".join(parent.name for parent in node.parents),
                }
            )
        return pd.DataFrame(rows).set_index("name")

    def __str__(self) -> str:
        sections = {
            "Constants": [n for n in self._nodes if n.kind == "constant"],
            "Deterministic Nodes": [n for n in self._nodes if n.is_deterministic],
            "Latent Nodes": [
                n for n in self._nodes if n.is_stochastic and not self.is_data(n.name)
            ],
            "Data Nodes": [
                n for n in self._nodes if n.is_stochastic and self.is_data(n.name)
            ],
        }
        return "\n\n".join(
            key
            + "\n"
            + "=" * len(key)
            + "\n"
            + "\n".join(f"{n.name} {n.shape}: {n.description}" for n in nodes)
            for key, nodes in sections.items()
            if len(nodes) > 0
        )

    def __contains__(self, name: object) -> bool:
        return name in self._node_dict

    def __getitem__(self, name: str) -> npt.NDArray:
        return self.get_value(name)

    def __setitem__(self, name: str, value: "custom_types.SampleType") -> None:
        self.set_value(name, value)

    def __len__(self) -> int:
        return len(self._nodes)

    def __iter__(self):
        return iter(self._node_dict)

    @property
    def nodes(self) -> tuple[AbstractNode, ...]:
        """Nodes in declaration order."""
        return self._nodes

    @property
    def store(self) -> ValueStore:
        """The graph's value store."""
        return self._store

    @property
    def token(self) -> object:
        """Identifier of the graph structure, shared by copies."""
        return self._token

    @property
    def digraph(self) -> nx.DiGraph:
        """Frozen graph of parent-to-child edges between node indices."""
        return self._digraph

    @property
    def registry(self) -> DistributionRegistry:
        """Registry the graph's distributions were resolved from."""
        return self._registry


def build(
    relations: Iterable[NodeRelation],
    registry: Optional[DistributionRegistry] = None,
    **kwargs: Any,
) -> ModelGraph:
    """Build a model graph from relations. See :py:class:`ModelGraph`.

    :param relations: Ordered node declarations
    :type relations: Iterable[NodeRelation]
    :param registry: Registry supplying distributions. Defaults to None.
    :type registry: Optional[DistributionRegistry]
    :param kwargs: Passed to :py:class:`ModelGraph`

    :returns: The built graph
    :rtype: ModelGraph
    """
    return ModelGraph(relations, registry, **kwargs)
