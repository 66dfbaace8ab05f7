# Copyright (c) Microsoft Corporation.
# Licensed under the MIT license.

"""Generic algorithm templates and the declarations they are specialized from.

An algorithm is written once, as a subclass of :py:class:`AlgorithmTemplate`,
against symbolic target arguments rather than concrete nodes. The subclass
declares, as class attributes, everything the setup stage must resolve before the
algorithm can run against a particular model:

    - ``TARGETS``: the names of its symbolic target arguments
    - ``DEPENDENCIES``: named :py:class:`DependencySpec` objects, each resolved to a
      :py:class:`~scinimpy.model.calculation.CalculationPlan`
    - ``SAVED``: the plans whose state is backed up before a proposal
    - ``SCRATCH``: named :py:class:`ScratchSpec` objects whose shapes are formulas
      over the resolved target shapes
    - Capability flags (``SCALAR_ONLY``, ``SUPPORTED_RANKS``, ``CONTINUOUS_ONLY``,
      ``DISCRETE_ONLY``, ``SUPPORTED_DISTRIBUTIONS``) that are checked against the
      resolved targets
    - ``CONTROL``: default control values, overridable per instance

Declarations are validated when the subclass is defined, so a malformed template
fails at import time rather than at specialization time.

The run stage is the template's :py:meth:`AlgorithmTemplate.run` method. It
receives the :py:class:`~scinimpy.algorithms.specialization.SpecializedAlgorithm`
(for its binding and run state) and a value store, and must not look anything up
by name.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Any, Callable, Optional, TYPE_CHECKING, Union

import numpy as np
import numpy.typing as npt

from scinimpy.exceptions import ShapeIncompatible
from scinimpy.model.calculation import CalculationPlan

if TYPE_CHECKING:
    from scinimpy import custom_types
    from scinimpy.algorithms.specialization import Binding, SpecializedAlgorithm
    from scinimpy.model.calculation import ValueStore
    from scinimpy.model.components.abstract_model_component import AbstractNode
    from scinimpy.model.graph import ModelGraph


class DependencySpec:
    """Declaration of a dependency set to precompute at setup.

    :param of: Target argument(s) whose nodes seed the resolution. Defaults to
        "target".
    :type of: Union[str, tuple[str, ...]]

    The remaining keyword arguments are passed to
    :py:meth:`~scinimpy.model.dependencies.DependencyResolver.resolve`.
    """

    def __init__(
        self,
        of: Union[str, tuple[str, ...]] = "target",
        *,
        include_self: bool = True,
        include_stochastic: bool = True,
        include_deterministic: bool = True,
        include_data: bool = True,
        through_stochastic: Optional[bool] = None,
        direction: "custom_types.DependencyDirection" = "downstream",
    ):
        self.of = (of,) if isinstance(of, str) else tuple(of)
        self.options = {
            "include_self": include_self,
            "include_stochastic": include_stochastic,
            "include_deterministic": include_deterministic,
            "include_data": include_data,
            "through_stochastic": through_stochastic,
            "direction": direction,
        }

    def resolve(
        self,
        graph: "ModelGraph",
        targets: dict[str, tuple["AbstractNode", ...]],
    ) -> CalculationPlan:
        """Resolve the dependency set against a graph.

        :param graph: Graph being specialized against
        :type graph: ModelGraph
        :param targets: Resolved nodes for every target argument
        :type targets: dict[str, tuple[AbstractNode, ...]]

        :returns: The dependency set as a plan
        :rtype: CalculationPlan
        """
        seeds = [node.index for argname in self.of for node in targets[argname]]
        return CalculationPlan(
            graph.nodes[index]
            for index in graph.resolve_dependencies(seeds, **self.options)
        )

    def __repr__(self) -> str:
        options = ", ".join(f"{k}={v!r}" for k, v in self.options.items())
        return f"DependencySpec(of={self.of!r}, {options})"


class ScratchSpec:
    """Declaration of a scratch buffer to allocate at setup.

    The shape may be given as:

        - A tuple of integers, used as is
        - A string naming a target argument, giving the shape of its single node,
          or ``"<argument>:flat"`` giving the total size of all its nodes as a
          one-dimensional shape
        - A callable taking the resolved shapes (target argument name to a tuple
          of node shapes) and the control dictionary, returning a shape

    :param shape: Shape formula
    :type shape: Union[tuple[int, ...], str, Callable]
    :param dtype: Data type of the buffer. Defaults to float64.
    :type dtype: npt.DTypeLike
    :param fill: Initial fill value. Defaults to 0.0.
    :type fill: custom_types.Float
    """

    def __init__(
        self,
        shape: Union[tuple[int, ...], str, Callable[..., tuple[int, ...]]],
        dtype: npt.DTypeLike = np.float64,
        fill: "custom_types.Float" = 0.0,
    ):
        self.shape = shape
        self.dtype = dtype
        self.fill = fill

    def resolve_shape(
        self,
        shapes: dict[str, tuple[tuple[int, ...], ...]],
        control: dict[str, Any],
    ) -> tuple[int, ...]:
        """Evaluate the shape formula.

        :raises ShapeIncompatible: If the formula cannot be evaluated for the
            resolved targets
        """
        if callable(self.shape):
            shape = self.shape(shapes, control)
        elif isinstance(self.shape, str):
            argname, _, mode = self.shape.partition(":")
            if mode == "flat":
                shape = (int(sum(np.prod(s, dtype=int) for s in shapes[argname])),)
            elif len(shapes[argname]) != 1:
                raise ShapeIncompatible(
                    f"Scratch shaped like '{argname}' needs exactly one node, got "
                    f"{len(shapes[argname])}"
                )
            else:
                shape = shapes[argname][0]
        else:
            shape = self.shape
        return tuple(int(dimsize) for dimsize in shape)

    def allocate(
        self,
        shapes: dict[str, tuple[tuple[int, ...], ...]],
        control: dict[str, Any],
    ) -> npt.NDArray:
        """Allocate a buffer for the resolved shapes."""
        return np.full(self.resolve_shape(shapes, control), self.fill, dtype=self.dtype)


class FlatLayout:
    """Mapping between a group of node buffers and one flat vector.

    :param nodes: Nodes to lay out, in order
    :type nodes: tuple[AbstractNode, ...]
    """

    def __init__(self, nodes: tuple["AbstractNode", ...]):
        self.indices = tuple(node.index for node in nodes)
        self.shapes = tuple(node.shape for node in nodes)
        bounds = np.cumsum([0] + [node.size for node in nodes])
        self.slices = tuple(
            slice(int(start), int(stop)) for start, stop in zip(bounds[:-1], bounds[1:])
        )
        self.size = int(bounds[-1])

    def gather(self, store: "ValueStore", out: npt.NDArray) -> npt.NDArray:
        """Copy the node values into a flat vector."""
        for index, section in zip(self.indices, self.slices):
            out[section] = store.values[index].reshape(-1)
        return out

    def scatter(self, store: "ValueStore", vector: npt.NDArray) -> None:
        """Copy a flat vector into the node values."""
        for index, section, shape in zip(self.indices, self.slices, self.shapes):
            store.values[index][...] = np.reshape(vector[section], shape)


class AlgorithmTemplate(ABC):
    """Base class for algorithms that are specialized against a model graph.

    Templates are stateless. All per-model state is held in the binding and all
    per-run state in the run state of the specialized instance.
    """

    NAME: str = ""
    TARGETS: tuple[str, ...] = ("target",)
    MAX_TARGET_NODES: Optional[int] = 1
    DEPENDENCIES: dict[str, DependencySpec] = {}
    SAVED: tuple[str, ...] = ()
    SCRATCH: dict[str, ScratchSpec] = {}

    SCALAR_ONLY: bool = False
    SUPPORTED_RANKS: Optional[tuple[int, ...]] = None
    CONTINUOUS_ONLY: bool = False
    DISCRETE_ONLY: bool = False
    SUPPORTED_DISTRIBUTIONS: Optional[tuple[str, ...]] = None
    STOCHASTIC_ONLY: bool = True
    ALLOW_DATA_TARGETS: bool = False

    CONTROL: dict[str, Any] = {}
    METHODS: tuple[str, ...] = ()

    def __init_subclass__(cls, **kwargs):
        super().__init_subclass__(**kwargs)

        # Default the name to the class name
        if not cls.__dict__.get("NAME"):
            cls.NAME = cls.__name__

        # Targets must be a non-empty tuple of names
        if (
            not isinstance(cls.TARGETS, tuple)
            or len(cls.TARGETS) == 0
            or not all(isinstance(t, str) for t in cls.TARGETS)
        ):
            raise TypeError(f"{cls.__name__}.TARGETS must be a non-empty tuple of str")

        # Dependencies must be seeded by declared targets
        for planname, spec in cls.DEPENDENCIES.items():
            if not isinstance(spec, DependencySpec):
                raise TypeError(
                    f"{cls.__name__}.DEPENDENCIES['{planname}'] must be a DependencySpec"
                )
            if missing := set(spec.of) - set(cls.TARGETS):
                raise TypeError(
                    f"{cls.__name__}.DEPENDENCIES['{planname}'] is seeded by undeclared "
                    f"target(s): {', '.join(sorted(missing))}"
                )

        # Saved plans must be declared
        if missing := set(cls.SAVED) - set(cls.DEPENDENCIES):
            raise TypeError(
                f"{cls.__name__}.SAVED names undeclared plan(s): {', '.join(sorted(missing))}"
            )

        # Scratch must be declared with specs
        for scratchname, spec in cls.SCRATCH.items():
            if not isinstance(spec, ScratchSpec):
                raise TypeError(
                    f"{cls.__name__}.SCRATCH['{scratchname}'] must be a ScratchSpec"
                )

        # Capability flags must be consistent
        if cls.CONTINUOUS_ONLY and cls.DISCRETE_ONLY:
            raise TypeError(
                f"{cls.__name__} cannot be both continuous-only and discrete-only"
            )

        # Exposed methods must exist
        for methodname in cls.METHODS:
            if not callable(getattr(cls, methodname, None)):
                raise TypeError(f"{cls.__name__}.METHODS names missing method '{methodname}'")

    def check_target(
        self,
        argname: str,
        nodes: tuple["AbstractNode", ...],
        graph: "ModelGraph",
    ) -> None:
        """Check that the nodes resolved for a target argument fit the template.

        :param argname: Name of the target argument
        :type argname: str
        :param nodes: Resolved nodes
        :type nodes: tuple[AbstractNode, ...]
        :param graph: Graph being specialized against
        :type graph: ModelGraph

        :raises ShapeIncompatible: If any node does not fit
        """
        if self.MAX_TARGET_NODES is not None and len(nodes) > self.MAX_TARGET_NODES:
            raise ShapeIncompatible(
                f"{self.NAME} accepts at most {self.MAX_TARGET_NODES} node(s) for "
                f"'{argname}', got {len(nodes)}"
            )

        for node in nodes:
            if self.STOCHASTIC_ONLY and not node.is_stochastic:
                raise ShapeIncompatible(
                    f"{self.NAME} requires stochastic nodes; '{node.name}' is {node.kind}"
                )
            if not self.ALLOW_DATA_TARGETS and graph.is_data(node.name):
                raise ShapeIncompatible(
                    f"{self.NAME} cannot target data node '{node.name}'"
                )
            if self.SCALAR_ONLY and not node.is_scalar:
                raise ShapeIncompatible(
                    f"{self.NAME} is scalar-only; '{node.name}' has shape {node.shape}"
                )
            if self.SUPPORTED_RANKS is not None and node.ndim not in self.SUPPORTED_RANKS:
                raise ShapeIncompatible(
                    f"{self.NAME} supports ranks {self.SUPPORTED_RANKS}; '{node.name}' "
                    f"has shape {node.shape}"
                )
            if not node.is_stochastic:
                continue
            if self.CONTINUOUS_ONLY and node.discrete:
                raise ShapeIncompatible(
                    f"{self.NAME} is continuous-only; '{node.name}' is discrete"
                )
            if self.DISCRETE_ONLY and not node.discrete:
                raise ShapeIncompatible(
                    f"{self.NAME} is discrete-only; '{node.name}' is continuous"
                )
            if (
                self.SUPPORTED_DISTRIBUTIONS is not None
                and node.distribution not in self.SUPPORTED_DISTRIBUTIONS
            ):
                raise ShapeIncompatible(
                    f"{self.NAME} supports {', '.join(self.SUPPORTED_DISTRIBUTIONS)}; "
                    f"'{node.name}' follows '{node.distribution}'"
                )

    def is_applicable(self, graph: "ModelGraph", **targets: "custom_types.NodeNames") -> bool:
        """Whether the template can be specialized for the given targets."""
        for argname, names in targets.items():
            names = [names] if isinstance(names, str) else list(names)
            try:
                self.check_target(argname, tuple(graph.node(n) for n in names), graph)
            except ShapeIncompatible:
                return False
        return True

    def setup(self, graph: "ModelGraph", binding: "Binding") -> dict[str, Any]:
        """Extra setup-stage work. The returned products are bound as extras.

        :param graph: Graph being specialized against
        :type graph: ModelGraph
        :param binding: Binding with targets, plans and scratch already resolved
        :type binding: Binding

        :returns: Extra products to bind
        :rtype: dict[str, Any]
        """
        return {}

    def initial_state(self, binding: "Binding", control: dict[str, Any]) -> dict[str, Any]:
        """Run state at the start of a run. Must not share mutable objects between
        calls.
        """
        return {}

    @abstractmethod
    def run(self, instance: "SpecializedAlgorithm", store: "ValueStore", *args: Any) -> Any:
        """Run-stage body.

        :param instance: The specialized instance being run
        :type instance: SpecializedAlgorithm
        :param store: Value store to run against
        :type store: ValueStore
        :param args: Run arguments

        :returns: Whatever the algorithm produces
        """

    def __repr__(self) -> str:
        return f"{self.__class__.__name__}()"
