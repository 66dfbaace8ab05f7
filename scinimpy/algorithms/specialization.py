# Copyright (c) Microsoft Corporation.
# Licensed under the MIT license.

"""Setup and run stages of algorithm specialization.

:py:func:`specialize` is the setup stage. Given an
:py:class:`~scinimpy.algorithms.template.AlgorithmTemplate`, a
:py:class:`~scinimpy.model.graph.ModelGraph` and concrete node names for the
template's target arguments, it:

    1. Resolves every target name to a node, failing with
       :py:class:`~scinimpy.exceptions.UnresolvedTarget` for unknown names
    2. Checks every resolved node against the template's declared capabilities,
       failing with :py:class:`~scinimpy.exceptions.ShapeIncompatible`
    3. Resolves every declared dependency set to a calculation plan
    4. Allocates scratch buffers and plan backups
    5. Runs the template's own setup hook
    6. Returns a :py:class:`SpecializedAlgorithm` closing over the result

The run stage is :py:meth:`SpecializedAlgorithm.run`. It only touches the bound
plans, scratch buffers and the value store it is given. Any store belonging to the
same graph structure may be used, which is how one specialization serves several
copies of a graph.

Example:
    >>> from scinimpy.algorithms import samplers
    >>> rw = specialize(samplers.RW, graph, target="mu", control={"scale": 0.5})
    >>> rw.run()
    >>> rw.state.scale
"""

from __future__ import annotations

import copy

from types import MappingProxyType
from typing import Any, Mapping, Optional, TYPE_CHECKING, Union

import numpy as np
import numpy.typing as npt

from scinimpy.algorithms.template import AlgorithmTemplate
from scinimpy.exceptions import SpecializationError, UnresolvedTarget

if TYPE_CHECKING:
    from scinimpy import custom_types
    from scinimpy.model.calculation import CalculationPlan, PlanBackup, ValueStore
    from scinimpy.model.components.abstract_model_component import AbstractNode
    from scinimpy.model.graph import ModelGraph


class Binding:
    """Immutable product of the setup stage.

    :param template_name: Name of the specialized template
    :type template_name: str
    :param token: Structure token of the graph specialized against
    :type token: object
    :param store: Store of the graph specialized against, used when a run is not
        given one
    :type store: ValueStore
    :param targets: Resolved nodes for every target argument
    :type targets: Mapping[str, tuple[AbstractNode, ...]]
    :param plans: Resolved dependency sets
    :type plans: Mapping[str, CalculationPlan]
    :param backups: Backup buffers of the saved plans
    :type backups: Mapping[str, PlanBackup]
    :param scratch: Scratch buffers
    :type scratch: Mapping[str, npt.NDArray]
    :param control: Control values after overrides
    :type control: Mapping[str, Any]
    :param extras: Products of the template's setup hook. Defaults to None.
    :type extras: Optional[Mapping[str, Any]]
    """

    def __init__(
        self,
        template_name: str,
        token: object,
        store: "ValueStore",
        targets: Mapping[str, tuple["AbstractNode", ...]],
        plans: Mapping[str, "CalculationPlan"],
        backups: Mapping[str, "PlanBackup"],
        scratch: Mapping[str, npt.NDArray],
        control: Mapping[str, Any],
        extras: Optional[Mapping[str, Any]] = None,
    ):
        self.template_name = template_name
        self.token = token
        self.store = store
        self.targets = MappingProxyType(dict(targets))
        self.plans = MappingProxyType(dict(plans))
        self.backups = MappingProxyType(dict(backups))
        self.scratch = MappingProxyType(dict(scratch))
        self.control = MappingProxyType(dict(control))
        self.extras = MappingProxyType(dict(extras or {}))

    def replace(self, **changes: Any) -> "Binding":
        """Create a new binding with some fields replaced."""
        fields = {
            "template_name": self.template_name,
            "token": self.token,
            "store": self.store,
            "targets": self.targets,
            "plans": self.plans,
            "backups": self.backups,
            "scratch": self.scratch,
            "control": self.control,
            "extras": self.extras,
        }
        fields.update(changes)
        return Binding(**fields)

    @property
    def target(self) -> "AbstractNode":
        """The first node of the first target argument."""
        return next(iter(self.targets.values()))[0]

    @property
    def target_names(self) -> tuple[str, ...]:
        """Names of all target nodes, in argument order."""
        return tuple(node.name for nodes in self.targets.values() for node in nodes)

    def __setattr__(self, name: str, value: Any) -> None:
        if name in self.__dict__:
            raise AttributeError(f"Binding attribute '{name}' cannot be reassigned")
        super().__setattr__(name, value)

    def __repr__(self) -> str:
        return f"Binding({self.template_name}: {', '.join(self.target_names)})"


class RunState:
    """Mutable run-time state owned by one specialized instance.

    Values are available as attributes. :py:meth:`reset` restores the initial values.

    :param initial: Initial values
    :type initial: dict[str, Any]
    """

    def __init__(self, initial: dict[str, Any]):
        self._initial = copy.deepcopy(initial)
        self.reset()

    def reset(self) -> None:
        """Restore the initial values and drop anything added since."""
        initial = self._initial
        self.__dict__.clear()
        self._initial = initial
        self.__dict__.update(copy.deepcopy(initial))

    def as_dict(self) -> dict[str, Any]:
        """Copy of the current values."""
        return {k: v for k, v in self.__dict__.items() if k != "_initial"}

    def __repr__(self) -> str:
        values = ", ".join(f"{k}={v!r}" for k, v in self.as_dict().items())
        return f"RunState({values})"


class SpecializedAlgorithm:
    """An algorithm template bound to one model.

    :param template: The specialized template
    :type template: AlgorithmTemplate
    :param binding: Product of the setup stage
    :type binding: Binding
    :param state: Run state owned by this instance
    :type state: RunState
    """

    def __init__(self, template: AlgorithmTemplate, binding: Binding, state: RunState):
        self._template = template
        self._binding = binding
        self._state = state

    def _check_store(self, store: Optional["ValueStore"]) -> "ValueStore":
        if store is None:
            return self._binding.store
        if store.token is not self._binding.token:
            raise SpecializationError(
                f"{self.name} was specialized against a different model structure"
            )
        return store

    def run(self, *args: Any, store: Optional["ValueStore"] = None) -> Any:
        """Execute the run stage.

        :param args: Run arguments passed to the template
        :param store: Store to run against. Defaults to None, meaning the store of
            the graph specialized against.
        :type store: Optional[ValueStore]

        :returns: Whatever the template's run stage returns

        :raises SpecializationError: If the store belongs to a different model
            structure
        """
        return self._template.run(self, self._check_store(store), *args)

    def __call__(self, *args: Any, store: Optional["ValueStore"] = None) -> Any:
        return self.run(*args, store=store)

    def __getattr__(self, name: str) -> Any:
        # Expose the template's extra run-stage methods
        template = self.__dict__.get("_template")
        if template is None or name not in template.METHODS:
            raise AttributeError(
                f"'{type(self).__name__}' object has no attribute '{name}'"
            )
        method = getattr(template, name)

        def bound(*args: Any, store: Optional["ValueStore"] = None, **kwargs: Any) -> Any:
            return method(self, self._check_store(store), *args, **kwargs)

        bound.__doc__ = method.__doc__
        return bound

    def reset(self) -> None:
        """Restore the run state to its initial values."""
        self._state.reset()

    def fresh(self) -> "SpecializedAlgorithm":
        """Create an instance with the same binding and a fresh run state.

        Scratch buffers and plan backups are reallocated so the new instance shares
        no mutable state with this one.

        :returns: New instance
        :rtype: SpecializedAlgorithm
        """
        binding = self._binding.replace(
            scratch={k: v.copy() for k, v in self._binding.scratch.items()},
            backups={k: self._binding.plans[k].backup() for k in self._binding.backups},
        )
        return SpecializedAlgorithm(
            self._template,
            binding,
            RunState(copy.deepcopy(self._state._initial)),  # pylint: disable=protected-access
        )

    @property
    def template(self) -> AlgorithmTemplate:
        """The specialized template."""
        return self._template

    @property
    def binding(self) -> Binding:
        """Product of the setup stage."""
        return self._binding

    @property
    def state(self) -> RunState:
        """Mutable run state."""
        return self._state

    @property
    def control(self) -> Mapping[str, Any]:
        """Control values after overrides."""
        return self._binding.control

    @property
    def target_names(self) -> tuple[str, ...]:
        """Names of all target nodes."""
        return self._binding.target_names

    @property
    def name(self) -> str:
        """Template name and targets, e.g. ``RW(mu)``."""
        return f"{self._template.NAME}({', '.join(self.target_names)})"

    @property
    def acceptance_rate(self) -> float:
        """Fraction of accepted proposals so far, or NaN if the algorithm does not
        track acceptance or has not run.
        """
        n_proposed = getattr(self._state, "n_proposed", 0)
        if n_proposed == 0:
            return np.nan
        return self._state.n_accepted / n_proposed

    def __repr__(self) -> str:
        return f"SpecializedAlgorithm({self.name})"


def specialize(
    template: Union[AlgorithmTemplate, type[AlgorithmTemplate]],
    graph: "ModelGraph",
    *,
    control: Optional[dict[str, Any]] = None,
    **targets: "custom_types.NodeNames",
) -> SpecializedAlgorithm:
    """Bind an algorithm template to a model graph.

    :param template: Template class or instance
    :type template: Union[AlgorithmTemplate, type[AlgorithmTemplate]]
    :param graph: Graph to specialize against
    :type graph: ModelGraph
    :param control: Overrides of the template's control defaults. Defaults to None.
    :type control: Optional[dict[str, Any]]
    :param targets: Node name(s) for every target argument of the template

    :returns: The specialized instance
    :rtype: SpecializedAlgorithm

    :raises TypeError: If target arguments are missing or unexpected
    :raises UnresolvedTarget: If a target name is not a node of the graph
    :raises ShapeIncompatible: If a resolved node does not fit the template
    """
    # Templates are stateless, so classes are simply instantiated
    if isinstance(template, type):
        template = template()

    # Target arguments must match the declaration
    if missing := [t for t in template.TARGETS if t not in targets]:
        raise TypeError(f"{template.NAME} is missing target(s): {', '.join(missing)}")
    if unexpected := [t for t in targets if t not in template.TARGETS]:
        raise TypeError(
            f"{template.NAME} got unexpected target(s): {', '.join(unexpected)}"
        )

    # Merge control values
    control = {**template.CONTROL, **(control or {})}

    # Resolve names to nodes
    resolved: dict[str, tuple["AbstractNode", ...]] = {}
    for argname in template.TARGETS:
        names = targets[argname]
        names = [names] if isinstance(names, str) else list(names)
        if len(names) == 0:
            raise UnresolvedTarget(f"No nodes given for target '{argname}'")
        nodes = []
        for name in names:
            if name not in graph:
                raise UnresolvedTarget(
                    f"Target '{argname}' of {template.NAME} names unknown node '{name}'"
                )
            nodes.append(graph.node(name))
        resolved[argname] = tuple(nodes)

    # Validate shapes and kinds
    for argname, nodes in resolved.items():
        template.check_target(argname, nodes, graph)

    # Precompute dependency plans and allocate storage
    plans = {
        planname: spec.resolve(graph, resolved)
        for planname, spec in template.DEPENDENCIES.items()
    }
    backups = {planname: plans[planname].backup() for planname in template.SAVED}
    shapes = {
        argname: tuple(node.shape for node in nodes) for argname, nodes in resolved.items()
    }
    scratch = {
        scratchname: spec.allocate(shapes, control)
        for scratchname, spec in template.SCRATCH.items()
    }

    # Bind, then let the template add its own products
    binding = Binding(
        template.NAME,
        graph.token,
        graph.store,
        resolved,
        plans,
        backups,
        scratch,
        control,
    )
    binding = binding.replace(extras=template.setup(graph, binding))

    return SpecializedAlgorithm(
        template, binding, RunState(template.initial_state(binding, control))
    )
