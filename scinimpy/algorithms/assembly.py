# Copyright (c) Microsoft Corporation.
# Licensed under the MIT license.

"""Assembly of specialized samplers into MCMC pipelines.

Every latent stochastic node of a graph receives one sampler. The sampler is, in
order of precedence:

    1. The override given for the node by name
    2. The template mapped to the node's distribution name, then to its family
       ("continuous" or "discrete")
    3. The default chosen by :py:func:`default_sampler`

Samplers are specialized in declaration order and collected into a
:py:class:`Pipeline`, whose :py:meth:`~Pipeline.run` executes each instance once,
strictly in sequence.

:py:class:`MCMCConfiguration` is the editable form of the same information: a
list of sampler assignments and monitors that can be changed before a pipeline is
specialized from it.
"""

from __future__ import annotations

from typing import Any, Iterator, Optional, Sequence, TYPE_CHECKING, Union

import pandas as pd

from scinimpy.algorithms import samplers
from scinimpy.algorithms.specialization import specialize, SpecializedAlgorithm
from scinimpy.algorithms.template import AlgorithmTemplate
from scinimpy.exceptions import NoApplicableAlgorithm

if TYPE_CHECKING:
    from scinimpy import custom_types
    from scinimpy.model.calculation import ValueStore
    from scinimpy.model.graph import ModelGraph

TemplateLike = Union[str, AlgorithmTemplate, type[AlgorithmTemplate]]


def _as_template(template: TemplateLike) -> AlgorithmTemplate:
    """Resolve a sampler name, template class, or template instance."""
    if isinstance(template, str):
        template = samplers.get_sampler(template)
    if isinstance(template, type):
        template = template()
    return template


def default_sampler(
    graph: "ModelGraph", name: str, use_conjugacy: bool = True
) -> type[AlgorithmTemplate]:
    """Choose the default sampler template for a latent stochastic node.

    :param graph: Graph containing the node
    :type graph: ModelGraph
    :param name: Name of the node
    :type name: str
    :param use_conjugacy: Whether conjugate samplers may be chosen. Defaults to
        True.
    :type use_conjugacy: bool

    :returns: Sampler template
    :rtype: type[AlgorithmTemplate]

    :raises NoApplicableAlgorithm: If no default sampler fits the node
    """
    node = graph.node(name)

    # Nothing downstream is observed
    if not graph.has_downstream_data(name):
        return samplers.PosteriorPredictive

    # Closed-form updates
    if use_conjugacy and samplers.find_conjugate_dependents(graph, name) is not None:
        return samplers.Conjugate

    # Discrete nodes
    if node.is_scalar and node.distribution == "bern":
        return samplers.Binary
    if node.is_scalar and node.distribution == "cat":
        return samplers.Categorical
    if node.discrete:
        if node.is_scalar:
            return samplers.Slice
        raise NoApplicableAlgorithm(
            f"No default sampler for non-scalar discrete node '{name}' "
            f"({node.distribution}); assign one explicitly"
        )

    # Continuous nodes
    if node.is_scalar:
        return samplers.RW
    return samplers.RWBlock


class SamplerAssignment:
    """One sampler assignment of an MCMC configuration.

    :param template: Sampler template
    :type template: AlgorithmTemplate
    :param targets: Node names the sampler updates
    :type targets: tuple[str, ...]
    :param control: Control overrides. Defaults to None.
    :type control: Optional[dict[str, Any]]
    """

    def __init__(
        self,
        template: AlgorithmTemplate,
        targets: tuple[str, ...],
        control: Optional[dict[str, Any]] = None,
    ):
        self.template = template
        self.targets = targets
        self.control = dict(control or {})

    def specialize(self, graph: "ModelGraph") -> SpecializedAlgorithm:
        """Specialize the assignment against a graph."""
        target = self.targets[0] if len(self.targets) == 1 else list(self.targets)
        return specialize(self.template, graph, control=self.control, target=target)

    def __repr__(self) -> str:
        control = f", {self.control}" if self.control else ""
        return f"{self.template.NAME} sampler: {', '.join(self.targets)}{control}"


class Pipeline:
    """An ordered sequence of specialized algorithm instances.

    :param instances: Instances in execution order
    :type instances: Sequence[SpecializedAlgorithm]
    """

    def __init__(self, instances: Sequence[SpecializedAlgorithm]):
        self._instances = list(instances)

    def run(self, store: Optional["ValueStore"] = None) -> None:
        """Run every instance once, in order.

        :param store: Store to run against. Defaults to None, meaning the store
            each instance was specialized against.
        :type store: Optional[ValueStore]
        """
        for instance in self._instances:
            instance.run(store=store)

    def reorder(self, order: Sequence[Union["custom_types.Integer", str]]) -> None:
        """Change the execution order.

        :param order: New order as positions in the current order or instance names.
            Positions may be repeated or omitted.
        :type order: Sequence[Union[custom_types.Integer, str]]

        :raises KeyError: If a name does not match any instance
        """
        by_name = {instance.name: instance for instance in self._instances}
        reordered = []
        for key in order:
            if isinstance(key, str):
                if key not in by_name:
                    raise KeyError(f"No instance named '{key}' in the pipeline")
                reordered.append(by_name[key])
            else:
                reordered.append(self._instances[key])
        self._instances = reordered

    def reset(self) -> None:
        """Reset the run state of every instance."""
        for instance in self._instances:
            instance.reset()

    def fresh(self) -> "Pipeline":
        """Create a pipeline of fresh copies of every instance."""
        return Pipeline([instance.fresh() for instance in self._instances])

    def __iter__(self) -> Iterator[SpecializedAlgorithm]:
        return iter(self._instances)

    def __len__(self) -> int:
        return len(self._instances)

    def __getitem__(self, index: "custom_types.Integer") -> SpecializedAlgorithm:
        return self._instances[index]

    def __repr__(self) -> str:
        return "Pipeline(\n" + "".join(f"  {name}\n" for name in self.names) + ")"

    @property
    def names(self) -> tuple[str, ...]:
        """Names of the instances, in execution order."""
        return tuple(instance.name for instance in self._instances)


class MCMCConfiguration:
    """Editable MCMC configuration: sampler assignments and monitors.

    On creation every latent stochastic node is assigned a sampler using the same
    precedence as :py:func:`assemble`.

    :param graph: Graph to configure samplers for
    :type graph: ModelGraph
    :param monitors: Nodes whose values are recorded. Defaults to None, meaning
        every latent stochastic node.
    :type monitors: Optional[custom_types.NodeNames]
    :param node_to_algorithm: Templates keyed by distribution name or family.
        Defaults to None.
    :type node_to_algorithm: Optional[dict[str, TemplateLike]]
    :param overrides: Templates keyed by node name. Defaults to None.
    :type overrides: Optional[dict[str, TemplateLike]]
    :param control: Control values applied to every sampler that declares them.
        Defaults to None.
    :type control: Optional[dict[str, Any]]
    :param use_conjugacy: Whether conjugate samplers may be chosen by default.
        Defaults to True.
    :type use_conjugacy: bool

    :raises NoApplicableAlgorithm: If a node has no override, no mapping and no
        default
    :raises KeyError: If an override names a node that is not latent
    """

    def __init__(
        self,
        graph: "ModelGraph",
        *,
        monitors: Optional["custom_types.NodeNames"] = None,
        node_to_algorithm: Optional[dict[str, TemplateLike]] = None,
        overrides: Optional[dict[str, TemplateLike]] = None,
        control: Optional[dict[str, Any]] = None,
        use_conjugacy: bool = True,
    ):
        self.graph = graph
        self._control = dict(control or {})
        self._samplers: list[SamplerAssignment] = []

        # Overrides must name latent nodes
        latent = graph.get_node_names(latent_only=True)
        overrides = dict(overrides or {})
        if unknown := set(overrides) - set(latent):
            raise KeyError(
                f"Overrides name nodes that are not latent stochastic nodes: "
                f"{', '.join(sorted(unknown))}"
            )
        node_to_algorithm = dict(node_to_algorithm or {})

        # Assign a sampler to every latent node
        for name in latent:
            node = graph.node(name)
            if name in overrides:
                template = overrides[name]
            elif node.distribution in node_to_algorithm:
                template = node_to_algorithm[node.distribution]
            elif node.descriptor.family in node_to_algorithm:
                template = node_to_algorithm[node.descriptor.family]
            else:
                template = default_sampler(graph, name, use_conjugacy)
            self.add_sampler(name, template)

        self._monitors: list[str] = []
        self.add_monitors(latent if monitors is None else monitors)

    def _filtered_control(self, template: AlgorithmTemplate) -> dict[str, Any]:
        return {k: v for k, v in self._control.items() if k in template.CONTROL}

    def add_sampler(
        self,
        target: "custom_types.NodeNames",
        template: TemplateLike,
        control: Optional[dict[str, Any]] = None,
    ) -> None:
        """Append a sampler assignment.

        :param target: Node name(s) the sampler updates
        :type target: custom_types.NodeNames
        :param template: Sampler name, template class, or template instance
        :type template: TemplateLike
        :param control: Control overrides for this sampler. Defaults to None.
        :type control: Optional[dict[str, Any]]

        :raises KeyError: If a target is not a node of the graph
        """
        targets = (target,) if isinstance(target, str) else tuple(target)
        for name in targets:
            if name not in self.graph:
                raise KeyError(f"Node '{name}' is not in the model")
        template = _as_template(template)
        self._samplers.append(
            SamplerAssignment(
                template, targets, {**self._filtered_control(template), **(control or {})}
            )
        )

    def remove_samplers(self, nodes: Optional["custom_types.NodeNames"] = None) -> None:
        """Remove the samplers that update any of the given nodes.

        :param nodes: Node name(s). Defaults to None, meaning every sampler.
        :type nodes: Optional[custom_types.NodeNames]
        """
        if nodes is None:
            self._samplers = []
            return
        nodes = {nodes} if isinstance(nodes, str) else set(nodes)
        self._samplers = [s for s in self._samplers if not nodes & set(s.targets)]

    def set_sampler_order(self, order: Sequence["custom_types.Integer"]) -> None:
        """Reorder the samplers by position. Positions may be repeated or omitted."""
        self._samplers = [self._samplers[i] for i in order]

    def add_monitors(self, nodes: "custom_types.NodeNames") -> None:
        """Record the values of more nodes.

        :raises KeyError: If a node is not in the graph
        """
        nodes = [nodes] if isinstance(nodes, str) else list(nodes)
        for name in nodes:
            if name not in self.graph:
                raise KeyError(f"Node '{name}' is not in the model")
            if name not in self._monitors:
                self._monitors.append(name)

    def get_samplers(
        self, nodes: Optional["custom_types.NodeNames"] = None
    ) -> list[SamplerAssignment]:
        """Sampler assignments, optionally only those updating the given nodes."""
        if nodes is None:
            return list(self._samplers)
        nodes = {nodes} if isinstance(nodes, str) else set(nodes)
        return [s for s in self._samplers if nodes & set(s.targets)]

    def build_pipeline(self, graph: Optional["ModelGraph"] = None) -> Pipeline:
        """Specialize every assignment, in order.

        :param graph: Graph to specialize against. Defaults to None, meaning the
            configured graph. Any copy of the configured graph may be given.
        :type graph: Optional[ModelGraph]

        :returns: The pipeline
        :rtype: Pipeline
        """
        graph = self.graph if graph is None else graph
        return Pipeline([assignment.specialize(graph) for assignment in self._samplers])

    def summary(self) -> pd.DataFrame:
        """Tabulate the sampler assignments.

        :returns: One row per sampler, in execution order
        :rtype: pd.DataFrame
        """
        return pd.DataFrame(
            [
                {
                    "sampler": assignment.template.NAME,
                    "targets": ", ".join(assignment.targets),
                    "control": assignment.control,
                }
                for assignment in self._samplers
            ]
        )

    def __str__(self) -> str:
        lines = [f"[{i}] {assignment!r}" for i, assignment in enumerate(self._samplers)]
        lines.append(f"Monitors: {', '.join(self._monitors)}")
        return "\n".join(lines)

    @property
    def monitors(self) -> tuple[str, ...]:
        """Names of the recorded nodes."""
        return tuple(self._monitors)


def assemble(
    graph: "ModelGraph",
    node_to_algorithm: Optional[dict[str, TemplateLike]] = None,
    overrides: Optional[dict[str, TemplateLike]] = None,
    *,
    order: Optional[Sequence[Union["custom_types.Integer", str]]] = None,
    control: Optional[dict[str, Any]] = None,
    use_conjugacy: bool = True,
) -> Pipeline:
    """Assemble a pipeline with one specialized sampler per latent node.

    :param graph: Graph to sample
    :type graph: ModelGraph
    :param node_to_algorithm: Templates keyed by distribution name or family.
        Defaults to None.
    :type node_to_algorithm: Optional[dict[str, TemplateLike]]
    :param overrides: Templates keyed by node name. Defaults to None.
    :type overrides: Optional[dict[str, TemplateLike]]
    :param order: Execution order, as for :py:meth:`Pipeline.reorder`. Defaults to
        None (declaration order).
    :type order: Optional[Sequence[Union[custom_types.Integer, str]]]
    :param control: Control values applied to every sampler that declares them.
        Defaults to None.
    :type control: Optional[dict[str, Any]]
    :param use_conjugacy: Whether conjugate samplers may be chosen by default.
        Defaults to True.
    :type use_conjugacy: bool

    :returns: The pipeline
    :rtype: Pipeline

    :raises NoApplicableAlgorithm: If a node has no override, no mapping and no
        default
    """
    pipeline = MCMCConfiguration(
        graph,
        node_to_algorithm=node_to_algorithm,
        overrides=overrides,
        control=control,
        use_conjugacy=use_conjugacy,
    ).build_pipeline()
    if order is not None:
        pipeline.reorder(order)
    return pipeline
