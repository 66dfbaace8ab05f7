# Copyright (c) Microsoft Corporation.
# Licensed under the MIT license.

"""Deterministic nodes: values computed from other nodes by an expression."""

from __future__ import annotations

from typing import Mapping, Optional, TYPE_CHECKING

import numpy as np

from scinimpy.model.components import abstract_model_component

if TYPE_CHECKING:
    from scinimpy import custom_types
    from scinimpy.model.calculation import ValueStore
    from scinimpy.model.components.expressions import CompiledExpression, Expression


class DeterministicNode(abstract_model_component.AbstractNode):
    """A node whose value is a function of its parents.

    The node's value is only updated when it is calculated (or simulated).
    Changing a parent's value does not propagate until the deterministic node is
    recalculated, which is what calculation plans are for.

    :param name: Name of the node
    :type name: str
    :param index: Declaration index of the node
    :type index: custom_types.Integer
    :param shape: Shape of the node. The expression's value must broadcast to it.
    :type shape: tuple[int, ...]
    :param expression: Defining expression
    :type expression: Expression
    :param parents: Nodes referenced by the expression
    :type parents: tuple[AbstractNode, ...]
    """

    KIND = "deterministic"

    def __init__(
        self,
        name: str,
        index: "custom_types.Integer",
        shape: tuple[int, ...],
        expression: "Expression",
        parents: tuple[abstract_model_component.AbstractNode, ...],
    ):
        super().__init__(name, index, shape, parents)
        self._expression = expression
        self._compiled: Optional["CompiledExpression"] = None

    def compile(self, index_of: Mapping[str, int]) -> None:
        self._compiled = self._expression.compile(index_of)

    def calculate(self, store: "ValueStore") -> float:
        with np.errstate(all="ignore"):
            store.values[self._index][...] = self._compiled(store.values)
        return 0.0

    def simulate(self, store: "ValueStore", rng: np.random.Generator) -> None:
        self.calculate(store)

    @property
    def expression(self) -> "Expression":
        """The defining expression."""
        return self._expression

    @property
    def description(self) -> str:
        return repr(self._expression)
