# Copyright (c) Microsoft Corporation.
# Licensed under the MIT license.

"""Constant nodes: fixed values that other nodes may reference.

Constants have no parents and never change after the graph is built. They hold
covariates, fixed hyperparameters, and other known inputs. Observed values of
stochastic nodes are *not* constants; they are data nodes (see
:py:class:`~scinimpy.model.components.parameters.StochasticNode`).
"""

from __future__ import annotations

from typing import TYPE_CHECKING

import numpy as np
import numpy.typing as npt

from scinimpy.model.components import abstract_model_component

if TYPE_CHECKING:
    from scinimpy import custom_types
    from scinimpy.model.calculation import ValueStore


class ConstantNode(abstract_model_component.AbstractNode):
    """A node holding a fixed value.

    :param name: Name of the node
    :type name: str
    :param index: Declaration index of the node
    :type index: custom_types.Integer
    :param value: The constant value, as a float64 array
    :type value: npt.NDArray
    """

    KIND = "constant"

    def __init__(self, name: str, index: "custom_types.Integer", value: npt.NDArray):
        super().__init__(name, index, value.shape)
        self._value = np.array(value, dtype=np.float64)
        self._value.flags.writeable = False

    def calculate(self, store: "ValueStore") -> float:
        return 0.0

    @property
    def value(self) -> npt.NDArray:
        """Read-only view of the constant value."""
        return self._value

    @property
    def description(self) -> str:
        return "constant"
