# Copyright (c) Microsoft Corporation.
# Licensed under the MIT license.


"""Custom type definitions for SciNimPy.

This module provides type aliases and unions for various components used throughout
the SciNimPy package, including node value types, expression types, and utility
types for type checking and documentation purposes.

All imports are conditional on TYPE_CHECKING to avoid circular imports while
maintaining proper type hints for development and documentation tools.
"""

from typing import Literal, TYPE_CHECKING, Union

# Everything in this file is only imported if TYPE_CHECKING is True.
if TYPE_CHECKING:

    import numpy as np
    import numpy.typing as npt

    from scinimpy.model.components import expressions

# Scalar types
Integer = Union[int, "np.integer"]
"""Type alias for integer values.

Accepts both Python's built-in int and NumPy integer types.

:type: Union[int, np.integer]
"""

Float = Union[float, "np.floating"]
"""Type alias for floating-point values.

Accepts both Python's built-in float and NumPy floating-point types.

:type: Union[float, np.floating]
"""

# Value types
SampleType = Union[int, float, "np.integer", "np.floating", "npt.NDArray"]
"""Type alias for values that can be stored in a node or drawn from a distribution.

:type: Union[int, float, np.integer, np.floating, npt.NDArray]
"""

ShapeType = Union[tuple[Integer, ...], Integer]
"""Type alias for shape declarations. A bare integer is a one-dimensional shape.

:type: Union[tuple[Integer, ...], Integer]
"""

ExpressionLike = Union["expressions.Expression", SampleType, list]
"""Type alias for anything that can be converted to an expression: expressions,
node references, numbers, arrays, and nested lists of numbers.

:type: Union[expressions.Expression, SampleType, list]
"""

NodeKind = Literal["stochastic", "deterministic", "constant"]
"""The three node kinds of a model graph.

:type: Literal["stochastic", "deterministic", "constant"]
"""

DependencyDirection = Literal["downstream", "upstream"]
"""Direction in which dependency edges are followed.

:type: Literal["downstream", "upstream"]
"""

# Targets accepted by graph queries
NodeNames = Union[str, list[str], tuple[str, ...]]
"""Type alias for one or more node names.

:type: Union[str, list[str], tuple[str, ...]]
"""
