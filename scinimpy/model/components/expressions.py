# Copyright (c) Microsoft Corporation.
# Licensed under the MIT license.

r"""Expressions over model nodes.

Expressions describe how a deterministic node or a distribution parameter is
computed from other nodes. They are small trees of three kinds of leaves and
branches:

    - :py:class:`Ref`: a reference to a named node
    - :py:class:`Const`: a constant array
    - :py:class:`Call`: a :py:class:`Kernel` applied to sub-expressions

Expressions support Python arithmetic operators and NumPy ufuncs, so they can be
written naturally:

    >>> mu = Ref("mu")
    >>> expr = 2 * np.exp(mu) + 1

Expressions are compiled once, when the model graph is built, into closures
that read node values directly out of a value store by index. No name lookups
happen after compilation.

Indexing with ``expr[...]`` is supported only with constant indices (integers,
slices, integer arrays, ``None`` and ``Ellipsis``). Indexing by another node is
not supported, so dependency edges are always fixed at build time.
"""

from __future__ import annotations

import functools

from abc import ABC, abstractmethod
from typing import Any, Callable, Mapping, Optional, Sequence, TYPE_CHECKING

import numpy as np
import numpy.typing as npt

from scinimpy.exceptions import ShapeMismatch

if TYPE_CHECKING:
    from scinimpy import custom_types

CompiledExpression = Callable[[Sequence[npt.NDArray]], npt.NDArray]
"""A compiled expression: a function of the value store's list of node buffers."""


class Kernel:
    """A named numeric function usable inside expressions.

    :param name: Name of the kernel, used in representations
    :type name: str
    :param function: The NumPy-level implementation
    :type function: Callable[..., npt.NDArray]
    :param shape_rule: Optional function mapping input shapes to the output shape.
        If not given, the output shape is found by evaluating the kernel on arrays
        of ones with the input shapes. Defaults to None.
    :type shape_rule: Optional[Callable[..., tuple[int, ...]]]
    """

    def __init__(
        self,
        name: str,
        function: Callable[..., Any],
        shape_rule: Optional[Callable[..., tuple[int, ...]]] = None,
    ):
        self.name = name
        self.function = function
        self.shape_rule = shape_rule

    def output_shape(self, *shapes: tuple[int, ...]) -> tuple[int, ...]:
        """Get the output shape of the kernel for the given input shapes.

        :param shapes: Shapes of the inputs
        :type shapes: tuple[int, ...]

        :returns: Output shape
        :rtype: tuple[int, ...]

        :raises ShapeMismatch: If the inputs are incompatible
        """
        if self.shape_rule is not None:
            return tuple(self.shape_rule(*shapes))

        # Evaluate on placeholder arrays
        try:
            with np.errstate(all="ignore"):
                result = self.function(*(np.ones(shape) for shape in shapes))
        except (ValueError, IndexError, TypeError) as error:
            raise ShapeMismatch(
                f"Inputs with shapes {list(shapes)} are incompatible with "
                f"'{self.name}': {error}"
            ) from error

        return tuple(np.shape(result))

    def __call__(self, *args: Any) -> Any:
        return self.function(*args)

    def __repr__(self) -> str:
        return f"Kernel({self.name})"


@functools.lru_cache(maxsize=None)
def ufunc_kernel(ufunc: np.ufunc) -> Kernel:
    """Get the kernel wrapping a NumPy ufunc.

    :param ufunc: The ufunc
    :type ufunc: np.ufunc

    :returns: Kernel applying the ufunc
    :rtype: Kernel
    """
    return Kernel(ufunc.__name__, ufunc)


def _index(array: Any, key: Any) -> npt.NDArray:
    return np.asarray(np.asarray(array)[key])


def _check_index_key(key: Any) -> None:
    """Reject index keys that contain expressions."""
    parts = key if isinstance(key, tuple) else (key,)
    for part in parts:
        if isinstance(part, Expression):
            raise TypeError(
                "Indexing by a model node is not supported. Use constant indices."
            )


class Expression(ABC):
    """Base class for expressions over model nodes.

    Subclasses provide the set of referenced node names, shape inference, and
    compilation to a closure over the value store.
    """

    # Make sure NumPy defers to our operators when an array is on the left
    __array_priority__ = 1000

    @abstractmethod
    def references(self) -> tuple[str, ...]:
        """Names of the nodes referenced by this expression, in first-use order."""

    @abstractmethod
    def infer_shape(self, shapes: Mapping[str, tuple[int, ...]]) -> tuple[int, ...]:
        """Infer the shape of the expression's value.

        :param shapes: Shapes of the referenced nodes
        :type shapes: Mapping[str, tuple[int, ...]]

        :returns: Shape of the value
        :rtype: tuple[int, ...]

        :raises ShapeMismatch: If sub-expression shapes are incompatible
        """

    @abstractmethod
    def compile(self, index_of: Mapping[str, int]) -> CompiledExpression:
        """Compile the expression into a closure over the value store.

        :param index_of: Index of every referenced node in the value store
        :type index_of: Mapping[str, int]

        :returns: Function taking the list of node buffers and returning the value
        :rtype: CompiledExpression
        """

    def evaluate(self, values: Mapping[str, "custom_types.SampleType"]) -> npt.NDArray:
        """Evaluate the expression directly from named values.

        :param values: Values of the referenced nodes
        :type values: Mapping[str, custom_types.SampleType]

        :returns: Value of the expression
        :rtype: npt.NDArray
        """
        names = self.references()
        compiled = self.compile({name: i for i, name in enumerate(names)})
        return np.asarray(compiled([np.asarray(values[name]) for name in names]))

    def __array_ufunc__(self, ufunc, method, *inputs, **kwargs):
        # Only plain calls become expressions; reductions and `out=` do not
        if method != "__call__" or kwargs:
            return NotImplemented
        return Call(ufunc_kernel(ufunc), *inputs)

    def __add__(self, other):
        return np.add(self, other)

    def __radd__(self, other):
        return np.add(other, self)

    def __sub__(self, other):
        return np.subtract(self, other)

    def __rsub__(self, other):
        return np.subtract(other, self)

    def __mul__(self, other):
        return np.multiply(self, other)

    def __rmul__(self, other):
        return np.multiply(other, self)

    def __truediv__(self, other):
        return np.true_divide(self, other)

    def __rtruediv__(self, other):
        return np.true_divide(other, self)

    def __pow__(self, other):
        return np.power(self, other)

    def __rpow__(self, other):
        return np.power(other, self)

    def __matmul__(self, other):
        return np.matmul(self, other)

    def __rmatmul__(self, other):
        return np.matmul(other, self)

    def __neg__(self):
        return np.negative(self)

    def __abs__(self):
        return np.absolute(self)

    def __getitem__(self, key):
        _check_index_key(key)
        return Call(Kernel(f"index[{key!r}]", functools.partial(_index, key=key)), self)

    def __bool__(self):
        raise TypeError(
            "Expressions have no truth value until evaluated. Use `np.where` or a "
            "comparison ufunc instead."
        )


class Ref(Expression):
    """Reference to a named node.

    :param name: Name of the referenced node
    :type name: str
    """

    def __init__(self, name: str):
        self.name = name

    def references(self) -> tuple[str, ...]:
        return (self.name,)

    def infer_shape(self, shapes: Mapping[str, tuple[int, ...]]) -> tuple[int, ...]:
        return tuple(shapes[self.name])

    def compile(self, index_of: Mapping[str, int]) -> CompiledExpression:
        index = index_of[self.name]
        return lambda values: values[index]

    def __repr__(self) -> str:
        return self.name


class Const(Expression):
    """A constant value.

    :param value: The value. Converted to a float64 array.
    :type value: custom_types.SampleType
    """

    def __init__(self, value: Any):
        self.value = np.array(value, dtype=np.float64)
        self.value.flags.writeable = False

    def references(self) -> tuple[str, ...]:
        return ()

    def infer_shape(self, shapes: Mapping[str, tuple[int, ...]]) -> tuple[int, ...]:
        return self.value.shape

    def compile(self, index_of: Mapping[str, int]) -> CompiledExpression:
        value = self.value
        return lambda values: value

    def __repr__(self) -> str:
        return repr(self.value.item()) if self.value.ndim == 0 else "<array>"


class Call(Expression):
    """A kernel applied to sub-expressions.

    :param kernel: Kernel to apply
    :type kernel: Kernel
    :param args: Arguments. Non-expressions are wrapped as :py:class:`Const`.
    :type args: custom_types.ExpressionLike
    """

    def __init__(self, kernel: Kernel, *args: Any):
        self.kernel = kernel
        self.args: tuple[Expression, ...] = tuple(as_expression(arg) for arg in args)

    def references(self) -> tuple[str, ...]:
        return tuple(dict.fromkeys(name for arg in self.args for name in arg.references()))

    def infer_shape(self, shapes: Mapping[str, tuple[int, ...]]) -> tuple[int, ...]:
        return self.kernel.output_shape(*(arg.infer_shape(shapes) for arg in self.args))

    def compile(self, index_of: Mapping[str, int]) -> CompiledExpression:
        function = self.kernel.function
        compiled = tuple(arg.compile(index_of) for arg in self.args)

        # Specialize the common arities
        if len(compiled) == 1:
            (first,) = compiled
            return lambda values: function(first(values))
        if len(compiled) == 2:
            first, second = compiled
            return lambda values: function(first(values), second(values))
        return lambda values: function(*(arg(values) for arg in compiled))

    def __repr__(self) -> str:
        return f"{self.kernel.name}({', '.join(repr(arg) for arg in self.args)})"


def as_expression(value: Any) -> Expression:
    """Convert a value to an expression.

    :param value: An expression, number, array, or nested list of numbers
    :type value: custom_types.ExpressionLike

    :returns: The expression itself, or a :py:class:`Const` wrapping the value
    :rtype: Expression

    :raises TypeError: If the value cannot be converted to a numeric array
    """
    if isinstance(value, Expression):
        return value
    try:
        return Const(value)
    except (TypeError, ValueError) as error:
        raise TypeError(f"Cannot convert {value!r} to an expression") from error
