# Copyright (c) Microsoft Corporation.
# Licensed under the MIT license.


"""Mathematical operations for use in SciNimPy model expressions.

This module is the access point to the fixed set of numeric kernels that can
appear in deterministic nodes and distribution parameters. Every operation
handles both immediate computation on NumPy data and deferred computation inside
model graphs: called with an
:py:class:`~scinimpy.model.components.expressions.Expression` (such as
``relations.ref("mu")``), it returns a new expression; called with plain numbers
or arrays, it computes the result immediately.

Arithmetic operators and NumPy ufuncs (``np.exp``, ``np.log`` and so on) also
work directly on expressions. The operations here add reductions, linear
algebra, and link functions under the names used in model code.

New operations can be built from any NumPy-level function with
:py:func:`function`.
"""

from __future__ import annotations

from typing import Any, Callable, Optional

import numpy as np

from scipy import special

from scinimpy import utils
from scinimpy.model.components.expressions import Call, Expression, Kernel

# pylint: disable=line-too-long


class MetaOperation(type):
    """Metaclass for dynamically creating operation classes.

    Validates that a ``KERNEL`` attribute is provided and is a
    :py:class:`~scinimpy.model.components.expressions.Kernel`, then copies the
    operation's documentation onto the ``__call__`` method. In general, users will
    not need to interact with this metaclass directly.

    :raises ValueError: If ``KERNEL`` is not provided in class attributes
    :raises TypeError: If ``KERNEL`` is not a Kernel
    """

    def __new__(mcs, name, bases, attrs):

        # There must be a KERNEL in the class_attrs
        if "KERNEL" not in attrs:
            raise ValueError("KERNEL must be provided in class_attrs")

        # The KERNEL must be a Kernel
        if not isinstance(attrs["KERNEL"], Kernel):
            raise TypeError("KERNEL must be an instance of Kernel")

        return super().__new__(mcs, name, bases, attrs)

    def __init__(cls, name, bases, attrs):

        # Run base init
        super().__init__(name, bases, attrs)

        # Create a new call method that carries the operation's docstring
        def __call__(self, *args):
            return super(cls, self).__call__(*args)

        __call__.__doc__ = attrs.get("__doc__")
        cls.__call__ = __call__


class Operation:
    """Base class for SciNimPy mathematical operations.

    The class should never be instantiated directly. Instead, use
    :py:func:`~scinimpy.operations.build_operation` to create operation instances
    from kernels.

    :cvar KERNEL: The kernel this operation applies
    :type KERNEL: Kernel
    """

    KERNEL: Kernel

    def __call__(self, *args):
        """Apply the operation.

        If any argument is an expression, the call is deferred: a new
        :py:class:`~scinimpy.model.components.expressions.Call` expression is
        returned and evaluated later against node values. Otherwise the kernel is
        applied immediately and its result returned.
        """
        if any(isinstance(arg, Expression) for arg in args):
            return Call(self.KERNEL, *args)
        return self.KERNEL(*(np.asarray(arg, dtype=np.float64) for arg in args))

    def __repr__(self) -> str:
        return f"<operation {self.KERNEL.name}>"


def build_operation(kernel: Kernel, doc: Optional[str] = None) -> Operation:
    """Build an operation instance from a kernel.

    :param kernel: The kernel to wrap
    :type kernel: Kernel
    :param doc: Documentation for the operation. Defaults to None.
    :type doc: Optional[str]

    :returns: Operation applying the kernel
    :rtype: Operation
    """
    return MetaOperation(kernel.name, (Operation,), {"KERNEL": kernel, "__doc__": doc})()


def function(
    func: Callable[..., Any],
    name: Optional[str] = None,
    shape_rule: Optional[Callable[..., tuple[int, ...]]] = None,
) -> Operation:
    """Build an operation from a user-supplied NumPy-level function.

    :param func: Function of NumPy arrays returning an array
    :type func: Callable[..., Any]
    :param name: Name of the operation. Defaults to the function's name.
    :type name: Optional[str]
    :param shape_rule: Function mapping input shapes to the output shape. If not
        given, the shape is inferred by evaluating the function on arrays of ones.
        Defaults to None.
    :type shape_rule: Optional[Callable[..., tuple[int, ...]]]

    :returns: Operation applying the function
    :rtype: Operation

    Example:
        >>> softplus = function(lambda x: np.logaddexp(0, x), name="softplus")
        >>> rate = softplus(relations.ref("eta"))
    """
    return build_operation(
        Kernel(name or getattr(func, "__name__", "function"), func, shape_rule),
        doc=func.__doc__,
    )


def _scalar_shape(*shapes: tuple[int, ...]) -> tuple[int, ...]:
    return ()


def _inprod_shape(first: tuple[int, ...], second: tuple[int, ...]) -> tuple[int, ...]:
    np.broadcast_shapes(first, second)
    return ()


# Elementwise operations
abs_ = build_operation(Kernel("abs", np.absolute), "Absolute value.")
exp = build_operation(Kernel("exp", np.exp), "Exponential.")
log = build_operation(Kernel("log", np.log), "Natural logarithm.")
log1p = build_operation(Kernel("log1p", np.log1p), "``log(1 + x)``.")
expm1 = build_operation(Kernel("expm1", np.expm1), "``exp(x) - 1``.")
sqrt = build_operation(Kernel("sqrt", np.sqrt), "Square root.")
pow_ = build_operation(Kernel("pow", np.power), "Elementwise power ``x ** y``.")
logit = build_operation(Kernel("logit", special.logit), "Log-odds ``log(p / (1 - p))``.")
expit = build_operation(
    Kernel("expit", utils.stable_sigmoid),
    """Inverse logit, computed in a numerically stable way.

    **Usage:**

    .. code-block:: python

        p = operations.expit(rel.ref("b0") + rel.ref("b1") * rel.ref("x"))
    """,
)
ilogit = expit
probit = build_operation(Kernel("probit", special.ndtri), "Standard normal quantile.")
phi = build_operation(Kernel("phi", special.ndtr), "Standard normal CDF.")
lgamma = build_operation(Kernel("lgamma", special.gammaln), "Log of the gamma function.")
log1p_exp = build_operation(
    Kernel("log1p_exp", lambda x: np.logaddexp(0, x)),
    "``log(1 + exp(x))`` computed in a numerically stable way.",
)
step = build_operation(
    Kernel("step", lambda x: (np.asarray(x) >= 0).astype(np.float64)),
    "1 where ``x >= 0``, otherwise 0.",
)
equals = build_operation(
    Kernel("equals", lambda x, y: (np.asarray(x) == np.asarray(y)).astype(np.float64)),
    "1 where ``x == y``, otherwise 0.",
)
where = build_operation(
    Kernel("where", lambda cond, x, y: np.where(np.asarray(cond) != 0, x, y)),
    "Elementwise selection: ``x`` where ``cond`` is nonzero, otherwise ``y``.",
)

# Reductions over every element
sum_ = build_operation(Kernel("sum", np.sum, _scalar_shape), "Sum of all elements.")
mean = build_operation(Kernel("mean", np.mean, _scalar_shape), "Mean of all elements.")
prod = build_operation(Kernel("prod", np.prod, _scalar_shape), "Product of all elements.")
max_ = build_operation(Kernel("max", np.max, _scalar_shape), "Largest element.")
min_ = build_operation(Kernel("min", np.min, _scalar_shape), "Smallest element.")
logsumexp = build_operation(
    Kernel("logsumexp", special.logsumexp, _scalar_shape),
    "``log(sum(exp(x)))`` over all elements, computed stably.",
)
inprod = build_operation(
    Kernel("inprod", lambda x, y: np.sum(np.multiply(x, y)), _inprod_shape),
    "Inner product: the sum of the elementwise product.",
)

# Along the last dimension
normalize = build_operation(
    Kernel("normalize", lambda x: x / np.sum(x, axis=-1, keepdims=True)),
    "Scale the last dimension to sum to one.",
)
softmax = build_operation(
    Kernel("softmax", lambda x: special.softmax(x, axis=-1)),
    "Softmax over the last dimension.",
)

# Linear algebra
matmul = build_operation(Kernel("matmul", np.matmul), "Matrix product.")
