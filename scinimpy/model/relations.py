# Copyright (c) Microsoft Corporation.
# Licensed under the MIT license.

"""Declarative relations from which model graphs are built.

A model is described as an ordered list of :py:class:`NodeRelation` objects, one
per node. The list is usually produced by an external model parser; the helper
constructors in this module make it easy to write one by hand:

    >>> from scinimpy.model import relations as rel
    >>> from scinimpy import operations as ops
    >>> relations = [
    ...     rel.constant("x", [0.0, 1.0, 2.0, 3.0]),
    ...     rel.stochastic("b0", "normal", mean=0.0, sd=10.0),
    ...     rel.stochastic("b1", "normal", mean=0.0, sd=10.0),
    ...     rel.deterministic("p", ops.expit(rel.ref("b0") + rel.ref("b1") * rel.ref("x"))),
    ...     rel.stochastic("y", "bern", prob=rel.ref("p"), data=[0, 0, 1, 1]),
    ... ]

Relations may only reference nodes declared earlier in the list.
"""

from __future__ import annotations

from typing import Any, Optional, TYPE_CHECKING

from scinimpy.model.components.expressions import as_expression, Expression, Ref

if TYPE_CHECKING:
    from scinimpy import custom_types


class NodeRelation:
    """Declaration of one node of a model graph.

    :param name: Name of the node
    :type name: str
    :param kind: Kind of the node
    :type kind: custom_types.NodeKind
    :param shape: Declared shape, or None to infer it. Defaults to None.
    :type shape: Optional[custom_types.ShapeType]
    :param value: Value of a constant node. Defaults to None.
    :type value: Optional[custom_types.SampleType]
    :param distribution: Registry name of a stochastic node's distribution.
        Defaults to None.
    :type distribution: Optional[str]
    :param params: Parameter expressions of a stochastic node. Defaults to None.
    :type params: Optional[dict[str, Expression]]
    :param expression: Defining expression of a deterministic node. Defaults to
        None.
    :type expression: Optional[Expression]
    :param data: Observed value of a stochastic node. Defaults to None.
    :type data: Optional[custom_types.SampleType]
    :param init: Initial value of a latent stochastic node. Defaults to None.
    :type init: Optional[custom_types.SampleType]
    """

    def __init__(
        self,
        name: str,
        kind: "custom_types.NodeKind",
        *,
        shape: Optional["custom_types.ShapeType"] = None,
        value: Any = None,
        distribution: Optional[str] = None,
        params: Optional[dict[str, Expression]] = None,
        expression: Optional[Expression] = None,
        data: Any = None,
        init: Any = None,
    ):
        if not isinstance(name, str) or not name:
            raise ValueError("Node names must be non-empty strings")
        if kind not in ("stochastic", "deterministic", "constant"):
            raise ValueError(f"Unknown node kind '{kind}'")

        self.name = name
        self.kind = kind
        self.shape = shape
        self.value = value
        self.distribution = distribution
        self.params = params or {}
        self.expression = expression
        self.data = data
        self.init = init

    def references(self) -> tuple[str, ...]:
        """Names of the nodes referenced by this relation, in first-use order."""
        if self.kind == "deterministic":
            return self.expression.references()
        if self.kind == "stochastic":
            return tuple(
                dict.fromkeys(
                    name for expr in self.params.values() for name in expr.references()
                )
            )
        return ()

    def __repr__(self) -> str:
        if self.kind == "stochastic":
            params = ", ".join(f"{k}={v!r}" for k, v in self.params.items())
            return f"{self.name} ~ {self.distribution}({params})"
        if self.kind == "deterministic":
            return f"{self.name} <- {self.expression!r}"
        return f"{self.name} = <constant>"


def ref(name: str) -> Ref:
    """Reference a previously declared node by name.

    :param name: Name of the node
    :type name: str

    :returns: Reference expression
    :rtype: Ref
    """
    return Ref(name)


def constant(
    name: str, value: Any, shape: Optional["custom_types.ShapeType"] = None
) -> NodeRelation:
    """Declare a constant node.

    :param name: Name of the node
    :type name: str
    :param value: Value of the node
    :type value: custom_types.SampleType
    :param shape: Declared shape. Must match the value's shape if given.
        Defaults to None.
    :type shape: Optional[custom_types.ShapeType]

    :returns: Relation declaring the node
    :rtype: NodeRelation
    """
    return NodeRelation(name, "constant", shape=shape, value=value)


def stochastic(
    name: str,
    distribution: str,
    shape: Optional["custom_types.ShapeType"] = None,
    data: Any = None,
    init: Any = None,
    **params: Any,
) -> NodeRelation:
    """Declare a stochastic node.

    :param name: Name of the node
    :type name: str
    :param distribution: Registry name of the distribution
    :type distribution: str
    :param shape: Declared shape, or None to infer it from the parameters.
        Defaults to None.
    :type shape: Optional[custom_types.ShapeType]
    :param data: Observed value. Makes the node a data node. Defaults to None.
    :type data: Optional[custom_types.SampleType]
    :param init: Initial value of a latent node. Defaults to None.
    :type init: Optional[custom_types.SampleType]
    :param params: Distribution parameters, in the canonical or any alternate
        parameterization. Values may be numbers, arrays, or expressions.
    :type params: custom_types.ExpressionLike

    :returns: Relation declaring the node
    :rtype: NodeRelation
    """
    return NodeRelation(
        name,
        "stochastic",
        shape=shape,
        distribution=distribution,
        params={paramname: as_expression(value) for paramname, value in params.items()},
        data=data,
        init=init,
    )


def deterministic(
    name: str, expression: Any, shape: Optional["custom_types.ShapeType"] = None
) -> NodeRelation:
    """Declare a deterministic node.

    :param name: Name of the node
    :type name: str
    :param expression: Defining expression
    :type expression: custom_types.ExpressionLike
    :param shape: Declared shape, or None to infer it. Defaults to None.
    :type shape: Optional[custom_types.ShapeType]

    :returns: Relation declaring the node
    :rtype: NodeRelation
    """
    return NodeRelation(name, "deterministic", shape=shape, expression=as_expression(expression))
