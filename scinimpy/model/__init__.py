# Copyright (c) Microsoft Corporation.
# Licensed under the MIT license.


"""Model construction for SciNimPy.

Models are declared as ordered lists of relations (see
:py:mod:`scinimpy.model.relations`) and built into a
:py:class:`~scinimpy.model.graph.ModelGraph`. A graph holds three kinds of
nodes:

    - Constants, which hold fixed values and hyperparameters
    - Deterministic nodes, computed from their parents by expressions
    - Stochastic nodes, drawn from a registered distribution. These are either
      latent or observed (data).

Node values live in a single :py:class:`~scinimpy.model.calculation.ValueStore`
owned by the graph. Copies of a graph share its structure but not its store, so
algorithms specialized against one graph can run against any of its copies.

Example:
    >>> from scinimpy.model import relations as rel
    >>> from scinimpy.model.graph import ModelGraph
    >>> graph = ModelGraph(
    ...     [
    ...         rel.stochastic("lam", "gamma", alpha=2.0, beta=1.0),
    ...         rel.stochastic("y", "pois", lambda_=rel.ref("lam"), data=[3, 1, 4]),
    ...     ]
    ... )
"""
