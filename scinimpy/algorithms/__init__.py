# Copyright (c) Microsoft Corporation.
# Licensed under the MIT license.


"""Algorithms that run against SciNimPy model graphs.

Algorithms are written as generic templates
(:py:class:`~scinimpy.algorithms.template.AlgorithmTemplate` subclasses) and
specialized against a concrete graph in two stages:

    1. **Setup**: :py:func:`~scinimpy.algorithms.specialization.specialize` checks
       the targets, resolves dependency plans, allocates scratch buffers and
       records everything in an immutable binding.
    2. **Run**: The resulting
       :py:class:`~scinimpy.algorithms.specialization.SpecializedAlgorithm` is
       executed repeatedly against the graph's store (or the store of any copy of
       the graph).

Samplers live in :py:mod:`scinimpy.algorithms.samplers`, numeric objectives in
:py:mod:`scinimpy.algorithms.objectives`, sampler assembly in
:py:mod:`scinimpy.algorithms.assembly` and MCMC execution in
:py:mod:`scinimpy.algorithms.mcmc`.
"""
