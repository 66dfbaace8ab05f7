# Copyright (c) Microsoft Corporation.
# Licensed under the MIT license.


"""Distributions available to SciNimPy models.

Every distribution is described by a
:py:class:`~scinimpy.distributions.descriptor.DistributionDescriptor` (its
canonical parameters, alternate parameterizations, support and value type) and
published in a :py:class:`~scinimpy.distributions.registry.DistributionRegistry`.
The built-in descriptors are defined in :py:mod:`scinimpy.distributions.builtin`,
and the conjugate prior/likelihood pairs used by conjugate samplers in
:py:mod:`scinimpy.distributions.conjugacy`.
"""
