# Copyright (c) Microsoft Corporation.
# Licensed under the MIT license.

"""Analysis of MCMC samples.

:py:class:`MCMCResults` collects the samples recorded by every chain of an MCMC
run into an :py:class:`xarray.Dataset` with ``chain`` and ``draw`` dimensions
followed by the dimensions of each node. Node dimensions are named consistently
across nodes: two dimensions at the same position from the right with the same
size share a name. Singleton node dimensions are dropped.

The dataset converts to an :py:class:`arviz.InferenceData` object, on which summary
statistics and convergence diagnostics are computed with ArviZ, optionally using
Dask for memory-efficient computation.
"""

from __future__ import annotations

import contextlib
import warnings

from typing import Literal, Optional, Sequence, TYPE_CHECKING

import arviz as az
import dask
import numpy as np
import numpy.typing as npt
import pandas as pd
import xarray as xr

from scinimpy import utils
from scinimpy.defaults import (
    DEFAULT_DIM_NAMES,
    DEFAULT_ESS_THRESH,
    DEFAULT_MIN_ACCEPTANCE,
    DEFAULT_RHAT_THRESH,
)

if TYPE_CHECKING:
    from scinimpy import custom_types
    from scinimpy.model.graph import ModelGraph


def get_dimname_map(
    shapes: dict[str, tuple[int, ...]],
) -> dict[tuple[int, int], str]:
    """Generate a mapping from dimension specifications to dimension names.

    :param shapes: Shapes of the variables to name dimensions for, keyed by
        variable name
    :type shapes: dict[str, tuple[int, ...]]

    :returns: Mapping from (position from the right, size) to dimension name
    :rtype: dict[tuple[int, int], str]

    Only dimensions with size > 1 are named, as singleton dimensions are squeezed.
    Dimension names never collide with variable names.
    """
    dims: dict[tuple[int, int], str] = {}

    # The list of dimension options cannot overlap with variable names
    allowed_dim_names = [
        name for name in DEFAULT_DIM_NAMES if name not in shapes
    ]

    # Record the dimension names in order of first appearance
    for shape in shapes.values():
        for dimkey in enumerate(shape[::-1]):
            if dimkey not in dims and dimkey[1] > 1:
                if len(dims) == len(allowed_dim_names):
                    raise ValueError("Ran out of dimension names")
                dims[dimkey] = allowed_dim_names[len(dims)]

    return dims


def _to_dataarray(
    array: npt.NDArray,
    n_leading: int,
    dims: dict[tuple[int, int], str],
    leading_names: tuple[str, ...],
) -> xr.DataArray:
    """Name the dimensions of an array and squeeze its singleton node dimensions."""
    node_shape = array.shape[n_leading:]
    singleton_axes, dimnames = [], []
    for dimind, dimsize in enumerate(node_shape[::-1]):
        if dimsize == 1:
            singleton_axes.append(n_leading + len(node_shape) - 1 - dimind)
        else:
            dimnames.append(dims[(dimind, dimsize)])
    return xr.DataArray(
        np.squeeze(array, axis=tuple(singleton_axes)),
        dims=leading_names + tuple(dimnames[::-1]),
    )


class MCMCResults:
    """Samples from an MCMC run, with summaries and diagnostics.

    :param samples: Posterior samples with ``chain`` and ``draw`` dimensions
    :type samples: xr.Dataset
    :param acceptance: Acceptance rate of every sampler (rows) in every chain
        (columns). Defaults to None.
    :type acceptance: Optional[pd.DataFrame]
    :param observed_data: Values of the data nodes. Defaults to None.
    :type observed_data: Optional[xr.Dataset]
    :param use_dask: Whether summaries are computed with Dask. Defaults to False.
    :type use_dask: bool

    :raises ValueError: If the samples lack a chain or draw dimension
    """

    def __init__(
        self,
        samples: xr.Dataset,
        acceptance: Optional[pd.DataFrame] = None,
        observed_data: Optional[xr.Dataset] = None,
        use_dask: bool = False,
    ):
        if missing := {"chain", "draw"} - set(samples.dims):
            raise ValueError(f"Samples are missing dimension(s): {', '.join(missing)}")
        self.samples = samples
        self.acceptance = pd.DataFrame() if acceptance is None else acceptance
        self.observed_data = observed_data
        self.use_dask = use_dask

    @classmethod
    def from_chains(
        cls,
        chains: Sequence[dict[str, npt.NDArray]],
        acceptance: Sequence[dict[str, float]],
        graph: "ModelGraph",
        use_dask: bool = False,
    ) -> "MCMCResults":
        """Collect the samples recorded by each chain.

        :param chains: Recorded values of every chain, keyed by node name, each
            with a leading draw dimension
        :type chains: Sequence[dict[str, npt.NDArray]]
        :param acceptance: Acceptance rates of every chain, keyed by sampler name
        :type acceptance: Sequence[dict[str, float]]
        :param graph: Graph that was sampled, for node shapes and observed data
        :type graph: ModelGraph
        :param use_dask: Whether summaries are computed with Dask. Defaults to False.
        :type use_dask: bool

        :returns: The results
        :rtype: MCMCResults
        """
        # Dimension names are shared by samples and observed data
        data_names = graph.get_node_names(data_only=True)
        shapes = {name: graph.node(name).shape for name in chains[0]}
        shapes.update({name: graph.node(name).shape for name in data_names})
        dims = get_dimname_map(shapes)

        # Stack the chains
        samples = xr.Dataset(
            {
                name: _to_dataarray(
                    np.stack([chain[name] for chain in chains]),
                    2,
                    dims,
                    ("chain", "draw"),
                )
                for name in chains[0]
            }
        ).assign_coords(
            chain=np.arange(len(chains)),
            draw=np.arange(next(iter(chains[0].values())).shape[0] if chains[0] else 0),
        )

        # Record the observed values
        observed = xr.Dataset(
            {name: _to_dataarray(graph.get_value(name), 0, dims, ()) for name in data_names}
        )

        return cls(
            samples,
            acceptance=pd.DataFrame(
                {chain: rates for chain, rates in enumerate(acceptance)}
            ).rename_axis(index="sampler", columns="chain"),
            observed_data=observed,
            use_dask=use_dask,
        )

    def to_inference_data(self) -> az.InferenceData:
        """Convert the samples to an ArviZ InferenceData object.

        :returns: InferenceData with a posterior group and, if there are data
            nodes, an observed_data group
        :rtype: az.InferenceData
        """
        groups = {"posterior": self.samples}
        if self.observed_data is not None and len(self.observed_data.data_vars) > 0:
            groups["observed_data"] = self.observed_data
        return az.InferenceData(**groups)

    def summary(
        self,
        var_names: Optional[list[str]] = None,
        kind: Literal["all", "stats", "diagnostics"] = "all",
        round_to: "custom_types.Integer" = 2,
        hdi_prob: "custom_types.Float" = 0.94,
    ) -> pd.DataFrame:
        """Compute summary statistics and diagnostics. See `az.summary`.

        :param var_names: Variables to include. Defaults to None (all variables).
        :type var_names: Optional[list[str]]
        :param kind: Type of computations to perform. Defaults to "all".
        :type kind: Literal["all", "stats", "diagnostics"]
        :param round_to: Decimal places for rounding. Defaults to 2.
        :type round_to: custom_types.Integer
        :param hdi_prob: Probability for highest density interval. Defaults to 0.94.
        :type hdi_prob: custom_types.Float

        :returns: One row per scalar quantity
        :rtype: pd.DataFrame

        :raises ValueError: If diagnostics are requested for a single chain
        """
        if kind != "stats" and self.nchains <= 1:
            raise ValueError(
                "Cannot run diagnostics on a dataset run using a single chain"
            )
        with utils.az_dask() if self.use_dask else contextlib.nullcontext():
            return az.summary(
                self.to_inference_data(),
                var_names=var_names,
                kind=kind,
                round_to=round_to,
                hdi_prob=hdi_prob,
            )

    def calculate_diagnostics(self) -> xr.Dataset:
        """Compute R-hat (with two or more chains) and bulk and tail ESS.

        :returns: Diagnostic values with a ``metric`` dimension
        :rtype: xr.Dataset
        """
        def run_computations():
            computations = [
                az.ess(self.samples, method="bulk"),
                az.ess(self.samples, method="tail"),
            ]
            if self.nchains > 1:
                computations.append(az.rhat(self.samples))
            return computations

        # Run computations, optionally with dask
        if self.use_dask:
            with utils.az_dask():
                diagnostics = dask.compute(*run_computations())
        else:
            diagnostics = run_computations()

        # Concatenate the results and return
        return xr.concat(
            [
                dset.assign_coords(metric=[metric])
                for metric, dset in zip(["ess_bulk", "ess_tail", "r_hat"], diagnostics)
            ],
            dim="metric",
        )

    def diagnose(
        self,
        r_hat_thresh: "custom_types.Float" = DEFAULT_RHAT_THRESH,
        ess_thresh: "custom_types.Float" = DEFAULT_ESS_THRESH,
        min_acceptance: "custom_types.Float" = DEFAULT_MIN_ACCEPTANCE,
        silent: bool = False,
    ) -> dict[str, list[str]]:
        """Check convergence and sampler health.

        :param r_hat_thresh: R-hat values at or above this fail. Defaults to 1.01.
        :type r_hat_thresh: custom_types.Float
        :param ess_thresh: ESS per chain at or below this fails. Defaults to 100.
        :type ess_thresh: custom_types.Float
        :param min_acceptance: Acceptance rates below this fail. Defaults to 0.05.
        :type min_acceptance: custom_types.Float
        :param silent: Whether to suppress warnings. Defaults to False.
        :type silent: bool

        :returns: Names of the failing variables (or samplers, for "acceptance")
            for each test
        :rtype: dict[str, list[str]]

        R-hat is only tested with two or more chains.
        """
        diagnostics = self.calculate_diagnostics()
        ess_thresh = ess_thresh * self.nchains

        # Variable-level tests
        tests = {
            "ess_bulk": diagnostics.sel(metric="ess_bulk") <= ess_thresh,
            "ess_tail": diagnostics.sel(metric="ess_tail") <= ess_thresh,
        }
        if "r_hat" in diagnostics.metric.values:
            tests["r_hat"] = diagnostics.sel(metric="r_hat") >= r_hat_thresh
        failures = {
            metric: [name for name, failed in result.items() if bool(failed.any())]
            for metric, result in tests.items()
        }

        # Sampler-level test
        failures["acceptance"] = (
            [] if self.acceptance.empty
            else self.acceptance.index[
                (self.acceptance < min_acceptance).any(axis=1)
            ].tolist()
        )

        # Report
        if not silent:
            for metric, failed in failures.items():
                if failed:
                    warnings.warn(f"{metric} test failed for: {', '.join(failed)}")

        return failures

    def __getitem__(self, name: str) -> xr.DataArray:
        return self.samples[name]

    @property
    def nchains(self) -> int:
        """Number of chains."""
        return int(self.samples.sizes["chain"])

    @property
    def ndraws(self) -> int:
        """Number of recorded draws per chain."""
        return int(self.samples.sizes["draw"])
