# (C) Crown copyright, Met Office. All rights reserved.
#
# This file is part of ensprecip and is released under a BSD 3-Clause license.
# See LICENSE in the root of the repository for full licensing details.
"""Module containing quantile mapping classes."""

import logging
from typing import Optional, Union

import numpy as np
from iris.cube import Cube
from numpy import ndarray

from ensprecip import PostProcessingPlugin
from ensprecip.calibration.distributions import (
    DistributionParameters,
    EmpiricalCDF,
    EmpiricalDistribution,
    ZeroInflatedGamma,
)
from ensprecip.constants import DEFAULT_STENCIL_WIDTH, MISSING_DATA_INDICATOR
from ensprecip.metadata.constants import FLOAT_DTYPE

logger = logging.getLogger(__name__)

Parameters = Union[DistributionParameters, EmpiricalDistribution]


class QuantileMapping(PostProcessingPlugin):
    """Map expanded ensemble members from the forecast climatology onto the
    analysed climatology, point by point.

    Each value x is mapped to F_a^-1(F_f(x)), where F_f and F_a are the
    forecast and analysis CDFs at the point. Zero forecasts stay zero, as do
    values at points where either distribution has no usable positive part.
    """

    def __init__(
        self,
        distribution: Union[ZeroInflatedGamma, EmpiricalCDF],
        stencil_size: int = DEFAULT_STENCIL_WIDTH**2,
        rows_per_chunk: int = 32,
        missing_data_indicator: float = MISSING_DATA_INDICATOR,
    ) -> None:
        """Initialize the quantile mapping plugin.

        Args:
            distribution:
                CDF strategy providing cdf and inverse_cdf.
            stencil_size:
                Number of pseudo-members derived from each original member.
                Used to pair member-specific forecast parameters with the
                expanded ensemble.
            rows_per_chunk:
                Number of grid rows mapped together, bounding the size of
                temporary arrays.
            missing_data_indicator:
                Value written for missing input values.
        """
        self.distribution = distribution
        self.stencil_size = stencil_size
        self.rows_per_chunk = rows_per_chunk
        self.missing_data_indicator = missing_data_indicator

    def __repr__(self) -> str:
        return (
            f"<QuantileMapping: distribution: {self.distribution}; "
            f"stencil_size: {self.stencil_size}>"
        )

    def _map_chunk(
        self, values: ndarray, forecast_params: Parameters, analysis_params: Parameters
    ) -> ndarray:
        """Map a block of rows of the expanded ensemble."""
        missing = ~np.isfinite(values) | (values < 0)
        values = np.where(missing, 0.0, values)

        usable = np.broadcast_to(
            forecast_params.has_positive_part(), values.shape
        ) & np.broadcast_to(analysis_params.has_positive_part(), values.shape)
        positive = (values > 0) & usable

        probabilities = self.distribution.cdf(forecast_params, values)
        mapped = self.distribution.inverse_cdf(analysis_params, probabilities)
        mapped = np.where(positive, mapped, 0.0)
        return np.where(missing, self.missing_data_indicator, mapped)

    def map_members(
        self,
        expanded: ndarray,
        forecast_params: Parameters,
        analysis_params: Parameters,
        exchangeable: bool = True,
    ) -> ndarray:
        """Quantile map an expanded ensemble.

        Args:
            expanded:
                Member values, shaped (n_members * stencil_size, y, x) and
                ordered member-major.
            forecast_params:
                Forecast distribution, pooled (y, x) for exchangeable
                ensembles or per original member otherwise.
            analysis_params:
                Analysis distribution, pooled (y, x).
            exchangeable:
                Whether one forecast distribution serves all members.

        Returns:
            Float32 array of mapped values shaped like expanded.

        Raises:
            ValueError: If member-specific parameters are required but not
                supplied, or the expanded ensemble size is not a multiple of
                the stencil size.
        """
        if expanded.shape[0] % self.stencil_size:
            raise ValueError(
                f"Expanded ensemble of {expanded.shape[0]} members is not a "
                f"multiple of the stencil size {self.stencil_size}"
            )
        if not exchangeable:
            if not forecast_params.is_per_member:
                raise ValueError(
                    "Member-specific forecast parameters are required for a "
                    "non-exchangeable ensemble."
                )
            forecast_params = forecast_params.expand_members(
                expanded.shape[0] // self.stencil_size, self.stencil_size
            )

        expanded = np.asarray(expanded, dtype=np.float64)
        mapped = np.empty(expanded.shape, dtype=FLOAT_DTYPE)
        n_rows = expanded.shape[1]
        for start in range(0, n_rows, self.rows_per_chunk):
            rows = slice(start, min(start + self.rows_per_chunk, n_rows))
            mapped[:, rows] = self._map_chunk(
                expanded[:, rows],
                forecast_params.subset_rows(rows),
                analysis_params.subset_rows(rows),
            )
            logger.debug("Quantile mapped rows %d to %d", rows.start, rows.stop - 1)
        return mapped

    def process(
        self,
        expanded_cube: Cube,
        forecast_params: Parameters,
        analysis_params: Parameters,
        exchangeable: bool = True,
        valid_mask: Optional[ndarray] = None,
    ) -> Cube:
        """Quantile map an expanded ensemble cube.

        Args:
            expanded_cube:
                Expanded ensemble with a leading realization dimension.
            forecast_params:
                Forecast distribution parameters.
            analysis_params:
                Analysis distribution parameters.
            exchangeable:
                Whether one forecast distribution serves all members.
            valid_mask:
                Optional boolean (y, x) array; points outside it are set to
                the missing data indicator.

        Returns:
            Cube of mapped values with the metadata of the input.
        """
        mapped = self.map_members(
            np.ma.filled(expanded_cube.data, np.nan),
            forecast_params,
            analysis_params,
            exchangeable=exchangeable,
        )
        if valid_mask is not None:
            mapped[:, ~valid_mask.astype(bool)] = self.missing_data_indicator
        return expanded_cube.copy(data=mapped)
