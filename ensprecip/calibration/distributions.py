# (C) Crown copyright, Met Office. All rights reserved.
#
# This file is part of ensprecip and is released under a BSD 3-Clause license.
# See LICENSE in the root of the repository for full licensing details.
"""
Zero-inflated precipitation distributions used for quantile mapping.

Two interchangeable CDF strategies are provided. Both expose ``cdf`` and
``inverse_cdf`` taking a parameter object and an array of values or
probabilities, and both represent a discrete probability mass at zero
followed by a continuous distribution of positive amounts:

- :class:`ZeroInflatedGamma` uses a fraction of zeros plus a two-parameter
  Gamma distribution, fitted from sufficient statistics.
- :class:`EmpiricalCDF` linearly interpolates CDF values tabulated at fixed
  precipitation amounts.
"""

import logging
from typing import Optional, Sequence, Tuple, Union

import numpy as np
from iris.cube import Cube, CubeList
from numpy import ndarray
from scipy import stats
from scipy.special import digamma, polygamma

from ensprecip import BasePlugin
from ensprecip.constants import MAX_CUMULATIVE_PROBABILITY, MISSING_DATA_INDICATOR
from ensprecip.exceptions import DegenerateDistributionError

logger = logging.getLogger(__name__)

#: Smallest D statistic accepted when estimating the Gamma shape parameter.
MIN_D_STATISTIC = 1.0e-10

STATISTIC_NAMES = (
    "sample_count",
    "zero_count",
    "sum_of_positive_amounts",
    "sum_of_log_positive_amounts",
)
PARAMETER_NAMES = ("fraction_zero", "gamma_shape", "gamma_scale")
PARAMETER_UNITS = ("1", "1", "mm")


class DistributionParameters:
    """Per grid point fraction of zeros, Gamma shape and Gamma scale.

    The arrays are either (y, x), for a set pooled over exchangeable members,
    or (member, y, x) for member-specific sets.
    """

    def __init__(
        self,
        fraction_zero: Union[ndarray, float],
        shape: Union[ndarray, float],
        scale: Union[ndarray, float],
    ) -> None:
        self.fraction_zero = np.asarray(fraction_zero, dtype=np.float64)
        self.shape = np.asarray(shape, dtype=np.float64)
        self.scale = np.asarray(scale, dtype=np.float64)
        if not self.fraction_zero.shape == self.shape.shape == self.scale.shape:
            raise ValueError(
                "Fraction zero, shape and scale arrays must share a shape. Got "
                f"{self.fraction_zero.shape}, {self.shape.shape}, {self.scale.shape}"
            )

    def __repr__(self) -> str:
        return f"<DistributionParameters: shape {self.fraction_zero.shape}>"

    @property
    def is_per_member(self) -> bool:
        """True if a separate parameter set is held for each member."""
        return self.fraction_zero.ndim == 3

    @property
    def n_member_sets(self) -> int:
        """Number of member-specific parameter sets, 0 if pooled."""
        return self.fraction_zero.shape[0] if self.is_per_member else 0

    def has_positive_part(self) -> ndarray:
        """Points at which the distribution of positive amounts is usable.

        Returns:
            Boolean array that is False wherever the shape or scale is
            non-finite or non-positive, or where all of the probability mass
            is at zero.
        """
        with np.errstate(invalid="ignore"):
            return (
                np.isfinite(self.shape)
                & np.isfinite(self.scale)
                & (self.shape > 0)
                & (self.scale > 0)
                & (self.fraction_zero < 1)
            )

    def expand_members(
        self, n_members: int, stencil_size: int
    ) -> "DistributionParameters":
        """Repeat member-specific parameters for each stencil offset.

        Args:
            n_members:
                Number of original ensemble members.
            stencil_size:
                Number of expanded members produced from each original member.

        Returns:
            Parameters with a leading dimension of n_members * stencil_size,
            or self if the parameters are pooled.

        Raises:
            ValueError: If the number of parameter sets does not match the
                number of members.
        """
        if not self.is_per_member:
            return self
        if self.n_member_sets != n_members:
            raise ValueError(
                f"Expected {n_members} member parameter sets, "
                f"got {self.n_member_sets}"
            )
        return DistributionParameters(
            *(
                np.repeat(array, stencil_size, axis=0)
                for array in (self.fraction_zero, self.shape, self.scale)
            )
        )

    def subset_rows(self, rows: slice) -> "DistributionParameters":
        """Parameters for a contiguous block of grid rows."""
        return DistributionParameters(
            self.fraction_zero[..., rows, :],
            self.shape[..., rows, :],
            self.scale[..., rows, :],
        )

    def check_defined(self, valid_mask: Optional[ndarray] = None) -> None:
        """Raise if any point within the valid mask has an unusable fit.

        Args:
            valid_mask:
                Boolean (y, x) array of points to check. All points are
                checked if not provided.

        Raises:
            DegenerateDistributionError: If any checked point has
                fraction zero outside [0, 1] or, where fraction zero is
                below 1, a non-finite or non-positive shape or scale.
        """
        with np.errstate(invalid="ignore"):
            bad = ~((self.fraction_zero >= 0) & (self.fraction_zero <= 1))
            bad |= (self.fraction_zero < 1) & ~self.has_positive_part()
        if valid_mask is not None:
            bad &= np.broadcast_to(valid_mask.astype(bool), bad.shape)
        if np.any(bad):
            raise DegenerateDistributionError(
                f"{np.count_nonzero(bad)} points have degenerate distribution "
                "parameters."
            )

    @classmethod
    def from_cubes(cls, cubes: CubeList, prefix: str) -> "DistributionParameters":
        """Construct from cubes named e.g. "forecast_gamma_shape".

        Args:
            cubes:
                Cubes containing the fraction zero, Gamma shape and Gamma
                scale fields.
            prefix:
                Either "forecast" or "analysis".

        Returns:
            The distribution parameters.
        """
        arrays = [
            np.ma.filled(cubes.extract_cube(f"{prefix}_{name}").data, np.nan)
            for name in PARAMETER_NAMES
        ]
        return cls(*arrays)


def sufficient_statistics(
    samples: ndarray, axis: int = 0, zero_threshold: float = 0.0
) -> Tuple[ndarray, ndarray, ndarray, ndarray]:
    """Accumulate the statistics from which the Gamma fit is estimated.

    Negative and non-finite samples are treated as missing.

    Args:
        samples:
            Array of precipitation amounts with the sample dimension at axis.
        axis:
            Sample dimension.
        zero_threshold:
            Amounts at or below this value count as zero.

    Returns:
        Tuple of sample count, zero count, sum of positive amounts and sum of
        the logarithms of positive amounts.
    """
    samples = np.asarray(samples, dtype=np.float64)
    with np.errstate(invalid="ignore"):
        valid = np.isfinite(samples) & (samples >= 0)
        positive = valid & (samples > zero_threshold)
    sample_count = np.count_nonzero(valid, axis=axis)
    zero_count = np.count_nonzero(valid & ~positive, axis=axis)
    sum_positive = np.where(positive, samples, 0.0).sum(axis=axis)
    sum_log_positive = np.log(np.where(positive, samples, 1.0)).sum(axis=axis)
    return sample_count, zero_count, sum_positive, sum_log_positive


def thom_shape_estimate(d_statistic: ndarray) -> ndarray:
    """Thom (1958) approximation to the maximum likelihood Gamma shape.

    Args:
        d_statistic:
            D = ln(mean) - mean(ln(x)) of the positive samples. Must be
            positive.

    Returns:
        Shape parameter estimates.
    """
    d_statistic = np.asarray(d_statistic, dtype=np.float64)
    return (1.0 + np.sqrt(1.0 + 4.0 * d_statistic / 3.0)) / (4.0 * d_statistic)


def refine_shape_estimate(
    shape: ndarray,
    d_statistic: ndarray,
    tolerance: float = 1.0e-6,
    max_iterations: int = 20,
) -> ndarray:
    """Newton iterations on ln(shape) - digamma(shape) = D.

    Args:
        shape:
            First guess, usually :func:`thom_shape_estimate`.
        d_statistic:
            D statistic for each point.
        tolerance:
            Largest relative change in shape accepted as converged.
        max_iterations:
            Iteration limit.

    Returns:
        Refined shape parameters.
    """
    shape = np.array(shape, dtype=np.float64)
    for _ in range(max_iterations):
        residual = np.log(shape) - digamma(shape) - d_statistic
        gradient = 1.0 / shape - polygamma(1, shape)
        updated = shape - residual / gradient
        # halve rather than step through zero
        updated = np.where(updated > 0, updated, 0.5 * shape)
        change = np.abs(updated - shape) / shape
        shape = updated
        if np.all(change < tolerance):
            break
    return shape


def estimate_gamma_parameters(
    sample_count: ndarray,
    zero_count: ndarray,
    sum_positive: ndarray,
    sum_log_positive: ndarray,
    refine: bool = True,
) -> DistributionParameters:
    """Estimate zero-inflated Gamma parameters from sufficient statistics.

    The fraction of zeros is the observed proportion of zero samples. The
    shape follows from the D statistic of the positive samples and the scale
    is the positive-sample mean divided by the shape. Points without positive
    samples, or whose positive samples are all identical, get NaN shape and
    scale; points without any samples get a fraction zero of 1.

    Args:
        sample_count:
            Number of valid samples.
        zero_count:
            Number of zero samples.
        sum_positive:
            Sum of the positive samples.
        sum_log_positive:
            Sum of the natural logarithm of the positive samples.
        refine:
            If True, refine the Thom estimate with Newton iterations.

    Returns:
        Estimated distribution parameters.
    """
    sample_count = np.asarray(sample_count, dtype=np.float64)
    zero_count = np.asarray(zero_count, dtype=np.float64)
    positive_count = sample_count - zero_count

    fraction_zero = np.ones_like(sample_count)
    np.divide(zero_count, sample_count, out=fraction_zero, where=sample_count > 0)

    with np.errstate(divide="ignore", invalid="ignore"):
        mean = np.asarray(sum_positive, dtype=np.float64) / positive_count
        d_statistic = np.log(mean) - (
            np.asarray(sum_log_positive, dtype=np.float64) / positive_count
        )
        fitted = (
            (positive_count > 0)
            & np.isfinite(d_statistic)
            & (d_statistic > MIN_D_STATISTIC)
        )

    shape = np.full(sample_count.shape, np.nan)
    scale = np.full(sample_count.shape, np.nan)
    shape[fitted] = thom_shape_estimate(d_statistic[fitted])
    if refine and np.any(fitted):
        shape[fitted] = refine_shape_estimate(shape[fitted], d_statistic[fitted])
    scale[fitted] = mean[fitted] / shape[fitted]

    n_unfitted = np.count_nonzero(~fitted & (fraction_zero < 1))
    if n_unfitted:
        logger.debug(
            "%d points with positive samples could not be fitted", n_unfitted
        )
    return DistributionParameters(fraction_zero, shape, scale)


class ZeroInflatedGamma:
    """CDF strategy combining a probability mass at zero with a Gamma
    distribution of positive amounts."""

    name = "gamma"

    def __init__(self, missing_data_indicator: float = MISSING_DATA_INDICATOR) -> None:
        self.missing_data_indicator = missing_data_indicator

    def __repr__(self) -> str:
        return "<ZeroInflatedGamma>"

    @staticmethod
    def _broadcast(parameters: DistributionParameters, values: ndarray):
        """Broadcast the parameters against the values, replacing unusable
        shape and scale values with harmless placeholders."""
        defined = parameters.has_positive_part()
        fraction_zero, shape, scale, defined, values = np.broadcast_arrays(
            parameters.fraction_zero,
            parameters.shape,
            parameters.scale,
            defined,
            values,
        )
        shape = np.where(defined, shape, 1.0)
        scale = np.where(defined, scale, 1.0)
        return fraction_zero, shape, scale, defined, values

    def cdf(self, parameters: DistributionParameters, values: ndarray) -> ndarray:
        """Probability of an amount less than or equal to each value.

        Args:
            parameters:
                Distribution parameters, broadcastable against values.
            values:
                Precipitation amounts.

        Returns:
            Cumulative probabilities. Points whose positive part is unusable
            return the missing data indicator for positive values.
        """
        values = np.asarray(values, dtype=np.float64)
        fraction_zero, shape, scale, defined, values = self._broadcast(
            parameters, values
        )
        positive_cdf = stats.gamma.cdf(np.maximum(values, 0.0), shape, scale=scale)
        result = np.where(
            values <= 0,
            fraction_zero,
            fraction_zero + (1.0 - fraction_zero) * positive_cdf,
        )
        result = np.where(fraction_zero >= 1, 1.0, result)
        return np.where(
            ~defined & (fraction_zero < 1) & (values > 0),
            self.missing_data_indicator,
            result,
        )

    def inverse_cdf(
        self, parameters: DistributionParameters, probabilities: ndarray
    ) -> ndarray:
        """Amount corresponding to each cumulative probability.

        Probabilities at or below the fraction of zeros map to zero. Others
        are rescaled onto the positive part, capped so that a probability of
        one still gives a finite amount.

        Args:
            parameters:
                Distribution parameters, broadcastable against probabilities.
            probabilities:
                Cumulative probabilities.

        Returns:
            Precipitation amounts. Points whose positive part is unusable
            return the missing data indicator where a positive amount would
            be required.
        """
        probabilities = np.clip(np.asarray(probabilities, dtype=np.float64), 0.0, 1.0)
        fraction_zero, shape, scale, defined, probabilities = self._broadcast(
            parameters, probabilities
        )
        positive_mass = np.where(fraction_zero < 1, 1.0 - fraction_zero, 1.0)
        rescaled = np.clip(
            (probabilities - fraction_zero) / positive_mass,
            0.0,
            MAX_CUMULATIVE_PROBABILITY,
        )
        amounts = stats.gamma.ppf(rescaled, shape, scale=scale)
        result = np.where(probabilities <= fraction_zero, 0.0, amounts)
        return np.where(
            ~defined & (probabilities > fraction_zero),
            self.missing_data_indicator,
            result,
        )


class EmpiricalDistribution:
    """CDF values tabulated at fixed amounts for each grid point.

    The table is (y, x, amount) for an exchangeable set, or
    (member, y, x, amount) for member-specific tables.
    """

    def __init__(self, cdf_values: ndarray) -> None:
        self.cdf_values = np.asarray(cdf_values, dtype=np.float64)

    def __repr__(self) -> str:
        return f"<EmpiricalDistribution: shape {self.cdf_values.shape}>"

    @property
    def is_per_member(self) -> bool:
        """True if a separate table is held for each member."""
        return self.cdf_values.ndim == 4

    @property
    def n_member_sets(self) -> int:
        """Number of member-specific tables, 0 if pooled."""
        return self.cdf_values.shape[0] if self.is_per_member else 0

    def has_positive_part(self) -> ndarray:
        """Points with a complete table and some probability of a positive
        amount."""
        with np.errstate(invalid="ignore"):
            return np.all(np.isfinite(self.cdf_values), axis=-1) & (
                self.cdf_values[..., 0] < 1
            )

    def expand_members(
        self, n_members: int, stencil_size: int
    ) -> "EmpiricalDistribution":
        """Repeat member-specific tables for each stencil offset."""
        if not self.is_per_member:
            return self
        if self.n_member_sets != n_members:
            raise ValueError(
                f"Expected {n_members} member CDF tables, "
                f"got {self.n_member_sets}"
            )
        return EmpiricalDistribution(np.repeat(self.cdf_values, stencil_size, axis=0))

    def subset_rows(self, rows: slice) -> "EmpiricalDistribution":
        """Tables for a contiguous block of grid rows."""
        return EmpiricalDistribution(self.cdf_values[..., rows, :, :])

    @classmethod
    def from_cubes(cls, cubes: CubeList, prefix: str) -> "EmpiricalDistribution":
        """Construct from a cube named e.g. "forecast_cdf" whose trailing
        dimension runs over the tabulated amounts."""
        cube = cubes.extract_cube(f"{prefix}_cdf")
        return cls(np.ma.filled(cube.data, np.nan))


class EmpiricalCDF:
    """CDF strategy interpolating linearly between tabulated amounts."""

    name = "empirical"

    def __init__(
        self,
        thresholds: Sequence[float],
        missing_data_indicator: float = MISSING_DATA_INDICATOR,
    ) -> None:
        """
        Args:
            thresholds:
                Increasing amounts (mm) at which the CDFs are tabulated. The
                first is expected to be zero so that the first tabulated value
                is the fraction of zeros.
            missing_data_indicator:
                Value returned where a table is unusable.

        Raises:
            ValueError: If fewer than two thresholds are given or they are
                not increasing.
        """
        self.thresholds = np.asarray(thresholds, dtype=np.float64)
        if self.thresholds.size < 2 or np.any(np.diff(self.thresholds) <= 0):
            raise ValueError(
                "At least two strictly increasing CDF thresholds are required."
            )
        self.missing_data_indicator = missing_data_indicator

    def __repr__(self) -> str:
        return f"<EmpiricalCDF: {self.thresholds.size} thresholds>"

    def _table(
        self, parameters: EmpiricalDistribution, shape: Tuple[int, ...]
    ) -> ndarray:
        n_thresholds = parameters.cdf_values.shape[-1]
        if n_thresholds != self.thresholds.size:
            raise ValueError(
                f"CDF tables have {n_thresholds} values but "
                f"{self.thresholds.size} thresholds are defined."
            )
        return np.broadcast_to(parameters.cdf_values, shape + (n_thresholds,))

    @staticmethod
    def _gather(table: ndarray, index: ndarray) -> ndarray:
        return np.take_along_axis(table, index[..., np.newaxis], axis=-1)[..., 0]

    def cdf(self, parameters: EmpiricalDistribution, values: ndarray) -> ndarray:
        """Probability of an amount less than or equal to each value,
        interpolated between the tabulated amounts."""
        values = np.asarray(values, dtype=np.float64)
        defined = parameters.has_positive_part()
        shape = np.broadcast_shapes(values.shape, defined.shape)
        values = np.broadcast_to(values, shape)
        defined = np.broadcast_to(defined, shape)
        table = self._table(parameters, shape)

        upper = np.clip(
            np.searchsorted(self.thresholds, values, side="right"),
            1,
            self.thresholds.size - 1,
        )
        lower = upper - 1
        cdf_lower = self._gather(table, lower)
        cdf_upper = self._gather(table, upper)
        amount_lower = self.thresholds[lower]
        amount_upper = self.thresholds[upper]
        weight = np.clip((values - amount_lower) / (amount_upper - amount_lower), 0, 1)
        result = cdf_lower + weight * (cdf_upper - cdf_lower)
        result = np.where(values <= self.thresholds[0], table[..., 0], result)
        return np.where(
            ~defined & (values > 0), self.missing_data_indicator, result
        )

    def inverse_cdf(
        self, parameters: EmpiricalDistribution, probabilities: ndarray
    ) -> ndarray:
        """Amount corresponding to each cumulative probability,
        interpolated between the tabulated amounts. Probabilities beyond the
        last tabulated value return the largest tabulated amount."""
        probabilities = np.clip(np.asarray(probabilities, dtype=np.float64), 0.0, 1.0)
        defined = parameters.has_positive_part()
        shape = np.broadcast_shapes(probabilities.shape, defined.shape)
        probabilities = np.broadcast_to(probabilities, shape)
        defined = np.broadcast_to(defined, shape)
        table = self._table(parameters, shape)

        # index of the first tabulated value reaching each probability
        count = np.count_nonzero(table < probabilities[..., np.newaxis], axis=-1)
        upper = np.clip(count, 1, self.thresholds.size - 1)
        lower = upper - 1
        cdf_lower = self._gather(table, lower)
        cdf_upper = self._gather(table, upper)
        spread = cdf_upper - cdf_lower
        weight = np.ones(shape)
        np.divide(probabilities - cdf_lower, spread, out=weight, where=spread > 0)
        weight = np.clip(weight, 0, 1)
        result = self.thresholds[lower] + weight * (
            self.thresholds[upper] - self.thresholds[lower]
        )
        result = np.where(count == 0, self.thresholds[0], result)
        result = np.where(count >= self.thresholds.size, self.thresholds[-1], result)
        return np.where(
            ~defined & (count > 0), self.missing_data_indicator, result
        )


class EstimateDistributionParameters(BasePlugin):
    """Estimate zero-inflated Gamma parameters from gridded sufficient
    statistics, for forecasts and/or analyses."""

    def __init__(self, refine: bool = True, require_defined: bool = False) -> None:
        """
        Args:
            refine:
                If True, refine the Thom shape estimate with Newton
                iterations.
            require_defined:
                If True, raise if any point with positive samples could not
                be fitted.
        """
        self.refine = refine
        self.require_defined = require_defined

    def __repr__(self) -> str:
        return (
            f"<EstimateDistributionParameters: refine: {self.refine}; "
            f"require_defined: {self.require_defined}>"
        )

    def process(self, statistics: CubeList) -> CubeList:
        """Estimate parameters for each prefix with a complete set of
        statistics.

        Args:
            statistics:
                Cubes named "<prefix>_sample_count", "<prefix>_zero_count",
                "<prefix>_sum_of_positive_amounts" and
                "<prefix>_sum_of_log_positive_amounts", where prefix is
                "forecast" or "analysis".

        Returns:
            Cubes named "<prefix>_fraction_zero", "<prefix>_gamma_shape" and
            "<prefix>_gamma_scale".

        Raises:
            ValueError: If no complete set of statistics is found.
        """
        names = {cube.name() for cube in statistics}
        output = CubeList()
        for prefix in ("forecast", "analysis"):
            required = [f"{prefix}_{name}" for name in STATISTIC_NAMES]
            if not all(name in names for name in required):
                continue
            cubes = [statistics.extract_cube(name) for name in required]
            parameters = estimate_gamma_parameters(
                *(cube.data for cube in cubes), refine=self.refine
            )
            if self.require_defined:
                sample_count = np.asarray(cubes[0].data)
                parameters.check_defined(valid_mask=sample_count > 0)
            arrays = (parameters.fraction_zero, parameters.shape, parameters.scale)
            for name, units, array in zip(PARAMETER_NAMES, PARAMETER_UNITS, arrays):
                output.append(
                    self._parameter_cube(cubes[0], f"{prefix}_{name}", units, array)
                )
            logger.info(
                "Estimated %s parameters: %d of %d points fitted",
                prefix,
                np.count_nonzero(parameters.has_positive_part()),
                parameters.shape.size,
            )
        if not output:
            raise ValueError(
                "No complete set of sufficient statistics found. Expected cubes "
                f"named <prefix>_{{{', '.join(STATISTIC_NAMES)}}}"
            )
        return output

    @staticmethod
    def _parameter_cube(template: Cube, name: str, units: str, data: ndarray) -> Cube:
        cube = template.copy(data=data.astype(np.float32))
        cube.rename(name)
        cube.units = units
        return cube
