# (C) Crown copyright, Met Office. All rights reserved.
#
# This file is part of ensprecip and is released under a BSD 3-Clause license.
# See LICENSE in the root of the repository for full licensing details.
"""
Rank-weighted dressing of a quantile-mapped ensemble.

Each sorted member is replaced by a kernel distribution. Kernels are weighted
by the closest-member histogram: the historical frequency with which the
member at each sorted rank lay closest to the verifying analysis, given the
ensemble-mean category. Exceedance probabilities are the weighted sum of the
kernel probabilities above each threshold.
"""

import logging
from dataclasses import dataclass
from typing import Optional, Sequence, Union

import numpy as np
from iris.cube import Cube, CubeList
from numpy import ndarray
from scipy import stats

from ensprecip import PostProcessingPlugin
from ensprecip.constants import MISSING_DATA_INDICATOR
from ensprecip.metadata.constants import FLOAT_DTYPE
from ensprecip.metadata.probabilistic import PROBABILITY_NAMES, create_probability_cube
from ensprecip.metadata.utilities import generate_mandatory_attributes, grid_template

logger = logging.getLogger(__name__)

HISTOGRAM_NAMES = ("closest_histogram", "precip_histogram_thresholds")
KERNEL_NAMES = (
    "precip_values",
    "gamma_shapes",
    "gamma_scales",
    "fraction_zeros",
    "gamma_shape_fclimpop",
    "gamma_scale_fclimpop",
    "fraction_zeros_fclimpop",
    "climo_pop_thresholds",
)

#: Rank classes of a member within the sorted ensemble.
LOWEST, INTERMEDIATE, HIGHEST = 0, 1, 2


def rank_classes(n_members: int, n_valid: ndarray) -> ndarray:
    """Classify each sorted rank as lowest, intermediate or highest.

    Args:
        n_members:
            Length of the sorted member dimension.
        n_valid:
            Number of valid members at each point. Invalid members are
            sorted after the valid ones.

    Returns:
        Integer array shaped (n_members,) + n_valid.shape.
    """
    ranks = np.arange(n_members).reshape((n_members,) + (1,) * np.ndim(n_valid))
    classes = np.full((n_members,) + np.shape(n_valid), INTERMEDIATE, dtype=np.int8)
    classes[np.broadcast_to(ranks == np.asarray(n_valid) - 1, classes.shape)] = HIGHEST
    classes[0] = LOWEST
    return classes


class ClosestMemberHistogram:
    """Closest-member histogram stratified by ensemble-mean category.

    The histogram is shaped (rank, category) and each column sums to one.
    Category c holds ensemble means from category_thresholds[c] up to the next
    category threshold.
    """

    def __init__(
        self, histogram: ndarray, category_thresholds: Sequence[float]
    ) -> None:
        """
        Args:
            histogram:
                Relative frequencies shaped (n_ranks, n_categories).
            category_thresholds:
                Lower bounds (mm) of the ensemble-mean categories.

        Raises:
            ValueError: If the table and category thresholds are
                inconsistent or the table holds negative values.
        """
        self.histogram = np.asarray(histogram, dtype=np.float64)
        self.category_thresholds = np.asarray(category_thresholds, dtype=np.float64)
        if self.histogram.ndim != 2:
            raise ValueError(
                f"Closest histogram must be 2-D (rank, category), got "
                f"{self.histogram.ndim} dimensions"
            )
        if self.histogram.shape[1] != self.category_thresholds.size:
            raise ValueError(
                f"Closest histogram has {self.histogram.shape[1]} categories but "
                f"{self.category_thresholds.size} category thresholds"
            )
        if np.any(self.histogram < 0) or not np.all(np.isfinite(self.histogram)):
            raise ValueError("Closest histogram frequencies must be finite and >= 0")

    def __repr__(self) -> str:
        return (
            f"<ClosestMemberHistogram: ranks: {self.n_ranks}; "
            f"categories: {self.category_thresholds.size}>"
        )

    @property
    def n_ranks(self) -> int:
        return self.histogram.shape[0]

    def category(self, ensemble_mean: ndarray) -> ndarray:
        """Ensemble-mean category at each point. Missing means fall in the
        lowest category."""
        mean = np.nan_to_num(np.asarray(ensemble_mean, dtype=np.float64), nan=0.0)
        index = np.searchsorted(self.category_thresholds, mean, side="right") - 1
        return np.clip(index, 0, self.category_thresholds.size - 1)

    def lookup_weights(
        self, sorted_rank: Union[int, ndarray], mean_category: Union[int, ndarray]
    ):
        """Historical frequency of the analysis lying closest to the member
        at sorted_rank, for the given ensemble-mean category."""
        return self.histogram[sorted_rank, mean_category]

    def weights(self, category: ndarray, n_valid: ndarray) -> ndarray:
        """Kernel weights for each sorted rank at each point.

        Ranks beyond the number of valid members get zero weight and the
        remaining weights are renormalised to sum to one.

        Args:
            category:
                Ensemble-mean category at each point.
            n_valid:
                Number of valid members at each point.

        Returns:
            Weights shaped (n_ranks,) + category.shape.
        """
        weights = self.lookup_weights(slice(None), category)
        ranks = np.arange(self.n_ranks).reshape((self.n_ranks,) + (1,) * category.ndim)
        weights = np.where(ranks < n_valid, weights, 0.0)
        total = weights.sum(axis=0)
        np.divide(weights, total, out=weights, where=total > 0)
        return weights

    @classmethod
    def from_cubes(cls, cubes: CubeList) -> "ClosestMemberHistogram":
        """Construct from the "closest_histogram" and
        "precip_histogram_thresholds" cubes."""
        return cls(
            cubes.extract_cube(HISTOGRAM_NAMES[0]).data,
            cubes.extract_cube(HISTOGRAM_NAMES[1]).data,
        )


@dataclass(frozen=True)
class DressingKernelParameters:
    """Fitted zero-inflated Gamma dressing kernels.

    Attributes:
        precip_values: Lower bounds (mm) of the member amount bins.
        gamma_shapes: Kernel shapes, (amount bin, mean category, rank class).
        gamma_scales: Kernel scales, as gamma_shapes.
        fraction_zeros: Kernel probability of zero, as gamma_shapes.
        gamma_shape_fclimpop: Shapes for zero ensemble mean, by
            climatological probability of precipitation bin.
        gamma_scale_fclimpop: Scales for zero ensemble mean.
        fraction_zeros_fclimpop: Probability of zero for zero ensemble mean.
        climo_pop_thresholds: Boundaries between the climatological
            probability of precipitation bins.
    """

    precip_values: ndarray
    gamma_shapes: ndarray
    gamma_scales: ndarray
    fraction_zeros: ndarray
    gamma_shape_fclimpop: ndarray
    gamma_scale_fclimpop: ndarray
    fraction_zeros_fclimpop: ndarray
    climo_pop_thresholds: ndarray

    def __post_init__(self) -> None:
        for name in KERNEL_NAMES:
            object.__setattr__(
                self, name, np.asarray(getattr(self, name), dtype=np.float64)
            )
        n_bins = self.precip_values.size
        for name in ("gamma_shapes", "gamma_scales", "fraction_zeros"):
            array = getattr(self, name)
            if array.ndim != 3 or array.shape[0] != n_bins:
                raise ValueError(
                    f"{name} must be shaped ({n_bins}, category, rank class), "
                    f"got {array.shape}"
                )
        n_pop_bins = self.climo_pop_thresholds.size + 1
        for name in (
            "gamma_shape_fclimpop",
            "gamma_scale_fclimpop",
            "fraction_zeros_fclimpop",
        ):
            if getattr(self, name).shape != (n_pop_bins,):
                raise ValueError(
                    f"{name} must hold {n_pop_bins} values, got "
                    f"{getattr(self, name).shape}"
                )

    @classmethod
    def from_cubes(cls, cubes: CubeList) -> "DressingKernelParameters":
        """Construct from cubes named after the attributes."""
        return cls(*(cubes.extract_cube(name).data for name in KERNEL_NAMES))


def _gamma_exceedance(
    amount: Union[float, ndarray],
    fraction_zero: ndarray,
    shape: ndarray,
    scale: ndarray,
) -> ndarray:
    """P(X >= amount) for a zero-inflated Gamma, one for non-positive amounts
    and zero where the parameters are unusable."""
    with np.errstate(invalid="ignore"):
        usable = (
            np.isfinite(shape)
            & np.isfinite(scale)
            & (shape > 0)
            & (scale > 0)
            & (fraction_zero >= 0)
            & (fraction_zero < 1)
        )
    survival = stats.gamma.sf(
        amount, np.where(usable, shape, 1.0), scale=np.where(usable, scale, 1.0)
    )
    exceedance = np.where(
        np.asarray(amount) > 0, (1.0 - fraction_zero) * survival, 1.0
    )
    return np.where(usable, exceedance, 0.0)


class GammaDressingKernel:
    """Zero-inflated Gamma kernels for the excess of the analysed amount over
    the member, conditioned on the member amount bin, ensemble-mean category
    and rank class."""

    name = "gamma"

    def __init__(self, parameters: DressingKernelParameters) -> None:
        self.parameters = parameters

    def __repr__(self) -> str:
        return f"<GammaDressingKernel: {self.parameters.precip_values.size} amount bins>"

    def exceedance(
        self,
        members: ndarray,
        rank_class: ndarray,
        category: ndarray,
        threshold: float,
    ) -> ndarray:
        """Kernel probability of an amount at or above the threshold, from
        the kernel survival function at the threshold less the member.

        Args:
            members:
                Sorted member values, shaped (n, y, x).
            rank_class:
                Rank class of each member, shaped as members.
            category:
                Ensemble-mean category at each point, shaped (y, x).
            threshold:
                Precipitation amount.

        Returns:
            Probabilities shaped as members.
        """
        params = self.parameters
        amount_bin = np.clip(
            np.searchsorted(params.precip_values, members, side="right") - 1,
            0,
            params.precip_values.size - 1,
        )
        index = (amount_bin, category[np.newaxis], rank_class)
        return _gamma_exceedance(
            threshold - members,
            params.fraction_zeros[index],
            params.gamma_shapes[index],
            params.gamma_scales[index],
        )

    def zero_mean_exceedance(
        self, climatological_pop: Optional[ndarray], threshold: float, shape=None
    ) -> ndarray:
        """Probability at or above the threshold where the ensemble mean is
        zero, from the kernel for the climatological probability of
        precipitation bin.

        Args:
            climatological_pop:
                Climatological probability of precipitation, shaped (y, x).
                If None, all points are assigned to the lowest bin.
            threshold:
                Precipitation amount.
            shape:
                Grid shape, required if climatological_pop is None.

        Returns:
            Probabilities shaped (y, x).
        """
        params = self.parameters
        if climatological_pop is None:
            pop_bin = np.zeros(shape, dtype=int)
        else:
            pop_bin = np.searchsorted(
                params.climo_pop_thresholds,
                np.nan_to_num(climatological_pop, nan=0.0),
                side="right",
            )
        pop_bin = np.clip(pop_bin, 0, params.climo_pop_thresholds.size)
        return _gamma_exceedance(
            threshold,
            params.fraction_zeros_fclimpop[pop_bin],
            params.gamma_shape_fclimpop[pop_bin],
            params.gamma_scale_fclimpop[pop_bin],
        )


class GaussianDressingKernel:
    """Normal kernels centred on each positive member, with a standard
    deviation growing linearly with the member amount. Zero members and zero
    ensemble means contribute no probability of precipitation."""

    name = "gaussian"

    def __init__(self, offset: float = 0.25, slope: float = 0.4) -> None:
        """
        Args:
            offset:
                Kernel standard deviation (mm) for a zero amount.
            slope:
                Increase of the standard deviation per mm of member amount.
        """
        if offset <= 0 or slope < 0:
            raise ValueError(
                "Gaussian kernel offset must be positive and slope non-negative"
            )
        self.offset = offset
        self.slope = slope

    def __repr__(self) -> str:
        return f"<GaussianDressingKernel: offset: {self.offset}; slope: {self.slope}>"

    def exceedance(
        self,
        members: ndarray,
        rank_class: ndarray,
        category: ndarray,
        threshold: float,
    ) -> ndarray:
        """Kernel probability of an amount at or above the threshold.
        Rank class and category do not affect this kernel."""
        spread = self.offset + self.slope * members
        probability = stats.norm.sf((threshold - members) / spread)
        return np.where(members > 0, probability, 0.0)

    def zero_mean_exceedance(
        self, climatological_pop: Optional[ndarray], threshold: float, shape=None
    ) -> ndarray:
        if climatological_pop is not None:
            shape = np.shape(climatological_pop)
        return np.zeros(shape)


class DressEnsembleProbabilities(PostProcessingPlugin):
    """Exceedance probabilities from a dressed, quantile-mapped ensemble."""

    def __init__(
        self,
        histogram: ClosestMemberHistogram,
        kernel: Union[GammaDressingKernel, GaussianDressingKernel],
        thresholds: Sequence[float],
        rows_per_chunk: int = 32,
        missing_data_indicator: float = MISSING_DATA_INDICATOR,
    ) -> None:
        """
        Args:
            histogram:
                Closest-member histogram with one rank per expanded member.
            kernel:
                Dressing kernel strategy.
            thresholds:
                Precipitation amounts (mm).
            rows_per_chunk:
                Number of grid rows dressed together.
            missing_data_indicator:
                Value written outside the valid mask.
        """
        self.histogram = histogram
        self.kernel = kernel
        self.thresholds = tuple(thresholds)
        self.rows_per_chunk = rows_per_chunk
        self.missing_data_indicator = missing_data_indicator

    def __repr__(self) -> str:
        return (
            f"<DressEnsembleProbabilities: kernel: {self.kernel}; "
            f"histogram: {self.histogram}>"
        )

    def _dress_chunk(
        self, members: ndarray, climatological_pop: Optional[ndarray]
    ) -> ndarray:
        """Dress a block of rows, returning (threshold, rows, x)
        probabilities with NaN where no member is valid."""
        with np.errstate(invalid="ignore"):
            members = np.where(
                np.isfinite(members) & (members >= 0), members, np.nan
            ).astype(FLOAT_DTYPE)
        # missing members sort last
        members = np.sort(members, axis=0)
        n_valid = np.count_nonzero(np.isfinite(members), axis=0)
        with np.errstate(invalid="ignore", divide="ignore"):
            mean = np.nansum(members, axis=0, dtype=np.float64) / n_valid
        category = self.histogram.category(mean)
        weights = self.histogram.weights(category, n_valid)
        ranks = rank_classes(members.shape[0], n_valid)
        values = np.nan_to_num(members, nan=0.0).astype(np.float64)
        zero_mean = mean == 0

        probabilities = np.empty((len(self.thresholds),) + mean.shape)
        for index, threshold in enumerate(self.thresholds):
            kernel_probability = self.kernel.exceedance(
                values, ranks, category, threshold
            )
            dressed = np.sum(weights * kernel_probability, axis=0)
            if np.any(zero_mean):
                zero_mean_probability = self.kernel.zero_mean_exceedance(
                    climatological_pop, threshold, shape=mean.shape
                )
                dressed = np.where(zero_mean, zero_mean_probability, dressed)
            probabilities[index] = dressed
        probabilities[:, n_valid == 0] = np.nan
        return probabilities

    def dress(
        self,
        members: ndarray,
        valid_mask: Optional[ndarray] = None,
        climatological_pop: Optional[ndarray] = None,
    ) -> ndarray:
        """Dress an expanded, quantile-mapped ensemble.

        Args:
            members:
                Member values shaped (n, y, x), in any order. Negative or
                non-finite values are treated as missing.
            valid_mask:
                Optional boolean (y, x) array of in-domain points.
            climatological_pop:
                Climatological probability of precipitation shaped (y, x),
                used to select kernels where the ensemble mean is zero.

        Returns:
            Float32 probabilities shaped (threshold, y, x), clipped to [0, 1],
            with the missing data indicator outside the mask or where no
            member is valid.

        Raises:
            ValueError: If the histogram does not have one rank per member.
        """
        if members.shape[0] != self.histogram.n_ranks:
            raise ValueError(
                f"Closest histogram has {self.histogram.n_ranks} ranks but the "
                f"ensemble has {members.shape[0]} members"
            )
        n_rows = members.shape[1]
        probabilities = np.empty(
            (len(self.thresholds),) + members.shape[1:], dtype=np.float64
        )
        for start in range(0, n_rows, self.rows_per_chunk):
            rows = slice(start, min(start + self.rows_per_chunk, n_rows))
            pop = None if climatological_pop is None else climatological_pop[rows]
            probabilities[:, rows] = self._dress_chunk(members[:, rows], pop)
            logger.debug("Dressed rows %d to %d", rows.start, rows.stop - 1)

        no_data = np.isnan(probabilities)
        if valid_mask is not None:
            no_data |= ~valid_mask.astype(bool)[np.newaxis]
        probabilities = np.clip(np.nan_to_num(probabilities, nan=0.0), 0.0, 1.0)
        probabilities[no_data] = self.missing_data_indicator
        return probabilities.astype(FLOAT_DTYPE)

    def process(
        self,
        cube: Cube,
        valid_mask: Optional[ndarray] = None,
        climatological_pop: Optional[ndarray] = None,
    ) -> Cube:
        """Dress an expanded, quantile-mapped ensemble cube.

        Args:
            cube:
                Ensemble cube with a leading realization dimension.
            valid_mask:
                Optional boolean (y, x) array of in-domain points.
            climatological_pop:
                Climatological probability of precipitation shaped (y, x).

        Returns:
            Dressed probability cube shaped (threshold, y, x).
        """
        data = self.dress(
            np.ma.filled(cube.data, np.nan),
            valid_mask=valid_mask,
            climatological_pop=climatological_pop,
        )
        return create_probability_cube(
            PROBABILITY_NAMES["dressed"],
            grid_template(cube),
            self.thresholds,
            data,
            attributes=generate_mandatory_attributes([cube]),
        )
