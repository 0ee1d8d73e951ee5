# (C) Crown copyright, Met Office. All rights reserved.
#
# This file is part of ensprecip and is released under a BSD 3-Clause license.
# See LICENSE in the root of the repository for full licensing details.
"""
Ensemble relative frequencies of threshold exceedance and summary statistics
of an ensemble.
"""

from dataclasses import dataclass
from typing import Optional, Sequence

import numpy as np
from iris.cube import Cube
from numpy import ndarray

from ensprecip import PostProcessingPlugin
from ensprecip.constants import MISSING_DATA_INDICATOR, POP_THRESHOLD
from ensprecip.metadata.constants import FLOAT_DTYPE
from ensprecip.metadata.probabilistic import create_probability_cube
from ensprecip.metadata.utilities import generate_mandatory_attributes, grid_template


def valid_members(members: ndarray) -> ndarray:
    """Members holding a usable amount: finite and non-negative."""
    with np.errstate(invalid="ignore"):
        return np.isfinite(members) & (members >= 0)


def exceedance_frequency(
    members: ndarray,
    thresholds: Sequence[float],
    valid_mask: Optional[ndarray] = None,
    missing_data_indicator: float = MISSING_DATA_INDICATOR,
) -> ndarray:
    """Fraction of members at or above each threshold.

    Args:
        members:
            Ensemble values shaped (member, y, x). Negative or non-finite
            values are treated as missing and excluded from the count.
        thresholds:
            Precipitation amounts.
        valid_mask:
            Optional boolean (y, x) array of in-domain points.
        missing_data_indicator:
            Value written outside the mask and where no member is valid.

    Returns:
        Float32 array shaped (threshold, y, x).
    """
    valid = valid_members(members)
    n_valid = np.count_nonzero(valid, axis=0)
    no_data = n_valid == 0
    if valid_mask is not None:
        no_data |= ~valid_mask.astype(bool)

    filled = np.where(valid, members, -np.inf)
    frequencies = np.empty((len(thresholds),) + members.shape[1:], dtype=FLOAT_DTYPE)
    for index, threshold in enumerate(thresholds):
        count = np.count_nonzero(filled >= threshold, axis=0)
        frequencies[index] = count / np.maximum(n_valid, 1)
    frequencies[:, no_data] = missing_data_indicator
    return frequencies


@dataclass(frozen=True)
class EnsembleSummary:
    """Summary statistics of an ensemble at each point.

    Attributes:
        mean: Ensemble mean amount.
        stddev: Ensemble standard deviation.
        pop: Fraction of members above the precipitation threshold.
    """

    mean: ndarray
    stddev: ndarray
    pop: ndarray


def summarise_ensemble(
    members: ndarray, pop_threshold: float = POP_THRESHOLD
) -> EnsembleSummary:
    """Ensemble mean, standard deviation and probability of precipitation,
    ignoring missing members. Points without valid members get NaN.

    Args:
        members:
            Ensemble values shaped (member, y, x).
        pop_threshold:
            Amount above which a member counts as precipitating.

    Returns:
        The ensemble summary.
    """
    valid = valid_members(members)
    n_valid = np.count_nonzero(valid, axis=0)
    values = np.where(valid, members, 0.0).astype(np.float64)
    with np.errstate(divide="ignore", invalid="ignore"):
        mean = values.sum(axis=0) / n_valid
        variance = (np.where(valid, values - mean, 0.0) ** 2).sum(axis=0) / n_valid
        pop = np.count_nonzero(valid & (values > pop_threshold), axis=0) / n_valid
    return EnsembleSummary(mean=mean, stddev=np.sqrt(variance), pop=pop)


class EnsembleExceedanceProbabilities(PostProcessingPlugin):
    """Relative frequency of threshold exceedance within an ensemble cube."""

    def __init__(
        self,
        thresholds: Sequence[float],
        name: str,
        missing_data_indicator: float = MISSING_DATA_INDICATOR,
    ) -> None:
        """
        Args:
            thresholds:
                Precipitation amounts (mm).
            name:
                Name of the output probability cube.
            missing_data_indicator:
                Value written outside the valid mask.
        """
        self.thresholds = tuple(thresholds)
        self.name = name
        self.missing_data_indicator = missing_data_indicator

    def __repr__(self) -> str:
        return (
            f"<EnsembleExceedanceProbabilities: name: {self.name}; "
            f"thresholds: {self.thresholds}>"
        )

    def process(self, cube: Cube, valid_mask: Optional[ndarray] = None) -> Cube:
        """Calculate exceedance frequencies.

        Args:
            cube:
                Ensemble cube with a leading realization dimension.
            valid_mask:
                Optional boolean (y, x) array of in-domain points.

        Returns:
            Probability cube shaped (threshold, y, x).
        """
        data = exceedance_frequency(
            np.ma.filled(cube.data, np.nan),
            self.thresholds,
            valid_mask=valid_mask,
            missing_data_indicator=self.missing_data_indicator,
        )
        return create_probability_cube(
            self.name,
            grid_template(cube),
            self.thresholds,
            data,
            attributes=generate_mandatory_attributes([cube]),
        )
