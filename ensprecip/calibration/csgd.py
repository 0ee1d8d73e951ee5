# (C) Crown copyright, Met Office. All rights reserved.
#
# This file is part of ensprecip and is released under a BSD 3-Clause license.
# See LICENSE in the root of the repository for full licensing details.
"""
Exceedance probabilities from a censored, shifted Gamma distribution.

Following Scheuerer and Hamill (2015), the predictive distribution is
Y = max(0, X + shift) with X Gamma distributed. Its mean mu and standard
deviation sigma are obtained by regressing the climatological values on the
ensemble mean, spread and probability of precipitation:

    mu = mu_cl / a1 * log1p(expm1(a1) * (a2 + a3 * pop + a4 * mean_anomaly))
    sigma = a5 * sigma_cl * sqrt(mu / mu_cl) + a6 * sigma_cl * spread / mean_cl

where mean_anomaly = 1 + rho * (mean / mean_cl - 1) shrinks the ensemble mean
anomaly towards climatology by the spatially varying correlation rho.
"""

import logging
from dataclasses import dataclass
from typing import Optional, Sequence, Tuple

import numpy as np
from iris.cube import Cube, CubeList
from numpy import ndarray
from scipy import stats

from ensprecip import PostProcessingPlugin
from ensprecip.constants import DAYS_IN_YEAR, MISSING_DATA_INDICATOR
from ensprecip.ensemble_probabilities import EnsembleSummary
from ensprecip.metadata.constants import FLOAT_DTYPE
from ensprecip.metadata.probabilistic import PROBABILITY_NAMES, create_probability_cube
from ensprecip.metadata.utilities import generate_mandatory_attributes

logger = logging.getLogger(__name__)

CLIMATOLOGY_NAMES = (
    "climatological_mean",
    "climatological_mu",
    "climatological_sigma",
    "climatological_shift",
)
REGRESSION_NAMES = ("csgd_parameters", "rho")
N_COEFFICIENTS = 6

#: Lower bound on the predicted mean and standard deviation (mm).
MIN_CSGD_PARAMETER = 1.0e-4


@dataclass(frozen=True)
class CSGDClimatology:
    """Climatological censored, shifted Gamma parameters at each point.

    Attributes:
        mean: Climatological mean amount.
        mu: Climatological Gamma mean.
        sigma: Climatological Gamma standard deviation.
        shift: Climatological shift.
    """

    mean: ndarray
    mu: ndarray
    sigma: ndarray
    shift: ndarray

    @classmethod
    def from_cubes(cls, cubes: CubeList, day_of_year: int) -> "CSGDClimatology":
        """Select one day from daily (day_of_year, y, x) climatology cubes.

        Args:
            cubes:
                Cubes named "climatological_mean", "climatological_mu",
                "climatological_sigma" and "climatological_shift".
            day_of_year:
                Day of year of the valid time. Leap days take the values of
                the last day held.

        Returns:
            The climatology for the day.
        """
        arrays = []
        for name in CLIMATOLOGY_NAMES:
            data = np.ma.filled(cubes.extract_cube(name).data, np.nan)
            if data.ndim == 3:
                index = min(day_of_year, DAYS_IN_YEAR, data.shape[0]) - 1
                data = data[index]
            arrays.append(np.asarray(data, dtype=np.float64))
        return cls(*arrays)


@dataclass(frozen=True)
class CSGDRegressionParameters:
    """Regression coefficients a1..a6 and the correlation rho used to
    shrink the ensemble-mean anomaly."""

    coefficients: ndarray
    correlation: ndarray

    def __post_init__(self) -> None:
        coefficients = np.asarray(self.coefficients, dtype=np.float64).ravel()
        if coefficients.size != N_COEFFICIENTS:
            raise ValueError(
                f"Expected {N_COEFFICIENTS} regression coefficients, "
                f"got {coefficients.size}"
            )
        object.__setattr__(self, "coefficients", coefficients)
        object.__setattr__(
            self, "correlation", np.asarray(self.correlation, dtype=np.float64)
        )

    @classmethod
    def from_cubes(cls, cubes: CubeList) -> "CSGDRegressionParameters":
        """Construct from the "csgd_parameters" and "rho" cubes."""
        return cls(
            np.ma.filled(cubes.extract_cube(REGRESSION_NAMES[0]).data, np.nan),
            np.ma.filled(cubes.extract_cube(REGRESSION_NAMES[1]).data, np.nan),
        )


class CensoredShiftedGammaProbabilities(PostProcessingPlugin):
    """Calculate exceedance probabilities directly from the raw ensemble
    summary, without member dressing."""

    def __init__(
        self,
        thresholds: Sequence[float],
        missing_data_indicator: float = MISSING_DATA_INDICATOR,
    ) -> None:
        """
        Args:
            thresholds:
                Precipitation amounts (mm).
            missing_data_indicator:
                Value written where no probability can be calculated.
        """
        self.thresholds = tuple(thresholds)
        self.missing_data_indicator = missing_data_indicator

    def __repr__(self) -> str:
        return f"<CensoredShiftedGammaProbabilities: thresholds: {self.thresholds}>"

    @staticmethod
    def distribution_parameters(
        summary: EnsembleSummary,
        climatology: CSGDClimatology,
        regression: CSGDRegressionParameters,
    ) -> Tuple[ndarray, ndarray, ndarray]:
        """Predicted Gamma mean, standard deviation and shift.

        Args:
            summary:
                Raw ensemble mean, standard deviation and probability of
                precipitation.
            climatology:
                Climatological parameters for the valid day.
            regression:
                Regression coefficients and correlation.

        Returns:
            Tuple of mu, sigma and shift arrays. Points with unusable inputs
            hold NaN.
        """
        a1, a2, a3, a4, a5, a6 = regression.coefficients
        with np.errstate(divide="ignore", invalid="ignore"):
            mean_anomaly = 1.0 + regression.correlation * (
                summary.mean / climatology.mean - 1.0
            )
            predictor = np.maximum(a2 + a3 * summary.pop + a4 * mean_anomaly, 0.0)
            mu = climatology.mu / a1 * np.log1p(np.expm1(a1) * predictor)
            mu = np.maximum(mu, MIN_CSGD_PARAMETER)
            sigma = a5 * climatology.sigma * np.sqrt(
                mu / climatology.mu
            ) + a6 * climatology.sigma * (summary.stddev / climatology.mean)
            sigma = np.maximum(sigma, MIN_CSGD_PARAMETER)
            usable = (
                np.isfinite(mu)
                & np.isfinite(sigma)
                & np.isfinite(climatology.shift)
                & (climatology.mean > 0)
                & (climatology.mu > 0)
            )
        nan = np.full(np.shape(mu), np.nan)
        return (
            np.where(usable, mu, nan),
            np.where(usable, sigma, nan),
            np.where(usable, climatology.shift, nan),
        )

    def exceedance_probabilities(
        self, mu: ndarray, sigma: ndarray, shift: ndarray
    ) -> ndarray:
        """P(Y >= t) for each threshold t, with Y = max(0, X + shift).

        Args:
            mu:
                Gamma mean.
            sigma:
                Gamma standard deviation.
            shift:
                Shift, non-positive values placing a probability mass at
                zero.

        Returns:
            Probabilities shaped (threshold,) + mu.shape, NaN where the
            parameters are unusable.
        """
        usable = np.isfinite(mu) & np.isfinite(sigma) & np.isfinite(shift)
        mu = np.where(usable, mu, 1.0)
        sigma = np.where(usable, sigma, 1.0)
        shape = (mu / sigma) ** 2
        scale = sigma**2 / mu
        probabilities = np.stack(
            [
                stats.gamma.sf(
                    threshold - np.where(usable, shift, 0.0), shape, scale=scale
                )
                for threshold in self.thresholds
            ]
        )
        probabilities[:, ~usable] = np.nan
        return probabilities

    def probabilities(
        self,
        summary: EnsembleSummary,
        climatology: CSGDClimatology,
        regression: CSGDRegressionParameters,
        valid_mask: Optional[ndarray] = None,
    ) -> ndarray:
        """Float32 exceedance probabilities shaped (threshold, y, x), with
        the missing data indicator outside the mask or where the inputs are
        unusable."""
        mu, sigma, shift = self.distribution_parameters(
            summary, climatology, regression
        )
        probabilities = self.exceedance_probabilities(mu, sigma, shift)
        no_data = np.isnan(probabilities)
        if valid_mask is not None:
            no_data |= ~valid_mask.astype(bool)[np.newaxis]
        probabilities = np.clip(np.nan_to_num(probabilities, nan=0.0), 0.0, 1.0)
        probabilities[no_data] = self.missing_data_indicator
        n_unusable = np.count_nonzero(no_data[0])
        if n_unusable:
            logger.debug("CSGD probabilities missing at %d points", n_unusable)
        return probabilities.astype(FLOAT_DTYPE)

    def process(
        self,
        summary: EnsembleSummary,
        climatology: CSGDClimatology,
        regression: CSGDRegressionParameters,
        template: Cube,
        valid_mask: Optional[ndarray] = None,
    ) -> Cube:
        """Calculate the CSGD probability cube.

        Args:
            summary:
                Raw ensemble summary.
            climatology:
                Climatological parameters for the valid day.
            regression:
                Regression coefficients and correlation.
            template:
                2-D cube providing the grid and time coordinates.
            valid_mask:
                Optional boolean (y, x) array of in-domain points.

        Returns:
            Probability cube shaped (threshold, y, x).
        """
        data = self.probabilities(summary, climatology, regression, valid_mask)
        return create_probability_cube(
            PROBABILITY_NAMES["csgd"],
            template,
            self.thresholds,
            data,
            attributes=generate_mandatory_attributes([template]),
        )
