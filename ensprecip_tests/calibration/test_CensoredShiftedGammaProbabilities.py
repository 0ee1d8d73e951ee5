# (C) Crown copyright, Met Office. All rights reserved.
#
# This file is part of ensprecip and is released under a BSD 3-Clause license.
# See LICENSE in the root of the repository for full licensing details.
"""Unit tests for the csgd module."""

import numpy as np
import pytest
from iris.cube import CubeList
from scipy import stats

from ensprecip.calibration.csgd import (
    CLIMATOLOGY_NAMES,
    MIN_CSGD_PARAMETER,
    CensoredShiftedGammaProbabilities,
    CSGDClimatology,
    CSGDRegressionParameters,
)
from ensprecip.constants import MISSING_DATA_INDICATOR
from ensprecip.ensemble_probabilities import EnsembleSummary
from ensprecip.metadata.probabilistic import PROBABILITY_NAMES
from ensprecip.synthetic_data.set_up_test_cubes import (
    set_up_table_cube,
    set_up_variable_cube,
)

THRESHOLDS = (0.254, 1.0, 5.0)


@pytest.fixture
def climatology():
    """Climatology at a 1x3 grid."""
    return CSGDClimatology(
        mean=np.array([[2.0, 2.0, 0.0]]),
        mu=np.array([[2.0, 2.0, 2.0]]),
        sigma=np.array([[3.0, 3.0, 3.0]]),
        shift=np.array([[-0.5, -0.5, -0.5]]),
    )


@pytest.fixture
def regression():
    return CSGDRegressionParameters(
        np.array([1.0, 0.5, 0.3, 0.4, 0.8, 0.2]), np.full((1, 3), 0.9)
    )


def _summary(mean, stddev=1.0, pop=0.5):
    shape = np.shape(mean)
    return EnsembleSummary(
        mean=np.asarray(mean, dtype=float),
        stddev=np.full(shape, stddev),
        pop=np.full(shape, pop),
    )


def test_regression_validation():
    """Test the number of coefficients is checked."""
    with pytest.raises(ValueError, match="Expected 6 regression coefficients"):
        CSGDRegressionParameters(np.ones(5), np.ones((2, 2)))


def test_distribution_parameters(climatology, regression):
    """Test the predicted mean and spread for an ensemble mean equal to the
    climatological mean."""
    mu, sigma, shift = CensoredShiftedGammaProbabilities.distribution_parameters(
        _summary([[2.0, 2.0, 2.0]]), climatology, regression
    )
    expected_mu = 2.0 * np.log1p(np.expm1(1.0) * (0.5 + 0.3 * 0.5 + 0.4))
    expected_sigma = 0.8 * 3.0 * np.sqrt(expected_mu / 2.0) + 0.2 * 3.0 * 0.5
    np.testing.assert_allclose(mu[0, :2], expected_mu)
    np.testing.assert_allclose(sigma[0, :2], expected_sigma)
    np.testing.assert_allclose(shift[0, :2], -0.5)
    # zero climatological mean is unusable
    assert np.isnan(mu[0, 2]) and np.isnan(sigma[0, 2]) and np.isnan(shift[0, 2])


def test_distribution_parameters_floor(climatology):
    """Test the predicted mean and spread are bounded below."""
    regression = CSGDRegressionParameters(
        np.array([1.0, -5.0, 0.0, 0.0, 0.0, 0.0]), np.full((1, 3), 0.9)
    )
    mu, sigma, _ = CensoredShiftedGammaProbabilities.distribution_parameters(
        _summary([[0.0, 0.0, 0.0]]), climatology, regression
    )
    np.testing.assert_allclose(mu[0, :2], MIN_CSGD_PARAMETER)
    np.testing.assert_allclose(sigma[0, :2], MIN_CSGD_PARAMETER)


def test_exceedance_probabilities():
    """Test exceedance probabilities of the shifted Gamma distribution."""
    plugin = CensoredShiftedGammaProbabilities(THRESHOLDS)
    mu, sigma, shift = np.array([3.0]), np.array([2.0]), np.array([-0.5])
    result = plugin.exceedance_probabilities(mu, sigma, shift)
    expected = [
        stats.gamma.sf(threshold + 0.5, 2.25, scale=4.0 / 3.0)
        for threshold in THRESHOLDS
    ]
    np.testing.assert_allclose(result[:, 0], expected)


def test_probabilities(climatology, regression):
    """Test larger ensemble means give larger probabilities, and unusable
    points or points outside the mask are missing."""
    plugin = CensoredShiftedGammaProbabilities(THRESHOLDS)
    result = plugin.probabilities(
        _summary([[1.0, 6.0, 1.0]]),
        climatology,
        regression,
        valid_mask=np.array([[True, True, True]]),
    )
    assert result.dtype == np.float32
    assert np.all(result[:, 0, 1] > result[:, 0, 0])
    assert np.all(np.diff(result[:, 0, :2], axis=0) <= 0)
    assert np.all((result[:, 0, :2] >= 0) & (result[:, 0, :2] <= 1))
    np.testing.assert_array_equal(result[:, 0, 2], np.float32(MISSING_DATA_INDICATOR))

    masked = plugin.probabilities(
        _summary([[1.0, 6.0, 1.0]]),
        climatology,
        regression,
        valid_mask=np.array([[False, True, True]]),
    )
    np.testing.assert_array_equal(masked[:, 0, 0], np.float32(MISSING_DATA_INDICATOR))


def test_climatology_from_cubes():
    """Test a day is selected from daily fields, with days beyond the last
    held taking its values."""
    cubes = CubeList(
        set_up_table_cube(
            np.arange(3, dtype=np.float32)[:, np.newaxis, np.newaxis]
            * np.ones((3, 2, 2)),
            name,
        )
        for name in CLIMATOLOGY_NAMES
    )
    result = CSGDClimatology.from_cubes(cubes, 2)
    np.testing.assert_array_equal(result.mu, np.ones((2, 2)))
    result = CSGDClimatology.from_cubes(cubes, 366)
    np.testing.assert_array_equal(result.shift, np.full((2, 2), 2.0))


def test_process(climatology, regression):
    """Test the cube interface."""
    template = set_up_variable_cube(np.zeros((1, 3), dtype=np.float32))
    result = CensoredShiftedGammaProbabilities(THRESHOLDS).process(
        _summary([[1.0, 6.0, 1.0]]), climatology, regression, template
    )
    assert result.name() == PROBABILITY_NAMES["csgd"]
    assert result.shape == (3, 1, 3)
