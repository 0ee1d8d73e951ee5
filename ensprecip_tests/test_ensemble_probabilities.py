# (C) Crown copyright, Met Office. All rights reserved.
#
# This file is part of ensprecip and is released under a BSD 3-Clause license.
# See LICENSE in the root of the repository for full licensing details.
"""Unit tests for the ensemble_probabilities module."""

import numpy as np
import pytest

from ensprecip.constants import MISSING_DATA_INDICATOR, PRECIPITATION_NAME
from ensprecip.ensemble_probabilities import (
    EnsembleExceedanceProbabilities,
    exceedance_frequency,
    summarise_ensemble,
)
from ensprecip.metadata.probabilistic import PROBABILITY_NAMES
from ensprecip.synthetic_data.set_up_test_cubes import set_up_variable_cube

THRESHOLDS = (0.254, 1.0, 5.0)


@pytest.fixture
def members():
    """Four members at a 1x3 grid. The second point has one missing member
    and the third has none valid."""
    return np.array(
        [
            [[0.0, 2.0, np.nan]],
            [[1.0, np.nan, -1.0]],
            [[5.0, 0.0, np.nan]],
            [[6.0, 6.0, np.nan]],
        ],
        dtype=np.float32,
    )


def test_exceedance_frequency(members):
    """Test counts include amounts equal to the threshold and exclude
    missing members."""
    result = exceedance_frequency(members, THRESHOLDS)
    np.testing.assert_allclose(result[:, 0, 0], [0.75, 0.75, 0.5])
    np.testing.assert_allclose(result[:, 0, 1], [2 / 3, 2 / 3, 1 / 3])
    np.testing.assert_array_equal(result[:, 0, 2], np.float32(MISSING_DATA_INDICATOR))
    assert result.dtype == np.float32


def test_exceedance_frequency_mask(members):
    """Test points outside the mask are missing."""
    mask = np.array([[False, True, True]])
    result = exceedance_frequency(members, THRESHOLDS, valid_mask=mask)
    np.testing.assert_array_equal(result[:, 0, 0], np.float32(MISSING_DATA_INDICATOR))


def test_exceedance_frequency_monotonic():
    """Test probabilities do not increase with threshold."""
    rng = np.random.default_rng(1)
    members = rng.gamma(0.5, 4.0, size=(20, 6, 7))
    result = exceedance_frequency(members, THRESHOLDS)
    assert np.all(np.diff(result, axis=0) <= 0)


def test_summarise_ensemble(members):
    """Test the mean, population standard deviation and probability of
    precipitation over valid members."""
    result = summarise_ensemble(members)
    np.testing.assert_allclose(result.mean[0, :2], [3.0, 8.0 / 3.0])
    np.testing.assert_allclose(
        result.stddev[0, 0], np.std([0.0, 1.0, 5.0, 6.0]), rtol=1e-6
    )
    np.testing.assert_allclose(result.pop[0, :2], [0.75, 2 / 3])
    assert np.isnan(result.mean[0, 2])


def test_plugin(members):
    """Test the cube interface."""
    cube = set_up_variable_cube(members)
    result = EnsembleExceedanceProbabilities(THRESHOLDS, PROBABILITY_NAMES["raw"])(cube)
    assert result.name() == PROBABILITY_NAMES["raw"]
    assert result.units == "1"
    np.testing.assert_allclose(result.coord(PRECIPITATION_NAME).points, THRESHOLDS)
    assert result.coord("forecast_period") == cube.coord("forecast_period")
    np.testing.assert_allclose(result.data[:, 0, 0], [0.75, 0.75, 0.5])
