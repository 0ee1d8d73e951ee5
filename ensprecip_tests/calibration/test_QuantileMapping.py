# (C) Crown copyright, Met Office. All rights reserved.
#
# This file is part of ensprecip and is released under a BSD 3-Clause license.
# See LICENSE in the root of the repository for full licensing details.
"""Unit tests for the QuantileMapping plugin."""

import numpy as np
import pytest

from ensprecip.calibration.distributions import (
    DistributionParameters,
    EmpiricalCDF,
    EmpiricalDistribution,
    ZeroInflatedGamma,
)
from ensprecip.calibration.quantile_mapping import QuantileMapping
from ensprecip.constants import MISSING_DATA_INDICATOR
from ensprecip.synthetic_data.set_up_test_cubes import set_up_variable_cube


def _pooled(fraction_zero, shape, scale, grid=(2, 3)):
    return DistributionParameters(
        np.full(grid, fraction_zero), np.full(grid, shape), np.full(grid, scale)
    )


@pytest.fixture
def members():
    """Four members on a 2x3 grid, including zero and missing values."""
    data = np.array(
        [
            [[0.0, 1.0, 2.0], [4.0, 8.0, 0.5]],
            [[3.0, 0.0, 1.5], [np.nan, 2.5, 6.0]],
            [[0.2, 0.7, 0.0], [1.0, -1.0, 3.0]],
            [[5.0, 9.0, 0.1], [0.3, 0.0, 2.0]],
        ],
        dtype=np.float32,
    )
    return data


def test_identical_distributions(members):
    """Test that mapping between identical distributions changes nothing."""
    parameters = _pooled(0.3, 0.8, 4.0)
    result = QuantileMapping(ZeroInflatedGamma(), stencil_size=1).map_members(
        members, parameters, parameters
    )
    valid = np.isfinite(members) & (members >= 0)
    np.testing.assert_allclose(result[valid], members[valid], rtol=1e-5)
    np.testing.assert_array_equal(result[~valid], np.float32(MISSING_DATA_INDICATOR))
    assert result.dtype == np.float32


def test_scaled_distribution(members):
    """Test that doubling the Gamma scale doubles positive amounts."""
    result = QuantileMapping(ZeroInflatedGamma(), stencil_size=1).map_members(
        members, _pooled(0.3, 0.8, 4.0), _pooled(0.3, 0.8, 8.0)
    )
    valid = np.isfinite(members) & (members >= 0)
    np.testing.assert_allclose(result[valid], 2 * members[valid], rtol=1e-5)


def test_zero_stays_zero(members):
    """Test zero forecasts stay zero even when the analysis is rarely dry."""
    result = QuantileMapping(ZeroInflatedGamma(), stencil_size=1).map_members(
        members, _pooled(0.6, 0.8, 4.0), _pooled(0.05, 0.8, 4.0)
    )
    np.testing.assert_array_equal(result[members == 0], 0.0)


def test_unusable_distribution(members):
    """Test that positive amounts map to zero where either distribution has
    no usable positive part."""
    forecast = _pooled(0.3, 0.8, 4.0)
    analysis = _pooled(0.3, 0.8, 4.0)
    analysis.shape[0, 1] = np.nan
    forecast.fraction_zero[1, 2] = 1.0
    result = QuantileMapping(ZeroInflatedGamma(), stencil_size=1).map_members(
        members, forecast, analysis
    )
    np.testing.assert_array_equal(result[:, 0, 1], 0.0)
    np.testing.assert_array_equal(result[:, 1, 2], 0.0)


def test_non_exchangeable(members):
    """Test member-specific forecast parameters are applied to the
    pseudo-members derived from each member."""
    forecast = DistributionParameters(
        np.full((2, 2, 3), 0.3),
        np.full((2, 2, 3), 0.8),
        np.stack([np.full((2, 3), 4.0), np.full((2, 3), 2.0)]),
    )
    analysis = _pooled(0.3, 0.8, 4.0)
    result = QuantileMapping(ZeroInflatedGamma(), stencil_size=2).map_members(
        members, forecast, analysis, exchangeable=False
    )
    # pseudo-members 0 and 1 derive from member 0, whose scale matches the
    # analysis; pseudo-members 2 and 3 from member 1, whose scale is half
    np.testing.assert_allclose(result[:2, 0], members[:2, 0], rtol=1e-5)
    np.testing.assert_allclose(result[2:, 0], 2 * members[2:, 0], rtol=1e-5)


def test_non_exchangeable_requires_member_parameters(members):
    """Test an error is raised if pooled parameters are given for a
    non-exchangeable ensemble."""
    parameters = _pooled(0.3, 0.8, 4.0)
    with pytest.raises(ValueError, match="Member-specific forecast parameters"):
        QuantileMapping(ZeroInflatedGamma(), stencil_size=2).map_members(
            members, parameters, parameters, exchangeable=False
        )


def test_stencil_size_mismatch(members):
    """Test an error is raised if the ensemble is not a multiple of the
    stencil size."""
    parameters = _pooled(0.3, 0.8, 4.0)
    with pytest.raises(ValueError, match="not a multiple"):
        QuantileMapping(ZeroInflatedGamma(), stencil_size=3).map_members(
            members, parameters, parameters
        )


def test_chunking_does_not_change_result(members):
    """Test the result is independent of the number of rows per chunk."""
    forecast = _pooled(0.3, 0.8, 4.0)
    analysis = _pooled(0.2, 1.1, 3.0)
    chunked = QuantileMapping(
        ZeroInflatedGamma(), stencil_size=1, rows_per_chunk=1
    ).map_members(members, forecast, analysis)
    whole = QuantileMapping(ZeroInflatedGamma(), stencil_size=1).map_members(
        members, forecast, analysis
    )
    np.testing.assert_array_equal(chunked, whole)


def test_empirical(members):
    """Test mapping with tabulated CDFs."""
    thresholds = [0.0, 1.0, 2.0, 10.0]
    forecast = EmpiricalDistribution(np.tile([0.3, 0.5, 0.7, 1.0], (2, 3, 1)))
    analysis = EmpiricalDistribution(np.tile([0.1, 0.5, 0.7, 1.0], (2, 3, 1)))
    result = QuantileMapping(EmpiricalCDF(thresholds), stencil_size=1).map_members(
        members, forecast, analysis
    )
    # 0.5 mm is at cumulative probability 0.4, which the analysis reaches at
    # 0.75 mm; amounts above 1 mm share the same CDF and are unchanged
    np.testing.assert_allclose(result[0, 1, 2], 0.75)
    np.testing.assert_allclose(result[0, 1, 0], 4.0)
    assert result[1, 1, 0] == np.float32(MISSING_DATA_INDICATOR)


def test_process(members):
    """Test the cube interface keeps the metadata and applies the mask."""
    cube = set_up_variable_cube(members)
    parameters = _pooled(0.3, 0.8, 4.0)
    mask = np.array([[True, True, False], [True, True, True]])
    result = QuantileMapping(ZeroInflatedGamma(), stencil_size=1).process(
        cube, parameters, parameters, valid_mask=mask
    )
    assert result.name() == cube.name()
    assert result.coord("realization") == cube.coord("realization")
    np.testing.assert_array_equal(
        result.data[:, 0, 2], np.float32(MISSING_DATA_INDICATOR)
    )
    np.testing.assert_allclose(result.data[0, 0, 1], 1.0, rtol=1e-5)
