# (C) Crown copyright, Met Office. All rights reserved.
#
# This file is part of ensprecip and is released under a BSD 3-Clause license.
# See LICENSE in the root of the repository for full licensing details.
"""Unit tests for the dressing module."""

import numpy as np
import pytest
from iris.cube import CubeList
from scipy import stats

from ensprecip.calibration.distributions import (
    DistributionParameters,
    ZeroInflatedGamma,
)
from ensprecip.calibration.dressing import (
    HIGHEST,
    INTERMEDIATE,
    KERNEL_NAMES,
    LOWEST,
    ClosestMemberHistogram,
    DressEnsembleProbabilities,
    DressingKernelParameters,
    GammaDressingKernel,
    GaussianDressingKernel,
    rank_classes,
)
from ensprecip.calibration.quantile_mapping import QuantileMapping
from ensprecip.constants import MISSING_DATA_INDICATOR
from ensprecip.metadata.probabilistic import PROBABILITY_NAMES
from ensprecip.synthetic_data.set_up_test_cubes import (
    set_up_table_cube,
    set_up_variable_cube,
)

THRESHOLDS = (0.254, 1.0, 5.0)


def _uniform_histogram(n_ranks, category_thresholds=(0.0, 2.0)):
    return ClosestMemberHistogram(
        np.full((n_ranks, len(category_thresholds)), 1.0 / n_ranks),
        category_thresholds,
    )


@pytest.fixture
def kernel_parameters():
    """Kernels for three amount bins, two mean categories and three rank
    classes, with a fraction of zeros identifying each bin, and three
    climatological probability of precipitation bins."""
    fraction_zeros = np.zeros((3, 2, 3))
    fraction_zeros[0] = 0.9
    fraction_zeros[1] = 0.5
    fraction_zeros[2] = 0.1
    fraction_zeros[2, 1, HIGHEST] = 0.2
    return DressingKernelParameters(
        precip_values=np.array([0.0, 1.0, 5.0]),
        gamma_shapes=np.full((3, 2, 3), 1.5),
        gamma_scales=np.full((3, 2, 3), 2.0),
        fraction_zeros=fraction_zeros,
        gamma_shape_fclimpop=np.array([1.0, 1.0, 1.0]),
        gamma_scale_fclimpop=np.array([1.0, 2.0, 3.0]),
        fraction_zeros_fclimpop=np.array([0.95, 0.8, 0.6]),
        climo_pop_thresholds=np.array([0.1, 0.3]),
    )


def test_rank_classes():
    """Test the lowest rank is always lowest and the last valid rank is
    highest."""
    result = rank_classes(4, np.array([4, 2, 1]))
    np.testing.assert_array_equal(
        result,
        [
            [LOWEST, LOWEST, LOWEST],
            [INTERMEDIATE, HIGHEST, INTERMEDIATE],
            [INTERMEDIATE, INTERMEDIATE, INTERMEDIATE],
            [HIGHEST, INTERMEDIATE, INTERMEDIATE],
        ],
    )


def test_histogram_validation():
    """Test inconsistent or invalid tables are rejected."""
    with pytest.raises(ValueError, match="2 categories but 3"):
        ClosestMemberHistogram(np.ones((4, 2)), [0.0, 1.0, 2.0])
    with pytest.raises(ValueError, match="must be 2-D"):
        ClosestMemberHistogram(np.ones(4), [0.0])
    with pytest.raises(ValueError, match="finite and >= 0"):
        ClosestMemberHistogram(-np.ones((4, 1)), [0.0])


def test_histogram_category():
    """Test ensemble means are assigned to categories by lower bound."""
    histogram = _uniform_histogram(2, (0.0, 1.0, 5.0))
    result = histogram.category(np.array([0.0, 0.5, 1.0, 7.0, np.nan]))
    np.testing.assert_array_equal(result, [0, 0, 1, 2, 0])


def test_histogram_weights():
    """Test weights of ranks beyond the valid members are dropped and the
    rest renormalised."""
    histogram = ClosestMemberHistogram(
        np.array([[0.4, 0.1], [0.2, 0.3], [0.4, 0.6]]), [0.0, 2.0]
    )
    result = histogram.weights(np.array([0, 1]), np.array([3, 2]))
    np.testing.assert_allclose(result, [[0.4, 0.25], [0.2, 0.75], [0.4, 0.0]])
    assert histogram.lookup_weights(2, 1) == 0.6


def test_histogram_from_cubes():
    """Test the histogram is read from named cubes."""
    cubes = CubeList(
        [
            set_up_table_cube(np.full((4, 2), 0.25), "closest_histogram"),
            set_up_table_cube(
                np.array([0.0, 2.0]), "precip_histogram_thresholds", "mm"
            ),
        ]
    )
    result = ClosestMemberHistogram.from_cubes(cubes)
    assert result.n_ranks == 4
    np.testing.assert_array_equal(result.category_thresholds, [0.0, 2.0])


def test_kernel_parameters_validation(kernel_parameters):
    """Test tables of the wrong shape are rejected."""
    with pytest.raises(ValueError, match="gamma_scales must be shaped"):
        DressingKernelParameters(
            kernel_parameters.precip_values,
            kernel_parameters.gamma_shapes,
            np.ones((2, 2, 3)),
            kernel_parameters.fraction_zeros,
            kernel_parameters.gamma_shape_fclimpop,
            kernel_parameters.gamma_scale_fclimpop,
            kernel_parameters.fraction_zeros_fclimpop,
            kernel_parameters.climo_pop_thresholds,
        )
    with pytest.raises(ValueError, match="must hold 3 values"):
        DressingKernelParameters(
            *(
                np.ones(2)
                if name == "fraction_zeros_fclimpop"
                else getattr(kernel_parameters, name)
                for name in KERNEL_NAMES
            )
        )


def test_gaussian_kernel():
    """Test the Normal kernel centred on each member."""
    members = np.array([[[0.0]], [[1.0]], [[10.0]]])
    result = GaussianDressingKernel().exceedance(members, None, None, 5.0)
    expected = [0.0, stats.norm.sf(4.0 / 0.65), stats.norm.sf(-5.0 / 4.25)]
    np.testing.assert_allclose(result[:, 0, 0], expected)


def test_gaussian_kernel_invalid():
    """Test a non-positive spread is rejected."""
    with pytest.raises(ValueError, match="offset must be positive"):
        GaussianDressingKernel(offset=0.0)


def test_gamma_kernel_indexing(kernel_parameters):
    """Test kernels are selected by member amount bin, mean category and
    rank class."""
    members = np.array([[[0.5, 2.0]], [[7.0, 7.0]]])
    rank_class = np.array([[[LOWEST, LOWEST]], [[HIGHEST, HIGHEST]]])
    category = np.array([[0, 1]])
    result = GammaDressingKernel(kernel_parameters).exceedance(
        members, rank_class, category, 10.0
    )

    def survival(amount):
        return stats.gamma.sf(amount, 1.5, scale=2.0)

    np.testing.assert_allclose(
        result[:, 0],
        [
            [0.1 * survival(9.5), 0.5 * survival(8.0)],
            [0.9 * survival(3.0), 0.8 * survival(3.0)],
        ],
    )


def test_gamma_kernel_offset_from_member(kernel_parameters):
    """Test the kernel is evaluated at the excess of the threshold over the
    member, so members at or above the threshold always exceed it."""
    members = np.array([[[0.0, 2.0, 6.0]]])
    rank_class = np.full(members.shape, INTERMEDIATE)
    result = GammaDressingKernel(kernel_parameters).exceedance(
        members, rank_class, np.array([[0, 0, 0]]), 6.0
    )
    np.testing.assert_allclose(
        result[0, 0],
        [
            0.1 * stats.gamma.sf(6.0, 1.5, scale=2.0),
            0.5 * stats.gamma.sf(4.0, 1.5, scale=2.0),
            1.0,
        ],
    )


def test_gamma_kernel_unusable(kernel_parameters):
    """Test unusable kernels give zero probability."""
    kernel_parameters.gamma_shapes[1] = np.nan
    result = GammaDressingKernel(kernel_parameters).exceedance(
        np.array([[[2.0]]]), np.array([[[LOWEST]]]), np.array([[0]]), 1.0
    )
    assert result[0, 0, 0] == 0.0


def test_gamma_kernel_zero_mean(kernel_parameters):
    """Test zero ensemble mean kernels are selected by climatological
    probability of precipitation."""
    result = GammaDressingKernel(kernel_parameters).zero_mean_exceedance(
        np.array([[0.05, 0.1, 0.5]]), 1.0
    )
    expected = [
        0.05 * stats.gamma.sf(1.0, 1.0, scale=1.0),
        0.2 * stats.gamma.sf(1.0, 1.0, scale=2.0),
        0.4 * stats.gamma.sf(1.0, 1.0, scale=3.0),
    ]
    np.testing.assert_allclose(result[0], expected)
    lowest = GammaDressingKernel(kernel_parameters).zero_mean_exceedance(
        None, 1.0, shape=(1, 2)
    )
    np.testing.assert_allclose(lowest, expected[0])


@pytest.fixture
def members():
    """Four members at a 1x4 grid: a wet point, a point with a missing
    member, a dry point and a point with no valid members."""
    return np.array(
        [
            [[6.0, 2.0, 0.0, np.nan]],
            [[0.5, np.nan, 0.0, np.nan]],
            [[2.0, 4.0, 0.0, -1.0]],
            [[0.0, 0.5, 0.0, np.nan]],
        ],
        dtype=np.float32,
    )


def test_dress_gaussian(members):
    """Test equal weights give the mean of the member kernels, in any member
    order, and that missing members are dropped."""
    plugin = DressEnsembleProbabilities(
        _uniform_histogram(4), GaussianDressingKernel(), THRESHOLDS
    )
    result = plugin.dress(members)
    kernel = GaussianDressingKernel()
    for index, threshold in enumerate(THRESHOLDS):
        expected_wet = kernel.exceedance(
            np.array([0.0, 0.5, 2.0, 6.0]), None, None, threshold
        ).mean()
        expected_missing = kernel.exceedance(
            np.array([0.5, 2.0, 4.0]), None, None, threshold
        ).mean()
        np.testing.assert_allclose(result[index, 0, 0], expected_wet, rtol=1e-6)
        np.testing.assert_allclose(result[index, 0, 1], expected_missing, rtol=1e-6)
    np.testing.assert_array_equal(result[:, 0, 2], 0.0)
    np.testing.assert_array_equal(result[:, 0, 3], np.float32(MISSING_DATA_INDICATOR))
    assert result.dtype == np.float32


def test_dress_monotonic_and_bounded():
    """Test dressed probabilities lie in [0, 1] and do not increase with
    threshold."""
    rng = np.random.default_rng(3)
    members = rng.gamma(0.6, 3.0, size=(8, 5, 6)) * (rng.random((8, 5, 6)) > 0.3)
    plugin = DressEnsembleProbabilities(
        _uniform_histogram(8), GaussianDressingKernel(), (0.254, 1, 2.5, 5, 10, 25)
    )
    result = plugin.dress(members)
    assert np.all((result >= 0) & (result <= 1))
    assert np.all(np.diff(result, axis=0) <= 1e-7)


def test_dress_gamma_zero_mean(members, kernel_parameters):
    """Test the climatological kernel is used where the ensemble mean is
    zero."""
    plugin = DressEnsembleProbabilities(
        _uniform_histogram(4), GammaDressingKernel(kernel_parameters), THRESHOLDS
    )
    pop = np.array([[0.0, 0.0, 0.5, 0.0]])
    result = plugin.dress(members, climatological_pop=pop)
    expected = GammaDressingKernel(kernel_parameters).zero_mean_exceedance(
        np.array([0.5]), 1.0
    )
    np.testing.assert_allclose(result[1, 0, 2], expected[0], rtol=1e-6)
    assert np.all(result[:, 0, :2] > 0)


def test_dress_mask(members):
    """Test points outside the mask are missing."""
    plugin = DressEnsembleProbabilities(
        _uniform_histogram(4), GaussianDressingKernel(), THRESHOLDS
    )
    result = plugin.dress(members, valid_mask=np.array([[False, True, True, True]]))
    np.testing.assert_array_equal(result[:, 0, 0], np.float32(MISSING_DATA_INDICATOR))


def test_dress_rank_mismatch(members):
    """Test an error is raised if the histogram does not have one rank per
    member."""
    plugin = DressEnsembleProbabilities(
        _uniform_histogram(5), GaussianDressingKernel(), THRESHOLDS
    )
    with pytest.raises(ValueError, match="5 ranks but the ensemble has 4"):
        plugin.dress(members)


def test_dress_chunking(members):
    """Test the result does not depend on the number of rows per chunk."""
    data = np.concatenate([members, members[:, :, ::-1]], axis=1)
    whole = DressEnsembleProbabilities(
        _uniform_histogram(4), GaussianDressingKernel(), THRESHOLDS
    ).dress(data)
    chunked = DressEnsembleProbabilities(
        _uniform_histogram(4), GaussianDressingKernel(), THRESHOLDS, rows_per_chunk=1
    ).dress(data)
    np.testing.assert_array_equal(whole, chunked)


def test_process(members):
    """Test the cube interface."""
    cube = set_up_variable_cube(members)
    result = DressEnsembleProbabilities(
        _uniform_histogram(4), GaussianDressingKernel(), THRESHOLDS
    )(cube)
    assert result.name() == PROBABILITY_NAMES["dressed"]
    assert result.shape == (3, 1, 4)
    assert result.coord("time") == cube.coord("time")


def test_mapped_then_dressed():
    """Test a 50 member ensemble all at 5 mm, mapped to 6 mm, is dressed into
    a spread distribution with more mass above 5 mm than above 10 mm."""
    members = np.full((50, 1, 1), 5.0, dtype=np.float32)
    forecast = DistributionParameters(
        np.full((1, 1), 0.3), np.full((1, 1), 0.8), np.full((1, 1), 4.0)
    )
    analysis = DistributionParameters(
        np.full((1, 1), 0.3), np.full((1, 1), 0.8), np.full((1, 1), 4.8)
    )
    mapped = QuantileMapping(ZeroInflatedGamma(), stencil_size=1).map_members(
        members, forecast, analysis
    )
    np.testing.assert_allclose(mapped, 6.0, rtol=1e-5)

    result = DressEnsembleProbabilities(
        _uniform_histogram(50), GaussianDressingKernel(), (5.0, 10.0)
    ).dress(mapped)
    sigma = 0.25 + 0.4 * 6.0
    np.testing.assert_allclose(
        result[:, 0, 0], stats.norm.sf([5.0, 10.0], loc=6.0, scale=sigma), rtol=1e-4
    )
    assert 0 < result[1, 0, 0] < result[0, 0, 0] < 1
