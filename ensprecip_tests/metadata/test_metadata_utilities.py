# (C) Crown copyright, Met Office. All rights reserved.
#
# This file is part of ensprecip and is released under a BSD 3-Clause license.
# See LICENSE in the root of the repository for full licensing details.
"""Tests for the ensprecip.metadata.utilities and probabilistic modules"""

import numpy as np
import pytest

from ensprecip.constants import PRECIPITATION_NAME
from ensprecip.metadata.constants.attributes import MANDATORY_ATTRIBUTE_DEFAULTS
from ensprecip.metadata.probabilistic import (
    PROBABILITY_NAMES,
    create_probability_cube,
    threshold_coord,
)
from ensprecip.metadata.utilities import (
    create_new_diagnostic_cube,
    generate_mandatory_attributes,
    grid_template,
)
from ensprecip.synthetic_data.set_up_test_cubes import set_up_variable_cube


@pytest.fixture
def cube():
    return set_up_variable_cube(
        np.ones((3, 4, 5), dtype=np.float32),
        attributes={"title": "Ensemble", "source": "model", "institution": "Met"},
    )


def test_create_new_diagnostic_cube(cube):
    """Test the new cube copies coordinates and takes the requested dtype."""
    result = create_new_diagnostic_cube(
        "valid_data_mask", "1", cube, MANDATORY_ATTRIBUTE_DEFAULTS, dtype=np.int8
    )
    assert result.name() == "valid_data_mask"
    assert result.dtype == np.int8
    assert result.coords() == cube.coords()
    assert result.attributes == MANDATORY_ATTRIBUTE_DEFAULTS


def test_create_new_diagnostic_cube_missing_attribute(cube):
    """Test an error is raised if a mandatory attribute is missing."""
    with pytest.raises(ValueError, match="institution attribute is required"):
        create_new_diagnostic_cube(
            "mean", "mm", cube, {"title": "a", "source": "b"}
        )


def test_generate_mandatory_attributes(cube):
    """Test shared attributes are kept and differing ones set to defaults."""
    other = cube.copy()
    other.attributes["title"] = "Other"
    result = generate_mandatory_attributes([cube, other])
    assert result == {"title": "unknown", "source": "model", "institution": "Met"}


def test_grid_template(cube):
    """Test the template is a single 2-D slice keeping time coordinates."""
    result = grid_template(cube)
    assert result.shape == (4, 5)
    assert not result.coords("realization")
    assert result.coord("time") == cube.coord("time")
    assert result.coord("forecast_period") == cube.coord("forecast_period")


def test_threshold_coord():
    """Test the threshold coordinate metadata."""
    result = threshold_coord([0.254, 1.0])
    assert result.name() == PRECIPITATION_NAME
    assert result.var_name == "threshold"
    assert result.units == "mm"
    assert result.dtype == np.float32
    assert result.attributes["spp__relative_to_threshold"] == (
        "greater_than_or_equal_to"
    )


def test_create_probability_cube(cube):
    """Test a probability cube is built on the template grid."""
    template = grid_template(cube)
    data = np.full((2, 4, 5), 0.5)
    result = create_probability_cube(
        PROBABILITY_NAMES["raw"], template, [1.0, 5.0], data
    )
    assert result.name() == PROBABILITY_NAMES["raw"]
    assert result.shape == (2, 4, 5)
    assert result.dtype == np.float32
    assert result.coord_dims(PRECIPITATION_NAME) == (0,)
    assert result.coord("time") == cube.coord("time")
    assert result.attributes == MANDATORY_ATTRIBUTE_DEFAULTS


@pytest.mark.parametrize(
    "shape, match", [((4, 5), "must be 2-D"), ((3, 4, 5), "Probability data shape")]
)
def test_create_probability_cube_errors(cube, shape, match):
    """Test mismatched templates and data are rejected."""
    template = cube if len(shape) == 2 else grid_template(cube)
    with pytest.raises(ValueError, match=match):
        create_probability_cube("probability", template, [1.0, 5.0], np.zeros(shape))
