# (C) Crown copyright, Met Office. All rights reserved.
#
# This file is part of ensprecip and is released under a BSD 3-Clause license.
# See LICENSE in the root of the repository for full licensing details.
"""Utilities for constructing ensprecip probabilistic metadata"""

from typing import Dict, Optional, Sequence

import numpy as np
from iris.coords import DimCoord
from iris.cube import Cube
from numpy import ndarray

from ensprecip.constants import PRECIPITATION_NAME, PRECIPITATION_UNITS
from ensprecip.metadata.constants import (
    FLOAT_DTYPE,
    RELATIVE_TO_THRESHOLD,
    THRESHOLD_VAR_NAME,
)
from ensprecip.metadata.constants.attributes import MANDATORY_ATTRIBUTE_DEFAULTS

PROBABILITY_NAMES = {
    "raw": "raw_ensemble_probability_of_precipitation_above_threshold",
    "quantile_mapped": "quantile_mapped_probability_of_precipitation_above_threshold",
    "dressed": "dressed_probability_of_precipitation_above_threshold",
    "csgd": "csgd_probability_of_precipitation_above_threshold",
    "climatological": "climatological_probability_of_precipitation_above_threshold",
}


def threshold_coord(thresholds: Sequence[float]) -> DimCoord:
    """Threshold coordinate for exceedance probabilities of precipitation.

    Args:
        thresholds:
            Increasing precipitation amounts in mm.

    Returns:
        Coordinate named after the precipitation diagnostic, with var_name
        "threshold".
    """
    return DimCoord(
        np.array(thresholds, dtype=FLOAT_DTYPE),
        long_name=PRECIPITATION_NAME,
        var_name=THRESHOLD_VAR_NAME,
        units=PRECIPITATION_UNITS,
        attributes={"spp__relative_to_threshold": RELATIVE_TO_THRESHOLD},
    )


def create_probability_cube(
    name: str,
    template: Cube,
    thresholds: Sequence[float],
    data: ndarray,
    attributes: Optional[Dict[str, str]] = None,
) -> Cube:
    """Create a (threshold, y, x) probability cube on the grid of a 2-D
    template.

    Args:
        name:
            Long name for the cube.
        template:
            2-D cube whose spatial and scalar coordinates are copied.
        thresholds:
            Threshold values matching the leading dimension of data.
        data:
            Probabilities, shaped (threshold, y, x).
        attributes:
            Attributes for the new cube. Defaults to the mandatory
            attribute defaults.

    Returns:
        The probability cube.

    Raises:
        ValueError: If the template is not 2-D or the data shape does not
            match.
    """
    if template.ndim != 2:
        raise ValueError(f"Template cube must be 2-D, got {template.ndim} dimensions")
    expected = (len(thresholds),) + template.shape
    if data.shape != expected:
        raise ValueError(f"Probability data shape {data.shape} != {expected}")

    dim_coords = [(threshold_coord(thresholds), 0)]
    dim_coords.extend(
        (coord.copy(), template.coord_dims(coord)[0] + 1)
        for coord in template.dim_coords
    )
    aux_coords = [
        (coord.copy(), tuple(dim + 1 for dim in template.coord_dims(coord)))
        for coord in template.aux_coords
    ]
    if attributes is None:
        attributes = MANDATORY_ATTRIBUTE_DEFAULTS.copy()
    return Cube(
        np.asarray(data, dtype=FLOAT_DTYPE),
        long_name=name,
        units="1",
        attributes=attributes,
        dim_coords_and_dims=dim_coords,
        aux_coords_and_dims=aux_coords,
    )
