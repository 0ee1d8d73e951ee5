# (C) Crown copyright, Met Office. All rights reserved.
#
# This file is part of ensprecip and is released under a BSD 3-Clause license.
# See LICENSE in the root of the repository for full licensing details.
"""General ensprecip metadata utilities"""

from typing import Dict, List, Optional, Type, Union

import iris
import numpy as np
from cf_units import Unit
from iris.cube import Cube
from numpy import ndarray

from ensprecip.metadata.constants.attributes import (
    MANDATORY_ATTRIBUTE_DEFAULTS,
    MANDATORY_ATTRIBUTES,
)
from ensprecip.metadata.constants.time_types import TIME_COORDS


def create_new_diagnostic_cube(
    name: str,
    units: Union[Unit, str],
    template_cube: Cube,
    mandatory_attributes: Union[Dict[str, str], Dict],
    optional_attributes: Optional[Union[Dict[str, str], Dict]] = None,
    data: Optional[ndarray] = None,
    dtype: Type = np.float32,
) -> Cube:
    """
    Creates a new diagnostic cube with suitable metadata.

    Args:
        name:
            Standard or long name for output cube
        units:
            Units for output cube
        template_cube:
            Cube from which to copy dimensional and auxiliary coordinates
        mandatory_attributes:
            Dictionary containing values for the mandatory attributes
            "title", "source" and "institution".  These are overridden by
            values in the optional_attributes dictionary, if specified.
        optional_attributes:
            Dictionary of optional attribute names and values.
        data:
            Data array.  If not set, cube is filled with zeros.
        dtype:
            Datatype for the data.

    Returns:
        Cube with correct metadata to accommodate new diagnostic field

    Raises:
        ValueError: If a mandatory attribute is missing.
    """
    attributes = dict(mandatory_attributes)
    if optional_attributes is not None:
        attributes.update(optional_attributes)

    error_msg = ""
    for attr in MANDATORY_ATTRIBUTES:
        if attr not in attributes:
            error_msg += "{} attribute is required\n".format(attr)
    if error_msg:
        raise ValueError(error_msg)

    if data is None:
        data = np.zeros(template_cube.shape, dtype=dtype)
    else:
        data = np.asarray(data, dtype=dtype)

    aux_coords_and_dims, dim_coords_and_dims = [
        [
            (coord.copy(), template_cube.coord_dims(coord))
            for coord in getattr(template_cube, coord_type)
        ]
        for coord_type in ("aux_coords", "dim_coords")
    ]

    cube = iris.cube.Cube(
        data,
        units=units,
        attributes=attributes,
        dim_coords_and_dims=dim_coords_and_dims,
        aux_coords_and_dims=aux_coords_and_dims,
    )
    cube.rename(name)

    return cube


def generate_mandatory_attributes(diagnostic_cubes: List[Cube]) -> Dict[str, str]:
    """
    Function to generate mandatory attributes for new diagnostics that are
    generated from several input cubes.  If all input cubes have the same
    attribute use this, otherwise set a default value.

    Args:
        diagnostic_cubes:
            List of diagnostic cubes used in calculating the new diagnostic

    Returns:
        Dictionary of mandatory attribute "key": "value" pairs.
    """
    missing_value = object()
    attr_dicts = [cube.attributes for cube in diagnostic_cubes]
    attributes = MANDATORY_ATTRIBUTE_DEFAULTS.copy()
    for attr in MANDATORY_ATTRIBUTES:
        unique_values = {d.get(attr, missing_value) for d in attr_dicts}
        if len(unique_values) == 1 and missing_value not in unique_values:
            (attributes[attr],) = unique_values
    return attributes


def grid_template(cube: Cube) -> Cube:
    """A 2-D cube carrying the spatial and scalar coordinates of the input,
    with any leading dimensions removed.

    Args:
        cube:
            Cube whose last two dimensions are y and x.

    Returns:
        Copy of the first y-x slice without coordinates on the leading
        dimensions.
    """
    template = next(cube.slices([cube.coord(axis="y"), cube.coord(axis="x")]))
    for coord in template.coords(dimensions=()):
        if coord.name() not in TIME_COORDS:
            template.remove_coord(coord)
    return template.copy()
