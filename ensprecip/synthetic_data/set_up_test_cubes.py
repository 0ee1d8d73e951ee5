# (C) Crown copyright, Met Office. All rights reserved.
#
# This file is part of ensprecip and is released under a BSD 3-Clause license.
# See LICENSE in the root of the repository for full licensing details.
"""
Functions to set up precipitation, probability, mask and lookup-table cubes
for unit tests.  Standardises time units and spatial coordinates, including
coordinate order expected by ensprecip plugins.
"""

from datetime import datetime
from typing import Dict, List, Optional, Sequence, Tuple, Union

import numpy as np
from cf_units import date2num
from iris.coord_systems import GeogCS
from iris.coords import DimCoord
from iris.cube import Cube
from numpy import ndarray

from ensprecip.constants import (
    MASK_NAME,
    PRECIPITATION_NAME,
    PRECIPITATION_UNITS,
)
from ensprecip.metadata.constants import FLOAT_DTYPE
from ensprecip.metadata.constants.time_types import TIME_COORDS
from ensprecip.metadata.probabilistic import create_probability_cube

GLOBAL_GRID_CCRS = GeogCS(6371229.0)

#: Grid spacing (degrees) of the analysis grid.
DEFAULT_GRID_SPACING = 0.125

#: South west corner (latitude, longitude) of the analysis grid.
DEFAULT_DOMAIN_CORNER = (25.0, -125.0)

DEFAULT_FRT = datetime(2017, 11, 10, 0, 0)


def construct_yx_coords(
    ypoints: int,
    xpoints: int,
    grid_spacing: float = DEFAULT_GRID_SPACING,
    domain_corner: Tuple[float, float] = DEFAULT_DOMAIN_CORNER,
) -> Tuple[DimCoord, DimCoord]:
    """
    Construct latitude / longitude dimension coordinates

    Args:
        ypoints:
            Number of grid points required along the y-axis
        xpoints:
            Number of grid points required along the x-axis
        grid_spacing:
            Grid resolution in degrees.
        domain_corner:
            Bottom left corner of grid domain (latitude, longitude).

    Returns:
        Tuple containing y and x iris.coords.DimCoords
    """
    y_stop = domain_corner[0] + grid_spacing * (ypoints - 1)
    x_stop = domain_corner[1] + grid_spacing * (xpoints - 1)
    y_coord = DimCoord(
        np.linspace(domain_corner[0], y_stop, ypoints, dtype=FLOAT_DTYPE),
        "latitude",
        units="degrees",
        coord_system=GLOBAL_GRID_CCRS,
    )
    x_coord = DimCoord(
        np.linspace(domain_corner[1], x_stop, xpoints, dtype=FLOAT_DTYPE),
        "longitude",
        units="degrees",
        coord_system=GLOBAL_GRID_CCRS,
    )
    return y_coord, x_coord


def _create_time_point(time: datetime) -> int:
    """Returns a coordinate point with appropriate units and datatype
    from a datetime.datetime instance."""
    coord_spec = TIME_COORDS["time"]
    point = date2num(time, coord_spec.units, coord_spec.calendar)
    return np.around(point).astype(coord_spec.dtype)


def construct_scalar_time_coords(
    time: datetime,
    time_bounds: Optional[Sequence[datetime]] = None,
    frt: datetime = DEFAULT_FRT,
) -> List[Tuple[DimCoord, None]]:
    """
    Construct scalar time coordinates as aux_coord list

    Args:
        time:
            Single time point
        time_bounds:
            Lower and upper bound on time point, if required
        frt:
            Single forecast reference time point.

    Returns:
        List of iris.coords.DimCoord instances with the associated "None"
        dimension (format required by iris.cube.Cube initialisation).

    Raises:
        ValueError: if the time precedes the forecast reference time or lies
            outside its bounds
    """
    time_point_seconds = _create_time_point(time)
    reference_point_seconds = _create_time_point(frt)
    if time_point_seconds < reference_point_seconds:
        raise ValueError("Cannot set up cube with negative forecast period")

    fp_coord_spec = TIME_COORDS["forecast_period"]
    fp_point_seconds = (time_point_seconds - reference_point_seconds).astype(
        fp_coord_spec.dtype
    )

    bounds = None
    fp_bounds = None
    if time_bounds is not None:
        lower_bound = _create_time_point(time_bounds[0])
        upper_bound = _create_time_point(time_bounds[1])
        bounds = np.array(
            [min(lower_bound, upper_bound), max(lower_bound, upper_bound)]
        )
        if time_point_seconds < bounds[0] or time_point_seconds > bounds[1]:
            raise ValueError(
                "Time point {} not within bounds {}-{}".format(
                    time, time_bounds[0], time_bounds[1]
                )
            )
        fp_bounds = (bounds - reference_point_seconds).astype(fp_coord_spec.dtype)

    time_coord = DimCoord(
        time_point_seconds, "time", bounds=bounds, units=TIME_COORDS["time"].units
    )
    frt_coord = DimCoord(
        reference_point_seconds,
        "forecast_reference_time",
        units=TIME_COORDS["forecast_reference_time"].units,
    )
    fp_coord = DimCoord(
        fp_point_seconds, "forecast_period", bounds=fp_bounds, units=fp_coord_spec.units
    )
    return [(time_coord, None), (frt_coord, None), (fp_coord, None)]


def set_up_variable_cube(
    data: ndarray,
    name: str = PRECIPITATION_NAME,
    units: str = PRECIPITATION_UNITS,
    realizations: Optional[Union[List[int], ndarray]] = None,
    time: datetime = datetime(2017, 11, 10, 12, 0),
    time_bounds: Optional[Sequence[datetime]] = None,
    frt: datetime = DEFAULT_FRT,
    attributes: Optional[Dict[str, str]] = None,
    grid_spacing: float = DEFAULT_GRID_SPACING,
    domain_corner: Tuple[float, float] = DEFAULT_DOMAIN_CORNER,
) -> Cube:
    """
    Set up a gridded cube of a single variable with an optional leading
    realization dimension and scalar time coordinates.

    Args:
        data:
            2D (y-x ordered) or 3D (realization-y-x ordered) array of data
            to put into the cube.
        name:
            Variable name (standard / long)
        units:
            Variable units
        realizations:
            List of forecast realizations.  If not present, taken from the
            leading dimension of the input data array (if 3D).
        time:
            Single cube validity time
        time_bounds:
            Lower and upper bound on time point, if required
        frt:
            Single cube forecast reference time.
        attributes:
            Optional cube attributes.
        grid_spacing:
            Grid resolution in degrees.
        domain_corner:
            Bottom left corner of the grid (latitude, longitude).

    Returns:
        Cube containing a single gridded variable field

    Raises:
        ValueError: If the data are not 2D or 3D, or the number of
            realizations does not match the data.
    """
    if data.ndim not in (2, 3):
        raise ValueError(f"Expected 2 or 3 dimensions on input data: got {data.ndim}")
    if data.dtype.kind == "f":
        data = data.astype(FLOAT_DTYPE)
    y_coord, x_coord = construct_yx_coords(
        data.shape[-2], data.shape[-1], grid_spacing, domain_corner
    )
    dim_coords = [(y_coord, data.ndim - 2), (x_coord, data.ndim - 1)]
    if data.ndim == 3:
        if realizations is None:
            realizations = np.arange(data.shape[0])
        if len(realizations) != data.shape[0]:
            raise ValueError(
                f"Cannot generate {len(realizations)} realizations with data "
                f"of length {data.shape[0]}"
            )
        dim_coords.insert(
            0,
            (
                DimCoord(
                    np.array(realizations, dtype=np.int32), "realization", units="1"
                ),
                0,
            ),
        )

    cube = Cube(
        data,
        units=units,
        attributes=dict(attributes) if attributes else {},
        dim_coords_and_dims=dim_coords,
        aux_coords_and_dims=construct_scalar_time_coords(time, time_bounds, frt),
    )
    cube.rename(name)
    return cube


def set_up_probability_cube(
    data: ndarray,
    thresholds: Sequence[float],
    name: str = "climatological_probability_of_precipitation_above_threshold",
    **kwargs,
) -> Cube:
    """
    Set up a (threshold, y, x) probability cube.

    Args:
        data:
            3D (threshold-y-x ordered) array of probabilities.
        thresholds:
            Precipitation amounts in mm.
        name:
            Probability cube name.
        **kwargs:
            Passed to set_up_variable_cube.

    Returns:
        Probability cube with a leading threshold coordinate.
    """
    template = set_up_variable_cube(data[0], name=name, units="1", **kwargs)
    return create_probability_cube(
        name, template, thresholds, data, attributes=template.attributes
    )


def set_up_mask_cube(mask: ndarray, **kwargs) -> Cube:
    """Set up an int8 valid-data mask cube, 1 marking in-domain points."""
    return set_up_variable_cube(
        np.asarray(mask).astype(np.int8), name=MASK_NAME, units="1", **kwargs
    )


def set_up_table_cube(
    data: ndarray,
    name: str,
    units: str = "1",
    dim_names: Optional[Sequence[str]] = None,
    dim_points: Optional[Dict[str, Sequence[float]]] = None,
) -> Cube:
    """
    Set up a lookup-table cube with no spatial coordinates.

    Args:
        data:
            Table values.
        name:
            Table name.
        units:
            Table units.
        dim_names:
            Long names for each dimension. Defaults to "index_0", "index_1"...
        dim_points:
            Optional points for named dimensions. Other dimensions are
            indexed from zero.

    Returns:
        Table cube.
    """
    data = np.asarray(data)
    if data.dtype.kind == "f":
        data = data.astype(FLOAT_DTYPE)
    if dim_names is None:
        dim_names = [f"index_{dim}" for dim in range(data.ndim)]
    dim_points = dim_points or {}
    dim_coords = []
    for dim, dim_name in enumerate(dim_names):
        if dim_name in dim_points:
            points = np.array(dim_points[dim_name], dtype=FLOAT_DTYPE)
        else:
            points = np.arange(data.shape[dim], dtype=np.int32)
        dim_coords.append((DimCoord(points, long_name=dim_name, units="1"), dim))
    return Cube(data, long_name=name, units=units, dim_coords_and_dims=dim_coords)
