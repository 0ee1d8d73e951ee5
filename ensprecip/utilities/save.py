# (C) Crown copyright, Met Office. All rights reserved.
#
# This file is part of ensprecip and is released under a BSD 3-Clause license.
# See LICENSE in the root of the repository for full licensing details.
"""Module for saving netcdf cubes with desired attribute types."""

import os
from pathlib import Path
from typing import List, Union

import cf_units
import iris
import iris.fileformats.netcdf
import numpy as np
from iris.coords import Coord
from iris.cube import Cube, CubeList

from ensprecip.metadata.constants import FLOAT_DTYPE
from ensprecip.metadata.constants.time_types import TIME_COORDS

GLOBAL_KEYS = ["title", "source", "Conventions", "institution", "history"]


def _dtype_errors(obj: Union[Cube, Coord]) -> List[str]:
    """Describe any breach of the float32 and time coordinate dtype
    conventions for a cube or coordinate."""
    if obj.name() in TIME_COORDS:
        required = TIME_COORDS[obj.name()].dtype
    else:
        required = FLOAT_DTYPE
    arrays = [obj.points, obj.bounds] if isinstance(obj, Coord) else [obj.core_data()]
    errors = []
    for array in arrays:
        if array is None:
            continue
        if obj.name() in TIME_COORDS or np.issubdtype(array.dtype, np.floating):
            if array.dtype != required:
                errors.append(
                    f"{obj.name()} does not have required dtype.\n"
                    f"Expected: {np.dtype(required)}, Actual: {array.dtype}"
                )
    return errors


def _check_metadata(cube: Cube) -> None:
    """
    Checks cube metadata that needs to be correct to guarantee data integrity

    Args:
        cube:
            Cube to be checked

    Raises:
        ValueError: if time coordinates or float data do not have the
            required datatypes
        ValueError: if cube dataset has unknown units; because this may cause
            misinterpretation on "load"
    """
    errors = _dtype_errors(cube)
    for coord in cube.coords():
        errors.extend(_dtype_errors(coord))
    if errors:
        raise ValueError("\n".join(errors))
    if cf_units.Unit(cube.units).is_unknown():
        raise ValueError("{} has unknown units".format(cube.name()))


def save_netcdf(
    cubelist: Union[Cube, CubeList],
    filename: Union[str, Path],
    compression_level: int = 1,
) -> None:
    """Save the input Cube or CubeList as a NetCDF file and check metadata
    where required for integrity.

    Args:
        cubelist:
            Cube or list of cubes to be saved
        filename:
            Filename to save input cube(s)
        compression_level:
            1-9 to specify compression level, or 0 to not compress (default compress
            with complevel 1)

    Raises:
        ValueError: If the compression level is out of range.
    """
    if isinstance(cubelist, Cube):
        cubelist = CubeList([cubelist])
    elif not isinstance(cubelist, CubeList):
        cubelist = CubeList(cubelist)

    for cube in cubelist:
        _check_metadata(cube)

    # chunk by xy slice (eg. 1, 970, 1042) when all cubes share a layout
    chunksizes = None
    if len({cube.shape for cube in cubelist}) == 1 and cubelist[0].ndim >= 2:
        shape = cubelist[0].shape
        chunksizes = tuple([1] * (len(shape) - 2) + list(shape[-2:]))

    local_keys = {
        key
        for cube in cubelist
        for key in cube.attributes.keys()
        if key not in GLOBAL_KEYS
    }

    if compression_level not in range(10):
        raise ValueError(
            "Compression level must be an integer value between 0 and 9 (0 to disable compression)"
        )

    # save atomically by writing to a temporary file and then renaming
    filename = str(filename)
    directory = os.path.dirname(filename)
    if directory:
        os.makedirs(directory, exist_ok=True)
    ftmp = filename + ".tmp"
    iris.fileformats.netcdf.save(
        cubelist,
        ftmp,
        local_keys=local_keys,
        complevel=compression_level,
        shuffle=True,
        zlib=compression_level > 0,
        chunksizes=chunksizes,
    )
    os.replace(ftmp, filename)
