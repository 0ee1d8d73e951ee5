# (C) Crown copyright, Met Office. All rights reserved.
#
# This file is part of ensprecip and is released under a BSD 3-Clause license.
# See LICENSE in the root of the repository for full licensing details.
"""Module for loading cubes."""

import logging
from pathlib import Path
from typing import List, Optional, Sequence, Union

import iris
from iris import Constraint
from iris.cube import Cube, CubeList
from iris.exceptions import TranslationError

from ensprecip.exceptions import MissingInputError

logger = logging.getLogger(__name__)

LEADING_COORDS = ["realization", "member", "threshold"]


def _strip_var_names(cube: Cube) -> None:
    """Remove var names from the cube and its coordinates, except where a
    "threshold" var name distinguishes a probabilistic coordinate."""
    cube.var_name = None
    for coord in cube.coords():
        if coord.var_name != "threshold":
            coord.var_name = None


def _enforce_leading_coordinates(cube: Cube) -> Cube:
    """Move realization, member and threshold dimensions to the front,
    keeping the relative order of the other dimensions."""
    leading = []
    for name in LEADING_COORDS:
        for coord in cube.coords(dim_coords=True):
            if name in (coord.name(), coord.var_name):
                leading.extend(cube.coord_dims(coord))
    if not leading:
        return cube
    order = leading + [dim for dim in range(cube.ndim) if dim not in leading]
    if order != list(range(cube.ndim)):
        cube.transpose(order)
    return cube


def load_cubelist(
    filepath: Union[str, Path, List[Union[str, Path]]],
    constraints: Optional[Union[Constraint, str]] = None,
    no_lazy_load: bool = False,
) -> CubeList:
    """Load cubes from filepath(s) into a cubelist. Strips off all
    var names except for "threshold"-type coordinates.

    Args:
        filepath:
            Filepath(s) that will be loaded.
        constraints:
            Constraint to be applied when loading from the input filepath.
            This can be in the form of an iris.Constraint or could be a string
            that is intended to match the name of the cube.
        no_lazy_load:
            If True, bypass cube deferred (lazy) loading and load the whole
            cube into memory.

    Returns:
        CubeList that has been created from the input filepath given the
        constraints provided.

    Raises:
        ValueError: If no cubes match the constraints.
    """
    # Load each file individually to avoid partial merging
    if isinstance(filepath, (str, Path)):
        cubes = iris.load(str(filepath), constraints=constraints)
    else:
        cubes = CubeList([])
        for item in filepath:
            cubes.extend(iris.load(str(item), constraints=constraints))

    if not cubes:
        raise ValueError(f"No cubes found using constraints {constraints}")

    loaded = CubeList()
    for cube in cubes:
        _strip_var_names(cube)
        loaded.append(_enforce_leading_coordinates(cube))
        if no_lazy_load:
            # Force cube's data into memory by touching the .data attribute.
            cube.data
    return loaded


def load_required_cubes(
    filepath: Union[str, Path], names: Sequence[str], description: str
) -> CubeList:
    """Load the named cubes from a required input file, realising their data.

    Args:
        filepath:
            File to read.
        names:
            Names of the cubes that must be present.
        description:
            Short description of the input used in log messages.

    Returns:
        The named cubes, in the order requested.

    Raises:
        MissingInputError: If the file does not exist, cannot be read or
            lacks any of the named cubes.
    """
    path = Path(filepath)
    if not path.is_file():
        raise MissingInputError(path)
    logger.info("Reading %s from %s", description, path)
    try:
        cubes = load_cubelist(path, no_lazy_load=True)
    except (OSError, EOFError, RuntimeError, ValueError, TranslationError) as err:
        raise MissingInputError(path, reason=f"unreadable ({err})")
    available = {cube.name() for cube in cubes}
    missing = [name for name in names if name not in available]
    if missing:
        raise MissingInputError(path, reason=f"no cubes named {', '.join(missing)}")
    return CubeList(cubes.extract_cube(name) for name in names)
