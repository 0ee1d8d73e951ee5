# (C) Crown copyright, Met Office. All rights reserved.
#
# This file is part of ensprecip and is released under a BSD 3-Clause license.
# See LICENSE in the root of the repository for full licensing details.
"""
Enlarge an ensemble by pooling the members found at a fixed stencil of
neighbouring grid points.
"""

from typing import Optional

import numpy as np
from iris.coords import DimCoord
from iris.cube import Cube
from numpy import ndarray

from ensprecip import BasePlugin
from ensprecip.config import nearest_integer
from ensprecip.constants import DEFAULT_STENCIL_WIDTH, STRIDE_LEAD_SCALE
from ensprecip.metadata.constants import FLOAT_DTYPE, REALIZATION_COORD
from ensprecip.utilities.neighbourhood_tools import pad_and_roll


class NeighbourhoodStencilExpansion(BasePlugin):
    """Expand each member into stencil_width**2 pseudo-members.

    Pseudo-member k of member m at a point takes the value of member m at
    the k'th stencil offset, with offsets running row by row over
    stride * (-w//2 .. w//2) in each direction. Offsets falling outside the
    grid or on an invalid point take the value at the centre point. The
    expanded ensemble is ordered member-major, so pseudo-member m * S + k,
    where S is the stencil size, derives from member m.
    """

    def __init__(
        self, stencil_width: int = DEFAULT_STENCIL_WIDTH, stride: int = 1
    ) -> None:
        """
        Args:
            stencil_width:
                Number of points along each side of the square stencil.
                Must be odd.
            stride:
                Spacing, in grid points, between stencil points.

        Raises:
            ValueError: If the stencil width is not a positive odd number or
                the stride is less than 1.
        """
        if stencil_width < 1 or stencil_width % 2 == 0:
            raise ValueError(
                f"Stencil width must be a positive odd number, got {stencil_width}"
            )
        if stride < 1:
            raise ValueError(f"Stride must be at least 1, got {stride}")
        self.stencil_width = stencil_width
        self.stride = stride

    def __repr__(self) -> str:
        return (
            f"<NeighbourhoodStencilExpansion: stencil_width: {self.stencil_width}; "
            f"stride: {self.stride}>"
        )

    @property
    def stencil_size(self) -> int:
        return self.stencil_width**2

    @staticmethod
    def stride_for_lead(lead_hours: float) -> int:
        """Stencil stride for a lead time, growing from 1 at analysis time
        to 5 at seven days."""
        return nearest_integer(1.0 + 4.0 * lead_hours / STRIDE_LEAD_SCALE)

    def expand(
        self, data: ndarray, valid_mask: ndarray, rows: Optional[slice] = None
    ) -> ndarray:
        """Expand a (member, y, x) array.

        Args:
            data:
                Ensemble values, shaped (member, y, x).
            valid_mask:
                Boolean (y, x) array, True for in-domain points.
            rows:
                Optional block of rows to return. The stencil still reads
                neighbours outside the block.

        Returns:
            Float32 array shaped (member * stencil_size, rows, x).
        """
        if data.ndim != 3:
            raise ValueError(
                f"Expected (member, y, x) data, got {data.ndim} dimensions"
            )
        if valid_mask.shape != data.shape[1:]:
            raise ValueError(
                f"Mask shape {valid_mask.shape} does not match grid {data.shape[1:]}"
            )
        rows = slice(None) if rows is None else rows
        shape = (self.stencil_width, self.stencil_width)

        data = np.asarray(data, dtype=FLOAT_DTYPE)
        windows = pad_and_roll(
            data, shape, dilation=self.stride, mode="constant", constant_values=0
        )[:, rows]
        mask_windows = pad_and_roll(
            valid_mask.astype(bool),
            shape,
            dilation=self.stride,
            mode="constant",
            constant_values=False,
        )[rows]
        centre = data[:, rows, :, np.newaxis, np.newaxis]
        expanded = np.where(mask_windows, windows, centre)

        n_members, n_rows, n_cols = expanded.shape[:3]
        expanded = expanded.reshape(n_members, n_rows, n_cols, self.stencil_size)
        expanded = np.moveaxis(expanded, -1, 1)
        return np.ascontiguousarray(
            expanded.reshape(n_members * self.stencil_size, n_rows, n_cols)
        )

    def process(self, cube: Cube, mask: Cube) -> Cube:
        """Expand an ensemble cube.

        Args:
            cube:
                Cube with a leading realization dimension and latitude,
                longitude dimensions.
            mask:
                2-D cube of the valid data mask, non-zero for in-domain
                points.

        Returns:
            Cube with realization dimension of length
            n_realizations * stencil_size.
        """
        expanded = self.expand(
            np.ma.filled(cube.data, np.nan), np.asarray(mask.data) > 0
        )
        realization = DimCoord(
            np.arange(expanded.shape[0], dtype=np.int32), REALIZATION_COORD, units="1"
        )
        dim_coords = [(realization, 0)]
        dim_coords.extend(
            (coord.copy(), cube.coord_dims(coord)[0])
            for coord in cube.dim_coords
            if coord.name() != REALIZATION_COORD
        )
        aux_coords = [
            (coord.copy(), None)
            for coord in cube.aux_coords
            if not cube.coord_dims(coord)
        ]
        result = Cube(
            expanded,
            units=cube.units,
            attributes=cube.attributes.copy(),
            dim_coords_and_dims=dim_coords,
            aux_coords_and_dims=aux_coords,
        )
        result.rename(cube.name())
        return result
