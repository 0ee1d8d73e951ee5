# (C) Crown copyright, Met Office. All rights reserved.
#
# This file is part of ensprecip and is released under a BSD 3-Clause license.
# See LICENSE in the root of the repository for full licensing details.
"""Provides tools for neighbourhood generation"""

from typing import Any, Tuple

import numpy as np
from numpy import ndarray


def rolling_window(
    input_array: ndarray,
    shape: Tuple[int, int],
    dilation: int = 1,
    writeable: bool = False,
) -> ndarray:
    """Creates a rolling window neighbourhood of the given `shape` from the
    last `len(shape)` axes of the input array. Avoids creating a large output
    array by constructing a non-continuous view mapped onto the input array.

    args:
        input_array:
            An array from which rolling window neighbourhoods will be created.
        shape:
            The neighbourhood shape e.g. if the neighbourhood
            size is 3, the shape would be (3, 3) to create a
            3x3 array around each point in the input_array.
        dilation:
            Spacing, in grid points, between the points sampled within each
            neighbourhood. A dilation of 2 with shape (3, 3) samples a 5x5
            area, taking every second point.
        writeable:
            If True the returned view will be writeable. This will modify
            the input array, so use with caution.

    Returns:
        "views" into the data, each view represents
        a neighbourhood of points.

    Raises:
        ValueError: If `input_array` has fewer dimensions than `shape`.
        ValueError: If `dilation` is less than 1.
        RuntimeError: If any dimension of `shape` is larger than
            the corresponding dimension of `input_array`.
    """
    num_window_dims = len(shape)
    num_arr_dims = len(input_array.shape)
    if num_arr_dims < num_window_dims:
        raise ValueError(
            "Number of dimensions of the input array must be greater than or "
            "equal to the length of the neighbourhood shape used for "
            "constructing rolling window neighbourhoods."
        )
    if dilation < 1:
        raise ValueError(f"Dilation must be a positive integer, got {dilation}.")
    adjshp = (
        *input_array.shape[:-num_window_dims],
        *(
            arr_dims - (win_dims - 1) * dilation
            for arr_dims, win_dims in zip(input_array.shape[-num_window_dims:], shape)
        ),
        *shape,
    )
    if any(arr_dims <= 0 for arr_dims in adjshp):
        raise RuntimeError(
            "The calculated shape of the output array view contains a "
            "dimension that is negative or zero. Each dimension of the "
            "neighbourhood shape must be less than or equal to the "
            "corresponding dimension of the input array."
        )
    strides = input_array.strides + tuple(
        stride * dilation for stride in input_array.strides[-num_window_dims:]
    )
    return np.lib.stride_tricks.as_strided(
        input_array, shape=adjshp, strides=strides, writeable=writeable
    )


def pad_and_roll(
    input_array: ndarray, shape: Tuple[int, int], dilation: int = 1, **kwargs: Any
) -> ndarray:
    """Pads the last `len(shape)` axes of the input array for `rolling_window`
    to create 'neighbourhood' views of the data of a given `shape` as the last
    axes in the returned array. Collapsing over the last `len(shape)` axes
    results in a shape of the original input array.

    args:
        input_array:
            The dataset of points to pad and create rolling windows for.
        shape:
            Desired shape of the neighbourhood. E.g. if a neighbourhood
            width of 1 around the point is desired, this shape should be (3, 3)::

                X X X
                X O X
                X X X

            Where O is our central point and X represent the neighbour points.
            With a dilation of 2 the same shape samples::

                X . X . X
                . . . . .
                X . O . X
                . . . . .
                X . X . X

        dilation:
            Spacing, in grid points, between the sampled neighbours.
        kwargs:
            additional keyword arguments passed to `numpy.pad` function.

    Returns:
        Contains the views of the input_array, the final dimension of
        the array will be the specified shape in the input arguments,
        the leading dimensions will depend on the shape of the input array.
    """
    writeable = kwargs.pop("writeable", False)
    pad_extent = [(0, 0)] * (len(input_array.shape) - len(shape))
    pad_extent.extend(((d // 2) * dilation, (d // 2) * dilation) for d in shape)
    input_array = np.pad(input_array, pad_extent, **kwargs)
    return rolling_window(input_array, shape, dilation=dilation, writeable=writeable)
