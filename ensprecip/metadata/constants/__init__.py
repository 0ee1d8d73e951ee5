# (C) Crown copyright, Met Office. All rights reserved.
#
# This file is part of ensprecip and is released under a BSD 3-Clause license.
# See LICENSE in the root of the repository for full licensing details.
"""Constants associated with metadata"""

import numpy as np

FLOAT_DTYPE = np.float32
FLOAT_TYPES = [np.float32, np.float64]

REALIZATION_COORD = "realization"
THRESHOLD_VAR_NAME = "threshold"
RELATIVE_TO_THRESHOLD = "greater_than_or_equal_to"
