# (C) Crown copyright, Met Office. All rights reserved.
#
# This file is part of ensprecip and is released under a BSD 3-Clause license.
# See LICENSE in the root of the repository for full licensing details.
"""Module to contain generally useful constants."""

#: Value written wherever no valid probability or amount could be produced.
MISSING_DATA_INDICATOR = -99.99

#: Precipitation amounts (mm) at which exceedance probabilities are reported.
DEFAULT_THRESHOLDS = (0.254, 1.0, 2.5, 5.0, 10.0, 25.0, 50.0)

#: Amount (mm) above which a member counts towards the probability of
#: precipitation.
POP_THRESHOLD = 0.254

#: Width of the square stencil used to enlarge the ensemble.
DEFAULT_STENCIL_WIDTH = 5

#: Length (hours) of the precipitation accumulation being calibrated.
ACCUMULATION_HOURS = 12

#: Upper bound on cumulative probabilities passed to inverse CDFs, keeping
#: quantiles of unbounded distributions finite.
MAX_CUMULATIVE_PROBABILITY = 0.99999

#: Lead time (hours) at which the stencil stride reaches its maximum of 5.
STRIDE_LEAD_SCALE = 168.0

# Temporal constants
DAYS_IN_YEAR = 365

MONTH_ABBREVIATIONS = (
    "Jan",
    "Feb",
    "Mar",
    "Apr",
    "May",
    "Jun",
    "Jul",
    "Aug",
    "Sep",
    "Oct",
    "Nov",
    "Dec",
)

PRECIPITATION_NAME = "lwe_thickness_of_precipitation_amount"
PRECIPITATION_UNITS = "mm"
MASK_NAME = "valid_data_mask"
