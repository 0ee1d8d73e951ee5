# (C) Crown copyright, Met Office. All rights reserved.
#
# This file is part of ensprecip and is released under a BSD 3-Clause license.
# See LICENSE in the root of the repository for full licensing details.
"""
Run configuration for the precipitation calibration pipeline.

The grid, ensemble sizes and threshold list are held in immutable objects
passed into the pipeline so that tests can inject small grids and ensembles.
"""

from dataclasses import dataclass
from datetime import datetime, timedelta
from enum import Enum
from typing import Tuple

import numpy as np

from ensprecip.constants import (
    ACCUMULATION_HOURS,
    DEFAULT_STENCIL_WIDTH,
    DEFAULT_THRESHOLDS,
    MISSING_DATA_INDICATOR,
    STRIDE_LEAD_SCALE,
)
from ensprecip.exceptions import ConfigurationError

CDF_METHODS = ("gamma", "empirical")
DRESSING_KERNELS = ("gamma", "gaussian")


class ModelVariant(Enum):
    """Supported ensemble prediction systems.

    Each value carries the number of perturbed members and whether those
    members are exchangeable, i.e. share one set of quantile-mapping
    parameters.
    """

    ECMWF = (50, True)
    NCEP = (20, True)
    CMC = (20, False)

    def __init__(self, n_members: int, exchangeable: bool) -> None:
        self.n_members = n_members
        self.exchangeable = exchangeable

    @property
    def n_parameter_sets(self) -> int:
        """Number of forecast quantile-mapping parameter sets required."""
        return 1 if self.exchangeable else self.n_members

    @classmethod
    def from_name(cls, name: str) -> "ModelVariant":
        """Look up a model variant from its identifier.

        Args:
            name:
                Model identifier, e.g. "ECMWF". Case insensitive.

        Returns:
            The matching model variant.

        Raises:
            ConfigurationError: If the identifier is not recognised.
        """
        try:
            return cls[name.strip().upper()]
        except KeyError:
            valid = ", ".join(member.name for member in cls)
            raise ConfigurationError(
                f"Invalid model identifier '{name}'. Expected one of: {valid}"
            )


@dataclass(frozen=True)
class RunConfiguration:
    """Process-wide settings for one calibration run.

    Attributes:
        thresholds: Precipitation amounts (mm) for exceedance probabilities.
        stencil_width: Width of the square neighbourhood stencil.
        accumulation_hours: Length of the accumulation period.
        cdf_method: "gamma" for fitted zero-inflated Gamma CDFs or
            "empirical" for tabulated CDFs.
        dressing_kernel: "gamma" for the fitted Gamma kernels or "gaussian"
            for the simple kernel centred on each member.
        csgd: Whether to produce the censored, shifted Gamma probabilities.
        gaussian_spread_offset: Kernel standard deviation (mm) at zero amount.
        gaussian_spread_slope: Increase of the kernel standard deviation per
            mm of member amount.
        rows_per_chunk: Number of grid rows processed together in the
            memory-intensive member-by-member stages.
        missing_data_indicator: Sentinel written where no value is available.
    """

    thresholds: Tuple[float, ...] = DEFAULT_THRESHOLDS
    stencil_width: int = DEFAULT_STENCIL_WIDTH
    accumulation_hours: int = ACCUMULATION_HOURS
    cdf_method: str = "gamma"
    dressing_kernel: str = "gaussian"
    csgd: bool = True
    gaussian_spread_offset: float = 0.25
    gaussian_spread_slope: float = 0.4
    rows_per_chunk: int = 32
    missing_data_indicator: float = MISSING_DATA_INDICATOR

    def __post_init__(self) -> None:
        thresholds = np.asarray(self.thresholds, dtype=np.float64)
        if thresholds.ndim != 1 or thresholds.size == 0:
            raise ConfigurationError("At least one threshold must be provided.")
        if np.any(np.diff(thresholds) <= 0):
            raise ConfigurationError(
                f"Thresholds must be strictly increasing, got {self.thresholds}"
            )
        if self.stencil_width < 1 or self.stencil_width % 2 == 0:
            raise ConfigurationError(
                f"Stencil width must be a positive odd number, got {self.stencil_width}"
            )
        if self.cdf_method not in CDF_METHODS:
            raise ConfigurationError(
                f"Unknown CDF method '{self.cdf_method}'. "
                f"Choose from {', '.join(CDF_METHODS)}."
            )
        if self.dressing_kernel not in DRESSING_KERNELS:
            raise ConfigurationError(
                f"Unknown dressing kernel '{self.dressing_kernel}'. "
                f"Choose from {', '.join(DRESSING_KERNELS)}."
            )
        if self.gaussian_spread_offset <= 0 or self.gaussian_spread_slope < 0:
            raise ConfigurationError(
                "The Gaussian kernel spread offset must be positive and the "
                "slope non-negative."
            )
        if self.rows_per_chunk < 1:
            raise ConfigurationError("rows_per_chunk must be at least 1.")
        # normalise to a tuple of floats so that the object stays hashable
        object.__setattr__(self, "thresholds", tuple(float(t) for t in thresholds))

    @property
    def stencil_size(self) -> int:
        """Number of offsets in the neighbourhood stencil."""
        return self.stencil_width**2

    @property
    def qmap_label(self) -> str:
        """Label of the quantile mapping method used in output file names."""
        return "gammaqmap" if self.cdf_method == "gamma" else "empirical"

    @property
    def dressing_label(self) -> str:
        """Label of the dressing kernel used in output file names."""
        return "gammadress" if self.dressing_kernel == "gamma" else "gaussdress"


def nearest_integer(value: float) -> int:
    """Round half away from zero."""
    return int(np.sign(value) * np.floor(abs(value) + 0.5))


@dataclass(frozen=True)
class RunArguments:
    """The (initial time, lead time, model) triple identifying one invocation.

    Attributes:
        cycle: Forecast initial time.
        lead_hours: Ending lead time of the accumulation period in hours.
        model: Ensemble prediction system.
    """

    cycle: datetime
    lead_hours: int
    model: ModelVariant

    @classmethod
    def from_strings(
        cls,
        cycle: str,
        lead: str,
        model: str,
        accumulation_hours: int = ACCUMULATION_HOURS,
    ) -> "RunArguments":
        """Parse command line values.

        Args:
            cycle:
                Initial time as YYYYMMDDHH.
            lead:
                Ending lead time in hours, e.g. "024".
            model:
                Model identifier.
            accumulation_hours:
                Length of the accumulation period, which the lead time must
                at least equal.

        Returns:
            Parsed run arguments.

        Raises:
            ConfigurationError: If any of the values is malformed.
        """
        cycle = str(cycle).strip()
        if len(cycle) != 10 or not cycle.isdigit():
            raise ConfigurationError(
                f"Invalid initial date-time '{cycle}'. Expected YYYYMMDDHH."
            )
        try:
            cycle_time = datetime.strptime(cycle, "%Y%m%d%H")
        except ValueError:
            raise ConfigurationError(
                f"Invalid initial date-time '{cycle}'. Expected YYYYMMDDHH."
            )
        try:
            lead_hours = int(str(lead).strip())
        except ValueError:
            raise ConfigurationError(
                f"Invalid lead time '{lead}'. Expected a whole number of hours."
            )
        if lead_hours < accumulation_hours:
            raise ConfigurationError(
                f"Invalid lead time '{lead}'. It must be at least "
                f"{accumulation_hours} hours."
            )
        return cls(cycle_time, lead_hours, ModelVariant.from_name(model))

    @property
    def cycle_string(self) -> str:
        """Initial time formatted as YYYYMMDDHH."""
        return self.cycle.strftime("%Y%m%d%H")

    @property
    def lead_string(self) -> str:
        """Three digit ending lead time, e.g. "024"."""
        return f"{self.lead_hours:03d}"

    def begin_lead_hours(self, accumulation_hours: int = ACCUMULATION_HOURS) -> int:
        """Lead time at the start of the accumulation period."""
        return self.lead_hours - accumulation_hours

    @property
    def valid_time(self) -> datetime:
        """End of the accumulation period."""
        return self.cycle + timedelta(hours=self.lead_hours)

    @property
    def stride(self) -> int:
        """Grid spacing between stencil points, widening with lead time."""
        return nearest_integer(1.0 + 4.0 * self.lead_hours / STRIDE_LEAD_SCALE)

    @property
    def valid_period(self) -> str:
        """Half-day window ending at the valid time, e.g. "12_to_00UTC"."""
        return "12_to_00UTC" if self.valid_time.hour < 12 else "00_to_12UTC"
