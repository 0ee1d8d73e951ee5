# (C) Crown copyright, Met Office. All rights reserved.
#
# This file is part of ensprecip and is released under a BSD 3-Clause license.
# See LICENSE in the root of the repository for full licensing details.
"""Deterministic names of the input and output files of one run."""

from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import Optional

from ensprecip.config import RunArguments, RunConfiguration
from ensprecip.constants import MONTH_ABBREVIATIONS


@dataclass(frozen=True)
class InputFilePaths:
    """Locations of the files read and written for one
    (initial time, lead time, model) invocation.

    Attributes:
        data_directory: Root directory of the input files.
        arguments: The invocation.
        config: Run configuration, selecting the CDF and kernel variants.
        csgd_fit_date: Date of the CSGD regression fit. Defaults to the
            initial time.
    """

    data_directory: Path
    arguments: RunArguments
    config: RunConfiguration
    csgd_fit_date: Optional[datetime] = None

    def __post_init__(self) -> None:
        object.__setattr__(self, "data_directory", Path(self.data_directory))

    @property
    def _model(self) -> str:
        return self.arguments.model.name

    @property
    def _month(self) -> str:
        return MONTH_ABBREVIATIONS[self.arguments.cycle.month - 1]

    @property
    def _qmap_suffix(self) -> str:
        return "_gammaqmap" if self.config.cdf_method == "gamma" else ""

    @property
    def _case(self) -> str:
        return f"date={self.arguments.cycle_string}_lead={self.arguments.lead_string}"

    @property
    def climatology(self) -> Path:
        """Climatological probabilities for the month and valid half-day."""
        return (
            self.data_directory
            / f"apcp_climatologies_{self.arguments.valid_period}_{self._month}_2002_to_2016.nc"
        )

    def forecast(self, lead_hours: int) -> Path:
        """Cumulative precipitation forecast at a lead time."""
        return (
            self.data_directory
            / f"{self._model}_{self.arguments.cycle_string}_leadtime{lead_hours}h.nc"
        )

    @property
    def forecast_end(self) -> Path:
        return self.forecast(self.arguments.lead_hours)

    @property
    def forecast_begin(self) -> Path:
        return self.forecast(
            self.arguments.begin_lead_hours(self.config.accumulation_hours)
        )

    @property
    def distribution_parameters(self) -> Path:
        """Quantile mapping parameters for the selected CDF method."""
        prefix = (
            "gamma_qmap_parameters"
            if self.config.cdf_method == "gamma"
            else "empirical_cdfs"
        )
        return (
            self.data_directory
            / self._model
            / f"{prefix}_{self._model}_{self._month}_lead={self.arguments.lead_string}h.nc"
        )

    @property
    def closest_histogram(self) -> Path:
        return (
            self.data_directory
            / self._model
            / f"closest_histogram_{self._model}_{self._case}{self._qmap_suffix}.nc"
        )

    @property
    def dressing_parameters(self) -> Path:
        return (
            self.data_directory
            / self._model
            / f"gamma_fraction_zero_dressing_{self._model}_{self._case}{self._qmap_suffix}.nc"
        )

    @property
    def csgd_climatology(self) -> Path:
        hour = 0 if self.arguments.valid_time.hour < 12 else 12
        return self.data_directory / f"CSGD_climatology_0p125deg_{hour:02d}Z.nc"

    @property
    def csgd_regression(self) -> Path:
        fit_date = self.csgd_fit_date or self.arguments.cycle
        return (
            self.data_directory
            / self._model
            / (
                f"{self._model}_parameters_leade{self.arguments.lead_string}h_"
                f"{fit_date.strftime('%Y%m%d%H')}.nc"
            )
        )

    def output(self, output_directory: Path) -> Path:
        """Output file for the run."""
        name = (
            f"{self._model}_{self.arguments.lead_string}h_IC{self.arguments.cycle_string}_"
            f"{self.config.qmap_label}_{self.config.dressing_label}.nc"
        )
        return Path(output_directory) / self._model / name
