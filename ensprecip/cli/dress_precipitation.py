#!/usr/bin/env python
# (C) Crown copyright, Met Office. All rights reserved.
#
# This file is part of ensprecip and is released under a BSD 3-Clause license.
# See LICENSE in the root of the repository for full licensing details.
"""Script to produce calibrated precipitation probabilities for one
initial time, lead time and ensemble."""

from ensprecip import cli


@cli.clizefy
def process(
    cycle: str,
    lead: str,
    model: str,
    *,
    data_directory: cli.inputpath,
    output_directory: cli.inputpath,
    cdf_method="gamma",
    dressing_kernel="gaussian",
    thresholds: cli.comma_separated_list = None,
    stencil_width: int = 5,
    no_csgd=False,
    csgd_fit_date: cli.inputdatetime = None,
    rows_per_chunk: int = 32,
):
    """Calibrate an ensemble precipitation forecast.

    Forms the accumulation ending at the lead time from the cumulative
    forecasts, then writes raw, quantile mapped, dressed, climatological and
    optionally censored, shifted Gamma exceedance probabilities, together with
    the ensemble mean and the valid data mask, to one netCDF file under the
    output directory. Products whose auxiliary inputs are unavailable are
    written as the missing data indicator.

    Args:
        cycle (str):
            Initial date-time of the forecast as YYYYMMDDHH.
        lead (str):
            Lead time in hours at the end of the accumulation period,
            e.g. 024.
        model (str):
            Ensemble prediction system: ECMWF, NCEP or CMC.
        data_directory (pathlib.Path):
            Directory holding the forecasts, climatologies and calibration
            parameters.
        output_directory (pathlib.Path):
            Directory below which the output file is written.
        cdf_method (str):
            Quantile mapping CDFs, "gamma" or "empirical".
        dressing_kernel (str):
            Dressing kernel, "gamma" or "gaussian".
        thresholds (list of float):
            Precipitation amounts (mm) for the exceedance probabilities.
        stencil_width (int):
            Width of the square neighbourhood stencil, in stencil points.
        no_csgd (bool):
            If set, do not produce censored, shifted Gamma probabilities.
        csgd_fit_date (datetime.datetime):
            Date-time (YYYYMMDDHH) of the censored, shifted Gamma regression
            fit. Defaults to the initial date-time.
        rows_per_chunk (int):
            Number of grid rows processed together.

    Returns:
        str:
            Path of the file written.
    """
    from ensprecip.config import RunArguments, RunConfiguration
    from ensprecip.constants import DEFAULT_THRESHOLDS
    from ensprecip.forecast_assembler import ForecastAssembler
    from ensprecip.utilities.file_paths import InputFilePaths

    config = RunConfiguration(
        thresholds=(
            DEFAULT_THRESHOLDS
            if thresholds is None
            else tuple(float(value) for value in thresholds)
        ),
        stencil_width=stencil_width,
        cdf_method=cdf_method,
        dressing_kernel=dressing_kernel,
        csgd=not no_csgd,
        rows_per_chunk=rows_per_chunk,
    )
    arguments = RunArguments.from_strings(
        cycle, lead, model, accumulation_hours=config.accumulation_hours
    )
    paths = InputFilePaths(
        data_directory, arguments, config, csgd_fit_date=csgd_fit_date
    )
    return str(ForecastAssembler(config, arguments, paths).run(output_directory))
