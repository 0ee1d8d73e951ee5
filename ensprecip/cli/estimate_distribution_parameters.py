#!/usr/bin/env python
# (C) Crown copyright, Met Office. All rights reserved.
#
# This file is part of ensprecip and is released under a BSD 3-Clause license.
# See LICENSE in the root of the repository for full licensing details.
"""Script to estimate zero-inflated Gamma quantile mapping parameters from
accumulated sufficient statistics."""

from ensprecip import cli


@cli.clizefy
@cli.with_output
def process(
    statistics: cli.inputcubelist, *, no_refine=False, require_defined=False
):
    """Estimate fraction of zeros, Gamma shape and Gamma scale per point.

    Args:
        statistics (iris.cube.CubeList):
            Cubes of sample count, zero count, sum of positive amounts and
            sum of logarithms of positive amounts, named with a "forecast_"
            or "analysis_" prefix.
        no_refine (bool):
            If set, use the Thom approximation for the shape parameter
            without Newton refinement.
        require_defined (bool):
            If set, fail if any point with samples cannot be fitted.

    Returns:
        iris.cube.CubeList:
            Parameter cubes for each prefix with a complete set of
            statistics.
    """
    from ensprecip.calibration.distributions import EstimateDistributionParameters

    return EstimateDistributionParameters(
        refine=not no_refine, require_defined=require_defined
    )(statistics)
