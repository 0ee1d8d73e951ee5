# (C) Crown copyright, Met Office. All rights reserved.
#
# This file is part of ensprecip and is released under a BSD 3-Clause license.
# See LICENSE in the root of the repository for full licensing details.
"""
Assemble calibrated precipitation probabilities for one
(initial time, lead time, model) invocation.

The assembler loads the climatology and forecasts, forms raw ensemble
probabilities, expands and quantile maps the ensemble, dresses it and
optionally evaluates the censored, shifted Gamma probabilities, then writes
all products to one netCDF file. A missing or malformed auxiliary input only
disables the stages that depend on it: their products are written as the
missing data indicator and the run still completes.
"""

import logging
import warnings
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import List, Optional, Sequence, Tuple, Union

import numpy as np
from iris.cube import Cube, CubeList
from numpy import ndarray

from ensprecip import BasePlugin, PostProcessingPlugin
from ensprecip.calibration.csgd import (
    CLIMATOLOGY_NAMES,
    REGRESSION_NAMES,
    CensoredShiftedGammaProbabilities,
    CSGDClimatology,
    CSGDRegressionParameters,
)
from ensprecip.calibration.distributions import (
    PARAMETER_NAMES,
    DistributionParameters,
    EmpiricalCDF,
    EmpiricalDistribution,
    ZeroInflatedGamma,
)
from ensprecip.calibration.dressing import (
    HISTOGRAM_NAMES,
    KERNEL_NAMES,
    ClosestMemberHistogram,
    DressEnsembleProbabilities,
    DressingKernelParameters,
    GammaDressingKernel,
    GaussianDressingKernel,
)
from ensprecip.calibration.quantile_mapping import Parameters, QuantileMapping
from ensprecip.config import RunArguments, RunConfiguration
from ensprecip.constants import MASK_NAME, PRECIPITATION_NAME, PRECIPITATION_UNITS
from ensprecip.ensemble_probabilities import exceedance_frequency, summarise_ensemble
from ensprecip.exceptions import MissingInputError
from ensprecip.metadata.constants import FLOAT_DTYPE
from ensprecip.metadata.probabilistic import PROBABILITY_NAMES, create_probability_cube
from ensprecip.metadata.utilities import (
    create_new_diagnostic_cube,
    generate_mandatory_attributes,
    grid_template,
)
from ensprecip.nbhood.stencil_expansion import NeighbourhoodStencilExpansion
from ensprecip.utilities.file_paths import InputFilePaths
from ensprecip.utilities.load import load_required_cubes
from ensprecip.utilities.save import save_netcdf

logger = logging.getLogger(__name__)

ENSEMBLE_MEAN_NAME = f"ensemble_mean_of_{PRECIPITATION_NAME}"


class PipelineState(Enum):
    """Stages of one invocation, in the order they are reached."""

    INIT = "init"
    CLIMATOLOGY_LOADED = "climatology_loaded"
    FORECASTS_LOADED = "forecasts_loaded"
    RAW_PROB_COMPUTED = "raw_prob_computed"
    QUANTILE_MAPPED = "quantile_mapped"
    EXPANDED_PROB_COMPUTED = "expanded_prob_computed"
    DRESSED = "dressed"
    CSGD_COMPUTED = "csgd_computed"
    WRITTEN = "written"
    DONE = "done"
    ERROR = "error"


def _field_summary(values: ndarray) -> str:
    """Minimum, maximum and mean of the finite, non-negative values."""
    with np.errstate(invalid="ignore"):
        valid = values[np.isfinite(values) & (values >= 0)]
    if valid.size == 0:
        return "no valid values"
    return f"min {valid.min():.3f}, max {valid.max():.3f}, mean {valid.mean():.3f}"


@dataclass
class AssemblerInputs:
    """Inputs to the calculation stages of one invocation.

    Attributes:
        precipitation: Accumulated precipitation, (realization, y, x).
        valid_mask: Boolean (y, x) array of in-domain points.
        climatological_probabilities: Climatological exceedance
            probabilities, (threshold, y, x), if available.
        distribution: CDF strategy matching the distribution parameters.
        forecast_parameters: Forecast distribution, if available.
        analysis_parameters: Analysis distribution, if available.
        histogram: Closest-member histogram, if available.
        kernel: Dressing kernel, if available.
        csgd_climatology: CSGD climatology for the valid day, if available.
        csgd_regression: CSGD regression parameters, if available.
    """

    precipitation: Cube
    valid_mask: ndarray
    climatological_probabilities: Optional[Cube] = None
    distribution: Optional[Union[ZeroInflatedGamma, EmpiricalCDF]] = None
    forecast_parameters: Optional[Parameters] = None
    analysis_parameters: Optional[Parameters] = None
    histogram: Optional[ClosestMemberHistogram] = None
    kernel: Optional[Union[GammaDressingKernel, GaussianDressingKernel]] = None
    csgd_climatology: Optional[CSGDClimatology] = None
    csgd_regression: Optional[CSGDRegressionParameters] = None

    @property
    def can_quantile_map(self) -> bool:
        return None not in (
            self.distribution,
            self.forecast_parameters,
            self.analysis_parameters,
        )

    @property
    def can_dress(self) -> bool:
        return self.can_quantile_map and None not in (self.histogram, self.kernel)

    @property
    def can_csgd(self) -> bool:
        return None not in (self.csgd_climatology, self.csgd_regression)


@dataclass
class ProbabilityForecast:
    """Threshold exceedance probabilities of one invocation, each shaped
    (threshold, y, x), with the ensemble mean and validity mask."""

    thresholds: Tuple[float, ...]
    valid_mask: ndarray
    raw: ndarray
    quantile_mapped: ndarray
    dressed: ndarray
    ensemble_mean: ndarray
    csgd: Optional[ndarray] = None

    @classmethod
    def allocate(
        cls,
        thresholds: Sequence[float],
        valid_mask: ndarray,
        csgd: bool,
        missing_data_indicator: float,
    ) -> "ProbabilityForecast":
        """Allocate fields filled with the missing data indicator."""
        shape = (len(thresholds),) + valid_mask.shape

        def missing(field_shape):
            return np.full(field_shape, missing_data_indicator, dtype=FLOAT_DTYPE)

        return cls(
            thresholds=tuple(thresholds),
            valid_mask=valid_mask,
            raw=missing(shape),
            quantile_mapped=missing(shape),
            dressed=missing(shape),
            ensemble_mean=missing(valid_mask.shape),
            csgd=missing(shape) if csgd else None,
        )

    def to_cubes(self, template: Cube, attributes: dict) -> CubeList:
        """Probability, ensemble mean and mask cubes on the template grid."""
        fields = [
            ("raw", self.raw),
            ("quantile_mapped", self.quantile_mapped),
            ("dressed", self.dressed),
        ]
        if self.csgd is not None:
            fields.append(("csgd", self.csgd))
        cubes = CubeList(
            create_probability_cube(
                PROBABILITY_NAMES[product],
                template,
                self.thresholds,
                data,
                attributes=dict(attributes),
            )
            for product, data in fields
        )
        cubes.append(
            create_new_diagnostic_cube(
                ENSEMBLE_MEAN_NAME,
                PRECIPITATION_UNITS,
                template,
                attributes,
                data=self.ensemble_mean,
            )
        )
        cubes.append(
            create_new_diagnostic_cube(
                MASK_NAME,
                "1",
                template,
                attributes,
                data=self.valid_mask,
                dtype=np.int8,
            )
        )
        return cubes


class ForecastAssembler(BasePlugin):
    """Run the calibration pipeline for one invocation."""

    def __init__(
        self,
        config: RunConfiguration,
        arguments: RunArguments,
        paths: Optional[InputFilePaths] = None,
    ) -> None:
        """
        Args:
            config:
                Run configuration.
            arguments:
                Initial time, lead time and model of the invocation.
            paths:
                Input and output file locations. Only needed by run.
        """
        self.config = config
        self.arguments = arguments
        self.paths = paths
        self.state = PipelineState.INIT
        self.history: List[PipelineState] = [PipelineState.INIT]
        self.failures: List[MissingInputError] = []

    def __repr__(self) -> str:
        return (
            f"<ForecastAssembler: model: {self.arguments.model.name}; "
            f"cycle: {self.arguments.cycle_string}; lead: {self.arguments.lead_string}h; "
            f"state: {self.state.name}>"
        )

    def _advance(self, state: PipelineState) -> None:
        logger.info("Pipeline state %s -> %s", self.state.name, state.name)
        self.state = state
        self.history.append(state)

    def _record_failure(self, error: MissingInputError, consequence: str) -> None:
        self.failures.append(error)
        warnings.warn(f"{error}. {consequence}")

    # Loading

    def _load_climatology(self) -> Tuple[ndarray, Cube]:
        """Valid data mask and climatological probabilities."""
        path = self.paths.climatology
        mask_cube, climatology = load_required_cubes(
            path,
            [MASK_NAME, PROBABILITY_NAMES["climatological"]],
            "climatological probabilities",
        )
        thresholds = climatology.coord(PRECIPITATION_NAME).points
        if climatology.ndim != 3 or not np.allclose(
            thresholds, self.config.thresholds, rtol=0, atol=1.0e-4
        ):
            raise MissingInputError(
                path,
                reason=f"climatological thresholds {list(thresholds)} do not match "
                f"{list(self.config.thresholds)}",
            )
        valid_mask = np.ma.filled(mask_cube.data, 0) > 0
        if climatology.shape[1:] != valid_mask.shape:
            raise MissingInputError(path, reason="mask and climatology grids differ")
        climatology.data = np.ma.filled(climatology.data, np.nan).astype(FLOAT_DTYPE)
        return valid_mask, climatology

    def _load_forecast(self, lead_hours: int) -> Cube:
        path = self.paths.forecast(lead_hours)
        (cube,) = load_required_cubes(
            path, [PRECIPITATION_NAME], f"{lead_hours} hour forecast"
        )
        if cube.ndim != 3:
            raise MissingInputError(path, reason="expected (realization, y, x) data")
        cube.convert_units(PRECIPITATION_UNITS)
        return cube

    def _load_precipitation(self, valid_mask: ndarray) -> Cube:
        """Accumulation over the period ending at the lead time, from the
        difference of the cumulative forecasts at its end and start."""
        end = self._load_forecast(self.arguments.lead_hours)
        if end.shape[1:] != valid_mask.shape:
            raise MissingInputError(
                self.paths.forecast_end, reason="forecast grid does not match the mask"
            )
        end_data = np.ma.filled(end.data, np.nan).astype(np.float64)
        begin_lead = self.arguments.begin_lead_hours(self.config.accumulation_hours)
        if begin_lead <= 0:
            begin_data = np.zeros_like(end_data)
        else:
            begin = self._load_forecast(begin_lead)
            if begin.shape != end.shape:
                raise MissingInputError(
                    self.paths.forecast_begin,
                    reason=f"shape {begin.shape} differs from {end.shape}",
                )
            begin_data = np.ma.filled(begin.data, np.nan).astype(np.float64)
        with np.errstate(invalid="ignore"):
            accumulation = np.maximum(end_data - begin_data, 0.0)
        return end.copy(data=accumulation.astype(FLOAT_DTYPE))

    def _load_distribution(
        self, n_members: int
    ) -> Tuple[Union[ZeroInflatedGamma, EmpiricalCDF], Parameters, Parameters]:
        """CDF strategy with forecast and analysis parameters."""
        path = self.paths.distribution_parameters
        model = self.arguments.model
        missing = self.config.missing_data_indicator
        try:
            if self.config.cdf_method == "gamma":
                names = [
                    f"{prefix}_{name}"
                    for prefix in ("forecast", "analysis")
                    for name in PARAMETER_NAMES
                ]
                cubes = load_required_cubes(path, names, "gamma CDF parameters")
                distribution = ZeroInflatedGamma(missing)
                forecast = DistributionParameters.from_cubes(cubes, "forecast")
                analysis = DistributionParameters.from_cubes(cubes, "analysis")
            else:
                cubes = load_required_cubes(
                    path, ["forecast_cdf", "analysis_cdf"], "empirical CDFs"
                )
                forecast_cdf = cubes[0]
                (amounts,) = forecast_cdf.coords(
                    dimensions=forecast_cdf.ndim - 1, dim_coords=True
                )
                distribution = EmpiricalCDF(amounts.points, missing)
                forecast = EmpiricalDistribution.from_cubes(cubes, "forecast")
                analysis = EmpiricalDistribution.from_cubes(cubes, "analysis")
            if not model.exchangeable:
                if not forecast.is_per_member:
                    raise ValueError("member-specific parameters are required")
                if forecast.n_member_sets != n_members:
                    raise ValueError(
                        f"{forecast.n_member_sets} member parameter sets "
                        f"for {n_members} members"
                    )
        except (ValueError, KeyError) as err:
            raise MissingInputError(path, reason=f"malformed ({err})")
        return distribution, forecast, analysis

    def _load_histogram(self, n_expanded: int) -> ClosestMemberHistogram:
        path = self.paths.closest_histogram
        cubes = load_required_cubes(path, HISTOGRAM_NAMES, "closest-member histogram")
        try:
            histogram = ClosestMemberHistogram.from_cubes(cubes)
        except ValueError as err:
            raise MissingInputError(path, reason=f"malformed ({err})")
        if histogram.n_ranks != n_expanded:
            raise MissingInputError(
                path,
                reason=f"{histogram.n_ranks} ranks for {n_expanded} expanded members",
            )
        return histogram

    def _load_kernel(self) -> Union[GammaDressingKernel, GaussianDressingKernel]:
        if self.config.dressing_kernel == "gaussian":
            return GaussianDressingKernel(
                self.config.gaussian_spread_offset, self.config.gaussian_spread_slope
            )
        path = self.paths.dressing_parameters
        cubes = load_required_cubes(path, KERNEL_NAMES, "dressing kernel parameters")
        try:
            return GammaDressingKernel(DressingKernelParameters.from_cubes(cubes))
        except ValueError as err:
            raise MissingInputError(path, reason=f"malformed ({err})")

    def _load_csgd(self) -> Tuple[CSGDClimatology, CSGDRegressionParameters]:
        day_of_year = self.arguments.valid_time.timetuple().tm_yday
        path = self.paths.csgd_climatology
        cubes = load_required_cubes(path, CLIMATOLOGY_NAMES, "CSGD climatology")
        climatology = CSGDClimatology.from_cubes(cubes, day_of_year)
        path = self.paths.csgd_regression
        cubes = load_required_cubes(
            path, REGRESSION_NAMES, "CSGD regression parameters"
        )
        try:
            regression = CSGDRegressionParameters.from_cubes(cubes)
        except ValueError as err:
            raise MissingInputError(path, reason=f"malformed ({err})")
        return climatology, regression

    def load_inputs(self) -> AssemblerInputs:
        """Load all inputs, skipping auxiliary inputs that are unavailable.

        Returns:
            The loaded inputs.

        Raises:
            MissingInputError: If the climatology or a forecast file is
                unavailable, in which case no output can be produced.
        """
        try:
            valid_mask, climatology = self._load_climatology()
            self._advance(PipelineState.CLIMATOLOGY_LOADED)
            precipitation = self._load_precipitation(valid_mask)
        except MissingInputError as err:
            self.failures.append(err)
            self._advance(PipelineState.ERROR)
            raise
        self._advance(PipelineState.FORECASTS_LOADED)
        logger.info("Raw ensemble: %s", _field_summary(precipitation.data))

        inputs = AssemblerInputs(
            precipitation=precipitation,
            valid_mask=valid_mask,
            climatological_probabilities=climatology,
        )
        n_members = precipitation.shape[0]
        try:
            (
                inputs.distribution,
                inputs.forecast_parameters,
                inputs.analysis_parameters,
            ) = self._load_distribution(n_members)
        except MissingInputError as err:
            self._record_failure(
                err, "Quantile mapped and dressed probabilities will be missing"
            )
        try:
            inputs.histogram = self._load_histogram(
                n_members * self.config.stencil_size
            )
            inputs.kernel = self._load_kernel()
        except MissingInputError as err:
            self._record_failure(err, "Dressed probabilities will be missing")
        if self.config.csgd:
            try:
                inputs.csgd_climatology, inputs.csgd_regression = self._load_csgd()
            except MissingInputError as err:
                self._record_failure(err, "CSGD probabilities will be missing")
        return inputs

    # Calculation

    def process(self, inputs: AssemblerInputs) -> ProbabilityForecast:
        """Calculate all probability products from loaded inputs.

        Args:
            inputs:
                Loaded inputs. Stages whose inputs are absent are skipped,
                leaving their products as the missing data indicator.

        Returns:
            The probability products.
        """
        config = self.config
        missing = config.missing_data_indicator
        valid_mask = np.asarray(inputs.valid_mask, dtype=bool)
        members = np.ma.filled(inputs.precipitation.data, np.nan).astype(FLOAT_DTYPE)
        n_members = members.shape[0]
        if n_members != self.arguments.model.n_members:
            warnings.warn(
                f"Expected {self.arguments.model.n_members} {self.arguments.model.name} "
                f"members, found {n_members}"
            )

        forecast = ProbabilityForecast.allocate(
            config.thresholds, valid_mask, config.csgd, missing
        )
        summary = summarise_ensemble(members)
        forecast.raw = exceedance_frequency(
            members, config.thresholds, valid_mask, missing
        )
        self._advance(PipelineState.RAW_PROB_COMPUTED)

        with np.errstate(invalid="ignore"):
            has_signal = bool(np.any(members[:, valid_mask] > 0))
        if not has_signal:
            logger.info("No positive precipitation in the raw ensemble")
            zero = np.where(valid_mask, 0.0, missing).astype(FLOAT_DTYPE)
            zero = np.broadcast_to(zero, forecast.raw.shape)
            forecast.quantile_mapped = zero.copy()
            forecast.dressed = zero.copy()
            if forecast.csgd is not None:
                forecast.csgd = zero.copy()
            return forecast

        forecast.ensemble_mean = np.where(
            valid_mask & np.isfinite(summary.mean), summary.mean, missing
        ).astype(FLOAT_DTYPE)
        logger.info("Ensemble mean: %s", _field_summary(forecast.ensemble_mean))

        if inputs.can_quantile_map:
            self._calibrate(inputs, members, valid_mask, forecast)

        if forecast.csgd is not None and inputs.can_csgd:
            plugin = CensoredShiftedGammaProbabilities(config.thresholds, missing)
            forecast.csgd = plugin.probabilities(
                summary, inputs.csgd_climatology, inputs.csgd_regression, valid_mask
            )
            self._advance(PipelineState.CSGD_COMPUTED)
            logger.info("CSGD probabilities: %s", _field_summary(forecast.csgd))
        return forecast

    def _calibrate(
        self,
        inputs: AssemblerInputs,
        members: ndarray,
        valid_mask: ndarray,
        forecast: ProbabilityForecast,
    ) -> None:
        """Expand, quantile map and dress the ensemble a block of rows at a
        time, filling the quantile mapped and dressed probabilities."""
        config = self.config
        missing = config.missing_data_indicator
        expansion = NeighbourhoodStencilExpansion(
            config.stencil_width, stride=self.arguments.stride
        )
        logger.info(
            "Expanding %d members with a %dx%d stencil, stride %d",
            members.shape[0],
            config.stencil_width,
            config.stencil_width,
            expansion.stride,
        )
        mapper = QuantileMapping(
            inputs.distribution,
            stencil_size=config.stencil_size,
            rows_per_chunk=config.rows_per_chunk,
            missing_data_indicator=missing,
        )
        dresser = None
        if inputs.can_dress:
            dresser = DressEnsembleProbabilities(
                inputs.histogram,
                inputs.kernel,
                config.thresholds,
                rows_per_chunk=config.rows_per_chunk,
                missing_data_indicator=missing,
            )
        climatological_pop = None
        if inputs.climatological_probabilities is not None:
            climatological_pop = np.asarray(
                inputs.climatological_probabilities.data[0], dtype=np.float64
            )

        mapped_min, mapped_max, mapped_sum, mapped_count = np.inf, -np.inf, 0.0, 0
        n_rows = members.shape[1]
        for start in range(0, n_rows, config.rows_per_chunk):
            rows = slice(start, min(start + config.rows_per_chunk, n_rows))
            expanded = expansion.expand(members, valid_mask, rows=rows)
            mapped = mapper.map_members(
                expanded,
                inputs.forecast_parameters.subset_rows(rows),
                inputs.analysis_parameters.subset_rows(rows),
                exchangeable=self.arguments.model.exchangeable,
            )
            forecast.quantile_mapped[:, rows] = exceedance_frequency(
                mapped, config.thresholds, valid_mask[rows], missing
            )
            if dresser is not None:
                forecast.dressed[:, rows] = dresser.dress(
                    mapped,
                    valid_mask=valid_mask[rows],
                    climatological_pop=(
                        None if climatological_pop is None else climatological_pop[rows]
                    ),
                )
            valid = mapped[:, valid_mask[rows]]
            valid = valid[valid >= 0]
            if valid.size:
                mapped_min = min(mapped_min, float(valid.min()))
                mapped_max = max(mapped_max, float(valid.max()))
                mapped_sum += float(valid.sum(dtype=np.float64))
                mapped_count += valid.size

        self._advance(PipelineState.QUANTILE_MAPPED)
        if mapped_count:
            logger.info(
                "Quantile mapped ensemble: min %.3f, max %.3f, mean %.3f",
                mapped_min,
                mapped_max,
                mapped_sum / mapped_count,
            )
        self._advance(PipelineState.EXPANDED_PROB_COMPUTED)
        logger.info(
            "Quantile mapped probabilities: %s",
            _field_summary(forecast.quantile_mapped),
        )
        if dresser is not None:
            self._advance(PipelineState.DRESSED)
            logger.info("Dressed probabilities: %s", _field_summary(forecast.dressed))

    # Output

    def output_cubes(
        self, inputs: AssemblerInputs, forecast: ProbabilityForecast
    ) -> CubeList:
        """All products as cubes ready to be saved."""
        template = grid_template(inputs.precipitation)
        attributes = generate_mandatory_attributes([inputs.precipitation])
        attributes["title"] = (
            f"{self.arguments.model.name} {self.config.accumulation_hours} hour "
            "precipitation probabilities"
        )
        attributes["source"] = "ensprecip"
        cubes = forecast.to_cubes(template, attributes)
        if inputs.climatological_probabilities is not None:
            climatology = inputs.climatological_probabilities
            data = np.where(
                forecast.valid_mask & np.all(np.isfinite(climatology.data), axis=0),
                climatology.data,
                self.config.missing_data_indicator,
            )
            cubes.append(
                create_probability_cube(
                    PROBABILITY_NAMES["climatological"],
                    template,
                    self.config.thresholds,
                    data,
                    attributes=dict(attributes),
                )
            )
        for cube in cubes:
            PostProcessingPlugin.post_processed_title(cube)
        return cubes

    def run(self, output_directory: Union[str, Path]) -> Path:
        """Load, calculate and write the products of the invocation.

        Args:
            output_directory:
                Root directory for the output file.

        Returns:
            Path of the file written.

        Raises:
            ValueError: If no file paths were provided.
            MissingInputError: If the climatology or forecasts are
                unavailable.
        """
        if self.paths is None:
            raise ValueError("File paths are required to run the assembler")
        logger.info("Starting %r", self)
        inputs = self.load_inputs()
        forecast = self.process(inputs)
        output_path = self.paths.output(Path(output_directory))
        save_netcdf(self.output_cubes(inputs, forecast), output_path)
        logger.info("Wrote %s", output_path)
        self._advance(PipelineState.WRITTEN)
        self._advance(PipelineState.DONE)
        if self.failures:
            logger.warning(
                "Completed with %d unavailable inputs: %s",
                len(self.failures),
                "; ".join(str(failure) for failure in self.failures),
            )
        return output_path
