#!/usr/bin/env python3
"""growthmaps.fit

Fit model set parameters to observed rates, plus the hooks an interactive
tool needs to do the same thing by hand.

- `fit()` adjusts only free (bounded) parameters with
  `scipy.optimize.least_squares`, and either returns a fully updated model set
  or reports failure with the input model set untouched.
- `ModelRef` is a mutable reference to the latest immutable model set; it is
  what a UI holds on to while parameters change.
- `ManualFit` and `MapFit` expose pure evaluation functions over a parameter
  vector plus a rebuild function. Drawing and widgets live elsewhere.

Observation inputs are either scalars (fed to every layer) or mappings from
variable name to value. Predictions use the same growth/stress combination as
`mapgrowth`.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Callable, Iterable, List, Mapping, Optional, Sequence, Tuple

import numpy as np
from scipy.optimize import least_squares

from growthmaps.errors import ConfigurationError, FitError
from growthmaps.framework import combine, mapgrowth
from growthmaps.models import ModelSet
from growthmaps.series import OutputSeries, OutputSpec, RasterFrame
from growthmaps.units import Converter, convert

logger = logging.getLogger(__name__)

Observation = Tuple[Any, float]


# -----------------------------------------------------------------------------
# Prediction helpers
# -----------------------------------------------------------------------------

def _layer_arrays(
    modelset: ModelSet,
    inputs: Sequence[Any],
    input_unit: Optional[str],
    converter: Converter,
) -> List[np.ndarray]:
    arrays: List[np.ndarray] = []
    for layer in modelset.layers:
        raw = []
        for x in inputs:
            if isinstance(x, Mapping):
                if layer.var not in x:
                    raise FitError(f"Observation input {x!r} has no value for {layer.var!r}")
                raw.append(x[layer.var])
            else:
                raw.append(x)
        values = np.asarray(raw, dtype=float)
        arrays.append(np.asarray(converter(values, input_unit, layer.unit), dtype=float))
    return arrays


def predict(
    modelset: ModelSet,
    inputs: Sequence[Any],
    *,
    input_unit: Optional[str] = None,
    converter: Converter = convert,
) -> np.ndarray:
    """Combined rate of `modelset` at each input."""
    inputs = list(inputs)
    return combine(modelset, _layer_arrays(modelset, inputs, input_unit, converter))


# -----------------------------------------------------------------------------
# Automatic fit
# -----------------------------------------------------------------------------

@dataclass(frozen=True)
class FitResult:
    """Outcome of `fit()`.

    `modelset` is the fitted set on success and the untouched input on failure.
    """

    modelset: ModelSet
    success: bool
    rss: float
    nfev: int
    message: str
    x: np.ndarray = field(default_factory=lambda: np.empty(0))


def fit(
    modelset: ModelSet,
    observations: Iterable[Observation],
    *,
    input_unit: Optional[str] = None,
    converter: Converter = convert,
    max_nfev: Optional[int] = None,
    ftol: float = 1e-10,
    xtol: float = 1e-10,
    gtol: float = 1e-10,
) -> FitResult:
    """Least-squares fit of the free parameters of `modelset`.

    Args:
        modelset: Model set whose bounded Params are adjusted.
        observations: (input, observed_rate) pairs.
        input_unit: Unit of the observation inputs, converted into each
            layer's unit. None means inputs are already in layer units.
        converter: Unit conversion function.
        max_nfev: Solver evaluation limit (scipy default if None).
        ftol, xtol, gtol: Solver tolerances.

    Returns:
        FitResult. Check `success`; on failure no parameter is updated.

    Raises:
        FitError: if there is nothing to fit or no observations.
    """
    refs = modelset.free_params()
    if not refs:
        raise FitError("ModelSet has no free parameters (give some Params bounds)")
    obs = list(observations)
    if not obs:
        raise FitError("No observations to fit")

    lower, upper = modelset.bounds()
    degenerate = [r.name for r, lo, hi in zip(refs, lower, upper) if not lo < hi]
    if degenerate:
        raise FitError(f"Free parameters need lower < upper bounds: {degenerate}")

    observed = np.array([float(o[1]) for o in obs], dtype=float)
    layer_inputs = _layer_arrays(modelset, [o[0] for o in obs], input_unit, converter)

    def residuals(vector: np.ndarray) -> np.ndarray:
        return combine(modelset.with_vector(vector), layer_inputs) - observed

    x0 = modelset.vector()
    clipped = np.clip(x0, lower, upper)
    if not np.array_equal(clipped, x0):
        outside = [r.name for r, a, b in zip(refs, x0, clipped) if a != b]
        logger.warning("Starting values outside bounds were clipped: %s", outside)
        x0 = clipped

    r0 = residuals(x0)
    if not np.all(np.isfinite(r0)):
        message = "Residuals are not finite at the starting point"
        logger.warning("Fit failed: %s", message)
        return FitResult(modelset, False, float("nan"), 1, message, x0)

    res = least_squares(
        residuals,
        x0,
        bounds=(lower, upper),
        x_scale="jac",
        ftol=ftol,
        xtol=xtol,
        gtol=gtol,
        max_nfev=max_nfev,
    )
    rss = float(np.sum(res.fun ** 2))

    if not res.success or not np.isfinite(rss):
        logger.warning("Fit failed after %d evaluations: %s", res.nfev, res.message)
        return FitResult(modelset, False, rss, int(res.nfev), str(res.message), res.x)

    fitted = modelset.with_vector(res.x)
    logger.info(
        "Fit converged in %d evaluations, rss=%.3g: %s",
        res.nfev, rss, dict(zip(modelset.names(), np.round(res.x, 6).tolist())),
    )
    return FitResult(fitted, True, rss, int(res.nfev), str(res.message), res.x)


# -----------------------------------------------------------------------------
# Interactive support
# -----------------------------------------------------------------------------

class ModelRef:
    """Mutable reference to the current model set snapshot.

    Snapshots themselves are never modified; `fit` and `update` swap in a new one.
    """

    def __init__(self, modelset: ModelSet):
        self._current = modelset

    @property
    def current(self) -> ModelSet:
        return self._current

    def set(self, modelset: ModelSet) -> None:
        self._current = modelset

    def update(self, vector: Sequence[float]) -> ModelSet:
        self._current = self._current.with_vector(vector)
        return self._current

    def fit(self, observations: Iterable[Observation], **kwargs: Any) -> FitResult:
        """Fit and keep the result only if the fit succeeded."""
        result = fit(self._current, observations, **kwargs)
        if result.success:
            self._current = result.modelset
        return result

    def manualfit(self, inputs: Sequence[Any], **kwargs: Any) -> "ManualFit":
        return ManualFit(self._current, inputs, **kwargs)


@dataclass(frozen=True)
class ManualFit:
    """Curve-fitting hooks for a UI: pure evaluation plus rebuild.

    Args:
        modelset: Snapshot whose free parameters the UI edits.
        inputs: Default inputs to draw the rate curve over (e.g. a temperature sweep).
        observations: Optional (input, rate) pairs to overlay.
        input_unit: Unit of `inputs` and observation inputs.
    """

    modelset: ModelSet
    inputs: Sequence[Any]
    observations: Sequence[Observation] = ()
    input_unit: Optional[str] = None
    converter: Converter = convert

    @property
    def names(self) -> List[str]:
        return self.modelset.names()

    @property
    def vector(self) -> np.ndarray:
        return self.modelset.vector()

    @property
    def bounds(self) -> Tuple[np.ndarray, np.ndarray]:
        return self.modelset.bounds()

    def rebuild(self, vector: Sequence[float]) -> ModelSet:
        return self.modelset.with_vector(vector)

    def evaluate(self, vector: Sequence[float], inputs: Optional[Sequence[Any]] = None) -> np.ndarray:
        return predict(
            self.rebuild(vector),
            self.inputs if inputs is None else inputs,
            input_unit=self.input_unit,
            converter=self.converter,
        )

    def residuals(self, vector: Sequence[float]) -> np.ndarray:
        if not self.observations:
            return np.empty(0)
        predicted = self.evaluate(vector, [o[0] for o in self.observations])
        return predicted - np.array([o[1] for o in self.observations], dtype=float)


@dataclass(frozen=True)
class MapFitResult:
    output: OutputSeries
    occurrence_rates: np.ndarray  # (time, n_occurrence), NaN where missing
    occurrence_mean: np.ndarray  # (n_occurrence,)


def occurrence_rates(output: OutputSeries, occurrence: Sequence[Tuple[int, int]]) -> np.ndarray:
    """Output values at occurrence cells, shaped (time, n), sentinel as NaN."""
    if not len(output):
        return np.empty((0, len(occurrence)))
    stack = output.to_array().astype(float)
    rows, cols = stack.shape[1:]
    for r, c in occurrence:
        if not (0 <= r < rows and 0 <= c < cols):
            raise ConfigurationError(f"Occurrence cell {(r, c)} outside grid of shape {(rows, cols)}")
    if not np.isnan(output.missingval):
        stack[stack == output.missingval] = np.nan
    idx_r = np.array([r for r, _ in occurrence], dtype=int)
    idx_c = np.array([c for _, c in occurrence], dtype=int)
    return stack[:, idx_r, idx_c]


@dataclass(frozen=True)
class MapFit:
    """Map-based fitting hooks: rerun the aggregation for a parameter vector and
    report rates where the organism is known to occur.

    `series_factory` must return a fresh source series on every call, since a
    series can only be consumed once.
    """

    modelset: ModelSet
    series_factory: Callable[[], Iterable[RasterFrame]]
    output: OutputSpec
    occurrence: Sequence[Tuple[int, int]] = ()
    converter: Converter = convert

    @property
    def names(self) -> List[str]:
        return self.modelset.names()

    @property
    def vector(self) -> np.ndarray:
        return self.modelset.vector()

    @property
    def bounds(self) -> Tuple[np.ndarray, np.ndarray]:
        return self.modelset.bounds()

    def rebuild(self, vector: Sequence[float]) -> ModelSet:
        return self.modelset.with_vector(vector)

    def evaluate(self, vector: Optional[Sequence[float]] = None) -> MapFitResult:
        modelset = self.modelset if vector is None else self.rebuild(vector)
        out = mapgrowth(modelset, self.series_factory(), self.output, converter=self.converter)
        rates = occurrence_rates(out, self.occurrence)
        if rates.size:
            valid = ~np.isnan(rates)
            counts = valid.sum(axis=0)
            sums = np.where(valid, rates, 0.0).sum(axis=0)
            mean = np.where(counts > 0, sums / np.maximum(counts, 1), np.nan)
        else:
            mean = np.full(len(self.occurrence), np.nan)
        return MapFitResult(out, rates, mean)
