#!/usr/bin/env python3
"""growthmaps.framework

The aggregation engine: turn a model set and a stream of environmental frames
into one aggregated rate grid per output timestamp.

Per cell, for the frame(s) contributing to an output step:

    growth_total   = sum over growth layers of max(rate(model, x), 0)
    stress_total   = sum over stress layers of conditionalrate(model, x)   (each <= 0)
    combined       = growth_total + stress_total

Design notes:
- Everything that can be checked up front (empty model set, unknown
  variables, unit conversions, target ordering, window overlap) is checked
  against the first source frame before any step is evaluated.
- Frame resolution (`resolve_steps`) is separate from evaluation
  (`evaluate_step`). Each step depends only on its own frames, so steps can be
  farmed out once resolved; cell-wise evaluation is plain numpy broadcasting.
- Source frames are pulled one at a time and dropped as soon as no later
  target can use them.
- Missing inputs and numerically undefined results both end up as the output
  sentinel. Configuration errors and failed steps raise, and no partial
  output is returned.
"""

from __future__ import annotations

import logging
from typing import Any, Iterable, Iterator, List, Optional, Sequence, Tuple, Union

import numpy as np

from growthmaps.errors import ConfigurationError, GrowthMapsError, RunError
from growthmaps.models import ModelKind, ModelSet, conditionalrate, rate
from growthmaps.series import (
    OutputSeries,
    OutputSpec,
    RasterFrame,
    RasterSeries,
    SubPeriodPolicy,
    WindowPolicy,
)
from growthmaps.units import Converter, check_convertible, convert

logger = logging.getLogger(__name__)


# -----------------------------------------------------------------------------
# Cell-wise evaluation
# -----------------------------------------------------------------------------

def combine(modelset: ModelSet, layer_values: Sequence[Any]) -> np.ndarray:
    """Combine per-layer inputs (already in each layer's unit) into one rate.

    `layer_values[i]` is the input for `modelset.layers[i]`, scalar or array.
    NaN inputs give NaN.
    """
    growth_total: Any = 0.0
    stress_total: Any = 0.0
    with np.errstate(invalid="ignore", over="ignore"):
        for layer, x in zip(modelset.layers, layer_values):
            kind = layer.model.kind
            if kind is ModelKind.GROWTH:
                growth_total = growth_total + np.maximum(rate(layer.model, x), 0.0)
            elif kind is ModelKind.LOWER_STRESS or kind is ModelKind.UPPER_STRESS:
                stress_total = stress_total + conditionalrate(layer.model, x)
            else:
                raise ConfigurationError(f"Layer {layer.var!r}: unsupported model kind {kind!r}")
        return np.asarray(growth_total + stress_total, dtype=float)


def convert_inputs(
    modelset: ModelSet,
    frame: RasterFrame,
    converter: Converter = convert,
) -> List[np.ndarray]:
    """Per-layer input grids from `frame`, missing cells as NaN, in layer units.

    Layers reading the same variable into the same unit share one conversion.
    """
    converted = {}
    out: List[np.ndarray] = []
    for layer in modelset.layers:
        key = (layer.var, layer.unit)
        if key not in converted:
            if layer.var not in frame:
                raise ConfigurationError(
                    f"Variable {layer.var!r} missing from frame at {frame.time}. "
                    f"Available: {frame.variables}"
                )
            grid = np.asarray(frame[layer.var], dtype=float)
            grid = np.where(frame.missing_mask(layer.var), np.nan, grid)
            converted[key] = np.asarray(
                converter(grid, frame.units.get(layer.var), layer.unit), dtype=float
            )
        out.append(converted[key])
    return out


def evaluate_frame(
    modelset: ModelSet,
    frame: RasterFrame,
    converter: Converter = convert,
) -> np.ndarray:
    """Combined rate grid for one frame. NaN marks missing or undefined cells."""
    values = convert_inputs(modelset, frame, converter)
    missing = np.zeros(frame.shape, dtype=bool)
    for var in modelset.variables:
        missing |= frame.missing_mask(var)
    combined = np.broadcast_to(combine(modelset, values), frame.shape)
    return np.where(missing | ~np.isfinite(combined), np.nan, combined)


def evaluate_step(
    modelset: ModelSet,
    frames: Sequence[RasterFrame],
    policy: SubPeriodPolicy,
    converter: Converter = convert,
) -> np.ndarray:
    """Output grid (NaN = sentinel) for one step from its contributing frames.

    A cell missing in any contributing frame is missing in the result.
    """
    results = [evaluate_frame(modelset, f, converter) for f in frames]
    if not isinstance(policy, WindowPolicy):
        return results[0]

    stack = np.stack(results)
    missing = np.isnan(stack).any(axis=0)
    with np.errstate(invalid="ignore", over="ignore"):
        reduced = np.asarray(policy.reduce(stack), dtype=float)
    if reduced.shape != missing.shape:
        raise RunError(f"Reducer returned shape {reduced.shape}, expected {missing.shape}")
    return np.where(missing | ~np.isfinite(reduced), np.nan, reduced)


# -----------------------------------------------------------------------------
# Frame resolution
# -----------------------------------------------------------------------------

class _FrameCursor:
    """One-frame lookahead over a frame iterator."""

    _EMPTY = object()

    def __init__(self, frames: Iterator[RasterFrame]):
        self._frames = frames
        self._next: Any = self._EMPTY

    def peek(self) -> Optional[RasterFrame]:
        if self._next is self._EMPTY:
            self._next = next(self._frames, None)
        return self._next

    def pop(self) -> Optional[RasterFrame]:
        frame = self.peek()
        self._next = self._EMPTY
        return frame


def _nearest_steps(spec: OutputSpec, cursor: _FrameCursor) -> Iterator[Tuple[Any, List[RasterFrame]]]:
    current = cursor.pop()
    for t in spec.times:
        # Distance to t is unimodal along increasing source times
        while True:
            nxt = cursor.peek()
            if nxt is None or not abs(nxt.time - t) < abs(current.time - t):
                break
            current = cursor.pop()
        yield t, [current]


def _window_steps(spec: OutputSpec, cursor: _FrameCursor) -> Iterator[Tuple[Any, List[RasterFrame]]]:
    for t, (start, end) in zip(spec.times, spec.windows()):
        while cursor.peek() is not None and cursor.peek().time < start:
            cursor.pop()
        frames: List[RasterFrame] = []
        while cursor.peek() is not None and cursor.peek().time < end:
            frames.append(cursor.pop())
        if not frames:
            raise RunError(f"No source frames fall within the step [{start}, {end}) for target {t}")
        yield t, frames


def resolve_steps(
    spec: OutputSpec,
    frames: Union[_FrameCursor, Iterable[RasterFrame]],
) -> Iterator[Tuple[Any, List[RasterFrame]]]:
    """Yield (target time, contributing frames) for every target in `spec`.

    Frames are pulled lazily; frames that serve no target are skipped.
    """
    cursor = frames if isinstance(frames, _FrameCursor) else _FrameCursor(iter(frames))
    if cursor.peek() is None:
        raise ConfigurationError("Source series is empty")
    if isinstance(spec.policy, WindowPolicy):
        return _window_steps(spec, cursor)
    return _nearest_steps(spec, cursor)


# -----------------------------------------------------------------------------
# Pre-flight validation
# -----------------------------------------------------------------------------

def validate(modelset: ModelSet, frame: RasterFrame, converter: Converter = convert) -> None:
    """Check a model set against a frame's schema. Raises ConfigurationError."""
    if len(modelset) == 0:
        raise ConfigurationError("ModelSet is empty; add at least one Layer")
    missing = [v for v in modelset.variables if v not in frame]
    if missing:
        raise ConfigurationError(
            f"Variables {missing} not found in source frame at {frame.time}. "
            f"Available: {frame.variables}"
        )
    if frame.shape is None:
        raise ConfigurationError(f"Source frame at {frame.time} has no grids")
    for layer in modelset.layers:
        check_convertible(converter, frame.units.get(layer.var), layer.unit)


# -----------------------------------------------------------------------------
# Main entrypoint
# -----------------------------------------------------------------------------

def mapgrowth(
    modelset: ModelSet,
    series: Union[RasterSeries, Iterable[RasterFrame]],
    output: Union[OutputSpec, Sequence[Any]],
    *,
    converter: Converter = convert,
) -> OutputSeries:
    """Aggregate `modelset` rates over `series` at the targets in `output`.

    Args:
        modelset: Layers to evaluate.
        series: Source frames with increasing timestamps. Consumed once.
        output: OutputSpec, or plain target timestamps (nearest-frame policy).
        converter: `convert(value, from_unit, to_unit)` used per grid and layer.

    Returns:
        OutputSeries with exactly one frame per target.

    Raises:
        ConfigurationError: on invalid setup, before any step is evaluated
            (or, for later frames, as soon as the bad frame is reached).
        RunError: if a step cannot be produced. Nothing is returned.
    """
    spec = output if isinstance(output, OutputSpec) else OutputSpec(times=output)
    if len(modelset) == 0:
        raise ConfigurationError("ModelSet is empty; add at least one Layer")
    if isinstance(spec.policy, WindowPolicy):
        spec.windows()

    source = series if isinstance(series, RasterSeries) else RasterSeries(series)
    cursor = _FrameCursor(iter(source))
    first = cursor.peek()
    if first is None:
        raise ConfigurationError("Source series is empty")
    validate(modelset, first, converter)

    shape = first.shape
    missingval = first.missingval if spec.missingval is None else spec.missingval
    logger.info(
        "mapgrowth: %d layer(s) %s, %d target(s), policy=%s, grid=%s",
        len(modelset), modelset.variables, len(spec), spec.policy.name, shape,
    )

    out_frames: List[RasterFrame] = []
    last: Tuple[Optional[RasterFrame], Optional[np.ndarray]] = (None, None)
    for t, frames in resolve_steps(spec, cursor):
        for f in frames:
            if f.shape != shape:
                raise ConfigurationError(f"Frame at {f.time} has shape {f.shape}, expected {shape}")
        logger.debug("step %s <- frames %s", t, [f.time for f in frames])

        try:
            if len(frames) == 1 and frames[0] is last[0] and not isinstance(spec.policy, WindowPolicy):
                result = last[1]
            else:
                result = evaluate_step(modelset, frames, spec.policy, converter)
                last = (frames[0], result) if len(frames) == 1 else (None, None)
        except GrowthMapsError:
            raise
        except Exception as e:
            raise RunError(f"Output step {t} failed: {e}") from e

        if np.isnan(result).all():
            logger.warning("Output step %s is entirely missing", t)
        grid = np.where(np.isnan(result), missingval, result)
        out_frames.append(RasterFrame(time=t, grids={spec.name: grid}, missingval=missingval))

    logger.info("mapgrowth: produced %d frame(s)", len(out_frames))
    return OutputSeries(out_frames, name=spec.name)
