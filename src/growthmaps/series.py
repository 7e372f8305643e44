#!/usr/bin/env python3
"""growthmaps.series

Frames, one-shot source series, output specs and output series.

Design notes:
- A RasterFrame is one timestamp worth of named 2D grids, all the same shape,
  plus the sentinel marking missing cells (NaN by default).
- A RasterSeries can be iterated exactly once. Sources are typically backed by
  files that are opened only when their frame is reached, and the engine never
  holds more than the frames one output step needs.
- Timestamps can be numbers, datetimes or numpy datetime64 values, as long as
  one series (and its OutputSpec) sticks to one kind.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Iterable, Iterator, List, Mapping, Optional, Sequence, Tuple, Union

import numpy as np

from growthmaps.errors import ConfigurationError


# -----------------------------------------------------------------------------
# Frames
# -----------------------------------------------------------------------------

@dataclass(frozen=True)
class RasterFrame:
    """Named 2D grids sharing one shape, at one timestamp.

    Args:
        time: Timestamp of the frame.
        grids: Variable name -> 2D array.
        missingval: Sentinel for missing cells (NaN allowed).
        units: Optional variable name -> unit tag of the stored values.
    """

    time: Any
    grids: Mapping[str, np.ndarray]
    missingval: float = float("nan")
    units: Mapping[str, str] = field(default_factory=dict)

    def __post_init__(self) -> None:
        grids = {name: np.asarray(grid) for name, grid in self.grids.items()}
        shapes = {name: g.shape for name, g in grids.items()}
        for name, shape in shapes.items():
            if len(shape) != 2:
                raise ConfigurationError(f"Frame at {self.time}: grid {name!r} is not 2D (shape {shape})")
        if len(set(shapes.values())) > 1:
            raise ConfigurationError(f"Frame at {self.time}: grid shapes differ: {shapes}")
        object.__setattr__(self, "grids", grids)
        object.__setattr__(self, "units", dict(self.units or {}))

    @property
    def shape(self) -> Optional[Tuple[int, int]]:
        for grid in self.grids.values():
            return grid.shape
        return None

    @property
    def variables(self) -> List[str]:
        return list(self.grids.keys())

    def __getitem__(self, name: str) -> np.ndarray:
        return self.grids[name]

    def __contains__(self, name: object) -> bool:
        return name in self.grids

    def missing_mask(self, name: str) -> np.ndarray:
        """True where grid `name` holds the sentinel (or any non-finite value)."""
        grid = np.asarray(self.grids[name], dtype=float)
        mask = ~np.isfinite(grid)
        if not _isnan(self.missingval):
            mask |= grid == self.missingval
        return mask


def _isnan(x: Any) -> bool:
    try:
        return bool(np.isnan(x))
    except TypeError:
        return False


class RasterSeries:
    """Forward-only, single-use sequence of frames with increasing timestamps.

    Wraps any iterable of RasterFrame (a list, a generator, a file-backed
    adapter). Iterating a second time raises RuntimeError.
    """

    def __init__(self, frames: Iterable[RasterFrame]):
        self._frames = frames
        self._consumed = False

    def __iter__(self) -> Iterator[RasterFrame]:
        if self._consumed:
            raise RuntimeError("RasterSeries has already been consumed; build a new one to iterate again")
        self._consumed = True
        return self._checked(iter(self._frames))

    @staticmethod
    def _checked(frames: Iterator[RasterFrame]) -> Iterator[RasterFrame]:
        prev = None
        first = True
        for frame in frames:
            if not isinstance(frame, RasterFrame):
                raise ConfigurationError(f"Expected RasterFrame, got {type(frame).__name__}")
            if not first and not frame.time > prev:
                raise ConfigurationError(
                    f"Source timestamps must be strictly increasing ({prev} then {frame.time})"
                )
            prev = frame.time
            first = False
            yield frame

    @classmethod
    def from_arrays(
        cls,
        times: Sequence[Any],
        data: Mapping[str, np.ndarray],
        *,
        missingval: float = float("nan"),
        units: Optional[Mapping[str, str]] = None,
    ) -> "RasterSeries":
        """Series over in-memory 3D arrays shaped (time, rows, cols)."""
        arrays = {name: np.asarray(a) for name, a in data.items()}
        for name, a in arrays.items():
            if a.ndim != 3 or a.shape[0] != len(times):
                raise ConfigurationError(
                    f"Array {name!r} must be (time, rows, cols) with {len(times)} steps, got {a.shape}"
                )

        def _frames() -> Iterator[RasterFrame]:
            for i, t in enumerate(times):
                yield RasterFrame(
                    time=t,
                    grids={name: a[i] for name, a in arrays.items()},
                    missingval=missingval,
                    units=units or {},
                )

        return cls(_frames())


# -----------------------------------------------------------------------------
# Sub-period policies and reducers
# -----------------------------------------------------------------------------
# Reducers take a stack shaped (frames, rows, cols) and return (rows, cols).

Reducer = Callable[[np.ndarray], np.ndarray]

REDUCERS: Dict[str, Reducer] = {
    "mean": lambda stack: np.mean(stack, axis=0),
    "median": lambda stack: np.median(stack, axis=0),
    "min": lambda stack: np.min(stack, axis=0),
    "max": lambda stack: np.max(stack, axis=0),
    "sum": lambda stack: np.sum(stack, axis=0),
}


def resolve_reducer(reducer: Union[str, Reducer]) -> Reducer:
    if callable(reducer):
        return reducer
    try:
        return REDUCERS[str(reducer)]
    except KeyError:
        raise ConfigurationError(
            f"Unknown reducer {reducer!r}. Available: {sorted(REDUCERS)}"
        ) from None


@dataclass(frozen=True)
class NearestPolicy:
    """Each output step uses the single source frame nearest in time.

    Ties go to the earlier frame.
    """

    name = "nearest"


@dataclass(frozen=True)
class WindowPolicy:
    """Each output step reduces every source frame with t <= time < t + period.

    Args:
        reducer: Name in REDUCERS or a callable over a (frames, rows, cols) stack.
        period: Step length. Defaults to the gap to the next target; the last
            target reuses the previous gap.
    """

    reducer: Union[str, Reducer] = "mean"
    period: Any = None

    name = "window"

    def __post_init__(self) -> None:
        resolve_reducer(self.reducer)

    @property
    def reduce(self) -> Reducer:
        return resolve_reducer(self.reducer)


SubPeriodPolicy = Union[NearestPolicy, WindowPolicy]


# -----------------------------------------------------------------------------
# Output spec and output series
# -----------------------------------------------------------------------------

@dataclass(frozen=True)
class OutputSpec:
    """Target timestamps plus the rule mapping source frames onto them.

    Args:
        times: Strictly increasing target timestamps.
        policy: NearestPolicy (default) or WindowPolicy.
        name: Grid name used in output frames.
        missingval: Output sentinel; defaults to the first source frame's.
    """

    times: Sequence[Any]
    policy: SubPeriodPolicy = field(default_factory=NearestPolicy)
    name: str = "growth"
    missingval: Optional[float] = None

    def __post_init__(self) -> None:
        times = list(self.times)
        if not times:
            raise ConfigurationError("OutputSpec needs at least one target timestamp")
        for a, b in zip(times, times[1:]):
            if not b > a:
                raise ConfigurationError(f"Target timestamps must be strictly increasing ({a} then {b})")
        object.__setattr__(self, "times", times)

    @classmethod
    def regular(cls, start: Any, end: Any, freq: str, **kwargs: Any) -> "OutputSpec":
        """Regular timespan, inclusive of both ends, built with pandas.date_range."""
        import pandas as pd

        times = list(pd.date_range(start=start, end=end, freq=freq).to_numpy())
        return cls(times=times, **kwargs)

    def __len__(self) -> int:
        return len(self.times)

    def windows(self) -> List[Tuple[Any, Any]]:
        """(start, end) per target for WindowPolicy."""
        if not isinstance(self.policy, WindowPolicy):
            raise ConfigurationError("windows() only applies to WindowPolicy")
        times = self.times
        period = self.policy.period
        out: List[Tuple[Any, Any]] = []
        for i, t in enumerate(times):
            if period is not None:
                step = period
            elif i + 1 < len(times):
                step = times[i + 1] - t
            elif i > 0:
                step = t - times[i - 1]
            else:
                raise ConfigurationError("WindowPolicy with a single target needs an explicit period")
            out.append((t, t + step))
        for (_, end), nxt in zip(out, times[1:]):
            if end > nxt:
                raise ConfigurationError(
                    f"Window ending at {end} overlaps the next target {nxt}; shorten the period"
                )
        return out


class OutputSeries:
    """Result of a run: one frame per target timestamp, in order."""

    def __init__(self, frames: Sequence[RasterFrame], name: str = "growth"):
        self.frames: List[RasterFrame] = list(frames)
        self.name = name

    @property
    def times(self) -> List[Any]:
        return [f.time for f in self.frames]

    @property
    def missingval(self) -> float:
        return self.frames[0].missingval if self.frames else float("nan")

    def __len__(self) -> int:
        return len(self.frames)

    def __iter__(self) -> Iterator[RasterFrame]:
        return iter(self.frames)

    def __getitem__(self, i: int) -> RasterFrame:
        return self.frames[i]

    def to_array(self) -> np.ndarray:
        """Stack of output grids shaped (time, rows, cols)."""
        return np.stack([f[self.name] for f in self.frames])

    def __repr__(self) -> str:
        shape = self.frames[0].shape if self.frames else None
        return f"OutputSeries(name={self.name!r}, steps={len(self)}, shape={shape})"
