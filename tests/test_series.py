#!/usr/bin/env python3

from __future__ import annotations

import numpy as np
import pytest

from growthmaps.errors import ConfigurationError
from growthmaps.series import (
    NearestPolicy,
    OutputSeries,
    OutputSpec,
    RasterFrame,
    RasterSeries,
    WindowPolicy,
    resolve_reducer,
)


def test_frame_shape_and_missing_mask():
    f = RasterFrame(time=0, grids={"a": np.array([[1.0, -99.0], [np.nan, 4.0]])}, missingval=-99.0)
    assert f.shape == (2, 2)
    assert f.variables == ["a"]
    np.testing.assert_array_equal(f.missing_mask("a"), [[False, True], [True, False]])


def test_frame_rejects_mismatched_or_non_2d_grids():
    with pytest.raises(ConfigurationError):
        RasterFrame(time=0, grids={"a": np.zeros((2, 2)), "b": np.zeros((3, 2))})
    with pytest.raises(ConfigurationError):
        RasterFrame(time=0, grids={"a": np.zeros(4)})


def test_series_is_single_use():
    series = RasterSeries.from_arrays([0, 1], {"a": np.zeros((2, 3, 3))})
    assert [f.time for f in series] == [0, 1]
    with pytest.raises(RuntimeError):
        list(series)


def test_series_requires_increasing_times():
    frames = [RasterFrame(time=t, grids={"a": np.zeros((2, 2))}) for t in (0, 2, 2)]
    with pytest.raises(ConfigurationError):
        list(RasterSeries(frames))


def test_from_arrays_checks_time_axis():
    with pytest.raises(ConfigurationError):
        RasterSeries.from_arrays([0, 1, 2], {"a": np.zeros((2, 3, 3))})


def test_output_spec_validation():
    assert isinstance(OutputSpec(times=[1, 2]).policy, NearestPolicy)
    with pytest.raises(ConfigurationError):
        OutputSpec(times=[])
    with pytest.raises(ConfigurationError):
        OutputSpec(times=[2, 1])


def test_windows_default_and_explicit_period():
    spec = OutputSpec(times=[0, 10, 30], policy=WindowPolicy())
    assert spec.windows() == [(0, 10), (10, 30), (30, 50)]
    spec = OutputSpec(times=[0, 10], policy=WindowPolicy(period=5))
    assert spec.windows() == [(0, 5), (10, 15)]


def test_windows_reject_overlap_and_lonely_target():
    with pytest.raises(ConfigurationError):
        OutputSpec(times=[0, 5], policy=WindowPolicy(period=10)).windows()
    with pytest.raises(ConfigurationError):
        OutputSpec(times=[0], policy=WindowPolicy()).windows()


def test_regular_spec_uses_date_range():
    spec = OutputSpec.regular("2020-01-01", "2020-12-01", "MS")
    assert len(spec) == 12
    assert spec.times[0] == np.datetime64("2020-01-01")


def test_reducers():
    stack = np.array([[[1.0]], [[3.0]]])
    assert resolve_reducer("mean")(stack)[0, 0] == 2.0
    assert resolve_reducer("max")(stack)[0, 0] == 3.0
    with pytest.raises(ConfigurationError):
        resolve_reducer("mode")
    with pytest.raises(ConfigurationError):
        WindowPolicy(reducer="mode")


def test_output_series_accessors():
    frames = [RasterFrame(time=t, grids={"growth": np.full((2, 2), float(t))}) for t in (1, 2)]
    out = OutputSeries(frames)
    assert len(out) == 2
    assert out.times == [1, 2]
    assert out.to_array().shape == (2, 2, 2)
    assert out[1]["growth"][0, 0] == 2.0
