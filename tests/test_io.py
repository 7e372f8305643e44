#!/usr/bin/env python3

from __future__ import annotations

import numpy as np
import pytest
import rasterio
from rasterio.transform import from_origin

import geopandas as gpd
from shapely.geometry import Point

from growthmaps.errors import ConfigurationError
from growthmaps.framework import mapgrowth
from growthmaps.io.geotiff import GeoTiffSeries, read_profile, write_output_series
from growthmaps.io.occurrence import occurrence_cells, read_occurrence
from growthmaps.models import Layer, ModelSet
from growthmaps.series import OutputSeries, RasterFrame

TRANSFORM = from_origin(0.0, 10.0, 1.0, 1.0)


def _write_tif(path, data, nodata=-9999.0):
    profile = dict(
        driver="GTiff",
        height=data.shape[0],
        width=data.shape[1],
        count=1,
        dtype="float32",
        crs="EPSG:4326",
        transform=TRANSFORM,
        nodata=nodata,
    )
    with rasterio.open(path, "w", **profile) as dst:
        dst.write(data.astype("float32"), 1)


@pytest.fixture
def temp_tifs(tmp_path):
    rng = np.random.default_rng(1)
    for t in (1, 2, 3):
        data = rng.uniform(5.0, 35.0, size=(10, 10))
        if t == 2:
            data[4, 4] = -9999.0
        _write_tif(tmp_path / f"temp_{t}.tif", data)
    return tmp_path


# --- GeoTIFF series ---

def test_geotiff_series_reads_lazily_and_maps_nodata(temp_tifs):
    series = GeoTiffSeries.from_template(str(temp_tifs / "temp_{time}.tif"), ["temp"], [1, 2, 3], units={"temp": "degC"})
    assert series.check_exists() == []

    frames = iter(series)
    first = next(frames)
    assert first.time == 1
    assert first.shape == (10, 10)
    assert first.units == {"temp": "degC"}
    second = next(frames)
    assert np.isnan(second["temp"][4, 4])

    with pytest.raises(RuntimeError):
        iter(series)


def test_geotiff_series_missing_file(tmp_path):
    series = GeoTiffSeries([(1, {"temp": tmp_path / "nope.tif"})])
    assert series.check_exists() == [tmp_path / "nope.tif"]
    with pytest.raises(ConfigurationError):
        list(series)


def test_template_with_datetimes(tmp_path):
    series = GeoTiffSeries.from_template(
        str(tmp_path / "CHELSA_{var}_{month}_{year}.tif"), ["tas"], [np.datetime64("2020-03-01")]
    )
    assert series.entries[0][1]["tas"].name == "CHELSA_tas_03_2020.tif"
    with pytest.raises(ConfigurationError):
        GeoTiffSeries.from_template(str(tmp_path / "{nope}.tif"), ["tas"], [1])


def test_run_and_write_geotiffs(temp_tifs, make_growth):
    series = GeoTiffSeries.from_template(str(temp_tifs / "temp_{time}.tif"), ["temp"], [1, 2, 3], units={"temp": "degC"})
    out = mapgrowth(ModelSet.of(Layer("temp", "K", make_growth())), series, [1, 2, 3])

    profile = read_profile(temp_tifs / "temp_1.tif")
    out_dir = temp_tifs / "out"
    paths = write_output_series(out, out_dir, profile=profile)

    assert [p.name for p in paths] == ["growth_1.tif", "growth_2.tif", "growth_3.tif"]
    with rasterio.open(paths[1]) as src:
        assert src.crs == profile["crs"]
        assert src.transform == TRANSFORM
        back = src.read(1)
    assert back.shape == (10, 10)
    assert np.isnan(back[4, 4])
    assert (back[~np.isnan(back)] >= 0).all()
    assert np.isnan(back).sum() == 1


def test_write_skips_existing_and_dry_run(temp_tifs, make_growth):
    def run():
        series = GeoTiffSeries.from_template(str(temp_tifs / "temp_{time}.tif"), ["temp"], [1, 2, 3], units={"temp": "degC"})
        return mapgrowth(ModelSet.of(Layer("temp", "K", make_growth())), series, [1])

    profile = read_profile(temp_tifs / "temp_1.tif")
    planned = write_output_series(run(), temp_tifs / "dry", profile=profile, dry_run=True)
    assert not planned[0].exists()

    first = write_output_series(run(), temp_tifs / "out", profile=profile)
    mtime = first[0].stat().st_mtime_ns
    write_output_series(run(), temp_tifs / "out", profile=profile)
    assert first[0].stat().st_mtime_ns == mtime


def _hourly_output(hours, name="growth"):
    frames = [
        RasterFrame(
            time=np.datetime64(f"2020-01-01T{h:02d}:00"),
            grids={name: np.full((10, 10), float(h))},
            missingval=-9999.0,
        )
        for h in hours
    ]
    return OutputSeries(frames, name=name)


def test_write_hourly_steps_to_distinct_files(temp_tifs):
    profile = read_profile(temp_tifs / "temp_1.tif")
    paths = write_output_series(_hourly_output([1, 2, 3]), temp_tifs / "hourly", profile=profile)

    assert len(set(paths)) == 3
    assert [p.name for p in paths] == [
        "growth_2020-01-01T010000.tif",
        "growth_2020-01-01T020000.tif",
        "growth_2020-01-01T030000.tif",
    ]
    for h, path in zip([1, 2, 3], paths):
        with rasterio.open(path) as src:
            assert src.read(1)[0, 0] == h


def test_write_midnight_steps_keep_date_names(temp_tifs):
    profile = read_profile(temp_tifs / "temp_1.tif")
    paths = write_output_series(_hourly_output([0, 6]), temp_tifs / "mixed", profile=profile, dry_run=True)
    assert [p.name for p in paths] == ["growth_2020-01-01.tif", "growth_2020-01-01T060000.tif"]


def test_write_rejects_steps_sharing_a_file_name(temp_tifs):
    out = _hourly_output([1])
    out = OutputSeries(out.frames * 2, name=out.name)
    profile = read_profile(temp_tifs / "temp_1.tif")
    with pytest.raises(ConfigurationError, match="same file name"):
        write_output_series(out, temp_tifs / "clash", profile=profile)
    assert not (temp_tifs / "clash").exists()


def test_template_with_hourly_datetimes(tmp_path):
    times = [np.datetime64("2020-01-01T01:00"), np.datetime64("2020-01-01T02:00")]
    series = GeoTiffSeries.from_template(str(tmp_path / "tas_{time}.tif"), ["tas"], times)
    names = [paths["tas"].name for _, paths in series.entries]
    assert names == ["tas_2020-01-01T010000.tif", "tas_2020-01-01T020000.tif"]

    series = GeoTiffSeries.from_template(str(tmp_path / "tas_{year}{month}{day}_{hour}.tif"), ["tas"], times)
    assert [paths["tas"].name for _, paths in series.entries] == ["tas_20200101_01.tif", "tas_20200101_02.tif"]


# --- Occurrence ---

def _points():
    # cell centres of (0, 0) and (2, 3), a duplicate of (0, 0) and one point off the grid
    return gpd.GeoDataFrame(
        geometry=[Point(0.5, 9.5), Point(3.5, 7.5), Point(0.4, 9.6), Point(20.0, 20.0)],
        crs="EPSG:4326",
    )


def test_occurrence_cells():
    cells = occurrence_cells(_points(), TRANSFORM, (10, 10), crs="EPSG:4326")
    assert cells == [(0, 0), (2, 3)]


def test_occurrence_errors():
    with pytest.raises(ConfigurationError):
        occurrence_cells(gpd.GeoDataFrame(geometry=[], crs="EPSG:4326"), TRANSFORM, (10, 10))
    with pytest.raises(ConfigurationError):
        occurrence_cells(gpd.GeoDataFrame(geometry=[Point(50.0, 50.0)]), TRANSFORM, (10, 10))
    with pytest.raises(ConfigurationError):
        occurrence_cells(gpd.GeoDataFrame(geometry=[Point(0.5, 9.5)]), TRANSFORM, (10, 10), crs="EPSG:4326")


def test_read_occurrence_from_file(tmp_path):
    path = tmp_path / "occurrence.geojson"
    _points().to_file(path, driver="GeoJSON")
    assert read_occurrence(path, TRANSFORM, (10, 10)) == [(0, 0), (2, 3)]
    with pytest.raises(ConfigurationError):
        read_occurrence(tmp_path / "missing.gpkg", TRANSFORM, (10, 10))
