#!/usr/bin/env python3
"""occurrence.py

Turn occurrence records (points where the organism is known to live) into
grid cells, for MapFit.

Accepts anything geopandas can read (GeoPackage, shapefile, GeoJSON) or an
existing GeoDataFrame. Points are reprojected to the grid CRS when one is
given, converted to (row, col) with the grid's affine transform, and points
falling outside the grid are dropped.
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Any, List, Optional, Tuple

import geopandas as gpd
from rasterio.transform import rowcol

from growthmaps.errors import ConfigurationError

logger = logging.getLogger(__name__)


def occurrence_cells(
    gdf: gpd.GeoDataFrame,
    transform: Any,
    shape: Tuple[int, int],
    *,
    crs: Optional[Any] = None,
) -> List[Tuple[int, int]]:
    """(row, col) cells of the points in `gdf`, unique, in first-seen order.

    Args:
        gdf: Occurrence geometries. Non-point geometries use a representative point.
        transform: Affine transform of the target grid.
        shape: (rows, cols) of the target grid.
        crs: CRS of the target grid. If given, `gdf` is reprojected to it.
    """
    if gdf.empty:
        raise ConfigurationError("Occurrence data contains zero features")
    if crs is not None:
        if gdf.crs is None:
            raise ConfigurationError("Occurrence data has no CRS; can't reproject to the grid CRS")
        gdf = gdf.to_crs(crs)

    geoms = gdf.geometry[gdf.geometry.notna() & ~gdf.geometry.is_empty]
    # representative_point() of a Point is the point itself
    points = geoms.representative_point()
    xs = points.x.tolist()
    ys = points.y.tolist()
    rows, cols = rowcol(transform, xs, ys)

    nrows, ncols = shape
    cells: List[Tuple[int, int]] = []
    dropped = 0
    for r, c in zip(rows, cols):
        r, c = int(r), int(c)
        if not (0 <= r < nrows and 0 <= c < ncols):
            dropped += 1
            continue
        if (r, c) not in cells:
            cells.append((r, c))
    if dropped:
        logger.warning("Dropped %d occurrence point(s) outside the grid", dropped)
    if not cells:
        raise ConfigurationError("No occurrence points fall inside the grid")
    return cells


def read_occurrence(
    path: Path,
    transform: Any,
    shape: Tuple[int, int],
    *,
    crs: Optional[Any] = None,
    layer: Optional[str] = None,
) -> List[Tuple[int, int]]:
    """Read occurrence points from a vector file and map them to grid cells."""
    path = Path(path)
    if not path.exists():
        raise ConfigurationError(f"Occurrence file not found: {path}")
    gdf = gpd.read_file(path, layer=layer) if layer else gpd.read_file(path)
    return occurrence_cells(gdf, transform, shape, crs=crs)
