#!/usr/bin/env python3
"""geotiff.py

GeoTIFF adapter for growthmaps: a lazy source series over one file per
(timestamp, variable), and a writer for output series.

- Files are opened only when their frame is reached and closed right after
  band 1 is read, so a run never holds more than the engine asks for.
- Each file's own nodata value becomes NaN in the frame; frames therefore use
  NaN as their sentinel.
- The writer emits one tiled, deflate-compressed GeoTIFF per output step,
  reusing the georeferencing of a source file.

Required deps (typical conda geo stack): rasterio, numpy
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Any, Dict, Iterator, List, Mapping, Optional, Sequence, Tuple

import numpy as np
import rasterio

from growthmaps.errors import ConfigurationError
from growthmaps.series import OutputSeries, RasterFrame

logger = logging.getLogger(__name__)

Entry = Tuple[Any, Mapping[str, Path]]


def _ensure_dir(p: Path) -> None:
    p.mkdir(parents=True, exist_ok=True)


def _time_context(t: Any) -> Dict[str, Any]:
    """Template fields for a timestamp.

    Always `time`. Datetimes also get zero-padded year/month/day/hour/minute
    fields, and `time` becomes the full ISO timestamp (date only at midnight),
    so distinct timestamps never render to the same path.
    """
    ctx: Dict[str, Any] = {"time": t}
    if isinstance(t, (np.datetime64,)) or hasattr(t, "year"):
        import pandas as pd

        ts = pd.Timestamp(t)
        label = ts.strftime("%Y-%m-%d") if ts == ts.normalize() else ts.isoformat().replace(":", "")
        ctx.update(
            {
                "year": ts.year,
                "month": f"{ts.month:02d}",
                "day": f"{ts.day:02d}",
                "hour": f"{ts.hour:02d}",
                "minute": f"{ts.minute:02d}",
                "time": label,
            }
        )
    return ctx


def _render_path(template: str, context: Dict[str, Any]) -> Path:
    try:
        return Path(template.format(**context))
    except KeyError as e:
        missing = e.args[0]
        raise ConfigurationError(f"Missing key for path template {template!r}: {missing}") from e


def read_profile(path: Path) -> Dict[str, Any]:
    """rasterio profile of a GeoTIFF (for writing outputs on the same grid)."""
    with rasterio.open(path) as src:
        return src.profile.copy()


class GeoTiffSeries:
    """Lazy, single-use series of frames read from GeoTIFFs.

    Args:
        entries: (time, {variable: path}) per frame, in increasing time order.
        units: Optional variable -> unit tag of the stored values.
        band: Band to read from every file.
    """

    def __init__(
        self,
        entries: Sequence[Entry],
        *,
        units: Optional[Mapping[str, str]] = None,
        band: int = 1,
    ):
        self.entries = [(t, {var: Path(p) for var, p in paths.items()}) for t, paths in entries]
        self.units = dict(units or {})
        self.band = band
        self._consumed = False

    @classmethod
    def from_template(
        cls,
        template: str,
        variables: Sequence[str],
        times: Sequence[Any],
        **kwargs: Any,
    ) -> "GeoTiffSeries":
        """Build entries from a path template.

        Template fields: {var}, {time}, and for datetime-like times {year},
        {month} and {day} (zero padded), e.g.
        "data/interim/rasters/CHELSA_{var}_{month}_{year}_V.2.1.tif".
        """
        entries: List[Entry] = []
        for t in times:
            ctx = _time_context(t)
            entries.append((t, {var: _render_path(template, dict(ctx, var=var)) for var in variables}))
        return cls(entries, **kwargs)

    def check_exists(self) -> List[Path]:
        """Paths that don't exist yet. Cheap; no file is opened."""
        return [p for _, paths in self.entries for p in paths.values() if not p.exists()]

    def __iter__(self) -> Iterator[RasterFrame]:
        if self._consumed:
            raise RuntimeError("GeoTiffSeries has already been consumed; build a new one to iterate again")
        self._consumed = True
        for t, paths in self.entries:
            yield self._read_frame(t, paths)

    def _read_frame(self, t: Any, paths: Mapping[str, Path]) -> RasterFrame:
        grids: Dict[str, np.ndarray] = {}
        for var, path in paths.items():
            if not path.exists():
                raise ConfigurationError(f"Raster not found for {var} at {t}: {path}")
            with rasterio.open(path) as src:
                data = src.read(self.band).astype("float64")
                nodata = src.nodata
            if nodata is not None and not np.isnan(nodata):
                data[data == nodata] = np.nan
            grids[var] = data
        logger.debug("Read frame %s from %d file(s)", t, len(paths))
        return RasterFrame(time=t, grids=grids, missingval=float("nan"), units=self.units)


def _time_label(t: Any) -> str:
    ctx = _time_context(t)
    return str(ctx["time"]).replace(":", "").replace(" ", "T")


def write_output_series(
    output: OutputSeries,
    out_dir: Path,
    *,
    profile: Mapping[str, Any],
    prefix: str = "growth",
    overwrite: bool = False,
    dry_run: bool = False,
) -> List[Path]:
    """Write one GeoTIFF per output step.

    Parameters
    ----------
    output : OutputSeries
        Completed run output.
    out_dir : Path
        Destination directory.
    profile : dict
        rasterio profile of the source grid (transform, crs); see read_profile().
    prefix : str
        File name prefix; files are named "{prefix}_{time}.tif".
    overwrite : bool
        If False, skip outputs that already exist.
    dry_run : bool
        If True, log planned writes without writing.

    Returns
    -------
    list[Path]
        Paths of every output step (written or skipped).
    """
    out_dir = Path(out_dir)
    planned = [out_dir / f"{prefix}_{_time_label(t)}.tif" for t in output.times]
    clashes = sorted({p.name for p in planned if planned.count(p) > 1})
    if clashes:
        raise ConfigurationError(f"Output steps map to the same file name: {clashes}")
    if not dry_run:
        _ensure_dir(out_dir)

    paths: List[Path] = []
    for frame, out_path in zip(output, planned):
        grid = np.asarray(frame[output.name], dtype="float32")
        paths.append(out_path)

        if out_path.exists() and not overwrite:
            logger.info("[SKIP] %s", out_path.name)
            continue
        logger.info("Writing %s", out_path)
        if dry_run:
            continue

        p = dict(profile)
        # Let GDAL pick tile sizes; source block sizes may not be valid tiles
        p.pop("blockxsize", None)
        p.pop("blockysize", None)
        p.update(
            driver="GTiff",
            height=grid.shape[0],
            width=grid.shape[1],
            count=1,
            dtype="float32",
            nodata=frame.missingval,
            tiled=True,
            compress="deflate",
        )
        with rasterio.open(out_path, "w", **p) as dst:
            dst.write(grid, 1)

    return paths
