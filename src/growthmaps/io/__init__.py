"""File adapters: GeoTIFF series (rasterio) and occurrence points (geopandas).

Import the submodules directly; this package does not pull in the geo stack.
"""
