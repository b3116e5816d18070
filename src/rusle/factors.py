"""The five RUSLE factor rasters.

Each factor has a pixel operation (``*_op``) on numpy arrays and a raster
function that applies it to aligned inputs and writes a float32 raster with
a nodata value of ``_TARGET_NODATA``.  A pixel that is nodata in any input
is nodata in the factor.
"""
import logging
import os
import shutil
import tempfile

import numpy
import pygeoprocessing
from osgeo import gdal

from . import grid
from . import normalize

LOGGER = logging.getLogger(__name__)

_TARGET_NODATA = -1.0
# NDVI spans [-1, 1], so it cannot share the factors' nodata value
_NDVI_NODATA = -9999.0

# Soil erodibility (t ha h / ha MJ mm) by USDA soil texture class
_K_BY_TEXTURE_CLASS = numpy.array([
    0.0288,  # 0
    0.0341,  # 1
    0.0360,  # 2
    0.0394,  # 3
    0.0423,  # 4
    0.0264,  # 5
    0.0394,  # 6
    0.0499,  # 7
    0.0500,  # 8
    0.0450,  # 9
    0.0170,  # 10
    0.0053,  # 11
], dtype=numpy.float32)

_LULC_CODE_RANGE = (1, 17)
_CROPLAND_CODES = (12, 14)

# (upper slope bound in percent, P) for cropland, tested in order
_CROPLAND_SLOPE_RULES = [
    (2, 0.6),
    (5, 0.5),
    (8, 0.5),
    (12, 0.6),
    (16, 0.7),
    (20, 0.8),
]


def _count_out_of_range(raster_path, minimum, maximum):
    """Count valid pixels whose value is outside ``[minimum, maximum]``."""
    return sum(
        int(numpy.count_nonzero((values < minimum) | (values > maximum)))
        for values in grid.RasterGrid.from_path(raster_path).valid_values())


def erosivity_op(precipitation):
    """R factor (MJ mm / ha h yr) from mean annual precipitation (mm)."""
    return 0.363 * precipitation + 79


def rainfall_erosivity(precipitation_path, target_path):
    """Write the R factor raster from a mean annual precipitation raster."""
    pygeoprocessing.raster_map(
        op=erosivity_op,
        rasters=[precipitation_path],
        target_path=target_path,
        target_dtype=numpy.float32,
        target_nodata=_TARGET_NODATA)


def erodibility_op(soil_classes):
    """K factor by texture class.  Codes outside the table map to 0."""
    codes = soil_classes.astype(numpy.int64)
    erodibility = numpy.zeros(codes.shape, dtype=numpy.float32)
    in_table = (codes >= 0) & (codes < _K_BY_TEXTURE_CLASS.size)
    erodibility[in_table] = _K_BY_TEXTURE_CLASS[codes[in_table]]
    return erodibility


def soil_erodibility(soil_texture_path, target_path):
    """Write the K factor raster from a soil texture class raster.

    Pixels with a class code outside 0-11 get a K of 0; their count is
    logged as a warning.
    """
    n_unknown = _count_out_of_range(
        soil_texture_path, 0, _K_BY_TEXTURE_CLASS.size - 1)
    if n_unknown:
        LOGGER.warning(
            f'{n_unknown} pixels of {soil_texture_path} have a soil texture '
            f'class outside 0-{_K_BY_TEXTURE_CLASS.size - 1}; their K '
            'factor is set to 0')

    pygeoprocessing.raster_map(
        op=erodibility_op,
        rasters=[soil_texture_path],
        target_path=target_path,
        target_dtype=numpy.float32,
        target_nodata=_TARGET_NODATA)


def slope_degrees(dem_path, target_path, working_dir=None):
    """Write slope in degrees from a DEM with Horn's 3x3 estimator.

    Args:
        dem_path (string): path to a projected DEM in meters.
        target_path (string): path to the slope raster, in degrees.
        working_dir (string): directory for the temporary percent-rise
            raster.  Defaults to the directory of ``target_path``.

    Returns:
        ``None``
    """
    temp_dir = tempfile.mkdtemp(
        dir=working_dir or os.path.dirname(os.path.abspath(target_path)),
        prefix='slope-')
    percent_rise_path = os.path.join(temp_dir, 'percent_rise.tif')
    try:
        pygeoprocessing.calculate_slope((dem_path, 1), percent_rise_path)
        pygeoprocessing.raster_map(
            op=lambda percent: numpy.degrees(numpy.arctan(percent / 100)),
            rasters=[percent_rise_path],
            target_path=target_path,
            target_dtype=numpy.float32,
            target_nodata=_TARGET_NODATA)
    finally:
        shutil.rmtree(temp_dir, ignore_errors=True)


def degrees_to_percent_op(slope_deg):
    """Slope in percent from slope in degrees."""
    return numpy.tan(slope_deg * numpy.pi / 180) * 100


def percent_slope(slope_degrees_path, target_path):
    """Write slope in percent from a slope raster in degrees."""
    pygeoprocessing.raster_map(
        op=degrees_to_percent_op,
        rasters=[slope_degrees_path],
        target_path=target_path,
        target_dtype=numpy.float32,
        target_nodata=_TARGET_NODATA)


def ls_op(slope_pct, slope_length):
    """LS factor from slope in percent and slope length in feet.

    ``LS = (0.53 s + 0.076 s^2 + 0.76) * sqrt(L / 72.6)``
    """
    return ((0.53 * slope_pct + 0.076 * slope_pct ** 2 + 0.76) *
            numpy.sqrt(slope_length / 72.6))


def topographic_factor(slope_pct_path, slope_length, target_path):
    """Write the LS factor raster.

    Args:
        slope_pct_path (string): path to slope in percent.
        slope_length (float): slope length in feet.
        target_path (string): path to the LS factor raster.

    Returns:
        ``None``
    """
    pygeoprocessing.raster_map(
        op=lambda slope_pct: ls_op(slope_pct, slope_length),
        rasters=[slope_pct_path],
        target_path=target_path,
        target_dtype=numpy.float32,
        target_nodata=_TARGET_NODATA)


def ndvi_op(nir, red):
    """NDVI clamped to [-1, 1]; nodata where ``nir + red`` is 0."""
    nir = nir.astype(numpy.float64)
    red = red.astype(numpy.float64)
    denominator = nir + red
    result = numpy.full(nir.shape, _NDVI_NODATA, dtype=numpy.float32)
    valid_mask = denominator != 0
    result[valid_mask] = numpy.clip(
        (nir[valid_mask] - red[valid_mask]) / denominator[valid_mask], -1, 1)
    return result


def ndvi(reflectance_path, nir_band, red_band, target_path):
    """Write NDVI from two bands of a reflectance raster.

    Args:
        reflectance_path (string): path to a multi-band reflectance raster.
        nir_band (int): 1-based index of the near-infrared band.
        red_band (int): 1-based index of the red band.
        target_path (string): path to the float32 NDVI raster, with a
            nodata value of ``_NDVI_NODATA``.

    Returns:
        ``None``

    Raises:
        ValueError if either band does not exist.
    """
    nir_grid = grid.RasterGrid.from_path(reflectance_path, nir_band, 'NIR')
    red_grid = grid.RasterGrid.from_path(reflectance_path, red_band, 'red')

    def _ndvi_op(nir, red):
        valid_mask = numpy.isfinite(nir) & numpy.isfinite(red)
        for array, nodata in ((nir, nir_grid.nodata), (red, red_grid.nodata)):
            if nodata is not None:
                valid_mask &= ~pygeoprocessing.array_equals_nodata(
                    array, nodata)
        result = numpy.full(nir.shape, _NDVI_NODATA, dtype=numpy.float32)
        result[valid_mask] = ndvi_op(nir[valid_mask], red[valid_mask])
        return result

    pygeoprocessing.raster_calculator(
        [nir_grid.path_band, red_grid.path_band], _ndvi_op, target_path,
        gdal.GDT_Float32, _NDVI_NODATA)


def raw_cover_op(ndvi_values, alpha):
    """Unnormalized C from NDVI: ``exp(alpha * ndvi / (1 - ndvi))``.

    Where NDVI is 1 or more the exponent tends to minus infinity, so the
    value is its limit, 0.
    """
    ndvi_values = ndvi_values.astype(numpy.float64)
    raw_cover = numpy.zeros(ndvi_values.shape, dtype=numpy.float32)
    below_one = ndvi_values < 1
    raw_cover[below_one] = numpy.exp(
        alpha * ndvi_values[below_one] / (1 - ndvi_values[below_one]))
    return raw_cover


def raw_cover_factor(ndvi_path, alpha, target_path):
    """Write the unnormalized C raster from an NDVI raster."""
    pygeoprocessing.raster_map(
        op=lambda ndvi_values: raw_cover_op(ndvi_values, alpha),
        rasters=[ndvi_path],
        target_path=target_path,
        target_dtype=numpy.float32,
        target_nodata=_TARGET_NODATA)


def cover_management(raw_cover_path, target_path):
    """Write the C factor by normalizing raw C over its valid pixels.

    Where every valid raw C is equal, C is 1 (no cover protection).

    Returns:
        tuple of the ``(minimum, maximum)`` raw C.
    """
    return normalize.normalize_raster(
        raw_cover_path, target_path, degenerate_value=1.0)


def support_practice_op(lulc, slope_pct):
    """P factor from land cover and slope in percent.

    Rules are tested in order and the first match wins.  Cropland at
    exactly 20% slope matches no rule and gets the fallback of 1.0.
    """
    cropland = numpy.isin(lulc, _CROPLAND_CODES)
    conditions = [lulc < 11, lulc == 11, lulc == 13, lulc > 14]
    choices = [0.8, 1.0, 1.0, 1.0]
    for upper_bound, p_value in _CROPLAND_SLOPE_RULES:
        conditions.append(cropland & (slope_pct < upper_bound))
        choices.append(p_value)
    conditions.append(cropland & (slope_pct > 20))
    choices.append(0.9)
    return numpy.select(conditions, choices, default=1.0).astype(
        numpy.float32)


def support_practice(lulc_path, slope_pct_path, target_path):
    """Write the P factor raster from aligned land cover and slope rasters.

    Land cover codes outside 1-17 are evaluated by the same rules; their
    count is logged as a warning.

    Raises:
        InputShapeMismatch if the two rasters do not share one grid.
    """
    grid.assert_same_grid([lulc_path, slope_pct_path])
    n_unknown = _count_out_of_range(lulc_path, *_LULC_CODE_RANGE)
    if n_unknown:
        LOGGER.warning(
            f'{n_unknown} pixels of {lulc_path} have a land cover code '
            f'outside {_LULC_CODE_RANGE[0]}-{_LULC_CODE_RANGE[1]}')

    pygeoprocessing.raster_map(
        op=support_practice_op,
        rasters=[lulc_path, slope_pct_path],
        target_path=target_path,
        target_dtype=numpy.float32,
        target_nodata=_TARGET_NODATA)
