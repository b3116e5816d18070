"""Soil loss as the product of the RUSLE factors, and its severity classes."""
import logging

import numpy
import pygeoprocessing

from . import grid

LOGGER = logging.getLogger(__name__)

_TARGET_NODATA = -1.0
_BYTE_NODATA = 255

# (exclusive upper bound in t/ha/yr, class), tested in ascending order
_SEVERITY_THRESHOLDS = [
    (5, 1),
    (10, 2),
    (20, 3),
    (40, 4),
]
_DEFAULT_SEVERITY_CLASS = 5

SEVERITY_CLASSES = {
    1: 'Slight (<5)',
    2: 'Moderate (5-10)',
    3: 'High (10-20)',
    4: 'Very high (20-40)',
    5: 'Severe (>40)',
}


def soil_loss_op(erosivity, erodibility, ls_factor, cover, support):
    """``A = R * K * LS * C * P`` in t/ha/yr."""
    return erosivity * erodibility * ls_factor * cover * support


def calculate_soil_loss(erosivity_path, erodibility_path, ls_factor_path,
                        cover_path, support_path, target_path):
    """Write the soil loss raster from the five factor rasters.

    A pixel that is nodata in any factor is nodata in the result.

    Raises:
        InputShapeMismatch if the factor rasters do not share one grid.
    """
    factor_paths = [
        erosivity_path, erodibility_path, ls_factor_path, cover_path,
        support_path]
    grid.assert_same_grid(factor_paths)
    pygeoprocessing.raster_map(
        op=soil_loss_op,
        rasters=factor_paths,
        target_path=target_path,
        target_dtype=numpy.float32,
        target_nodata=_TARGET_NODATA)


def classify_op(soil_loss):
    """Severity class (1-5) of each soil loss value.

    Lower bounds are inclusive: 4.999 is class 1 and 5.0 is class 2.
    """
    conditions = []
    choices = []
    for upper_bound, severity_class in _SEVERITY_THRESHOLDS:
        conditions.append(soil_loss < upper_bound)
        choices.append(severity_class)
    return numpy.select(
        conditions, choices, default=_DEFAULT_SEVERITY_CLASS).astype(
            numpy.uint8)


def classify_soil_loss(soil_loss_path, target_path):
    """Write the uint8 severity class raster, nodata 255."""
    pygeoprocessing.raster_map(
        op=classify_op,
        rasters=[soil_loss_path],
        target_path=target_path,
        target_dtype=numpy.uint8,
        target_nodata=_BYTE_NODATA)
