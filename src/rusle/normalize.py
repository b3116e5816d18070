"""Min-max normalization of a raster over its valid pixels."""
import logging

import numpy
import pygeoprocessing

from . import grid

LOGGER = logging.getLogger(__name__)

_TARGET_NODATA = -1.0


def region_min_max(raster_path):
    """Minimum and maximum of a raster over its valid pixels.

    The raster is expected to be masked to the region already, so that
    every valid pixel lies within it.

    Returns:
        tuple of ``(minimum, maximum)``, or ``(None, None)`` if the raster
        has no valid pixels.
    """
    return grid.RasterGrid.from_path(raster_path).min_max()


def normalize_op(values, minimum, maximum, degenerate_value=1.0):
    """Rescale ``values`` linearly so ``minimum`` maps to 0 and ``maximum``
    to 1.

    When ``maximum == minimum`` every value maps to ``degenerate_value``.
    """
    if maximum == minimum:
        return numpy.full(values.shape, degenerate_value, dtype=numpy.float32)
    return ((values - minimum) / (maximum - minimum)).astype(numpy.float32)


def normalize_raster(base_raster_path, target_raster_path,
                     degenerate_value=1.0):
    """Write a min-max normalized copy of a raster.

    Args:
        base_raster_path (string): path to a single-band raster.
        target_raster_path (string): path to the float32 normalized raster.
            Nodata pixels of the base stay nodata.
        degenerate_value (float): value written to every valid pixel when
            the base raster has a single distinct value.

    Returns:
        tuple of the ``(minimum, maximum)`` used.
    """
    minimum, maximum = region_min_max(base_raster_path)
    if minimum is None:
        LOGGER.warning(
            f'{base_raster_path} has no valid pixels; the normalized '
            'raster is nodata everywhere')
    elif maximum == minimum:
        LOGGER.warning(
            f'All valid pixels of {base_raster_path} have the value '
            f'{minimum}; setting the normalized value to {degenerate_value}')
    else:
        LOGGER.debug(
            f'Normalizing {base_raster_path} over [{minimum}, {maximum}]')

    pygeoprocessing.raster_map(
        op=lambda values: normalize_op(
            values, minimum, maximum, degenerate_value),
        rasters=[base_raster_path],
        target_path=target_raster_path,
        target_dtype=numpy.float32,
        target_nodata=_TARGET_NODATA)
    return minimum, maximum
