"""Single-band raster views and grid compatibility checks.

Every raster transform in this package reads from one or more rasters on
disk and writes a new raster; inputs are never modified in place.  A
``RasterGrid`` describes the grid of one band so that rasters combined in a
single expression can be checked against each other before any pixel is
computed.
"""
import dataclasses
import logging
import os

import numpy
import pygeoprocessing
from osgeo import osr

LOGGER = logging.getLogger(__name__)


class InputShapeMismatch(ValueError):
    """Raised when rasters combined in one expression differ in grid."""


@dataclasses.dataclass(frozen=True)
class RasterGrid:
    """Immutable description of one band of a raster on disk."""

    path: str
    band: int
    pixel_size: tuple
    bounding_box: tuple
    raster_size: tuple
    projection_wkt: str
    nodata: object
    name: str

    @classmethod
    def from_path(cls, path, band=1, name=None):
        """Describe ``band`` of the raster at ``path``.

        Args:
            path (string): path to a GDAL raster.
            band (int): 1-based band index.
            name (string): a label used in messages.  Defaults to the
                raster's basename.

        Returns:
            RasterGrid

        Raises:
            ValueError if ``band`` does not exist in the raster.
        """
        raster_info = pygeoprocessing.get_raster_info(path)
        if not 1 <= band <= raster_info['n_bands']:
            raise ValueError(
                f'Band {band} does not exist in {path}, which has '
                f'{raster_info["n_bands"]} band(s)')
        return cls(
            path=path,
            band=band,
            pixel_size=tuple(raster_info['pixel_size']),
            bounding_box=tuple(raster_info['bounding_box']),
            raster_size=tuple(raster_info['raster_size']),
            projection_wkt=raster_info['projection_wkt'],
            nodata=raster_info['nodata'][band - 1],
            name=name if name else os.path.basename(path))

    @property
    def path_band(self):
        """The ``(path, band)`` tuple pygeoprocessing expects."""
        return (self.path, self.band)

    @property
    def pixel_area(self):
        """Area of one pixel in squared projection units."""
        return abs(self.pixel_size[0] * self.pixel_size[1])

    def _differences(self, other):
        differences = []
        for prop in ('raster_size', 'pixel_size', 'bounding_box'):
            if not numpy.allclose(getattr(self, prop), getattr(other, prop)):
                differences.append(
                    (prop, getattr(self, prop), getattr(other, prop)))

        if not _same_projection(self.projection_wkt, other.projection_wkt):
            differences.append(
                ('projection', self.projection_wkt, other.projection_wkt))
        return differences

    def same_grid_as(self, other):
        """Whether ``other`` shares this raster's size, pixel size, extent
        and projection."""
        return not self._differences(other)

    def assert_same_grid(self, *others):
        """Check that every raster in ``others`` shares this grid.

        Raises:
            InputShapeMismatch naming both rasters and the first property
            whose values differ.
        """
        for other in others:
            differences = self._differences(other)
            if differences:
                prop, this_value, other_value = differences[0]
                raise InputShapeMismatch(
                    f'Rasters {self.name} and {other.name} differ in '
                    f'{prop}: {this_value} != {other_value}')

    def clip(self, mask_vector_path, target_path):
        """Set every pixel outside the polygons of a vector to nodata.

        The target raster keeps this raster's grid.

        Args:
            mask_vector_path (string): path to a polygon vector.
            target_path (string): where to write the clipped raster.

        Returns:
            RasterGrid of the clipped raster.
        """
        pygeoprocessing.mask_raster(
            self.path_band, mask_vector_path, target_path)
        return RasterGrid.from_path(target_path, name=self.name)

    def valid_values(self):
        """Yield a 1-d array of the valid pixel values of each block.

        Nodata and non-finite pixels are excluded.
        """
        for _, block in pygeoprocessing.iterblocks(self.path_band):
            valid_mask = numpy.isfinite(block)
            if self.nodata is not None:
                valid_mask &= ~pygeoprocessing.array_equals_nodata(
                    block, self.nodata)
            yield block[valid_mask]

    def min_max(self):
        """Minimum and maximum over valid pixels, or ``(None, None)``."""
        minimum = None
        maximum = None
        for values in self.valid_values():
            if values.size == 0:
                continue
            block_min = float(values.min())
            block_max = float(values.max())
            minimum = block_min if minimum is None else min(minimum, block_min)
            maximum = block_max if maximum is None else max(maximum, block_max)
        return minimum, maximum

    def mean(self):
        """Arithmetic mean over valid pixels, or ``None`` if there are none."""
        total = 0.0
        count = 0
        for values in self.valid_values():
            total += float(numpy.sum(values, dtype=numpy.float64))
            count += values.size
        if count == 0:
            return None
        return total / count

    def count(self):
        """Number of valid pixels."""
        return sum(values.size for values in self.valid_values())


def _same_projection(wkt_a, wkt_b):
    if not wkt_a or not wkt_b:
        return wkt_a == wkt_b
    srs_a = osr.SpatialReference()
    srs_a.ImportFromWkt(wkt_a)
    srs_b = osr.SpatialReference()
    srs_b.ImportFromWkt(wkt_b)
    return bool(srs_a.IsSame(srs_b))


def assert_same_grid(raster_paths):
    """Check that the first band of every raster shares one grid.

    Args:
        raster_paths (list): paths to rasters that are combined pixelwise.

    Returns:
        list of ``RasterGrid``, one per path.

    Raises:
        InputShapeMismatch if any two rasters differ in grid.
    """
    grids = [RasterGrid.from_path(path) for path in raster_paths]
    if grids:
        grids[0].assert_same_grid(*grids[1:])
    LOGGER.debug(f'{len(grids)} rasters share one grid')
    return grids
