"""Soil loss summaries over the whole region and over each sub-unit."""
import dataclasses
import logging
import math
import os

import numpy
import pandas
import pygeoprocessing
import shapely.ops
import shapely.wkb
from osgeo import gdal
from osgeo import ogr

from . import grid
from .soil_loss import SEVERITY_CLASSES

LOGGER = logging.getLogger(__name__)

_BYTE_NODATA = 255
_M2_PER_HA = 10000


@dataclasses.dataclass
class ZonalSummary:
    """Soil loss statistics of one zone.

    Attributes:
        zone_id: the zone identifier.
        mean_soil_loss (float): mean soil loss over valid pixels, t/ha/yr.
        total_soil_loss (float): soil loss summed over the zone, t/yr.
        valid_area (float): area of the valid pixels, ha.
        class_areas (dict): maps every severity class 1-5 to its area, ha.
        fid (int): feature id in the zone vector, if the zone is a feature.
    """
    zone_id: object
    mean_soil_loss: float
    total_soil_loss: float
    valid_area: float
    class_areas: dict
    fid: int = None


def _summary_from_sums(zone_id, loss_sum, n_valid, class_counts, ha_per_px,
                       fid=None):
    if n_valid == 0:
        LOGGER.debug(f'Zone {zone_id} has no valid pixels')
        mean_soil_loss = 0.0
    else:
        mean_soil_loss = loss_sum / n_valid
    return ZonalSummary(
        zone_id=zone_id,
        mean_soil_loss=float(mean_soil_loss),
        # pixel values are t/(ha yr), so multiply the sum by ha/px for t/yr
        total_soil_loss=float(loss_sum * ha_per_px),
        valid_area=float(n_valid * ha_per_px),
        class_areas={
            severity_class: float(class_counts[severity_class] * ha_per_px)
            for severity_class in SEVERITY_CLASSES},
        fid=fid)


def class_indicator_op(severity_classes, severity_class):
    """1 where the pixel is in ``severity_class``, else 0."""
    return (severity_classes == severity_class).astype(numpy.uint8)


def class_indicator(class_raster_path, severity_class, target_path):
    """Write a uint8 raster marking the pixels of one severity class.

    Pixels that are nodata in the class raster are nodata (255).
    """
    pygeoprocessing.raster_map(
        op=lambda classes: class_indicator_op(classes, severity_class),
        rasters=[class_raster_path],
        target_path=target_path,
        target_dtype=numpy.uint8,
        target_nodata=_BYTE_NODATA)


def region_summary(soil_loss_path, class_raster_path, zone_id='region'):
    """Summarize soil loss over every valid pixel of the rasters.

    Args:
        soil_loss_path (string): path to the soil loss raster, t/ha/yr,
            masked to the region.
        class_raster_path (string): path to the severity class raster
            derived from ``soil_loss_path``.
        zone_id: identifier given to the summary.

    Returns:
        ZonalSummary

    Raises:
        InputShapeMismatch if the two rasters do not share one grid.
    """
    soil_loss_grid, class_grid = grid.assert_same_grid(
        [soil_loss_path, class_raster_path])
    ha_per_px = soil_loss_grid.pixel_area / _M2_PER_HA

    loss_sum = 0.0
    n_valid = 0
    class_counts = numpy.zeros(max(SEVERITY_CLASSES) + 1, dtype=numpy.int64)
    for (_, loss_block), (_, class_block) in zip(
            pygeoprocessing.iterblocks(soil_loss_grid.path_band),
            pygeoprocessing.iterblocks(class_grid.path_band)):
        valid_mask = ~pygeoprocessing.array_equals_nodata(
            loss_block, soil_loss_grid.nodata)
        loss_sum += float(numpy.sum(
            loss_block[valid_mask], dtype=numpy.float64))
        n_valid += int(numpy.count_nonzero(valid_mask))

        class_mask = valid_mask & (class_block != class_grid.nodata)
        class_counts += numpy.bincount(
            class_block[class_mask].astype(numpy.int64),
            minlength=class_counts.size)[:class_counts.size]

    summary = _summary_from_sums(
        zone_id, loss_sum, n_valid, class_counts, ha_per_px)
    LOGGER.info(
        f'Mean soil loss over {summary.valid_area:.2f} ha is '
        f'{summary.mean_soil_loss:.4f} t/ha/yr')
    return summary


def _geometries_overlap(vector_path):
    """Whether the polygons of a vector's first layer overlap numerically."""
    vector = gdal.OpenEx(vector_path, gdal.OF_VECTOR)
    layer = vector.GetLayer()
    area_sum = 0
    geometries = []
    for feature in layer:
        ogr_geom = feature.GetGeometryRef()
        area_sum += ogr_geom.Area()
        geometries.append(shapely.wkb.loads(bytes(ogr_geom.ExportToWkb())))
    layer = None
    vector = None

    if not geometries:
        return False
    union_area = shapely.ops.unary_union(geometries).area
    return not math.isclose(union_area, area_sum)


def _zone_ids_by_fid(vector_path, id_field):
    vector = gdal.OpenEx(vector_path, gdal.OF_VECTOR)
    layer = vector.GetLayer()
    zone_ids = {
        feature.GetFID(): feature.GetField(id_field) for feature in layer}
    layer = None
    vector = None
    return zone_ids


def subunit_summaries(soil_loss_path, class_indicator_paths, subunits_path,
                      id_field):
    """Summarize soil loss within each sub-unit polygon.

    Args:
        soil_loss_path (string): path to the soil loss raster, t/ha/yr.
        class_indicator_paths (dict): maps each severity class 1-5 to the
            path of its indicator raster (see ``class_indicator``).
        subunits_path (string): path to a polygon vector in the projection
            of the rasters.
        id_field (string): the field identifying each sub-unit.

    Returns:
        list of ``ZonalSummary``, one per feature, sorted by sub-unit id.
        A sub-unit that covers no valid pixel has a mean and areas of 0.
    """
    raster_paths = [soil_loss_path] + [
        class_indicator_paths[severity_class]
        for severity_class in sorted(SEVERITY_CLASSES)]
    soil_loss_grid = grid.assert_same_grid(raster_paths)[0]
    ha_per_px = soil_loss_grid.pixel_area / _M2_PER_HA

    # Using the list option for raster path bands so that the vector is
    # only rasterized once.
    loss_stats, *class_stats = pygeoprocessing.zonal_statistics(
        [(path, 1) for path in raster_paths], subunits_path,
        polygons_might_overlap=_geometries_overlap(subunits_path))

    empty_stats = {'count': 0, 'sum': 0.0}
    summaries = []
    for fid, zone_id in _zone_ids_by_fid(subunits_path, id_field).items():
        zone_loss = loss_stats.get(fid, empty_stats)
        class_counts = {
            severity_class: stats.get(fid, empty_stats)['sum']
            for severity_class, stats in zip(
                sorted(SEVERITY_CLASSES), class_stats)}
        summaries.append(_summary_from_sums(
            zone_id, zone_loss['sum'], zone_loss['count'], class_counts,
            ha_per_px, fid=fid))

    return sorted(summaries, key=lambda summary: (summary.zone_id,
                                                  summary.fid))


def write_region_table(summary, target_summary_path, target_class_area_path):
    """Write the region-wide summary and its per-class areas as CSVs.

    Args:
        summary (ZonalSummary): as returned by ``region_summary``.
        target_summary_path (string): one-row table of ``mean_soil_loss``
            (t/ha/yr), ``total_soil_loss`` (t/yr) and ``valid_area`` (ha).
        target_class_area_path (string): one row per severity class with
            its name, area (ha) and share of the valid area (%).

    Returns:
        ``None``
    """
    pandas.DataFrame([{
        'mean_soil_loss': summary.mean_soil_loss,
        'total_soil_loss': summary.total_soil_loss,
        'valid_area': summary.valid_area,
    }]).to_csv(target_summary_path, index=False)

    rows = []
    for severity_class, class_name in sorted(SEVERITY_CLASSES.items()):
        area = summary.class_areas[severity_class]
        if summary.valid_area > 0:
            percent = 100 * area / summary.valid_area
        else:
            percent = 0.0
        rows.append({
            'severity_class': severity_class,
            'class_name': class_name,
            'area_ha': area,
            'percent_area': percent,
        })
    pandas.DataFrame(rows).to_csv(target_class_area_path, index=False)


def write_subunit_table(summaries, target_path):
    """Write the mean soil loss and class areas of each sub-unit as a CSV.

    Columns are ``subunit_id``, ``mean_soil_loss`` and ``class_1`` to
    ``class_5`` (ha), one row per sub-unit in the order given.
    """
    rows = []
    for summary in summaries:
        row = {
            'subunit_id': summary.zone_id,
            'mean_soil_loss': summary.mean_soil_loss,
        }
        for severity_class, area in sorted(summary.class_areas.items()):
            row[f'class_{severity_class}'] = area
        rows.append(row)
    pandas.DataFrame(
        rows,
        columns=['subunit_id', 'mean_soil_loss'] + [
            f'class_{severity_class}'
            for severity_class in sorted(SEVERITY_CLASSES)]
    ).to_csv(target_path, index=False)


def write_subunit_vector(summaries, subunits_path, id_field, target_path):
    """Write the sub-unit polygons with their summaries as a GeoPackage.

    The target has the id field and the fields ``mean_sl`` (t/ha/yr),
    ``total_sl`` (t/yr), ``area_ha`` and ``class_1`` to ``class_5`` (ha).

    Args:
        summaries (list): ``ZonalSummary`` per feature of ``subunits_path``,
            as returned by ``subunit_summaries``.
        subunits_path (string): path to the sub-unit polygon vector.
        id_field (string): the field identifying each sub-unit.
        target_path (string): path to the GeoPackage to write.

    Returns:
        ``None``
    """
    if os.path.exists(target_path):
        os.remove(target_path)
    summaries_by_fid = {summary.fid: summary for summary in summaries}

    source_vector = gdal.OpenEx(subunits_path, gdal.OF_VECTOR)
    source_layer = source_vector.GetLayer()
    source_defn = source_layer.GetLayerDefn()
    id_defn = source_defn.GetFieldDefn(source_defn.GetFieldIndex(id_field))

    target_driver = gdal.GetDriverByName('GPKG')
    target_vector = target_driver.Create(
        target_path, 0, 0, 0, gdal.GDT_Unknown)
    # wkbUnknown so that polygons and multipolygons may share the layer
    target_layer = target_vector.CreateLayer(
        os.path.splitext(os.path.basename(target_path))[0],
        source_layer.GetSpatialRef(), ogr.wkbUnknown)
    target_layer.CreateField(
        ogr.FieldDefn(id_defn.GetName(), id_defn.GetType()))

    stat_fields = ['mean_sl', 'total_sl', 'area_ha'] + [
        f'class_{severity_class}'
        for severity_class in sorted(SEVERITY_CLASSES)]
    for field_name in stat_fields:
        field_defn = ogr.FieldDefn(field_name, ogr.OFTReal)
        field_defn.SetWidth(24)
        field_defn.SetPrecision(11)
        target_layer.CreateField(field_defn)

    target_layer_defn = target_layer.GetLayerDefn()
    target_layer.StartTransaction()
    for source_feature in source_layer:
        summary = summaries_by_fid[source_feature.GetFID()]
        target_feature = ogr.Feature(target_layer_defn)
        target_feature.SetGeometry(source_feature.GetGeometryRef().Clone())
        target_feature.SetField(
            id_defn.GetName(), source_feature.GetField(id_field))
        values = [
            summary.mean_soil_loss, summary.total_soil_loss,
            summary.valid_area] + [
            summary.class_areas[severity_class]
            for severity_class in sorted(SEVERITY_CLASSES)]
        for field_name, value in zip(stat_fields, values):
            target_feature.SetField(field_name, float(value))
        target_layer.CreateFeature(target_feature)
    target_layer.CommitTransaction()

    target_layer = None
    target_vector = None
    source_layer = None
    source_vector = None
