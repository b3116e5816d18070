"""RUSLE annual soil loss model.

Soil loss is estimated with the Revised Universal Soil Loss Equation::

    A = R * K * LS * C * P

where R is rainfall erosivity from mean annual precipitation, K is soil
erodibility from soil texture, LS is the slope length and steepness factor,
C is the cover management factor from NDVI and P is the support practice
factor from land cover and slope.  Soil loss is classified into five
severity classes and summarized over the region and over each sub-unit.
"""
import logging

import numpy
import pygeoprocessing
from osgeo import gdal

from . import factors
from . import precipitation
from . import soil_loss
from . import spec
from . import validation
from . import zonal
from .unit_registry import u

LOGGER = logging.getLogger(__name__)

_DEFAULT_NIR_BAND = 8
_DEFAULT_RED_BAND = 4
_DEFAULT_SUBUNIT_ID_FIELD = 'HYBAS_ID'
_DEFAULT_SLOPE_LENGTH = 500
_DEFAULT_ALPHA = -2

_EROSIVITY_UNITS = (
    u.megajoule * u.millimeter / (u.hectare * u.hour * u.year))
_ERODIBILITY_UNITS = (
    u.metric_ton * u.hectare * u.hour /
    (u.hectare * u.megajoule * u.millimeter))
_SOIL_LOSS_UNITS = u.metric_ton / (u.hectare * u.year)

MODEL_SPEC = spec.ModelSpec(
    model_id="rusle",
    model_title="RUSLE Soil Loss",
    validate_spatial_overlap=True,
    different_projections_ok=False,
    module_name=__name__,
    input_field_order=[
        ["workspace_dir", "results_suffix"],
        ["precipitation_table_path", "start_year", "end_year"],
        ["soil_texture_path", "dem_path", "slope_length"],
        ["reflectance_path", "nir_band", "red_band", "alpha"],
        ["lulc_path"],
        ["region_path", "subunits_path", "subunit_id_field"]
    ],
    inputs=[
        spec.WORKSPACE,
        spec.SUFFIX,
        spec.N_WORKERS,
        precipitation.PRECIPITATION_TABLE,
        spec.IntegerInput(
            id="start_year",
            name="start year",
            about="First calendar year of the analysis period.",
            expression="value >= 1"
        ),
        spec.IntegerInput(
            id="end_year",
            name="end year",
            about=(
                "Last calendar year of the analysis period, inclusive. Must "
                "not be earlier than the start year."),
            expression="value >= 1"
        ),
        spec.SingleBandRasterInput(
            id="soil_texture_path",
            name="soil texture",
            about=(
                "Map of USDA soil texture classes, coded 0 to 11. Pixels "
                "with any other code get a soil erodibility of 0."),
            data_type=int,
            units=None,
            projected=True
        ),
        spec.SingleBandRasterInput(
            id="dem_path",
            name="digital elevation model",
            about=(
                "Map of elevation above sea level. All rasters are aligned "
                "to the pixel size and projection of this raster."),
            data_type=float,
            units=u.meter,
            projected=True,
            projection_units=u.meter
        ),
        spec.RasterInput(
            id="reflectance_path",
            name="surface reflectance",
            about=(
                "Multi-band surface reflectance raster holding the "
                "near-infrared and red bands used for NDVI."),
            min_bands=2,
            units=None,
            projected=True
        ),
        spec.IntegerInput(
            id="nir_band",
            name="near-infrared band",
            about=(
                "1-based index of the near-infrared band in the reflectance "
                f"raster. Defaults to {_DEFAULT_NIR_BAND}."),
            required=False,
            expression="value >= 1"
        ),
        spec.IntegerInput(
            id="red_band",
            name="red band",
            about=(
                "1-based index of the red band in the reflectance raster. "
                f"Defaults to {_DEFAULT_RED_BAND}."),
            required=False,
            expression="value >= 1"
        ),
        spec.SingleBandRasterInput(
            id="lulc_path",
            name="land use/land cover",
            about=(
                "Map of land cover classes coded 1 to 17. Classes 12 and 14 "
                "are cropland, whose support practice factor depends on "
                "slope."),
            data_type=int,
            units=None,
            projected=True
        ),
        spec.VectorInput(
            id="region_path",
            name="region",
            about=(
                "Polygons of the study area. All results are masked to "
                "these polygons."),
            geometry_types=spec.POLYGONS,
            fields=[],
            projected=True
        ),
        spec.VectorInput(
            id="subunits_path",
            name="sub-units",
            about=(
                "Polygons over which to summarize soil loss, such as "
                "sub-basins. Defaults to the region polygons."),
            required=False,
            geometry_types=spec.POLYGONS,
            fields=[],
            projected=True
        ),
        spec.StringInput(
            id="subunit_id_field",
            name="sub-unit id field",
            about=(
                "Field of the sub-units identifying each polygon. Defaults "
                f"to {_DEFAULT_SUBUNIT_ID_FIELD}."),
            required=False
        ),
        spec.NumberInput(
            id="slope_length",
            name="slope length",
            about=(
                "Slope length used in the LS factor. Defaults to "
                f"{_DEFAULT_SLOPE_LENGTH}."),
            required=False,
            units=u.foot,
            expression="value > 0"
        ),
        spec.NumberInput(
            id="alpha",
            name="NDVI to C exponent",
            about=(
                "Exponent coefficient of the NDVI to cover management "
                f"relationship. Defaults to {_DEFAULT_ALPHA}."),
            required=False,
            units=None,
            expression="value < 0"
        ),
    ],
    outputs=[
        spec.SingleBandRasterOutput(
            id="soil_loss",
            path="soil_loss.tif",
            about="Annual soil loss per pixel.",
            data_type=float,
            units=_SOIL_LOSS_UNITS
        ),
        spec.SingleBandRasterOutput(
            id="soil_loss_class",
            path="soil_loss_class.tif",
            about=(
                "Soil loss severity class: 1 slight (<5), 2 moderate (5-10), "
                "3 high (10-20), 4 very high (20-40), 5 severe (>40)."),
            data_type=int,
            units=None
        ),
        spec.CSVOutput(
            id="region_summary",
            path="region_summary.csv",
            about="Mean and total soil loss and valid area of the region.",
            columns=[
                spec.NumberOutput(
                    id="mean_soil_loss", units=_SOIL_LOSS_UNITS),
                spec.NumberOutput(
                    id="total_soil_loss", units=u.metric_ton / u.year),
                spec.NumberOutput(id="valid_area", units=u.hectare)
            ]
        ),
        spec.CSVOutput(
            id="region_class_areas",
            path="region_class_areas.csv",
            about="Area of each severity class within the region.",
            columns=[
                spec.IntegerOutput(id="severity_class"),
                spec.StringOutput(id="class_name"),
                spec.NumberOutput(id="area_ha", units=u.hectare),
                spec.NumberOutput(id="percent_area", units=u.percent)
            ],
            index_col="severity_class"
        ),
        spec.CSVOutput(
            id="subunit_class_areas",
            path="subunit_class_areas.csv",
            about=(
                "Mean soil loss and area of each severity class within each "
                "sub-unit, sorted by sub-unit id."),
            columns=[
                spec.StringOutput(id="subunit_id"),
                spec.NumberOutput(
                    id="mean_soil_loss", units=_SOIL_LOSS_UNITS),
                *[spec.NumberOutput(id=f"class_{severity_class}",
                                    units=u.hectare)
                  for severity_class in sorted(soil_loss.SEVERITY_CLASSES)]
            ],
            index_col="subunit_id"
        ),
        spec.VectorOutput(
            id="subunit_results",
            path="subunit_results.gpkg",
            about="Sub-unit polygons with their soil loss summaries.",
            geometry_types=spec.POLYGONS,
            fields=[
                spec.NumberOutput(id="mean_sl", units=_SOIL_LOSS_UNITS),
                spec.NumberOutput(id="total_sl", units=u.metric_ton / u.year),
                spec.NumberOutput(id="area_ha", units=u.hectare),
                *[spec.NumberOutput(id=f"class_{severity_class}",
                                    units=u.hectare)
                  for severity_class in sorted(soil_loss.SEVERITY_CLASSES)]
            ]
        ),
        spec.SingleBandRasterOutput(
            id="annual_precip_[YEAR]",
            path="intermediate_outputs/annual_precip_[YEAR].tif",
            about="Total precipitation of one calendar year.",
            data_type=float,
            units=u.millimeter
        ),
        spec.SingleBandRasterOutput(
            id="mean_annual_precipitation",
            path="intermediate_outputs/mean_annual_precipitation.tif",
            about="Mean of the annual totals over the years valid per pixel.",
            data_type=float,
            units=u.millimeter
        ),
        spec.SingleBandRasterOutput(
            id="ndvi",
            path="intermediate_outputs/ndvi.tif",
            about="NDVI on the grid of the reflectance raster.",
            data_type=float,
            units=None
        ),
        spec.SingleBandRasterOutput(
            id="aligned_dem",
            path="intermediate_outputs/aligned_dem.tif",
            about="Copy of the DEM clipped and masked to the region.",
            data_type=float,
            units=u.meter
        ),
        spec.SingleBandRasterOutput(
            id="aligned_precipitation",
            path="intermediate_outputs/aligned_precipitation.tif",
            about="Mean annual precipitation aligned to the DEM.",
            data_type=float,
            units=u.millimeter
        ),
        spec.SingleBandRasterOutput(
            id="aligned_soil_texture",
            path="intermediate_outputs/aligned_soil_texture.tif",
            about="Soil texture classes aligned to the DEM.",
            data_type=int,
            units=None
        ),
        spec.SingleBandRasterOutput(
            id="aligned_ndvi",
            path="intermediate_outputs/aligned_ndvi.tif",
            about="NDVI aligned to the DEM.",
            data_type=float,
            units=None
        ),
        spec.SingleBandRasterOutput(
            id="aligned_lulc",
            path="intermediate_outputs/aligned_lulc.tif",
            about="Land cover classes aligned to the DEM.",
            data_type=int,
            units=None
        ),
        spec.SingleBandRasterOutput(
            id="slope_degrees",
            path="intermediate_outputs/slope_degrees.tif",
            about="Slope in degrees.",
            data_type=float,
            units=u.degree
        ),
        spec.SingleBandRasterOutput(
            id="slope_percent",
            path="intermediate_outputs/slope_percent.tif",
            about="Slope in percent.",
            data_type=float,
            units=u.percent
        ),
        spec.SingleBandRasterOutput(
            id="r_factor",
            path="intermediate_outputs/r_factor.tif",
            about="Rainfall erosivity.",
            data_type=float,
            units=_EROSIVITY_UNITS
        ),
        spec.SingleBandRasterOutput(
            id="k_factor",
            path="intermediate_outputs/k_factor.tif",
            about="Soil erodibility.",
            data_type=float,
            units=_ERODIBILITY_UNITS
        ),
        spec.SingleBandRasterOutput(
            id="ls_factor",
            path="intermediate_outputs/ls_factor.tif",
            about="Slope length and steepness factor.",
            data_type=float,
            units=None
        ),
        spec.SingleBandRasterOutput(
            id="raw_c_factor",
            path="intermediate_outputs/raw_c_factor.tif",
            about="Cover management factor before normalization.",
            data_type=float,
            units=None
        ),
        spec.SingleBandRasterOutput(
            id="c_factor",
            path="intermediate_outputs/c_factor.tif",
            about="Cover management factor normalized to 0-1 over the region.",
            data_type=float,
            units=None
        ),
        spec.SingleBandRasterOutput(
            id="p_factor",
            path="intermediate_outputs/p_factor.tif",
            about="Support practice factor.",
            data_type=float,
            units=None
        ),
        spec.SingleBandRasterOutput(
            id="class_[CLASS]_mask",
            path="intermediate_outputs/class_[CLASS]_mask.tif",
            about="1 where a pixel is in the severity class, else 0.",
            data_type=int,
            units=None
        ),
        spec.TASKGRAPH_CACHE
    ]
)


def execute(args):
    """RUSLE soil loss.

    Computes annual soil loss from precipitation, soil texture, elevation,
    surface reflectance and land cover, classifies it by severity and
    summarizes it over the region and its sub-units.

    Args:
        args['workspace_dir'] (string): output directory for intermediate,
            temporary, and final files
        args['results_suffix'] (string): (optional) string to append to any
            output file names
        args['precipitation_table_path'] (string): path to a CSV with
            ``date`` and ``path`` columns of daily precipitation rasters (mm)
        args['start_year'] (int): first year of the analysis period
        args['end_year'] (int): last year of the analysis period, inclusive
        args['soil_texture_path'] (string): path to a soil texture class
            raster
        args['dem_path'] (string): path to a projected DEM in meters
        args['reflectance_path'] (string): path to a multi-band surface
            reflectance raster
        args['nir_band'] (int): (optional) near-infrared band index, default 8
        args['red_band'] (int): (optional) red band index, default 4
        args['lulc_path'] (string): path to a land cover class raster
        args['region_path'] (string): path to the study area polygons
        args['subunits_path'] (string): (optional) path to polygons to
            summarize over.  Defaults to ``region_path``.
        args['subunit_id_field'] (string): (optional) field identifying
            each sub-unit, default ``HYBAS_ID``
        args['slope_length'] (number): (optional) slope length in feet,
            default 500
        args['alpha'] (number): (optional) NDVI to C exponent, default -2
        args['n_workers'] (int): if present, indicates how many worker
            processes should be used in parallel processing. -1 indicates
            single process mode, 0 is single process but non-blocking mode,
            and >= 1 is number of processes.

    Returns:
        File registry dictionary mapping MODEL_SPEC output ids to absolute paths

    Raises:
        ValueError if the year range is inverted, a band is missing from
        the reflectance raster or the id field is missing from the
        sub-units.
    """
    args, f_reg, task_graph = MODEL_SPEC.setup(args)

    start_year = args['start_year']
    end_year = args['end_year']
    if end_year < start_year:
        raise ValueError(
            f'The end year {end_year} is before the start year {start_year}')

    nir_band = _value_or_default(args['nir_band'], _DEFAULT_NIR_BAND)
    red_band = _value_or_default(args['red_band'], _DEFAULT_RED_BAND)
    n_bands = pygeoprocessing.get_raster_info(
        args['reflectance_path'])['n_bands']
    for band_name, band_index in (('NIR', nir_band), ('red', red_band)):
        if not 1 <= band_index <= n_bands:
            raise ValueError(
                f'The {band_name} band {band_index} is not in '
                f'{args["reflectance_path"]}, which has {n_bands} band(s)')

    slope_length = _value_or_default(
        args['slope_length'], _DEFAULT_SLOPE_LENGTH)
    alpha = _value_or_default(args['alpha'], _DEFAULT_ALPHA)
    subunits_path = args['subunits_path'] or args['region_path']
    id_field = args['subunit_id_field'] or _DEFAULT_SUBUNIT_ID_FIELD
    _assert_field_exists(subunits_path, id_field)

    LOGGER.info('Aggregating daily precipitation')
    daily_table = precipitation.read_daily_precipitation_table(
        args['precipitation_table_path'])
    paths_by_year = precipitation.group_paths_by_year(
        daily_table, start_year, end_year)
    if not any(paths_by_year.values()):
        LOGGER.warning(
            f'No daily precipitation observations between {start_year} and '
            f'{end_year}; soil loss will be nodata everywhere')
    mean_precip_task = precipitation.aggregate_precipitation(
        paths_by_year, daily_table['path'].iloc[0],
        {year: f_reg['annual_precip_[YEAR]', year] for year in paths_by_year},
        f_reg['mean_annual_precipitation'], task_graph)

    ndvi_task = task_graph.add_task(
        func=factors.ndvi,
        args=(args['reflectance_path'], nir_band, red_band, f_reg['ndvi']),
        target_path_list=[f_reg['ndvi']],
        task_name='calculate NDVI')

    base_list = [
        args['dem_path'], f_reg['mean_annual_precipitation'],
        args['soil_texture_path'], f_reg['ndvi'], args['lulc_path']]
    aligned_list = [
        f_reg['aligned_dem'], f_reg['aligned_precipitation'],
        f_reg['aligned_soil_texture'], f_reg['aligned_ndvi'],
        f_reg['aligned_lulc']]
    # continuous rasters use bilinear, class rasters keep their codes
    interpolation_list = ['bilinear', 'bilinear', 'near', 'bilinear', 'mode']

    dem_raster_info = pygeoprocessing.get_raster_info(args['dem_path'])
    min_pixel_size = numpy.min(numpy.abs(dem_raster_info['pixel_size']))
    target_pixel_size = (min_pixel_size, -min_pixel_size)

    align_task = task_graph.add_task(
        func=pygeoprocessing.align_and_resize_raster_stack,
        args=(
            base_list, aligned_list, interpolation_list,
            target_pixel_size, 'intersection'),
        kwargs={
            'target_projection_wkt': dem_raster_info['projection_wkt'],
            'base_vector_path_list': (args['region_path'],),
            'raster_align_index': 0,
            'vector_mask_options': {
                'mask_vector_path': args['region_path'],
            },
        },
        target_path_list=aligned_list,
        dependent_task_list=[mean_precip_task, ndvi_task],
        task_name='align input rasters')

    erosivity_task = task_graph.add_task(
        func=factors.rainfall_erosivity,
        args=(f_reg['aligned_precipitation'], f_reg['r_factor']),
        target_path_list=[f_reg['r_factor']],
        dependent_task_list=[align_task],
        task_name='calculate R factor')

    erodibility_task = task_graph.add_task(
        func=factors.soil_erodibility,
        args=(f_reg['aligned_soil_texture'], f_reg['k_factor']),
        target_path_list=[f_reg['k_factor']],
        dependent_task_list=[align_task],
        task_name='calculate K factor')

    slope_degrees_task = task_graph.add_task(
        func=factors.slope_degrees,
        args=(f_reg['aligned_dem'], f_reg['slope_degrees']),
        target_path_list=[f_reg['slope_degrees']],
        dependent_task_list=[align_task],
        task_name='calculate slope in degrees')

    slope_percent_task = task_graph.add_task(
        func=factors.percent_slope,
        args=(f_reg['slope_degrees'], f_reg['slope_percent']),
        target_path_list=[f_reg['slope_percent']],
        dependent_task_list=[slope_degrees_task],
        task_name='calculate slope in percent')

    ls_task = task_graph.add_task(
        func=factors.topographic_factor,
        args=(f_reg['slope_percent'], slope_length, f_reg['ls_factor']),
        target_path_list=[f_reg['ls_factor']],
        dependent_task_list=[slope_percent_task],
        task_name='calculate LS factor')

    raw_cover_task = task_graph.add_task(
        func=factors.raw_cover_factor,
        args=(f_reg['aligned_ndvi'], alpha, f_reg['raw_c_factor']),
        target_path_list=[f_reg['raw_c_factor']],
        dependent_task_list=[align_task],
        task_name='calculate raw C factor')

    cover_task = task_graph.add_task(
        func=factors.cover_management,
        args=(f_reg['raw_c_factor'], f_reg['c_factor']),
        target_path_list=[f_reg['c_factor']],
        dependent_task_list=[raw_cover_task],
        task_name='normalize C factor')

    support_task = task_graph.add_task(
        func=factors.support_practice,
        args=(f_reg['aligned_lulc'], f_reg['slope_percent'],
              f_reg['p_factor']),
        target_path_list=[f_reg['p_factor']],
        dependent_task_list=[align_task, slope_percent_task],
        task_name='calculate P factor')

    soil_loss_task = task_graph.add_task(
        func=soil_loss.calculate_soil_loss,
        args=(f_reg['r_factor'], f_reg['k_factor'], f_reg['ls_factor'],
              f_reg['c_factor'], f_reg['p_factor'], f_reg['soil_loss']),
        target_path_list=[f_reg['soil_loss']],
        dependent_task_list=[
            erosivity_task, erodibility_task, ls_task, cover_task,
            support_task],
        task_name='calculate soil loss')

    classify_task = task_graph.add_task(
        func=soil_loss.classify_soil_loss,
        args=(f_reg['soil_loss'], f_reg['soil_loss_class']),
        target_path_list=[f_reg['soil_loss_class']],
        dependent_task_list=[soil_loss_task],
        task_name='classify soil loss')

    task_graph.add_task(
        func=_summarize_region,
        args=(f_reg['soil_loss'], f_reg['soil_loss_class'],
              f_reg['region_summary'], f_reg['region_class_areas']),
        target_path_list=[
            f_reg['region_summary'], f_reg['region_class_areas']],
        dependent_task_list=[classify_task],
        task_name='summarize region')

    class_indicator_paths = {}
    class_indicator_tasks = []
    for severity_class in sorted(soil_loss.SEVERITY_CLASSES):
        indicator_path = f_reg['class_[CLASS]_mask', severity_class]
        class_indicator_paths[severity_class] = indicator_path
        class_indicator_tasks.append(task_graph.add_task(
            func=zonal.class_indicator,
            args=(f_reg['soil_loss_class'], severity_class, indicator_path),
            target_path_list=[indicator_path],
            dependent_task_list=[classify_task],
            task_name=f'mask severity class {severity_class}'))

    task_graph.add_task(
        func=_summarize_subunits,
        args=(f_reg['soil_loss'], class_indicator_paths, subunits_path,
              id_field, f_reg['subunit_class_areas'],
              f_reg['subunit_results']),
        target_path_list=[
            f_reg['subunit_class_areas'], f_reg['subunit_results']],
        dependent_task_list=class_indicator_tasks,
        task_name='summarize sub-units')

    task_graph.close()
    task_graph.join()
    return f_reg.registry


def _value_or_default(value, default):
    return default if value is None else value


def _assert_field_exists(vector_path, field_name):
    """Raise ``ValueError`` if the vector's first layer lacks the field."""
    vector = gdal.OpenEx(vector_path, gdal.OF_VECTOR)
    layer = vector.GetLayer()
    fieldnames = [field.GetName().lower() for field in layer.schema]
    layer = None
    vector = None
    if field_name.lower() not in fieldnames:
        raise ValueError(
            f'The field "{field_name}" was not found in {vector_path}')


def _summarize_region(soil_loss_path, class_raster_path, target_summary_path,
                      target_class_area_path):
    """Summarize soil loss over the region and write the region tables."""
    summary = zonal.region_summary(soil_loss_path, class_raster_path)
    zonal.write_region_table(
        summary, target_summary_path, target_class_area_path)


def _summarize_subunits(soil_loss_path, class_indicator_paths, subunits_path,
                        id_field, target_table_path, target_vector_path):
    """Summarize soil loss per sub-unit and write the table and vector."""
    summaries = zonal.subunit_summaries(
        soil_loss_path, class_indicator_paths, subunits_path, id_field)
    LOGGER.info(f'Summarized soil loss over {len(summaries)} sub-units')
    zonal.write_subunit_table(summaries, target_table_path)
    zonal.write_subunit_vector(
        summaries, subunits_path, id_field, target_vector_path)


@validation.args_validator
def validate(args, limit_to=None):
    """Validate args to ensure they conform to `execute`'s contract.

    Args:
        args (dict): dictionary of key(str)/value pairs where keys and
            values are specified in `execute` docstring.
        limit_to (str): (optional) if not None indicates that validation
            should only occur on the args[limit_to] value.

    Returns:
        list of ([invalid key_a, invalid_keyb, ...], 'warning/error message')
            tuples. Where an entry indicates that the invalid keys caused
            the error message in the second part of the tuple. This should
            be an empty list if validation succeeds.
    """
    validation_warnings = validation.validate(args, MODEL_SPEC)
    invalid_keys = validation.get_invalid_keys(validation_warnings)
    year_keys = ('start_year', 'end_year')
    if (all(args.get(key) not in ('', None) for key in year_keys) and
            not invalid_keys.intersection(year_keys)):
        if int(float(args['end_year'])) < int(float(args['start_year'])):
            validation_warnings.append(
                (list(year_keys), validation.get_message(
                    'INVALID_YEAR_RANGE')))
    return validation_warnings
