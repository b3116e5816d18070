"""Daily precipitation rasters reduced to annual totals and their mean.

Gaps in the daily record are handled per pixel:

* a nodata day contributes nothing to that year's total,
* a year with no valid day at a pixel is nodata at that pixel,
* a year with no observations at all is a fully-nodata raster,
* the mean across years only counts years that are valid at the pixel.
"""
import logging

import numpy
import pandas
import pygeoprocessing
from osgeo import gdal

from . import grid
from . import spec
from .unit_registry import u

LOGGER = logging.getLogger(__name__)

_TARGET_NODATA = -1.0

PRECIPITATION_TABLE = spec.CSVInput(
    id="precipitation_table_path",
    name="daily precipitation table",
    about=(
        "A table mapping each observation date to a daily precipitation "
        "raster. All daily rasters must share one grid."),
    columns=[
        spec.StringInput(
            id="date",
            about="Observation date in ISO format (YYYY-MM-DD)."),
        spec.SingleBandRasterInput(
            id="path",
            about=(
                "Daily precipitation raster. Relative paths are relative to "
                "the table."),
            data_type=float,
            units=u.millimeter)
    ]
)


def read_daily_precipitation_table(table_path):
    """Read the daily precipitation table.

    Args:
        table_path (string): path to a CSV with ``date`` and ``path``
            columns.

    Returns:
        pandas.DataFrame with a ``date`` column of timestamps and a ``path``
        column of absolute raster paths, sorted by date.

    Raises:
        ValueError if the table has no rows or a date cannot be parsed.
    """
    table = PRECIPITATION_TABLE.get_validated_dataframe(table_path)
    if table.empty:
        raise ValueError(f'The precipitation table {table_path} has no rows')
    try:
        table['date'] = pandas.to_datetime(table['date'])
    except (ValueError, TypeError) as error:
        raise ValueError(
            f'A date in {table_path} could not be parsed: {error}')
    return table.sort_values('date').reset_index(drop=True)


def group_paths_by_year(table, start_year, end_year):
    """Group daily raster paths by calendar year.

    Args:
        table (pandas.DataFrame): as returned by
            ``read_daily_precipitation_table``.
        start_year (int): first year of the analysis period.
        end_year (int): last year of the analysis period, inclusive.

    Returns:
        dict mapping every year in ``[start_year, end_year]`` to the list
        of daily raster paths observed within it.  Years without
        observations map to an empty list.
    """
    paths_by_year = {year: [] for year in range(start_year, end_year + 1)}
    for date, path in zip(table['date'], table['path']):
        if date.year in paths_by_year:
            paths_by_year[date.year].append(path)
    return paths_by_year


def sum_annual_precipitation(daily_raster_paths, base_raster_path,
                             target_path):
    """Sum daily precipitation rasters into one annual total.

    Args:
        daily_raster_paths (list): paths to the daily rasters of one year.
        base_raster_path (string): a raster on the daily grid.  Used for the
            grid of the target when ``daily_raster_paths`` is empty.
        target_path (string): path to the float32 annual total raster.

    Returns:
        ``None``

    Raises:
        InputShapeMismatch if the daily rasters do not share one grid.
    """
    if not daily_raster_paths:
        LOGGER.warning(
            f'No daily precipitation observations for {target_path}; '
            'the annual total is nodata everywhere')
        pygeoprocessing.new_raster_from_base(
            base_raster_path, target_path, gdal.GDT_Float32,
            [_TARGET_NODATA], fill_value_list=[_TARGET_NODATA])
        return

    grids = grid.assert_same_grid(daily_raster_paths)
    nodata_list = [daily_grid.nodata for daily_grid in grids]

    def _sum_op(*daily_arrays):
        total = numpy.zeros(daily_arrays[0].shape, dtype=numpy.float32)
        any_valid = numpy.zeros(daily_arrays[0].shape, dtype=bool)
        for daily_array, nodata in zip(daily_arrays, nodata_list):
            valid_mask = numpy.isfinite(daily_array)
            if nodata is not None:
                valid_mask &= ~pygeoprocessing.array_equals_nodata(
                    daily_array, nodata)
            total[valid_mask] += daily_array[valid_mask]
            any_valid |= valid_mask
        total[~any_valid] = _TARGET_NODATA
        return total

    LOGGER.info(
        f'Summing {len(daily_raster_paths)} daily rasters into {target_path}')
    pygeoprocessing.raster_calculator(
        [daily_grid.path_band for daily_grid in grids], _sum_op,
        target_path, gdal.GDT_Float32, _TARGET_NODATA)


def mean_annual_precipitation(annual_raster_paths, target_path):
    """Average annual totals per pixel over the years valid at that pixel.

    Args:
        annual_raster_paths (list): paths to the annual total rasters.
        target_path (string): path to the float32 mean raster.  Pixels
            with no valid year are nodata.

    Returns:
        ``None``

    Raises:
        InputShapeMismatch if the annual rasters do not share one grid.
    """
    grids = grid.assert_same_grid(annual_raster_paths)
    nodata_list = [annual_grid.nodata for annual_grid in grids]

    def _mean_op(*annual_arrays):
        total = numpy.zeros(annual_arrays[0].shape, dtype=numpy.float64)
        n_valid = numpy.zeros(annual_arrays[0].shape, dtype=numpy.int32)
        for annual_array, nodata in zip(annual_arrays, nodata_list):
            valid_mask = numpy.isfinite(annual_array)
            if nodata is not None:
                valid_mask &= ~pygeoprocessing.array_equals_nodata(
                    annual_array, nodata)
            total[valid_mask] += annual_array[valid_mask]
            n_valid += valid_mask
        result = numpy.full(
            annual_arrays[0].shape, _TARGET_NODATA, dtype=numpy.float32)
        has_data = n_valid > 0
        result[has_data] = total[has_data] / n_valid[has_data]
        return result

    pygeoprocessing.raster_calculator(
        [annual_grid.path_band for annual_grid in grids], _mean_op,
        target_path, gdal.GDT_Float32, _TARGET_NODATA)


def aggregate_precipitation(paths_by_year, base_raster_path,
                            target_annual_paths, target_mean_path,
                            task_graph):
    """Schedule the annual sums and the mean across years.

    Each year is summed by an independent task; the mean waits on all of
    them.

    Args:
        paths_by_year (dict): maps year to a list of daily raster paths,
            as returned by ``group_paths_by_year``.
        base_raster_path (string): a raster on the daily grid, used for
            years without observations.
        target_annual_paths (dict): maps year to the annual total path.
        target_mean_path (string): path to the mean annual raster.
        task_graph (taskgraph.TaskGraph): graph to add the tasks to.

    Returns:
        the ``taskgraph.Task`` that writes ``target_mean_path``.
    """
    annual_tasks = []
    for year, daily_paths in sorted(paths_by_year.items()):
        annual_tasks.append(task_graph.add_task(
            func=sum_annual_precipitation,
            args=(daily_paths, base_raster_path, target_annual_paths[year]),
            target_path_list=[target_annual_paths[year]],
            task_name=f'sum precipitation for {year}'))

    return task_graph.add_task(
        func=mean_annual_precipitation,
        args=(
            [target_annual_paths[year] for year in sorted(paths_by_year)],
            target_mean_path),
        target_path_list=[target_mean_path],
        dependent_task_list=annual_tasks,
        task_name='mean annual precipitation')
