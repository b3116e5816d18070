"""Tests for aggregating daily precipitation rasters."""
import os
import shutil
import tempfile
import textwrap
import unittest

import numpy
import numpy.testing
import pygeoprocessing
import taskgraph
from osgeo import gdal
from osgeo import osr

gdal.UseExceptions()

NODATA = -9999.0


def _make_raster(path, array, nodata=NODATA):
    srs = osr.SpatialReference()
    srs.ImportFromEPSG(26910)
    pygeoprocessing.numpy_array_to_raster(
        numpy.array(array, dtype=numpy.float32), nodata, (10, -10),
        (461261, 4923265), srs.ExportToWkt(), path)
    return path


class PrecipitationTableTests(unittest.TestCase):
    """Tests for reading and grouping the daily precipitation table."""

    def setUp(self):
        """Create a temporary workspace."""
        self.workspace_dir = tempfile.mkdtemp()

    def tearDown(self):
        """Remove the temporary workspace."""
        shutil.rmtree(self.workspace_dir)

    def _write_table(self, contents):
        table_path = os.path.join(self.workspace_dir, 'precip.csv')
        with open(table_path, 'w') as table_file:
            table_file.write(textwrap.dedent(contents.strip()))
        return table_path

    def test_read_table(self):
        """Precipitation: relative paths expand and rows sort by date."""
        from rusle import precipitation

        os.makedirs(os.path.join(self.workspace_dir, 'daily'))
        table_path = self._write_table(
            """
            date,path
            2020-01-02,daily/b.tif
            2020-01-01,daily/a.tif
            """)
        table = precipitation.read_daily_precipitation_table(table_path)

        self.assertEqual(
            list(table['path']),
            [os.path.join(self.workspace_dir, 'daily', 'a.tif'),
             os.path.join(self.workspace_dir, 'daily', 'b.tif')])
        self.assertEqual(
            [date.day for date in table['date']], [1, 2])

    def test_read_table_missing_column(self):
        """Precipitation: a table without a path column is rejected."""
        from rusle import precipitation

        table_path = self._write_table(
            """
            date,raster
            2020-01-01,a.tif
            """)
        with self.assertRaises(ValueError) as cm:
            precipitation.read_daily_precipitation_table(table_path)
        self.assertIn('path', str(cm.exception))

    def test_read_table_bad_date(self):
        """Precipitation: an unparseable date is rejected."""
        from rusle import precipitation

        table_path = self._write_table(
            """
            date,path
            not a date,a.tif
            """)
        with self.assertRaises(ValueError):
            precipitation.read_daily_precipitation_table(table_path)

    def test_group_paths_by_year(self):
        """Precipitation: years are whole calendar years, inclusive."""
        from rusle import precipitation

        table_path = self._write_table(
            """
            date,path
            2019-12-31,a.tif
            2020-01-01,b.tif
            2020-12-31,c.tif
            2021-06-15,d.tif
            2023-01-01,e.tif
            """)
        table = precipitation.read_daily_precipitation_table(table_path)
        paths_by_year = precipitation.group_paths_by_year(table, 2020, 2022)

        self.assertEqual(sorted(paths_by_year), [2020, 2021, 2022])
        self.assertEqual(
            [os.path.basename(p) for p in paths_by_year[2020]],
            ['b.tif', 'c.tif'])
        self.assertEqual(
            [os.path.basename(p) for p in paths_by_year[2021]], ['d.tif'])
        self.assertEqual(paths_by_year[2022], [])


class PrecipitationRasterTests(unittest.TestCase):
    """Tests for the annual sums and their mean."""

    def setUp(self):
        """Create a temporary workspace."""
        self.workspace_dir = tempfile.mkdtemp()

    def tearDown(self):
        """Remove the temporary workspace."""
        shutil.rmtree(self.workspace_dir)

    def test_sum_with_gaps(self):
        """Precipitation: nodata days contribute nothing to the sum."""
        from rusle import precipitation

        day_1 = _make_raster(
            os.path.join(self.workspace_dir, 'day_1.tif'),
            [[1, NODATA], [2, NODATA]])
        day_2 = _make_raster(
            os.path.join(self.workspace_dir, 'day_2.tif'),
            [[3, 4], [NODATA, NODATA]])
        target_path = os.path.join(self.workspace_dir, 'annual.tif')
        precipitation.sum_annual_precipitation(
            [day_1, day_2], day_1, target_path)

        numpy.testing.assert_allclose(
            pygeoprocessing.raster_to_numpy_array(target_path),
            [[4, 4], [2, precipitation._TARGET_NODATA]])
        self.assertEqual(
            pygeoprocessing.get_raster_info(target_path)['nodata'][0],
            precipitation._TARGET_NODATA)

    def test_sum_without_observations(self):
        """Precipitation: a year without observations is all nodata."""
        from rusle import precipitation

        base_path = _make_raster(
            os.path.join(self.workspace_dir, 'day_1.tif'),
            [[1, 2], [3, 4]])
        target_path = os.path.join(self.workspace_dir, 'annual.tif')
        with self.assertLogs('rusle.precipitation', level='WARNING'):
            precipitation.sum_annual_precipitation(
                [], base_path, target_path)

        numpy.testing.assert_allclose(
            pygeoprocessing.raster_to_numpy_array(target_path),
            numpy.full((2, 2), precipitation._TARGET_NODATA))

    def test_sum_grid_mismatch(self):
        """Precipitation: daily rasters on different grids are rejected."""
        from rusle import precipitation
        from rusle.grid import InputShapeMismatch

        day_1 = _make_raster(
            os.path.join(self.workspace_dir, 'day_1.tif'), [[1, 2], [3, 4]])
        day_2 = _make_raster(
            os.path.join(self.workspace_dir, 'day_2.tif'), [[1, 2, 3]])
        target_path = os.path.join(self.workspace_dir, 'annual.tif')
        with self.assertRaises(InputShapeMismatch):
            precipitation.sum_annual_precipitation(
                [day_1, day_2], day_1, target_path)
        self.assertFalse(os.path.exists(target_path))

    def test_mean_over_valid_years(self):
        """Precipitation: nodata years are skipped, not averaged as zero."""
        from rusle import precipitation

        nodata = precipitation._TARGET_NODATA
        year_1 = _make_raster(
            os.path.join(self.workspace_dir, 'year_1.tif'),
            [[10, nodata, nodata]], nodata=nodata)
        year_2 = _make_raster(
            os.path.join(self.workspace_dir, 'year_2.tif'),
            [[20, 30, nodata]], nodata=nodata)
        target_path = os.path.join(self.workspace_dir, 'mean.tif')
        precipitation.mean_annual_precipitation([year_1, year_2], target_path)

        numpy.testing.assert_allclose(
            pygeoprocessing.raster_to_numpy_array(target_path),
            [[15, 30, nodata]])

    def test_aggregate_precipitation(self):
        """Precipitation: annual totals and their mean through a graph."""
        from rusle import precipitation

        daily = {}
        for name, value in (('a', 100), ('b', 300), ('c', 400)):
            daily[name] = _make_raster(
                os.path.join(self.workspace_dir, f'{name}.tif'),
                numpy.full((3, 3), value))
        paths_by_year = {
            2020: [daily['a'], daily['b']],
            2021: [daily['c']],
            2022: [],
        }
        annual_paths = {
            year: os.path.join(self.workspace_dir, f'annual_{year}.tif')
            for year in paths_by_year}
        mean_path = os.path.join(self.workspace_dir, 'mean.tif')

        graph = taskgraph.TaskGraph(
            os.path.join(self.workspace_dir, 'taskgraph_cache'), -1)
        precipitation.aggregate_precipitation(
            paths_by_year, daily['a'], annual_paths, mean_path, graph)
        graph.close()
        graph.join()

        numpy.testing.assert_allclose(
            pygeoprocessing.raster_to_numpy_array(annual_paths[2020]),
            numpy.full((3, 3), 400))
        numpy.testing.assert_allclose(
            pygeoprocessing.raster_to_numpy_array(annual_paths[2022]),
            numpy.full((3, 3), precipitation._TARGET_NODATA))
        # the empty year does not pull the mean down
        numpy.testing.assert_allclose(
            pygeoprocessing.raster_to_numpy_array(mean_path),
            numpy.full((3, 3), 400))
