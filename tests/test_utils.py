"""Module for testing the rusle.utils module."""
import codecs
import glob
import logging
import os
import platform
import re
import shutil
import tempfile
import textwrap
import unittest
import warnings

from osgeo import gdal
from osgeo import ogr

gdal.UseExceptions()


class TimeFormattingTests(unittest.TestCase):
    """Test Time Formatting."""

    def test_format_time_hours(self):
        """Test format time hours."""
        from rusle.utils import _format_time

        self.assertEqual(_format_time(3667), '1h 1m 7s')

    def test_format_time_minutes(self):
        """Test format time minutes."""
        from rusle.utils import _format_time

        self.assertEqual(_format_time(67), '1m 7s')

    def test_format_time_seconds(self):
        """Test format time seconds."""
        from rusle.utils import _format_time

        self.assertEqual(_format_time(7), '7s')


class LogToFileTests(unittest.TestCase):
    """Test Log To File."""

    def setUp(self):
        """Create a temporary workspace."""
        self.workspace = tempfile.mkdtemp()

    def tearDown(self):
        """Remove temporary workspace."""
        shutil.rmtree(self.workspace)

    def test_log_to_file(self):
        """Utils: messages within the context reach the logfile."""
        from rusle.utils import log_to_file

        logfile = os.path.join(self.workspace, 'logfile.txt')
        logger = logging.getLogger('rusle.test')

        with log_to_file(logfile) as handler:
            logger.info('this should be logged')
            logger.warning('this should also be logged')
            handler.flush()
        logger.info('this is after the context')

        with open(logfile) as opened_logfile:
            messages = [msg for msg in opened_logfile.read().split('\n')
                        if msg]
        self.assertEqual(len(messages), 2)

    def test_log_to_file_level(self):
        """Utils: messages below the logging level are excluded."""
        from rusle.utils import log_to_file

        logfile = os.path.join(self.workspace, 'logfile.txt')
        logger = logging.getLogger('rusle.test')

        with log_to_file(logfile, logging_level=logging.WARNING) as handler:
            logger.info('this should not be logged')
            logger.warning('this should be logged')
            handler.flush()

        with open(logfile) as opened_logfile:
            messages = [msg for msg in opened_logfile.read().split('\n')
                        if msg]
        self.assertEqual(len(messages), 1)
        self.assertIn('WARNING', messages[0])


class GDALWarningsLoggingTests(unittest.TestCase):
    """Test GDAL Warnings Logging."""

    def setUp(self):
        """Create a temporary workspace."""
        self.workspace = tempfile.mkdtemp()

    def tearDown(self):
        """Remove temporary workspace."""
        shutil.rmtree(self.workspace)

    def test_log_warnings(self):
        """Utils: test that we can capture GDAL warnings to logging."""
        from rusle import utils

        logfile = os.path.join(self.workspace, 'logfile.txt')

        invalid_polygon = ogr.CreateGeometryFromWkt(
            'POLYGON ((-20 -20, -16 -20, -20 -16, -16 -16, -20 -20))')

        with utils.log_to_file(logfile) as handler:
            with utils.capture_gdal_logging():
                # warning should be captured.
                invalid_polygon.IsValid()
            handler.flush()

        with open(logfile) as opened_logfile:
            messages = [msg for msg in opened_logfile.read().split('\n')
                        if msg]

        self.assertEqual(len(messages), 1)
        self.assertIn('osgeo', messages[0])


class PrepareWorkspaceTests(unittest.TestCase):
    """Test Prepare Workspace."""

    def setUp(self):
        """Create a temporary workspace."""
        self.workspace = tempfile.mkdtemp()

    def tearDown(self):
        """Remove temporary workspace."""
        shutil.rmtree(self.workspace)

    def test_prepare_workspace(self):
        """Utils: test that prepare_workspace does what is expected."""
        from rusle import utils

        workspace = os.path.join(self.workspace, 'foo')
        with warnings.catch_warnings():
            # restore the warnings filter to default, overriding any
            # global pytest filter. this preserves the warnings so that
            # they may be redirected to the log.
            warnings.simplefilter('default')
            with utils.prepare_workspace(workspace, 'rusle'):
                warnings.warn('deprecated', UserWarning)
                invalid_polygon = ogr.CreateGeometryFromWkt(
                    'POLYGON ((-20 -20, -16 -20, -20 -16, -16 -16, -20 -20))')
                # This produces a GDAL warning that does not raise an
                # exception with UseExceptions()
                invalid_polygon.IsValid()

        self.assertTrue(os.path.exists(workspace))
        logfile_glob = glob.glob(os.path.join(workspace, '*.txt'))
        self.assertEqual(len(logfile_glob), 1)
        self.assertTrue(
            os.path.basename(logfile_glob[0]).startswith('rusle-log-'))
        with open(logfile_glob[0]) as logfile:
            logfile_text = logfile.read()
        self.assertIn(
            'Self-intersection at or near point -18 -18', logfile_text)
        self.assertEqual(len(re.findall('WARNING', logfile_text)), 2)
        self.assertIn('Elapsed time:', logfile_text)

    def test_prepare_workspace_exception(self):
        """Utils: exceptions are logged and re-raised."""
        from rusle import utils

        with self.assertRaises(RuntimeError):
            with utils.prepare_workspace(self.workspace, 'rusle'):
                raise RuntimeError('failure in the model')

        logfile_glob = glob.glob(os.path.join(self.workspace, '*.txt'))
        with open(logfile_glob[0]) as logfile:
            logfile_text = logfile.read()
        self.assertIn('Exception while executing rusle', logfile_text)
        self.assertIn('failure in the model', logfile_text)


class ReadCSVToDataframeTests(unittest.TestCase):
    """Tests for rusle.utils.read_csv_to_dataframe."""

    def setUp(self):
        """Make temporary directory for workspace."""
        self.workspace_dir = tempfile.mkdtemp()

    def tearDown(self):
        """Delete workspace."""
        shutil.rmtree(self.workspace_dir)

    def test_read_csv_to_dataframe(self):
        """Utils: read csv with no row or column specs provided."""
        from rusle import utils

        csv_text = ("date,Path\n"
                    "2020-01-01,a.tif\n"
                    "2020-01-02,b.tif\n")
        table_path = os.path.join(self.workspace_dir, 'table.csv')
        with open(table_path, 'w') as table_file:
            table_file.write(csv_text)

        df = utils.read_csv_to_dataframe(table_path)
        self.assertEqual(list(df.columns), ['date', 'path'])
        self.assertEqual(df['path'][1], 'b.tif')

    def test_utf8_bom_encoding(self):
        """Utils: test that CSV read correctly with UTF-8 BOM encoding."""
        from rusle import utils

        csv_file = os.path.join(self.workspace_dir, 'csv.csv')
        # writing with utf-8-sig will prepend the BOM
        with open(csv_file, 'w', encoding='utf-8-sig') as file_obj:
            file_obj.write(textwrap.dedent(
                """\
                header1,header2,header3
                1,2,bar
                4,5,FOO
                """
            ))
        # confirm that the file has the BOM prefix
        with open(csv_file, 'rb') as file_obj:
            self.assertTrue(file_obj.read().startswith(codecs.BOM_UTF8))
        df = utils.read_csv_to_dataframe(csv_file)
        # assert the BOM prefix was correctly parsed and skipped
        self.assertEqual(df.columns[0], 'header1')
        self.assertEqual(df['header2'][1], 5)

    def test_csv_error_non_utf8_character(self):
        """Utils: test that error is raised on non-UTF8 character."""
        from rusle import utils

        csv_file = os.path.join(self.workspace_dir, 'csv.csv')
        with codecs.open(csv_file, 'w', encoding='iso-8859-1') as file_obj:
            file_obj.write(textwrap.dedent(
                """\
                header 1,HEADER 2,header 3
                1,2,bar1
                4,5,FÖÖ
                """
            ))
        with self.assertRaises(ValueError):
            utils.read_csv_to_dataframe(csv_file)

    def test_csv_dialect_detection_semicolon_delimited(self):
        """Utils: test that we can parse semicolon-delimited CSVs."""
        from rusle import utils

        csv_file = os.path.join(self.workspace_dir, 'csv.csv')
        with open(csv_file, 'w') as file_obj:
            file_obj.write(textwrap.dedent(
                """\
                header1;HEADER2;header3;
                1;2;3;
                4;FOO;bar;
                """
            ))

        df = utils.read_csv_to_dataframe(csv_file)
        self.assertEqual(df['header2'][1], 'FOO')
        self.assertEqual(df['header3'][1], 'bar')
        self.assertEqual(df['header1'][0], 1)


class ExpandPathTests(unittest.TestCase):
    def setUp(self):
        self.workspace_dir = tempfile.mkdtemp()

    def tearDown(self):
        shutil.rmtree(self.workspace_dir)

    @unittest.skipIf(platform.system() == 'Windows',
                     "Function behavior differs across systems.")
    def test_os_path_normalization_linux(self):
        """Utils: test path separator conversion Win to Linux."""
        from rusle import utils

        # Assumption: a path was created on Windows and is now being loaded on
        # a Mac or Linux computer.
        rel_path = "daily\\precip.tif"
        relative_to = os.path.join(self.workspace_dir, 'test.csv')
        expected_path = os.path.join(self.workspace_dir, "daily/precip.tif")
        path = utils.expand_path(rel_path, relative_to)
        self.assertEqual(path, expected_path)

    def test_absolute_path(self):
        """Utils: absolute paths are returned as they are."""
        from rusle import utils

        abs_path = os.path.join(self.workspace_dir, 'precip.tif')
        self.assertEqual(
            utils.expand_path(abs_path, '/some/other/table.csv'), abs_path)

    def test_falsey(self):
        """Utils: test return None when falsey."""
        from rusle import utils

        for value in ('', None, False, 0):
            self.assertEqual(
                None, utils.expand_path(value, self.workspace_dir))


class EvaluateExpressionTests(unittest.TestCase):
    """Tests for rusle.utils.evaluate_expression."""

    def test_evaluate_expression(self):
        """Utils: expressions are evaluated against the variable map."""
        from rusle import utils

        self.assertTrue(utils.evaluate_expression('value > 0', {'value': 3}))
        self.assertFalse(utils.evaluate_expression('value < 0', {'value': 3}))
        self.assertTrue(utils.evaluate_expression(
            'abs(value) >= 1', {'value': -2}))

    def test_evaluate_expression_missing_name(self):
        """Utils: an unknown identifier is an error."""
        from rusle import utils

        with self.assertRaises(AssertionError) as cm:
            utils.evaluate_expression('value > minimum', {'value': 3})
        self.assertIn('minimum', str(cm.exception))


class FormatArgsTest(unittest.TestCase):
    """Args format tests."""
    def test_print_args(self):
        """Utils: verify that we format args correctly."""
        from rusle import __version__
        from rusle.utils import format_args_dict

        args_dict = {
            'start_year': 2018,
            'alpha': -2,
        }

        args_string = format_args_dict(args_dict, 'rusle')
        expected_string = str(
            'Arguments for rusle %s:\n'
            'alpha      -2\n'
            'start_year 2018\n') % __version__
        self.assertEqual(args_string, expected_string)
