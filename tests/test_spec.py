import json
import logging
import os
import shutil
import tempfile
import textwrap
import unittest
import unittest.mock

from rusle import spec
from rusle.unit_registry import u
from osgeo import gdal

gdal.UseExceptions()


def _workspace_spec(outputs=()):
    return spec.ModelSpec(
        model_id='sample',
        model_title='Sample Model',
        module_name='rusle.rusle',
        input_field_order=[['workspace_dir', 'results_suffix']],
        inputs=[spec.WORKSPACE, spec.SUFFIX, spec.N_WORKERS],
        outputs=list(outputs) + [spec.TASKGRAPH_CACHE])


class ResultsSuffixTests(unittest.TestCase):
    """Tests for rusle.spec.ResultsSuffixInput."""

    def test_suffix_string(self):
        """Spec: test suffix_string."""
        self.assertEqual(spec.SUFFIX.preprocess('suff'), '_suff')

    def test_suffix_string_underscore(self):
        """Spec: test suffix_string underscore."""
        self.assertEqual(spec.SUFFIX.preprocess('_suff'), '_suff')

    def test_suffix_string_empty(self):
        """Spec: test empty suffix_string."""
        self.assertEqual(spec.SUFFIX.preprocess(''), '')

    def test_suffix_string_no_entry(self):
        """Spec: test no suffix entry in args."""
        self.assertEqual(spec.SUFFIX.preprocess(None), '')


class InputTests(unittest.TestCase):
    """Tests for rusle.spec.Input and subclasses."""

    def test_raster_input_preprocess(self):
        """Test RasterInput.preprocess method"""
        raster_input = spec.RasterInput(id="foo", min_bands=4)
        self.assertEqual(raster_input.preprocess('foo/bar.tif'), 'foo/bar.tif')
        self.assertEqual(raster_input.preprocess(''), None)
        self.assertEqual(raster_input.preprocess(None), None)

    def test_single_band_raster_input_preprocess(self):
        """Test SingleBandRasterInput.preprocess method"""
        raster_input = spec.SingleBandRasterInput(
            id="foo",
            data_type=int,
            units=None)
        self.assertEqual(raster_input.preprocess('foo/bar.tif'), 'foo/bar.tif')
        self.assertEqual(raster_input.preprocess(''), None)
        self.assertEqual(raster_input.preprocess(None), None)

    def test_vector_input_preprocess(self):
        """Test VectorInput.preprocess method"""
        vector_input = spec.VectorInput(
            id="foo",
            geometry_types={"POLYGON"},
            fields=[])
        self.assertEqual(vector_input.preprocess('foo/bar.gpkg'), 'foo/bar.gpkg')
        self.assertEqual(vector_input.preprocess(''), None)
        self.assertEqual(vector_input.preprocess(None), None)

    def test_csv_input_preprocess(self):
        """Test CSVInput.preprocess method"""
        csv_input = spec.CSVInput(id="foo", columns=[])
        self.assertEqual(csv_input.preprocess('foo/bar.csv'), 'foo/bar.csv')
        self.assertEqual(csv_input.preprocess(''), None)
        self.assertEqual(csv_input.preprocess(None), None)

    def test_number_input_preprocess(self):
        """Test NumberInput.preprocess method"""
        number_input = spec.NumberInput(id='foo', units=None)
        self.assertEqual(number_input.preprocess(1.5), 1.5)
        self.assertEqual(number_input.preprocess('1.5'), 1.5)
        self.assertEqual(number_input.preprocess(0), 0)
        self.assertEqual(number_input.preprocess(''), None)
        self.assertEqual(number_input.preprocess(None), None)

    def test_integer_input_preprocess(self):
        """Test IntegerInput.preprocess method"""
        integer_input = spec.IntegerInput(id='foo')
        self.assertEqual(integer_input.preprocess(1), 1)
        self.assertEqual(integer_input.preprocess('1'), 1)
        self.assertEqual(integer_input.preprocess('2020.0'), 2020)
        self.assertEqual(integer_input.preprocess(0), 0)
        self.assertEqual(integer_input.preprocess(''), None)
        self.assertEqual(integer_input.preprocess(None), None)

    def test_n_workers_input_preprocess(self):
        """Test NWorkersInput.preprocess method"""
        self.assertEqual(spec.N_WORKERS.preprocess(None), -1)
        self.assertEqual(spec.N_WORKERS.preprocess(''), -1)
        self.assertEqual(spec.N_WORKERS.preprocess('2'), 2)

    def test_string_input_preprocess(self):
        """Test StringInput.preprocess method"""
        string_input = spec.StringInput(id='foo')
        self.assertEqual(string_input.preprocess('foo'), 'foo')
        self.assertEqual(string_input.preprocess(1), '1')
        self.assertEqual(string_input.preprocess(''), None)
        self.assertEqual(string_input.preprocess(None), None)

    def test_invalid_regexp(self):
        """Spec: a pattern that does not compile is rejected."""
        import re
        with self.assertRaises((ValueError, re.error)):
            spec.StringInput(id='foo', regexp='[a-z')


class CSVInputTests(unittest.TestCase):
    """Tests for rusle.spec.CSVInput.get_validated_dataframe."""

    def setUp(self):
        """Create a new workspace to use for each test."""
        self.workspace_dir = tempfile.mkdtemp()

    def tearDown(self):
        """Remove the workspace created for this test."""
        shutil.rmtree(self.workspace_dir)

    def _write_csv(self, contents):
        filepath = os.path.join(self.workspace_dir, 'table.csv')
        with open(filepath, 'w') as csv_file:
            csv_file.write(textwrap.dedent(contents).strip())
        return filepath

    def test_columns_are_formatted(self):
        """Spec: columns are cast and paths expanded relative to the table."""
        csv_input = spec.CSVInput(
            id='table',
            columns=[
                spec.IntegerInput(id='code'),
                spec.NumberInput(id='value', required=False),
                spec.StringInput(id='name'),
                spec.SingleBandRasterInput(id='path'),
            ],
            index_col='code')
        filepath = self._write_csv(
            """
            Code,Name,Path,unused
            1,forest,daily/a.tif,x
            2,crop,/abs/b.tif,y
            """)

        df = csv_input.get_validated_dataframe(filepath)
        self.assertEqual(list(df.index), [1, 2])
        self.assertEqual(list(df.columns), ['name', 'path'])
        self.assertEqual(df['name'][1], 'forest')
        self.assertEqual(
            df['path'][1],
            os.path.join(self.workspace_dir, 'daily', 'a.tif'))
        self.assertEqual(df['path'][2], '/abs/b.tif')

    def test_uninterpretable_values(self):
        """Spec: a value that cannot be cast raises a ValueError."""
        csv_input = spec.CSVInput(
            id='table', columns=[spec.NumberInput(id='value')])
        filepath = self._write_csv(
            """
            value,name
            1.5,a
            abc,b
            """)
        with self.assertRaises(ValueError) as cm:
            csv_input.get_validated_dataframe(filepath)
        self.assertIn('"value" column', str(cm.exception))

    def test_duplicate_index(self):
        """Spec: index values must be unique."""
        csv_input = spec.CSVInput(
            id='table',
            columns=[spec.IntegerInput(id='code'), spec.StringInput(id='name')],
            index_col='code')
        filepath = self._write_csv(
            """
            code,name
            1,a
            1,b
            """)
        with self.assertRaises(ValueError):
            csv_input.get_validated_dataframe(filepath)

    def test_index_col_must_be_a_column(self):
        """Spec: index_col must name a declared column."""
        with self.assertRaises(ValueError):
            spec.CSVInput(
                id='table', columns=[spec.StringInput(id='name')],
                index_col='code')


class ModelSpecTests(unittest.TestCase):
    """Tests for rusle.spec.ModelSpec."""

    def setUp(self):
        """Create a new workspace to use for each test."""
        self.workspace_dir = tempfile.mkdtemp()

    def tearDown(self):
        """Remove the workspace created for this test."""
        shutil.rmtree(self.workspace_dir)

    def test_input_missing_from_field_order(self):
        """Spec: every visible input must be in input_field_order."""
        with self.assertRaises(ValueError):
            spec.ModelSpec(
                model_id='', model_title='', module_name='', outputs=[],
                input_field_order=[['a']],
                inputs=[spec.NumberInput(id='a'), spec.NumberInput(id='b')])

    def test_duplicate_in_field_order(self):
        """Spec: an input may appear only once in input_field_order."""
        with self.assertRaises(ValueError):
            spec.ModelSpec(
                model_id='', model_title='', module_name='', outputs=[],
                input_field_order=[['a'], ['a']],
                inputs=[spec.NumberInput(id='a')])

    def test_hidden_input_in_field_order(self):
        """Spec: hidden inputs may not appear in input_field_order."""
        with self.assertRaises(ValueError):
            spec.ModelSpec(
                model_id='', model_title='', module_name='', outputs=[],
                input_field_order=[['n_workers']],
                inputs=[spec.N_WORKERS])

    def test_get_input_and_output(self):
        """Spec: inputs and outputs are looked up by id."""
        model_spec = _workspace_spec()
        self.assertEqual(
            model_spec.get_input('results_suffix').regexp, spec.SUFFIX.regexp)
        self.assertEqual(
            model_spec.get_output('taskgraph_cache').path,
            'taskgraph_cache/taskgraph.db')
        with self.assertRaises(KeyError):
            model_spec.get_input('dem_path')

    def test_to_json(self):
        """Spec: the model spec serializes with types, units and sets."""
        model_spec = spec.ModelSpec(
            model_id='sample', model_title='Sample Model', module_name='',
            input_field_order=[['length', 'region']],
            inputs=[
                spec.NumberInput(
                    id='length', units=u.meter, expression='value > 0'),
                spec.VectorInput(
                    id='region', geometry_types=spec.POLYGONS,
                    fields=[spec.IntegerInput(id='hybas_id')]),
            ],
            outputs=[spec.SingleBandRasterOutput(
                id='soil_loss', path='soil_loss.tif', units=u.tonne)])

        spec_dict = json.loads(model_spec.to_json())
        self.assertEqual(spec_dict['model_id'], 'sample')
        self.assertEqual(spec_dict['args']['length']['type'], 'number')
        self.assertEqual(spec_dict['args']['length']['units'], 'm')
        self.assertEqual(
            spec_dict['args']['region']['geometry_types'],
            ['MULTIPOLYGON', 'POLYGON'])
        self.assertEqual(
            spec_dict['args']['region']['fields'][0]['id'], 'hybas_id')
        self.assertEqual(
            spec_dict['outputs']['soil_loss']['data_type'], 'number')
        self.assertEqual(
            spec_dict['outputs']['soil_loss']['path'], 'soil_loss.tif')

    def test_preprocess_inputs(self):
        """Spec: preprocessing fills every input and drops unknown keys."""
        model_spec = _workspace_spec()
        args = model_spec.preprocess_inputs({
            'workspace_dir': self.workspace_dir,
            'results_suffix': 'run1',
            'unknown': 'value'})
        self.assertEqual(args, {
            'workspace_dir': self.workspace_dir,
            'results_suffix': '_run1',
            'n_workers': -1})

    def test_setup(self):
        """Spec: setup creates output directories and a file registry."""
        model_spec = _workspace_spec(outputs=[
            spec.SingleBandRasterOutput(
                id='factor', path='intermediate/factor.tif')])
        args, file_registry, graph = model_spec.setup({
            'workspace_dir': self.workspace_dir,
            'results_suffix': 'run1'})
        graph.close()
        graph.join()

        self.assertEqual(args['results_suffix'], '_run1')
        self.assertTrue(os.path.isdir(
            os.path.join(self.workspace_dir, 'intermediate')))
        self.assertTrue(os.path.isdir(
            os.path.join(self.workspace_dir, 'taskgraph_cache')))
        self.assertEqual(
            file_registry['factor'],
            os.path.join(
                os.path.abspath(self.workspace_dir),
                'intermediate', 'factor_run1.tif'))

    def test_execute(self):
        """Spec: execute logs to the workspace and saves the registry."""
        model_spec = _workspace_spec()
        registry = {'soil_loss': 'soil_loss.tif'}
        args = {'workspace_dir': self.workspace_dir, 'results_suffix': 'a'}

        with unittest.mock.patch(
                'rusle.rusle.execute', return_value=registry) as patched:
            result = model_spec.execute(
                args, create_logfile=True, log_level=logging.INFO,
                save_file_registry=True)

        patched.assert_called_once_with(args)
        self.assertEqual(result, registry)
        with open(os.path.join(
                self.workspace_dir, 'file_registry_a.json')) as json_file:
            self.assertEqual(json.load(json_file), registry)
        logfiles = [name for name in os.listdir(self.workspace_dir)
                    if name.startswith('sample-log-')]
        self.assertEqual(len(logfiles), 1)
