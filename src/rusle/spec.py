"""Declarative description of a model's inputs and outputs.

A ``ModelSpec`` lists every input the model accepts and every file it
writes.  It drives args preprocessing, validation, output paths (through
``FileRegistry``) and the task graph a model's ``execute`` runs on.
"""
import contextlib
import importlib
import json
import logging
import os
import re
import types
import typing

import pandas
import pint
import taskgraph
from osgeo import gdal
from osgeo import ogr
from osgeo import osr
from pydantic import BaseModel
from pydantic import ConfigDict
from pydantic import field_validator
from pydantic import model_validator
from pygeoprocessing.geoprocessing_core import GDALUseExceptions

from . import utils
from .file_registry import FileRegistry
from .unit_registry import u
from .validation import get_message

LOGGER = logging.getLogger(__name__)

_GEOMETRY_TYPES = {
    'POINT': [ogr.wkbPoint, ogr.wkbPointM, ogr.wkbPointZM, ogr.wkbPoint25D],
    'POLYGON': [ogr.wkbPolygon, ogr.wkbPolygonM, ogr.wkbPolygonZM,
                ogr.wkbPolygon25D],
    'MULTIPOLYGON': [ogr.wkbMultiPolygon, ogr.wkbMultiPolygonM,
                     ogr.wkbMultiPolygonZM, ogr.wkbMultiPolygon25D],
}
POLYGONS = {'POLYGON', 'MULTIPOLYGON'}


def check_headers(expected_headers, actual_headers, header_type='header'):
    """Validate that expected headers are in a list of actual headers.

    Each expected header must be found exactly once.  Extra actual headers
    are allowed.  Matching is case-insensitive.

    Returns:
        None, if validation passes; or a string describing the problem.
    """
    actual_headers = [header.lower() for header in actual_headers]
    for expected in expected_headers:
        count = actual_headers.count(expected)
        if count == 0:
            return get_message('MATCHED_NO_HEADERS').format(
                header=header_type, header_name=expected)
        elif count > 1:
            return get_message('DUPLICATE_HEADER').format(
                header=header_type, header_name=expected, number=count)


def _check_projection(srs, projected, projection_units):
    """Validate a GDAL spatial reference.

    Args:
        srs (osr.SpatialReference): spatial reference of a dataset.
        projected (bool): Whether the spatial reference must be projected in
            linear units.
        projection_units (pint.Unit): The projection's required linear units.

    Returns:
        A string error message if an error was found. ``None`` otherwise.
    """
    empty_srs = osr.SpatialReference()
    if srs is None or srs.IsSame(empty_srs):
        return get_message('INVALID_PROJECTION')

    if projected and not srs.IsProjected():
        return get_message('NOT_PROJECTED')

    if projection_units:
        layer_units_name = srs.GetLinearUnitsName().lower().replace(' ', '_')
        try:
            layer_units = u.Unit(layer_units_name)
        except pint.errors.UndefinedUnitError:
            layer_units = None
        if layer_units != projection_units:
            return get_message('NOT_PROJECTED')


class Input(BaseModel):
    """A data input, or parameter, of a model."""
    model_config = ConfigDict(arbitrary_types_allowed=True)

    id: str
    """Input identifier that should be unique within a model"""

    name: typing.Union[str, None] = None
    """Short, lower-case, user-facing name of the input."""

    about: typing.Union[str, None] = None
    """User-facing description of the input"""

    required: bool = True

    hidden: bool = False
    """Hidden inputs need not appear in ``input_field_order``."""

    type: typing.ClassVar[str] = 'input'

    def validate(self, value):
        return None

    def preprocess(self, value):
        return value


class Output(BaseModel):
    """A data output, or result, of a model."""
    model_config = ConfigDict(arbitrary_types_allowed=True)

    id: str
    about: typing.Union[str, None] = None


class FileInput(Input):
    """A generic file input."""
    permissions: str = 'r'
    """Any of ``r``, ``w`` and ``x`` required on the file."""

    type: typing.ClassVar[str] = 'file'

    def validate(self, filepath):
        """Check that the file exists and has the required permissions.

        Returns:
            A string error message if an error was found.  ``None`` otherwise.
        """
        if not os.path.exists(filepath):
            return get_message('FILE_NOT_FOUND')

        for letter, mode, descriptor in (
                ('r', os.R_OK, 'read'),
                ('w', os.W_OK, 'write'),
                ('x', os.X_OK, 'execute')):
            if letter in self.permissions and not os.access(filepath, mode):
                return get_message('NEED_PERMISSION_FILE').format(
                    permission=descriptor)

    @staticmethod
    def format_column(col, base_path):
        """Cast a column of paths to strings, expanding relative paths."""
        return col.apply(
            lambda p: p if pandas.isna(p) else utils.expand_path(
                str(p).strip(), base_path)).astype(pandas.StringDtype())

    def preprocess(self, value):
        return value if value else None


class SpatialFileInput(FileInput):
    """Base class for raster and vector inputs."""
    projected: typing.Union[bool, None] = None
    projection_units: typing.Union[pint.Unit, None] = None

    @model_validator(mode='after')
    def check_projected_projection_units(self):
        if self.projection_units and not self.projected:
            raise ValueError(
                'Cannot specify projection_units when projected is None')
        return self

    def _open_raster(self, filepath):
        """Open ``filepath`` as a raster or return an error message."""
        file_warning = FileInput.validate(self, filepath)
        if file_warning:
            return None, file_warning
        try:
            return gdal.OpenEx(filepath, gdal.OF_RASTER), None
        except RuntimeError:
            return None, get_message('NOT_GDAL_RASTER')


class SingleBandRasterInput(SpatialFileInput):
    """A raster input where only the first band is used."""
    data_type: typing.Type = float
    units: typing.Union[pint.Unit, None] = None

    type: typing.ClassVar[str] = 'raster'

    def validate(self, filepath):
        """Validate a raster file against the requirements for this input.

        Returns:
            A string error message if an error was found.  ``None`` otherwise.
        """
        with GDALUseExceptions():
            dataset, warning = self._open_raster(filepath)
            if warning:
                return warning
            return _check_projection(
                dataset.GetSpatialRef(), self.projected,
                self.projection_units)


class RasterInput(SpatialFileInput):
    """A raster input whose bands are selected by other args."""
    min_bands: int = 1
    units: typing.Union[pint.Unit, None] = None

    type: typing.ClassVar[str] = 'raster'

    def validate(self, filepath):
        """Validate a multi-band raster.

        Returns:
            A string error message if an error was found.  ``None`` otherwise.
        """
        with GDALUseExceptions():
            dataset, warning = self._open_raster(filepath)
            if warning:
                return warning
            if dataset.RasterCount < self.min_bands:
                return get_message('TOO_FEW_BANDS').format(
                    n_bands=self.min_bands)
            return _check_projection(
                dataset.GetSpatialRef(), self.projected,
                self.projection_units)


class VectorInput(SpatialFileInput):
    """A vector input of which only the first layer is used."""
    geometry_types: set
    fields: list[Input] = []

    type: typing.ClassVar[str] = 'vector'

    def validate(self, filepath):
        """Validate a vector file against the requirements for this input.

        Returns:
            A string error message if an error was found.  ``None`` otherwise.
        """
        with GDALUseExceptions():
            file_warning = FileInput.validate(self, filepath)
            if file_warning:
                return file_warning
            try:
                vector = gdal.OpenEx(filepath, gdal.OF_VECTOR)
            except RuntimeError:
                return get_message('NOT_GDAL_VECTOR')

            allowed_geom_types = []
            for geom in self.geometry_types:
                allowed_geom_types += _GEOMETRY_TYPES[geom]

            layer = vector.GetLayer()
            if layer.GetGeomType() not in allowed_geom_types:
                return get_message('WRONG_GEOM_TYPE').format(
                    allowed=sorted(self.geometry_types))

            required_fields = [
                field.id for field in self.fields if field.required]
            if required_fields:
                fieldnames = [defn.GetName() for defn in layer.schema]
                header_warning = check_headers(
                    required_fields, fieldnames, 'field')
                if header_warning:
                    return header_warning

            return _check_projection(
                layer.GetSpatialRef(), self.projected, self.projection_units)


class CSVInput(FileInput):
    """A CSV table input with a known set of columns."""
    columns: list[Input]
    index_col: typing.Union[str, None] = None

    type: typing.ClassVar[str] = 'csv'

    @model_validator(mode='after')
    def check_index_col_in_columns(self):
        if (self.index_col is not None and
                self.index_col not in [col.id for col in self.columns]):
            raise ValueError(f'index_col {self.index_col} not found in columns')
        return self

    def validate(self, filepath):
        """Validate a CSV file against the requirements for this input.

        Returns:
            A string error message if an error was found.  ``None`` otherwise.
        """
        file_warning = super().validate(filepath)
        if file_warning:
            return file_warning
        try:
            self.get_validated_dataframe(filepath)
        except Exception as e:
            return str(e)

    def get_validated_dataframe(self, csv_path, **read_csv_kwargs):
        """Read a CSV into a dataframe that is guaranteed to match its columns.

        Only the declared columns are kept.  Each column's values are cast
        through its input type's ``format_column``; file path columns are
        expanded relative to the CSV.

        Args:
            csv_path: Path to the CSV to process
            read_csv_kwargs: Additional kwargs to pass to `pandas.read_csv`

        Returns:
            pandas dataframe

        Raises:
            ValueError if a required column is missing or a column's values
            cannot be interpreted as the expected type.
        """
        df = utils.read_csv_to_dataframe(csv_path, **read_csv_kwargs)
        header_warning = check_headers(
            [col.id for col in self.columns if col.required],
            list(df.columns), 'column')
        if header_warning:
            raise ValueError(header_warning)

        df = df[[col.id for col in self.columns if col.id in df.columns]]
        df = df.dropna(how='all').reset_index(drop=True)

        for col_spec in self.columns:
            if col_spec.id not in df.columns:
                continue
            try:
                df[col_spec.id] = col_spec.format_column(
                    df[col_spec.id], csv_path)
            except Exception as err:
                raise ValueError(
                    f'Value(s) in the "{col_spec.id}" column could not be '
                    f'interpreted as {type(col_spec).__name__}s. '
                    f'Original error: {err}')

        if self.index_col is not None:
            df = df.set_index(self.index_col, verify_integrity=True)
        return df


class DirectoryInput(Input):
    """A directory input, such as the workspace."""
    permissions: str = ''
    must_exist: bool = True

    type: typing.ClassVar[str] = 'directory'

    def validate(self, dirpath):
        """Validate a directory path against the requirements for this input.

        Returns:
            A string error message if an error was found.  ``None`` otherwise.
        """
        if self.must_exist and not os.path.exists(dirpath):
            return get_message('DIR_NOT_FOUND')

        if os.path.exists(dirpath):
            if not os.path.isdir(dirpath):
                return get_message('NOT_A_DIR')
        else:
            # check permissions on the nearest existing parent instead
            parent = os.path.abspath(dirpath)
            while not os.path.exists(parent):
                parent = os.path.dirname(parent)
            dirpath = parent

        for letter, mode, descriptor in (
                ('r', os.R_OK, 'read'),
                ('w', os.W_OK, 'write'),
                ('x', os.X_OK, 'execute')):
            if letter in self.permissions and not os.access(dirpath, mode):
                return get_message('NEED_PERMISSION_DIRECTORY').format(
                    permission=descriptor)


class NumberInput(Input):
    """A floating-point number input."""
    units: typing.Union[pint.Unit, None] = None

    expression: typing.Union[str, None] = None
    """Boolean expression of ``value`` the number must satisfy, e.g.
    ``"value > 0"``."""

    type: typing.ClassVar[str] = 'number'

    @field_validator('expression', mode='after')
    @classmethod
    def check_expression(cls, expression):
        if expression is not None and 'value' not in expression:
            raise ValueError(
                f'The variable name value is not found in the '
                f'expression: {expression}')
        return expression

    def validate(self, value):
        """Validate a numeric value against the requirements for this input.

        Returns:
            A string error message if an error was found.  ``None`` otherwise.
        """
        try:
            float(value)
        except (TypeError, ValueError):
            return get_message('NOT_A_NUMBER').format(value=value)

        if self.expression:
            if not utils.evaluate_expression(
                    self.expression, {'value': float(value)}):
                return get_message('INVALID_VALUE').format(
                    condition=self.expression)

    @staticmethod
    def format_column(col, *args):
        return col.astype(float)

    def preprocess(self, value):
        return None if value in {None, ''} else float(value)


class IntegerInput(NumberInput):
    """An integer input."""
    type: typing.ClassVar[str] = 'integer'

    def validate(self, value):
        message = super().validate(value)
        if message:
            return message
        if not float(value).is_integer():
            return get_message('NOT_AN_INTEGER').format(value=value)

    @staticmethod
    def format_column(col, *args):
        return col.astype(pandas.Int64Dtype())

    def preprocess(self, value):
        # cast to float first to handle strings like '3.0'
        return None if value in {None, ''} else int(float(value))


class NWorkersInput(IntegerInput):
    def preprocess(self, value):
        # default to synchronous, single process mode
        if value is None or value == '':
            return -1
        return super().preprocess(value)


class StringInput(Input):
    """A free-text input."""
    regexp: typing.Union[str, None] = None

    type: typing.ClassVar[str] = 'string'

    @field_validator('regexp', mode='after')
    @classmethod
    def check_regexp(cls, regexp):
        if regexp is not None:
            re.compile(regexp)
        return regexp

    def validate(self, value):
        if self.regexp and not re.fullmatch(self.regexp, str(value)):
            return get_message('REGEXP_MISMATCH').format(regexp=self.regexp)

    @staticmethod
    def format_column(col, *args):
        """Strip whitespace from string values; NA values remain NA."""
        return col.apply(
            lambda s: s if pandas.isna(s) else str(s).strip()
        ).astype(pandas.StringDtype())

    def preprocess(self, value):
        return None if value in {None, ''} else str(value)


class ResultsSuffixInput(StringInput):
    def preprocess(self, value):
        value = super().preprocess(value)
        if value is None:
            return ''
        # suffix should always start with an underscore
        if not value.startswith('_'):
            value = '_' + value
        return value


class FileOutput(Output):
    path: str
    """Path to the output file within the workspace directory"""


class SingleBandRasterOutput(FileOutput):
    data_type: typing.Type = float
    units: typing.Union[pint.Unit, None] = None


class VectorOutput(FileOutput):
    geometry_types: set = set()
    fields: list[Output] = []


class CSVOutput(FileOutput):
    columns: list[Output] = []
    index_col: typing.Union[str, None] = None


class NumberOutput(Output):
    units: typing.Union[pint.Unit, None] = None


class IntegerOutput(Output):
    pass


class StringOutput(Output):
    pass


class ModelSpec(BaseModel):
    """Specification of a model describing metadata, inputs, and outputs."""
    model_config = ConfigDict(
        arbitrary_types_allowed=True, protected_namespaces=())

    model_id: str
    model_title: str

    input_field_order: list[list[str]]
    """Display order and grouping of the non-hidden inputs."""

    inputs: list[Input]
    outputs: list[Output]

    validate_spatial_overlap: bool = True
    different_projections_ok: bool = True

    module_name: str
    """The importable module name of the model e.g. ``rusle.rusle``."""

    @model_validator(mode='after')
    def check_inputs_in_field_order(self):
        """Check that every input is in ``input_field_order`` or hidden."""
        found_keys = set()
        for group in self.input_field_order:
            for key in group:
                if key in found_keys:
                    raise ValueError(
                        f'Key {key} appears more than once in input_field_order')
                found_keys.add(key)
        for _input in self.inputs:
            if _input.hidden:
                if _input.id in found_keys:
                    raise ValueError(
                        f'Input {_input.id} is hidden but appears in '
                        'input_field_order')
                found_keys.add(_input.id)
        if found_keys != set([s.id for s in self.inputs]):
            raise ValueError(
                'Mismatch between keys in inputs and input_field_order')
        return self

    def get_input(self, key):
        """Get an Input of this model by its key."""
        return {_input.id: _input for _input in self.inputs}[key]

    def get_output(self, key):
        """Get an Output of this model by its key."""
        return {_output.id: _output for _output in self.outputs}[key]

    def to_json(self):
        """Serialize this spec to a JSON string."""

        def fallback_serializer(obj):
            """Serialize objects that are otherwise not JSON serializeable."""
            if isinstance(obj, pint.Unit):
                return f'{obj:~P}'
            elif isinstance(obj, set):
                return sorted(obj)
            elif isinstance(obj, types.FunctionType):
                return str(obj)
            elif obj is int:
                return 'integer'
            elif obj is float:
                return 'number'
            elif isinstance(obj, BaseModel):
                as_dict = obj.model_dump()
                if hasattr(obj, 'type'):
                    as_dict['type'] = obj.type
                return as_dict
            raise TypeError(f'fallback serializer is missing for {type(obj)}')

        spec_dict = self.__dict__.copy()
        spec_dict['args'] = {
            _input.id: _input for _input in spec_dict.pop('inputs')}
        spec_dict['outputs'] = {
            _output.id: _output for _output in self.outputs}
        return json.dumps(
            spec_dict, default=fallback_serializer, ensure_ascii=False)

    def preprocess_inputs(self, input_values):
        """Preprocess a dictionary of input values.

        The result contains exactly the input keys of the model.  Inputs that
        were not provided have a value of None (or the input's default).

        Args:
            input_values (dict): Dict mapping input keys to input values

        Returns:
            dictionary mapping input keys to preprocessed input values
        """
        return {
            _input.id: _input.preprocess(input_values.get(_input.id, None))
            for _input in self.inputs}

    def create_output_directories(self, args):
        """Create every directory that an output path needs."""
        for output in self.outputs:
            if isinstance(output, FileOutput):
                os.makedirs(os.path.join(
                    args['workspace_dir'], os.path.dirname(output.path)
                ), exist_ok=True)

    def setup(self, args, taskgraph_key='taskgraph_cache'):
        """Perform boilerplate setup needed in a model's execute function.

        Args:
            args (dict): maps input keys to values
            taskgraph_key (str): output id of the taskgraph cache.

        Returns:
            Tuple of ``(args, file_registry, graph)``: the preprocessed args,
            a ``FileRegistry`` for this spec's outputs and a ``TaskGraph``.
        """
        args = self.preprocess_inputs(args)
        self.create_output_directories(args)
        file_registry = FileRegistry(
            outputs=self.outputs,
            workspace_dir=args['workspace_dir'],
            file_suffix=args['results_suffix'])
        graph = taskgraph.TaskGraph(
            os.path.dirname(file_registry[taskgraph_key]),
            n_workers=args['n_workers'])
        return args, file_registry, graph

    def execute(self, args, create_logfile=False, log_level=logging.NOTSET,
                save_file_registry=False):
        """Model execute function wrapper.

        Enables GDAL exceptions, optionally logs to a file in the workspace
        and optionally saves the file registry as JSON after the run.

        Args:
            args (dict): the raw user input args dictionary
            create_logfile (bool): If True, all logging during execution is
                written to a logfile in the workspace.
            log_level (int): threshold for the logfile.
            save_file_registry (bool): If True, the file registry dictionary
                is written to the workspace as JSON.

        Returns:
            file registry dictionary
        """
        if create_logfile:
            cm = utils.prepare_workspace(args['workspace_dir'],
                                         model_id=self.model_id,
                                         logging_level=log_level)
        else:
            cm = contextlib.nullcontext()

        with GDALUseExceptions(), cm:
            LOGGER.log(
                100,  # high log level so it always shows in logs
                'Starting model with parameters: \n' +
                utils.format_args_dict(args, self.model_id))

            model_module = importlib.import_module(self.module_name)
            registry = model_module.execute(args)

            if save_file_registry:
                preprocessed_args = self.preprocess_inputs(args)
                file_registry_path = os.path.join(
                    preprocessed_args['workspace_dir'],
                    f'file_registry{preprocessed_args["results_suffix"]}.json')
                with open(file_registry_path, 'w') as json_file:
                    json.dump(registry, json_file, indent=4)

            return registry


# Specs for common arg types ##################################################
WORKSPACE = DirectoryInput(
    id="workspace_dir",
    name="workspace",
    about=(
        "The folder where all the model's output files will be written."
        " If this folder does not exist, it will be created. If data"
        " already exists in the folder, it will be overwritten."
    ),
    permissions="rwx",
    must_exist=False,
)
SUFFIX = ResultsSuffixInput(
    id="results_suffix",
    name="file suffix",
    about=(
        "Suffix that will be appended to all output file names. Useful to"
        " differentiate between model runs."
    ),
    required=False,
    regexp="[a-zA-Z0-9_-]*"
)
N_WORKERS = NWorkersInput(
    id="n_workers",
    name="taskgraph n_workers parameter",
    about=(
        "The n_workers parameter to provide to taskgraph. -1 will cause all"
        " jobs to run synchronously. 0 will run all jobs in the same process,"
        " but scheduling will take place asynchronously. Any other positive"
        " integer will cause that many processes to be spawned to execute"
        " tasks."
    ),
    required=False,
    hidden=True,
    expression="value >= -1"
)

# Specs for common outputs ####################################################
TASKGRAPH_CACHE = FileOutput(
    id="taskgraph_cache",
    path="taskgraph_cache/taskgraph.db",
    about=(
        "Cache that stores data between model runs. This directory contains"
        " no human-readable data and you may ignore it."
    )
)
