"""Validation of a model's args dict against its MODEL_SPEC."""
import functools
import logging
import pprint

import numpy
import pygeoprocessing
from osgeo import osr


LOGGER = logging.getLogger(__name__)

MESSAGES = {
    'MISSING_KEY': 'Key is missing from the args dict',
    'MISSING_VALUE': 'Input is required but has no value',
    'MATCHED_NO_HEADERS': 'Expected the {header} "{header_name}" but did not find it',
    'DUPLICATE_HEADER': (
        'Expected the {header} "{header_name}" only once '
        'but found it {number} times'),
    'NOT_A_NUMBER': 'Value "{value}" could not be interpreted as a number',
    'NOT_AN_INTEGER': 'Value "{value}" does not represent an integer',
    'INVALID_VALUE': 'Value does not meet condition {condition}',
    'REGEXP_MISMATCH': 'Value did not match expected pattern {regexp}',
    'UNEXPECTED_ERROR': 'An unexpected error occurred in validation',
    'DIR_NOT_FOUND': 'Directory not found',
    'NOT_A_DIR': 'Path must be a directory',
    'FILE_NOT_FOUND': 'File not found',
    'INVALID_PROJECTION': 'Dataset must have a valid projection.',
    'NOT_PROJECTED': 'Dataset must be projected in linear units.',
    'NOT_GDAL_RASTER': 'File could not be opened as a GDAL raster',
    'NOT_GDAL_VECTOR': 'File could not be opened as a GDAL vector',
    'WRONG_GEOM_TYPE': 'Geometry type must be one of {allowed}',
    'TOO_FEW_BANDS': 'Raster must have at least {n_bands} bands',
    'INVALID_YEAR_RANGE': 'The end year must not be before the start year',
    'NO_PROJECTION': 'Spatial file {filepath} has no projection',
    'DIFFERENT_PROJECTIONS': (
        'Spatial files must all have the same projection: {filepaths}'),
    'BBOX_NOT_INTERSECT': (
        'Not all of the spatial layers overlap each '
        'other. All bounding boxes must intersect: {bboxes}'),
    'NEED_PERMISSION_DIRECTORY': (
        'You must have {permission} access to this directory'),
    'NEED_PERMISSION_FILE': 'You must have {permission} access to this file',
}


def get_message(key):
    return MESSAGES[key]


def get_invalid_keys(validation_warnings):
    """Get the set of args keys named in a list of validation warnings.

    Args:
        validation_warnings (list): A list of ``(keys, message)`` tuples.

    Returns:
        set of string args keys
    """
    invalid_keys = set()
    for affected_keys, _ in validation_warnings:
        invalid_keys.update(affected_keys)
    return invalid_keys


def _format_bbox_list(file_list, bbox_list):
    """Format two lists of equal length into one string."""
    return ' | '.join(
        [a + ': ' + str(b) for a, b in zip(file_list, bbox_list)])


def check_spatial_overlap(spatial_filepaths_list,
                          different_projections_ok=False):
    """Check that the given spatial files spatially overlap.

    Args:
        spatial_filepaths_list (list): A list of files that can be opened with
            GDAL.
        different_projections_ok=False (bool): Whether it's OK for the input
            spatial files to have different projections.  If ``True``, all
            bounding boxes are converted to WGS84 before overlap is checked.
            If ``False``, all files must share one projection.

    Returns:
        A string error message if an error is found.  ``None`` otherwise.
    """
    wgs84_srs = osr.SpatialReference()
    wgs84_srs.ImportFromEPSG(4326)
    wgs84_wkt = wgs84_srs.ExportToWkt()

    bounding_boxes = []
    checked_file_list = []
    reference_srs = None
    for filepath in spatial_filepaths_list:
        try:
            info = pygeoprocessing.get_raster_info(filepath)
        except (ValueError, RuntimeError):
            info = pygeoprocessing.get_vector_info(filepath)

        if info['projection_wkt'] is None:
            return get_message('NO_PROJECTION').format(filepath=filepath)

        if different_projections_ok:
            bounding_box = pygeoprocessing.transform_bounding_box(
                info['bounding_box'], info['projection_wkt'], wgs84_wkt)
        else:
            srs = osr.SpatialReference()
            srs.ImportFromWkt(info['projection_wkt'])
            if reference_srs is None:
                reference_srs = srs
            elif not reference_srs.IsSame(srs):
                return get_message('DIFFERENT_PROJECTIONS').format(
                    filepaths=', '.join(spatial_filepaths_list))
            bounding_box = info['bounding_box']

        if all([numpy.isinf(coord) for coord in bounding_box]):
            LOGGER.warning(
                f'Skipping spatial overlap check for {filepath} '
                f'because of infinite bounding box {bounding_box}')
            continue

        bounding_boxes.append(bounding_box)
        checked_file_list.append(filepath)

    try:
        pygeoprocessing.merge_bounding_box_list(bounding_boxes, 'intersection')
    except ValueError as error:
        LOGGER.debug(error)
        formatted_lists = _format_bbox_list(checked_file_list, bounding_boxes)
        return get_message('BBOX_NOT_INTERSECT').format(bboxes=formatted_lists)
    return None


def validate(args, model_spec):
    """Validate an args dict against a model spec.

    Validation happens in three phases:

        1. every required input is present and has a value,
        2. every input with a value passes its type-specific check,
        3. the spatial inputs that passed phase 2 overlap one another.

    Args:
        args (dict): The model args dict to validate.
        model_spec (rusle.spec.ModelSpec): The model spec to validate against.

    Returns:
        A list of tuples where the first element of the tuple is an iterable of
        keys affected by the error in question and the second element of the
        tuple is the string message of the error.  If no validation errors were
        found, an empty list is returned.
    """
    validation_warnings = []

    # Phase 1: Check whether an input is required and has a value
    missing_keys = set()
    required_keys_with_no_value = set()
    keys_with_no_value = set()
    for input_spec in model_spec.inputs:
        key = input_spec.id
        if key not in args or args[key] in ('', None):
            keys_with_no_value.add(key)
            if input_spec.required:
                if key not in args:
                    missing_keys.add(key)
                else:
                    required_keys_with_no_value.add(key)

    if missing_keys:
        validation_warnings.append(
            (sorted(missing_keys), get_message('MISSING_KEY')))

    if required_keys_with_no_value:
        validation_warnings.append(
            (sorted(required_keys_with_no_value), get_message('MISSING_VALUE')))

    # Phase 2: Check whether any input with a value validates with its
    # type-specific check function.
    invalid_keys = set()
    for key in sorted(set(args.keys()) - keys_with_no_value):
        try:
            input_spec = model_spec.get_input(key)
        except KeyError:
            LOGGER.debug(f'Provided key {key} does not exist in MODEL_SPEC')
            continue

        try:
            warning_msg = input_spec.validate(args[key])
        except Exception:
            LOGGER.exception(
                f'Error when validating key {key} with value {args[key]}')
            warning_msg = get_message('UNEXPECTED_ERROR')

        if warning_msg:
            validation_warnings.append(([key], warning_msg))
            invalid_keys.add(key)

    # Phase 3: Check spatial overlap of the otherwise valid spatial inputs
    if model_spec.validate_spatial_overlap:
        spatial_keys = [
            input_spec.id for input_spec in model_spec.inputs
            if input_spec.type in ('raster', 'vector')
            and input_spec.id not in invalid_keys | keys_with_no_value]

        if len(spatial_keys) >= 2:
            spatial_overlap_error = check_spatial_overlap(
                [args[key] for key in spatial_keys],
                model_spec.different_projections_ok)
            if spatial_overlap_error:
                validation_warnings.append(
                    (spatial_keys, spatial_overlap_error))

    # sort warnings alphabetically by key name
    return sorted(validation_warnings, key=lambda w: w[0][0])


def args_validator(validate_func):
    """Decorator to enforce the ``validate(args, limit_to=None)`` contract.

    The decorated function must accept ``args`` and ``limit_to`` and return
    a list of ``(keys, message)`` tuples.  When ``limit_to`` names a single
    key, only that input is checked against the model's MODEL_SPEC.

    Example::

        @validation.args_validator
        def validate(args, limit_to=None):
            return validation.validate(args, MODEL_SPEC)
    """
    @functools.wraps(validate_func)
    def _wrapped_validate_func(args, limit_to=None):
        assert isinstance(args, dict), 'args parameter must be a dictionary.'
        assert limit_to is None or isinstance(limit_to, str), (
            'limit_to parameter must be either a string key or None.')
        if limit_to is not None:
            assert limit_to in args, (
                f'limit_to key "{limit_to}" must exist in args.')
        for key in args:
            assert isinstance(key, str), 'All args keys must be strings.'

        if limit_to is None:
            LOGGER.info('Starting whole-model validation with MODEL_SPEC')
            warnings_ = validate_func(args)
        else:
            LOGGER.info('Starting single-input validation with MODEL_SPEC')
            model_spec = validate_func.__globals__['MODEL_SPEC']
            input_spec = model_spec.get_input(limit_to)
            value = args[limit_to]
            error_msg = None
            if value in ('', None):
                if input_spec.required:
                    error_msg = get_message('MISSING_VALUE')
            else:
                error_msg = input_spec.validate(value)
            warnings_ = [] if error_msg is None else [([limit_to], error_msg)]

        LOGGER.debug(f'Validation warnings: {pprint.pformat(warnings_)}')
        return warnings_

    return _wrapped_validate_func
