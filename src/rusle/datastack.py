"""Reading and writing parameter sets.

A **parameter set** is a JSON file holding the model id and the args dict
of one run::

    {"model_id": "rusle", "args": {"workspace_dir": "out", ...}}

Paths to files may be either relative or absolute.  Relative paths are
interpreted as relative to the location of the parameter set file.
"""
import collections
import json
import logging
import os

LOGGER = logging.getLogger(__name__)

ParameterSet = collections.namedtuple('ParameterSet', 'args model_id')


def build_parameter_set(args, model_id, paramset_path, relative=False):
    """Record a parameter set to a file on disk.

    Args:
        args (dict): The args dictionary to record to the parameter set.
        model_id (string): the id of the model that accepts ``args``.
        paramset_path (string): The path to the file on disk where the
            parameters should be recorded.
        relative (bool): Whether to save existing paths relative to the
            parent directory of ``paramset_path``.

    Returns:
        parameter dictionary saved in ``paramset_path``
    """
    paramset_dir = os.path.dirname(os.path.abspath(paramset_path))

    def _recurse(args_param):
        if isinstance(args_param, dict):
            return dict((key, _recurse(value))
                        for (key, value) in args_param.items())
        elif isinstance(args_param, list):
            return [_recurse(param) for param in args_param]
        elif isinstance(args_param, str) and os.path.exists(args_param):
            normalized_path = os.path.normpath(os.path.abspath(args_param))
            if relative:
                normalized_path = os.path.relpath(
                    normalized_path, paramset_dir)
            # Always save unix paths.
            return normalized_path.replace('\\', '/')
        return args_param

    parameter_data = {
        'model_id': model_id,
        'args': _recurse(args)
    }
    with open(paramset_path, 'w', encoding='UTF-8') as paramset_file:
        paramset_file.write(
            json.dumps(parameter_data, indent=4, sort_keys=True))

    return parameter_data


def extract_parameter_set(paramset_path):
    """Extract and return attributes from a parameter set.

    Any string values found will have environment variables and ``~``
    expanded.  Strings ``"true"`` and ``"false"`` become booleans.  A relative
    path is expanded against the parameter set's directory when the expanded
    path exists.

    Args:
        paramset_path (string): The file containing a parameter set.

    Returns:
        A ``ParameterSet`` namedtuple with these attributes::

            args (dict): The arguments dict for the callable
            model_id (string): the ID of the model that these parameters are for

    Raises:
        ValueError if the file has no ``model_id`` or no ``args``.
    """
    paramset_parent_dir = os.path.dirname(os.path.abspath(paramset_path))
    with open(paramset_path, 'r', encoding='UTF-8') as paramset_file:
        read_params = json.load(paramset_file)

    def _recurse(args_param):
        if isinstance(args_param, dict):
            return dict((key, _recurse(value)) for (key, value) in
                        args_param.items())
        elif isinstance(args_param, list):
            return [_recurse(param) for param in args_param]
        elif isinstance(args_param, str) and len(args_param) > 0:
            try:
                return {'true': True, 'false': False}[args_param.lower()]
            except KeyError:
                # Probably not a boolean, so continue checking paths.
                pass

            expanded_param = os.path.expandvars(
                os.path.expanduser(os.path.normpath(args_param)))
            if os.path.isabs(expanded_param):
                return expanded_param
            paramset_rel_path = os.path.abspath(
                os.path.join(paramset_parent_dir, expanded_param))
            if os.path.exists(paramset_rel_path):
                return paramset_rel_path
        return args_param

    for key in ('model_id', 'args'):
        if key not in read_params:
            raise ValueError(
                f'Parameter set {paramset_path} is missing the "{key}" key')
    return ParameterSet(
        args=_recurse(read_params['args']),
        model_id=read_params['model_id'])
