import os.path
import re

_PATTERN_FIELD = re.compile(r'\[(\w+)\]')


class FileRegistry:
    """Absolute workspace paths for the outputs declared in a ModelSpec.

    Build one from a ModelSpec's outputs, the workspace and the results suffix::

        f_reg = FileRegistry(MODEL_SPEC.outputs, workspace_dir, '_run1')

    Index it by output id to get the path, suffix included::

        f_reg['soil_loss']  # <workspace>/soil_loss_run1.tif

    Output ids that contain bracketed fields (e.g. ``annual_precip_[YEAR]``)
    are indexed with a value per field::

        f_reg['annual_precip_[YEAR]', 1998]

    Every path handed out is recorded in ``registry``; pattern outputs are
    recorded as nested dicts keyed by the field values.  This is the value
    ``execute`` returns.
    """

    def __init__(self, outputs, workspace_dir, file_suffix=None):
        self.registry = {}
        self._paths = {}
        self._fields = {}

        for output in outputs:
            base, extension = os.path.splitext(output.path)
            full_path = os.path.abspath(os.path.join(
                workspace_dir, base + (file_suffix or '') + extension))
            if output.id in self._paths:
                raise ValueError(f'Duplicate id: {output.id}')
            if full_path in self._paths.values():
                raise ValueError(f'Duplicate path: {full_path}')

            fields = _PATTERN_FIELD.findall(output.id)
            if fields:
                self._fields[output.id] = fields
            self._paths[output.id] = full_path

    def __getitem__(self, keys):
        """Return the absolute path for an output id.

        Args:
            keys (str | tuple): the output id, followed by one value per
                bracketed field for pattern outputs.

        Returns:
            absolute path string

        Raises:
            KeyError if the id is unknown or the number of field values
            does not match the output id.
        """
        if isinstance(keys, str):
            keys = (keys,)
        key, *values = keys
        if key not in self._paths:
            raise KeyError(f'Key not found: {key}')

        values = [str(value) for value in values]
        fields = self._fields.get(key, [])
        if len(values) != len(fields):
            raise KeyError(
                f'Expected {len(fields)} field values for {key} but '
                f'received {len(values)}')

        path = self._paths[key]
        if not fields:
            self.registry[key] = path
            return path

        for field, value in zip(fields, values):
            path = path.replace(f'[{field}]', value)

        entry = self.registry.setdefault(key, {})
        for value in values[:-1]:
            entry = entry.setdefault(value, {})
        entry[values[-1]] = path
        return path
