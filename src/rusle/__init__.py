"""init module for rusle."""
import logging
from importlib.metadata import PackageNotFoundError
from importlib.metadata import version

LOGGER = logging.getLogger('rusle')
LOGGER.addHandler(logging.NullHandler())
__all__ = ['__version__']

try:
    __version__ = version(__name__)
except PackageNotFoundError:
    # package is not installed.  Log the exception for debugging.
    LOGGER.exception('Could not load rusle version information')
    __version__ = 'unknown'
