from setuptools import find_packages
from setuptools import setup

# Read in requirements.txt and populate the python readme with the
# non-comment, non-environment-specifier contents.
_REQUIREMENTS = [req.split(';')[0].split('#')[0].strip() for req in
                 open('requirements.txt').readlines()
                 if (not req.startswith(('#', 'hg+', 'git+'))
                     and len(req.strip()) > 0)]

_TEST_REQUIREMENTS = [req.split('#')[0].strip() for req in
                      open('requirements-dev.txt').readlines()
                      if (not req.startswith('#') and len(req.strip()) > 0)]

setup(
    name='rusle',
    version='0.1.0',
    description=(
        'Revised Universal Soil Loss Equation: annual soil loss and '
        'erosion severity from rainfall, soil, terrain, vegetation and '
        'land cover rasters.'),
    python_requires='>=3.9',
    package_dir={'': 'src'},
    packages=find_packages('src'),
    install_requires=_REQUIREMENTS,
    extras_require={'test': _TEST_REQUIREMENTS},
    entry_points={
        'console_scripts': [
            'rusle = rusle.cli:main',
        ],
    },
)
