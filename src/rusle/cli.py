"""Command-line entry point for the RUSLE soil loss model."""
import argparse
import importlib
import json
import logging
import pprint
import sys

from . import __version__
from . import datastack

DEFAULT_EXIT_CODE = 1
LOGGER = logging.getLogger(__name__)
MODEL_ID = 'rusle'
MODEL_MODULE = 'rusle.rusle'


def _load_parameter_set(parser, datastack_path):
    """Parse a JSON parameter set or exit the parser with an error."""
    try:
        parsed_datastack = datastack.extract_parameter_set(datastack_path)
    except Exception as error:
        parser.exit(
            DEFAULT_EXIT_CODE,
            "Error when parsing JSON datastack file:\n    " + str(error))

    if parsed_datastack.model_id != MODEL_ID:
        parser.exit(
            DEFAULT_EXIT_CODE,
            f"Datastack is for model '{parsed_datastack.model_id}', "
            f"expected '{MODEL_ID}'")
    return parsed_datastack


def main(user_args=None):
    """CLI entry point for running and validating soil loss runs.

    Subcommands:

        * ``run``: execute the model headless with a JSON datastack
        * ``validate``: print validation messages for a datastack
        * ``getspec``: print the model's input and output specification
    """
    parser = argparse.ArgumentParser(
        description=(
            'Annual soil loss from the Revised Universal Soil Loss Equation '
            '(A = R * K * LS * C * P), classified into severity classes and '
            'summarized over a region and its sub-units.'),
        prog='rusle'
    )
    parser.add_argument('--version', action='version', version=__version__)
    verbosity_group = parser.add_mutually_exclusive_group()
    verbosity_group.add_argument(
        '-v', '--verbose', dest='verbosity', default=0, action='count',
        help=('Increase verbosity.  Affects how much logging is printed to '
              'the console and (if running) how much is written to the '
              'logfile.'))
    verbosity_group.add_argument(
        '--debug', dest='log_level', default=logging.ERROR,
        action='store_const', const=logging.DEBUG,
        help='Enable debug logging. Alias for -vvvv')

    subparsers = parser.add_subparsers(dest='subcommand')

    run_subparser = subparsers.add_parser(
        'run', help='Run the soil loss model')
    run_subparser.add_argument(
        '-d', '--datastack', required=True,
        help='Run the model with this JSON datastack.')
    run_subparser.add_argument(
        '-w', '--workspace', default=None, nargs='?',
        help=('The workspace in which outputs will be saved. Overrides the '
              'workspace in the datastack.'))

    validate_subparser = subparsers.add_parser(
        'validate', help='Validate the parameters of a datastack')
    validate_subparser.add_argument(
        '--json', action='store_true', help='Write output as a JSON object')
    validate_subparser.add_argument(
        'datastack', help='Validate the model args in this JSON datastack.')

    getspec_subparser = subparsers.add_parser(
        'getspec', help='Get the specification of the model.')
    getspec_subparser.add_argument(
        '--json', action='store_true', help='Write output as a JSON object')

    args = parser.parse_args(user_args)

    root_logger = logging.getLogger()
    handler = logging.StreamHandler(sys.stdout)
    formatter = logging.Formatter(
        fmt='%(asctime)s %(name)-18s %(levelname)-8s %(message)s',
        datefmt='%m/%d/%Y %H:%M:%S ')
    handler.setFormatter(formatter)

    # Verbosity: the more v's the lower the logging threshold.
    # If the user goes lower than logging.DEBUG, default to logging.DEBUG.
    log_level = min(args.log_level, logging.ERROR - (args.verbosity * 10))
    handler.setLevel(max(log_level, logging.DEBUG))
    root_logger.addHandler(handler)
    LOGGER.info('Setting handler log level to %s', log_level)
    logging.getLogger('rusle').setLevel(logging.DEBUG)

    try:
        if args.subcommand is None:
            parser.print_help()
            parser.exit(DEFAULT_EXIT_CODE)

        model_module = importlib.import_module(MODEL_MODULE)

        if args.subcommand == 'getspec':
            spec_json = model_module.MODEL_SPEC.to_json()
            if args.json:
                message = spec_json
            else:
                message = pprint.pformat(json.loads(spec_json))
            sys.stdout.write(message)
            parser.exit(0)

        if args.subcommand == 'validate':
            parsed_datastack = _load_parameter_set(parser, args.datastack)
            try:
                validation_result = model_module.validate(
                    parsed_datastack.args)
            except Exception as error:
                parser.exit(
                    DEFAULT_EXIT_CODE,
                    'Datastack could not be validated:\n    ' + str(error))

            # Even validation errors will have an exit code of 0
            if args.json:
                message = json.dumps({
                    'validation_results': validation_result})
            else:
                message = pprint.pformat(validation_result)
            sys.stdout.write(message)
            parser.exit(0)

        if args.subcommand == 'run':
            parsed_datastack = _load_parameter_set(parser, args.datastack)
            if args.workspace:
                parsed_datastack.args['workspace_dir'] = args.workspace
            elif parsed_datastack.args.get('workspace_dir') in ('', None):
                parser.exit(
                    DEFAULT_EXIT_CODE,
                    'Workspace must be defined at the command line '
                    'or in the datastack file')

            # Not validating here; ``rusle validate <datastack>`` does that.
            model_module.MODEL_SPEC.execute(
                parsed_datastack.args,
                create_logfile=True,
                log_level=log_level,
                save_file_registry=True)
    finally:
        root_logger.removeHandler(handler)
