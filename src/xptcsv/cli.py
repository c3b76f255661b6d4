"""
Convert SAS XPORT/XPT-format files to CSV.
"""

# Standard Library
import codecs
import copy
import json
import logging
import logging.config

# Community Packages
import click
import yaml

# Xptcsv Modules
import xptcsv
import xptcsv.render
import xptcsv.v5

__all__ = [
    'cli',
]

try:
    Loader = yaml.CSafeLoader
except AttributeError:
    Loader = yaml.SafeLoader

DEFAULT_LOG_CONFIG = {
    'version': 1,
    'disable_existing_loggers': False,
    'formatters': {
        'brief': {
            'format': '%(levelname)s %(name)s: %(message)s',
        },
    },
    'handlers': {
        'stderr': {
            'class': 'logging.StreamHandler',
            'formatter': 'brief',
            'stream': 'ext://sys.stderr',
        },
    },
    'loggers': {
        'xptcsv': {
            'level': 'WARNING',
            'handlers': ['stderr'],
        },
    },
}


def read_log_config(path='logging.yml'):
    """
    Read logging configuration from a YAML file, if there is one.
    """
    try:
        with open(path) as file:
            return yaml.load(file, Loader=Loader)
    except FileNotFoundError:
        return copy.deepcopy(DEFAULT_LOG_CONFIG)


LOG_CONFIG = read_log_config()
logging.config.dictConfig(LOG_CONFIG)

LOG = logging.getLogger(__name__)
log_levels = [name for x, name in sorted(logging._levelToName.items()) if x]


def validate_encoding(ctx, param, value):
    """
    Check that Python knows the text encoding.
    """
    try:
        codecs.lookup(value)
    except LookupError:
        raise click.BadParameter(f'Unknown encoding {value!r}')
    return value


@click.command(
    context_settings={'help_option_names': ['-h', '--help']},
)
@click.argument('input', type=click.File('rb'))
@click.argument('output', type=click.File('wt'), default='-')
@click.option(
    '--dataset', metavar='NAME', help='Select a dataset by name.  Defaults to the first dataset.'
)
@click.option(
    '--encoding',
    default=xptcsv.v5.TEXT_DATA_ENCODING,
    show_default=True,
    callback=validate_encoding,
    help='Text encoding of character data.',
)
@click.option(
    '--contents',
    is_flag=True,
    help='Write the variable metadata instead of the observations.',
)
@click.option(
    '--loglevel',
    metavar='LEVEL',
    type=click.Choice(log_levels, case_sensitive=False),
    help=f'Set logging level.  {{{", ".join(log_levels)}}}',
)
@click.version_option(version=str(xptcsv.__version__))
def cli(input, output, dataset, encoding, contents, loglevel):
    """
    Convert SAS Transport (XPORT) files to comma-separated values (CSV).
    """
    if loglevel:
        for config in LOG_CONFIG.get('loggers', {}).values():
            config['level'] = loglevel.upper()
        logging.config.dictConfig(LOG_CONFIG)

    LOG.debug('Xptcsv version %s', xptcsv.__version__)
    LOG.debug('CLI arg --loglevel = %r', loglevel)
    LOG.debug('Using logging config %s', json.dumps(LOG_CONFIG, indent=2))

    bytestring = input.read()
    try:
        ds = xptcsv.v5.loads(bytestring, member=dataset, encoding=encoding)
    except xptcsv.ParseError as error:
        raise click.ClickException(f'{type(error).__name__}: {error}') from error
    LOG.info(f'Selected dataset {ds.name!r}')

    if contents:
        ds.contents.to_csv(output)
        return
    skipped = xptcsv.render.dump(ds, output)
    if skipped:
        LOG.warning(f'Skipped {skipped} malformed rows')
