"""
Write an ``xptcsv.Dataset`` as comma-separated values (CSV).

A value is quoted only if it contains a comma, a double quote, or a
newline.  Quoted values double their inner double quotes.  Other
characters, including carriage returns and other control characters,
pass through as-is.
"""

# Standard Library
import logging
from collections import namedtuple
from io import StringIO

__all__ = [
    'render',
    'dump',
    'dumps',
    'Rendering',
]

LOG = logging.getLogger(__name__)

DELIMITER = ','
QUOTE = '"'
LINE_TERMINATOR = '\n'

Rendering = namedtuple('Rendering', 'text skipped')


def quote(value):
    """
    Quote a value if it contains a delimiter, quote, or newline.
    """
    if DELIMITER in value or QUOTE in value or '\n' in value:
        return QUOTE + value.replace(QUOTE, QUOTE * 2) + QUOTE
    return value


def line(values):
    """
    Join values into one line of text.
    """
    return DELIMITER.join(quote(v) for v in values) + LINE_TERMINATOR


def dump(dataset, fp):
    """
    Write a dataset as CSV to ``fp``, an open text-mode file.

    Rows with more or fewer values than the dataset has variables are
    skipped.  Returns the number of skipped rows.
    """
    width = len(dataset.variables)
    fp.write(line(dataset.fields))
    written = skipped = 0
    for i, row in enumerate(dataset.rows):
        if len(row) != width:
            LOG.warning(f'Skipping row {i}, which has {len(row)} values but expected {width}')
            skipped += 1
            continue
        fp.write(line(row.values))
        written += 1
    LOG.info(f'Wrote {written} rows of {dataset.name!r}, skipped {skipped}')
    return skipped


def render(dataset):
    """
    Render a dataset as CSV text, with the number of skipped rows.
    """
    fp = StringIO()
    skipped = dump(dataset, fp)
    return Rendering(fp.getvalue(), skipped)


def dumps(dataset):
    """
    Render a dataset as CSV text.
    """
    return render(dataset).text
