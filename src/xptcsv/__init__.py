"""
Convert SAS Transport (XPORT/XPT) files to comma-separated values.
"""

# Standard Library
import enum
import logging
import textwrap
from collections import namedtuple

# Community Packages
import pandas as pd

from .__about__ import __version__  # noqa: F401 module imported but unused

LOG = logging.getLogger(__name__)

__all__ = [
    'Dataset',
    'Variable',
    'VariableType',
    'Row',
    'Format',
    'ParseError',
    'EmptyInput',
    'Truncated',
    'MalformedHeader',
    'UnsupportedType',
    'NoVariables',
    'NoRows',
    'MemberNotFound',
]


class ParseError(ValueError):
    """
    Bytes did not match the SAS Transport (XPORT) format.
    """

    def __init__(self, message, expected=None, got=None):
        if expected is not None or got is not None:
            message += f' -- expected {expected!r}, got {got!r}'
        super().__init__(message)
        self.expected = expected
        self.got = got


class EmptyInput(ParseError):
    """The document has zero bytes."""


class Truncated(ParseError):
    """The document ended before a record was complete."""


class MalformedHeader(ParseError):
    """A header record did not match its expected layout."""


class UnsupportedType(ParseError):
    """A variable is neither numeric nor character."""


class NoVariables(ParseError):
    """A member declares zero variables."""


class NoRows(ParseError):
    """A member has zero observations."""


class MemberNotFound(ParseError):
    """No member dataset has the requested name."""


class VariableType(enum.IntEnum):
    """
    SAS variables can be either Numeric or Character type.
    """
    NUMERIC = 1
    CHARACTER = 2


class Format(namedtuple('Format', 'name length decimals')):
    """
    SAS variable format or informat, such as ``$CHAR10.`` or ``COMMA8.2``.
    """

    def __new__(cls, name='', length=0, decimals=0):
        return super().__new__(cls, name, length, decimals)

    def __str__(self):
        """
        Pleasant display value.
        """
        if not (self.name or self.length or self.decimals):
            return ''
        decimals = self.decimals if self.decimals else ''
        return f'{self.name}{self.length}.{decimals}'

    @classmethod
    def from_struct_tokens(cls, name, length, decimals):
        """
        Create a format from unpacked struct tokens.
        """
        name = name.strip(b'\x00').decode('ascii', errors='replace').strip()
        return cls(name=name, length=length, decimals=decimals)


class Variable:
    """
    SAS variable metadata.

    The ``position`` is the byte offset of the variable's value within
    each observation.
    """

    def __init__(
        self,
        name,
        vtype,
        length,
        position,
        number=None,
        label='',
        format=None,
        informat=None,
    ):
        """
        Initialize SAS variable metadata.
        """
        self.name = name
        self.vtype = VariableType(vtype)
        self.length = length
        self.position = position
        self.number = number
        self.label = label
        self.format = format if format is not None else Format()
        self.informat = informat if informat is not None else Format()

    def __repr__(self):
        """
        REPL-format string.
        """
        return (
            f'{type(self).__name__}(name={self.name!r}, vtype={self.vtype.name}, '
            f'length={self.length!r}, position={self.position!r})'
        )

    def __eq__(self, other):
        """Equality."""
        if not isinstance(other, Variable):
            return NotImplemented
        attributes = [
            'name',
            'vtype',
            'length',
            'position',
            'number',
            'label',
            'format',
            'informat',
        ]
        return all(getattr(self, a) == getattr(other, a) for a in attributes)

    @property
    def numeric(self):
        return self.vtype == VariableType.NUMERIC


class Row:
    """
    One observation, as text values in variable order.

    Missing values are empty strings.
    """

    def __init__(self, values):
        self.values = tuple(values)

    def __repr__(self):
        return f'{type(self).__name__}{self.values!r}'

    def __eq__(self, other):
        """Equality."""
        if isinstance(other, Row):
            return self.values == other.values
        if isinstance(other, (tuple, list)):
            return self.values == tuple(other)
        return NotImplemented

    def __len__(self):
        return len(self.values)

    def __iter__(self):
        return iter(self.values)


class Dataset:
    """
    SAS data set decoded from a transport file member.

    ``Dataset`` is plain data: a title, the variables, and the rows.
    Other metadata from the member headers is kept for display.
    """

    def __init__(
        self,
        variables=(),
        rows=(),
        name='',
        label='',
        title=None,
        dataset_type='',
        created=None,
        modified=None,
        sas_os='',
        sas_version='',
    ):
        """
        Initialize SAS dataset data and metadata.
        """
        self.variables = tuple(variables)
        self.rows = tuple(r if isinstance(r, Row) else Row(r) for r in rows)
        self.name = name
        self.label = label
        if title is None:
            title = label.strip() or name.strip()
        self.title = title
        self.dataset_type = dataset_type
        self.created = created
        self.modified = modified
        self.sas_os = sas_os
        self.sas_version = sas_version

    def __repr__(self):
        """REPL-format."""
        template = '''\
            {cls} {name!r} {title!r}
            {n} rows x {m} variables: {fields}
        '''
        return textwrap.dedent(template).format(
            cls=type(self).__name__,
            name=self.name,
            title=self.title,
            n=len(self.rows),
            m=len(self.variables),
            fields=', '.join(self.fields),
        )

    def __eq__(self, other):
        """Equality."""
        if not isinstance(other, Dataset):
            return NotImplemented
        return (
            self.title == other.title
            and self.variables == other.variables
            and self.rows == other.rows
        )

    def __len__(self):
        """
        Get the number of rows.
        """
        return len(self.rows)

    @property
    def fields(self):
        """
        Variable names, in observation order.
        """
        return tuple(v.name for v in self.variables)

    @property
    def contents(self):
        """
        Variable metadata, such as label, format, number, and position.
        """
        df = pd.DataFrame(
            [{
                'Variable': v.name,
                'Type': v.vtype.name.title(),
                'Length': v.length,
                'Position': v.position,
                'Format': str(v.format),
                'Informat': str(v.informat),
                'Label': v.label,
            } for v in self.variables],
            columns=['Variable', 'Type', 'Length', 'Position', 'Format', 'Informat', 'Label'],
        )
        df.index = df.index + 1
        df.index.name = '#'
        return df

    def to_dataframe(self):
        """
        Get the observations as a Pandas ``DataFrame``.

        Numeric variables become ``float64`` columns with NaN for missing
        values.  Character variables use the ``string`` dtype.  Rows with
        the wrong number of values are left out.
        """
        width = len(self.variables)
        records = [row.values for row in self.rows if len(row) == width]
        if len(records) != len(self.rows):
            LOG.warning(f'Left out {len(self.rows) - len(records)} malformed rows')
        df = pd.DataFrame.from_records(records, columns=list(self.fields))
        for v in self.variables:
            column = df[v.name]
            if v.numeric:
                df[v.name] = pd.to_numeric(column.mask(column == '')).astype('float64')
            else:
                df[v.name] = column.astype('string')
        LOG.debug(f'Converted {self.name!r} to a DataFrame with shape {df.shape}')
        return df
