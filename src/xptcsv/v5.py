"""
Read the SAS XPORT/XPT file format from SAS Version 5 or 6.

A transport file is a library of member datasets.  The library header
is followed, for each member, by member headers, one variable
descriptor ("namestr") per variable, and the observations.

    with open('example.xpt', 'rb') as f:
        dataset = load(f)
"""

# Header records are 80 bytes long, padded with ASCII blanks.
# Header text is ASCII-encoded.
# Integers in namestrs are big-endian.
# Numeric data are IBM-style hexadecimal floating point.

# Standard Library
import functools
import logging
import math
import re
import struct
from collections.abc import Iterator, Mapping
from datetime import datetime

# Xptcsv Modules
import xptcsv
from xptcsv.records import Records

__all__ = [
    'load',
    'loads',
    'Library',
    'ibm_to_ieee',
]

LOG = logging.getLogger(__name__)

TEXT_DATA_ENCODING = 'ISO-8859-1'
TEXT_METADATA_ENCODING = 'ascii'

LIBRARY_MARKER = b'HEADER RECORD*******LIBRARY HEADER RECORD!!!!!!!'
MEMBER_MARKER = b'HEADER RECORD*******MEMBER  HEADER RECORD!!!!!!!'
DSCRPTR_MARKER = b'HEADER RECORD*******DSCRPTR HEADER RECORD!!!!!!!'
NAMESTR_MARKER = b'HEADER RECORD*******NAMESTR HEADER RECORD!!!!!!!'
OBS_MARKER = b'HEADER RECORD*******OBS     HEADER RECORD!!!!!!!'

# Other transport variants we recognize only to give a better message.
V8_MARKER = b'HEADER RECORD*******LIBV8   HEADER RECORD!!!!!!!'
CPORT_MARKER = b'**COMPRESSED** **COMPRESSED**'

# SAS encodes missing numeric values as a zero mantissa with the first
# byte an ASCII period (".") or, for special missing values, an
# underscore or one of the letters A to Z.
MISSING = re.compile(rb'[._A-Z]\x00*')


def text_decode(bytestring, encoding=TEXT_METADATA_ENCODING):
    """
    Decode fixed-width header text, trimming blanks and NULs.
    """
    return bytestring.strip(b'\x00').decode(encoding, errors='replace').strip()


def strptime(timestring):
    """
    Parse a datetime from an XPT format string.

    This function expects a bytes string in the "ddMMMyy:hh:mm:ss"
    format.  For example, ``b'16FEB11:10:07:55'``.  Note that XPT
    supports only 2-digit years, which are expected to be either 1900s
    or 2000s.
    """
    text = timestring.decode('ascii')
    return datetime.strptime(text, '%d%b%y:%H:%M:%S')


def read_datetime(timestring, topic):
    """
    Parse a header datetime, or ``None`` if it's unreadable.
    """
    try:
        return strptime(timestring)
    except (UnicodeDecodeError, ValueError):
        LOG.warning(f'Could not parse {topic} datetime {timestring!r}')
        return None


def read_integer(bytestring, topic):
    """
    Parse a blank- or zero-padded decimal number from header text.
    """
    try:
        return int(bytestring.decode('ascii'))
    except (UnicodeDecodeError, ValueError):
        raise xptcsv.MalformedHeader(f'Invalid {topic}', expected='digits', got=bytestring)


def ibm_to_ieee(ibm: bytes) -> float:
    """
    Convert IBM-format floating point (bytes) to a Python float.
    """
    # IBM mainframe:    sign * 0.mantissa * 16 ** (exponent - 64)
    # The 56-bit mantissa is 14 hexadecimal digits with no implicit
    # leading bit, so as an integer it's scaled by 16 ** -14.

    # Variables shorter than 8 bytes store the leading bytes only.
    ibm = bytes(ibm).ljust(8, b'\x00')

    # parse the 64 bits of IBM float as one 8-byte unsigned long long
    ulong, = struct.unpack('>Q', ibm)

    # IBM: 1-bit sign, 7-bits exponent, 56-bits mantissa
    sign = ulong >> 63
    exponent = (ulong >> 56) & 0x7f
    mantissa = ulong & 0x00ffffffffffffff

    # Any sign or exponent is a "true" zero if the mantissa is zero.
    if mantissa == 0:
        return 0.0

    # 16 ** x == 2 ** (4 * x), and ``ldexp`` scales by powers of 2
    # without rounding, so the only rounding is the mantissa's
    # conversion from 56 bits to the 53 bits of an IEEE double.
    value = math.ldexp(mantissa, 4 * (exponent - 64 - 14))
    return -value if sign else value


def format_number(value):
    """
    Display a float with the shortest text that parses back to it.

    Integral values display without a trailing ``.0``.
    """
    if value.is_integer() and abs(value) < 2**53:
        return str(int(value))
    return repr(value)


def numeric_decode(bytestring):
    """
    Decode a numeric value as text, or ``''`` if it's missing.
    """
    if MISSING.fullmatch(bytestring):
        return ''
    return format_number(ibm_to_ieee(bytestring))


def character_decode(bytestring, encoding=TEXT_DATA_ENCODING):
    """
    Decode a character value, trimming the blank padding.
    """
    return bytestring.rstrip(b' \x00').decode(encoding, errors='replace')


class LibraryHeader:
    """
    Library metadata from a SAS Version 5 or 6 Transport (XPORT) file.
    """

    # 1. The first header record:
    #
    #   HEADER RECORD*******LIBRARY HEADER RECORD!!!!!!!
    #   000000000000000000000000000000
    #
    # 2. The first real header record:
    #
    #   char sas_symbol[2][8];  "SAS", twice
    #   char saslib[8];         "SASLIB"
    #   char sasver[8];         version of SAS used
    #   char sas_os[8];         operating system used
    #   char blanks[24];
    #   char sas_create[16];    datetime created
    #
    # 3. The second real header record holds the datetime modified,
    #    padded with blanks to 80 bytes.

    def __init__(self, sas_version='', sas_os='', created=None, modified=None):
        """
        Initialize a ``LibraryHeader``.
        """
        self.sas_version = sas_version
        self.sas_os = sas_os
        self.created = created
        self.modified = modified

    def __repr__(self):
        """
        Format for the REPL.
        """
        return (
            f'<{type(self).__name__} SAS {self.sas_version} on {self.sas_os},'
            f' created {self.created}, modified {self.modified}>'
        )

    @classmethod
    def from_records(cls, records: Records):
        """
        Consume the library header records.
        """
        LOG.debug(f'Decode {cls.__name__} at {records.position}')
        # Unlike later headers, a partial library marker is not a truncated
        # XPORT document.
        if not records.peek_matches(LIBRARY_MARKER):
            lines = [records.peek(records.size * 3)[i:i + 80] for i in range(0, 240, 80)]
            LOG.error('Document begins with' + '\n%r' * len(lines), *lines)
            if records.peek_matches(CPORT_MARKER):
                message = 'Document is a CPORT (compressed transport) file, not XPORT'
            elif records.peek_matches(V8_MARKER):
                message = 'Document is a SAS Version 8 or 9 transport file, not Version 5 or 6'
            else:
                message = 'Invalid library header'
            raise xptcsv.MalformedHeader(
                message,
                expected=LIBRARY_MARKER,
                got=records.peek(len(LIBRARY_MARKER)),
            )
        records.expect(LIBRARY_MARKER, 'library header')

        line = records.expect(b'SAS     SAS     SASLIB  ', 'first real header')
        version, os, created = struct.unpack('>24x8s8s24x16s', line)
        line = records.next(topic='second real header')
        self = cls(
            sas_version=text_decode(version),
            sas_os=text_decode(os),
            created=read_datetime(created, 'library created'),
            modified=read_datetime(line[:16], 'library modified'),
        )
        LOG.debug(f'Decoded {self}')
        return self


class Namestr:
    """
    Variable metadata from a SAS Version 5 or 6 Transport (XPORT) file.
    """

    # struct NAMESTR {
    #    short ntype;       VARIABLE TYPE: 1=NUMERIC, 2=CHAR
    #    short nhfun;       HASH OF NNAME (always 0)
    #    short nlng;        LENGTH OF VARIABLE IN OBSERVATION
    #    short nvar0;       VARNUM
    #    char8 nname;       NAME OF VARIABLE
    #    char40 nlabel;     LABEL OF VARIABLE
    #    char8 nform;       NAME OF FORMAT
    #    short nfl;         FORMAT FIELD LENGTH OR 0
    #    short nfd;         FORMAT NUMBER OF DECIMALS
    #    short nfj;         0=LEFT JUSTIFICATION, 1=RIGHT JUST
    #    char nfill[2];     (UNUSED)
    #    char8 niform;      NAME OF INPUT FORMAT
    #    short nifl;        INFORMAT LENGTH ATTRIBUTE
    #    short nifd;        INFORMAT NUMBER OF DECIMALS
    #    long npos;         POSITION OF VALUE IN OBSERVATION
    #    char rest[52];     remaining fields are irrelevant
    # };
    #
    # The member header gives the namestr size: 140 bytes, or 136 on
    # VAX/VMS where ``rest`` is truncated.

    fmts = {
        140: '>hhhh8s40s8shhh2s8shhl52s',
        136: '>hhhh8s40s8shhh2s8shhl48s',
    }

    # Maximum value length for each variable type in Version 5 files.
    max_lengths = {
        xptcsv.VariableType.NUMERIC: 8,
        xptcsv.VariableType.CHARACTER: 200,
    }

    def __init__(self, vtype, length, number, name, label, format, informat, position):
        """
        Initialize a ``Namestr``.
        """
        self.vtype = vtype
        self.length = length
        self.number = number
        self.name = name
        self.label = label
        self.format = format
        self.informat = informat
        self.position = position

    def __repr__(self):
        return f'<{type(self).__name__} {self.number}: {self.name!r} {self.vtype.name}>'

    @classmethod
    def from_bytes(cls, bytestring: bytes, encoding=TEXT_METADATA_ENCODING):
        """
        Construct a ``Namestr`` from an XPORT-format byte string.
        """
        size = len(bytestring)
        try:
            fmt = cls.fmts[size]
        except KeyError:
            raise xptcsv.MalformedHeader('Invalid namestr size', expected=tuple(cls.fmts), got=size)
        tokens = struct.unpack(fmt, bytestring)
        name = text_decode(tokens[4], encoding)
        try:
            vtype = xptcsv.VariableType(tokens[0])
        except ValueError:
            raise xptcsv.UnsupportedType(
                f'Variable {name!r} is neither numeric nor character',
                expected=tuple(xptcsv.VariableType),
                got=tokens[0],
            )
        if not name:
            raise xptcsv.MalformedHeader(f'Variable number {tokens[3]} has a blank name')
        length = tokens[2]
        limit = cls.max_lengths[vtype]
        if not 1 <= length <= limit:
            raise xptcsv.MalformedHeader(
                f'{vtype.name.title()} variable {name!r} has invalid length',
                expected=f'1 to {limit}',
                got=length,
            )
        return cls(
            vtype=vtype,
            length=length,
            number=tokens[3],
            name=name,
            label=text_decode(tokens[5], encoding),
            format=xptcsv.Format.from_struct_tokens(*tokens[6:9]),
            informat=xptcsv.Format.from_struct_tokens(*tokens[11:14]),
            position=tokens[14],
        )


class MemberHeader:
    """
    Dataset metadata from a SAS Version 5 or 6 Transport (XPORT) file.
    """

    # 4. Member header records, for every member in the file:
    #
    #    HEADER RECORD*******MEMBER  HEADER RECORD!!!!!!!
    #    000000000000000001600000000140
    #    HEADER RECORD*******DSCRPTR HEADER RECORD!!!!!!!
    #    000000000000000000000000000000
    #
    #    The 0140 is the size of each namestr (0136 on VAX/VMS).
    #
    # 5. Member header data:
    #
    #    char sas_symbol[8];  "SAS"
    #    char sas_dsname[8];  dataset name
    #    char sasdata[8];     "SASDATA"
    #    char sasver[8];      version of SAS used
    #    char sas_osname[8];  operating system used
    #    char blanks[24];
    #    char sas_create[16]; datetime created
    #
    #    char dtmod[16];      datetime modified
    #    char padding[16];
    #    char dslabel[40];    dataset label
    #    char dstype[8];      dataset type
    #
    # 6. Namestr header record, with xxxx the number of variables:
    #
    #    HEADER RECORD*******NAMESTR HEADER RECORD!!!!!!!
    #    000000xxxx00000000000000000000
    #
    # 7. Namestr records are streamed together across 80-byte records,
    #    padded with blanks after the last namestr.
    #
    # 8. Observation header:
    #
    #    HEADER RECORD*******OBS     HEADER RECORD!!!!!!!
    #    000000000000000000000000000000

    def __init__(
        self,
        name,
        label='',
        dataset_type='',
        created=None,
        modified=None,
        sas_os='',
        sas_version='',
        namestrs=(),
    ):
        """
        Initialize a ``MemberHeader``.
        """
        self.name = name
        self.label = label
        self.dataset_type = dataset_type
        self.created = created
        self.modified = modified
        self.sas_os = sas_os
        self.sas_version = sas_version
        self.namestrs = list(namestrs)

    def __repr__(self):
        """
        Format for the REPL.
        """
        return f'<{type(self).__name__} {self.name!r} {self.label!r}, {len(self.namestrs)} variables>'

    @property
    def title(self):
        """
        Dataset label, or the dataset name if the label is blank.
        """
        return self.label or self.name

    @property
    def variables(self):
        """
        Variable metadata with positions in the observation record.
        """
        # Observations concatenate values in declaration order.
        variables = []
        position = 0
        for ns in self.namestrs:
            if ns.position != position:
                LOG.warning(
                    f'Variable {ns.name!r} declares position {ns.position}, expected {position}'
                )
            variables.append(
                xptcsv.Variable(
                    name=ns.name,
                    vtype=ns.vtype,
                    length=ns.length,
                    position=position,
                    number=ns.number,
                    label=ns.label,
                    format=ns.format,
                    informat=ns.informat,
                ))
            position += ns.length
        return variables

    @classmethod
    def from_records(cls, records: Records, encoding=TEXT_METADATA_ENCODING):
        """
        Consume the member header records, namestrs, and observation header.
        """
        LOG.debug(f'Decode {cls.__name__} at {records.position}')
        line = records.expect(MEMBER_MARKER, 'member header')
        size = read_integer(line[74:78], 'namestr size')
        if size not in Namestr.fmts:
            raise xptcsv.MalformedHeader(
                'Invalid namestr size', expected=tuple(Namestr.fmts), got=size
            )
        records.expect(DSCRPTR_MARKER, 'descriptor header')

        line = records.expect(b'SAS     ', 'member descriptor')
        name, sasdata, version, os, created = struct.unpack('>8x8s8s8s8s24x16s', line)
        if sasdata != b'SASDATA ':
            raise xptcsv.MalformedHeader('Invalid member descriptor', expected=b'SASDATA ', got=sasdata)
        line = records.next(topic='second member descriptor')
        modified, label, dataset_type = struct.unpack('>16s16x40s8s', line)

        line = records.expect(NAMESTR_MARKER, 'namestr header')
        n = read_integer(line[54:58], 'variable count')
        namestrs = cls.read_namestrs(records, n, size, encoding)
        records.expect(OBS_MARKER, 'observation header')

        self = cls(
            name=text_decode(name, encoding),
            label=text_decode(label, encoding),
            dataset_type=text_decode(dataset_type, encoding),
            created=read_datetime(created, 'member created'),
            modified=read_datetime(modified, 'member modified'),
            sas_os=text_decode(os, encoding),
            sas_version=text_decode(version, encoding),
            namestrs=namestrs,
        )
        LOG.debug(f'Decoded {self}')
        return self

    @staticmethod
    def read_namestrs(records, n, size, encoding=TEXT_METADATA_ENCODING):
        """
        Consume ``n`` namestrs and the padding after them.
        """
        namestrs = []
        for i in range(1, n + 1):
            bytestring = records.next(size, topic=f'namestr {i} of {n}')
            namestrs.append(Namestr.from_bytes(bytestring, encoding))
        records.align('namestr padding')
        return namestrs


class Observations(Iterator):
    """
    Data from a SAS Version 5 or 6 Transport (XPORT) file.

    ``Observations`` is an iterator, yielding observations as ``xptcsv.Row``.
    """

    # Data records are streamed in the same way that namestrs are.
    # There is ASCII blank padding at the end of the last record if
    # necessary. There is no special trailing record.

    def __init__(self, observations):
        """
        Initialize from an iterable of observations.
        """
        self.it = iter(observations)

    def __next__(self):
        """
        Get the next item from the iterator.
        """
        return next(self.it)

    @staticmethod
    def is_padding(rest, stride, size=Records.size):
        """
        Check if the rest of the data is end-of-member padding.
        """
        if len(rest) < stride:
            return not rest.strip(b' \x00')
        if len(rest) < size:
            # TODO: A last row that is all blanks is indistinguishable
            #       from padding when it falls in the final record.
            return not rest.strip(b' ')
        return False

    @staticmethod
    def record_length(bytestring, stride):
        """
        Get the length of each observation record.

        Some writers drop the last byte of every observation.  If the
        data before the trailing blanks holds two or more whole records
        one byte shorter than declared, but not a whole number of
        declared records, the records are short.
        """
        n = len(bytestring.rstrip(b' '))
        short = stride - 1
        if short and n % stride and not n % short and n // short >= 2:
            return short
        return stride

    @classmethod
    def from_bytes(cls, bytestring, variables, encoding=TEXT_DATA_ENCODING):
        """
        Yield observations from an XPORT-format byte string.
        """
        LOG.debug(f'Decode {cls.__name__} from {len(bytestring)} bytes')
        converters = []
        for v in variables:
            if v.numeric:
                converters.append(numeric_decode)
            else:
                converters.append(functools.partial(character_decode, encoding=encoding))

        def iterator():
            stride = sum(v.length for v in variables)
            if stride == 0:
                return
            length = cls.record_length(bytestring, stride)
            if length != stride:
                fits = [
                    (f, v) for f, v in zip(converters, variables)
                    if v.position + v.length <= length
                ]
                LOG.warning(
                    f'Observations are {length} bytes, expected {stride};'
                    f' decoded {len(fits)} of {len(variables)} values per row'
                )
                end = len(bytestring.rstrip(b' '))
                for i in range(0, end, length):
                    chunk = bytestring[i:i + length]
                    yield xptcsv.Row(f(chunk[v.position:v.position + v.length]) for f, v in fits)
                return
            tail = max(stride, Records.size)
            for i in range(0, len(bytestring), stride):
                chunk = bytestring[i:i + stride]
                if len(bytestring) - i < tail and cls.is_padding(bytestring[i:], stride):
                    return
                if len(chunk) < stride:
                    # Keep the values that fit.  The row is short, so
                    # rendering will skip it.
                    fits = [
                        (f, v) for f, v in zip(converters, variables)
                        if v.position + v.length <= len(chunk)
                    ]
                    LOG.warning(
                        f'Observation at byte {i} is {len(chunk)} bytes, expected {stride};'
                        f' decoded {len(fits)} of {len(variables)} values'
                    )
                    yield xptcsv.Row(f(chunk[v.position:v.position + v.length]) for f, v in fits)
                    return
                yield xptcsv.Row(
                    f(chunk[v.position:v.position + v.length]) for f, v in zip(converters, variables)
                )

        return cls(iterator())


def decode_member(header, bytestring, encoding=TEXT_DATA_ENCODING):
    """
    Decode a member's observations into an ``xptcsv.Dataset``.
    """
    if not header.namestrs:
        raise xptcsv.NoVariables(f'Member {header.name!r} has no variables')
    variables = header.variables
    rows = list(Observations.from_bytes(bytestring, variables, encoding))
    if not rows:
        raise xptcsv.NoRows(f'Member {header.name!r} has no observations')
    dataset = xptcsv.Dataset(
        variables=variables,
        rows=rows,
        name=header.name,
        label=header.label,
        title=header.title,
        dataset_type=header.dataset_type,
        created=header.created,
        modified=header.modified,
        sas_os=header.sas_os,
        sas_version=header.sas_version,
    )
    LOG.info(f'Decoded XPORT dataset {dataset.name!r}: {len(rows)} rows, {len(variables)} variables')
    return dataset


def members(bytestring, encoding=TEXT_DATA_ENCODING):
    """
    Yield ``(MemberHeader, observations)`` for each member of a library.

    The observations are the undecoded bytes between the member's
    observation header and the next member header or the end.
    """
    LOG.debug(f'Decoding library from {len(bytestring)} bytes')
    if not bytestring:
        raise xptcsv.EmptyInput('Document is empty')
    records = Records(bytestring)
    library = LibraryHeader.from_records(records)
    while True:
        header = MemberHeader.from_records(records, encoding)
        if not header.sas_os:
            header.sas_os = library.sas_os
        if not header.sas_version:
            header.sas_version = library.sas_version
        end = records.find(MEMBER_MARKER)
        if end is None:
            end = len(records)
        yield header, records.next(end - records.position, topic='observations')
        if not records.remaining:
            return


class Library(Mapping):
    """
    Collection of datasets from a SAS Version 5 or 6 Transport file.
    """

    def __init__(self, datasets=()):
        """
        Initialize from an iterable of ``xptcsv.Dataset``.
        """
        self._members = {}
        for dataset in datasets:
            if dataset.name in self._members:
                LOG.warning(f'More than one dataset named {dataset.name!r}, keeping the first')
                continue
            self._members[dataset.name] = dataset

    def __repr__(self):
        """
        REPL-format string.
        """
        return f'<{type(self).__name__} members={list(self)}>'

    def __getitem__(self, name):
        """
        Get a member dataset.
        """
        return self._members[name]

    def __iter__(self):
        """
        Get an iterator of dataset names.
        """
        return iter(self._members)

    def __len__(self):
        """
        Get the number of datasets in the library.
        """
        return len(self._members)

    @classmethod
    def from_bytes(cls, bytestring, encoding=TEXT_DATA_ENCODING):
        """
        Parse every member of a SAS XPORT document from a byte string.
        """
        self = cls(decode_member(h, b, encoding) for h, b in members(bytestring, encoding))
        LOG.info(f'Decoded {self}')
        return self


def load(fp, **kwds):
    """
    Deserialize a SAS dataset from a SAS Transport v5 (XPT) file.

        with open('example.xpt', 'rb') as f:
            dataset = load(f)
    """
    try:
        bytestring = fp.read()
    except UnicodeDecodeError:
        raise TypeError(f'Expected a BufferedReader in bytes-mode, got {type(fp).__name__}')
    if isinstance(bytestring, str):
        raise TypeError(f'Expected a BufferedReader in bytes-mode, got {type(fp).__name__}')
    return loads(bytestring, **kwds)


def loads(bytestring, member=None, encoding=TEXT_DATA_ENCODING):
    """
    Deserialize a SAS dataset from an XPORT-format byte string.

    Selects the first member dataset, or the one named ``member``.

        with open('example.xpt', 'rb') as f:
            bytestring = f.read()
        dataset = loads(bytestring, member='ECON')
    """
    names = []
    for header, observations in members(bytestring, encoding):
        if member is None or header.name.upper() == member.upper():
            return decode_member(header, observations, encoding)
        LOG.debug(f'Skipping member {header.name!r}')
        names.append(header.name)
    raise xptcsv.MemberNotFound(f'No member named {member!r}', expected=names, got=member)
