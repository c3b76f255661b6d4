"""
Shared test fixtures.
"""

# Standard Library
import math
import struct
from types import SimpleNamespace

# Community Packages
import pytest

LIBRARY_HEADER = (
    b'HEADER RECORD*******LIBRARY HEADER RECORD!!!!!!!000000000000000000000000000000  '
    b'SAS     SAS     SASLIB  9.4     X64_10PR                        01JAN20:12:00:00'
    b'01JAN20:12:00:00                                                                '
)


def ieee_to_ibm(ieee):
    """
    Convert Python floating point numbers to IBM-format (bytes).
    """
    # Python uses IEEE: sign * 1.mantissa * 2 ** (exponent - 1023)
    # IBM mainframe:    sign * 0.mantissa * 16 ** (exponent - 64)
    if ieee is None or math.isnan(ieee):
        return b'.' + b'\x00' * 7
    if ieee == 0.0:
        return b'\x00' * 8

    ulong, = struct.unpack('>Q', struct.pack('>d', ieee))
    sign = (ulong >> 63) << 63
    exponent = ((ulong >> 52) & 0x7ff) - 1023
    mantissa = 0x0010000000000000 | (ulong & 0x000fffffffffffff)

    # 16 ** x == 2 ** (4 * x), and the remainder shifts the mantissa.
    quotient, remainder = divmod(exponent, 4)
    mantissa <<= remainder
    exponent = quotient + 1 + 64
    return struct.pack('>Q', sign | (exponent << 56) | mantissa)


def namestr(name, vtype, length, number, position, label='', size=140):
    """
    Encode a variable descriptor.
    """
    bytestring = struct.pack(
        '>hhhh8s40s8shhh2s8shhl52s',
        vtype,
        0,
        length,
        number,
        name.encode('ascii').ljust(8),
        label.encode('ascii').ljust(40),
        b''.ljust(8),
        0,
        0,
        0,
        b'',
        b''.ljust(8),
        0,
        0,
        position,
        b'',
    )
    return bytestring[:size]


def pad(bytestring, fill=b' '):
    """
    Pad to a multiple of 80 bytes.
    """
    return bytestring + fill * (-len(bytestring) % 80)


def member(variables, rows=(), name='TEST', label='', observations=None, n=None, size=140):
    """
    Encode a member: headers, namestrs, and observations.

    Each variable is a ``(name, vtype, length)`` tuple.  Rows hold floats
    (``None`` for missing) or strings in variable order.  Pass raw
    ``observations`` bytes to bypass row encoding.
    """
    n = len(variables) if n is None else n
    namestrs = []
    position = 0
    for number, (vname, vtype, length) in enumerate(variables, 1):
        namestrs.append(namestr(vname, vtype, length, number, position, size=size))
        position += length
    if observations is None:
        chunks = []
        for row in rows:
            for (vname, vtype, length), value in zip(variables, row):
                if vtype == 1:
                    chunks.append(ieee_to_ibm(value)[:length])
                else:
                    chunks.append(value.encode('ISO-8859-1').ljust(length))
        observations = pad(b''.join(chunks))
    header = (
        b'HEADER RECORD*******MEMBER  HEADER RECORD!!!!!!!000000000000000001600000000'
        + b'%03d  ' % size
        + b'HEADER RECORD*******DSCRPTR HEADER RECORD!!!!!!!000000000000000000000000000000  '
        + b'SAS     ' + name.encode('ascii').ljust(8) + b'SASDATA 9.4     X64_10PR'
        + b' ' * 24 + b'01JAN20:12:00:00'
        + b'01JAN20:12:00:00' + b' ' * 16 + label.encode('ascii').ljust(40) + b'    DATA'
        + b'HEADER RECORD*******NAMESTR HEADER RECORD!!!!!!!000000'
        + b'%04d' % n + b'0' * 20 + b'  '
        + pad(b''.join(namestrs))
        + b'HEADER RECORD*******OBS     HEADER RECORD!!!!!!!000000000000000000000000000000  '
    )
    return header + observations


def make_xport(*members):
    """
    Encode a library of members.
    """
    return LIBRARY_HEADER + b''.join(members)


@pytest.fixture(scope='session')
def build():
    """
    Helpers to build synthetic SAS V5 Transport documents.
    """
    return SimpleNamespace(
        ieee_to_ibm=ieee_to_ibm,
        namestr=namestr,
        member=member,
        library=make_xport,
        pad=pad,
    )


@pytest.fixture(scope='session')
def library_bytestring():
    """
    A 4-column, 6-row dataset with numbers and text in SAS V5 Transport format.
    """
    return b'''\
HEADER RECORD*******LIBRARY HEADER RECORD!!!!!!!000000000000000000000000000000  \
SAS     SAS     SASLIB  9.3     W32_7PRO                        13NOV15:10:35:08\
13NOV15:10:35:08                                                                \
HEADER RECORD*******MEMBER  HEADER RECORD!!!!!!!000000000000000001600000000140  \
HEADER RECORD*******DSCRPTR HEADER RECORD!!!!!!!000000000000000000000000000000  \
SAS     ECON    SASDATA 9.3     W32_7PRO                        13NOV15:10:35:08\
13NOV15:10:35:08                Blank-padded dataset label                      \
HEADER RECORD*******NAMESTR HEADER RECORD!!!!!!!000000000400000000000000000000  \
\x00\x02\x00\x00\x00\x08\x00\x01VIT_STATVital status                            \
$       \x00\x05\x00\x00\x00\x00\x00\x00        \x00\x00\x00\x00\x00\x00\x00\x00\
\x00\x00\x00\x00\x00\x00\x00\x00\x00\x00\x00\x00\x00\x00\x00\x00\x00\x00\x00\x00\x00\x00\x00\x00\x00\x00\x00\x00\x00\x00\x00\x00\x00\x00\x00\x00\x00\x00\x00\x00\x00\x00\x00\x00\x00\x00\x00\x00\x00\x00\x00\x00\
\x00\x02\x00\x00\x00\x08\x00\x02ECON    Economic status                         \
$CHAR   \x00\x04\x00\x00\x00\x01\x00\x00        \x00\x00\x00\x00\x00\x00\x00\x08\
\x00\x00\x00\x00\x00\x00\x00\x00\x00\x00\x00\x00\x00\x00\x00\x00\x00\x00\x00\x00\x00\x00\x00\x00\x00\x00\x00\x00\x00\x00\x00\x00\x00\x00\x00\x00\x00\x00\x00\x00\x00\x00\x00\x00\x00\x00\x00\x00\x00\x00\x00\x00\
\x00\x01\x00\x00\x00\x08\x00\x03COUNT   Count                                   \
COMMA   \x00\x08\x00\x00\x00\x00\x00\x00        \x00\x00\x00\x00\x00\x00\x00\x10\
\x00\x00\x00\x00\x00\x00\x00\x00\x00\x00\x00\x00\x00\x00\x00\x00\x00\x00\x00\x00\x00\x00\x00\x00\x00\x00\x00\x00\x00\x00\x00\x00\x00\x00\x00\x00\x00\x00\x00\x00\x00\x00\x00\x00\x00\x00\x00\x00\x00\x00\x00\x00\
\x00\x01\x00\x00\x00\x08\x00\x04TEMP    Temperature                             \
        \x00\x08\x00\x01\x00\x00\x00\x00        \x00\x00\x00\x00\x00\x00\x00\x18\
\x00\x00\x00\x00\x00\x00\x00\x00\x00\x00\x00\x00\x00\x00\x00\x00\x00\x00\x00\x00\x00\x00\x00\x00\x00\x00\x00\x00\x00\x00\x00\x00\x00\x00\x00\x00\x00\x00\x00\x00\x00\x00\x00\x00\x00\x00\x00\x00\x00\x00\x00\x00\
HEADER RECORD*******OBS     HEADER RECORD!!!!!!!000000000000000000000000000000  \
ALIVE   POOR    CL\x00\x00\x00\x00\x00\x00Bb\x99\x99\x99\x99\x99\x98\
ALIVE   NOT     Cn\x10\x00\x00\x00\x00\x00B_fffffh\
ALIVE   UNK     C\x9dP\x00\x00\x00\x00\x00BV\xb333334\
DEAD    POOR    B\xfe\x00\x00\x00\x00\x00\x00B]fffffh\
DEAD    NOT     B<\x00\x00\x00\x00\x00\x00Bg\x80\x00\x00\x00\x00\x00\
DEAD    UNK     B\x89\x00\x00\x00\x00\x00\x00B8\xb333334\
                                                \
'''


@pytest.fixture(scope='session')
def library_csv():
    """
    The same dataset as CSV.
    """
    return '''\
VIT_STAT,ECON,COUNT,TEMP
ALIVE,POOR,1216,98.6
ALIVE,NOT,1761,95.4
ALIVE,UNK,2517,86.7
DEAD,POOR,254,93.4
DEAD,NOT,60,103.5
DEAD,UNK,137,56.7
'''
