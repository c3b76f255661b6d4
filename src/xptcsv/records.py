"""
Walk a SAS Transport (XPORT) document in fixed-length records.
"""

# All header "records" are 80 bytes long, padded if necessary.  Namestrs
# and observations are streamed across records and padded at the end.

# Standard Library
import logging

# Xptcsv Modules
import xptcsv

__all__ = [
    'Records',
]

LOG = logging.getLogger(__name__)


class Records:
    """
    Cursor over the fixed-length records of an XPORT-format byte string.

        records = Records(bytestring)
        records.expect(b'HEADER RECORD*******LIBRARY HEADER RECORD!!!!!!!')
        line = records.next()
    """

    size = 80

    def __init__(self, bytestring, size=None):
        """
        Initialize a cursor at the start of the byte string.
        """
        self.mview = memoryview(bytestring)
        self.position = 0
        if size is not None:
            self.size = size

    def __repr__(self):
        return f'<{type(self).__name__} at {self.position} of {len(self.mview)}>'

    def __len__(self):
        """
        Get the total number of bytes, consumed or not.
        """
        return len(self.mview)

    @property
    def remaining(self):
        """
        Number of bytes not yet consumed.
        """
        return len(self.mview) - self.position

    def peek(self, n=None):
        """
        Get up to ``n`` bytes without advancing.  Defaults to one record.
        """
        n = self.size if n is None else n
        return self.mview[self.position:self.position + n].tobytes()

    def next(self, n=None, topic='record'):
        """
        Consume the next ``n`` bytes.  Defaults to one record.

        Raises ``xptcsv.Truncated`` if fewer than ``n`` bytes remain.
        """
        n = self.size if n is None else n
        if self.remaining < n:
            raise xptcsv.Truncated(
                f'Document ended at byte {len(self.mview)} while reading {topic}',
                expected=n,
                got=self.remaining,
            )
        chunk = self.mview[self.position:self.position + n].tobytes()
        self.position += n
        return chunk

    def peek_matches(self, marker):
        """
        Check if the next record begins with ``marker``.

        A marker shorter than a record is a prefix, since header records
        carry digits after the marker text.  Otherwise the marker is
        space-padded to the record width and must match the whole record.
        """
        if len(marker) >= self.size:
            return self.peek() == marker.ljust(self.size)
        return self.peek(len(marker)) == marker

    def expect(self, marker, topic='header'):
        """
        Consume the next record, which must begin with ``marker``.

        Raises ``xptcsv.MalformedHeader`` if the bytes present disagree
        with the marker, or ``xptcsv.Truncated`` if they agree but the
        document ends before the record is complete.
        """
        head = self.peek(len(marker))
        if head != marker[:len(head)]:
            raise xptcsv.MalformedHeader(f'Invalid {topic}', expected=marker, got=head)
        return self.next(topic=topic)

    def align(self, topic='padding'):
        """
        Skip ahead to the next record boundary.
        """
        padding = -self.position % self.size
        if padding:
            LOG.debug(f'Skipping {padding} bytes of {topic} at {self.position}')
            self.next(padding, topic=topic)

    def find(self, marker, start=None):
        """
        Find the next record, on a record boundary, that begins with ``marker``.

        Returns the absolute offset, or ``None`` if there isn't one.
        """
        start = self.position if start is None else start
        start += -start % self.size
        n = len(marker)
        for i in range(start, len(self.mview), self.size):
            if self.mview[i:i + n] == marker:
                return i
        return None
