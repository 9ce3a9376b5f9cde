"""
undaf - Decoder for NAIF SPICE Double precision Array Files (DAF)

A Python implementation for reading the binary DAF container used by SPICE
ephemeris (SPK), attitude (CK) and binary planetary constants (BPCK) kernels
into plain Python objects that can be written out as text.

Features:
- Automatic detection of the file byte order (big or little endian)
- Parsing of the 1024 byte file record (shape, record pointers, names)
- Lazy traversal of the linked list of summary records
- Decoding of SPK, CK and BPCK segment summaries with their coefficient
  payloads as NumPy arrays
- Command line conversion of kernels to JSON

Coefficients are carried verbatim; no interpolation is performed.

License: MIT
"""

__version__ = "0.1.0"

import argparse
import json
import logging
import math
import os
import struct
import sys
from dataclasses import dataclass, field, fields, replace
from typing import Any, BinaryIO, Callable, Dict, Iterator, List, Optional, Tuple

import numpy as np

logger = logging.getLogger(__name__)

# Every DAF record, summary records included, is 1024 bytes long
RECORD_SIZE = 1024

# Summary records start with three doubles: next record, previous record, NSUM
SUMMARY_CONTROL_SIZE = 24
NEXT_RECORD_OFFSET = 0
NSUM_OFFSET = 16

# Record numbers and counts are Fortran integers
MAX_RECORD_VALUE = 2 ** 31 - 1

# Byte offsets of the items of the file record
#
# Address  Width  Item
#       0      8  LOCIDW  identification word, e.g. 'DAF/SPK '
#       8      4  ND      number of doubles per array summary
#      12      4  NI      number of integers per array summary
#      16     60  LOCIFN  internal file name
#      76      4  FWARD   record number of the first summary record
#      80      4  BWARD   record number of the last summary record
#      84      4  FREE    first free address of the file
#      88      8  LOCFMT  'BIG-IEEE' or 'LTL-IEEE'
#     699     28  FTPSTR  FTP validation string
FILE_RECORD_OFFSETS = {
    'locidw': (0, 8),
    'type_marker': (4, 1),
    'nd': (8, 4),
    'ni': (12, 4),
    'locifn': (16, 60),
    'fward': (76, 4),
    'bward': (80, 4),
    'free': (84, 4),
    'locfmt': (88, 8),
    'ftpstr': (699, 28),
}

# File type marker (5th character of LOCIDW) to kernel kind
DAF_TYPES = {
    'S': 'SPK',
    'C': 'CK',
    'P': 'BPCK',
}

# First character of LOCFMT to byte order
ENDIAN_MARKERS = {
    'B': 'big',
    'b': 'big',
    'L': 'little',
    'l': 'little',
}

# Written by the NAIF toolkit to detect files damaged by an ASCII mode transfer
FTP_VALIDATION_STRING = b'FTPSTR:\r:\n:\r\n:\r\x00:\x81:\x10\xce:ENDFTP'

NUL = 0x00
EOT = 0x04


class DAFError(Exception):
    """Base class of all errors raised while decoding a DAF."""


class ReadError(DAFError, IOError):
    """The byte source could not be positioned or ran out of data."""


class EncodingError(DAFError, ValueError):
    """A byte that must be 7-bit ASCII is not."""


class FormatError(DAFError, ValueError):
    """The file is structurally not a DAF this decoder understands."""


class DAFFileReader:
    """
    Random access reader of the primitive values stored in a DAF.

    Every read positions the underlying file at an absolute byte offset, so
    the reader never depends on the file position left by a previous read.
    """

    def __init__(self, file: BinaryIO, byteorder: str = 'auto'):
        """
        Initialize a DAFFileReader object.

        Args:
            file: A binary file object that supports seek() and read()
            byteorder: 'big', 'little', or 'auto' to use the marker of the
                       file record
        """
        self.file = file

        if byteorder == 'auto':
            byteorder = self._read_byteorder()
        elif byteorder not in ('big', 'little'):
            raise ValueError(f"Unsupported byte order: {byteorder}")

        self.byteorder = byteorder
        self.struct_byteorder = {'little': '<', 'big': '>'}[self.byteorder]

    def _read_byteorder(self) -> str:
        offset = FILE_RECORD_OFFSETS['locfmt'][0]
        try:
            marker = self.read_char(offset)
        except EncodingError as e:
            raise FormatError(f"Indeterminate endianness: non-ASCII marker at offset {offset}") from e
        try:
            return ENDIAN_MARKERS[marker]
        except KeyError:
            raise FormatError(
                f"Indeterminate endianness: marker {marker!r} at offset {offset}, "
                f"expected one of 'B', 'b', 'L', 'l'"
            ) from None

    def _read_bytes(self, offset: int, size: int, exact: bool = True) -> bytes:
        """
        Read size bytes starting at the given absolute offset.

        With exact=False fewer bytes are returned when the file ends early.
        """
        try:
            self.file.seek(offset)
            data = self.file.read(size)
        except (OSError, ValueError, OverflowError) as e:
            raise ReadError(f"Cannot read {size} bytes at offset {offset}: {e}") from e

        if exact and len(data) < size:
            raise ReadError(
                f"Unexpected end of file when reading {size} bytes at offset {offset} "
                f"(got {len(data)})"
            )
        return data

    def read_f64(self, offset: int) -> float:
        return struct.unpack(f'{self.struct_byteorder}d', self._read_bytes(offset, 8))[0]

    def read_f64_vec(self, start: int, end: int) -> np.ndarray:
        """
        Read the doubles addressed from start (inclusive) to end (exclusive).

        Addresses advance in 4 byte words while every element is a full
        8 byte double, so consecutive elements overlap by half. One element
        is produced for every word in range(start, end, 4).

        Returns:
            np.ndarray: Native byte order float64 array
        """
        count = len(range(start, end, 4))
        if count == 0:
            return np.empty(0, dtype=np.float64)

        raw = self._read_bytes(start, 4 * (count - 1) + 8)
        words = np.ndarray((count,), dtype=f'{self.struct_byteorder}f8', buffer=raw, strides=(4,))
        return words.astype(np.float64)

    def read_i32(self, offset: int) -> int:
        return struct.unpack(f'{self.struct_byteorder}i', self._read_bytes(offset, 4))[0]

    def read_char(self, offset: int) -> str:
        """
        Read a single ASCII character.

        Raises:
            EncodingError: If the byte is not 7-bit ASCII
        """
        byte = self._read_bytes(offset, 1)[0]
        if byte > 0x7f:
            raise EncodingError(f"Non-ASCII byte 0x{byte:02x} at offset {offset}")
        return chr(byte)

    def read_string(self, offset: int, max_len: int) -> str:
        """
        Read a padded ASCII text field of at most max_len - 1 bytes.

        Fixed width DAF text fields are padded with nulls and blanks and may
        be cut short by an end of transmission character. Nulls and non-ASCII
        bytes are dropped wherever they occur, the text ends at the first EOT
        (0x04) or at the end of the file, and surrounding whitespace is removed.
        """
        if max_len <= 1:
            return ''

        raw = self._read_bytes(offset, max_len - 1, exact=False)
        raw = raw.split(bytes([EOT]), 1)[0]
        text = bytes(b for b in raw if NUL < b < 0x80)
        return text.strip().decode('ascii')


@dataclass(frozen=True)
class FileLayout:
    """
    Summary shape and record pointers of a DAF, fixed when the file is opened.

    sum_size is the size in bytes of one array summary and nc the size of the
    matching name slot; name_record_offset is the distance from a summary to
    its name.
    """
    nd: int
    ni: int
    fward: int
    bward: int
    free: int
    sum_size: int
    nc: int
    name_record_offset: int

    @classmethod
    def from_shape(cls, nd: int, ni: int, fward: int, bward: int, free: int = 0) -> 'FileLayout':
        if nd < 0 or ni < 0:
            raise FormatError(f"Invalid summary shape ND={nd}, NI={ni}")

        sum_size = 8 * nd + 4 * ni
        if sum_size == 0 or sum_size > RECORD_SIZE - SUMMARY_CONTROL_SIZE:
            raise FormatError(
                f"Summary of {sum_size} bytes (ND={nd}, NI={ni}) does not fit a summary record"
            )
        if fward < 2:
            raise FormatError(f"First summary record FWARD={fward} overlaps the file record")
        if bward < fward:
            raise FormatError(f"Last summary record BWARD={bward} precedes FWARD={fward}")

        return cls(
            nd=nd,
            ni=ni,
            fward=fward,
            bward=bward,
            free=free,
            sum_size=sum_size,
            nc=8 * (nd + (ni + 1) // 2),
            name_record_offset=RECORD_SIZE * (bward - fward + 1),
        )

    @property
    def max_summaries(self) -> int:
        """Number of summaries that fit into one summary record."""
        return (RECORD_SIZE - SUMMARY_CONTROL_SIZE) // self.sum_size

    def summary_pointer(self, record: int, index: int) -> int:
        return RECORD_SIZE * (record - 1) + SUMMARY_CONTROL_SIZE + index * self.sum_size


@dataclass(frozen=True)
class TraversalCursor:
    """Position of a traversal in the linked list of summary records."""
    current_record: int
    next_record: int
    segment_index: int
    nsum: int
    hops: int = 0

    @property
    def exhausted(self) -> bool:
        return self.segment_index >= self.nsum and self.next_record == 0


def _control_value(value: float, what: str, record: int) -> int:
    if not math.isfinite(value) or value < 0 or value > MAX_RECORD_VALUE:
        raise FormatError(f"Invalid {what} {value!r} in summary record {record}")
    return int(value)


def read_cursor(reader: DAFFileReader, layout: FileLayout, record: int, hops: int = 0) -> TraversalCursor:
    """
    Read the control area of a summary record and position a cursor on its
    first summary.
    """
    base = RECORD_SIZE * (record - 1)
    next_record = _control_value(reader.read_f64(base + NEXT_RECORD_OFFSET), 'next record', record)
    nsum = _control_value(reader.read_f64(base + NSUM_OFFSET), 'NSUM', record)

    if nsum > layout.max_summaries:
        raise FormatError(
            f"Summary record {record} claims {nsum} summaries, at most {layout.max_summaries} fit"
        )

    logger.debug("Summary record %d: %d summaries, next record %d", record, nsum, next_record)
    return TraversalCursor(record, next_record, 0, nsum, hops)


def advance(reader: DAFFileReader, layout: FileLayout,
            cursor: TraversalCursor) -> Tuple[TraversalCursor, Optional[int]]:
    """
    Step a traversal forward by one array summary.

    Args:
        reader: Reader of the file the cursor belongs to
        layout: Layout of that file
        cursor: Current position

    Returns:
        tuple: (new_cursor, summary_pointer), where summary_pointer is the
               byte offset of the next summary or None once the last summary
               record has been consumed
    """
    record_count = None

    while cursor.segment_index >= cursor.nsum:
        if cursor.next_record == 0:
            return cursor, None
        if record_count is None:
            record_count = _record_count(reader)
        if cursor.hops >= record_count:
            raise FormatError(
                f"Summary record chain does not end after {cursor.hops} records "
                f"(file has {record_count})"
            )
        cursor = read_cursor(reader, layout, cursor.next_record, cursor.hops + 1)

    pointer = layout.summary_pointer(cursor.current_record, cursor.segment_index)
    return replace(cursor, segment_index=cursor.segment_index + 1), pointer


def _record_count(reader: DAFFileReader) -> int:
    try:
        size = reader.file.seek(0, os.SEEK_END)
    except (OSError, ValueError) as e:
        raise ReadError(f"Cannot determine the size of the file: {e}") from e
    return -(-size // RECORD_SIZE)


def _as_list(value: Any) -> Any:
    if isinstance(value, np.ndarray):
        return value.tolist()
    return value


class _Segment:
    """Equality and conversion shared by the segment dataclasses."""

    kind = None

    def __eq__(self, other):
        if type(self) is not type(other):
            return NotImplemented
        for f in fields(self):
            a, b = getattr(self, f.name), getattr(other, f.name)
            if isinstance(a, np.ndarray) or isinstance(b, np.ndarray):
                if not np.array_equal(a, b):
                    return False
            elif a != b:
                return False
        return True

    __hash__ = None

    def to_dict(self, include_data: bool = True) -> Dict[str, Any]:
        result = {'kind': self.kind}
        for f in fields(self):
            if f.name == 'data' and not include_data:
                continue
            result[f.name] = _as_list(getattr(self, f.name))
        return result

    @staticmethod
    def _read_name(reader: DAFFileReader, layout: FileLayout, summary_pointer: int) -> str:
        return reader.read_string(summary_pointer + layout.name_record_offset, layout.nc)

    @staticmethod
    def _read_data(reader: DAFFileReader, start_offset: int, end_offset: int) -> np.ndarray:
        start = reader.read_i32(start_offset)
        end = reader.read_i32(end_offset)
        return reader.read_f64_vec(start, end)


@dataclass(eq=False)
class SPKSegment(_Segment):
    """Ephemeris segment: state of a target relative to a center."""
    name: str
    initial_epoch: float
    final_epoch: float
    target_code: int
    center_code: int
    frame_code: int
    spk_type: int
    data: np.ndarray = field(repr=False)

    kind = 'SPK'
    min_shape = (2, 6)

    @classmethod
    def read(cls, reader: DAFFileReader, layout: FileLayout, summary_pointer: int) -> 'SPKSegment':
        return cls(
            name=cls._read_name(reader, layout, summary_pointer),
            initial_epoch=reader.read_f64(summary_pointer),
            final_epoch=reader.read_f64(summary_pointer + 8),
            target_code=reader.read_i32(summary_pointer + 16),
            center_code=reader.read_i32(summary_pointer + 20),
            frame_code=reader.read_i32(summary_pointer + 24),
            spk_type=reader.read_i32(summary_pointer + 28),
            data=cls._read_data(reader, summary_pointer + 32, summary_pointer + 36),
        )


@dataclass(eq=False)
class CKSegment(_Segment):
    """Attitude segment of an instrument, bounded in spacecraft clock ticks."""
    name: str
    initial_sclk: float
    final_sclk: float
    instrument_code: int
    frame_code: int
    ck_type: int
    rates: bool
    data: np.ndarray = field(repr=False)

    kind = 'CK'
    min_shape = (2, 6)

    @classmethod
    def read(cls, reader: DAFFileReader, layout: FileLayout, summary_pointer: int) -> 'CKSegment':
        return cls(
            name=cls._read_name(reader, layout, summary_pointer),
            initial_sclk=reader.read_f64(summary_pointer),
            final_sclk=reader.read_f64(summary_pointer + 8),
            instrument_code=reader.read_i32(summary_pointer + 16),
            frame_code=reader.read_i32(summary_pointer + 20),
            ck_type=reader.read_i32(summary_pointer + 24),
            rates=reader.read_i32(summary_pointer + 28) == 1,
            data=cls._read_data(reader, summary_pointer + 32, summary_pointer + 36),
        )


@dataclass(eq=False)
class BPCKSegment(_Segment):
    """Orientation of a frame relative to a base frame."""
    name: str
    initial_epoch: float
    final_epoch: float
    frame_id: int
    base_frame: int
    bpck_type: int
    data: np.ndarray = field(repr=False)

    kind = 'BPCK'
    min_shape = (2, 5)

    @classmethod
    def read(cls, reader: DAFFileReader, layout: FileLayout, summary_pointer: int) -> 'BPCKSegment':
        return cls(
            name=cls._read_name(reader, layout, summary_pointer),
            initial_epoch=reader.read_f64(summary_pointer),
            final_epoch=reader.read_f64(summary_pointer + 8),
            frame_id=reader.read_i32(summary_pointer + 16),
            base_frame=reader.read_i32(summary_pointer + 20),
            bpck_type=reader.read_i32(summary_pointer + 24),
            data=cls._read_data(reader, summary_pointer + 28, summary_pointer + 32),
        )


# Segment class used for each file type marker
SEGMENT_TYPES = {
    'S': SPKSegment,
    'C': CKSegment,
    'P': BPCKSegment,
}


@dataclass
class DAFHeader:
    name: str
    comment: str
    kind: str

    def to_dict(self) -> Dict[str, Any]:
        return {'name': self.name, 'comment': self.comment, 'kind': self.kind}


@dataclass
class DecodedFile:
    """Header and all segments of a DAF, in summary chain order."""
    header: DAFHeader
    segments: List[_Segment] = field(default_factory=list)

    def to_dict(self, include_data: bool = True) -> Dict[str, Any]:
        return {
            'header': self.header.to_dict(),
            'segments': [s.to_dict(include_data) for s in self.segments],
        }


class DAFFile:
    """
    An open DAF with its file record decoded.

    Construction reads the file record and the first summary record; if either
    is unusable an exception is raised and no object is returned. The segment
    decoder is chosen once from the file type marker.

    Traversals (summary_pointers(), iteration, read()) each start from the
    first summary record with their own cursor. The file object must not be
    shared between threads while a traversal is running.
    """

    def __init__(self, file: BinaryIO, byteorder: str = 'auto'):
        """
        Initialize a DAFFile object.

        Args:
            file: A binary file object positioned anywhere; it is not closed
            byteorder: 'big', 'little', or 'auto' to use the file's marker

        Raises:
            FormatError: If the byte order or file type cannot be determined,
                         or the record pointers are inconsistent
            ReadError: If the file is shorter than its records claim
        """
        self.reader = DAFFileReader(file, byteorder)
        reader = self.reader

        offset = FILE_RECORD_OFFSETS['type_marker'][0]
        try:
            self.type_marker = reader.read_char(offset)
        except EncodingError as e:
            raise FormatError(f"Unsupported DAF type: non-ASCII marker at offset {offset}") from e
        if self.type_marker not in SEGMENT_TYPES:
            raise FormatError(
                f"Unsupported DAF type {self.type_marker!r} at offset {offset}, "
                f"expected one of 'S', 'C', 'P'"
            )
        segment_type = SEGMENT_TYPES[self.type_marker]
        self.kind = DAF_TYPES[self.type_marker]

        offset, size = FILE_RECORD_OFFSETS['locidw']
        self.idword = reader.read_string(offset, size + 1)
        nd = reader.read_i32(FILE_RECORD_OFFSETS['nd'][0])
        ni = reader.read_i32(FILE_RECORD_OFFSETS['ni'][0])
        self.internal_name = reader.read_string(*FILE_RECORD_OFFSETS['locifn'])
        fward = reader.read_i32(FILE_RECORD_OFFSETS['fward'][0])
        bward = reader.read_i32(FILE_RECORD_OFFSETS['bward'][0])
        free = reader.read_i32(FILE_RECORD_OFFSETS['free'][0])
        self.free = free
        offset, size = FILE_RECORD_OFFSETS['locfmt']
        self.binary_format = reader.read_string(offset, size + 1)
        self.ftpstr = reader.read_string(*FILE_RECORD_OFFSETS['ftpstr'])
        self.ftp_valid = self._check_ftp_string()

        self.layout = FileLayout.from_shape(nd, ni, fward, bward, free)
        min_nd, min_ni = segment_type.min_shape
        if nd < min_nd or ni < min_ni:
            raise FormatError(
                f"{self.kind} summaries need ND >= {min_nd} and NI >= {min_ni}, "
                f"file declares ND={nd}, NI={ni}"
            )

        self._read_segment: Callable[[DAFFileReader, FileLayout, int], _Segment] = segment_type.read
        self._initial_cursor = read_cursor(reader, self.layout, fward)

        logger.debug(
            "Opened %s DAF %r (%s endian): ND=%d NI=%d FWARD=%d BWARD=%d FREE=%d",
            self.kind, self.internal_name, reader.byteorder, nd, ni, fward, bward, free,
        )

    @property
    def byteorder(self) -> str:
        return self.reader.byteorder

    def _check_ftp_string(self) -> Optional[bool]:
        offset, size = FILE_RECORD_OFFSETS['ftpstr']
        raw = self.reader._read_bytes(offset, size)
        if not raw.strip(b'\x00'):
            return None
        if raw != FTP_VALIDATION_STRING:
            logger.warning("FTP validation string is damaged; the file may have been "
                           "transferred in ASCII mode")
            return False
        return True

    def comment(self) -> str:
        """
        Return the text of the comment area, the records between the file
        record and the first summary record.
        """
        fward = self.layout.fward
        if fward <= 2:
            return ''
        return self.reader.read_string(RECORD_SIZE, RECORD_SIZE * (fward - 2) + 1)

    def header(self) -> DAFHeader:
        return DAFHeader(
            name=self.internal_name,
            comment=self.comment(),
            kind=DAF_TYPES.get(self.type_marker, 'unknown'),
        )

    def summary_pointers(self) -> Iterator[int]:
        """
        Iterate over the byte offsets of all array summaries, following the
        summary records from FWARD until a record without successor.
        """
        cursor = self._initial_cursor
        while True:
            cursor, pointer = advance(self.reader, self.layout, cursor)
            if pointer is None:
                return
            yield pointer

    def read_segment(self, summary_pointer: int) -> _Segment:
        """Decode the segment whose summary starts at the given byte offset."""
        return self._read_segment(self.reader, self.layout, summary_pointer)

    def __iter__(self) -> Iterator[_Segment]:
        for pointer in self.summary_pointers():
            yield self.read_segment(pointer)

    def read(self) -> DecodedFile:
        """
        Decode the header and every segment of the file.

        Returns:
            DecodedFile: Header and segments in summary chain order

        Raises:
            DAFError: The first failure encountered; nothing is returned
        """
        header = self.header()
        return DecodedFile(header, list(self))


class File:
    """
    A DAF opened from a path.

    Use as a context manager:

        with undaf.File('de440s.bsp') as daf:
            for segment in daf:
                print(segment.name)
    """

    def __init__(self, filename: str, byteorder: str = 'auto'):
        self.filename = filename
        self.byteorder = byteorder
        self.file = None
        self.daf = None

    def __enter__(self) -> DAFFile:
        self.open()
        return self.daf

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()

    def open(self):
        self.file = open(self.filename, 'rb')
        try:
            self.daf = DAFFile(self.file, self.byteorder)
        except Exception:
            self.close()
            raise

    def close(self):
        if self.file:
            self.file.close()
            self.file = None
        self.daf = None


def read(filename: str) -> DecodedFile:
    """Decode the DAF at the given path."""
    with File(filename) as daf:
        return daf.read()


def _write_json(documents: Any, path: str):
    with open(path, 'w', encoding='utf-8') as f:
        json.dump(documents, f, indent=2)
        f.write('\n')


# Output file extension to writer
OUTPUT_WRITERS = {
    '.json': _write_json,
}


def build_argument_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog='undaf',
        description="Convert NAIF SPICE DAF kernels (SPK, CK, binary PCK) to text",
    )
    parser.add_argument('inputs', nargs='+', metavar='FILE', help="DAF files to convert")
    parser.add_argument('-o', '--output', help="Output file; the extension selects the format (.json)")
    parser.add_argument('--no-data', action='store_true', help="Omit the coefficient arrays")
    parser.add_argument('-v', '--verbose', action='store_true', help="Log decoding details")
    parser.add_argument('-q', '--quiet', action='store_true', help="Only log errors")
    parser.add_argument('--version', action='version', version=f"%(prog)s {__version__}")
    return parser


def main(argv: Optional[List[str]] = None) -> int:
    parser = build_argument_parser()
    args = parser.parse_args(argv)

    level = logging.DEBUG if args.verbose else logging.ERROR if args.quiet else logging.WARNING
    logging.basicConfig(level=level, format='%(levelname)s %(name)s: %(message)s')

    writer = None
    if args.output:
        extension = os.path.splitext(args.output)[1].lower()
        writer = OUTPUT_WRITERS.get(extension)
        if writer is None:
            parser.error(f"unsupported output extension {extension!r}; "
                         f"supported: {', '.join(sorted(OUTPUT_WRITERS))}")

    status = 0
    documents = []
    for path in args.inputs:
        try:
            decoded = read(path)
        except (DAFError, OSError) as e:
            logger.error("Cannot decode %s: %s", path, e)
            status = 1
            continue

        document = decoded.to_dict(include_data=not args.no_data)
        if writer is None:
            json.dump(document, sys.stdout)
            sys.stdout.write('\n')
        else:
            documents.append(document)

    if writer is not None and documents:
        writer(documents[0] if len(args.inputs) == 1 else documents, args.output)

    return status


if __name__ == '__main__':
    sys.exit(main())
