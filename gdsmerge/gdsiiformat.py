######################################################################
#                                                                    #
#  Copyright 2023 The gdsmerge developers.                           #
#  This file is part of gdsmerge, distributed under the terms of the #
#  Boost Software License - Version 1.0.  See the accompanying       #
#  LICENSE file or <http://www.boost.org/LICENSE_1_0.txt>            #
#                                                                    #
######################################################################

import os
import struct
import numpy
import hashlib

RECORD_NAMES = (
    "HEADER",
    "BGNLIB",
    "LIBNAME",
    "UNITS",
    "ENDLIB",
    "BGNSTR",
    "STRNAME",
    "ENDSTR",
    "BOUNDARY",
    "PATH",
    "SREF",
    "AREF",
    "TEXT",
    "LAYER",
    "DATATYPE",
    "WIDTH",
    "XY",
    "ENDEL",
    "SNAME",
    "COLROW",
    "TEXTNODE",
    "NODE",
    "TEXTTYPE",
    "PRESENTATION",
    "SPACING",
    "STRING",
    "STRANS",
    "MAG",
    "ANGLE",
    "UINTEGER",
    "USTRING",
    "REFLIBS",
    "FONTS",
    "PATHTYPE",
    "GENERATIONS",
    "ATTRTABLE",
    "STYPTABLE",
    "STRTYPE",
    "ELFLAGS",
    "ELKEY",
    "LINKTYPE",
    "LINKKEYS",
    "NODETYPE",
    "PROPATTR",
    "PROPVALUE",
    "BOX",
    "BOXTYPE",
    "PLEX",
    "BGNEXTN",
    "ENDEXTN",
    "TAPENUM",
    "TAPECODE",
    "STRCLASS",
    "RESERVED",
    "FORMAT",
    "MASK",
    "ENDMASKS",
    "LIBDIRSIZE",
    "SRFNAME",
    "LIBSECUR",
)

HEADER = 0x00
BGNLIB = 0x01
LIBNAME = 0x02
UNITS = 0x03
ENDLIB = 0x04
BGNSTR = 0x05
STRNAME = 0x06
ENDSTR = 0x07
BOUNDARY = 0x08
PATH = 0x09
SREF = 0x0A
AREF = 0x0B
TEXT = 0x0C
ENDEL = 0x11
SNAME = 0x12
NODE = 0x15
BOX = 0x2D
STRCLASS = 0x34

# Data types
NO_DATA = 0x00
BIT_ARRAY = 0x01
INT2 = 0x02
INT4 = 0x03
REAL8 = 0x05
ASCII = 0x06

GEOMETRY_TYPES = frozenset((BOUNDARY, PATH, TEXT, NODE, BOX))
REFERENCE_TYPES = frozenset((SREF, AREF))
ELEMENT_TYPES = GEOMETRY_TYPES | REFERENCE_TYPES

HEADER_SIZE = 4
MAX_RECORD_SIZE = 0xFFFF


class GdsFormatError(ValueError):
    """
    Malformed GDSII stream.

    Parameters
    ----------
    message : string
        Description of the problem.
    filename : string or None
        File where the problem was found.
    offset : integer or None
        Byte position of the offending record.
    """

    def __init__(self, message, filename=None, offset=None):
        self.message = message
        self.filename = filename
        self.offset = offset
        location = ""
        if filename is not None:
            location = " in {0}".format(filename)
        if offset is not None:
            location += " at byte {0}".format(offset)
        super().__init__("[GDSMERGE] {0}{1}.".format(message, location))


class Record(object):
    """
    Single GDSII record.

    Parameters
    ----------
    rtype : integer
        Record type (upper byte of the type word).
    dtype : integer
        Data type (lower byte of the type word).
    data : bytes
        Record payload, without the 4-byte header.
    offset : integer or None
        Position of the record in its source stream.
    """

    __slots__ = "rtype", "dtype", "data", "offset"

    def __init__(self, rtype, dtype, data=b"", offset=None):
        self.rtype = rtype
        self.dtype = dtype
        self.data = data
        self.offset = offset

    def __repr__(self):
        return "Record({0}, {1} bytes)".format(self.name, len(self.data))

    @property
    def name(self):
        return RECORD_NAMES[self.rtype]

    @property
    def size(self):
        return HEADER_SIZE + len(self.data)

    @property
    def string(self):
        """Payload as an ASCII string, without NUL padding."""
        try:
            return self.data.rstrip(b"\0").decode("ascii")
        except UnicodeDecodeError:
            raise GdsFormatError(
                "Non-ASCII string in {0} record".format(self.name), offset=self.offset
            )

    @property
    def stream(self):
        """Record bytes with the original framing."""
        return struct.pack(">HBB", self.size, self.rtype, self.dtype) + self.data


def _record_reader(stream, filename=None):
    """
    Generator for complete records from a GDSII stream file.

    The stream is consumed lazily, one record at a time, so the caller
    can stop at any record boundary and keep using `stream`.

    Parameters
    ----------
    stream : file
        GDSII stream file to be read.
    filename : string
        Name used in error messages.

    Returns
    -------
    out : `Record`
        Records in stream order.
    """
    offset = 0
    while True:
        header = stream.read(HEADER_SIZE)
        if len(header) == 0:
            return
        if len(header) < HEADER_SIZE:
            raise GdsFormatError("Truncated record header", filename, offset)
        size, rtype, dtype = struct.unpack(">HBB", header)
        if size < HEADER_SIZE:
            raise GdsFormatError(
                "Record length {0} smaller than header".format(size), filename, offset
            )
        if rtype >= len(RECORD_NAMES):
            raise GdsFormatError(
                "Unknown record type 0x{0:02X}".format(rtype), filename, offset
            )
        if size % 2 != 0 and dtype != ASCII:
            raise GdsFormatError(
                "Odd length {0} for {1} record".format(size, RECORD_NAMES[rtype]),
                filename,
                offset,
            )
        data = stream.read(size - HEADER_SIZE)
        if len(data) < size - HEADER_SIZE:
            raise GdsFormatError(
                "Stream ends inside {0} record".format(RECORD_NAMES[rtype]),
                filename,
                offset,
            )
        yield Record(rtype, dtype, data, offset)
        offset += size


def _pack_record(rtype, dtype, data=b""):
    """
    Encode a record, computing its length from the payload.

    Parameters
    ----------
    rtype : integer
        Record type.
    dtype : integer
        Data type.
    data : bytes
        Record payload.

    Returns
    -------
    out : bytes
        The complete record.
    """
    size = HEADER_SIZE + len(data)
    if size > MAX_RECORD_SIZE:
        raise GdsFormatError(
            "{0} record too long ({1} bytes)".format(RECORD_NAMES[rtype], size)
        )
    return struct.pack(">HBB", size, rtype, dtype) + data


def _string_record(rtype, text):
    """Encode an ASCII string record, NUL-padded to even length."""
    data = text.encode("ascii")
    if len(data) % 2 != 0:
        data += b"\0"
    return _pack_record(rtype, ASCII, data)


def _timestamp_data(timestamp):
    """Payload of BGNLIB or BGNSTR (modification and access times)."""
    return struct.pack(
        ">12h",
        timestamp.year,
        timestamp.month,
        timestamp.day,
        timestamp.hour,
        timestamp.minute,
        timestamp.second,
        timestamp.year,
        timestamp.month,
        timestamp.day,
        timestamp.hour,
        timestamp.minute,
        timestamp.second,
    )


def _eight_byte_real(value):
    """
    Encode a number in the GDSII 8 byte real format.

    The format uses a sign bit, a 7-bit excess-64 exponent of 16 and a
    56-bit mantissa in [1/16, 1).

    Parameters
    ----------
    value : number
        The number to be encoded.

    Returns
    -------
    out : bytes
        The 8 byte GDSII representation of `value`.
    """
    if value == 0:
        return b"\0" * 8
    sign = 0x80 if value < 0 else 0x00
    fraction, exponent = numpy.frexp(abs(value))
    shift = int(-exponent) % 4
    exponent = (int(exponent) + shift) // 4 + 64
    if not 0 <= exponent <= 0x7F:
        raise ValueError(
            "[GDSMERGE] Value {0} out of range for the GDSII real format.".format(value)
        )
    mantissa = int(numpy.ldexp(fraction, 56 - shift))
    return struct.pack(">Q", ((sign | exponent) << 56) | mantissa)


def _eight_byte_real_to_float(value):
    """Decode a GDSII 8 byte real."""
    (bits,) = struct.unpack(">Q", value)
    exponent = ((bits >> 56) & 0x7F) - 64
    result = float(numpy.ldexp(bits & 0x00FFFFFFFFFFFFFF, 4 * exponent - 56))
    return -result if bits >> 63 else result


def _units_from_record(record, filename=None):
    """
    Decode a UNITS record.

    Returns
    -------
    out : 2-tuple
        Database unit in user units and database unit in meters.
    """
    if record.dtype != REAL8 or len(record.data) != 16:
        raise GdsFormatError("Malformed UNITS record", filename, record.offset)
    return (
        _eight_byte_real_to_float(record.data[:8]),
        _eight_byte_real_to_float(record.data[8:]),
    )


def gdsii_hash(filename, engine=None):
    """
    Calculate the a hash value for a GDSII file.

    The hash is generated based only on the contents of the cells in the
    GDSII library, ignoring any timestamp records present in the file
    structure.

    Parameters
    ----------
    filename : string or Path
        Path to the GDSII file.
    engine : hashlib-like engine
        The engine that executes the hashing algorithm.  It must provide
        the methods `update` and `hexdigest` as defined in the hashlib
        module.  If None, the dafault `hashlib.sha1()` is used.

    Returns
    -------
    out : string
        The hash correponding to the library contents in hex format.
    """
    filename = os.fspath(filename)
    contents = []
    current = None
    with open(filename, "rb") as fin:
        for record in _record_reader(fin, filename):
            if record.rtype == BGNSTR:
                current = []
            elif record.rtype == ENDSTR:
                contents.append(b"".join(current))
                current = None
            elif record.rtype == ENDLIB:
                break
            elif current is not None:
                current.append(record.stream)
    h = hashlib.sha1() if engine is None else engine
    for x in sorted(contents):
        h.update(x)
    return h.hexdigest()


def set_gdsii_timestamp(filename, timestamp):
    """
    Set all timestamps in a given GDSII file.

    The GDSII format includes creation timestamps for the whole library
    and each cell in the contents of the GDSII file.  Those timestamps
    are overwritten by the value passed to this function, which is
    useful for creating GDSII files with identical binary contents,
    i.e., for regression testing.

    Parameters
    ----------
    filename : string or Path
        Path to the GDSII file.
    timestamp : datetime
        The new timestamp to set in the GDSII file binary content.

    Notes
    -----
    This function modifies the *contents* of the file.  The creation,
    modification and access timestamps of the file itself are modified
    according to the file system rules in place for reading and
    writing.
    """
    ts = _timestamp_data(timestamp)
    filename = os.fspath(filename)
    with open(filename, "r+b") as fio:
        pos = 0
        while True:
            data = fio.read(HEADER_SIZE)
            if len(data) < HEADER_SIZE:
                if len(data) > 0:
                    raise GdsFormatError("Truncated record header", filename, pos)
                return
            size, rec_type = struct.unpack(">HH", data)
            if rec_type == 0x0102 or rec_type == 0x0502:
                if size != HEADER_SIZE + len(ts):
                    raise GdsFormatError("Malformed timestamp record", filename, pos)
                fio.write(ts)
            elif rec_type == 0x0400:
                return
            elif size < HEADER_SIZE:
                raise GdsFormatError(
                    "Record length {0} smaller than header".format(size), filename, pos
                )
            elif size > HEADER_SIZE:
                fio.seek(size - HEADER_SIZE, 1)
            pos += size
