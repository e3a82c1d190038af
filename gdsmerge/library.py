######################################################################
#                                                                    #
#  Copyright 2023 The gdsmerge developers.                           #
#  This file is part of gdsmerge, distributed under the terms of the #
#  Boost Software License - Version 1.0.  See the accompanying       #
#  LICENSE file or <http://www.boost.org/LICENSE_1_0.txt>            #
#                                                                    #
######################################################################

import os
import datetime
import warnings

import numpy

from gdsmerge.gdsiiformat import (
    GdsFormatError,
    Record,
    RECORD_NAMES,
    HEADER,
    BGNLIB,
    LIBNAME,
    UNITS,
    ENDLIB,
    BGNSTR,
    STRNAME,
    ENDSTR,
    AREF,
    ENDEL,
    SNAME,
    STRCLASS,
    INT2,
    REAL8,
    NO_DATA,
    ELEMENT_TYPES,
    GEOMETRY_TYPES,
    REFERENCE_TYPES,
    _record_reader,
    _pack_record,
    _string_record,
    _timestamp_data,
    _eight_byte_real,
    _units_from_record,
)

# Records that may appear between BGNLIB and UNITS.
_library_records = frozenset(
    (
        LIBNAME,
        0x1F,  # REFLIBS
        0x20,  # FONTS
        0x22,  # GENERATIONS
        0x23,  # ATTRTABLE
        0x36,  # FORMAT
        0x37,  # MASK
        0x38,  # ENDMASKS
        0x39,  # LIBDIRSIZE
        0x3A,  # SRFNAME
        0x3B,  # LIBSECUR
    )
)

# Records that can never appear inside an element.
_structural_records = (
    frozenset((HEADER, BGNLIB, LIBNAME, UNITS, ENDLIB, BGNSTR, STRNAME, ENDSTR))
    | ELEMENT_TYPES
)

# Builder states
_AWAITING_HEADER = 0
_IN_LIBRARY = 1
_IN_STRUCTURE = 2
_IN_ELEMENT = 3
_CLOSED = 4

_max_name_length = 32


class DanglingReferenceError(GdsFormatError):
    """
    Reference to a structure that is not defined in the same library.

    Parameters
    ----------
    structure : string
        Name of the structure holding the reference.
    ref_name : string
        Name of the missing structure.
    filename : string or None
        File where the reference was found.
    """

    def __init__(self, structure, ref_name, filename=None):
        self.structure = structure
        self.ref_name = ref_name
        super().__init__(
            "Structure {0} references undefined structure {1}".format(
                structure, ref_name
            ),
            filename,
        )


class Geometry(object):
    """
    Graphic element: boundary, path, text, box or node.

    The element contents are kept as the raw records from the element
    start to ENDEL, inclusive.

    Parameters
    ----------
    etype : integer
        Record type that opens the element.
    data : bytes
        Raw records of the element.
    """

    __slots__ = "etype", "data"

    def __init__(self, etype, data):
        self.etype = etype
        self.data = data

    def __repr__(self):
        return "Geometry({0}, {1} bytes)".format(RECORD_NAMES[self.etype], len(self.data))

    def copy(self):
        return self

    def to_gds(self, outfile):
        outfile.write(self.data)


class Reference(object):
    """
    Reference to another structure (SREF) or array of references (AREF).

    Only the referenced name is decoded.  Every other record of the
    element (STRANS, MAG, ANGLE, COLROW, XY, properties) is kept as raw
    bytes: `prefix` holds the records before SNAME, including the
    element start, and `suffix` holds the records after it, including
    ENDEL.

    Parameters
    ----------
    etype : integer
        `SREF` or `AREF`.
    ref_name : string
        Name of the referenced structure.
    prefix : bytes
        Raw records before SNAME.
    suffix : bytes
        Raw records after SNAME.
    sname : `Record`
        Original SNAME record.  It is written back unchanged while
        `ref_name` is not modified.

    Attributes
    ----------
    ref_name : string
        Name of the referenced structure.
    """

    __slots__ = "etype", "ref_name", "prefix", "suffix", "_sname"

    def __init__(self, etype, ref_name, prefix=None, suffix=None, sname=None):
        self.etype = etype
        self.ref_name = ref_name
        if prefix is None:
            prefix = _pack_record(etype, NO_DATA)
        if suffix is None:
            suffix = _pack_record(ENDEL, NO_DATA)
        self.prefix = prefix
        self.suffix = suffix
        self._sname = sname

    def __repr__(self):
        return 'Reference({0}, "{1}")'.format(RECORD_NAMES[self.etype], self.ref_name)

    @property
    def is_array(self):
        return self.etype == AREF

    def copy(self):
        return Reference(self.etype, self.ref_name, self.prefix, self.suffix, self._sname)

    def to_gds(self, outfile):
        outfile.write(self.prefix)
        if self._sname is not None and self._sname.string == self.ref_name:
            outfile.write(self._sname.stream)
        else:
            outfile.write(_string_record(SNAME, self.ref_name))
        outfile.write(self.suffix)


class Structure(object):
    """
    GDSII structure (cell): a name and an ordered list of elements.

    Parameters
    ----------
    name : string
        The name of the structure.
    timestamp : datetime or None
        Creation timestamp.  If None, the current time is used.

    Attributes
    ----------
    name : string
        The name of this structure.
    elements : list of `Geometry` or `Reference`
        Elements in definition order.
    extra : list of `Record`
        Records between STRNAME and the first element (STRCLASS).
    """

    __slots__ = "name", "elements", "extra", "_bgnstr", "_strname"

    def __init__(self, name, timestamp=None):
        self.name = name
        self.elements = []
        self.extra = []
        now = datetime.datetime.today() if timestamp is None else timestamp
        self._bgnstr = Record(BGNSTR, INT2, _timestamp_data(now))
        self._strname = None

    def __str__(self):
        return 'Structure ("{0}", {1} elements, {2} references)'.format(
            self.name, len(self.elements), len(self.references)
        )

    def __iter__(self):
        return iter(self.elements)

    @property
    def references(self):
        """List of `Reference` elements."""
        return [e for e in self.elements if e.etype in REFERENCE_TYPES]

    def add(self, element):
        """
        Append an element (or list of elements) to this structure.

        Returns
        -------
        out : `Structure`
            This structure.
        """
        if isinstance(element, (Geometry, Reference)):
            self.elements.append(element)
        else:
            self.elements.extend(element)
        return self

    def get_dependencies(self):
        """
        Names of the structures referenced by this structure.

        Returns
        -------
        out : list of strings
            Referenced names, in order of first use.
        """
        names = []
        for e in self.elements:
            if e.etype in REFERENCE_TYPES and e.ref_name not in names:
                names.append(e.ref_name)
        return names

    def copy(self, name=None):
        """
        Copy this structure.

        Reference elements are copied so that their names can be
        modified independently; geometry is shared.

        Parameters
        ----------
        name : string or None
            Name of the copy.  If None, the same name is used.

        Returns
        -------
        out : `Structure`
            The new structure.
        """
        new = Structure.__new__(Structure)
        new.name = self.name if name is None else name
        new.elements = [e.copy() for e in self.elements]
        new.extra = list(self.extra)
        new._bgnstr = self._bgnstr
        new._strname = self._strname
        return new

    def to_gds(self, outfile, timestamp=None):
        """
        Convert this structure to a GDSII structure.

        Parameters
        ----------
        outfile : open file
            Output to write the GDSII.
        timestamp : datetime object
            Sets the GDSII timestamp.  If None, the original timestamp
            is kept.
        """
        if timestamp is None:
            outfile.write(self._bgnstr.stream)
        else:
            outfile.write(_pack_record(BGNSTR, INT2, _timestamp_data(timestamp)))
        if self._strname is not None and self._strname.string == self.name:
            outfile.write(self._strname.stream)
        else:
            outfile.write(_string_record(STRNAME, self.name))
        for record in self.extra:
            outfile.write(record.stream)
        for element in self.elements:
            element.to_gds(outfile)
        outfile.write(_pack_record(ENDSTR, NO_DATA))


class GdsLibrary(object):
    """
    GDSII library (file).

    Represent a GDSII library containing an ordered list of structures.

    Parameters
    ----------
    name : string
        Name of the GDSII library.  Ignored if a name is defined in
        `infile`.
    infile : file or string
        GDSII stream file (or path) to be imported.  It must be opened
        for reading in binary format.
    unit : number
        Unit size for the objects in the library (in *meters*).
    precision : number
        Precision for the dimensions of the objects in the library (in
        *meters*).

    Attributes
    ----------
    name : string
        Name of the GDSII library.
    structures : list of `Structure`
        Structures in definition order.
    version : integer
        Stream format version from the HEADER record.
    units : 2-tuple
        Database unit in user units and database unit in meters, as
        stored in the UNITS record.
    filename : string or None
        File this library was read from.
    """

    __slots__ = (
        "name",
        "structures",
        "version",
        "units",
        "filename",
        "_header",
        "_index",
    )

    def __init__(
        self, name="library", infile=None, unit=1e-6, precision=1e-9, timestamp=None
    ):
        self.name = name
        self.structures = []
        self.version = 600
        self.units = (precision / unit, precision)
        self.filename = None
        now = datetime.datetime.today() if timestamp is None else timestamp
        self._header = [Record(BGNLIB, INT2, _timestamp_data(now))]
        self._index = {}
        if infile is not None:
            self.read_gds(infile)

    def __str__(self):
        return "GdsLibrary (" + ", ".join([s.name for s in self.structures]) + ")"

    def __iter__(self):
        return iter(self.structures)

    def __len__(self):
        return len(self.structures)

    def __contains__(self, name):
        return name in self._index

    def __getitem__(self, name):
        return self._index[name]

    @property
    def unit(self):
        return self.units[1] / self.units[0]

    @property
    def precision(self):
        return self.units[1]

    def same_units(self, other):
        """
        Check whether `other` declares the same units as this library.

        Parameters
        ----------
        other : `GdsLibrary`
            Library to compare with.

        Returns
        -------
        out : bool
            True if both UNITS values agree within a relative tolerance
            of 1e-9.
        """
        return bool(numpy.isclose(self.units, other.units, rtol=1e-9, atol=0).all())

    def add(self, structure):
        """
        Append a structure to this library.

        Parameters
        ----------
        structure : `Structure`
            Structure to be added.  Its name must not be present in the
            library.

        Returns
        -------
        out : `GdsLibrary`
            This object.
        """
        if structure.name in self._index:
            raise ValueError(
                "[GDSMERGE] Structure named {0} already present in library.".format(
                    structure.name
                )
            )
        self.structures.append(structure)
        self._index[structure.name] = structure
        return self

    def copy_header(self, other):
        """
        Use the header records (version, timestamps, name, units and
        optional library records) of `other` for this library.

        Returns
        -------
        out : `GdsLibrary`
            This object.
        """
        self.name = other.name
        self.version = other.version
        self.units = other.units
        self._header = list(other._header)
        return self

    def read_gds(self, infile):
        """
        Read a GDSII file into this library.

        Parameters
        ----------
        infile : file, string or Path
            GDSII stream file (or path) to be imported.  It must be
            opened for reading in binary format.

        Returns
        -------
        out : `GdsLibrary`
            This object.

        Notes
        -----
        Only structure names and reference names are decoded.  All other
        records are kept as raw bytes and written back unchanged.
        """
        close = True
        if hasattr(infile, "__fspath__") or isinstance(infile, str):
            self.filename = os.fspath(infile)
            infile = open(self.filename, "rb")
        else:
            self.filename = getattr(infile, "name", None)
            close = False
        try:
            self._build(infile)
        except GdsFormatError as e:
            # Record decoding errors do not know their source file.
            if e.filename is not None or self.filename is None:
                raise
            raise GdsFormatError(e.message, self.filename, e.offset) from e
        finally:
            if close:
                infile.close()
        return self

    def _fail(self, message, record=None):
        offset = None if record is None else record.offset
        return GdsFormatError(message, self.filename, offset)

    def _build(self, infile):
        state = _AWAITING_HEADER
        header = []
        structure = None
        records = None
        sname = None
        for record in _record_reader(infile, self.filename):
            rtype = record.rtype
            if state == _AWAITING_HEADER:
                # HEADER
                if rtype == HEADER:
                    if len(header) > 0:
                        raise self._fail("Duplicate HEADER record", record)
                    if record.dtype != INT2 or len(record.data) != 2:
                        raise self._fail("Malformed HEADER record", record)
                    self.version = int.from_bytes(record.data, "big")
                elif len(header) == 0:
                    raise self._fail(
                        "Stream must start with HEADER, found {0}".format(record.name),
                        record,
                    )
                # BGNLIB
                elif rtype == BGNLIB:
                    if header[-1].rtype != HEADER:
                        raise self._fail("BGNLIB must follow HEADER", record)
                # UNITS
                elif rtype == UNITS:
                    if not any(r.rtype == LIBNAME for r in header):
                        raise self._fail("Missing LIBNAME before UNITS", record)
                    self.units = _units_from_record(record, self.filename)
                    state = _IN_LIBRARY
                elif rtype in _library_records:
                    if not any(r.rtype == BGNLIB for r in header):
                        raise self._fail(
                            "{0} record before BGNLIB".format(record.name), record
                        )
                    # LIBNAME
                    if rtype == LIBNAME:
                        self.name = record.string
                else:
                    raise self._fail(
                        "{0} record in library header".format(record.name), record
                    )
                header.append(record)
                if state == _IN_LIBRARY:
                    self._header = header
            elif state == _IN_LIBRARY:
                # BGNSTR
                if rtype == BGNSTR:
                    structure = Structure.__new__(Structure)
                    structure.name = None
                    structure.elements = []
                    structure.extra = []
                    structure._bgnstr = record
                    structure._strname = None
                    state = _IN_STRUCTURE
                # ENDLIB
                elif rtype == ENDLIB:
                    state = _CLOSED
                    break
                else:
                    raise self._fail(
                        "{0} record outside of a structure".format(record.name), record
                    )
            elif state == _IN_STRUCTURE:
                if structure.name is None:
                    # STRNAME
                    if rtype != STRNAME:
                        raise self._fail(
                            "Expected STRNAME after BGNSTR, found {0}".format(
                                record.name
                            ),
                            record,
                        )
                    structure.name = record.string
                    structure._strname = record
                # ENDSTR
                elif rtype == ENDSTR:
                    if structure.name in self._index:
                        raise self._fail(
                            "Multiple structures with name {0}".format(structure.name),
                            record,
                        )
                    self.add(structure)
                    structure = None
                    state = _IN_LIBRARY
                elif rtype in ELEMENT_TYPES:
                    records = [record.stream]
                    sname = None
                    state = _IN_ELEMENT
                # STRCLASS
                elif rtype == STRCLASS and len(structure.elements) == 0:
                    structure.extra.append(record)
                else:
                    raise self._fail(
                        "{0} record outside of an element in structure {1}".format(
                            record.name, structure.name
                        ),
                        record,
                    )
            elif state == _IN_ELEMENT:
                etype = _element_type(records[0])
                # ENDEL
                if rtype == ENDEL:
                    records.append(record.stream)
                    structure.elements.append(
                        self._create_element(etype, records, sname, structure, record)
                    )
                    records = None
                    state = _IN_STRUCTURE
                # SNAME
                elif rtype == SNAME:
                    if etype not in REFERENCE_TYPES:
                        raise self._fail(
                            "SNAME record in {0} element".format(RECORD_NAMES[etype]),
                            record,
                        )
                    if sname is not None:
                        raise self._fail("Multiple SNAME records in reference", record)
                    sname = (len(records), record)
                    records.append(b"")
                elif rtype in _structural_records:
                    raise self._fail(
                        "{0} record inside {1} element".format(
                            record.name, RECORD_NAMES[etype]
                        ),
                        record,
                    )
                else:
                    records.append(record.stream)
        if state == _AWAITING_HEADER and len(header) == 0:
            raise self._fail("Empty GDSII stream")
        if state != _CLOSED:
            raise self._fail("Stream ends before ENDLIB")
        trailing = infile.read()
        if len(trailing.strip(b"\0")) > 0:
            raise GdsFormatError("Data found after ENDLIB", self.filename)

    def _create_element(self, etype, records, sname, structure, endel):
        if etype in GEOMETRY_TYPES:
            return Geometry(etype, b"".join(records))
        if sname is None:
            raise self._fail(
                "{0} element without SNAME in structure {1}".format(
                    RECORD_NAMES[etype], structure.name
                ),
                endel,
            )
        pos, record = sname
        return Reference(
            etype,
            record.string,
            b"".join(records[:pos]),
            b"".join(records[pos + 1 :]),
            record,
        )

    def write_gds(self, outfile, timestamp=None):
        """
        Write the GDSII library to a file.

        Parameters
        ----------
        outfile : file, string or Path
            The file (or path) where the GDSII stream will be written.
            It must be opened for writing operations in binary format.
        timestamp : datetime object
            Sets the GDSII timestamp of the library and every structure.
            If None, the original timestamps are kept.

        Notes
        -----
        Records whose contents did not change are written with their
        original framing.  Library, structure and reference names are
        re-encoded only when modified.
        """
        close = True
        if hasattr(outfile, "__fspath__") or isinstance(outfile, str):
            outfile = open(os.fspath(outfile), "wb")
        else:
            close = False
        try:
            if len(self.structures) == 0:
                warnings.warn("[GDSMERGE] Creating a GDSII file without any structures.")
            for record in self._header_records(timestamp):
                outfile.write(record)
            for structure in self.structures:
                if len(structure.name) > _max_name_length:
                    warnings.warn(
                        "[GDSMERGE] Structure name {0} is longer than {1} characters "
                        "and might not be compatible with all readers.".format(
                            structure.name, _max_name_length
                        ),
                        stacklevel=2,
                    )
                structure.to_gds(outfile, timestamp)
            outfile.write(_pack_record(ENDLIB, NO_DATA))
        finally:
            if close:
                outfile.close()

    def _header_records(self, timestamp):
        version = [r for r in self._header if r.rtype == HEADER]
        if len(version) > 0 and version[0].data == self.version.to_bytes(2, "big"):
            yield version[0].stream
        else:
            yield _pack_record(HEADER, INT2, self.version.to_bytes(2, "big"))
        named = False
        for record in self._header:
            # HEADER
            if record.rtype == HEADER:
                continue
            # BGNLIB
            elif record.rtype == BGNLIB and timestamp is not None:
                yield _pack_record(BGNLIB, INT2, _timestamp_data(timestamp))
            # LIBNAME
            elif record.rtype == LIBNAME:
                named = True
                if record.string == self.name:
                    yield record.stream
                else:
                    yield _string_record(LIBNAME, self.name)
            elif record.rtype != UNITS:
                yield record.stream
        if not named:
            yield _string_record(LIBNAME, self.name)
        units = [r for r in self._header if r.rtype == UNITS]
        if len(units) > 0 and _units_from_record(units[0]) == self.units:
            yield units[0].stream
        else:
            yield _pack_record(
                UNITS,
                REAL8,
                _eight_byte_real(self.units[0]) + _eight_byte_real(self.units[1]),
            )

    def top_level(self):
        """
        Output the top level structures of the library.

        Top level structures are those that are not referenced by any
        other structure.

        Returns
        -------
        out : list
            List of top level structures, in definition order.
        """
        used = set()
        for structure in self.structures:
            used.update(structure.get_dependencies())
        return [s for s in self.structures if s.name not in used]

    def dependency_order(self):
        """
        Sort the structures by dependency.

        Every structure in the returned list comes after all the
        structures it references.

        Returns
        -------
        out : list of `Structure`
            Structures in dependency order.
        """
        order = []
        done = set()
        active = set()
        for root in self.structures:
            if root.name in done:
                continue
            stack = [(root, iter(root.get_dependencies()))]
            active.add(root.name)
            while len(stack) > 0:
                structure, deps = stack[-1]
                for name in deps:
                    if name in done:
                        continue
                    if name in active:
                        raise GdsFormatError(
                            "Cyclic reference at structure {0}".format(name),
                            self.filename,
                        )
                    if name not in self._index:
                        raise DanglingReferenceError(
                            structure.name, name, self.filename
                        )
                    child = self._index[name]
                    active.add(name)
                    stack.append((child, iter(child.get_dependencies())))
                    break
                else:
                    stack.pop()
                    active.discard(structure.name)
                    done.add(structure.name)
                    order.append(structure)
        return order


def _element_type(raw):
    return raw[2]


def get_gds_units(infile):
    """
    Return the unit and precision used in the GDS stream file.

    Parameters
    ----------
    infile : file, string or Path
        GDSII stream file to be queried.

    Returns
    -------
    out : 2-tuple
        Return ``(unit, precision)`` from the file.
    """
    close = True
    filename = None
    if hasattr(infile, "__fspath__") or isinstance(infile, str):
        filename = os.fspath(infile)
        infile = open(filename, "rb")
    else:
        close = False
    unit = precision = None
    try:
        for record in _record_reader(infile, filename):
            # UNITS
            if record.rtype == UNITS:
                db_user, db_meters = _units_from_record(record, filename)
                unit = db_meters / db_user
                precision = db_meters
                break
    finally:
        if close:
            infile.close()
    return (unit, precision)
