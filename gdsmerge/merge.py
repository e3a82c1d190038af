######################################################################
#                                                                    #
#  Copyright 2023 The gdsmerge developers.                           #
#  This file is part of gdsmerge, distributed under the terms of the #
#  Boost Software License - Version 1.0.  See the accompanying       #
#  LICENSE file or <http://www.boost.org/LICENSE_1_0.txt>            #
#                                                                    #
######################################################################

import os
import tempfile

from gdsmerge.library import GdsLibrary
from gdsmerge.naming import NameAllocator, resolve_names, rewrite_references


class UnitMismatchError(ValueError):
    """
    Input libraries declare different units.

    Parameters
    ----------
    first, second : `GdsLibrary`
        The libraries being compared.
    """

    def __init__(self, first, second):
        self.filenames = (first.filename, second.filename)
        self.units = (first.units, second.units)
        super().__init__(
            "[GDSMERGE] Units of {0} {1} do not match units of {2} {3}.".format(
                second.filename, second.units, first.filename, first.units
            )
        )


def merge_libraries(libraries, name=None, allocator=None):
    """
    Merge libraries into a new one, renaming colliding structures.

    Parameters
    ----------
    libraries : sequence of `GdsLibrary`
        Libraries in merge order.  They are not modified.
    name : string or None
        Name of the merged library.  If None, the name of the first
        library is used.
    allocator : `NameAllocator` or None
        Allocator for the structure names.  If None, a new one is used.

    Returns
    -------
    out : 2-tuple
        The merged `GdsLibrary` and the list of rename maps, one per
        input library.

    Notes
    -----
    The header of the first library (version, timestamps, optional
    library records and units) is used for the merged library.  All
    libraries must declare the same units.
    """
    if len(libraries) == 0:
        raise ValueError("[GDSMERGE] At least one library is required.")
    if name is not None:
        try:
            name.encode("ascii")
        except UnicodeEncodeError:
            raise ValueError(
                "[GDSMERGE] Library name {0!r} is not an ASCII string.".format(name)
            ) from None
    first = libraries[0]
    for library in libraries[1:]:
        if not first.same_units(library):
            raise UnitMismatchError(first, library)
    if allocator is None:
        allocator = NameAllocator()
    maps = resolve_names(libraries, allocator)
    merged = GdsLibrary().copy_header(first)
    if name is not None:
        merged.name = name
    for library, rename in zip(libraries, maps):
        for structure in library:
            merged.add(
                rewrite_references(
                    structure, rename, rename[structure.name], library.filename
                )
            )
    return merged, maps


def merge(outfile, infiles, name=None, timestamp=None):
    """
    Merge GDSII files with automatic renaming of duplicate structures.

    Structures from earlier files keep their names.  A structure whose
    name is already taken is renamed with the first free numeric suffix
    (``cell_2``, ``cell_3``, ...) and all references to it inside its
    own file are updated.

    Parameters
    ----------
    outfile : file, string or Path
        The file (or path) where the merged GDSII stream will be
        written.  When a path is given, the file is only created after
        the merge succeeds.
    infiles : iterable of files, strings or Paths
        Input GDSII streams, in merge order.
    name : string or None
        Name of the merged library.  If None, the name of the first
        input is used.
    timestamp : datetime object
        Sets the GDSII timestamps of the output.  If None, the
        timestamps from the inputs are kept.

    Returns
    -------
    out : list of dictionaries
        One map per input from the original structure names to the
        names used in the output.

    Examples
    --------
    >>> maps = gdsmerge.merge("out.gds", ["in1.gds", "in2.gds"])
    >>> maps[1]["cell_a"]
    'cell_a_2'
    """
    libraries = [GdsLibrary(infile=infile) for infile in infiles]
    merged, maps = merge_libraries(libraries, name)
    if not (hasattr(outfile, "__fspath__") or isinstance(outfile, str)):
        merged.write_gds(outfile, timestamp)
        return maps
    outfile = os.path.abspath(os.fspath(outfile))
    fd, staging = tempfile.mkstemp(
        suffix=".gds.tmp", prefix=".gdsmerge-", dir=os.path.dirname(outfile)
    )
    try:
        with os.fdopen(fd, "wb") as fout:
            merged.write_gds(fout, timestamp)
        os.replace(staging, outfile)
    except BaseException:
        if os.path.exists(staging):
            os.remove(staging)
        raise
    return maps
