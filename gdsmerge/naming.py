######################################################################
#                                                                    #
#  Copyright 2023 The gdsmerge developers.                           #
#  This file is part of gdsmerge, distributed under the terms of the #
#  Boost Software License - Version 1.0.  See the accompanying       #
#  LICENSE file or <http://www.boost.org/LICENSE_1_0.txt>            #
#                                                                    #
######################################################################
"""
Structure name allocation and reference rewriting for merged libraries.
"""

from gdsmerge.gdsiiformat import REFERENCE_TYPES
from gdsmerge.library import DanglingReferenceError


class NameAllocator(object):
    """
    Allocator of unique structure names.

    Names are committed in the order they are requested.  A name that
    is already taken gets the first free suffix ``_2``, ``_3``, ...,
    checked against every name committed so far, including previous
    renames.

    Parameters
    ----------
    used : iterable of strings
        Names already taken.

    Attributes
    ----------
    used : set of strings
        Names committed so far.

    Examples
    --------
    >>> names = NameAllocator()
    >>> names.allocate("cell_a")
    'cell_a'
    >>> names.allocate("cell_a")
    'cell_a_2'
    >>> names.allocate("cell_a_2")
    'cell_a_2_2'
    """

    __slots__ = ("used",)

    def __init__(self, used=()):
        self.used = set(used)

    def __contains__(self, name):
        return name in self.used

    def __len__(self):
        return len(self.used)

    def allocate(self, name):
        """
        Commit a unique name derived from `name`.

        Parameters
        ----------
        name : string
            Requested name.

        Returns
        -------
        out : string
            `name` itself if free, otherwise `name` with the first free
            numeric suffix.
        """
        final = name
        n = 2
        while final in self.used:
            final = "{0}_{1}".format(name, n)
            n += 1
        self.used.add(final)
        return final


def allocate_names(names, allocator=None):
    """
    Allocate final names for a sequence of structures.

    Parameters
    ----------
    names : iterable of 2-tuples
        Pairs ``(library_index, original_name)`` in merge order: file
        order first, then definition order within each file.
    allocator : `NameAllocator` or None
        Allocator holding the names already in use.  If None, a new one
        is created.

    Returns
    -------
    out : dictionary
        Final name indexed by ``(library_index, original_name)``.
    """
    if allocator is None:
        allocator = NameAllocator()
    result = {}
    for key in names:
        if key in result:
            raise ValueError(
                "[GDSMERGE] Structure {1} listed twice for library {0}.".format(*key)
            )
        result[key] = allocator.allocate(key[1])
    return result


def resolve_names(libraries, allocator=None):
    """
    Compute the rename maps for merging `libraries`.

    Parameters
    ----------
    libraries : sequence of `GdsLibrary`
        Libraries in merge order.  Earlier libraries keep their names
        when there are collisions.
    allocator : `NameAllocator` or None
        Allocator holding the names already in use.

    Returns
    -------
    out : list of dictionaries
        One map per library from every original structure name to its
        final name (identity entries included).
    """
    names = allocate_names(
        [(i, s.name) for i, library in enumerate(libraries) for s in library],
        allocator,
    )
    maps = [{} for _ in libraries]
    for (i, name), final in names.items():
        maps[i][name] = final
    return maps


def rewrite_references(structure, rename, name=None, filename=None):
    """
    Copy a structure replacing the names in all of its references.

    Parameters
    ----------
    structure : `Structure`
        Structure to be rewritten.  It is not modified.
    rename : dictionary
        Rename map of the library that owns `structure`.  Every
        referenced name must be a key.
    name : string or None
        New name for the structure itself.  If None, the name is kept.
    filename : string or None
        Source file, used in error messages.

    Returns
    -------
    out : `Structure`
        The rewritten copy.
    """
    result = structure.copy(name)
    for element in result.elements:
        if element.etype in REFERENCE_TYPES:
            if element.ref_name not in rename:
                raise DanglingReferenceError(structure.name, element.ref_name, filename)
            element.ref_name = rename[element.ref_name]
    return result
