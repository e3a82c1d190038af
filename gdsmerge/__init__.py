######################################################################
#                                                                    #
#  Copyright 2023 The gdsmerge developers.                           #
#  This file is part of gdsmerge, distributed under the terms of the #
#  Boost Software License - Version 1.0.  See the accompanying       #
#  LICENSE file or <http://www.boost.org/LICENSE_1_0.txt>            #
#                                                                    #
######################################################################
"""
gdsmerge is a Python module that merges GDSII stream files.

The structures of all input libraries are combined into a single
library.  Structures whose names collide with a name already in use are
renamed with a numeric suffix and every reference to them is updated.
Geometry and reference placement are copied byte for byte.

GDSII format references:

- http://boolean.klaasholwerda.nl/interface/bnf/gdsformat.html
- http://www.artwork.com/gdsii/gdsii/
- http://www.buchanan1.net/stream_description.html
"""

__version__ = "0.3.1"

from gdsmerge.gdsiiformat import (
    GdsFormatError,
    Record,
    gdsii_hash,
    set_gdsii_timestamp,
)
from gdsmerge.library import (
    DanglingReferenceError,
    GdsLibrary,
    Structure,
    Geometry,
    Reference,
    get_gds_units,
)
from gdsmerge.naming import (
    NameAllocator,
    allocate_names,
    resolve_names,
    rewrite_references,
)
from gdsmerge.merge import UnitMismatchError, merge, merge_libraries
