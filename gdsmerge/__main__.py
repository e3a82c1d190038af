######################################################################
#                                                                    #
#  Copyright 2023 The gdsmerge developers.                           #
#  This file is part of gdsmerge, distributed under the terms of the #
#  Boost Software License - Version 1.0.  See the accompanying       #
#  LICENSE file or <http://www.boost.org/LICENSE_1_0.txt>            #
#                                                                    #
######################################################################

import os
import sys
import argparse
import datetime

import gdsmerge


def _timestamp(value):
    try:
        return datetime.datetime.fromisoformat(value)
    except ValueError:
        raise argparse.ArgumentTypeError("invalid ISO-8601 timestamp: " + value)


def main(argv=None):
    parser = argparse.ArgumentParser(
        prog="gdsmerge",
        description="Merge GDS files with automatic renaming of duplicate cells.",
    )
    parser.add_argument(
        "-o", "--output", required=True, help="The output GDS file."
    )
    parser.add_argument("inputs", nargs="+", help="The input GDS files.")
    parser.add_argument(
        "--name", default=None, help="Library name (default: name of the first input)."
    )
    parser.add_argument(
        "--timestamp",
        type=_timestamp,
        default=None,
        help="Timestamp for the library and all cells, in ISO-8601 format.",
    )
    parser.add_argument(
        "-v", "--verbose", action="store_true", help="Report renamed cells."
    )
    parser.add_argument(
        "--version", action="version", version="%(prog)s " + gdsmerge.__version__
    )
    args = parser.parse_args(argv)

    try:
        maps = gdsmerge.merge(args.output, args.inputs, args.name, args.timestamp)
    except ValueError as e:
        print("gdsmerge: " + str(e), file=sys.stderr)
        return 1
    except OSError as e:
        filename = e.filename if e.filename is not None else args.output
        print("gdsmerge: {0}: {1}".format(filename, e.strerror or e), file=sys.stderr)
        return 1
    if args.verbose:
        for infile, rename in zip(args.inputs, maps):
            for old, new in rename.items():
                if old != new:
                    print(
                        "{0}: {1} -> {2}".format(os.path.basename(infile), old, new),
                        file=sys.stderr,
                    )
    return 0


if __name__ == "__main__":
    sys.exit(main())
