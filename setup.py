######################################################################
#                                                                    #
#  Copyright 2023 The gdsmerge developers.                           #
#  This file is part of gdsmerge, distributed under the terms of the #
#  Boost Software License - Version 1.0.  See the accompanying       #
#  LICENSE file or <http://www.boost.org/LICENSE_1_0.txt>            #
#                                                                    #
######################################################################

import sys
from setuptools import setup

with open("README.md") as fin:
    long_description = fin.read()

with open("gdsmerge/__init__.py") as fin:
    for line in fin:
        if line.startswith("__version__ ="):
            version = eval(line[14:])
            break

setup_requires = []
if {"pytest", "test", "ptr"}.intersection(sys.argv):
    setup_requires.append("pytest-runner")

setup(
    name="gdsmerge",
    version=version,
    author="The gdsmerge developers",
    license="Boost Software License v1.0",
    description="Python module for merging GDSII files with automatic cell renaming.",
    long_description=long_description,
    long_description_content_type="text/markdown",
    keywords="GDSII CAD layout merge",
    packages=["gdsmerge"],
    package_dir={"gdsmerge": "gdsmerge"},
    provides=["gdsmerge"],
    install_requires=["numpy"],
    setup_requires=setup_requires,
    tests_require=["pytest"],
    extras_require={"test": ["pytest"]},
    entry_points={"console_scripts": ["gdsmerge = gdsmerge.__main__:main"]},
    python_requires=">=3.7",
    platforms="OS Independent",
    classifiers=[
        "Development Status :: 4 - Beta",
        "Environment :: Console",
        "Intended Audience :: Developers",
        "Intended Audience :: Manufacturing",
        "Intended Audience :: Science/Research",
        "License :: OSI Approved :: Boost Software License 1.0 (BSL-1.0)",
        "Operating System :: OS Independent",
        "Programming Language :: Python :: 3",
        "Topic :: Scientific/Engineering :: Electronic Design Automation (EDA)",
    ],
    zip_safe=False,
)
