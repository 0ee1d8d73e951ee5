# (C) Crown copyright, Met Office. All rights reserved.
#
# This file is part of ensprecip and is released under a BSD 3-Clause license.
# See LICENSE in the root of the repository for full licensing details.
"""Licence checks"""

from pathlib import Path


def self_licence():
    """Collect licence text from this file"""
    self_lines = Path(__file__).read_text().splitlines()
    licence_lines = list()
    for line in self_lines:
        if not line.startswith("#"):
            break
        licence_lines.append(line)
    licence = "\n".join(licence_lines)
    return licence


def test_py_licence():
    """
    Check that non-empty python files contain the 3-clause BSD licence text
    """
    top_level = (Path(__file__).parent / "..").resolve()
    directories_covered = [top_level / "ensprecip", top_level / "ensprecip_tests"]
    failed_files = []
    licence_text = self_licence()
    for directory in directories_covered:
        python_files = list(directory.glob("**/*.py"))
        for file in python_files:
            contents = file.read_text()
            # skip zero-byte empty files such as __init__.py
            if len(contents) > 0 and licence_text not in contents:
                failed_files.append(str(file))
    assert len(failed_files) == 0, "\n".join(failed_files)
