# (C) Crown copyright, Met Office. All rights reserved.
#
# This file is part of ensprecip and is released under a BSD 3-Clause license.
# See LICENSE in the root of the repository for full licensing details.
from setuptools import find_packages, setup

if __name__ == "__main__":
    setup(
        name="ensprecip",
        version="1.0.0",
        description="Statistical post-processing of ensemble precipitation forecasts",
        license="BSD-3-Clause",
        packages=find_packages(include=["ensprecip", "ensprecip.*"]),
        python_requires=">=3.9",
        install_requires=[
            "numpy",
            "scipy",
            "scitools-iris",
            "cf-units",
            "netCDF4",
            "clize",
            "sigtools",
            "sphinx",
        ],
        extras_require={"test": ["pytest", "threadpoolctl"]},
        entry_points={"console_scripts": ["ensprecip = ensprecip.cli:run_main"]},
    )
