# (C) Crown copyright, Met Office. All rights reserved.
#
# This file is part of ensprecip and is released under a BSD 3-Clause license.
# See LICENSE in the root of the repository for full licensing details.
"""Statistical calibration of ensemble precipitation forecasts"""
