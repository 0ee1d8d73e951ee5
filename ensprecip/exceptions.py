# (C) Crown copyright, Met Office. All rights reserved.
#
# This file is part of ensprecip and is released under a BSD 3-Clause license.
# See LICENSE in the root of the repository for full licensing details.
"""
Exception types raised by ensprecip.

ConfigurationError is fatal to a run. MissingInputError is fatal for the
climatology and forecast files; for other inputs the forecast assembler
skips the stages depending on the missing input.
"""


class EnsPrecipError(Exception):
    """Base exception for all ensprecip errors."""

    pass


class ConfigurationError(EnsPrecipError, ValueError):
    """Raised for an invalid model identifier, date, lead time or option."""

    pass


class MissingInputError(EnsPrecipError, IOError):
    """Raised when a required input file is absent, unreadable or malformed."""

    def __init__(self, path, reason: str = "file not found") -> None:
        self.path = str(path)
        self.reason = reason
        super().__init__(f"Required input {self.path} unavailable: {reason}")


class DegenerateDistributionError(EnsPrecipError, ArithmeticError):
    """Raised by strict checks when fitted distribution parameters are unusable."""

    pass
