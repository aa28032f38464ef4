"""Exception taxonomy shared by every analysis step.

All domain errors derive from :class:`SchoolAccessError`. Each one also
inherits the closest builtin so callers that only know ``ValueError`` or
``FileNotFoundError`` keep working.
"""

from __future__ import annotations

__all__ = [
    "SchoolAccessError",
    "CRSMismatch",
    "InvalidSRS",
    "DegenerateGeometry",
    "DegenerateInput",
    "InsufficientData",
    "FileNotFound",
    "UnsupportedFormat",
    "CorruptGeometry",
]


class SchoolAccessError(Exception):
    """Base class for analysis failures."""


class CRSMismatch(SchoolAccessError, ValueError):
    """Two inputs to a binary spatial operation use different reference systems."""

    def __init__(self, operation: str, left, right):
        self.operation = operation
        self.left = left
        self.right = right
        super().__init__(
            f"{operation}: CRS mismatch ({_crs_label(left)} != {_crs_label(right)}); "
            "reproject one input explicitly first"
        )


class InvalidSRS(SchoolAccessError, ValueError):
    """An SRS descriptor is missing, malformed or unknown to PROJ."""


class DegenerateGeometry(SchoolAccessError, ValueError):
    """A geometry became unusable (non-finite, zero-area, mixed family)."""


class DegenerateInput(SchoolAccessError, ValueError):
    """Too few or coincident points for a tessellation or distance computation."""


class InsufficientData(SchoolAccessError, ValueError):
    """A k-nearest request asks for more neighbours than exist."""


class FileNotFound(SchoolAccessError, FileNotFoundError):
    """A vector source path does not exist."""


class UnsupportedFormat(SchoolAccessError, ValueError):
    """A vector source has an extension the loader does not read."""


class CorruptGeometry(SchoolAccessError, ValueError):
    """A vector source could not be parsed or holds null/invalid geometries."""


def _crs_label(crs) -> str:
    if crs is None:
        return "None"
    try:
        epsg = crs.to_epsg()
    except AttributeError:
        return str(crs)
    if epsg is not None:
        return f"EPSG:{epsg}"
    return getattr(crs, "name", None) or str(crs)
