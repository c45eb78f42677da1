from __future__ import annotations


class ChipScoreError(Exception):
    """Base error for the chipscore library."""


class InvalidOptionsError(ChipScoreError):
    """Raised when composition options cannot be parsed or validated."""


class MotifLibraryError(ChipScoreError):
    """Raised when the motif library cannot satisfy a selection."""


class StructureError(ChipScoreError):
    """Raised when a structure plan breaks its section-length invariant."""


class InvalidEventError(ChipScoreError):
    """Raised when an event payload does not match its channel."""
