"""
Exception types raised by the Station QC toolkit.

Only structural problems are raised as exceptions:

* :class:`InvalidInput` for malformed configuration or query arguments.
* :class:`UnknownStation` for references to stations outside the batch.
* :class:`InternalInconsistency` for cache or index corruption.

Sparse or missing data is never an error; QC tests report it as
:attr:`stnqc.flags.Flag.INCONCLUSIVE` instead.
"""

from __future__ import annotations


class StationQCError(Exception):
    """Base class for all toolkit errors."""


class InvalidInput(StationQCError, ValueError):
    """A configuration value or query parameter violates its contract."""


class UnknownStation(StationQCError, LookupError):
    """A station identifier is not part of the current batch."""

    def __init__(self, station_id: str) -> None:
        super().__init__(f"Unknown station '{station_id}'")
        self.station_id = station_id


class InternalInconsistency(StationQCError, RuntimeError):
    """A cache returned data that contradicts its query or the station index."""
