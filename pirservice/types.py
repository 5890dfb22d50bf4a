"""Algorithm identifiers and the shared error type of the PIR service."""

from __future__ import annotations

import enum

PIR_ALGO_SPU = "SPU"
PIR_ALGO_SE = "SE"

# Receive timeout on links between the two parties: thirty minutes.
LINK_RECV_TIMEOUT_MS = 30 * 60 * 1000


class PirType(enum.IntEnum):
    """The PIR algorithm families the service knows about."""

    UNKNOWN = 0
    SPU = 1
    SE = 2


class PirError(Exception):
    """Base class for errors raised by the PIR service."""


def get_pir_type(algo: str | None, default_algo: str = PIR_ALGO_SE) -> PirType:
    """Map an algorithm name to a :class:`PirType`.

    An empty name falls back to ``default_algo``; a default that is not
    recognised falls back to SE. A non-empty name that is not recognised
    gives ``PirType.UNKNOWN``.
    """
    if not algo:
        if default_algo == PIR_ALGO_SPU:
            return PirType.SPU
        return PirType.SE
    if algo == PIR_ALGO_SPU:
        return PirType.SPU
    if algo == PIR_ALGO_SE:
        return PirType.SE
    return PirType.UNKNOWN