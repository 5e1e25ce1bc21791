from __future__ import annotations

from enum import Enum


# ======================================================================
# Allocation outcomes
# ======================================================================

class AllocationReason(Enum):
    """Why a deploy request was refused."""

    ALREADY_BOUND = "already_bound"
    SUBJECT_ALREADY_MONITORED = "subject_already_monitored"
    RESOURCE_UNAVAILABLE = "resource_unavailable"


# ======================================================================
# Exceptions
# ======================================================================

class MalformedEvent(ValueError):
    """Raised when an incoming activity payload is missing required fields."""


class PersistenceFailure(RuntimeError):
    """
    Raised by a persistence store when a load or save cannot complete.

    Callers treat this as best-effort: in-memory state stays authoritative
    and the write is retried on the next flush.
    """


class ProviderUnavailable(RuntimeError):
    """
    Raised by a resource pool provider that cannot produce a snapshot.
    The registry degrades it to an empty contribution.
    """
