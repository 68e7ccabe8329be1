"""Error taxonomy for the harvester."""

from __future__ import annotations


class HarvesterError(Exception):
    """Base class for every failure raised by the harvester."""


class TransientNetworkError(HarvesterError):
    """Connection failures and unexpected HTTP statuses.  Safe to retry."""


class PermanentIOError(HarvesterError):
    """Local filesystem or hashing failures.  Retrying cannot help."""


class MalformedResponseError(HarvesterError):
    """A listing body that could not be decoded."""


class PersistenceError(HarvesterError):
    """A database transaction failed and was rolled back."""
