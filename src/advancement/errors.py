"""Hard-failure exceptions.

Recoverable conditions (malformed labels, orphan rows, vacuous headers,
legacy note payloads, per-pair bulk failures) are handled where they occur
and never raise; everything here is propagated to the caller.
"""
from __future__ import annotations


class AdvancementError(RuntimeError):
    """Base class for advancement hard failures."""


class StoreUnavailableError(AdvancementError):
    """Raised when the record store cannot be opened or has been closed."""


class SchemaVersionError(AdvancementError):
    """Raised when a store's schema version does not match expected."""


class InvalidActorError(AdvancementError, ValueError):
    """Raised when an action is attempted without a usable actor reference."""


class RecordNotFoundError(AdvancementError, LookupError):
    """Raised when a requirement, catalog entry or progress record is missing."""


class InvalidTransitionError(AdvancementError):
    """Raised for a lifecycle change the current state does not allow."""
