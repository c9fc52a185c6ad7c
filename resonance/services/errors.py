"""
Resonance — Match lifecycle error taxonomy.

Every failure the engine surfaces to a caller is one of these types.  The
HTTP layer maps them onto status codes in ``resonance.main``.
"""

from __future__ import annotations


class MatchingError(Exception):
    """Base class for all match lifecycle errors."""


class NotFoundError(MatchingError):
    """A prompt, session, or match referenced by the caller does not exist."""


class NotAuthorizedError(MatchingError):
    """The caller is neither side of the match they tried to act on."""


class InvalidStateError(MatchingError):
    """Data is inconsistent with the lifecycle (self-match, foreign prompt,
    acting on a match that is no longer pending)."""


class TransientStoreFailure(MatchingError):
    """The data store was unavailable after all retry attempts."""
