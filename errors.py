"""
errors.py: Infrastructure error types shared by the stores and the share engine.

Validation outcomes on the public share path are NOT exceptions; they are
returned as ShareDecision results by share_service.py.
"""


class PersistenceError(Exception):
    """The store was unreachable or a write did not complete."""


class DuplicateTokenError(PersistenceError):
    """A generated share token collided with an existing one."""


class NotFound(Exception):
    """An owner-side lookup did not resolve (or resolved to someone else's record)."""
