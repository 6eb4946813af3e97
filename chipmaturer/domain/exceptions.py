"""
Domain Exceptions
=================

Three failure families, each terminal for the action that raised it:
- ValidationError / NotFoundError: rejected before any network call
- ConfigurationError: missing credentials, fatal for the operation
- RemoteCallError: a collaborator call failed (timeout, non-2xx, bad payload)

Infrastructure clients subclass RemoteCallError next to their own code.
"""


class MaturadorError(Exception):
    """Base exception for all chip maturer errors."""
    pass


class ValidationError(MaturadorError):
    """Input rejected before touching the store or the network."""
    pass


class NotFoundError(MaturadorError):
    """Referenced connection, pair or prompt does not exist."""
    pass


class ConfigurationError(MaturadorError):
    """Required credentials or endpoints are not configured."""
    pass


class RemoteCallError(MaturadorError):
    """A call to an external collaborator failed."""
    pass
