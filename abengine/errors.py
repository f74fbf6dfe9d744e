"""
ABEngine Errors

Only configuration problems surface to callers as exceptions. Live
traffic paths (tracking, persistence) degrade and log instead of raising.
"""

from __future__ import annotations


class AbEngineError(Exception):
    """Base class for engine errors."""


class ConfigurationError(AbEngineError, ValueError):
    """An experiment or segment definition is invalid.

    Raised before anything is registered, so a failed call leaves no
    partial state behind.
    """


class PersistenceError(AbEngineError):
    """The backing store could not be read or written."""

    def __init__(self, message: str, key: str = ""):
        super().__init__(message)
        self.key = key
