"""Exception hierarchy for the relay engine.

Raised inside components and caught at their boundaries; listing,
reading and rewinding operations report failure through return values.
"""
from __future__ import annotations


class RelayError(Exception):
    """Base exception for all relay errors."""


class UnrecognizedEventError(RelayError):
    """A decoded agent line carried a type tag outside the known set."""
    def __init__(self, tag: object):
        self.tag = tag
        super().__init__(f"Unrecognized agent event type: {tag!r}")


class InvalidSessionIdError(RelayError):
    """Session id cannot be mapped to a file inside its project directory."""
    def __init__(self, session_id: str):
        self.session_id = session_id
        super().__init__(f"Invalid session id: {session_id!r}")


class ConfigError(RelayError):
    """Configuration file could not be read or parsed."""
    def __init__(self, path: str, reason: str):
        self.path = path
        self.reason = reason
        super().__init__(f"Cannot load config {path}: {reason}")


class RelayConnectionError(RelayError):
    """Client transport to the relay server failed or is closed."""
    def __init__(self, url: str, reason: str):
        self.url = url
        self.reason = reason
        super().__init__(f"Relay connection to {url} failed: {reason}")
