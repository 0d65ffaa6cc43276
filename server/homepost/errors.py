from __future__ import annotations


class HomePostError(Exception):
    """Base class for errors raised by the hub."""


class ConfigError(HomePostError):
    """Invalid or missing configuration detected at start-up."""


class ProtocolError(HomePostError):
    """A single inbound message could not be accepted."""

    def __init__(self, code: str, message: str) -> None:
        super().__init__(message)
        self.code = code
        self.message = message


class ClassifierError(HomePostError):
    """The primary alert classifier failed or returned an unusable result."""
