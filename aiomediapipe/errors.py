"""Exceptions raised and absorbed by the encoding and delivery pipelines."""

from __future__ import annotations


class MediaPipeError(Exception):
    """Base class for all aiomediapipe errors."""


class ConfigurationError(MediaPipeError, ValueError):
    """A settings value is invalid or a synchronous configuration call failed."""


class TransientEncodeError(MediaPipeError):
    """A single encode cycle produced no output; the pipeline keeps going."""


class SessionCreationError(MediaPipeError):
    """A codec session could not be built; retried on next use."""


class SessionPropertyError(MediaPipeError):
    """A live codec session rejected a property value."""

    def __init__(self, key: str, value: object, reason: str | None = None) -> None:
        """Record which property was rejected and why."""
        self.key = key
        self.value = value
        self.reason = reason
        message = f"Session rejected {key}={value!r}"
        if reason:
            message = f"{message}: {reason}"
        super().__init__(message)


class BitrateUnattainableError(SessionPropertyError):
    """The requested bitrate was rejected by the codec."""

    def __init__(self, value: int, reason: str | None = None) -> None:
        """Record the rejected bitrate."""
        super().__init__("bitrate", value, reason)


__all__ = [
    "BitrateUnattainableError",
    "ConfigurationError",
    "MediaPipeError",
    "SessionCreationError",
    "SessionPropertyError",
    "TransientEncodeError",
]
