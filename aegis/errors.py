"""
Error taxonomy for the URL risk engine.

Each failure class maps to a fixed policy in the decision engine:
InvalidURL fails closed, NetworkFailure fails open, StorageFailure is logged
and the engine keeps going on in-memory state, LearnerDataCorruption resets
the learner maps.
"""


class AegisError(Exception):
    """Base class for engine failures."""


class InvalidURL(AegisError):
    """The string cannot be parsed as a navigable URL."""

    def __init__(self, url: str, reason: str = "Invalid URL format"):
        super().__init__(f"{reason}: {url!r}")
        self.url = url
        self.reason = reason


class NetworkFailure(AegisError):
    """The reputation service could not be reached or answered badly."""


class StorageFailure(AegisError):
    """The persistence layer is unavailable."""


class LearnerDataCorruption(AegisError):
    """Stored learner maps do not have the expected shape."""
