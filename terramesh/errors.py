"""Exception hierarchy for the mesh generation pipeline.

Per-item failures (a tile that cannot be fetched, a feature with a broken
ring) are raised at the smallest scope and absorbed by the caller with a
logged warning. Only ``ConfigurationError`` aborts a request, and
``GenerationCancelled`` always propagates to whoever started the run.
"""


class TerrameshError(Exception):
    """Base class for all pipeline errors."""


class NetworkError(TerrameshError):
    """A tile fetch failed (transport error or non-success status)."""

    def __init__(self, url: str, reason: str):
        self.url = url
        self.reason = reason
        super().__init__(f"{url}: {reason}")


class DecodeError(TerrameshError):
    """A fetched payload could not be decoded as an image or vector tile."""


class ValidationError(TerrameshError):
    """A feature is unusable (too few ring points, non-finite coordinates)."""


class ConfigurationError(TerrameshError):
    """The request itself is invalid; raised before any fetch happens."""


class ResourceError(TerrameshError):
    """Not enough data to complete a stage (e.g. zero elevation coverage)."""


class GenerationCancelled(TerrameshError):
    """The generation was superseded or explicitly cancelled."""
