"""Error taxonomy for the tracking pipeline.

Classification never raises (classifiers fall back to Unknown sentinels),
so only validation and storage failures abort a request.
"""


class TrackerError(Exception):
    """Base class for pipeline errors."""


class ValidationError(TrackerError):
    """Malformed or missing beacon/query fields. Always caller-correctable."""


class StorageError(TrackerError):
    """The warehouse is unavailable or a read/write failed."""
