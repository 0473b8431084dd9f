"""
Exception taxonomy for the matching engine.

Extraction and detection failures are terminal per attempt and surfaced to
the uploader. IndexUnavailableError is the only transient error and is
retried by the pipeline with backoff.
"""


class PicMatchError(Exception):
    """Base class for all engine errors."""

    error_code = "INTERNAL_ERROR"


class ExtractionError(PicMatchError):
    """Image bytes could not be decoded or processed. The user must re-upload."""

    error_code = "EXTRACTION_FAILED"


class NoDescriptorError(PicMatchError):
    """No face was detected in a selfie."""

    error_code = "NO_FACE_DETECTED"


class IndexUnavailableError(PicMatchError):
    """The storage layer is unreachable."""

    error_code = "STORAGE_UNAVAILABLE"


class DuplicateRegistrationError(PicMatchError):
    """The attendee is already registered for this event."""

    error_code = "DUPLICATE_REGISTRATION"


class EventNotFoundError(PicMatchError):
    error_code = "EVENT_NOT_FOUND"


class EventClosedError(PicMatchError):
    error_code = "EVENT_CLOSED"


class EntityNotFoundError(PicMatchError):
    error_code = "NOT_FOUND"


class PermissionDeniedError(PicMatchError):
    error_code = "FORBIDDEN"


class InvalidStateError(PicMatchError):
    error_code = "INVALID_STATE"


class InvalidUploadError(PicMatchError):
    error_code = "INVALID_UPLOAD"


class AmbiguousFaceWarning(UserWarning):
    """More than one face in a selfie; the highest-confidence face is used."""
