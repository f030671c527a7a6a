"""Error taxonomy shared by the check-in flow and the storage layer.

Verification errors are turned into a retryable session state by the
coordinator. Storage errors travel up to whoever issued the call.
"""
from enum import Enum
from typing import Optional


class ReasonCode(str, Enum):
    NO_IDENTITY = 'NO_IDENTITY'
    LOCATION_UNAVAILABLE = 'LOCATION_UNAVAILABLE'
    OUT_OF_RANGE = 'OUT_OF_RANGE'
    FACE_NOT_DETECTED = 'FACE_NOT_DETECTED'
    FACE_MISMATCH = 'FACE_MISMATCH'
    BACKEND_UNREACHABLE = 'BACKEND_UNREACHABLE'
    WRITE_FAILED = 'WRITE_FAILED'


class PresenceError(Exception):
    """Base class for every error raised by this package."""
    reason = None  # type: Optional[ReasonCode]


class VerificationError(PresenceError):
    """A check-in attempt that cannot be approved."""


class NoIdentity(VerificationError):
    reason = ReasonCode.NO_IDENTITY

    def __init__(self, message: str = 'No employee is logged in.'):
        super().__init__(message)


class LocationUnavailable(VerificationError):
    reason = ReasonCode.LOCATION_UNAVAILABLE

    def __init__(self, message: str = 'Location data is unavailable.'):
        super().__init__(message)


class OutOfRange(VerificationError):
    reason = ReasonCode.OUT_OF_RANGE

    def __init__(self, distance: float, max_distance: float):
        self.distance = distance
        self.max_distance = max_distance
        super().__init__(
            f'You are too far from the office ({distance:.0f} m). Maximum is {max_distance:.0f} m.'
        )


class FaceNotDetected(VerificationError):
    reason = ReasonCode.FACE_NOT_DETECTED

    def __init__(self, message: str = 'No face detected.'):
        super().__init__(message)


class FaceMismatch(VerificationError):
    reason = ReasonCode.FACE_MISMATCH

    def __init__(self, score: float):
        self.score = score
        super().__init__(f'Face does not match (score {score:.0f}). Make sure your face is clearly visible.')


class StorageError(PresenceError):
    """Raised by a storage backend; never swallowed by the gateway."""

    def __init__(self, message: str, backend: Optional[str] = None):
        self.backend = backend
        super().__init__(message)


class BackendUnreachable(StorageError):
    reason = ReasonCode.BACKEND_UNREACHABLE


class WriteFailed(StorageError):
    reason = ReasonCode.WRITE_FAILED
