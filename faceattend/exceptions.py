class AttendanceError(Exception):
    """Base exception for the attendance system."""


class ValidationError(AttendanceError):
    """Raised when operator input is rejected."""


class DuplicateIdentityError(ValidationError):
    """Raised when an identity key (or face) is already enrolled."""


class QualityRejectedError(ValidationError):
    """Raised when the quality advisor rejects an enrollment photo."""

    def __init__(self, reason: str):
        super().__init__(f"Photo rejected: {reason}")
        self.reason = reason


class NotReadyError(AttendanceError):
    """Raised when the camera or the face extractor is not initialized."""


class CameraNotReadyError(NotReadyError):
    """Raised when the camera has not produced a usable frame yet."""


class NoFaceDetectedError(AttendanceError):
    """Raised when no single face can be found in a still frame."""


class DimensionMismatchError(AttendanceError):
    """Raised when an embedding length differs from the gallery's."""

    def __init__(self, expected: int, actual: int):
        super().__init__(f"Embedding length {actual} does not match gallery dimension {expected}.")
        self.expected = expected
        self.actual = actual


class InvalidStateError(AttendanceError):
    """Raised when a session operation is not allowed in the current state."""


class PersistenceError(AttendanceError):
    """Raised when loading or saving attendance data fails."""


class AdvisorError(AttendanceError):
    """Raised when the quality advisor cannot produce a verdict."""


class CameraError(AttendanceError):
    """Raised when webcam access fails."""


class FaceEngineError(AttendanceError):
    """Raised when face detection or embedding generation fails."""
