"""Error taxonomy for capture, playback and relay requests.

Every error carries a short ``user_message`` suitable for a status line. Status
codes, provider bodies and other diagnostics stay on the exception attributes
and in logs.
"""

from __future__ import annotations


class TutorError(RuntimeError):
    """Base class for failures surfaced to the user as a status string."""

    user_message = "Something went wrong. Please try again."


class MicrophonePermissionError(TutorError):
    """Raised when microphone access is denied."""

    user_message = "Microphone permission denied. Please enable it in your settings."


class CaptureError(TutorError):
    """Raised when a microphone stream cannot be acquired or recorded."""

    user_message = "Could not start recording. Please try again."


class EncoderError(CaptureError):
    """Raised when the container encoder fails to start or flush."""


class WavSizingError(CaptureError):
    """Raised when a built WAV payload does not match its sample count."""


class ConnectivityError(TutorError):
    """Raised when the relay cannot be reached."""

    user_message = "Connection problem. Check your network and try again."


class TranscriptionError(TutorError):
    """Raised when the transcription endpoint answers with an error."""

    user_message = "Could not transcribe your audio. Please try again."

    def __init__(self, message: str, *, status_code: int | None = None, body: str = "") -> None:
        super().__init__(message)
        self.status_code = status_code
        self.body = body


class AudioDecodeError(TranscriptionError):
    """Raised when the relay reports the uploaded audio could not be decoded."""

    user_message = "Couldn't process that recording. Please try again."


class ReplyError(TutorError):
    """Raised when the reply endpoint fails."""

    user_message = "The tutor is unavailable right now. Please try again."

    def __init__(self, message: str, *, status_code: int | None = None, body: str = "") -> None:
        super().__init__(message)
        self.status_code = status_code
        self.body = body


class SynthesisError(TutorError):
    """Raised when speech synthesis fails for a segment."""

    user_message = "Audio is unavailable for this message."


class PlaybackError(TutorError):
    """Raised by an audio output that failed to play a resource."""

    user_message = "Audio playback failed."


class AutoplayBlockedError(PlaybackError):
    """Raised when the output refuses to start without a fresh user gesture."""

    user_message = "Tap to enable audio."
