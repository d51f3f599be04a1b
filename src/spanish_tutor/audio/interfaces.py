"""Contracts for microphone, encoder, processing graph and speaker backends."""

from __future__ import annotations

from typing import Callable, Protocol

import numpy as np

from spanish_tutor.models import AudioConstraints, AudioResource, SynthesizedSpeech


class MediaTrack(Protocol):
    """One live input track of a microphone stream."""

    def stop(self) -> None:
        """Stop the track; a stopped track cannot be restarted."""


class MediaStream(Protocol):
    """Microphone stream handle owned by a single capture session."""

    def get_tracks(self) -> list[MediaTrack]:
        """Return every track belonging to the stream."""


class MicrophoneProvider(Protocol):
    """Grants microphone streams."""

    async def request_stream(self, constraints: AudioConstraints) -> MediaStream:
        """Acquire a fresh stream; raise ``MicrophonePermissionError`` on denial."""


class ContainerEncoder(Protocol):
    """Encodes a stream into a container format, emitting chunks."""

    mime_type: str

    def start(self) -> None:
        """Begin encoding."""

    async def stop(self) -> None:
        """Stop encoding and return once the final chunk has been emitted."""

    def cancel(self) -> None:
        """Stop immediately, discarding buffered data."""


class EncoderFactory(Protocol):
    """Creates container encoders for supported mime types."""

    def is_type_supported(self, mime_type: str) -> bool:
        """Whether ``mime_type`` can be produced by this backend."""

    def create(self, stream: MediaStream, mime_type: str, on_data: Callable[[bytes], None]) -> ContainerEncoder:
        """Build an encoder bound to ``stream`` that feeds ``on_data``."""


class PcmGraph(Protocol):
    """Audio-processing graph delivering float32 mono samples."""

    def start(self, on_samples: Callable[[np.ndarray], None]) -> None:
        """Connect the graph and begin delivering sample blocks."""

    def disconnect(self) -> None:
        """Stop delivering samples."""


class PcmGraphFactory(Protocol):
    """Owns the processing context that graphs are built on."""

    def create(self, stream: MediaStream, sample_rate: int) -> PcmGraph:
        """Build a graph reading ``stream`` at ``sample_rate``."""

    def reset(self) -> None:
        """Tear down and recreate the underlying processing context."""


class AudioOutput(Protocol):
    """Single reusable speaker handle."""

    async def play(self, resource: AudioResource) -> None:
        """Play ``resource`` and return when it ends or is stopped.

        Raises ``AutoplayBlockedError`` when a fresh user gesture is required
        and ``PlaybackError`` for any other failure.
        """

    def stop(self) -> None:
        """Halt the current playback; ``play`` returns promptly."""

    async def prime(self) -> None:
        """Unlock playback from inside a user gesture."""

    def close(self) -> None:
        """Release the handle."""


class SpeechSynthesizer(Protocol):
    """Turns segment text into a playable payload."""

    async def synthesize(self, text: str) -> SynthesizedSpeech:
        """Return speech for ``text``; raise ``SynthesisError`` on failure."""
