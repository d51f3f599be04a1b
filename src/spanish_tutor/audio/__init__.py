"""Audio capture, caching and playback coordination."""

from .cache import AudioCache, AudioCacheEntry
from .capture import (
    CaptureConfig,
    CaptureController,
    CaptureMode,
    CaptureSession,
    ContainerCaptureSession,
    EncoderModeTracker,
    WavCaptureSession,
)
from .interfaces import (
    AudioOutput,
    ContainerEncoder,
    EncoderFactory,
    MediaStream,
    MediaTrack,
    MicrophoneProvider,
    PcmGraph,
    PcmGraphFactory,
    SpeechSynthesizer,
)
from .playback import PlaybackDriver, PlaybackQueueItem

__all__ = [
    "AudioCache",
    "AudioCacheEntry",
    "AudioOutput",
    "CaptureConfig",
    "CaptureController",
    "CaptureMode",
    "CaptureSession",
    "ContainerCaptureSession",
    "ContainerEncoder",
    "EncoderFactory",
    "EncoderModeTracker",
    "MediaStream",
    "MediaTrack",
    "MicrophoneProvider",
    "PcmGraph",
    "PcmGraphFactory",
    "PlaybackDriver",
    "PlaybackQueueItem",
    "SpeechSynthesizer",
    "WavCaptureSession",
]
