from __future__ import annotations

import itertools
from dataclasses import dataclass

_MIME_EXTENSIONS = {
    "audio/mp4": "mp4",
    "audio/webm": "webm",
    "audio/ogg": "ogg",
    "audio/wav": "wav",
    "audio/mpeg": "mp3",
}

_resource_ids = itertools.count(1)


def extension_for_mime(mime_type: str) -> str:
    """Map a negotiated mime type (parameters allowed) to a file extension."""
    base = mime_type.split(";", 1)[0].strip().lower()
    return _MIME_EXTENSIONS.get(base, "wav")


def mime_for_filename(filename: str) -> str:
    """Reverse of :func:`extension_for_mime` for local files; unknown suffixes are treated as WAV."""
    suffix = filename.rsplit(".", 1)[-1].lower() if "." in filename else ""
    if suffix == "m4a":
        return "audio/mp4"
    for mime_type, extension in _MIME_EXTENSIONS.items():
        if extension == suffix:
            return mime_type
    return "audio/wav"


class AudioResource:
    """Playable audio payload with an explicit release.

    Stands in for a blob-backed local URL: once released the payload is dropped
    and the handle cannot be played again.
    """

    __slots__ = ("handle", "mime_type", "_data", "_released")

    def __init__(self, data: bytes, mime_type: str = "audio/mpeg") -> None:
        self.handle = f"audio-resource-{next(_resource_ids)}"
        self.mime_type = mime_type
        self._data: bytes | None = data
        self._released = False

    @property
    def data(self) -> bytes:
        if self._data is None:
            raise ValueError(f"{self.handle} has been released")
        return self._data

    @property
    def size(self) -> int:
        return len(self._data) if self._data is not None else 0

    @property
    def released(self) -> bool:
        return self._released

    def release(self) -> None:
        self._released = True
        self._data = None

    def __repr__(self) -> str:
        state = "released" if self._released else f"{self.size} bytes"
        return f"AudioResource({self.handle}, {self.mime_type}, {state})"


@dataclass(slots=True, frozen=True)
class AudioConstraints:
    channel_count: int = 1
    sample_rate: int = 16_000
    echo_cancellation: bool = True
    noise_suppression: bool = True
    auto_gain_control: bool = True


@dataclass(slots=True)
class CapturedAudio:
    data: bytes
    mime_type: str
    duration_seconds: float
    is_wav: bool = False

    @property
    def extension(self) -> str:
        return extension_for_mime(self.mime_type)

    @property
    def filename(self) -> str:
        return f"audio.{self.extension}"


@dataclass(slots=True)
class ChatReply:
    reply_es: str
    correction_es: str | None = None
    needs_correction: bool = False
    translation_en: str | None = None
    ok: bool = True


@dataclass(slots=True)
class SynthesizedSpeech:
    data: bytes
    mime_type: str = "audio/mpeg"


@dataclass(slots=True)
class BubbleTapResult:
    message_id: str
    translation: str | None = None
    audio_played: bool = False
    refused_reason: str | None = None


@dataclass(slots=True)
class SpeechSegment:
    message_id: str
    text: str


@dataclass(slots=True)
class UserTurn:
    text: str
    role: str = "user"


@dataclass(slots=True)
class AssistantTurn:
    reply_es: str
    correction_es: str | None = None
    needs_correction: bool = False
    translation_en: str | None = None
    role: str = "assistant"

    def spoken_text(self) -> str:
        return " ".join(part for part in (self.correction_es, self.reply_es) if part)
