"""Local Spanish speech through a ``pyttsx3`` engine instead of relay TTS."""

from __future__ import annotations

import asyncio
import logging
from typing import Any

from spanish_tutor.errors import PlaybackError, SynthesisError
from spanish_tutor.models import AudioResource, SynthesizedSpeech

LOCAL_SPEECH_MIME = "text/plain; charset=utf-8"


class LocalSpeechSynthesizer:
    """Prepare text payloads that :class:`Pyttsx3AudioOutput` speaks locally."""

    async def synthesize(self, text: str) -> SynthesizedSpeech:
        normalized = " ".join(text.split())
        if not normalized:
            raise SynthesisError("Nothing to speak")
        return SynthesizedSpeech(data=normalized.encode("utf-8"), mime_type=LOCAL_SPEECH_MIME)


def _import_pyttsx3() -> Any:
    try:
        import pyttsx3
    except ImportError as exc:  # pragma: no cover - import guard
        raise RuntimeError(
            "Local speech backend unavailable. Install extras with: pip install 'spanish-tutor[voice]'"
        ) from exc
    return pyttsx3


class Pyttsx3AudioOutput:
    """Speaker output that reads text payloads aloud with a pyttsx3 engine."""

    def __init__(
        self,
        *,
        voice_id: str | None = None,
        rate: int | None = None,
        volume: float | None = None,
        logger: logging.Logger | None = None,
    ) -> None:
        pyttsx3 = _import_pyttsx3()
        self._logger = logger or logging.getLogger("spanish_tutor.audio.backends.pyttsx3")
        self._engine = pyttsx3.init()
        if voice_id:
            self._engine.setProperty("voice", voice_id)
        if rate is not None:
            self._engine.setProperty("rate", rate)
        if volume is not None:
            self._engine.setProperty("volume", max(0.0, min(1.0, volume)))
        self._stopped = False
        self._closed = False

    async def play(self, resource: AudioResource) -> None:
        if self._closed:
            raise PlaybackError("Audio output has been closed")
        if resource.mime_type != LOCAL_SPEECH_MIME:
            raise PlaybackError(f"Local speech cannot play {resource.mime_type}")
        text = resource.data.decode("utf-8", errors="ignore").strip()
        if not text:
            return
        self._stopped = False
        try:
            await asyncio.to_thread(self._speak, text)
        except RuntimeError as exc:
            raise PlaybackError(f"pyttsx3 failed: {exc}") from exc

    def _speak(self, text: str) -> None:
        # Runs on a worker thread; a stop issued before this point skips the utterance.
        if self._stopped:
            return
        self._engine.say(text)
        self._engine.runAndWait()

    def stop(self) -> None:
        self._stopped = True
        try:
            self._engine.stop()
        except RuntimeError:
            self._logger.debug("pyttsx3_stop_ignored")

    async def prime(self) -> None:
        """Local speech has no gesture requirement."""

    def close(self) -> None:
        self.stop()
        self._closed = True
