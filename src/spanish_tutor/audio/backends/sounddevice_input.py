"""Microphone streams and PCM graphs powered by ``sounddevice``."""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Callable

import numpy as np

from spanish_tutor.errors import CaptureError, MicrophonePermissionError
from spanish_tutor.models import AudioConstraints

_INSTALL_HINT = "Install extras with: pip install 'spanish-tutor[voice]'"


def _import_sounddevice() -> Any:
    try:
        import sounddevice as sd
    except (ImportError, OSError) as exc:  # pragma: no cover - import guard
        raise RuntimeError(f"Microphone backend unavailable. {_INSTALL_HINT}") from exc
    return sd


class SoundDeviceTrack:
    """The single mono input track of a :class:`SoundDeviceStream`."""

    def __init__(self, stream: "SoundDeviceStream") -> None:
        self._stream = stream
        self.stopped = False

    def stop(self) -> None:
        if self.stopped:
            return
        self.stopped = True
        self._stream.close()


class SoundDeviceStream:
    """Input stream that hands float32 blocks to listeners on the event loop thread."""

    def __init__(self, sd: Any, constraints: AudioConstraints, loop: asyncio.AbstractEventLoop) -> None:
        self.sample_rate = constraints.sample_rate
        self._loop = loop
        self._listeners: list[Callable[[np.ndarray], None]] = []
        self._closed = False
        self._input = sd.InputStream(
            samplerate=constraints.sample_rate,
            channels=constraints.channel_count,
            dtype="float32",
            callback=self._callback,
        )
        self._input.start()
        self._tracks = [SoundDeviceTrack(self)]

    def get_tracks(self) -> list[SoundDeviceTrack]:
        return list(self._tracks)

    def add_listener(self, listener: Callable[[np.ndarray], None]) -> None:
        self._listeners.append(listener)

    def remove_listener(self, listener: Callable[[np.ndarray], None]) -> None:
        if listener in self._listeners:
            self._listeners.remove(listener)

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        self._listeners.clear()
        self._input.stop()
        self._input.close()

    def _callback(self, indata: np.ndarray, frames: int, time_info: Any, status: Any) -> None:
        # PortAudio thread: copy the block and hop onto the loop thread.
        block = np.array(indata[:, 0], dtype=np.float32, copy=True)
        try:
            self._loop.call_soon_threadsafe(self._dispatch, block)
        except RuntimeError:
            pass

    def _dispatch(self, block: np.ndarray) -> None:
        for listener in list(self._listeners):
            listener(block)


class SoundDeviceMicrophone:
    """Opens a fresh input stream per request."""

    def __init__(self, *, logger: logging.Logger | None = None) -> None:
        self._sd = _import_sounddevice()
        self._logger = logger or logging.getLogger("spanish_tutor.audio.backends.sounddevice")

    async def request_stream(self, constraints: AudioConstraints) -> SoundDeviceStream:
        loop = asyncio.get_running_loop()
        try:
            return await asyncio.to_thread(SoundDeviceStream, self._sd, constraints, loop)
        except self._sd.PortAudioError as exc:
            message = str(exc)
            if "permission" in message.lower() or "not authorized" in message.lower():
                raise MicrophonePermissionError(message) from exc
            raise CaptureError(f"Could not open microphone: {message}") from exc


class SoundDevicePcmGraph:
    """Delivers microphone blocks from a :class:`SoundDeviceStream`."""

    def __init__(self, stream: SoundDeviceStream) -> None:
        self._stream = stream
        self._listener: Callable[[np.ndarray], None] | None = None

    def start(self, on_samples: Callable[[np.ndarray], None]) -> None:
        self._listener = on_samples
        self._stream.add_listener(on_samples)

    def disconnect(self) -> None:
        if self._listener is not None:
            self._stream.remove_listener(self._listener)
            self._listener = None


class SoundDevicePcmGraphFactory:
    """Builds PCM graphs and resets the PortAudio device context."""

    def __init__(self, *, logger: logging.Logger | None = None) -> None:
        self._sd = _import_sounddevice()
        self._logger = logger or logging.getLogger("spanish_tutor.audio.backends.sounddevice")

    def create(self, stream: SoundDeviceStream, sample_rate: int) -> SoundDevicePcmGraph:
        if stream.sample_rate != sample_rate:
            raise CaptureError(f"Stream runs at {stream.sample_rate} Hz, graph expects {sample_rate} Hz")
        return SoundDevicePcmGraph(stream)

    def reset(self) -> None:
        """Stop any module-level stream and re-query the default input device."""
        self._sd.stop()
        try:
            device = self._sd.query_devices(kind="input")
        except (self._sd.PortAudioError, ValueError) as exc:
            raise CaptureError(f"No input device after reset: {exc}") from exc
        self._logger.info("portaudio_context_reset", extra={"device": device.get("name")})
