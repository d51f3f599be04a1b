"""Container encoding with ``ffmpeg`` and speaker output with ``ffplay``."""

from __future__ import annotations

import asyncio
import logging
import shutil
from typing import Callable

import numpy as np

from spanish_tutor.audio.backends.sounddevice_input import SoundDeviceStream
from spanish_tutor.audio.wav import float_to_pcm16
from spanish_tutor.errors import EncoderError, PlaybackError
from spanish_tutor.models import AudioResource

# Output arguments per container; MP4 is fragmented so it can be written to a pipe.
CONTAINER_ARGS: dict[str, list[str]] = {
    "audio/mp4": ["-c:a", "aac", "-b:a", "64k", "-movflags", "frag_keyframe+empty_moov", "-f", "mp4"],
    "audio/webm": ["-c:a", "libopus", "-b:a", "32k", "-f", "webm"],
    "audio/ogg": ["-c:a", "libopus", "-b:a", "32k", "-f", "ogg"],
}


def _base_mime(mime_type: str) -> str:
    return mime_type.split(";", 1)[0].strip().lower()


class FfmpegContainerEncoder:
    """Buffers PCM while recording and encodes it into a container on stop."""

    def __init__(
        self,
        ffmpeg_path: str,
        stream: SoundDeviceStream,
        mime_type: str,
        on_data: Callable[[bytes], None],
        *,
        logger: logging.Logger,
    ) -> None:
        self.mime_type = mime_type
        self._ffmpeg_path = ffmpeg_path
        self._stream = stream
        self._on_data = on_data
        self._logger = logger
        self._blocks: list[bytes] = []
        self._recording = False

    def start(self) -> None:
        self._recording = True
        self._stream.add_listener(self._on_samples)

    async def stop(self) -> None:
        self._detach()
        pcm = b"".join(self._blocks)
        self._blocks.clear()
        if not pcm:
            return

        args = CONTAINER_ARGS[_base_mime(self.mime_type)]
        process = await asyncio.create_subprocess_exec(
            self._ffmpeg_path,
            "-hide_banner",
            "-loglevel",
            "error",
            "-f",
            "s16le",
            "-ar",
            str(self._stream.sample_rate),
            "-ac",
            "1",
            "-i",
            "pipe:0",
            *args,
            "pipe:1",
            stdin=asyncio.subprocess.PIPE,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )
        encoded, stderr = await process.communicate(pcm)
        if process.returncode != 0:
            raise EncoderError(
                f"ffmpeg exited {process.returncode}: {stderr.decode('utf-8', errors='ignore').strip()}"
            )
        self._on_data(encoded)

    def cancel(self) -> None:
        self._detach()
        self._blocks.clear()

    def _detach(self) -> None:
        if self._recording:
            self._recording = False
            self._stream.remove_listener(self._on_samples)

    def _on_samples(self, samples: np.ndarray) -> None:
        self._blocks.append(float_to_pcm16(samples).tobytes())


class FfmpegEncoderFactory:
    """Offers MP4, WebM and Ogg encoders when ``ffmpeg`` is on the PATH."""

    def __init__(self, ffmpeg_path: str = "ffmpeg", *, logger: logging.Logger | None = None) -> None:
        self._ffmpeg_path = ffmpeg_path
        self._logger = logger or logging.getLogger("spanish_tutor.audio.backends.ffmpeg")

    def is_type_supported(self, mime_type: str) -> bool:
        return _base_mime(mime_type) in CONTAINER_ARGS and shutil.which(self._ffmpeg_path) is not None

    def create(
        self, stream: SoundDeviceStream, mime_type: str, on_data: Callable[[bytes], None]
    ) -> FfmpegContainerEncoder:
        if not self.is_type_supported(mime_type):
            raise EncoderError(f"Unsupported container: {mime_type}")
        return FfmpegContainerEncoder(self._ffmpeg_path, stream, mime_type, on_data, logger=self._logger)


class FfplayAudioOutput:
    """Plays resources by piping them into an ``ffplay`` process."""

    def __init__(self, ffplay_path: str = "ffplay", *, logger: logging.Logger | None = None) -> None:
        self._ffplay_path = ffplay_path
        self._logger = logger or logging.getLogger("spanish_tutor.audio.backends.ffmpeg")
        self._process: asyncio.subprocess.Process | None = None
        self._stopped = False
        self._closed = False

    async def play(self, resource: AudioResource) -> None:
        if self._closed:
            raise PlaybackError("Audio output has been closed")
        self._stopped = False
        try:
            self._process = await asyncio.create_subprocess_exec(
                self._ffplay_path,
                "-nodisp",
                "-autoexit",
                "-loglevel",
                "error",
                "-i",
                "pipe:0",
                stdin=asyncio.subprocess.PIPE,
                stdout=asyncio.subprocess.DEVNULL,
                stderr=asyncio.subprocess.PIPE,
            )
        except FileNotFoundError as exc:
            raise PlaybackError(f"{self._ffplay_path} is not installed") from exc

        process = self._process
        if self._stopped:
            # stop() landed while the process was spawning.
            self._process = None
            try:
                process.terminate()
            except ProcessLookupError:
                pass
            await process.wait()
            return
        try:
            _, stderr = await process.communicate(resource.data)
        except (BrokenPipeError, ConnectionResetError):
            if self._stopped:
                return
            raise PlaybackError("ffplay closed its input early")
        finally:
            self._process = None

        if self._stopped:
            return
        if process.returncode != 0:
            raise PlaybackError(
                f"ffplay exited {process.returncode}: {stderr.decode('utf-8', errors='ignore').strip()}"
            )

    def stop(self) -> None:
        self._stopped = True
        process = self._process
        if process is None or process.returncode is not None:
            return
        try:
            process.terminate()
        except ProcessLookupError:
            pass

    async def prime(self) -> None:
        """Desktop playback has no gesture requirement."""

    def close(self) -> None:
        self.stop()
        self._closed = True
