"""Microphone capture sessions and encoder negotiation.

One press-and-hold gesture produces at most one :class:`CapturedAudio`. The
controller hands out monotonically increasing acquisition tokens so that a
stream resolving after a newer capture (or a cancel) is torn down without
recording. Two capture paths exist behind the same session interface:

* a container encoder (MP4 first, WebM/Opus and Ogg/Opus as fallbacks), and
* a raw PCM graph written out as 16 kHz mono WAV.

The WAV path is used when no container is supported, or after repeated decode
failures on the container path, and is retried back to the container path
after a run of successful WAV transcriptions.
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass
from enum import Enum
from typing import Callable

from spanish_tutor.audio.interfaces import (
    ContainerEncoder,
    EncoderFactory,
    MediaStream,
    MicrophoneProvider,
    PcmGraph,
    PcmGraphFactory,
)
from spanish_tutor.audio.wav import WAV_MIME_TYPE, PcmAccumulator, encode_wav
from spanish_tutor.errors import CaptureError, EncoderError, MicrophonePermissionError
from spanish_tutor.models import AudioConstraints, CapturedAudio

CONTAINER_PREFERENCES = ("audio/mp4", "audio/webm;codecs=opus", "audio/ogg;codecs=opus")

_logger = logging.getLogger("spanish_tutor.audio.capture")


class CaptureMode(str, Enum):
    """Which capture path the next session uses."""

    CONTAINER = "container"
    WAV = "wav"


@dataclass(slots=True)
class CaptureConfig:
    sample_rate: int = 16_000
    min_hold_seconds: float = 0.8
    wav_drain_seconds: float = 0.25
    container_preferences: tuple[str, ...] = CONTAINER_PREFERENCES

    @property
    def constraints(self) -> AudioConstraints:
        return AudioConstraints(sample_rate=self.sample_rate)


class EncoderModeTracker:
    """Switches between container and WAV capture based on consecutive outcomes."""

    def __init__(
        self,
        failure_threshold: int = 2,
        success_threshold: int = 3,
        *,
        logger: logging.Logger | None = None,
    ) -> None:
        self._failure_threshold = failure_threshold
        self._success_threshold = success_threshold
        self._logger = logger or _logger
        self._mode = CaptureMode.CONTAINER
        self._consecutive_failures = 0
        self._consecutive_successes = 0

    @property
    def mode(self) -> CaptureMode:
        return self._mode

    @property
    def consecutive_failures(self) -> int:
        return self._consecutive_failures

    @property
    def consecutive_successes(self) -> int:
        return self._consecutive_successes

    def record_failure(self, *, wav: bool = False) -> None:
        """Count a decode or encoder failure for audio captured on either path."""
        if wav:
            self._consecutive_successes = 0
            return
        self._consecutive_failures += 1
        if self._mode is CaptureMode.CONTAINER and self._consecutive_failures >= self._failure_threshold:
            self._switch(CaptureMode.WAV, reason="consecutive_container_failures")

    def record_success(self, *, wav: bool = False) -> None:
        if not wav:
            self._consecutive_failures = 0
            return
        self._consecutive_successes += 1
        if self._mode is CaptureMode.WAV and self._consecutive_successes >= self._success_threshold:
            self._switch(CaptureMode.CONTAINER, reason="retry_preferred_container")

    def reset(self) -> None:
        self._consecutive_failures = 0
        self._consecutive_successes = 0

    def _switch(self, mode: CaptureMode, *, reason: str) -> None:
        self._logger.info("capture_mode_switched", extra={"from": self._mode.value, "to": mode.value, "reason": reason})
        self._mode = mode
        self.reset()


def stop_stream(stream: MediaStream, logger: logging.Logger | None = None) -> None:
    """Stop every track of ``stream``, continuing past tracks that fail to stop."""
    log = logger or _logger
    try:
        tracks = list(stream.get_tracks())
    except Exception:  # noqa: BLE001
        log.exception("capture_tracks_unavailable")
        return
    for track in tracks:
        try:
            track.stop()
        except Exception:  # noqa: BLE001
            log.exception("capture_track_stop_failed")


class CaptureSession:
    """One recording attempt; owns its stream exclusively until torn down."""

    is_wav = False

    def __init__(self, stream: MediaStream, *, token: int, started_at: float, logger: logging.Logger) -> None:
        self.stream = stream
        self.token = token
        self.started_at = started_at
        self._logger = logger
        self._stream_stopped = False

    @property
    def mime_type(self) -> str:
        raise NotImplementedError

    @property
    def stream_stopped(self) -> bool:
        return self._stream_stopped

    def begin(self) -> None:
        raise NotImplementedError

    async def finish(self, duration_seconds: float) -> CapturedAudio:
        raise NotImplementedError

    def abort(self) -> None:
        self._release_stream()

    def _release_stream(self) -> None:
        if self._stream_stopped:
            return
        self._stream_stopped = True
        stop_stream(self.stream, self._logger)


class ContainerCaptureSession(CaptureSession):
    """Records through a container encoder such as MP4/AAC or WebM/Opus."""

    def __init__(
        self,
        stream: MediaStream,
        encoder_factory: EncoderFactory,
        mime_type: str,
        *,
        token: int,
        started_at: float,
        logger: logging.Logger,
    ) -> None:
        super().__init__(stream, token=token, started_at=started_at, logger=logger)
        self._encoder_factory = encoder_factory
        self._requested_mime_type = mime_type
        self._encoder: ContainerEncoder | None = None
        self._chunks: list[bytes] = []

    @property
    def mime_type(self) -> str:
        if self._encoder is not None and self._encoder.mime_type:
            return self._encoder.mime_type
        return self._requested_mime_type

    def begin(self) -> None:
        try:
            self._encoder = self._encoder_factory.create(self.stream, self._requested_mime_type, self._on_data)
            self._encoder.start()
        except Exception as exc:  # noqa: BLE001
            raise EncoderError(f"Encoder for {self._requested_mime_type} failed to start: {exc}") from exc

    async def finish(self, duration_seconds: float) -> CapturedAudio:
        try:
            if self._encoder is None:
                raise EncoderError("Encoder was never started")
            try:
                await self._encoder.stop()
            except EncoderError:
                raise
            except Exception as exc:  # noqa: BLE001
                raise EncoderError(f"Encoder failed to flush: {exc}") from exc
            return CapturedAudio(
                data=b"".join(self._chunks),
                mime_type=self.mime_type,
                duration_seconds=duration_seconds,
            )
        finally:
            self._release_stream()

    def abort(self) -> None:
        if self._encoder is not None:
            try:
                self._encoder.cancel()
            except Exception:  # noqa: BLE001
                self._logger.exception("capture_encoder_cancel_failed")
        self._chunks.clear()
        super().abort()

    def _on_data(self, chunk: bytes) -> None:
        if chunk:
            self._chunks.append(chunk)


class WavCaptureSession(CaptureSession):
    """Records raw PCM through a processing graph and writes a WAV file."""

    is_wav = True

    def __init__(
        self,
        stream: MediaStream,
        graph_factory: PcmGraphFactory,
        *,
        sample_rate: int,
        drain_seconds: float,
        token: int,
        started_at: float,
        logger: logging.Logger,
    ) -> None:
        super().__init__(stream, token=token, started_at=started_at, logger=logger)
        self._graph_factory = graph_factory
        self._sample_rate = sample_rate
        self._drain_seconds = drain_seconds
        self._graph: PcmGraph | None = None
        self._pcm = PcmAccumulator()

    @property
    def mime_type(self) -> str:
        return WAV_MIME_TYPE

    @property
    def sample_count(self) -> int:
        return self._pcm.sample_count

    def begin(self) -> None:
        try:
            self._graph = self._graph_factory.create(self.stream, self._sample_rate)
            self._graph.start(self._pcm.append)
        except Exception as exc:  # noqa: BLE001
            raise CaptureError(f"PCM graph failed to start: {exc}") from exc

    async def finish(self, duration_seconds: float) -> CapturedAudio:
        try:
            # The graph can lag a few hundred milliseconds behind the stop signal.
            if self._drain_seconds > 0:
                await asyncio.sleep(self._drain_seconds)
            self._disconnect_graph()
            data = encode_wav(self._pcm.to_pcm(), sample_rate=self._sample_rate)
            return CapturedAudio(data=data, mime_type=WAV_MIME_TYPE, duration_seconds=duration_seconds, is_wav=True)
        finally:
            self._release_stream()

    def abort(self) -> None:
        self._disconnect_graph()
        self._pcm.clear()
        super().abort()

    def _disconnect_graph(self) -> None:
        graph, self._graph = self._graph, None
        if graph is None:
            return
        try:
            graph.disconnect()
        except Exception:  # noqa: BLE001
            self._logger.exception("capture_graph_disconnect_failed")


class CaptureController:
    """Owns the single live capture session and the acquisition token."""

    def __init__(
        self,
        microphone: MicrophoneProvider,
        graph_factory: PcmGraphFactory,
        encoder_factory: EncoderFactory | None = None,
        *,
        config: CaptureConfig | None = None,
        mode_tracker: EncoderModeTracker | None = None,
        clock: Callable[[], float] = time.monotonic,
        logger: logging.Logger | None = None,
    ) -> None:
        self._microphone = microphone
        self._graph_factory = graph_factory
        self._encoder_factory = encoder_factory
        self._config = config or CaptureConfig()
        self._logger = logger or _logger
        self._mode_tracker = mode_tracker or EncoderModeTracker(logger=self._logger)
        self._clock = clock
        self._token = 0
        self._session: CaptureSession | None = None

    @property
    def config(self) -> CaptureConfig:
        return self._config

    @property
    def mode_tracker(self) -> EncoderModeTracker:
        return self._mode_tracker

    @property
    def session(self) -> CaptureSession | None:
        return self._session

    @property
    def active(self) -> bool:
        return self._session is not None

    @property
    def token(self) -> int:
        return self._token

    def select_mime_type(self) -> str | None:
        """Pick the container for the next session, or ``None`` for WAV."""
        if self._mode_tracker.mode is CaptureMode.WAV or self._encoder_factory is None:
            return None
        for mime_type in self._config.container_preferences:
            try:
                if self._encoder_factory.is_type_supported(mime_type):
                    return mime_type
            except Exception:  # noqa: BLE001
                self._logger.exception("capture_type_probe_failed", extra={"mime_type": mime_type})
        return None

    async def begin_capture(self) -> CaptureSession | None:
        """Acquire a stream and start recording; ``None`` if superseded meanwhile."""
        if self._session is not None:
            raise CaptureError("A capture session is already live")

        self._token += 1
        token = self._token
        try:
            stream = await self._microphone.request_stream(self._config.constraints)
        except (MicrophonePermissionError, CaptureError):
            raise
        except Exception as exc:  # noqa: BLE001
            raise CaptureError(f"Microphone stream unavailable: {exc}") from exc

        if token != self._token:
            stop_stream(stream, self._logger)
            self._logger.info("capture_stale_stream_discarded", extra={"token": token, "current_token": self._token})
            return None

        session = self._open_session(stream, token)
        try:
            session.begin()
        except EncoderError:
            session.abort()
            self._mode_tracker.record_failure()
            raise
        except Exception:
            session.abort()
            raise

        self._session = session
        self._logger.info(
            "capture_started",
            extra={"token": token, "mime_type": session.mime_type, "wav": session.is_wav},
        )
        return session

    async def end_capture(self) -> CapturedAudio | None:
        """Finalize the live session; ``None`` when there is nothing to send."""
        session = self._session
        if session is None:
            # Released before the stream resolved: make the pending acquisition stale.
            self._token += 1
            return None
        self._session = None

        elapsed = self._clock() - session.started_at
        if elapsed < self._config.min_hold_seconds:
            session.abort()
            self._logger.info("capture_too_short", extra={"token": session.token, "elapsed": round(elapsed, 3)})
            return None

        try:
            audio = await session.finish(elapsed)
        except EncoderError:
            self._mode_tracker.record_failure()
            raise
        except CaptureError:
            raise
        except Exception as exc:  # noqa: BLE001
            raise CaptureError(f"Recording could not be finalized: {exc}") from exc

        self._logger.info(
            "capture_finished",
            extra={"token": session.token, "bytes": len(audio.data), "mime_type": audio.mime_type},
        )
        return audio

    def cancel(self) -> None:
        """Invalidate any pending acquisition and tear down the live session."""
        self._token += 1
        session, self._session = self._session, None
        if session is not None:
            session.abort()
            self._logger.info("capture_cancelled", extra={"token": session.token})

    def reset_processing_context(self) -> None:
        self._graph_factory.reset()

    def _open_session(self, stream: MediaStream, token: int) -> CaptureSession:
        mime_type = self.select_mime_type()
        started_at = self._clock()
        if mime_type is None or self._encoder_factory is None:
            return WavCaptureSession(
                stream,
                self._graph_factory,
                sample_rate=self._config.sample_rate,
                drain_seconds=self._config.wav_drain_seconds,
                token=token,
                started_at=started_at,
                logger=self._logger,
            )
        return ContainerCaptureSession(
            stream,
            self._encoder_factory,
            mime_type,
            token=token,
            started_at=started_at,
            logger=self._logger,
        )
