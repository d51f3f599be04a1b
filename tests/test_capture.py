from __future__ import annotations

import asyncio

import pytest

from fakes import FakeClock, FakeEncoderFactory, FakeGraphFactory, FakeMicrophone, settle
from spanish_tutor.audio.capture import (
    CaptureConfig,
    CaptureController,
    CaptureMode,
    ContainerCaptureSession,
    EncoderModeTracker,
    WavCaptureSession,
)
from spanish_tutor.audio.wav import WAV_HEADER_SIZE
from spanish_tutor.errors import CaptureError, EncoderError, MicrophonePermissionError


def _controller(
    *,
    microphone: FakeMicrophone | None = None,
    encoders: FakeEncoderFactory | None = None,
    graphs: FakeGraphFactory | None = None,
    tracker: EncoderModeTracker | None = None,
    clock: FakeClock | None = None,
) -> CaptureController:
    return CaptureController(
        microphone or FakeMicrophone(),
        graphs or FakeGraphFactory(),
        encoders if encoders is not None else FakeEncoderFactory(),
        config=CaptureConfig(wav_drain_seconds=0),
        mode_tracker=tracker or EncoderModeTracker(),
        clock=clock or FakeClock(),
    )


def test_container_preference_ladder() -> None:
    assert _controller().select_mime_type() == "audio/mp4"
    assert _controller(encoders=FakeEncoderFactory(("audio/ogg;codecs=opus",))).select_mime_type() == (
        "audio/ogg;codecs=opus"
    )
    assert (
        _controller(encoders=FakeEncoderFactory(("audio/webm;codecs=opus", "audio/ogg;codecs=opus"))).select_mime_type()
        == "audio/webm;codecs=opus"
    )
    assert _controller(encoders=FakeEncoderFactory(())).select_mime_type() is None


def test_container_capture_produces_named_upload() -> None:
    async def _run() -> None:
        clock = FakeClock()
        microphone = FakeMicrophone()
        controller = _controller(microphone=microphone, clock=clock)

        session = await controller.begin_capture()
        assert isinstance(session, ContainerCaptureSession)
        clock.advance(1.5)
        audio = await controller.end_capture()

        assert audio is not None
        assert audio.mime_type == "audio/mp4"
        assert audio.filename == "audio.mp4"
        assert audio.duration_seconds == pytest.approx(1.5)
        assert microphone.streams[0].stopped
        assert controller.active is False

    asyncio.run(_run())


def test_wav_capture_when_no_container_is_supported() -> None:
    async def _run() -> None:
        clock = FakeClock()
        graphs = FakeGraphFactory()
        controller = _controller(encoders=FakeEncoderFactory(()), graphs=graphs, clock=clock)

        session = await controller.begin_capture()
        assert isinstance(session, WavCaptureSession)
        clock.advance(1.0)
        audio = await controller.end_capture()

        assert audio is not None and audio.is_wav
        assert audio.mime_type == "audio/wav"
        assert audio.filename == "audio.wav"
        assert len(audio.data) == WAV_HEADER_SIZE + 2 * graphs.samples.size
        assert graphs.graphs[0].connected is False

    asyncio.run(_run())


def test_short_hold_is_discarded_without_upload() -> None:
    async def _run() -> None:
        clock = FakeClock()
        encoders = FakeEncoderFactory()
        microphone = FakeMicrophone()
        controller = _controller(microphone=microphone, encoders=encoders, clock=clock)

        await controller.begin_capture()
        clock.advance(0.3)
        audio = await controller.end_capture()

        assert audio is None
        assert encoders.encoders[0].cancelled is True
        assert encoders.encoders[0].stopped is False
        assert microphone.streams[0].stopped

    asyncio.run(_run())


def test_stream_resolving_after_cancel_is_stopped_immediately() -> None:
    async def _run() -> None:
        microphone = FakeMicrophone()
        microphone.gate = asyncio.Event()
        controller = _controller(microphone=microphone)

        pending = asyncio.create_task(controller.begin_capture())
        await settle()
        controller.cancel()
        microphone.gate.set()
        session = await pending

        assert session is None
        assert controller.active is False
        assert microphone.streams[0].stopped

    asyncio.run(_run())


def test_release_before_stream_resolves_makes_acquisition_stale() -> None:
    async def _run() -> None:
        microphone = FakeMicrophone()
        microphone.gate = asyncio.Event()
        controller = _controller(microphone=microphone)

        pending = asyncio.create_task(controller.begin_capture())
        await settle()
        assert await controller.end_capture() is None
        microphone.gate.set()

        assert await pending is None
        assert microphone.streams[0].stopped

    asyncio.run(_run())


def test_permission_denial_propagates() -> None:
    async def _run() -> None:
        controller = _controller(microphone=FakeMicrophone(error=MicrophonePermissionError("denied")))
        with pytest.raises(MicrophonePermissionError):
            await controller.begin_capture()
        assert controller.active is False

    asyncio.run(_run())


def test_encoder_start_failure_tears_down_and_counts_toward_wav() -> None:
    async def _run() -> None:
        microphone = FakeMicrophone()
        tracker = EncoderModeTracker(failure_threshold=2)
        controller = _controller(
            microphone=microphone,
            encoders=FakeEncoderFactory(fail_start=True),
            tracker=tracker,
        )

        for _ in range(2):
            with pytest.raises(EncoderError):
                await controller.begin_capture()

        assert all(stream.stopped for stream in microphone.streams)
        assert tracker.mode is CaptureMode.WAV
        assert isinstance(await controller.begin_capture(), WavCaptureSession)

    asyncio.run(_run())


def test_encoder_flush_failure_still_releases_stream() -> None:
    async def _run() -> None:
        clock = FakeClock()
        microphone = FakeMicrophone()
        tracker = EncoderModeTracker()
        controller = _controller(
            microphone=microphone,
            encoders=FakeEncoderFactory(fail_stop=True),
            tracker=tracker,
            clock=clock,
        )

        await controller.begin_capture()
        clock.advance(2)
        with pytest.raises(EncoderError):
            await controller.end_capture()

        assert microphone.streams[0].stopped
        assert tracker.consecutive_failures == 1
        assert controller.active is False

    asyncio.run(_run())


def test_second_capture_while_live_is_rejected() -> None:
    async def _run() -> None:
        controller = _controller()
        await controller.begin_capture()
        with pytest.raises(CaptureError):
            await controller.begin_capture()
        controller.cancel()

    asyncio.run(_run())


def test_mode_tracker_switches_both_ways() -> None:
    tracker = EncoderModeTracker(failure_threshold=2, success_threshold=3)

    tracker.record_failure()
    tracker.record_success()
    tracker.record_failure()
    assert tracker.mode is CaptureMode.CONTAINER

    tracker.record_failure()
    assert tracker.mode is CaptureMode.WAV

    tracker.record_success(wav=True)
    tracker.record_success(wav=True)
    tracker.record_failure(wav=True)
    tracker.record_success(wav=True)
    tracker.record_success(wav=True)
    assert tracker.mode is CaptureMode.WAV

    tracker.record_success(wav=True)
    assert tracker.mode is CaptureMode.CONTAINER
    assert tracker.consecutive_successes == 0
    assert tracker.consecutive_failures == 0
