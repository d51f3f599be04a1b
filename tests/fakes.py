"""In-memory stand-ins for microphone, encoder, PCM graph, speaker and relay."""

from __future__ import annotations

import asyncio
import json
from dataclasses import dataclass, field
from typing import Callable

import httpx
import numpy as np

from spanish_tutor.audio.cache import AudioCache
from spanish_tutor.audio.capture import CaptureConfig, CaptureController, EncoderModeTracker
from spanish_tutor.audio.interfaces import SpeechSynthesizer
from spanish_tutor.audio.playback import PlaybackDriver
from spanish_tutor.client import TutorApiClient
from spanish_tutor.coordinator import LifecycleCoordinator
from spanish_tutor.errors import EncoderError, PlaybackError
from spanish_tutor.models import AudioConstraints, AudioResource
from spanish_tutor.permissions import MicrophonePermission
from spanish_tutor.state_store import MIC_PERMISSION_GRANTED, InMemoryStateStore


class FakeClock:
    def __init__(self, now: float = 100.0) -> None:
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class FakeTrack:
    def __init__(self) -> None:
        self.stop_calls = 0

    @property
    def stopped(self) -> bool:
        return self.stop_calls > 0

    def stop(self) -> None:
        self.stop_calls += 1


class FakeStream:
    def __init__(self) -> None:
        self.tracks = [FakeTrack()]

    def get_tracks(self) -> list[FakeTrack]:
        return list(self.tracks)

    @property
    def stopped(self) -> bool:
        return all(track.stopped for track in self.tracks)


class FakeMicrophone:
    """Hands out streams; ``gate`` delays resolution, ``error`` fails requests."""

    def __init__(self, *, error: Exception | None = None) -> None:
        self.error = error
        self.gate: asyncio.Event | None = None
        self.streams: list[FakeStream] = []
        self.requested: list[AudioConstraints] = []

    async def request_stream(self, constraints: AudioConstraints) -> FakeStream:
        self.requested.append(constraints)
        if self.gate is not None:
            await self.gate.wait()
        if self.error is not None:
            raise self.error
        stream = FakeStream()
        self.streams.append(stream)
        return stream


class FakeEncoder:
    def __init__(self, mime_type: str, on_data: Callable[[bytes], None], payload: bytes, fail_stop: bool) -> None:
        self.mime_type = mime_type
        self._on_data = on_data
        self._payload = payload
        self._fail_stop = fail_stop
        self.started = False
        self.stopped = False
        self.cancelled = False

    def start(self) -> None:
        self.started = True

    async def stop(self) -> None:
        self.stopped = True
        if self._fail_stop:
            raise EncoderError("muxer crashed")
        self._on_data(self._payload)

    def cancel(self) -> None:
        self.cancelled = True


class FakeEncoderFactory:
    def __init__(
        self,
        supported: tuple[str, ...] = ("audio/mp4",),
        *,
        payload: bytes = b"\x00\x00\x00\x18ftypmp42",
        fail_start: bool = False,
        fail_stop: bool = False,
    ) -> None:
        self.supported = supported
        self.payload = payload
        self.fail_start = fail_start
        self.fail_stop = fail_stop
        self.encoders: list[FakeEncoder] = []

    def is_type_supported(self, mime_type: str) -> bool:
        return mime_type in self.supported

    def create(self, stream: FakeStream, mime_type: str, on_data: Callable[[bytes], None]) -> FakeEncoder:
        if self.fail_start:
            raise RuntimeError(f"{mime_type} rejected")
        encoder = FakeEncoder(mime_type, on_data, self.payload, self.fail_stop)
        self.encoders.append(encoder)
        return encoder


class FakeGraph:
    def __init__(self, samples: np.ndarray) -> None:
        self._samples = samples
        self.connected = False

    def start(self, on_samples: Callable[[np.ndarray], None]) -> None:
        self.connected = True
        on_samples(self._samples)

    def disconnect(self) -> None:
        self.connected = False


class FakeGraphFactory:
    def __init__(self, samples: np.ndarray | None = None) -> None:
        self.samples = samples if samples is not None else np.linspace(-0.5, 0.5, 1600, dtype=np.float32)
        self.graphs: list[FakeGraph] = []
        self.resets = 0

    def create(self, stream: FakeStream, sample_rate: int) -> FakeGraph:
        graph = FakeGraph(self.samples)
        self.graphs.append(graph)
        return graph

    def reset(self) -> None:
        self.resets += 1


class FakeOutput:
    """Speaker double; ``hold`` keeps ``play`` pending until ``stop``."""

    def __init__(self, *, errors: list[Exception] | None = None, hold: bool = False) -> None:
        self.errors = list(errors or [])
        self.hold = hold
        self.played: list[str] = []
        self.stop_calls = 0
        self.primes = 0
        self.closed = False
        self._stopped = asyncio.Event()

    async def play(self, resource: AudioResource) -> None:
        if self.errors:
            raise self.errors.pop(0)
        if resource.released:
            raise PlaybackError(f"{resource.handle} was released before playback")
        self.played.append(resource.handle)
        if self.hold:
            self._stopped.clear()
            await self._stopped.wait()

    def stop(self) -> None:
        self.stop_calls += 1
        self._stopped.set()

    async def prime(self) -> None:
        self.primes += 1

    def close(self) -> None:
        self.closed = True


class FakeOutputFactory:
    """Creates outputs in order; ``planned`` outputs are handed out first."""

    def __init__(self, *planned: FakeOutput, hold: bool = False) -> None:
        self.planned = list(planned)
        self.hold = hold
        self.outputs: list[FakeOutput] = []

    def __call__(self) -> FakeOutput:
        output = self.planned.pop(0) if self.planned else FakeOutput(hold=self.hold)
        self.outputs.append(output)
        return output

    @property
    def played(self) -> list[str]:
        return [handle for output in self.outputs for handle in output.played]


@dataclass
class RelayStub:
    """Scripted relay endpoints served through ``httpx.MockTransport``."""

    transcript: str = "Hola, ¿cómo estás?"
    reply: dict = field(
        default_factory=lambda: {
            "reply_es": "¡Hola! ¿Cómo estás hoy?",
            "correction_es": "",
            "needs_correction": False,
            "translation_en": "reply: [Hello! How are you today?]",
        }
    )
    stt_responses: list[httpx.Response] = field(default_factory=list)
    stt_gate: asyncio.Event | None = None
    translation: str = "Hello"
    tts_fail: bool = False
    calls: dict[str, int] = field(default_factory=lambda: {"/stt": 0, "/chat": 0, "/tts": 0, "/api/translate": 0})
    requests: list[httpx.Request] = field(default_factory=list)

    async def __call__(self, request: httpx.Request) -> httpx.Response:
        path = request.url.path
        self.calls[path] = self.calls.get(path, 0) + 1
        self.requests.append(request)
        if path == "/stt":
            if self.stt_gate is not None:
                await self.stt_gate.wait()
            if self.stt_responses:
                return self.stt_responses.pop(0)
            return httpx.Response(200, json={"text": self.transcript})
        if path == "/chat":
            return httpx.Response(200, json=self.reply)
        if path == "/tts":
            if self.tts_fail:
                return httpx.Response(503, text="voice unavailable")
            body = json.loads(request.content)
            return httpx.Response(200, content=f"mp3:{body['text']}".encode(), headers={"content-type": "audio/mpeg"})
        if path == "/api/translate":
            return httpx.Response(200, json={"translation": self.translation})
        return httpx.Response(404)

    def json_bodies(self, path: str) -> list[dict]:
        return [json.loads(request.content) for request in self.requests if request.url.path == path]


def make_client(relay: RelayStub | Callable, **kwargs) -> TutorApiClient:
    kwargs.setdefault("stt_backoff_seconds", 0)
    return TutorApiClient("http://relay.test", transport=httpx.MockTransport(relay), **kwargs)


@dataclass
class Harness:
    coordinator: LifecycleCoordinator
    relay: RelayStub
    client: TutorApiClient
    microphone: FakeMicrophone
    encoders: FakeEncoderFactory
    graphs: FakeGraphFactory
    outputs: FakeOutputFactory
    cache: AudioCache
    playback: PlaybackDriver
    capture: CaptureController
    store: InMemoryStateStore
    clock: FakeClock

    async def record(self, seconds: float = 1.2) -> asyncio.Task | None:
        """Press, hold for ``seconds`` and release; returns the processing task."""
        assert await self.coordinator.press()
        self.clock.advance(seconds)
        return await self.coordinator.release()

    async def converse(self, seconds: float = 1.2) -> None:
        task = await self.record(seconds)
        assert task is not None
        await task


def make_harness(
    *,
    relay: RelayStub | None = None,
    granted: bool = True,
    hold: bool = False,
    encoders: FakeEncoderFactory | None = None,
    microphone: FakeMicrophone | None = None,
    store: InMemoryStateStore | None = None,
    stt_max_attempts: int = 1,
    synthesizer: SpeechSynthesizer | None = None,
) -> Harness:
    relay = relay or RelayStub()
    client = make_client(relay, stt_max_attempts=stt_max_attempts)
    microphone = microphone or FakeMicrophone()
    encoders = encoders or FakeEncoderFactory()
    graphs = FakeGraphFactory()
    outputs = FakeOutputFactory(hold=hold)
    clock = FakeClock()
    store = store or InMemoryStateStore({MIC_PERMISSION_GRANTED: granted})
    cache = AudioCache(capacity=20)
    playback = PlaybackDriver(outputs, cache, inter_item_pause=0)
    capture = CaptureController(
        microphone,
        graphs,
        encoders,
        config=CaptureConfig(wav_drain_seconds=0),
        mode_tracker=EncoderModeTracker(),
        clock=clock,
    )
    coordinator = LifecycleCoordinator(
        client=client,
        capture=capture,
        playback=playback,
        cache=cache,
        permission=MicrophonePermission(microphone, store),
        synthesizer=synthesizer,
        store=store,
    )
    return Harness(
        coordinator=coordinator,
        relay=relay,
        client=client,
        microphone=microphone,
        encoders=encoders,
        graphs=graphs,
        outputs=outputs,
        cache=cache,
        playback=playback,
        capture=capture,
        store=store,
        clock=clock,
    )


async def settle(rounds: int = 5) -> None:
    """Let scheduled tasks run a few steps."""
    for _ in range(rounds):
        await asyncio.sleep(0)
