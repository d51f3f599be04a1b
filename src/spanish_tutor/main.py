"""CLI startup entrypoint for the Spanish tutor."""

from __future__ import annotations

import asyncio
from pathlib import Path
from typing import Callable

import typer
from rich import print
from rich.console import Console

from spanish_tutor.audio.cache import AudioCache
from spanish_tutor.audio.capture import CaptureConfig, CaptureController, EncoderModeTracker
from spanish_tutor.audio.interfaces import AudioOutput, SpeechSynthesizer
from spanish_tutor.audio.playback import PlaybackDriver
from spanish_tutor.client import TutorApiClient
from spanish_tutor.config import settings
from spanish_tutor.coordinator import LifecycleCoordinator
from spanish_tutor.errors import TutorError
from spanish_tutor.models import AssistantTurn, AudioResource, CapturedAudio, UserTurn, mime_for_filename
from spanish_tutor.permissions import MicrophonePermission
from spanish_tutor.state_store import JsonStateStore
from spanish_tutor.telemetry import configure_logging

app = typer.Typer(help="Spanish tutor push-to-talk client")
console = Console()

_CHAT_HELP = "Enter: hold/release mic · t <id>: tap bubble · x: cancel · r: resume · h/v: hide/show · c: clear · q: quit"


def _build_client() -> TutorApiClient:
    return TutorApiClient(
        settings.api_base,
        stt_path=settings.stt_path,
        chat_path=settings.chat_path,
        tts_path=settings.tts_path,
        translate_path=settings.translate_path,
        timeout_seconds=settings.request_timeout_seconds,
        stt_max_attempts=settings.stt_max_attempts,
        stt_backoff_seconds=settings.stt_backoff_seconds,
    )


def _build_speech() -> tuple[SpeechSynthesizer | None, Callable[[], AudioOutput]]:
    """Pick relay TTS with ffplay or local pyttsx3 speech; ``None`` synthesizer means the relay."""
    if settings.use_server_tts:
        from spanish_tutor.audio.backends.ffmpeg import FfplayAudioOutput

        return None, FfplayAudioOutput

    from spanish_tutor.audio.backends.pyttsx3_output import LocalSpeechSynthesizer, Pyttsx3AudioOutput

    def _output() -> Pyttsx3AudioOutput:
        return Pyttsx3AudioOutput(voice_id=settings.local_voice_id, rate=settings.local_speech_rate)

    return LocalSpeechSynthesizer(), _output


def _build_coordinator(client: TutorApiClient) -> LifecycleCoordinator:
    from spanish_tutor.audio.backends.ffmpeg import FfmpegEncoderFactory
    from spanish_tutor.audio.backends.sounddevice_input import SoundDeviceMicrophone, SoundDevicePcmGraphFactory

    synthesizer, output_factory = _build_speech()
    microphone = SoundDeviceMicrophone()
    store = JsonStateStore(settings.state_file)
    capture_config = CaptureConfig(
        sample_rate=settings.sample_rate,
        min_hold_seconds=settings.min_hold_seconds,
        wav_drain_seconds=settings.wav_drain_seconds,
    )
    capture = CaptureController(
        microphone,
        SoundDevicePcmGraphFactory(),
        FfmpegEncoderFactory(),
        config=capture_config,
        mode_tracker=EncoderModeTracker(
            failure_threshold=settings.mode_switch_failures,
            success_threshold=settings.mode_switch_successes,
        ),
    )
    cache = AudioCache(capacity=settings.cache_capacity)
    playback = PlaybackDriver(
        output_factory,
        cache,
        inter_item_pause=settings.inter_item_pause_seconds,
        rotation_interval=settings.output_rotation_interval,
    )
    return LifecycleCoordinator(
        client=client,
        capture=capture,
        playback=playback,
        cache=cache,
        permission=MicrophonePermission(microphone, store, constraints=capture_config.constraints),
        synthesizer=synthesizer,
        store=store,
    )


def _render_conversation(coordinator: LifecycleCoordinator) -> None:
    conversation = coordinator.conversation
    for index in range(len(conversation.turns)):
        turn = conversation.turns[index]
        for segment in conversation.segments_for(index):
            style = "bold blue" if isinstance(turn, UserTurn) else "green"
            label = "Corrección" if segment.message_id.endswith("-correction") else ""
            console.print(f"[dim]{segment.message_id}[/dim] [{style}]{label + ': ' if label else ''}{segment.text}[/{style}]")
            if conversation.is_revealed(segment.message_id) and conversation.translation(segment.message_id):
                console.print(f"    [italic dim]💬 {conversation.translation(segment.message_id)}[/italic dim]")


def _render_status(coordinator: LifecycleCoordinator) -> None:
    if coordinator.transcript:
        console.print(f"You said: [bold]{coordinator.transcript}[/bold]")
    if coordinator.error:
        console.print(f"[red]{coordinator.error}[/red]")
    console.print(f"[dim]{coordinator.status}[/dim]")


@app.command()
def start() -> None:
    """Show runtime configuration."""
    print(
        {
            "app_name": settings.app_name,
            "api_base": settings.api_base,
            "state_file": settings.state_file,
            "min_hold_seconds": settings.min_hold_seconds,
            "cache_capacity": settings.cache_capacity,
            "mode_switch": [settings.mode_switch_failures, settings.mode_switch_successes],
        }
    )


@app.command()
def chat() -> None:
    """Run an interactive push-to-talk conversation with the tutor."""
    configure_logging(settings.log_level)

    async def _run() -> None:
        async with _build_client() as client:
            try:
                coordinator = _build_coordinator(client)
            except RuntimeError as exc:
                print({"error": str(exc)})
                raise typer.Exit(code=1)

            console.print(f"[bold]🇲🇽 Práctica de Español[/bold]  [dim]{_CHAT_HELP}[/dim]")
            _render_conversation(coordinator)
            try:
                await _chat_loop(coordinator)
            finally:
                await coordinator.close()

    asyncio.run(_run())


async def _chat_loop(coordinator: LifecycleCoordinator) -> None:
    while True:
        _render_status(coordinator)
        command = (await asyncio.to_thread(input, "> ")).strip()

        if command in ("q", "quit"):
            return
        if command == "c":
            coordinator.reset_conversation()
            _render_conversation(coordinator)
        elif command == "r":
            await coordinator.resume()
        elif command == "h":
            coordinator.on_hidden()
        elif command == "v":
            coordinator.on_visible()
        elif command.startswith("t "):
            result = await coordinator.tap_bubble(command[2:].strip())
            print({"bubble": result.message_id, "translation": result.translation, "played": result.audio_played})
        elif command == "x":
            coordinator.cancel()
        elif not command:
            if not await coordinator.press():
                continue
            await asyncio.to_thread(input, "Recording... press Enter to send ")
            task = await coordinator.release()
            if task is not None:
                await asyncio.gather(task, return_exceptions=True)
                _render_conversation(coordinator)


@app.command()
def transcribe(audio_file: Path = typer.Argument(..., exists=True, dir_okay=False)) -> None:
    """Send an audio file to the transcription endpoint."""
    mime_type = mime_for_filename(audio_file.name)
    audio = CapturedAudio(
        data=audio_file.read_bytes(),
        mime_type=mime_type,
        duration_seconds=0.0,
        is_wav=mime_type == "audio/wav",
    )

    async def _run() -> str:
        async with _build_client() as client:
            return await client.transcribe(audio)

    try:
        print({"text": asyncio.run(_run())})
    except TutorError as exc:
        print({"error": exc.user_message, "detail": str(exc)})
        raise typer.Exit(code=1)


@app.command()
def say(text: str, reply: bool = typer.Option(False, help="Treat TEXT as the learner and speak the tutor's reply")) -> None:
    """Synthesize TEXT (or the tutor's reply to it) and play it."""
    synthesizer, output_factory = _build_speech()

    async def _run() -> dict:
        async with _build_client() as client:
            spoken = text
            if reply:
                answer = await client.chat([{"role": "user", "content": text}], translate=False)
                spoken = AssistantTurn(reply_es=answer.reply_es, correction_es=answer.correction_es).spoken_text()
            speech = await (synthesizer or client).synthesize(spoken)
            resource = AudioResource(speech.data, speech.mime_type)
            try:
                await output_factory().play(resource)
            finally:
                resource.release()
            return {"spoken": spoken, "bytes": len(speech.data)}

    try:
        print(asyncio.run(_run()))
    except TutorError as exc:
        print({"error": exc.user_message, "detail": str(exc)})
        raise typer.Exit(code=1)
    except RuntimeError as exc:
        print({"error": str(exc)})
        raise typer.Exit(code=1)


if __name__ == "__main__":
    app()
