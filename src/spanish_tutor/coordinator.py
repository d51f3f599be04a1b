"""Top-level arbiter of recording, processing and playback ownership.

At most one activity owns the audio subsystem at a time. Every processing
attempt is stamped with an operation id; a cancel, a new recording or a resume
advances the id so that late network responses are dropped on arrival instead
of reviving an abandoned operation.
"""

from __future__ import annotations

import asyncio
import logging
from enum import Enum
from typing import Callable

from spanish_tutor.audio.cache import AudioCache
from spanish_tutor.audio.capture import CaptureController
from spanish_tutor.audio.interfaces import SpeechSynthesizer
from spanish_tutor.audio.playback import PlaybackDriver
from spanish_tutor.client import TutorApiClient
from spanish_tutor.conversation import Conversation
from spanish_tutor.errors import AudioDecodeError, MicrophonePermissionError, TutorError
from spanish_tutor.models import AudioResource, BubbleTapResult, CapturedAudio, SpeechSegment
from spanish_tutor.permissions import MicrophonePermission
from spanish_tutor.state_store import NEEDS_RESUME, InMemoryStateStore, StateStore
from spanish_tutor.telemetry import LoggingTelemetry, Telemetry
from spanish_tutor.transcripts import is_spurious_transcript

NO_SPEECH_MESSAGE = "No speech detected. Try speaking louder or closer to the microphone."
NO_AUDIO_MESSAGE = "No audio was captured. Please try again."
PERMISSION_GRANTED_MESSAGE = "Microphone ready. Press and hold to speak."


class Activity(str, Enum):
    """Owners of the audio subsystem; exactly one value at any instant."""

    IDLE = "idle"
    RECORDING = "recording"
    PROCESSING = "processing"
    AUTO_PLAYING = "auto_playing"


class Visibility(str, Enum):
    """App visibility as seen by the coordinator."""

    READY = "ready"
    BACKGROUNDED = "backgrounded"
    NEEDS_RESUME = "needs_resume"


_ACTIVITY_STATUS = {
    Activity.IDLE: "Hold to speak in Spanish",
    Activity.RECORDING: "Recording... (release to send)",
    Activity.PROCESSING: "Processing...",
    Activity.AUTO_PLAYING: "Speaking...",
}
_RESUME_STATUS = "Tap resume to continue."


class LifecycleCoordinator:
    """Coordinates capture, relay requests and playback for one conversation."""

    def __init__(
        self,
        *,
        client: TutorApiClient,
        capture: CaptureController,
        playback: PlaybackDriver,
        cache: AudioCache,
        permission: MicrophonePermission,
        synthesizer: SpeechSynthesizer | None = None,
        conversation: Conversation | None = None,
        store: StateStore | None = None,
        telemetry: Telemetry | None = None,
        logger: logging.Logger | None = None,
    ) -> None:
        self._client = client
        self._synthesizer = synthesizer or client
        self._capture = capture
        self._playback = playback
        self._cache = cache
        self._permission = permission
        self._conversation = conversation or Conversation()
        self._store = store or InMemoryStateStore()
        self._logger = logger or logging.getLogger("spanish_tutor.coordinator")
        self._telemetry = telemetry or LoggingTelemetry(self._logger)

        self._activity = Activity.IDLE
        self._visibility = Visibility.NEEDS_RESUME if self._store.get_flag(NEEDS_RESUME) else Visibility.READY
        self._operation_id = 0
        self._processing_task: asyncio.Task[None] | None = None
        self._background_tasks: set[asyncio.Task[None]] = set()
        self._error: str | None = None
        self._transcript = ""

        self._playback.set_drained_callback(self._on_playback_drained)

    @property
    def activity(self) -> Activity:
        return self._activity

    @property
    def visibility(self) -> Visibility:
        return self._visibility

    @property
    def operation_id(self) -> int:
        return self._operation_id

    @property
    def conversation(self) -> Conversation:
        return self._conversation

    @property
    def transcript(self) -> str:
        return self._transcript

    @property
    def error(self) -> str | None:
        return self._error

    @property
    def status(self) -> str:
        if self._visibility is not Visibility.READY:
            return _RESUME_STATUS
        return _ACTIVITY_STATUS[self._activity]

    @property
    def processing_task(self) -> asyncio.Task[None] | None:
        return self._processing_task

    def snapshot(self) -> dict:
        return {
            "activity": self._activity.value,
            "visibility": self._visibility.value,
            "operation_id": self._operation_id,
            "status": self.status,
            "error": self._error,
            "needs_prime": self._playback.needs_prime,
        }

    async def press(self) -> bool:
        """Handle the start of a press-and-hold gesture; ``True`` once recording."""
        if self._visibility is not Visibility.READY:
            self._logger.info("gesture_refused", extra={"visibility": self._visibility.value})
            return False
        if self._activity is Activity.RECORDING:
            return False
        if not self._permission.granted:
            await self._request_permission()
            return False

        if self._activity is Activity.PROCESSING:
            self._abort_processing_task()
            self._set_activity(Activity.IDLE, "superseded_by_recording")

        # Recording always wins over playback.
        self._playback.pause_for_higher_priority("recording")
        if self._activity is Activity.AUTO_PLAYING:
            self._set_activity(Activity.IDLE, "preempted_by_recording")

        self._operation_id += 1
        operation_id = self._operation_id
        self._claim(Activity.RECORDING, "gesture_press")
        self._error = None

        try:
            await self._playback.prime_if_needed()
        except Exception:  # noqa: BLE001 - priming is retried on the next gesture.
            self._logger.exception("playback_prime_failed")

        try:
            session = await self._capture.begin_capture()
        except MicrophonePermissionError as exc:
            self._permission.revoke()
            self._fail(operation_id, exc)
            return False
        except TutorError as exc:
            self._fail(operation_id, exc)
            return False

        if session is None:
            return False
        if operation_id != self._operation_id or self._activity is not Activity.RECORDING:
            self._capture.cancel()
            return False
        return True

    async def release(self) -> asyncio.Task[None] | None:
        """Handle the end of the gesture; returns the processing task if one started."""
        if self._activity is not Activity.RECORDING:
            return None

        operation_id = self._operation_id
        try:
            audio = await self._capture.end_capture()
        except TutorError as exc:
            self._fail(operation_id, exc)
            return None

        if operation_id != self._operation_id or self._activity is not Activity.RECORDING:
            return None
        if audio is None:
            self._set_activity(Activity.IDLE, "capture_discarded")
            return None
        if not audio.data:
            self._error = NO_AUDIO_MESSAGE
            self._set_activity(Activity.IDLE, "capture_empty")
            return None

        self._set_activity(Activity.IDLE, "capture_finished")
        self._claim(Activity.PROCESSING, "capture_finished")
        self._operation_id += 1
        operation_id = self._operation_id
        task = asyncio.get_running_loop().create_task(
            self._process(audio, operation_id),
            name=f"tutor-operation-{operation_id}",
        )
        self._processing_task = task
        return task

    async def tap_bubble(self, message_id: str) -> BubbleTapResult:
        """Reveal a bubble's translation and speak it when nothing else owns audio."""
        generation = self._conversation.generation
        result = BubbleTapResult(message_id=message_id, translation=self._conversation.reveal(message_id))
        segment = self._conversation.segment(message_id)

        if segment is None:
            result.refused_reason = "unknown_message"
        elif self._visibility is not Visibility.READY:
            result.refused_reason = self._visibility.value
        elif self._activity is not Activity.IDLE:
            result.refused_reason = self._activity.value
        else:
            result.audio_played = await self._play_segment(segment)

        if result.refused_reason:
            self._logger.info("bubble_audio_suppressed", extra={"message_id": message_id, "reason": result.refused_reason})

        if result.translation is None and segment is not None:
            translation = await self._client.translate(segment.text)
            if translation and generation == self._conversation.generation:
                self._conversation.set_translation(message_id, translation)
                result.translation = translation
        return result

    def cancel(self, reason: str = "user_cancel") -> None:
        """Force everything back to idle; cancellation is never reported as an error."""
        previous = self._activity
        self._operation_id += 1
        try:
            self._run_teardown(
                [
                    ("abort_requests", self._abort_processing_task),
                    ("stop_capture", self._capture.cancel),
                    ("clear_playback", lambda: self._playback.pause_for_higher_priority(reason)),
                ]
            )
        finally:
            self._set_activity(Activity.IDLE, reason)
            self._error = None
        self._logger.info("operation_cancelled", extra={"reason": reason, "previous": previous.value})

    def on_hidden(self) -> None:
        """The app went to the background; audio contexts may be suspended."""
        if self._activity is Activity.RECORDING:
            self.cancel("backgrounded")
        self._visibility = Visibility.BACKGROUNDED
        self._store.set_flag(NEEDS_RESUME, True)
        self._telemetry.emit("visibility_changed", {"visibility": self._visibility.value})

    def on_visible(self) -> None:
        if self._visibility is Visibility.BACKGROUNDED or self._store.get_flag(NEEDS_RESUME):
            self._visibility = Visibility.NEEDS_RESUME
            self._telemetry.emit("visibility_changed", {"visibility": self._visibility.value})

    async def resume(self) -> bool:
        """User-triggered recovery from ``needs_resume``; rebuilds audio handles."""
        if self._visibility is Visibility.READY:
            return True
        if self._visibility is Visibility.BACKGROUNDED:
            return False

        self._operation_id += 1
        try:
            self._run_teardown(
                [
                    ("clear_playback", lambda: self._playback.pause_for_higher_priority("resume")),
                    ("abort_requests", self._abort_processing_task),
                    ("stop_capture", self._capture.cancel),
                    ("recreate_output", self._playback.recreate_output),
                    ("recreate_processing_context", self._capture.reset_processing_context),
                    ("reset_failure_counters", self._capture.mode_tracker.reset),
                    ("require_prime", self._playback.require_prime),
                ]
            )
        finally:
            self._set_activity(Activity.IDLE, "resume")
            self._visibility = Visibility.READY
            self._store.set_flag(NEEDS_RESUME, False)
            self._error = None
        self._telemetry.emit("visibility_changed", {"visibility": self._visibility.value})
        return True

    def reset_conversation(self) -> None:
        self.cancel("conversation_reset")
        self._run_teardown(
            [
                ("clear_cache", self._cache.clear),
                ("reset_conversation", self._conversation.reset),
            ]
        )
        self._transcript = ""

    async def close(self) -> None:
        self.cancel("close")
        for task in list(self._background_tasks):
            task.cancel()
        if self._background_tasks:
            await asyncio.gather(*self._background_tasks, return_exceptions=True)
        await self._playback.close()
        self._cache.clear()

    async def _process(self, audio: CapturedAudio, operation_id: int) -> None:
        tracker = self._capture.mode_tracker
        try:
            try:
                text = await self._client.transcribe(audio)
            except TutorError as exc:
                # Any failed WAV upload breaks the streak; only decode failures count against containers.
                if not self._is_stale(operation_id) and (audio.is_wav or isinstance(exc, AudioDecodeError)):
                    tracker.record_failure(wav=audio.is_wav)
                raise
            if self._is_stale(operation_id):
                return
            tracker.record_success(wav=audio.is_wav)
            self._transcript = text

            if is_spurious_transcript(text):
                self._error = NO_SPEECH_MESSAGE
                self._logger.info("transcript_discarded", extra={"operation_id": operation_id, "chars": len(text)})
                return

            user_id = self._conversation.add_user(text.strip())
            self._pretranslate(user_id, text.strip())

            reply = await self._client.chat(self._conversation.history(), translate=True)
            if self._is_stale(operation_id):
                return
            segments = self._conversation.add_assistant(reply)
            if not segments:
                return

            queued = await self._fetch_segments(segments, operation_id)
            if not queued:
                return
            if self._visibility is not Visibility.READY:
                self._release_unqueued(queued)
                return

            self._set_activity(Activity.IDLE, "reply_ready")
            self._claim(Activity.AUTO_PLAYING, "reply_ready")
            for message_id, resource, cached in queued:
                self._playback.enqueue(message_id, resource, cached)
        except asyncio.CancelledError:
            self._logger.info("operation_aborted", extra={"operation_id": operation_id})
            raise
        except TutorError as exc:
            self._logger.warning(
                "operation_failed",
                extra={"operation_id": operation_id, "error_type": type(exc).__name__, "detail": str(exc)},
            )
            if not self._is_stale(operation_id):
                self._error = exc.user_message
        except Exception:  # noqa: BLE001 - must never leave the coordinator stuck in processing.
            self._logger.exception("operation_crashed", extra={"operation_id": operation_id})
            if not self._is_stale(operation_id):
                self._error = TutorError.user_message
        finally:
            if not self._is_stale(operation_id):
                if self._activity is Activity.PROCESSING:
                    self._set_activity(Activity.IDLE, "processing_finished")
                if self._processing_task is asyncio.current_task():
                    self._processing_task = None

    async def _fetch_segments(
        self, segments: list[SpeechSegment], operation_id: int
    ) -> list[tuple[str, AudioResource, bool]] | None:
        """Fetch speech for every segment in order; ``None`` when the operation went stale."""
        queued: list[tuple[str, AudioResource, bool]] = []
        for segment in segments:
            try:
                resource, cached = await self._speech_for(segment)
            except TutorError as exc:
                self._logger.warning(
                    "segment_speech_unavailable",
                    extra={"message_id": segment.message_id, "error_type": type(exc).__name__},
                )
                if self._is_stale(operation_id):
                    self._release_unqueued(queued)
                    return None
                self._error = exc.user_message
                continue
            queued.append((segment.message_id, resource, cached))
            if self._is_stale(operation_id):
                self._release_unqueued(queued)
                return None
        return queued

    async def _play_segment(self, segment: SpeechSegment) -> bool:
        try:
            await self._playback.prime_if_needed()
        except Exception:  # noqa: BLE001
            self._logger.exception("playback_prime_failed")
        self._playback.pause_for_higher_priority("bubble_tap")

        operation_id = self._operation_id
        try:
            resource, cached = await self._speech_for(segment)
        except TutorError as exc:
            self._error = exc.user_message
            return False

        if (
            operation_id != self._operation_id
            or self._activity is not Activity.IDLE
            or self._visibility is not Visibility.READY
        ):
            self._release_unqueued([(segment.message_id, resource, cached)])
            return False
        self._playback.enqueue(segment.message_id, resource, cached)
        return True

    async def _speech_for(self, segment: SpeechSegment) -> tuple[AudioResource, bool]:
        cached = self._cache.get(segment.message_id)
        if cached is not None:
            return cached, True
        speech = await self._synthesizer.synthesize(segment.text)
        return self._cache.put(segment.message_id, speech.data, speech.mime_type)

    def _pretranslate(self, message_id: str, text: str) -> None:
        generation = self._conversation.generation

        async def _run() -> None:
            translation = await self._client.translate(text)
            if translation and generation == self._conversation.generation:
                self._conversation.set_translation(message_id, translation)

        task = asyncio.get_running_loop().create_task(_run(), name=f"translate-{message_id}")
        self._background_tasks.add(task)
        task.add_done_callback(self._background_tasks.discard)

    async def _request_permission(self) -> None:
        try:
            granted = await self._permission.request()
        except TutorError as exc:
            self._error = exc.user_message
            return
        if granted:
            self._error = None
            self._logger.info("permission_ready", extra={"hint": PERMISSION_GRANTED_MESSAGE})

    def _on_playback_drained(self) -> None:
        if self._activity is Activity.AUTO_PLAYING:
            self._set_activity(Activity.IDLE, "playback_drained")

    def _abort_processing_task(self) -> None:
        task, self._processing_task = self._processing_task, None
        if task is not None and not task.done():
            task.cancel()

    def _release_unqueued(self, items: list[tuple[str, AudioResource, bool]]) -> None:
        for _, resource, cached in items:
            if not cached:
                resource.release()

    def _is_stale(self, operation_id: int) -> bool:
        return operation_id != self._operation_id

    def _fail(self, operation_id: int, exc: TutorError) -> None:
        self._logger.warning(
            "gesture_failed",
            extra={"operation_id": operation_id, "error_type": type(exc).__name__, "detail": str(exc)},
        )
        if self._is_stale(operation_id):
            return
        self._run_teardown([("stop_capture", self._capture.cancel)])
        self._error = exc.user_message
        self._set_activity(Activity.IDLE, "gesture_failed")

    def _claim(self, activity: Activity, reason: str) -> None:
        if self._activity is not Activity.IDLE:
            raise RuntimeError(f"Cannot claim {activity.value} while {self._activity.value} owns audio")
        self._set_activity(activity, reason)

    def _set_activity(self, activity: Activity, reason: str) -> None:
        previous = self._activity
        if previous is activity:
            return
        self._activity = activity
        self._telemetry.emit(
            "activity_changed",
            {"from": previous.value, "to": activity.value, "reason": reason, "operation_id": self._operation_id},
        )

    def _run_teardown(self, steps: list[tuple[str, Callable[[], object]]]) -> None:
        for step_name, step in steps:
            try:
                step()
            except Exception:  # noqa: BLE001 - remaining steps must still run.
                self._logger.exception("teardown_step_failed", extra={"step": step_name})
