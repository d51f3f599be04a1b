"""Sequential playback of synthesized speech through one reusable output handle."""

from __future__ import annotations

import asyncio
import logging
from collections import deque
from dataclasses import dataclass
from typing import Callable

from spanish_tutor.audio.cache import AudioCache
from spanish_tutor.audio.interfaces import AudioOutput
from spanish_tutor.errors import AutoplayBlockedError
from spanish_tutor.models import AudioResource


@dataclass(slots=True)
class PlaybackQueueItem:
    """One unit of audio awaiting playback."""

    message_id: str
    resource: AudioResource
    from_cache: bool = False


class PlaybackDriver:
    """Single-consumer FIFO player with interrupt support.

    Exactly one item is bound to the output at a time. Items that the cache
    owns are protected from eviction while queued or current and are never
    released here; every other resource is released once it leaves the queue.
    """

    def __init__(
        self,
        output_factory: Callable[[], AudioOutput],
        cache: AudioCache,
        *,
        inter_item_pause: float = 0.2,
        rotation_interval: int = 20,
        on_drained: Callable[[], None] | None = None,
        logger: logging.Logger | None = None,
    ) -> None:
        self._output_factory = output_factory
        self._cache = cache
        self._inter_item_pause = inter_item_pause
        self._rotation_interval = rotation_interval
        self._on_drained = on_drained
        self._logger = logger or logging.getLogger("spanish_tutor.audio.playback")

        self._output = output_factory()
        self._queue: deque[PlaybackQueueItem] = deque()
        self._current: PlaybackQueueItem | None = None
        # Queued or current items per cached message id.
        self._cache_holds: dict[str, int] = {}
        self._worker: asyncio.Task[None] | None = None
        self._running = False
        self._stop_requested = False
        self._needs_prime = False
        self._plays_since_rotation = 0
        self._completed_plays = 0

    @property
    def output(self) -> AudioOutput:
        return self._output

    @property
    def current(self) -> PlaybackQueueItem | None:
        return self._current

    @property
    def is_playing(self) -> bool:
        return self._current is not None

    @property
    def is_idle(self) -> bool:
        return not self._running and not self._queue

    @property
    def pending(self) -> list[PlaybackQueueItem]:
        return list(self._queue)

    @property
    def needs_prime(self) -> bool:
        return self._needs_prime

    @property
    def completed_plays(self) -> int:
        return self._completed_plays

    def set_drained_callback(self, callback: Callable[[], None] | None) -> None:
        self._on_drained = callback

    def enqueue(self, message_id: str, resource: AudioResource, from_cache: bool = False) -> None:
        """Append to the tail and start the worker when idle."""
        if from_cache:
            self._cache_holds[message_id] = self._cache_holds.get(message_id, 0) + 1
            self._cache.mark_playing(message_id, True)
        self._queue.append(PlaybackQueueItem(message_id=message_id, resource=resource, from_cache=from_cache))
        self._logger.debug("playback_enqueued", extra={"message_id": message_id, "queue_size": len(self._queue)})
        if not self._running:
            self._running = True
            self._worker = asyncio.get_running_loop().create_task(self._process_queue(), name="playback-driver")

    def stop_if_playing(self, message_id: str | None = None) -> bool:
        """Halt the current item (or only ``message_id``); the queue moves on."""
        current = self._current
        if current is None:
            return False
        if message_id is not None and current.message_id != message_id:
            return False

        self._stop_requested = True
        try:
            self._output.stop()
        except Exception:  # noqa: BLE001 - a wedged handle is replaced on the next error.
            self._logger.exception("playback_stop_failed", extra={"message_id": current.message_id})
        self._logger.info("playback_stopped", extra={"message_id": current.message_id})
        return True

    def pause_for_higher_priority(self, reason: str) -> None:
        """Halt playback and drop everything queued; queued speech is not resumed."""
        dropped = list(self._queue)
        self._queue.clear()
        for item in dropped:
            self._discard(item)
        stopped = self.stop_if_playing()
        if dropped or stopped:
            self._logger.info(
                "playback_preempted",
                extra={"reason": reason, "dropped": len(dropped), "stopped_current": stopped},
            )

    async def prime(self) -> None:
        """Unlock the output from within a user gesture."""
        await self._output.prime()
        self._needs_prime = False

    async def prime_if_needed(self) -> None:
        if self._needs_prime:
            await self.prime()

    def require_prime(self) -> None:
        self._needs_prime = True

    def recreate_output(self) -> None:
        """Stop whatever is playing and replace the output handle."""
        self.stop_if_playing()
        self._replace_output("recreate")

    async def wait_idle(self) -> None:
        while self._running and self._worker is not None:
            await asyncio.wait({self._worker})

    async def close(self) -> None:
        self.pause_for_higher_priority("close")
        worker = self._worker
        if worker is not None and not worker.done():
            worker.cancel()
            try:
                await worker
            except asyncio.CancelledError:
                pass
        self._running = False
        try:
            self._output.close()
        except Exception:  # noqa: BLE001
            self._logger.exception("playback_output_close_failed")

    async def _process_queue(self) -> None:
        try:
            while self._queue:
                item = self._queue.popleft()
                self._current = item
                self._stop_requested = False
                try:
                    await self._play_item(item)
                finally:
                    self._current = None
                    self._discard(item)

                self._maybe_rotate_output()
                if self._queue and self._inter_item_pause > 0:
                    await asyncio.sleep(self._inter_item_pause)
        finally:
            self._running = False
            self._current = None

        self._logger.debug("playback_drained", extra={"completed_plays": self._completed_plays})
        if self._on_drained is not None:
            self._on_drained()

    async def _play_item(self, item: PlaybackQueueItem) -> None:
        for attempt in (1, 2):
            if self._stop_requested:
                return
            try:
                await self._output.play(item.resource)
            except AutoplayBlockedError:
                self._needs_prime = True
                self._logger.warning("playback_needs_gesture", extra={"message_id": item.message_id})
                return
            except Exception:  # noqa: BLE001 - one bad item must not stall the queue.
                self._logger.exception(
                    "playback_failed",
                    extra={"message_id": item.message_id, "attempt": attempt},
                )
                if attempt == 1 and not self._stop_requested:
                    self._replace_output("error")
                    continue
                return

            if not self._stop_requested:
                self._completed_plays += 1
                self._plays_since_rotation += 1
            return

    def _maybe_rotate_output(self) -> None:
        if self._rotation_interval <= 0 or self._current is not None:
            return
        if self._plays_since_rotation >= self._rotation_interval:
            self._replace_output("rotation")

    def _replace_output(self, reason: str) -> None:
        old = self._output
        self._output = self._output_factory()
        self._plays_since_rotation = 0
        try:
            old.close()
        except Exception:  # noqa: BLE001
            self._logger.exception("playback_output_close_failed", extra={"reason": reason})
        self._logger.info("playback_output_replaced", extra={"reason": reason})

    def _discard(self, item: PlaybackQueueItem) -> None:
        if item.from_cache:
            remaining = self._cache_holds.get(item.message_id, 1) - 1
            if remaining > 0:
                self._cache_holds[item.message_id] = remaining
                return
            self._cache_holds.pop(item.message_id, None)
            self._cache.mark_playing(item.message_id, False)
        else:
            item.resource.release()
