"""Bounded LRU store of synthesized speech keyed by message id."""

from __future__ import annotations

import logging
import time
from collections import OrderedDict
from dataclasses import dataclass
from typing import Callable

from spanish_tutor.models import AudioResource


@dataclass(slots=True)
class AudioCacheEntry:
    resource: AudioResource
    size: int
    last_used: float
    playing: bool = False


class AudioCache:
    """Keeps at most ``capacity`` speech resources, never evicting one that is playing."""

    def __init__(
        self,
        capacity: int = 20,
        *,
        clock: Callable[[], float] = time.monotonic,
        logger: logging.Logger | None = None,
    ) -> None:
        if capacity < 1:
            raise ValueError("capacity must be at least 1")
        self._capacity = capacity
        self._clock = clock
        self._logger = logger or logging.getLogger("spanish_tutor.audio.cache")
        self._entries: OrderedDict[str, AudioCacheEntry] = OrderedDict()

    @property
    def capacity(self) -> int:
        return self._capacity

    @property
    def total_bytes(self) -> int:
        return sum(entry.size for entry in self._entries.values())

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, message_id: object) -> bool:
        return message_id in self._entries

    def get(self, message_id: str) -> AudioResource | None:
        """Return the cached resource and mark it most recently used."""
        entry = self._entries.get(message_id)
        if entry is None:
            return None
        entry.last_used = self._clock()
        self._entries.move_to_end(message_id)
        return entry.resource

    def put(self, message_id: str, data: bytes, mime_type: str = "audio/mpeg") -> tuple[AudioResource, bool]:
        """Store synthesized audio, returning the handle and whether the cache owns it.

        When every slot holds audio that is currently playing, a throwaway handle
        is returned instead and the caller is responsible for releasing it.
        """
        existing = self._entries.get(message_id)
        if existing is not None:
            if existing.playing:
                self._logger.debug("audio_cache_bypass_playing", extra={"message_id": message_id})
                return AudioResource(data, mime_type), False
            del self._entries[message_id]
            existing.resource.release()

        if len(self._entries) >= self._capacity and not self._evict_one():
            self._logger.info(
                "audio_cache_full_all_playing",
                extra={"message_id": message_id, "capacity": self._capacity},
            )
            return AudioResource(data, mime_type), False

        resource = AudioResource(data, mime_type)
        self._entries[message_id] = AudioCacheEntry(resource=resource, size=len(data), last_used=self._clock())
        return resource, True

    def mark_playing(self, message_id: str, playing: bool) -> None:
        entry = self._entries.get(message_id)
        if entry is not None:
            entry.playing = playing

    def is_playing(self, message_id: str) -> bool:
        entry = self._entries.get(message_id)
        return bool(entry and entry.playing)

    def clear(self) -> None:
        """Release every cached resource."""
        released = len(self._entries)
        for entry in self._entries.values():
            entry.resource.release()
        self._entries.clear()
        self._logger.info("audio_cache_cleared", extra={"released": released})

    def _evict_one(self) -> bool:
        # OrderedDict order is least recently used first.
        for message_id, entry in self._entries.items():
            if entry.playing:
                continue
            del self._entries[message_id]
            entry.resource.release()
            self._logger.debug("audio_cache_evicted", extra={"message_id": message_id, "size": entry.size})
            return True
        return False
