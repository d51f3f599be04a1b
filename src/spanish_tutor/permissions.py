"""Microphone permission gate with a persisted "granted" flag."""

from __future__ import annotations

import logging

from spanish_tutor.audio.capture import stop_stream
from spanish_tutor.audio.interfaces import MicrophoneProvider
from spanish_tutor.errors import CaptureError, MicrophonePermissionError
from spanish_tutor.models import AudioConstraints
from spanish_tutor.state_store import MIC_PERMISSION_GRANTED, StateStore


class MicrophonePermission:
    """Tracks whether the microphone may be used without prompting again."""

    def __init__(
        self,
        microphone: MicrophoneProvider,
        store: StateStore,
        *,
        constraints: AudioConstraints | None = None,
        logger: logging.Logger | None = None,
    ) -> None:
        self._microphone = microphone
        self._store = store
        self._constraints = constraints or AudioConstraints()
        self._logger = logger or logging.getLogger("spanish_tutor.permissions")
        self._requested = False

    @property
    def granted(self) -> bool:
        return self._store.get_flag(MIC_PERMISSION_GRANTED)

    @property
    def requested(self) -> bool:
        return self._requested

    async def request(self) -> bool:
        """Ask once for access using a throwaway stream.

        Returns ``False`` when a request is already armed. Denial raises
        :class:`MicrophonePermissionError` and disarms the request so the next
        gesture asks again.
        """
        if self.granted:
            return True
        if self._requested:
            return False

        self._requested = True
        self._logger.info("mic_permission_requested")
        try:
            stream = await self._microphone.request_stream(self._constraints)
        except MicrophonePermissionError:
            self._requested = False
            self._logger.warning("mic_permission_denied")
            raise
        except Exception as exc:  # noqa: BLE001
            self._requested = False
            raise CaptureError(f"Microphone unavailable: {exc}") from exc

        stop_stream(stream, self._logger)
        self._store.set_flag(MIC_PERMISSION_GRANTED, True)
        self._requested = False
        self._logger.info("mic_permission_granted")
        return True

    def revoke(self) -> None:
        """Forget a previous grant, e.g. after the backend reports a denial."""
        self._store.set_flag(MIC_PERMISSION_GRANTED, False)
        self._requested = False
