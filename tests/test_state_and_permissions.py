from __future__ import annotations

import asyncio
from pathlib import Path

import pytest

from fakes import FakeMicrophone
from spanish_tutor.errors import CaptureError, MicrophonePermissionError
from spanish_tutor.permissions import MicrophonePermission
from spanish_tutor.state_store import MIC_PERMISSION_GRANTED, NEEDS_RESUME, InMemoryStateStore, JsonStateStore


def test_json_state_store_roundtrip(tmp_path: Path) -> None:
    path = tmp_path / "state" / "flags.json"
    store = JsonStateStore(path)
    store.set_flag(NEEDS_RESUME, True)

    reloaded = JsonStateStore(path)

    assert reloaded.get_flag(NEEDS_RESUME) is True
    assert reloaded.get_flag(MIC_PERMISSION_GRANTED) is False


def test_json_state_store_ignores_corrupt_file(tmp_path: Path) -> None:
    path = tmp_path / "flags.json"
    path.write_text("{not json", encoding="utf-8")

    assert JsonStateStore(path).get_flag(NEEDS_RESUME) is False


def test_permission_request_uses_throwaway_stream_and_persists() -> None:
    async def _run() -> None:
        microphone = FakeMicrophone()
        store = InMemoryStateStore()
        permission = MicrophonePermission(microphone, store)

        assert await permission.request() is True
        assert permission.granted is True
        assert store.get_flag(MIC_PERMISSION_GRANTED) is True
        assert microphone.streams[0].stopped

        assert await permission.request() is True
        assert len(microphone.streams) == 1

    asyncio.run(_run())


def test_permission_denial_disarms_request() -> None:
    async def _run() -> None:
        microphone = FakeMicrophone(error=MicrophonePermissionError("NotAllowedError"))
        permission = MicrophonePermission(microphone, InMemoryStateStore())

        with pytest.raises(MicrophonePermissionError):
            await permission.request()
        assert permission.requested is False
        assert permission.granted is False

        microphone.error = RuntimeError("no input device")
        with pytest.raises(CaptureError):
            await permission.request()

        microphone.error = None
        assert await permission.request() is True

    asyncio.run(_run())


def test_concurrent_permission_request_is_not_repeated() -> None:
    async def _run() -> None:
        microphone = FakeMicrophone()
        microphone.gate = asyncio.Event()
        permission = MicrophonePermission(microphone, InMemoryStateStore())

        first = asyncio.create_task(permission.request())
        await asyncio.sleep(0)
        assert await permission.request() is False
        microphone.gate.set()

        assert await first is True
        assert len(microphone.requested) == 1

    asyncio.run(_run())


def test_revoke_forgets_grant() -> None:
    store = InMemoryStateStore({MIC_PERMISSION_GRANTED: True})
    permission = MicrophonePermission(FakeMicrophone(), store)

    permission.revoke()

    assert permission.granted is False
