"""Durable flags kept between runs (permission, needs-resume)."""

from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Protocol

MIC_PERMISSION_GRANTED = "mic_permission_granted"
NEEDS_RESUME = "needs_resume"


class StateStore(Protocol):
    """Persistence contract for small boolean flags."""

    def get_flag(self, name: str) -> bool:
        """Return the stored flag, ``False`` when absent."""

    def set_flag(self, name: str, value: bool) -> None:
        """Persist ``value`` under ``name``."""


class InMemoryStateStore:
    """Process-local flag store."""

    def __init__(self, initial: dict[str, bool] | None = None) -> None:
        self._flags: dict[str, bool] = dict(initial or {})

    def get_flag(self, name: str) -> bool:
        return self._flags.get(name, False)

    def set_flag(self, name: str, value: bool) -> None:
        self._flags[name] = value


class JsonStateStore:
    """Simple JSON-file-backed flag persistence.

    Writes are best effort: a read-only or missing directory is logged and the
    in-memory value still applies for the rest of the run.
    """

    def __init__(self, file_path: str | Path, *, logger: logging.Logger | None = None) -> None:
        self._path = Path(file_path).expanduser()
        self._logger = logger or logging.getLogger("spanish_tutor.state_store")
        self._flags = self._load()

    @property
    def path(self) -> Path:
        return self._path

    def get_flag(self, name: str) -> bool:
        return bool(self._flags.get(name, False))

    def set_flag(self, name: str, value: bool) -> None:
        self._flags[name] = bool(value)
        try:
            self._path.parent.mkdir(parents=True, exist_ok=True)
            with self._path.open("w", encoding="utf-8") as handle:
                json.dump(self._flags, handle, sort_keys=True)
        except OSError:
            self._logger.warning("state_store_write_failed", extra={"path": str(self._path), "flag": name})

    def _load(self) -> dict[str, bool]:
        if not self._path.exists():
            return {}
        try:
            with self._path.open("r", encoding="utf-8") as handle:
                payload = json.load(handle)
        except (OSError, ValueError):
            self._logger.warning("state_store_unreadable", extra={"path": str(self._path)})
            return {}
        if not isinstance(payload, dict):
            return {}
        return {str(key): bool(value) for key, value in payload.items()}
