"""HTTP client for the relay's transcription, reply, synthesis and translation endpoints."""

from __future__ import annotations

import asyncio
import json
import logging
from typing import Any

import httpx

from spanish_tutor.errors import (
    AudioDecodeError,
    ConnectivityError,
    ReplyError,
    SynthesisError,
    TranscriptionError,
)
from spanish_tutor.models import CapturedAudio, ChatReply, SynthesizedSpeech

FALLBACK_REPLY = "¡Muy bien! ¿Puedes repetir eso?"
DECODE_FAILURE_MARKER = "could not be decoded"


def is_decode_failure(body: str) -> bool:
    return DECODE_FAILURE_MARKER in body.lower()


def parse_chat_reply(raw: str) -> ChatReply:
    """Normalize a reply body, tolerating malformed or partial JSON."""
    try:
        payload: Any = json.loads(raw) if raw else {}
    except ValueError:
        return ChatReply(reply_es=FALLBACK_REPLY, ok=False)
    if not isinstance(payload, dict):
        return ChatReply(reply_es=FALLBACK_REPLY, ok=False)

    reply = payload.get("reply_es") or payload.get("response") or payload.get("reply") or ""
    correction = str(payload.get("correction_es") or "").strip()
    translation = payload.get("translation_en") or None
    return ChatReply(
        reply_es=str(reply).strip() or FALLBACK_REPLY,
        correction_es=correction or None,
        needs_correction=bool(payload.get("needs_correction")),
        translation_en=str(translation) if translation else None,
        ok=bool(payload.get("ok", True)),
    )


class TutorApiClient:
    """Thin async wrappers around the relay endpoints."""

    def __init__(
        self,
        base_url: str,
        *,
        stt_path: str = "/stt",
        chat_path: str = "/chat",
        tts_path: str = "/tts",
        translate_path: str = "/api/translate",
        timeout_seconds: float = 30.0,
        stt_max_attempts: int = 3,
        stt_backoff_seconds: float = 0.25,
        transport: httpx.AsyncBaseTransport | None = None,
        logger: logging.Logger | None = None,
    ) -> None:
        self._stt_path = stt_path
        self._chat_path = chat_path
        self._tts_path = tts_path
        self._translate_path = translate_path
        self._stt_max_attempts = max(1, stt_max_attempts)
        self._stt_backoff_seconds = stt_backoff_seconds
        self._logger = logger or logging.getLogger("spanish_tutor.client")
        self._http = httpx.AsyncClient(base_url=base_url, timeout=timeout_seconds, transport=transport)

    async def aclose(self) -> None:
        await self._http.aclose()

    async def __aenter__(self) -> "TutorApiClient":
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.aclose()

    async def transcribe(self, audio: CapturedAudio) -> str:
        """Upload one recording and return the recognized text.

        Decode failures and transport errors are retried with a linear backoff.
        """
        last_error: Exception | None = None
        for attempt in range(1, self._stt_max_attempts + 1):
            try:
                response = await self._http.post(
                    self._stt_path,
                    files={"audio": (audio.filename, audio.data, audio.mime_type)},
                )
            except httpx.TransportError as exc:
                last_error = ConnectivityError(f"Transcription request failed: {exc}")
                self._logger.warning("stt_transport_error", extra={"attempt": attempt, "error": str(exc)})
            else:
                if response.is_success:
                    text = self._json_field(response, "text")
                    self._logger.info("stt_succeeded", extra={"attempt": attempt, "chars": len(text)})
                    return text

                body = response.text
                if not is_decode_failure(body):
                    self._logger.error(
                        "stt_failed",
                        extra={"status_code": response.status_code, "body": body[:500], "mime_type": audio.mime_type},
                    )
                    raise TranscriptionError(
                        f"Transcription failed with status {response.status_code}",
                        status_code=response.status_code,
                        body=body,
                    )
                last_error = AudioDecodeError(
                    f"Relay could not decode {audio.mime_type} audio",
                    status_code=response.status_code,
                    body=body,
                )
                self._logger.warning(
                    "stt_decode_failure",
                    extra={"attempt": attempt, "status_code": response.status_code, "mime_type": audio.mime_type},
                )

            if attempt < self._stt_max_attempts:
                await asyncio.sleep(self._stt_backoff_seconds * attempt)

        raise last_error or ConnectivityError("Transcription request failed")

    async def chat(self, history: list[dict[str, str]], *, translate: bool = True) -> ChatReply:
        try:
            response = await self._http.post(self._chat_path, json={"messages": history, "translate": translate})
        except httpx.TransportError as exc:
            raise ConnectivityError(f"Reply request failed: {exc}") from exc

        if not response.is_success:
            self._logger.error("chat_failed", extra={"status_code": response.status_code, "body": response.text[:500]})
            raise ReplyError(
                f"Reply failed with status {response.status_code}",
                status_code=response.status_code,
                body=response.text,
            )

        reply = parse_chat_reply(response.text)
        if not reply.ok:
            self._logger.warning("chat_reply_unparsed", extra={"body": response.text[:200]})
        return reply

    async def synthesize(self, text: str) -> SynthesizedSpeech:
        try:
            response = await self._http.post(self._tts_path, json={"text": text})
        except httpx.TransportError as exc:
            raise ConnectivityError(f"Synthesis request failed: {exc}") from exc

        if not response.is_success or not response.content:
            self._logger.error("tts_failed", extra={"status_code": response.status_code, "chars": len(text)})
            raise SynthesisError(f"Synthesis failed with status {response.status_code}")

        mime_type = response.headers.get("content-type", "audio/mpeg").split(";", 1)[0].strip() or "audio/mpeg"
        return SynthesizedSpeech(data=response.content, mime_type=mime_type)

    async def translate(self, text: str, *, source: str = "es", target: str = "en") -> str | None:
        """Translate ``text``; failures return ``None`` rather than raising."""
        try:
            response = await self._http.post(
                self._translate_path,
                json={"text": text, "from": source, "to": target},
            )
        except httpx.TransportError as exc:
            self._logger.warning("translate_transport_error", extra={"error": str(exc)})
            return None

        if not response.is_success:
            self._logger.warning("translate_failed", extra={"status_code": response.status_code})
            return None
        translation = self._json_field(response, "translation")
        return translation or None

    def _json_field(self, response: httpx.Response, field: str) -> str:
        try:
            payload = response.json()
        except ValueError:
            self._logger.warning("response_not_json", extra={"path": str(response.request.url.path)})
            return ""
        if not isinstance(payload, dict):
            return ""
        value = payload.get(field)
        return str(value).strip() if value else ""
