"""Heuristics for discarding transcription artifacts."""

from __future__ import annotations

import re
import unicodedata

MIN_TRANSCRIPT_CHARS = 2

# Boilerplate that speech models hallucinate on silence or noise.
SPURIOUS_PHRASES = (
    "subtitulos realizados por la comunidad de amara.org",
    "subtitulos por la comunidad de amara.org",
    "amara.org",
    "gracias por ver el video",
    "gracias por ver",
    "suscribete al canal",
    "suscribete",
    "thanks for watching",
    "thank you for watching",
    "please subscribe",
    "musica",
)

_PUNCTUATION_RE = re.compile(r"[^\w\s.]")
_WHITESPACE_RE = re.compile(r"\s+")


def normalize_transcript(text: str) -> str:
    """Lowercase, strip accents and punctuation (dots are kept for domains)."""
    decomposed = unicodedata.normalize("NFKD", text.lower())
    stripped = "".join(ch for ch in decomposed if not unicodedata.combining(ch))
    stripped = _PUNCTUATION_RE.sub(" ", stripped)
    return _WHITESPACE_RE.sub(" ", stripped).strip(" .")


def is_spurious_transcript(text: str | None) -> bool:
    if text is None:
        return True
    cleaned = text.strip()
    if len(cleaned) < MIN_TRANSCRIPT_CHARS:
        return True

    normalized = normalize_transcript(cleaned)
    if len(normalized) < MIN_TRANSCRIPT_CHARS:
        return True
    if "amara.org" in normalized:
        return True
    return normalized in SPURIOUS_PHRASES
