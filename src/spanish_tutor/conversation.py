"""Conversation turns, bubble ids and the bilingual translation cache."""

from __future__ import annotations

import re

from spanish_tutor.models import AssistantTurn, ChatReply, SpeechSegment, UserTurn

GREETING = AssistantTurn(
    reply_es="¡Hola! 😊 Soy tu tutor de español. Dime tu nombre y cómo te sientes hoy.",
)

_BRACKETED_RE = re.compile(r"\[(.*?)\]")
_TRANSLATION_LABELS = ("correction", "reply")


def user_message_id(index: int) -> str:
    return f"user-{index}"


def assistant_message_id(index: int, part: str) -> str:
    return f"assistant-{index}-{part}"


def parse_translation_block(block: str) -> dict[str, str]:
    """Split a ``translation_en`` block into per-segment translations.

    The reply endpoint labels each line (``correction: [...]``, ``reply: [...]``);
    a bracketed value is unwrapped, anything else is taken as-is.
    """
    translations: dict[str, str] = {}
    for line in block.splitlines():
        label, sep, value = line.partition(":")
        label = label.strip().lower()
        if not sep or label not in _TRANSLATION_LABELS:
            continue
        value = value.strip()
        match = _BRACKETED_RE.search(value)
        text = match.group(1).strip() if match else value
        if text:
            translations[label] = text
    return translations


class Conversation:
    """Ordered turns plus the translation state of each bubble."""

    def __init__(self, *, greeting: AssistantTurn | None = GREETING) -> None:
        self._greeting = greeting
        self._turns: list[UserTurn | AssistantTurn] = []
        self._translations: dict[str, str] = {}
        self._revealed: set[str] = set()
        self._generation = 0
        self.reset()

    @property
    def turns(self) -> list[UserTurn | AssistantTurn]:
        return list(self._turns)

    @property
    def generation(self) -> int:
        """Incremented on every reset; bubble ids are only meaningful within one generation."""
        return self._generation

    @property
    def translations(self) -> dict[str, str]:
        return dict(self._translations)

    def reset(self) -> None:
        self._generation += 1
        self._turns = []
        self._translations.clear()
        self._revealed.clear()
        if self._greeting is not None:
            self._turns.append(
                AssistantTurn(
                    reply_es=self._greeting.reply_es,
                    correction_es=self._greeting.correction_es,
                )
            )

    def add_user(self, text: str) -> str:
        self._turns.append(UserTurn(text=text))
        return user_message_id(len(self._turns) - 1)

    def add_assistant(self, reply: ChatReply) -> list[SpeechSegment]:
        """Record a reply and return its speakable segments, correction first."""
        turn = AssistantTurn(
            reply_es=reply.reply_es,
            correction_es=reply.correction_es,
            needs_correction=reply.needs_correction,
            translation_en=reply.translation_en,
        )
        self._turns.append(turn)
        index = len(self._turns) - 1

        if reply.translation_en:
            for label, text in parse_translation_block(reply.translation_en).items():
                self._translations[assistant_message_id(index, label)] = text

        return self.segments_for(index)

    def segments_for(self, index: int) -> list[SpeechSegment]:
        turn = self._turns[index]
        if isinstance(turn, UserTurn):
            return [SpeechSegment(user_message_id(index), turn.text)] if turn.text.strip() else []

        segments = []
        if turn.correction_es and turn.correction_es.strip():
            segments.append(SpeechSegment(assistant_message_id(index, "correction"), turn.correction_es))
        if turn.reply_es and turn.reply_es.strip():
            segments.append(SpeechSegment(assistant_message_id(index, "reply"), turn.reply_es))
        return segments

    def segment(self, message_id: str) -> SpeechSegment | None:
        for index in range(len(self._turns)):
            for segment in self.segments_for(index):
                if segment.message_id == message_id:
                    return segment
        return None

    def history(self) -> list[dict[str, str]]:
        """Flatten turns into the ``{role, content}`` list the reply endpoint expects."""
        entries = []
        for turn in self._turns:
            content = turn.text if isinstance(turn, UserTurn) else turn.spoken_text()
            if content:
                entries.append({"role": turn.role, "content": content})
        return entries

    def set_translation(self, message_id: str, translation: str) -> None:
        self._translations[message_id] = translation

    def translation(self, message_id: str) -> str | None:
        return self._translations.get(message_id)

    def reveal(self, message_id: str) -> str | None:
        """Mark a bubble as tapped and return its translation when known."""
        self._revealed.add(message_id)
        return self._translations.get(message_id)

    def is_revealed(self, message_id: str) -> bool:
        return message_id in self._revealed
