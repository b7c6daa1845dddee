from __future__ import annotations

import uuid
from typing import Protocol, Sequence

from .constants import (
    ASK_SECTIONS_AFTER_STYLE_TEXT,
    ASK_SECTIONS_TEXT,
    ASK_STYLE_TEXT,
    READY_FROM_IDLE_TEXT,
    READY_FROM_SECTIONS_TEXT,
    REFINE_TEXT,
    SECTIONS,
    STYLES,
)
from .models import (
    AskSections,
    AskStyle,
    AssistantTurn,
    Classification,
    DialogueState,
    DialogueStep,
    Generate,
)


class IntentClassifier(Protocol):
    def classify(self, text: str) -> Classification: ...


def _keywords(term: str) -> list[str]:
    normalized = term.lower().strip()
    keywords = [normalized]
    # "Hero (Главный)" is also recognised by its leading word.
    head = normalized.split("(", 1)[0].strip()
    if head and head != normalized:
        keywords.append(head)
    return keywords


class KeywordClassifier:
    """Case-insensitive substring membership against two fixed vocabularies."""

    def __init__(self, styles: Sequence[str] = STYLES, sections: Sequence[str] = SECTIONS) -> None:
        self.styles = list(styles)
        self.sections = list(sections)
        self._style_keywords = [kw for term in self.styles for kw in _keywords(term)]
        self._section_keywords = [kw for term in self.sections for kw in _keywords(term)]

    def classify(self, text: str) -> Classification:
        normalized = text.lower()
        return Classification(
            style_matched=any(keyword in normalized for keyword in self._style_keywords),
            section_matched=any(keyword in normalized for keyword in self._section_keywords),
        )


def _new_turn_id() -> str:
    return uuid.uuid4().hex


class DialogueController:
    """Transition table for the clarifying dialogue.

    ``advance`` is pure: it returns the next state, the assistant reply to
    append and the commands the caller has to dispatch. It never talks to the
    generation service itself.
    """

    def __init__(
        self,
        classifier: IntentClassifier | None = None,
        styles: Sequence[str] = STYLES,
        sections: Sequence[str] = SECTIONS,
    ) -> None:
        self.styles = tuple(styles)
        self.sections = tuple(sections)
        self.classifier = classifier or KeywordClassifier(self.styles, self.sections)

    def _ask_style(self) -> DialogueStep:
        return DialogueStep(
            next_state=DialogueState.AWAITING_STYLE,
            reply=AssistantTurn(id=_new_turn_id(), text=ASK_STYLE_TEXT, options=self.styles),
            commands=(AskStyle(options=self.styles),),
        )

    def _ask_sections(self, text: str) -> DialogueStep:
        return DialogueStep(
            next_state=DialogueState.AWAITING_SECTIONS,
            reply=AssistantTurn(id=_new_turn_id(), text=text, multi_options=self.sections),
            commands=(AskSections(options=self.sections),),
        )

    @staticmethod
    def _generate(text: str, request_text: str) -> DialogueStep:
        return DialogueStep(
            next_state=DialogueState.READY,
            reply=AssistantTurn(id=_new_turn_id(), text=text),
            commands=(Generate(request_text=request_text),),
        )

    def advance(self, state: DialogueState, text: str) -> DialogueStep:
        if state == DialogueState.IDLE:
            result = self.classifier.classify(text)
            if result.style_matched and result.section_matched:
                return self._generate(READY_FROM_IDLE_TEXT, text)
            if not result.style_matched:
                return self._ask_style()
            return self._ask_sections(ASK_SECTIONS_TEXT)

        if state == DialogueState.AWAITING_STYLE:
            return self._ask_sections(ASK_SECTIONS_AFTER_STYLE_TEXT)

        if state == DialogueState.AWAITING_SECTIONS:
            return self._generate(READY_FROM_SECTIONS_TEXT, text)

        return self._generate(REFINE_TEXT, text)
