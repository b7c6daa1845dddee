from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Literal, Union


class DialogueState(str, Enum):
    IDLE = "idle"
    AWAITING_STYLE = "awaiting_style"
    AWAITING_SECTIONS = "awaiting_sections"
    READY = "ready"


@dataclass(frozen=True, slots=True)
class Attachment:
    mime_type: str
    data: bytes


@dataclass(frozen=True, slots=True)
class UserTurn:
    id: str
    text: str
    attachments: tuple[Attachment, ...] = ()
    kind: Literal["user"] = "user"

    @property
    def role(self) -> str:
        return self.kind


@dataclass(frozen=True, slots=True)
class AssistantTurn:
    id: str
    text: str
    options: tuple[str, ...] | None = None
    multi_options: tuple[str, ...] | None = None
    kind: Literal["assistant"] = "assistant"

    @property
    def role(self) -> str:
        return self.kind


ConversationTurn = Union[UserTurn, AssistantTurn]


@dataclass(frozen=True, slots=True)
class ArtifactVersion:
    index: int
    content: str
    instruction: str
    created_at: datetime
    record_id: int | None = None


@dataclass(frozen=True, slots=True)
class QuotaState:
    generations_remaining: int
    downloads_remaining: int


@dataclass(frozen=True, slots=True)
class Classification:
    style_matched: bool
    section_matched: bool


# Commands emitted by the dialogue controller; the caller dispatches them.
@dataclass(frozen=True, slots=True)
class AskStyle:
    options: tuple[str, ...]


@dataclass(frozen=True, slots=True)
class AskSections:
    options: tuple[str, ...]


@dataclass(frozen=True, slots=True)
class Generate:
    request_text: str


DialogueCommand = Union[AskStyle, AskSections, Generate]


@dataclass(frozen=True, slots=True)
class DialogueStep:
    next_state: DialogueState
    reply: AssistantTurn
    commands: tuple[DialogueCommand, ...] = ()

    @property
    def triggers_generation(self) -> bool:
        return any(isinstance(command, Generate) for command in self.commands)


@dataclass(slots=True)
class StoredSession:
    id: int
    account_id: str
    title: str
    status: str
    created_at: str
    dialogue_state: str = "idle"


@dataclass(slots=True)
class StoredTurn:
    id: int
    session_id: int
    turn_index: int
    role: str
    content: str
    created_at: str


@dataclass(slots=True)
class StoredVersion:
    id: int
    session_id: int
    version_index: int
    content: str
    instruction: str
    created_at: str

