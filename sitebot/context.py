from __future__ import annotations

from typing import Sequence

from .constants import IMAGE_ONLY_REQUEST
from .models import Attachment, ConversationTurn


class ValidationError(ValueError):
    pass


NEW_DOCUMENT_FRAME = (
    "Задача: создай новый HTML документ для Landing Page по этому диалогу. "
    "Верни ПОЛНЫЙ HTML код."
)

EXISTING_DOCUMENT_FRAME = (
    "У меня есть следующий HTML код. Это существующий документ, который нужно изменить "
    "согласно последнему запросу пользователя. Сохраняй структуру, если не просили иного. "
    "Верни ПОЛНЫЙ обновленный HTML код.\n"
    "--- BEGIN DOCUMENT ---\n"
    "{document}\n"
    "--- END DOCUMENT ---"
)


class ContextAssembler:
    @staticmethod
    def request_text(text: str, attachments: Sequence[Attachment] = ()) -> str:
        stripped = text.strip()
        if stripped:
            return stripped
        if attachments:
            return IMAGE_ONLY_REQUEST
        raise ValidationError("Пустой запрос: напишите, что нужно сделать, или приложите изображение.")

    @staticmethod
    def transcript(turns: Sequence[ConversationTurn]) -> list[str]:
        return [f"{turn.role}: {turn.text}" for turn in turns]

    def build(
        self,
        history: Sequence[ConversationTurn],
        request_text: str,
        current_artifact: str | None,
        attachments: Sequence[Attachment] = (),
    ) -> str:
        request = self.request_text(request_text, attachments)

        lines = self.transcript(history)
        lines.append(f"user: {request}")
        lines.append("")

        if current_artifact is None:
            lines.append(NEW_DOCUMENT_FRAME)
        else:
            lines.append(EXISTING_DOCUMENT_FRAME.format(document=current_artifact))

        return "\n".join(lines)
