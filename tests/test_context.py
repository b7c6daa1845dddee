"""Tests for instruction assembly."""

import pytest

from sitebot.constants import IMAGE_ONLY_REQUEST
from sitebot.context import ContextAssembler, ValidationError
from sitebot.models import AssistantTurn, Attachment, UserTurn


@pytest.fixture
def assembler() -> ContextAssembler:
    return ContextAssembler()


HISTORY = [
    UserTurn(id="1", text="Сайт для кофейни"),
    AssistantTurn(id="2", text="Какой стиль вы предпочитаете?", options=("Темный",)),
    UserTurn(id="3", text="Темный"),
]


class TestBuild:
    def test_transcript_then_request_then_new_document_frame(self, assembler):
        instruction = assembler.build(HISTORY, "Hero, Footer", None)
        lines = instruction.splitlines()

        assert lines[:4] == [
            "user: Сайт для кофейни",
            "assistant: Какой стиль вы предпочитаете?",
            "user: Темный",
            "user: Hero, Footer",
        ]
        assert "новый HTML документ" in instruction
        assert "BEGIN DOCUMENT" not in instruction

    def test_existing_artifact_is_framed_for_modification(self, assembler):
        instruction = assembler.build(HISTORY, "Сделай фон светлее", "<html>old</html>")

        assert "существующий документ" in instruction
        assert "Сохраняй структуру" in instruction
        assert "<html>old</html>" in instruction
        assert instruction.index("user: Сделай фон светлее") < instruction.index("<html>old</html>")

    def test_empty_artifact_still_counts_as_existing(self, assembler):
        instruction = assembler.build([], "Добавь Footer", "")

        assert "BEGIN DOCUMENT" in instruction

    def test_empty_history(self, assembler):
        instruction = assembler.build([], "Темный сайт с Hero", None)

        assert instruction.startswith("user: Темный сайт с Hero")


class TestValidation:
    def test_blank_request_without_images_is_rejected(self, assembler):
        with pytest.raises(ValidationError):
            assembler.build(HISTORY, "   ", None)

    def test_image_only_request_gets_default_text(self, assembler):
        image = Attachment(mime_type="image/png", data=b"\x89PNG")

        instruction = assembler.build([], "", None, attachments=(image,))

        assert f"user: {IMAGE_ONLY_REQUEST}" in instruction

    def test_request_text_is_stripped(self, assembler):
        assert assembler.request_text("  Hero  ") == "Hero"
