"""Shared fixtures for sitebot tests."""

from pathlib import Path

import pytest

from sitebot.context import ContextAssembler
from sitebot.database import Database
from sitebot.dialogue import DialogueController
from sitebot.session import BuilderSessionService

SAMPLE_DOCUMENT = "<!DOCTYPE html><html><body><h1>Кофейня</h1></body></html>"


class FakeGenerator:
    """Stand-in for GenerationClient that records every call."""

    def __init__(self, responses=None, error=None):
        self.responses = list(responses or [])
        self.error = error
        self.calls = []
        self.on_call = None

    async def generate(self, instruction, credential, attachments=()):
        self.calls.append({"instruction": instruction, "credential": credential, "attachments": attachments})
        if self.on_call is not None:
            self.on_call()
        if self.error is not None:
            raise self.error
        if self.responses:
            return self.responses.pop(0)
        return SAMPLE_DOCUMENT


@pytest.fixture
def db(tmp_path: Path) -> Database:
    database = Database(tmp_path / "sitebot.db")
    database.init()
    return database


@pytest.fixture
def generator() -> FakeGenerator:
    return FakeGenerator()


@pytest.fixture
def builder(db: Database, generator: FakeGenerator) -> BuilderSessionService:
    return BuilderSessionService(
        db=db,
        dialogue=DialogueController(),
        assembler=ContextAssembler(),
        generator=generator,
        service_credential="sk-service",
        generation_allowance=10,
        default_downloads=0,
    )
