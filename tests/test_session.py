"""Tests for the builder session service: turn handling, quota, persistence."""

import asyncio
import sqlite3
from datetime import date
from unittest.mock import MagicMock

import pytest

from sitebot.context import ContextAssembler, ValidationError
from sitebot.database import PersistenceWarning
from sitebot.dialogue import DialogueController
from sitebot.export import SiteExporter
from sitebot.models import DialogueState, QuotaState, StoredSession
from sitebot.openai_service import GenerationClient, ServiceError
from sitebot.quota import QuotaExceededError
from sitebot.session import BUSY_TEXT, BuilderSessionService, SessionBusyError, SessionRegistry

from tests.conftest import SAMPLE_DOCUMENT, FakeGenerator

FULL_REQUEST = "Темный сайт для кофейни с Hero и Footer"


def _service(db, generator, credential="sk-service", allowance=10, **kwargs) -> BuilderSessionService:
    return BuilderSessionService(
        db=db,
        dialogue=DialogueController(),
        assembler=ContextAssembler(),
        generator=generator,
        service_credential=credential,
        generation_allowance=allowance,
        **kwargs,
    )


def _mock_db() -> MagicMock:
    db = MagicMock()
    db.get_or_create_quota.return_value = QuotaState(10, 0)
    db.create_session.return_value = StoredSession(1, "100", "t", "active", "2026-01-01T00:00:00+00:00")
    return db


class BlockingGenerator:
    def __init__(self, result=SAMPLE_DOCUMENT):
        self.result = result
        self.started = asyncio.Event()
        self.release = asyncio.Event()

    async def generate(self, instruction, credential, attachments=()):
        self.started.set()
        await self.release.wait()
        return self.result


class TestGeneration:
    @pytest.mark.asyncio
    async def test_complete_request_generates_immediately(self, builder, generator, db):
        session = builder.open_session("100", "100")

        outcome = await builder.handle_input(session, FULL_REQUEST)

        assert session.state == DialogueState.READY
        assert outcome.generated is not None
        assert outcome.generated.content == SAMPLE_DOCUMENT
        assert outcome.generated.record_id is not None
        assert session.quota.generations_remaining == 9
        assert len(generator.calls) == 1
        assert generator.calls[0]["credential"] == "sk-service"
        assert db.get_or_create_quota("100", generation_allowance=10) == QuotaState(9, 0)

    @pytest.mark.asyncio
    async def test_sections_only_asks_for_style_without_generating(self, builder, generator):
        session = builder.open_session("100", "100")

        outcome = await builder.handle_input(session, "Hero, Footer")

        assert session.state == DialogueState.AWAITING_STYLE
        assert outcome.generated is None
        assert outcome.replies[0].options
        assert generator.calls == []
        assert session.quota.generations_remaining == 10

    @pytest.mark.asyncio
    async def test_clarifying_flow_sends_transcript(self, builder, generator):
        session = builder.open_session("100", "100")

        await builder.handle_input(session, "Сайт для кофейни")
        assert session.state == DialogueState.AWAITING_STYLE
        await builder.handle_input(session, "Темный")
        assert session.state == DialogueState.AWAITING_SECTIONS
        outcome = await builder.handle_input(session, "Hero, Footer")

        assert session.state == DialogueState.READY
        assert outcome.generated is not None
        instruction = generator.calls[0]["instruction"]
        assert instruction.index("user: Сайт для кофейни") < instruction.index("user: Темный")
        assert instruction.index("user: Темный") < instruction.index("user: Hero, Footer")
        assert "новый HTML документ" in instruction

    @pytest.mark.asyncio
    async def test_refinement_frames_current_document(self, builder, generator):
        session = builder.open_session("100", "100")
        await builder.handle_input(session, FULL_REQUEST)

        await builder.handle_input(session, "Сделай кнопку красной")

        instruction = generator.calls[1]["instruction"]
        assert "существующий документ" in instruction
        assert SAMPLE_DOCUMENT in instruction
        assert len(session.history) == 2

    @pytest.mark.asyncio
    async def test_eleventh_generation_is_refused(self, builder, generator, db):
        session = builder.open_session("100", "100")
        await builder.handle_input(session, FULL_REQUEST)
        for i in range(9):
            await builder.handle_input(session, f"Правка {i}")
        assert session.quota.generations_remaining == 0

        outcome = await builder.handle_input(session, "Еще одна правка")

        assert outcome.generated is None
        assert outcome.replies[-1].text.startswith("⚠️")
        assert len(generator.calls) == 10
        assert len(session.history) == 10
        assert db.get_or_create_quota("100", generation_allowance=10) == QuotaState(0, 0)

    @pytest.mark.asyncio
    async def test_override_credential_skips_quota(self, builder, generator):
        session = builder.open_session("100", "100")
        builder.set_override_credential(session, "  sk-user  ")

        outcome = await builder.handle_input(session, FULL_REQUEST)

        assert outcome.generated is not None
        assert generator.calls[0]["credential"] == "sk-user"
        assert session.quota.generations_remaining == 10

    @pytest.mark.asyncio
    async def test_blank_override_falls_back_to_service_key(self, builder, generator):
        session = builder.open_session("100", "100")
        builder.set_override_credential(session, "   ")

        await builder.handle_input(session, FULL_REQUEST)

        assert session.override_credential is None
        assert generator.calls[0]["credential"] == "sk-service"
        assert session.quota.generations_remaining == 9

    @pytest.mark.asyncio
    async def test_empty_model_output_is_committed(self, db):
        generator = FakeGenerator(responses=[""])
        builder = _service(db, generator)
        session = builder.open_session("100", "100")

        outcome = await builder.handle_input(session, FULL_REQUEST)

        assert outcome.generated is not None
        assert session.history.current() == ""
        assert session.quota.generations_remaining == 9


class TestFailures:
    @pytest.mark.asyncio
    async def test_service_error_commits_nothing(self, db):
        builder = _service(db, FakeGenerator(error=ServiceError("API Error: boom")))
        session = builder.open_session("100", "100")

        outcome = await builder.handle_input(session, FULL_REQUEST)

        assert outcome.generated is None
        assert outcome.replies[-1].text == "Ошибка: API Error: boom"
        assert len(session.history) == 0
        assert session.quota.generations_remaining == 10
        assert session.state == DialogueState.READY

    @pytest.mark.asyncio
    async def test_missing_service_key_is_reported(self, db):
        builder = _service(db, GenerationClient(model="gpt-test"), credential=None)
        session = builder.open_session("100", "100")

        outcome = await builder.handle_input(session, FULL_REQUEST)

        assert outcome.generated is None
        assert outcome.replies[-1].text.startswith("Ошибка:")
        assert "ключ API" in outcome.replies[-1].text
        assert session.quota.generations_remaining == 10

    @pytest.mark.asyncio
    async def test_blank_input_is_rejected(self, builder, generator, db):
        session = builder.open_session("100", "100")

        outcome = await builder.handle_input(session, "   ")

        assert outcome.replies[0].text.startswith("Ошибка:")
        assert session.state == DialogueState.IDLE
        assert generator.calls == []
        assert db.list_sessions("100") == []

    @pytest.mark.asyncio
    async def test_busy_session_rejects_input(self, builder, generator):
        session = builder.open_session("100", "100")
        session.busy = True

        outcome = await builder.handle_input(session, FULL_REQUEST)

        assert outcome.rejected is True
        assert [r.text for r in outcome.replies] == [BUSY_TEXT]
        assert session.turns == []
        assert generator.calls == []

    @pytest.mark.asyncio
    async def test_closed_session_discards_inflight_result(self, db):
        generator = BlockingGenerator()
        builder = _service(db, generator)
        session = builder.open_session("100", "100")

        pending = asyncio.create_task(builder.handle_input(session, FULL_REQUEST))
        await generator.started.wait()
        builder.close(session)
        outcome = await pending

        assert outcome.generated is None
        assert len(session.history) == 0
        assert session.quota.generations_remaining == 10
        assert session.busy is False

    @pytest.mark.asyncio
    async def test_closed_session_rejects_new_input(self, builder, generator):
        session = builder.open_session("100", "100")
        builder.close(session)

        outcome = await builder.handle_input(session, FULL_REQUEST)

        assert outcome.rejected is True
        assert generator.calls == []


class TestPersistence:
    @pytest.mark.asyncio
    async def test_user_turn_is_stored_before_generation(self, builder, generator, db):
        session = builder.open_session("100", "100")
        seen = []
        generator.on_call = lambda: seen.extend(db.list_turns(session.record_id))

        await builder.handle_input(session, FULL_REQUEST)

        assert seen[0].role == "user"
        assert seen[0].content == FULL_REQUEST

    @pytest.mark.asyncio
    async def test_session_title_comes_from_first_request(self, builder, db):
        session = builder.open_session("100", "100")

        await builder.handle_input(session, "Сайт для кофейни в центре города с доставкой")

        (stored,) = db.list_sessions("100")
        assert stored.id == session.record_id
        assert stored.title == "Сайт для кофейни в центре города с доставкой"[:30]

    @pytest.mark.asyncio
    async def test_write_failure_becomes_warning(self, generator):
        db = _mock_db()
        db.record_generation.side_effect = sqlite3.OperationalError("disk I/O error")
        builder = _service(db, generator)
        session = builder.open_session("100", "100")

        outcome = await builder.handle_input(session, FULL_REQUEST)

        assert outcome.generated is not None
        assert outcome.generated.record_id is None
        assert session.quota.generations_remaining == 9
        assert len(outcome.warnings) == 1
        assert isinstance(outcome.warnings[0], PersistenceWarning)
        assert "record_generation" in str(outcome.warnings[0])

    def test_quota_read_failure_uses_defaults(self, generator):
        db = _mock_db()
        db.get_or_create_quota.side_effect = sqlite3.OperationalError("locked")
        builder = _service(db, generator)

        session = builder.open_session("100", "100")

        assert session.quota.generations_remaining == 10

    @pytest.mark.asyncio
    async def test_anonymous_session_never_touches_store(self, generator):
        db = _mock_db()
        builder = _service(db, generator)
        session = builder.open_session("anon:-100", None)

        outcome = await builder.handle_input(session, FULL_REQUEST)

        assert outcome.generated is not None
        assert session.quota.generations_remaining == 9
        assert db.method_calls == []

    @pytest.mark.asyncio
    async def test_branching_from_earlier_version(self, db):
        generator = FakeGenerator(responses=["v0", "v1", "v2", "v0b"])
        builder = _service(db, generator)
        session = builder.open_session("100", "100")
        await builder.handle_input(session, FULL_REQUEST)
        await builder.handle_input(session, "Правка 1")
        await builder.handle_input(session, "Правка 2")

        session.history.select_cursor(0)
        await builder.handle_input(session, "Сделай фон синим")

        assert [v.content for v in session.history.versions] == ["v0", "v0b"]
        assert session.history.cursor == 1
        assert "--- BEGIN DOCUMENT ---\nv0\n" in generator.calls[3]["instruction"]
        stored = db.list_versions(session.record_id)
        assert [(v.version_index, v.content) for v in stored] == [(0, "v0"), (1, "v0b")]

    @pytest.mark.asyncio
    async def test_resume_restores_turns_and_versions(self, builder, db):
        session = builder.open_session("100", "100")
        await builder.handle_input(session, FULL_REQUEST)

        resumed = builder.resume_session("100", "100", session.record_id)

        assert resumed is not None
        assert [t.text for t in resumed.turns] == [t.text for t in session.turns]
        assert resumed.history.current() == SAMPLE_DOCUMENT
        assert resumed.state == DialogueState.READY
        assert resumed.quota.generations_remaining == 9

    @pytest.mark.asyncio
    async def test_close_marks_record_and_resume_reopens(self, builder, db):
        session = builder.open_session("100", "100")
        await builder.handle_input(session, FULL_REQUEST)

        builder.close(session)
        assert db.get_session(session.record_id).status == "closed"

        builder.resume_session("100", "100", session.record_id)
        assert db.get_session(session.record_id).status == "active"

    @pytest.mark.asyncio
    async def test_resume_refuses_foreign_session(self, builder):
        session = builder.open_session("100", "100")
        await builder.handle_input(session, FULL_REQUEST)

        assert builder.resume_session("200", "200", session.record_id) is None

    @pytest.mark.asyncio
    async def test_shared_version_resolves(self, builder):
        session = builder.open_session("100", "100")
        outcome = await builder.handle_input(session, FULL_REQUEST)

        shared = builder.shared_version(outcome.generated.record_id)

        assert shared.content == SAMPLE_DOCUMENT
        assert [c.id for c in builder.list_chats("100")] == [session.record_id]


class TestExport:
    def test_export_before_generation_is_refused(self, builder, tmp_path):
        session = builder.open_session("100", "100")

        with pytest.raises(ValidationError):
            builder.export_current(session, SiteExporter(tmp_path))

    @pytest.mark.asyncio
    async def test_export_requires_download_credit(self, builder, db, tmp_path):
        exporter = SiteExporter(tmp_path / "exports")
        session = builder.open_session("100", "100")
        await builder.handle_input(session, FULL_REQUEST)

        with pytest.raises(QuotaExceededError):
            builder.export_current(session, exporter)

        assert builder.grant_downloads("100", 5, live=session) == QuotaState(9, 5)
        artifact, warnings = builder.export_current(session, exporter)

        assert warnings == []
        assert artifact.path.read_text(encoding="utf-8") == SAMPLE_DOCUMENT
        assert session.quota.downloads_remaining == 4
        assert db.get_or_create_quota("100", generation_allowance=10) == QuotaState(9, 4)

    def test_grant_without_live_session_persists(self, builder, db):
        state = builder.grant_downloads("100", 1)

        assert state == QuotaState(10, 1)
        assert db.get_or_create_quota("100", generation_allowance=10) == QuotaState(10, 1)


async def _three_versions(db):
    builder = _service(db, FakeGenerator(responses=["v1", "v2", "v3"]))
    session = builder.open_session("100", "100")
    await builder.handle_input(session, FULL_REQUEST)
    await builder.handle_input(session, "Правка 1")
    await builder.handle_input(session, "Правка 2")
    return builder, session


class TestBusyGuards:
    @pytest.mark.asyncio
    async def test_cursor_and_export_refused_during_generation(self, db, tmp_path):
        builder, session = await _three_versions(db)
        session.quota.grant_downloads(1)
        held = BlockingGenerator(result="v3-refined")
        builder.generator = held

        pending = asyncio.create_task(builder.handle_input(session, "Сделай фон светлее"))
        await held.started.wait()

        with pytest.raises(SessionBusyError):
            builder.undo(session)
        with pytest.raises(SessionBusyError):
            builder.redo(session)
        with pytest.raises(SessionBusyError):
            builder.select_version(session, 0)
        with pytest.raises(SessionBusyError, match=BUSY_TEXT):
            builder.export_current(session, SiteExporter(tmp_path))

        held.release.set()
        await pending

        assert [v.content for v in session.history.versions] == ["v1", "v2", "v3", "v3-refined"]
        assert session.quota.downloads_remaining == 1

    @pytest.mark.asyncio
    async def test_result_descends_from_instruction_base_even_if_cursor_moved(self, db):
        builder, session = await _three_versions(db)
        held = BlockingGenerator(result="v3-refined")
        builder.generator = held

        pending = asyncio.create_task(builder.handle_input(session, "Сделай фон светлее"))
        await held.started.wait()
        session.history.undo()
        held.release.set()
        await pending

        assert [v.content for v in session.history.versions] == ["v1", "v2", "v3", "v3-refined"]
        assert session.history.cursor == 3
        stored = db.list_versions(session.record_id)
        assert [v.content for v in stored] == ["v1", "v2", "v3", "v3-refined"]

    @pytest.mark.asyncio
    async def test_cursor_moves_when_idle(self, db):
        builder, session = await _three_versions(db)

        assert builder.undo(session) is True
        assert builder.redo(session) is True
        builder.select_version(session, 0)

        assert session.history.current() == "v1"


class TestDailyRefill:
    @pytest.mark.asyncio
    async def test_open_session_gets_new_allowance_next_day(self, db, generator):
        days = [date(2026, 3, 1)]
        builder = _service(db, generator, allowance=1, today=lambda: days[0])
        session = builder.open_session("100", "100")
        await builder.handle_input(session, FULL_REQUEST)

        refused = await builder.handle_input(session, "Правка")
        assert refused.generated is None
        assert refused.replies[-1].text.startswith("⚠️")

        days[0] = date(2026, 3, 2)
        outcome = await builder.handle_input(session, "Правка")

        assert outcome.generated is not None
        assert session.quota.generations_remaining == 0
        assert len(generator.calls) == 2

    @pytest.mark.asyncio
    async def test_refill_keeps_download_credits(self, db, generator):
        days = [date(2026, 3, 1)]
        builder = _service(db, generator, allowance=2, today=lambda: days[0])
        session = builder.open_session("100", "100")
        await builder.handle_input(session, FULL_REQUEST)
        builder.grant_downloads("100", 5, live=session)

        days[0] = date(2026, 3, 2)
        builder.refresh_quota(session)

        assert session.quota.snapshot() == QuotaState(2, 5)

    @pytest.mark.asyncio
    async def test_anonymous_session_refills_locally(self, generator):
        days = [date(2026, 3, 1)]
        db = _mock_db()
        builder = _service(db, generator, allowance=1, today=lambda: days[0])
        session = builder.open_session("anon:-5", None)
        await builder.handle_input(session, FULL_REQUEST)
        assert session.quota.generations_remaining == 0

        days[0] = date(2026, 3, 2)
        outcome = await builder.handle_input(session, "Правка")

        assert outcome.generated is not None
        assert db.method_calls == []


class TestDialogueStatePersistence:
    @pytest.mark.asyncio
    async def test_resume_keeps_clarifying_state(self, builder, generator):
        session = builder.open_session("100", "100")
        await builder.handle_input(session, "Сайт для кофейни")
        assert session.state == DialogueState.AWAITING_STYLE

        resumed = builder.resume_session("100", "100", session.record_id)
        assert resumed.state == DialogueState.AWAITING_STYLE

        await builder.handle_input(resumed, "Темный")

        assert resumed.state == DialogueState.AWAITING_SECTIONS
        assert generator.calls == []


class TestDeleteChat:
    @pytest.mark.asyncio
    async def test_delete_removes_chat_and_closes_live_session(self, builder, db):
        session = builder.open_session("100", "100")
        outcome = await builder.handle_input(session, FULL_REQUEST)
        record_id = session.record_id

        assert builder.delete_chat("100", record_id, live=session) is True

        assert session.closed is True
        assert db.get_session(record_id) is None
        assert db.list_turns(record_id) == []
        assert builder.shared_version(outcome.generated.record_id) is None
        assert builder.list_chats("100") == []

    @pytest.mark.asyncio
    async def test_delete_refuses_foreign_chat(self, builder, db):
        session = builder.open_session("100", "100")
        await builder.handle_input(session, FULL_REQUEST)

        assert builder.delete_chat("200", session.record_id) is False
        assert db.get_session(session.record_id) is not None
        assert session.closed is False

    @pytest.mark.asyncio
    async def test_other_live_session_stays_open(self, builder):
        first = builder.open_session("100", "100")
        await builder.handle_input(first, FULL_REQUEST)
        current = builder.open_session("100", "100")
        await builder.handle_input(current, FULL_REQUEST)

        assert builder.delete_chat("100", first.record_id, live=current) is True
        assert current.closed is False


class TestSessionRegistry:
    def _session(self, builder, key):
        return builder.open_session(key, None)

    def test_idle_sessions_are_evicted(self, builder):
        now = [0.0]
        registry = SessionRegistry(idle_ttl=60, clock=lambda: now[0])
        registry.put(self._session(builder, "anon:1"))
        registry.put(self._session(builder, "anon:2"))

        now[0] = 30.0
        registry.get("anon:2")
        now[0] = 61.0
        evicted = registry.evict_idle()

        assert [s.key for s in evicted] == ["anon:1"]
        assert registry.get("anon:1") is None
        assert len(registry) == 1

    def test_busy_session_is_kept(self, builder):
        now = [0.0]
        registry = SessionRegistry(idle_ttl=60, clock=lambda: now[0])
        session = self._session(builder, "anon:1")
        session.busy = True
        registry.put(session)

        now[0] = 120.0

        assert registry.evict_idle() == []
        assert len(registry) == 1
