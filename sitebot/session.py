from __future__ import annotations

import asyncio
import logging
import sqlite3
import time
import uuid
from dataclasses import dataclass, field
from datetime import date, datetime, timezone
from typing import Any, Callable, Sequence

from .constants import SESSION_IDLE_TTL_SECONDS
from .context import ContextAssembler, ValidationError
from .database import Database, PersistenceWarning
from .dialogue import DialogueController
from .export import ExportArtifact, SiteExporter
from .history import VersionStore
from .models import (
    ArtifactVersion,
    AssistantTurn,
    Attachment,
    ConversationTurn,
    DialogueState,
    Generate,
    QuotaState,
    StoredSession,
    StoredVersion,
    UserTurn,
)
from .openai_service import CredentialError, GenerationClient, ServiceError
from .quota import QuotaExceededError, QuotaGate

logger = logging.getLogger(__name__)

BUSY_TEXT = "Подождите, я еще работаю над предыдущим запросом."


class SessionBusyError(RuntimeError):
    pass


def _utc_date() -> date:
    return datetime.now(timezone.utc).date()


@dataclass(eq=False)
class BuilderSession:
    key: str
    account_id: str | None
    quota: QuotaGate
    history: VersionStore = field(default_factory=VersionStore)
    turns: list[ConversationTurn] = field(default_factory=list)
    state: DialogueState = DialogueState.IDLE
    record_id: int | None = None
    override_credential: str | None = None
    quota_day: date | None = None
    busy: bool = False
    closed: bool = False
    pending_generation: asyncio.Task[str] | None = None

    @property
    def anonymous(self) -> bool:
        return self.account_id is None

    def append_turn(self, turn: ConversationTurn) -> None:
        self.turns.append(turn)


@dataclass(slots=True)
class TurnOutcome:
    replies: list[AssistantTurn] = field(default_factory=list)
    generated: ArtifactVersion | None = None
    warnings: list[PersistenceWarning] = field(default_factory=list)
    rejected: bool = False


def _turn_id() -> str:
    return uuid.uuid4().hex


def _error_turn(exc: Exception) -> AssistantTurn:
    if isinstance(exc, QuotaExceededError):
        return AssistantTurn(id=_turn_id(), text=f"⚠️ {exc}")
    return AssistantTurn(id=_turn_id(), text=f"Ошибка: {exc}")


class SessionRegistry:
    """Live sessions keyed by account (or chat, for anonymous use).

    Sessions untouched for ``idle_ttl`` seconds are handed back by
    ``evict_idle`` so the caller can close them. A busy session is never
    evicted.
    """

    def __init__(
        self,
        idle_ttl: float = SESSION_IDLE_TTL_SECONDS,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.idle_ttl = idle_ttl
        self._clock = clock
        self._sessions: dict[str, BuilderSession] = {}
        self._last_seen: dict[str, float] = {}

    def get(self, key: str) -> BuilderSession | None:
        session = self._sessions.get(key)
        if session is not None:
            self._last_seen[key] = self._clock()
        return session

    def put(self, session: BuilderSession) -> None:
        self._sessions[session.key] = session
        self._last_seen[session.key] = self._clock()

    def pop(self, key: str) -> BuilderSession | None:
        self._last_seen.pop(key, None)
        return self._sessions.pop(key, None)

    def evict_idle(self) -> list[BuilderSession]:
        now = self._clock()
        expired = [
            key
            for key, seen in self._last_seen.items()
            if now - seen > self.idle_ttl and not self._sessions[key].busy
        ]
        evicted = []
        for key in expired:
            session = self.pop(key)
            if session is not None:
                evicted.append(session)
        return evicted

    def __len__(self) -> int:
        return len(self._sessions)


class BuilderSessionService:
    def __init__(
        self,
        db: Database | None,
        dialogue: DialogueController,
        assembler: ContextAssembler,
        generator: GenerationClient,
        service_credential: str | None,
        generation_allowance: int = 10,
        default_downloads: int = 0,
        today: Callable[[], date] = _utc_date,
    ) -> None:
        self.db = db
        self.dialogue = dialogue
        self.assembler = assembler
        self.generator = generator
        self.service_credential = service_credential
        self.generation_allowance = generation_allowance
        self.default_downloads = default_downloads
        self.today = today

    def _persist(
        self,
        session: BuilderSession,
        warnings: list[PersistenceWarning],
        method: str,
        *args: Any,
        **kwargs: Any,
    ) -> Any:
        if session.anonymous or self.db is None:
            return None
        try:
            return getattr(self.db, method)(*args, **kwargs)
        except sqlite3.Error as exc:
            warning = PersistenceWarning(f"{method}: {exc}")
            logger.warning("Persistence failed for session %s: %s", session.key, warning)
            warnings.append(warning)
            return None

    @staticmethod
    def _ensure_idle(session: BuilderSession) -> None:
        if session.busy:
            raise SessionBusyError(BUSY_TEXT)

    def _load_quota(self, account_id: str | None, today: date) -> QuotaGate:
        if account_id is None or self.db is None:
            return QuotaGate(self.generation_allowance, 0)
        try:
            state = self.db.get_or_create_quota(
                account_id,
                generation_allowance=self.generation_allowance,
                default_downloads=self.default_downloads,
                today=today,
            )
        except sqlite3.Error as exc:
            logger.warning("Quota load failed for %s, using defaults: %s", account_id, exc)
            state = QuotaState(self.generation_allowance, self.default_downloads)
        return QuotaGate.from_state(state)

    def refresh_quota(self, session: BuilderSession) -> None:
        """Apply the daily generation refill to a session that stayed open past midnight UTC."""
        today = self.today()
        if session.quota_day == today:
            return
        session.quota_day = today

        if session.anonymous or self.db is None:
            session.quota.reset_generations(self.generation_allowance)
            return

        try:
            state = self.db.get_or_create_quota(
                session.account_id,
                generation_allowance=self.generation_allowance,
                default_downloads=self.default_downloads,
                today=today,
            )
        except sqlite3.Error as exc:
            logger.warning("Quota refresh failed for %s, refilling locally: %s", session.account_id, exc)
            session.quota.reset_generations(self.generation_allowance)
            return
        session.quota = QuotaGate.from_state(state)

    def open_session(self, key: str, account_id: str | None) -> BuilderSession:
        today = self.today()
        return BuilderSession(
            key=key,
            account_id=account_id,
            quota=self._load_quota(account_id, today),
            quota_day=today,
        )

    def resume_session(self, key: str, account_id: str, session_id: int) -> BuilderSession | None:
        if self.db is None:
            return None

        stored = self.db.get_session(session_id)
        if stored is None or stored.account_id != account_id:
            return None
        if stored.status != "active":
            self.db.update_session(stored.id, status="active")

        turns: list[ConversationTurn] = []
        for row in self.db.list_turns(session_id):
            if row.role == "user":
                turns.append(UserTurn(id=str(row.id), text=row.content))
            else:
                turns.append(AssistantTurn(id=str(row.id), text=row.content))

        history = VersionStore.restore(
            ArtifactVersion(
                index=row.version_index,
                content=row.content,
                instruction=row.instruction,
                created_at=datetime.fromisoformat(row.created_at),
                record_id=row.id,
            )
            for row in self.db.list_versions(session_id)
        )

        try:
            state = DialogueState(stored.dialogue_state)
        except ValueError:
            logger.warning("Unknown dialogue state %r on session %s", stored.dialogue_state, stored.id)
            state = DialogueState.READY if turns else DialogueState.IDLE

        today = self.today()
        return BuilderSession(
            key=key,
            account_id=account_id,
            quota=self._load_quota(account_id, today),
            quota_day=today,
            history=history,
            turns=turns,
            state=state,
            record_id=stored.id,
        )

    def list_chats(self, account_id: str, limit: int = 10) -> list[StoredSession]:
        if self.db is None:
            return []
        return self.db.list_sessions(account_id, limit=limit)

    def delete_chat(self, account_id: str, session_id: int, live: BuilderSession | None = None) -> bool:
        """Delete a stored chat with its turns and versions. A live session on it is closed first."""
        if self.db is None:
            return False

        stored = self.db.get_session(session_id)
        if stored is None or stored.account_id != account_id:
            return False

        if live is not None and live.record_id == session_id:
            self.close(live)
        return self.db.delete_session(session_id)

    def shared_version(self, version_id: int) -> StoredVersion | None:
        if self.db is None:
            return None
        return self.db.get_version(version_id)

    def close(self, session: BuilderSession) -> None:
        """Abandon the session; an in-flight generation result will be discarded."""
        session.closed = True
        task = session.pending_generation
        if task is not None and not task.done():
            task.cancel()
        if session.record_id is not None:
            self._persist(session, [], "update_session", session.record_id, status="closed")

    def undo(self, session: BuilderSession) -> bool:
        self._ensure_idle(session)
        return session.history.undo()

    def redo(self, session: BuilderSession) -> bool:
        self._ensure_idle(session)
        return session.history.redo()

    def select_version(self, session: BuilderSession, index: int) -> None:
        self._ensure_idle(session)
        session.history.select_cursor(index)

    def _record_turn(self, session: BuilderSession, outcome: TurnOutcome, turn: ConversationTurn) -> None:
        session.append_turn(turn)
        if session.record_id is not None:
            self._persist(
                session,
                outcome.warnings,
                "append_turn",
                session.record_id,
                turn.role,
                turn.text,
            )

    def _reply(self, session: BuilderSession, outcome: TurnOutcome, turn: AssistantTurn) -> None:
        self._record_turn(session, outcome, turn)
        outcome.replies.append(turn)

    def _ensure_record(self, session: BuilderSession, outcome: TurnOutcome, title: str) -> None:
        if session.record_id is not None or session.anonymous:
            return
        stored = self._persist(
            session,
            outcome.warnings,
            "create_session",
            session.account_id,
            title[:30] or "Новый сайт",
        )
        if stored is not None:
            session.record_id = stored.id

    async def handle_input(
        self,
        session: BuilderSession,
        text: str,
        attachments: Sequence[Attachment] = (),
    ) -> TurnOutcome:
        outcome = TurnOutcome()

        if session.closed:
            outcome.rejected = True
            return outcome

        if session.busy:
            outcome.rejected = True
            outcome.replies.append(AssistantTurn(id=_turn_id(), text=BUSY_TEXT))
            return outcome

        session.busy = True
        try:
            try:
                request_text = self.assembler.request_text(text, attachments)
            except ValidationError as exc:
                self._reply(session, outcome, _error_turn(exc))
                return outcome

            prior_turns = list(session.turns)
            self._ensure_record(session, outcome, request_text)
            self._record_turn(
                session,
                outcome,
                UserTurn(id=_turn_id(), text=request_text, attachments=tuple(attachments)),
            )

            step = self.dialogue.advance(session.state, request_text)
            session.state = step.next_state
            if session.record_id is not None:
                self._persist(
                    session,
                    outcome.warnings,
                    "update_session",
                    session.record_id,
                    dialogue_state=session.state.value,
                )
            self._reply(session, outcome, step.reply)

            for command in step.commands:
                if isinstance(command, Generate):
                    await self._generate(session, outcome, prior_turns, command.request_text, attachments)
            return outcome
        finally:
            session.busy = False

    async def _generate(
        self,
        session: BuilderSession,
        outcome: TurnOutcome,
        prior_turns: list[ConversationTurn],
        request_text: str,
        attachments: Sequence[Attachment],
    ) -> None:
        has_override = bool(session.override_credential)
        self.refresh_quota(session)
        base_index = session.history.cursor
        try:
            session.quota.ensure_generation_available(has_override)
            instruction = self.assembler.build(
                prior_turns,
                request_text,
                session.history.current(),
                attachments,
            )
            credential = session.override_credential or self.service_credential
            task = asyncio.create_task(self.generator.generate(instruction, credential, attachments))
            session.pending_generation = task
            try:
                content = await task
            finally:
                session.pending_generation = None
        except asyncio.CancelledError:
            if session.closed:
                logger.info("Generation for session %s cancelled on close", session.key)
                return
            raise
        except (ValidationError, QuotaExceededError, CredentialError, ServiceError) as exc:
            logger.warning("Generation refused for session %s: %s", session.key, exc)
            self._reply(session, outcome, _error_turn(exc))
            return

        if session.closed:
            logger.info("Discarding generation result for closed session %s", session.key)
            return

        # The new version always descends from the document the instruction was built on.
        version = session.history.commit(content, instruction, parent=base_index)
        session.quota.try_consume_generation(has_override)
        outcome.generated = version

        if session.record_id is not None:
            record_id = self._persist(
                session,
                outcome.warnings,
                "record_generation",
                session.record_id,
                version.index,
                version.content,
                version.instruction,
                session.account_id,
                session.quota.snapshot(),
            )
            if record_id is not None:
                session.history.attach_record_id(version.index, record_id)
                outcome.generated = session.history.current_version()
        else:
            self._persist(
                session,
                outcome.warnings,
                "update_quota",
                session.account_id,
                session.quota.snapshot(),
            )

    def set_override_credential(self, session: BuilderSession, credential: str | None) -> None:
        session.override_credential = credential.strip() if credential and credential.strip() else None

    def export_current(self, session: BuilderSession, exporter: SiteExporter) -> tuple[ExportArtifact, list[PersistenceWarning]]:
        self._ensure_idle(session)
        content = session.history.current()
        if content is None:
            raise ValidationError("Сначала сгенерируйте сайт.")

        session.quota.ensure_download_available()
        artifact = exporter.export(session.key.replace(":", "_"), content)
        session.quota.try_consume_download()

        warnings: list[PersistenceWarning] = []
        self._persist(
            session,
            warnings,
            "update_quota",
            session.account_id,
            session.quota.snapshot(),
        )
        return artifact, warnings

    def grant_downloads(self, account_id: str, count: int, live: BuilderSession | None = None) -> QuotaState:
        """Credit purchased downloads to an account, keeping a live session's gate in sync."""
        gate = live.quota if live is not None else self._load_quota(account_id, self.today())
        gate.grant_downloads(count)
        if self.db is not None:
            self.db.update_quota(account_id, gate.snapshot())
        return gate.snapshot()
