from __future__ import annotations

import logging
from typing import Any

from telegram import InlineKeyboardButton, InlineKeyboardMarkup, InputFile, Update
from telegram.error import TelegramError
from telegram.ext import ContextTypes

from .analysis import analyze, format_analysis
from .constants import DEFAULT_VIEWPORT, DOWNLOAD_PACKS, VIEWPORTS
from .context import ValidationError
from .export import SiteExporter
from .identity import resolve_account_id
from .models import AssistantTurn, Attachment, DialogueState
from .preview import PreviewRenderer
from .quota import QuotaExceededError
from .session import BuilderSession, BuilderSessionService, SessionBusyError, SessionRegistry, TurnOutcome

logger = logging.getLogger(__name__)


COMMANDS_HINT = "Команды: /new, /status, /versions, /preview, /analyze, /export, /help"

STATE_DISPLAY = {
    DialogueState.IDLE: "ожидаю описание сайта",
    DialogueState.AWAITING_STYLE: "жду выбор стиля",
    DialogueState.AWAITING_SECTIONS: "жду выбор разделов",
    DialogueState.READY: "готов к правкам",
}


def _service(context: ContextTypes.DEFAULT_TYPE, key: str) -> Any:
    return context.application.bot_data[key]


def _session_key(update: Update) -> tuple[str, str | None]:
    account_id = resolve_account_id(update.effective_user)
    if account_id is not None:
        return account_id, account_id
    chat_id = update.effective_chat.id if update.effective_chat else 0
    return f"anon:{chat_id}", None


def _current_session(update: Update, context: ContextTypes.DEFAULT_TYPE) -> BuilderSession:
    registry: SessionRegistry = _service(context, "sessions")
    builder: BuilderSessionService = _service(context, "builder")

    for stale in registry.evict_idle():
        builder.close(stale)

    key, account_id = _session_key(update)
    session = registry.get(key)
    if session is None:
        session = builder.open_session(key, account_id)
        registry.put(session)
    return session


def _viewport(context: ContextTypes.DEFAULT_TYPE) -> str:
    if context.user_data is None:
        return DEFAULT_VIEWPORT
    return context.user_data.get("viewport", DEFAULT_VIEWPORT)


def _viewport_keyboard(current: str) -> InlineKeyboardMarkup:
    labels = {"compact": "📱 Телефон", "medium": "📟 Планшет", "full": "🖥 Десктоп"}
    buttons = [
        InlineKeyboardButton(
            f"• {labels[name]}" if name == current else labels[name],
            callback_data=f"viewport:{name}",
        )
        for name in VIEWPORTS
    ]
    return InlineKeyboardMarkup([buttons])


def _sections_keyboard(options: tuple[str, ...], selected: set[int]) -> InlineKeyboardMarkup:
    rows = [
        [InlineKeyboardButton(f"✅ {option}" if idx in selected else option, callback_data=f"section:{idx}")]
        for idx, option in enumerate(options)
    ]
    rows.append([InlineKeyboardButton("Готово", callback_data="sections:done")])
    return InlineKeyboardMarkup(rows)


def _reply_markup(turn: AssistantTurn, context: ContextTypes.DEFAULT_TYPE) -> InlineKeyboardMarkup | None:
    if turn.options:
        return InlineKeyboardMarkup(
            [[InlineKeyboardButton(option, callback_data=f"style:{idx}")] for idx, option in enumerate(turn.options)]
        )
    if turn.multi_options:
        if context.user_data is not None:
            context.user_data["selected_sections"] = set()
        return _sections_keyboard(turn.multi_options, set())
    return None


async def _send_preview(
    update: Update,
    context: ContextTypes.DEFAULT_TYPE,
    content: str,
    caption: str,
    viewport: str | None = None,
) -> None:
    if update.effective_message is None:
        return

    renderer: PreviewRenderer = _service(context, "renderer")
    viewport = viewport or _viewport(context)
    rendered = renderer.render(content, viewport)
    await update.effective_message.reply_document(
        document=InputFile(rendered.as_bytes(), filename=f"preview_{viewport}.html"),
        caption=caption,
        reply_markup=_viewport_keyboard(viewport),
    )


def _version_caption(session: BuilderSession) -> str:
    version = session.history.current_version()
    if version is None:
        return ""
    caption = f"Версия {version.index + 1} из {len(session.history)}"
    if version.record_id is not None:
        caption += f"\nСсылка для просмотра: /view {version.record_id}"
    return caption


async def _send_outcome(
    update: Update,
    context: ContextTypes.DEFAULT_TYPE,
    session: BuilderSession,
    outcome: TurnOutcome,
) -> None:
    if update.effective_message is None:
        return

    for reply in outcome.replies:
        await update.effective_message.reply_text(reply.text, reply_markup=_reply_markup(reply, context))

    if outcome.generated is not None:
        content = outcome.generated.content
        if not content:
            await update.effective_message.reply_text(
                "Модель вернула пустой документ. Попробуйте переформулировать запрос."
            )
        await _send_preview(update, context, content, _version_caption(session))

    if outcome.warnings:
        await update.effective_message.reply_text(
            "Изменения применены, но сохранить их в историю не удалось. Сессия продолжает работать."
        )


async def _process_input(
    update: Update,
    context: ContextTypes.DEFAULT_TYPE,
    text: str,
    attachments: tuple[Attachment, ...] = (),
) -> None:
    if update.effective_message is None:
        return

    builder: BuilderSessionService = _service(context, "builder")
    session = _current_session(update, context)

    try:
        outcome = await builder.handle_input(session, text, attachments)
        await _send_outcome(update, context, session, outcome)
    except Exception as exc:  # pragma: no cover
        logger.exception("Unexpected error in message handler: %s", exc)
        await update.effective_message.reply_text("Произошла ошибка при обработке сообщения. Попробуйте еще раз.")


async def start_command(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    if update.effective_message is None:
        return

    lines = [
        "Привет! Я собираю одностраничные сайты по описанию.",
        "Опишите, какой сайт нужен: стиль (например, «Темный» или «Минимализм») и разделы (Hero, Услуги, Цены, Footer...).",
        "Если чего-то не хватит, я уточню. После генерации можно просить правки обычным текстом.",
        "",
        "Генерации обновляются ежедневно, скачивание готового файла расходует кредит.",
        COMMANDS_HINT,
    ]
    await update.effective_message.reply_text("\n".join(lines))


async def help_command(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    if update.effective_message is None:
        return
    await update.effective_message.reply_text(
        "Команды:\n"
        "/new - начать новый сайт\n"
        "/status - лимиты и состояние диалога\n"
        "/versions - история версий\n"
        "/undo, /redo - переключение между версиями\n"
        "/preview [compact|medium|full] - предпросмотр текущей версии\n"
        "/export - скачать HTML (расходует скачивание)\n"
        "/key <ключ> - свой ключ API (генерации не расходуются), /key без аргумента - сбросить\n"
        "/analyze - анализ текущей версии: SEO, палитра, структура\n"
        "/view <id> - открыть опубликованную версию\n"
        "/chats - прошлые сайты (там же можно удалить сайт)"
    )


async def new_command(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    if update.effective_message is None:
        return

    registry: SessionRegistry = _service(context, "sessions")
    builder: BuilderSessionService = _service(context, "builder")

    key, account_id = _session_key(update)
    previous = registry.pop(key)
    override = None
    if previous is not None:
        override = previous.override_credential
        builder.close(previous)

    session = builder.open_session(key, account_id)
    builder.set_override_credential(session, override)
    registry.put(session)
    await update.effective_message.reply_text("Начинаем новый сайт. Опишите, что нужно сделать.")


async def status_command(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    if update.effective_message is None:
        return

    builder: BuilderSessionService = _service(context, "builder")
    session = _current_session(update, context)
    builder.refresh_quota(session)
    quota = session.quota.snapshot()
    cursor = session.history.cursor

    lines = [
        f"Состояние: {STATE_DISPLAY[session.state]}.",
        f"Генераций осталось: {quota.generations_remaining}.",
        f"Скачиваний осталось: {quota.downloads_remaining}.",
        f"Версий: {len(session.history)}, текущая: {cursor + 1 if cursor >= 0 else '-'}.",
        f"Свой ключ API: {'задан' if session.override_credential else 'нет'}.",
    ]
    if session.anonymous:
        lines.append("Анонимный режим: лимиты не сохраняются.")
    await update.effective_message.reply_text("\n".join(lines))


async def versions_command(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    if update.effective_message is None:
        return

    session = _current_session(update, context)
    versions = session.history.versions
    if not versions:
        await update.effective_message.reply_text("История версий пуста.")
        return

    rows = []
    for version in versions:
        marker = "• " if version.index == session.history.cursor else ""
        label = f"{marker}Версия {version.index + 1} ({version.created_at:%H:%M})"
        rows.append([InlineKeyboardButton(label, callback_data=f"version:{version.index}")])
    await update.effective_message.reply_text("Выберите версию:", reply_markup=InlineKeyboardMarkup(rows))


async def _show_current(update: Update, context: ContextTypes.DEFAULT_TYPE, session: BuilderSession) -> None:
    content = session.history.current()
    if content is None:
        if update.effective_message is not None:
            await update.effective_message.reply_text("Сайта пока нет. Начните диалог, чтобы создать его.")
        return
    await _send_preview(update, context, content, _version_caption(session))


async def undo_command(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    if update.effective_message is None:
        return
    builder: BuilderSessionService = _service(context, "builder")
    session = _current_session(update, context)
    try:
        moved = builder.undo(session)
    except SessionBusyError as exc:
        await update.effective_message.reply_text(str(exc))
        return
    if not moved:
        await update.effective_message.reply_text("Это самая ранняя версия.")
        return
    await _show_current(update, context, session)


async def redo_command(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    if update.effective_message is None:
        return
    builder: BuilderSessionService = _service(context, "builder")
    session = _current_session(update, context)
    try:
        moved = builder.redo(session)
    except SessionBusyError as exc:
        await update.effective_message.reply_text(str(exc))
        return
    if not moved:
        await update.effective_message.reply_text("Это самая новая версия.")
        return
    await _show_current(update, context, session)


async def preview_command(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    if update.effective_message is None:
        return

    if context.args:
        requested = context.args[0].strip().lower()
        if requested not in VIEWPORTS:
            await update.effective_message.reply_text(f"Доступные режимы: {', '.join(VIEWPORTS)}.")
            return
        if context.user_data is not None:
            context.user_data["viewport"] = requested

    await _show_current(update, context, _current_session(update, context))


async def export_command(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    if update.effective_message is None:
        return

    builder: BuilderSessionService = _service(context, "builder")
    exporter: SiteExporter = _service(context, "exporter")
    session = _current_session(update, context)

    try:
        artifact, warnings = builder.export_current(session, exporter)
    except SessionBusyError as exc:
        await update.effective_message.reply_text(str(exc))
        return
    except (ValidationError, QuotaExceededError) as exc:
        await update.effective_message.reply_text(f"⚠️ {exc}")
        return

    try:
        with artifact.path.open("rb") as f:
            await update.effective_message.reply_document(
                document=InputFile(f, filename="site.html"),
                caption=f"Готово! Осталось скачиваний: {session.quota.downloads_remaining}.",
            )
    finally:
        exporter.discard(artifact)
    if warnings:
        await update.effective_message.reply_text("Скачивание выдано, но обновить счетчик в базе не удалось.")


async def key_command(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    if update.effective_message is None:
        return

    builder: BuilderSessionService = _service(context, "builder")
    session = _current_session(update, context)
    credential = " ".join(context.args or []).strip()
    builder.set_override_credential(session, credential or None)

    if credential:
        try:
            await update.effective_message.delete()
        except TelegramError as exc:
            logger.warning("Could not delete message with API key: %s", exc)
        await update.effective_chat.send_message("Ключ API сохранен для этой сессии. Генерации не будут расходоваться.")
    else:
        await update.effective_message.reply_text("Свой ключ API сброшен.")


async def view_command(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    if update.effective_message is None:
        return

    builder: BuilderSessionService = _service(context, "builder")
    if not context.args or not context.args[0].isdigit():
        await update.effective_message.reply_text("Использование: /view <id версии>")
        return

    version = builder.shared_version(int(context.args[0]))
    if version is None:
        await update.effective_message.reply_text("Сайт не найден или был удален.")
        return

    await _send_preview(update, context, version.content, f"Опубликованная версия #{version.id}", viewport="full")


async def chats_command(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    if update.effective_message is None:
        return

    builder: BuilderSessionService = _service(context, "builder")
    _, account_id = _session_key(update)
    if account_id is None:
        await update.effective_message.reply_text("История чатов доступна только для аккаунтов.")
        return

    chats = builder.list_chats(account_id)
    if not chats:
        await update.effective_message.reply_text("Сохраненных сайтов пока нет.")
        return

    rows = [
        [
            InlineKeyboardButton(f"{chat.title} ({chat.created_at[:10]})", callback_data=f"chat:{chat.id}"),
            InlineKeyboardButton("🗑", callback_data=f"chatdel:{chat.id}"),
        ]
        for chat in chats
    ]
    await update.effective_message.reply_text("Ваши сайты:", reply_markup=InlineKeyboardMarkup(rows))


async def analyze_command(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    if update.effective_message is None:
        return

    content = _current_session(update, context).history.current()
    if not content:
        await update.effective_message.reply_text("Сайта пока нет. Начните диалог, чтобы создать его.")
        return
    await update.effective_message.reply_text(format_analysis(analyze(content)))


async def grant_command(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    if update.effective_message is None or update.effective_user is None:
        return

    admin_ids: frozenset[int] = _service(context, "admin_user_ids")
    if update.effective_user.id not in admin_ids:
        await update.effective_message.reply_text("Команда доступна только администраторам.")
        return

    args = context.args or []
    if len(args) != 2 or not args[0].isdigit() or args[1] not in DOWNLOAD_PACKS:
        await update.effective_message.reply_text(f"Использование: /grant <user id> <{'|'.join(DOWNLOAD_PACKS)}>")
        return

    builder: BuilderSessionService = _service(context, "builder")
    registry: SessionRegistry = _service(context, "sessions")
    account_id = args[0]
    quota = builder.grant_downloads(account_id, DOWNLOAD_PACKS[args[1]], live=registry.get(account_id))
    await update.effective_message.reply_text(
        f"Начислено. У {account_id} теперь {quota.downloads_remaining} скачиваний."
    )


async def style_callback(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    query = update.callback_query
    if query is None or query.data is None:
        return
    await query.answer()

    builder: BuilderSessionService = _service(context, "builder")
    idx = int(query.data.split(":", 1)[1])
    styles = builder.dialogue.styles
    if not 0 <= idx < len(styles):
        return
    await _process_input(update, context, styles[idx])


async def section_toggle_callback(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    query = update.callback_query
    if query is None or query.data is None or context.user_data is None:
        return

    builder: BuilderSessionService = _service(context, "builder")
    sections = builder.dialogue.sections
    idx = int(query.data.split(":", 1)[1])
    if not 0 <= idx < len(sections):
        await query.answer()
        return

    selected: set[int] = context.user_data.setdefault("selected_sections", set())
    if idx in selected:
        selected.remove(idx)
    else:
        selected.add(idx)

    await query.answer()
    await query.edit_message_reply_markup(reply_markup=_sections_keyboard(sections, selected))


async def sections_done_callback(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    query = update.callback_query
    if query is None or context.user_data is None:
        return

    builder: BuilderSessionService = _service(context, "builder")
    sections = builder.dialogue.sections
    selected: set[int] = context.user_data.get("selected_sections", set())
    if not selected:
        await query.answer("Выберите хотя бы один раздел")
        return

    await query.answer()
    context.user_data["selected_sections"] = set()
    await query.edit_message_reply_markup(reply_markup=None)
    await _process_input(update, context, ", ".join(sections[idx] for idx in sorted(selected)))


async def version_callback(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    query = update.callback_query
    if query is None or query.data is None:
        return
    await query.answer()

    builder: BuilderSessionService = _service(context, "builder")
    session = _current_session(update, context)
    try:
        builder.select_version(session, int(query.data.split(":", 1)[1]))
    except SessionBusyError as exc:
        if update.effective_message is not None:
            await update.effective_message.reply_text(str(exc))
        return
    except IndexError:
        if update.effective_message is not None:
            await update.effective_message.reply_text("Такой версии больше нет.")
        return
    await _show_current(update, context, session)


async def viewport_callback(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    query = update.callback_query
    if query is None or query.data is None:
        return
    await query.answer()

    viewport = query.data.split(":", 1)[1]
    if viewport not in VIEWPORTS:
        return
    if context.user_data is not None:
        context.user_data["viewport"] = viewport
    await _show_current(update, context, _current_session(update, context))


async def chat_callback(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    query = update.callback_query
    if query is None or query.data is None or update.effective_message is None:
        return
    await query.answer()

    registry: SessionRegistry = _service(context, "sessions")
    builder: BuilderSessionService = _service(context, "builder")
    key, account_id = _session_key(update)
    if account_id is None:
        return

    previous = registry.pop(key)
    if previous is not None:
        builder.close(previous)

    resumed = builder.resume_session(key, account_id, int(query.data.split(":", 1)[1]))
    if resumed is None:
        await update.effective_message.reply_text("Чат не найден. Опишите новый сайт или выберите другой чат в /chats.")
        return

    if previous is not None:
        builder.set_override_credential(resumed, previous.override_credential)
    registry.put(resumed)

    await update.effective_message.reply_text(
        f"Чат открыт: {len(resumed.turns)} сообщений, {len(resumed.history)} версий. Пишите правки."
    )
    if resumed.history.current() is not None:
        await _show_current(update, context, resumed)


async def chat_delete_callback(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    query = update.callback_query
    if query is None or query.data is None:
        return
    await query.answer()

    chat_id = int(query.data.split(":", 1)[1])
    keyboard = InlineKeyboardMarkup(
        [
            [
                InlineKeyboardButton("Удалить", callback_data=f"chatdel_yes:{chat_id}"),
                InlineKeyboardButton("Отмена", callback_data="chatdel_no"),
            ]
        ]
    )
    await query.edit_message_text("Удалить этот сайт вместе с историей версий? Это действие нельзя отменить.", reply_markup=keyboard)


async def chat_delete_confirm_callback(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    query = update.callback_query
    if query is None or query.data is None:
        return
    await query.answer()

    registry: SessionRegistry = _service(context, "sessions")
    builder: BuilderSessionService = _service(context, "builder")
    key, account_id = _session_key(update)
    if account_id is None:
        return

    live = registry.get(key)
    deleted = builder.delete_chat(account_id, int(query.data.split(":", 1)[1]), live=live)
    if live is not None and live.closed:
        registry.pop(key)

    await query.edit_message_text("Сайт удален." if deleted else "Чат не найден.")


async def chat_delete_cancel_callback(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    query = update.callback_query
    if query is None:
        return
    await query.answer()
    await query.edit_message_text("Удаление отменено.")


async def text_message_handler(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    if update.effective_message is None:
        return
    await _process_input(update, context, update.effective_message.text or "")


async def photo_message_handler(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    message = update.effective_message
    if message is None or not message.photo:
        return

    telegram_file = await message.photo[-1].get_file()
    data = await telegram_file.download_as_bytearray()
    attachment = Attachment(mime_type="image/jpeg", data=bytes(data))
    await _process_input(update, context, message.caption or "", (attachment,))
