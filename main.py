from __future__ import annotations

import logging
import sys

from telegram import BotCommand, BotCommandScopeAllPrivateChats, BotCommandScopeDefault
from telegram.ext import Application, CallbackQueryHandler, CommandHandler, MessageHandler, filters

from sitebot.config import DB_PATH, EXPORTS_DIR, ConfigError, ensure_data_dirs, load_config
from sitebot.context import ContextAssembler
from sitebot.database import Database
from sitebot.dialogue import DialogueController
from sitebot.export import SiteExporter
from sitebot.handlers import (
    analyze_command,
    chat_callback,
    chat_delete_callback,
    chat_delete_cancel_callback,
    chat_delete_confirm_callback,
    chats_command,
    export_command,
    grant_command,
    help_command,
    key_command,
    new_command,
    photo_message_handler,
    preview_command,
    redo_command,
    section_toggle_callback,
    sections_done_callback,
    start_command,
    status_command,
    style_callback,
    text_message_handler,
    undo_command,
    version_callback,
    versions_command,
    view_command,
    viewport_callback,
)
from sitebot.openai_service import GenerationClient
from sitebot.preview import PreviewRenderer
from sitebot.session import BuilderSessionService, SessionRegistry

logger = logging.getLogger(__name__)


def configure_logging() -> None:
    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s | %(levelname)s | %(name)s | %(message)s",
    )
    # httpx logs every Telegram long-poll request at INFO.
    logging.getLogger("httpx").setLevel(logging.WARNING)


async def _post_init_set_commands(app: Application) -> None:
    commands = [
        BotCommand("start", "Запуск и подсказка"),
        BotCommand("new", "Новый сайт"),
        BotCommand("status", "Лимиты и состояние"),
        BotCommand("versions", "История версий"),
        BotCommand("undo", "Предыдущая версия"),
        BotCommand("redo", "Следующая версия"),
        BotCommand("preview", "Предпросмотр"),
        BotCommand("analyze", "Анализ сайта"),
        BotCommand("export", "Скачать HTML"),
        BotCommand("chats", "Мои сайты"),
        BotCommand("help", "Справка по командам"),
    ]

    scopes = [BotCommandScopeDefault(), BotCommandScopeAllPrivateChats()]
    language_codes: list[str | None] = [None, "ru", "en"]

    for scope in scopes:
        for language_code in language_codes:
            await app.bot.delete_my_commands(
                scope=scope,
                language_code=language_code,
            )
            await app.bot.set_my_commands(
                commands,
                scope=scope,
                language_code=language_code,
            )

    logger.info("Telegram command menu updated for default/private scopes")


def build_application() -> Application:
    ensure_data_dirs()
    config = load_config()

    db = Database(DB_PATH)
    db.init()

    if not config.openai_api_key:
        logger.warning("OPENAI_API_KEY is not set; only users with their own /key can generate")

    builder = BuilderSessionService(
        db=db,
        dialogue=DialogueController(),
        assembler=ContextAssembler(),
        generator=GenerationClient(model=config.openai_model),
        service_credential=config.openai_api_key,
        generation_allowance=config.generation_allowance,
        default_downloads=config.default_downloads,
    )

    # Updates are handled concurrently so a second message during a generation
    # reaches the session and is rejected instead of queueing behind it.
    app = (
        Application.builder()
        .token(config.telegram_bot_token)
        .concurrent_updates(True)
        .post_init(_post_init_set_commands)
        .build()
    )

    app.bot_data["builder"] = builder
    app.bot_data["sessions"] = SessionRegistry()
    app.bot_data["renderer"] = PreviewRenderer()
    app.bot_data["exporter"] = SiteExporter(exports_dir=EXPORTS_DIR)
    app.bot_data["admin_user_ids"] = config.admin_user_ids

    app.add_handler(CommandHandler("start", start_command))
    app.add_handler(CommandHandler("help", help_command))
    app.add_handler(CommandHandler("new", new_command))
    app.add_handler(CommandHandler("status", status_command))
    app.add_handler(CommandHandler("versions", versions_command))
    app.add_handler(CommandHandler("undo", undo_command))
    app.add_handler(CommandHandler("redo", redo_command))
    app.add_handler(CommandHandler("preview", preview_command))
    app.add_handler(CommandHandler("export", export_command))
    app.add_handler(CommandHandler("key", key_command))
    app.add_handler(CommandHandler("view", view_command))
    app.add_handler(CommandHandler("chats", chats_command))
    app.add_handler(CommandHandler("analyze", analyze_command))
    app.add_handler(CommandHandler("grant", grant_command))

    app.add_handler(CallbackQueryHandler(style_callback, pattern=r"^style:\d+$"))
    app.add_handler(CallbackQueryHandler(section_toggle_callback, pattern=r"^section:\d+$"))
    app.add_handler(CallbackQueryHandler(sections_done_callback, pattern=r"^sections:done$"))
    app.add_handler(CallbackQueryHandler(version_callback, pattern=r"^version:\d+$"))
    app.add_handler(CallbackQueryHandler(viewport_callback, pattern=r"^viewport:\w+$"))
    app.add_handler(CallbackQueryHandler(chat_callback, pattern=r"^chat:\d+$"))
    app.add_handler(CallbackQueryHandler(chat_delete_callback, pattern=r"^chatdel:\d+$"))
    app.add_handler(CallbackQueryHandler(chat_delete_confirm_callback, pattern=r"^chatdel_yes:\d+$"))
    app.add_handler(CallbackQueryHandler(chat_delete_cancel_callback, pattern=r"^chatdel_no$"))

    app.add_handler(MessageHandler(filters.PHOTO, photo_message_handler))
    app.add_handler(MessageHandler(filters.TEXT & ~filters.COMMAND, text_message_handler))

    return app


def main() -> None:
    configure_logging()

    try:
        app = build_application()
    except ConfigError as exc:
        logging.error("Startup failed: %s", exc)
        sys.exit(1)

    app.run_polling(drop_pending_updates=True)


if __name__ == "__main__":
    main()
