from __future__ import annotations

STYLES = [
    "Минимализм",
    "Темный",
    "Светлый",
    "Корпоративный",
    "Креативный",
]

SECTIONS = [
    "Hero (Главный)",
    "О нас",
    "Услуги",
    "Цены",
    "Отзывы",
    "Контакты",
    "Footer",
]

# Width x height in CSS pixels.
VIEWPORTS = {
    "compact": (375, 812),
    "medium": (768, 1024),
    "full": (1280, 800),
}

DEFAULT_VIEWPORT = "full"

# Live sessions untouched this long are closed and dropped from memory.
SESSION_IDLE_TTL_SECONDS = 12 * 60 * 60

DOWNLOAD_PACKS = {
    "single": 1,
    "pack": 5,
}

IMAGE_ONLY_REQUEST = "Проанализируй изображения и сделай сайт на их основе"

ASK_STYLE_TEXT = "Понял идею. Какой стиль вы предпочитаете?"
ASK_SECTIONS_TEXT = "Хорошо. Какие разделы добавить?"
ASK_SECTIONS_AFTER_STYLE_TEXT = "Принято. А какие разделы добавить на страницу? (Можно выбрать несколько)"
READY_FROM_IDLE_TEXT = "Отлично! Всё понятно. Генерирую ваш сайт..."
READY_FROM_SECTIONS_TEXT = "Супер! Начинаю создание..."
REFINE_TEXT = "Понял, вношу изменения..."

SYSTEM_PROMPT = (
    "Ты опытный Frontend разработчик и UI/UX дизайнер. "
    "Твоя задача: генерировать или обновлять HTML код для Landing Page.\n\n"
    "Правила:\n"
    "1. Верни ТОЛЬКО полный валидный HTML документ, начиная с <!DOCTYPE html>. Без markdown и пояснений.\n"
    "2. Используй Tailwind CSS через <script src=\"https://cdn.tailwindcss.com\"></script>.\n"
    "3. Если тебе передан существующий код, измени его согласно запросу пользователя, "
    "сохраняя общую структуру, если не просили иного.\n"
    "4. Используй плейсхолдеры: https://placehold.co/600x400/1a1a1a/FFF\n"
    "5. Делай дизайн современным, с отступами, крупной типографикой и темной темой по умолчанию "
    "(если не просили иную).\n"
    "6. Документ должен быть самодостаточным: без внешних файлов, кроме CDN."
)
