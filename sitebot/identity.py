from __future__ import annotations

from telegram import User

# Senders Telegram substitutes when a group admin posts anonymously or a
# channel posts into a linked group.
ANONYMOUS_SENDER_IDS = frozenset({1087968824, 136817688, 777000})


def resolve_account_id(user: User | None) -> str | None:
    """Return the account id for a sender, or None for anonymous use."""
    if user is None:
        return None
    if user.id in ANONYMOUS_SENDER_IDS:
        return None
    return str(user.id)
