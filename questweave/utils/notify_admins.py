import logging
from aiogram import Bot
from .config import ADMIN_IDS, BOT_TOKEN


def build_bot(token: str | None = BOT_TOKEN) -> Bot | None:
    """Bot used to push GM notifications; None when no token is configured."""
    if not token:
        return None
    return Bot(token)


async def notify_admins(bot: Bot, text: str, admin_ids: list[int] | None = None) -> int:
    """Send ``text`` to every game master; returns how many messages went out."""
    sent = 0
    for admin_id in ADMIN_IDS if admin_ids is None else admin_ids:
        try:
            await bot.send_message(admin_id, text)
            sent += 1
        except Exception as e:
            logging.error(f"Failed to notify admin {admin_id}: {e}")
    return sent
