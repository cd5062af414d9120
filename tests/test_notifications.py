"""Test GM notification storage and delivery."""
import asyncio
import datetime

from questweave.database.unlock_models import GMNotification
from questweave.services import GMNotificationService, SessionEventProcessor
from questweave.utils.notify_admins import build_bot, notify_admins
from questweave.utils.time_utils import utcnow
from tests.fakes import FakeBot


def add_notification(session, **kwargs):
    data = {"type": "entity_unlocked", "session_id": "S1", "title": "t", "message": "m"}
    data.update(kwargs)
    notification = GMNotification(**data)
    session.add(notification)
    return notification


def test_notify_admins_counts_deliveries():
    bot = FakeBot(fail_for={2})
    sent = asyncio.run(notify_admins(bot, "hello", [1, 2, 3]))
    assert sent == 2
    assert [chat_id for chat_id, _ in bot.sent] == [1, 3]


def test_status_updates(run_db):
    async def body(Session):
        async with Session() as session:
            notification = add_notification(session)
            await session.commit()
            service = GMNotificationService(session)

            assert await service.update_status(notification.id, "acknowledged")
            assert notification.acknowledged_at is not None
            assert not await service.update_status(notification.id, "shredded")
            assert not await service.update_status("missing", "read")

    run_db(body)


def test_stale_notifications_expire(run_db):
    async def body(Session):
        async with Session() as session:
            past = utcnow() - datetime.timedelta(hours=1)
            add_notification(session, expires_at=past)
            add_notification(session, expires_at=past, status="acknowledged")
            add_notification(session, expires_at=None)
            add_notification(session, session_id="S2", expires_at=utcnow() + datetime.timedelta(hours=1))
            await session.commit()

            service = GMNotificationService(session)
            assert await service.expire_stale() == 1
            expired = await service.list_notifications("S1", ["expired"])
            assert len(expired) == 1
            assert len(await service.list_notifications("S1")) == 3
            assert len(await service.list_notifications("S2", ["unread"])) == 1

    run_db(body)


def test_deliver_without_bot_keeps_row_only(run_db):
    async def body(Session):
        async with Session() as session:
            notification = add_notification(session)
            await session.commit()
            assert not await GMNotificationService(session, admin_ids=[1]).deliver(notification)

            bot = FakeBot()
            assert await GMNotificationService(session, bot, admin_ids=[7]).deliver(notification)
            assert bot.sent == [(7, "t\n\nm")]

    run_db(body)


def test_build_bot_needs_a_token():
    assert build_bot(None) is None
    assert build_bot("") is None

    bot = build_bot("42:TEST-TOKEN")
    assert bot.id == 42
    asyncio.run(bot.session.close())


def test_processor_owns_bot_built_from_token():
    async def main():
        processor = SessionEventProcessor(None, bot_token="42:TEST-TOKEN")
        assert processor.bot.id == 42
        await processor.close()
        assert processor.bot is None

        external = FakeBot()
        processor = SessionEventProcessor(None, bot=external, bot_token="42:TEST-TOKEN")
        await processor.close()
        assert processor.bot is external

        assert SessionEventProcessor(None, bot_token=None).bot is None

    asyncio.run(main())
