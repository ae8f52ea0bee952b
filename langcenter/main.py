# langcenter/main.py
from __future__ import annotations

import asyncio, logging, sys
from aiogram import Bot, Dispatcher
from aiogram.client.default import DefaultBotProperties
from aiogram.fsm.storage.memory import MemoryStorage
from aiogram.types import BotCommand, BotCommandScopeDefault
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from sqlalchemy import func, select, text

from langcenter.config import settings
from langcenter.storage.db import engine, create_all, SessionLocal
from langcenter.storage.models import User, UserRole
from langcenter.scheduler.jobs import setup_scheduler
from langcenter.bot.handlers import start, bookings
from langcenter.runtime import get_payment_gateway, set_bot

log = logging.getLogger("main")

COMMANDS = [
    BotCommand(command="start", description="Link status and help"),
    BotCommand(command="my", description="My bookings"),
    BotCommand(command="pay", description="Pay for a booking"),
]


async def init_db() -> None:
    await create_all(engine)
    async with engine.begin() as conn:
        await conn.execute(text("select 1"))
    async with SessionLocal() as session:
        teachers = await session.scalar(
            select(func.count(User.id)).where(User.role == UserRole.TEACHER.value, User.is_approved.is_(True))
        )
    log.info("db ready url=%s approved_teachers=%s", engine.url.render_as_string(hide_password=True), teachers)


def build_dispatcher() -> Dispatcher:
    dp = Dispatcher(storage=MemoryStorage())
    dp.include_router(start.router)
    dp.include_router(bookings.router)
    return dp


async def main() -> None:
    logging.basicConfig(
        level=logging.INFO,
        stream=sys.stdout,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    await init_db()

    bot = Bot(token=settings.bot_token, default=DefaultBotProperties(parse_mode="HTML"))
    set_bot(bot)
    gateway = get_payment_gateway()
    log.info("payments gateway=%s env=%s", gateway.name, gateway.environment.value)

    scheduler = AsyncIOScheduler(timezone=settings.tz)
    setup_scheduler(scheduler, SessionLocal, bot)
    scheduler.start()

    await bot.set_my_commands(COMMANDS, scope=BotCommandScopeDefault())
    try:
        await build_dispatcher().start_polling(bot)
    finally:
        scheduler.shutdown(wait=False)
        await bot.session.close()
        await engine.dispose()


if __name__ == "__main__":
    try:
        asyncio.run(main())
    except (KeyboardInterrupt, SystemExit):
        print("Bot stopped")
