from aiogram import Router, html
from aiogram.filters import CommandStart
from aiogram.types import Message

from langcenter.services.user_service import UserService
from langcenter.storage.db import SessionLocal

router = Router(name="start")

@router.message(CommandStart())
async def start(message: Message):
    assert message.from_user is not None
    async with SessionLocal() as session:
        user = await UserService.get_by_tg_id(session, message.from_user.id)

    if user is None:
        await message.answer(
            "Your Telegram account is not linked to the Language Teaching Center yet.\n"
            f"Give this id to an administrator: <code>{message.from_user.id}</code>"
        )
        return

    await message.answer(
        f"Hello, {html.quote(user.full_name)}! You are signed in as <b>{user.role}</b>.\n"
        "Use /my to see your bookings."
    )
