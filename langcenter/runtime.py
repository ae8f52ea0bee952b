from __future__ import annotations
from typing import Optional
from aiogram import Bot

from langcenter.integrations.chapa import PaymentGateway, get_gateway

_bot: Optional[Bot] = None
_gateway: Optional[PaymentGateway] = None

def set_bot(b: Bot) -> None:
    global _bot
    _bot = b

def get_bot() -> Optional[Bot]:
    """None until main() has started, so services fall back to in-app rows only."""
    return _bot

def get_payment_gateway() -> PaymentGateway:
    global _gateway
    if _gateway is None:
        _gateway = get_gateway()
    return _gateway
