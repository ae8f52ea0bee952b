from langcenter.bot.handlers import bookings as handlers
from langcenter.bot.handlers.bookings import _callback_id


class FakeCallback:
    def __init__(self, data):
        self.data = data
        self.answers = []

    async def answer(self, text=None, show_alert=False):
        self.answers.append((text, show_alert))


def test_callback_id():
    assert _callback_id("bk:confirm:42") == 42
    assert _callback_id("pay:verify:7") == 7


async def test_info_buttons_are_acknowledged():
    cb = FakeCallback("noop")
    await handlers.noop(cb)
    assert cb.answers == [(None, False)]


def test_noop_handler_is_registered():
    callbacks = [h.callback for h in handlers.router.callback_query.handlers]
    assert handlers.noop in callbacks
