import asyncio

import pytest

from chatcommerce.models.schemas import InboundMessage
from chatcommerce.services.dispatcher import InboundDispatcher
from conftest import BOT_NUMBER, CUSTOMER


def message(text, address=CUSTOMER):
    return InboundMessage(from_address=address, text=text, channel_id=BOT_NUMBER)


class TestInboundDispatcher:
    @pytest.mark.asyncio
    async def test_handles_every_message(self):
        seen = []

        async def handler(msg):
            seen.append(msg.text)

        dispatcher = InboundDispatcher(handler)
        dispatcher.start()
        for text in ("a", "b", "c"):
            await dispatcher.enqueue(message(text))
        await asyncio.wait_for(dispatcher.join(), timeout=1)
        await dispatcher.stop()

        assert seen == ["a", "b", "c"]
        assert not dispatcher.running

    @pytest.mark.asyncio
    async def test_handler_errors_do_not_stop_the_worker(self):
        seen = []

        async def handler(msg):
            if msg.text == "bad":
                raise RuntimeError("boom")
            seen.append(msg.text)

        dispatcher = InboundDispatcher(handler)
        dispatcher.start()
        await dispatcher.enqueue(message("bad"))
        await dispatcher.enqueue(message("good"))
        await asyncio.wait_for(dispatcher.join(), timeout=1)
        await dispatcher.stop()

        assert seen == ["good"]

    @pytest.mark.asyncio
    async def test_engine_keeps_per_user_order(self, engine, sessions):
        dispatcher = InboundDispatcher(engine.handle_message)
        dispatcher.start()
        for text in ("Acme", "tools", "SKU1 2", "SKU1 1"):
            await dispatcher.enqueue(message(text))
        await dispatcher.enqueue(message("Beta Foods", address="+573009999999"))
        await asyncio.wait_for(dispatcher.join(), timeout=1)
        await dispatcher.stop()

        session = await sessions.get(CUSTOMER)
        assert [(i.sku, i.quantity) for i in session.cart] == [("SKU1", 3)]
        other = await sessions.get("+573009999999")
        assert other.company.code == "BETA"
