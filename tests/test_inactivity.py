import asyncio

import pytest

from chatcommerce.models.session import ConversationState
from chatcommerce.services.inactivity import InactivitySupervisor
from conftest import BOT_NUMBER, CUSTOMER


class Recorder:
    def __init__(self):
        self.events = []

    async def warning(self, user, channel):
        self.events.append(("warning", user, channel))

    async def expire(self, user, channel):
        self.events.append(("expire", user, channel))


@pytest.fixture
def recorder():
    return Recorder()


class TestInactivitySupervisor:
    @pytest.mark.asyncio
    async def test_warns_then_expires(self, recorder):
        supervisor = InactivitySupervisor(0.01, 0.01, recorder.warning, recorder.expire)
        supervisor.touch("+1", "+2")
        await asyncio.sleep(0.1)

        assert recorder.events == [("warning", "+1", "+2"), ("expire", "+1", "+2")]
        assert not supervisor.is_active("+1")
        assert len(supervisor) == 0

    @pytest.mark.asyncio
    async def test_touch_replaces_previous_timer(self, recorder):
        supervisor = InactivitySupervisor(0.05, 0.01, recorder.warning, recorder.expire)
        supervisor.touch("+1", "+2")
        await asyncio.sleep(0.03)
        supervisor.touch("+1", "+2")
        await asyncio.sleep(0.03)

        # the first timer would have fired by now
        assert recorder.events == []
        assert len(supervisor) == 1

        await asyncio.sleep(0.1)
        assert [e[0] for e in recorder.events] == ["warning", "expire"]

    @pytest.mark.asyncio
    async def test_cancel(self, recorder):
        supervisor = InactivitySupervisor(0.01, 0.01, recorder.warning, recorder.expire)
        supervisor.touch("+1", "+2")
        supervisor.cancel("+1")
        await asyncio.sleep(0.05)

        assert recorder.events == []
        assert not supervisor.is_active("+1")

    @pytest.mark.asyncio
    async def test_users_are_independent(self, recorder):
        supervisor = InactivitySupervisor(0.01, 0.01, recorder.warning, recorder.expire)
        supervisor.touch("+1", "+9")
        supervisor.touch("+2", "+9")
        supervisor.cancel("+1")
        await asyncio.sleep(0.1)

        assert {e[1] for e in recorder.events} == {"+2"}

    @pytest.mark.asyncio
    async def test_expire_callback_may_cancel_itself(self, recorder):
        supervisor = None

        async def expire(user, channel):
            supervisor.cancel(user)
            await recorder.expire(user, channel)

        supervisor = InactivitySupervisor(0.01, 0.01, recorder.warning, expire)
        supervisor.touch("+1", "+2")
        await asyncio.sleep(0.1)

        assert recorder.events[-1] == ("expire", "+1", "+2")

    @pytest.mark.asyncio
    async def test_callback_errors_are_contained(self, recorder):
        async def broken(user, channel):
            raise RuntimeError("boom")

        supervisor = InactivitySupervisor(0.01, 0.01, broken, recorder.expire)
        supervisor.touch("+1", "+2")
        await asyncio.sleep(0.05)

        assert recorder.events == []
        assert not supervisor.is_active("+1")

    @pytest.mark.asyncio
    async def test_shutdown(self, recorder):
        supervisor = InactivitySupervisor(10, 10, recorder.warning, recorder.expire)
        supervisor.touch("+1", "+2")
        supervisor.touch("+3", "+2")
        await supervisor.shutdown()

        assert len(supervisor) == 0


class TestEngineInactivity:
    @pytest.fixture
    def supervised(self, engine):
        engine.supervisor = InactivitySupervisor(0.02, 0.02, engine.warn_inactive, engine.expire_session)
        return engine

    @pytest.mark.asyncio
    async def test_idle_session_is_reset_in_place(self, supervised, chat, sessions, messenger):
        await chat("Acme")
        await chat("tools")
        await chat("SKU1 1")
        assert supervised.supervisor.is_active(CUSTOMER)

        await asyncio.sleep(0.2)

        session = await sessions.get(CUSTOMER)
        assert session is not None
        assert session.state == ConversationState.SELECTING_COMPANY.value
        assert session.cart == []
        texts = messenger.texts_to(CUSTOMER)
        assert texts[-2].startswith("¿Sigues ahí?")
        assert texts[-1].startswith("Tu sesión se cerró por inactividad")
        assert all(s.channel_id == BOT_NUMBER for s in messenger.sent)

    @pytest.mark.asyncio
    async def test_fresh_session_has_no_timer(self, supervised, chat):
        await chat("hola")
        assert not supervised.supervisor.is_active(CUSTOMER)

    @pytest.mark.asyncio
    async def test_cancel_stops_timer(self, supervised, chat):
        await chat("Acme")
        assert supervised.supervisor.is_active(CUSTOMER)

        await chat("x")
        assert not supervised.supervisor.is_active(CUSTOMER)

    @pytest.mark.asyncio
    async def test_activity_postpones_expiry(self, supervised, chat, sessions):
        await chat("Acme")
        for _ in range(4):
            await asyncio.sleep(0.015)
            await chat("m")

        session = await sessions.get(CUSTOMER)
        assert session.company is not None
        await supervised.supervisor.shutdown()
