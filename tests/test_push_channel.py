import asyncio

import pytest

from push_channel import PushChannel


class ListChannel(PushChannel):
    """Writes into a list; optionally fails from the n-th write on."""

    def __init__(self, fail_at: int | None = None):
        super().__init__()
        self.written = []
        self.keepalives = 0
        self.fail_at = fail_at

    async def _write(self, message):
        if self.fail_at is not None and len(self.written) >= self.fail_at:
            raise ConnectionResetError("peer went away")
        self.written.append(message)

    async def _write_keepalive(self):
        self.keepalives += 1


@pytest.mark.asyncio
async def test_pump_writes_in_order_until_closed():
    channel = ListChannel()
    for n in range(3):
        channel.send({"n": n})
    channel.close()

    await asyncio.wait_for(channel.pump(), timeout=1)

    assert channel.written == [{"n": 0}, {"n": 1}, {"n": 2}]
    assert channel.drain_unsent() == []


@pytest.mark.asyncio
async def test_send_never_waits_for_the_writer():
    channel = ListChannel()
    pump = asyncio.ensure_future(channel.pump())

    channel.send({"n": 0})
    assert channel.written == []  # nothing written until the pump runs
    await asyncio.sleep(0)
    await asyncio.sleep(0)
    assert channel.written == [{"n": 0}]

    channel.close()
    await asyncio.wait_for(pump, timeout=1)


@pytest.mark.asyncio
async def test_failed_write_is_handed_back():
    channel = ListChannel(fail_at=1)
    for n in range(3):
        channel.send({"n": n})

    await asyncio.wait_for(channel.pump(), timeout=1)

    assert channel.closed
    assert channel.written == [{"n": 0}]
    assert channel.drain_unsent() == [{"n": 1}, {"n": 2}]


@pytest.mark.asyncio
async def test_idle_channel_sends_keepalives():
    channel = ListChannel()
    pump = asyncio.ensure_future(channel.pump(keepalive=0.01))

    await asyncio.sleep(0.05)
    channel.close()
    await asyncio.wait_for(pump, timeout=1)

    assert channel.keepalives >= 1
    assert channel.written == []


@pytest.mark.asyncio
async def test_drain_after_close_lets_pump_finish():
    channel = ListChannel()
    pump = asyncio.ensure_future(channel.pump())
    await asyncio.sleep(0)  # pump is now waiting on the outbox

    channel.close()
    assert channel.drain_unsent() == []
    await asyncio.wait_for(pump, timeout=1)


def test_send_after_close_raises():
    channel = PushChannel()
    channel.close()
    with pytest.raises(ConnectionResetError):
        channel.send({"late": True})
