"""Waiting queue pairing and session lifecycle in the call manager."""

import asyncio
import random

import pytest

from call_manager import CallManager
from helpers import drain, open_client, types
from server_data import ServerData

pytestmark = pytest.mark.asyncio


def assert_consistent(data: ServerData):
    for session in data.sessions:
        if session.paired:
            partner = data.sessions.get(session.partner_id)
            assert partner is not None and partner.partner_id == session.client_id
            assert session.client_id not in data.waiting
        else:
            assert session.client_id in data.waiting
    for client_id in data.waiting:
        assert client_id in data.sessions


def partner_of(data: ServerData, client_id: str):
    return data.sessions.get(client_id).partner_id


async def test_open_sends_connected_and_waits(manager: CallManager, data: ServerData):
    channel = await open_client(manager, "u1")

    assert await drain(channel) == [{"type": "connected", "userId": "u1"}]
    assert list(data.waiting) == ["u1"]
    assert_consistent(data)


async def test_three_clients_pair_first_two(manager: CallManager, data: ServerData):
    u1 = await open_client(manager, "u1")
    u2 = await open_client(manager, "u2")
    u3 = await open_client(manager, "u3")

    assert (await drain(u1))[-1] == {"type": "partner-found", "partnerId": "u2"}
    assert (await drain(u2))[-1] == {"type": "partner-found", "partnerId": "u1"}
    assert types(await drain(u3)) == ["connected"]
    assert list(data.waiting) == ["u3"]
    assert_consistent(data)


async def test_pairing_is_fifo(manager: CallManager, data: ServerData):
    for client_id in ("a", "b", "c", "d"):
        data.sessions.register(client_id)
        data.waiting.enqueue(client_id)

    assert await manager.pair_all() == 2

    assert partner_of(data, "a") == "b"
    assert partner_of(data, "c") == "d"
    assert len(data.waiting) == 0
    assert_consistent(data)


async def test_pairing_nothing_to_do(manager: CallManager, data: ServerData):
    await open_client(manager, "u1")
    assert await manager.pair_all() == 0
    assert list(data.waiting) == ["u1"]


async def test_stale_queue_entry_is_skipped(manager: CallManager, data: ServerData):
    data.waiting.enqueue("ghost")
    data.sessions.register("a")
    data.waiting.enqueue("a")
    data.sessions.register("b")
    data.waiting.enqueue("b")

    await manager.pair_all()

    assert partner_of(data, "a") == "b"
    assert "ghost" not in data.waiting
    assert_consistent(data)


async def test_survivor_keeps_its_place(manager: CallManager, data: ServerData):
    data.sessions.register("a")
    data.waiting.enqueue("a")
    data.waiting.enqueue("ghost")

    await manager.pair_all()

    assert list(data.waiting) == ["a"]
    assert not data.sessions.get("a").paired


async def test_open_twice_does_not_requeue_or_unpair(manager: CallManager, data: ServerData):
    await open_client(manager, "u1")
    await open_client(manager, "u2")
    replacement = await open_client(manager, "u1")

    assert partner_of(data, "u1") == "u2"
    assert len(data.waiting) == 0
    assert types(await drain(replacement)) == ["connected"]
    assert_consistent(data)


async def test_join_twice_does_not_duplicate(manager: CallManager, data: ServerData):
    assert await manager.join("u1")
    assert not await manager.join("u1")
    assert list(data.waiting) == ["u1"]


async def test_close_while_partnered(manager: CallManager, data: ServerData):
    u1 = await open_client(manager, "u1")
    u2 = await open_client(manager, "u2")
    await drain(u2)

    await manager.channel_closed("u1", u1)

    assert "u1" not in data.sessions
    assert "u1" not in data.channels
    assert types(await drain(u2)) == ["partner-disconnected"]
    assert list(data.waiting) == ["u2"]
    assert_consistent(data)


async def test_close_frees_partner_for_next_waiting(manager: CallManager, data: ServerData):
    u1 = await open_client(manager, "u1")
    u2 = await open_client(manager, "u2")
    u3 = await open_client(manager, "u3")
    await drain(u2)
    await drain(u3)

    await manager.channel_closed("u1", u1)

    assert types(await drain(u2)) == ["partner-disconnected", "partner-found"]
    assert (await drain(u3))[-1] == {"type": "partner-found", "partnerId": "u2"}
    assert partner_of(data, "u2") == "u3"
    assert_consistent(data)


async def test_close_of_replaced_channel_keeps_session(manager: CallManager, data: ServerData):
    old = await open_client(manager, "u1")
    new = await open_client(manager, "u1")

    await manager.channel_closed("u1", old)

    assert "u1" in data.sessions
    assert data.channels.is_current("u1", new)


async def test_remove_unknown_is_noop(manager: CallManager, data: ServerData):
    assert not await manager.remove("nobody")
    await manager.channel_closed("nobody")
    assert len(data.sessions) == 0


async def test_stats(manager: CallManager):
    await open_client(manager, "u1")
    await open_client(manager, "u2")
    await open_client(manager, "u3")

    assert manager.stats() == {"clients": 3, "waiting": 1, "channels": 3}


async def test_concurrent_churn_keeps_pairs_consistent():
    # large backlog so no outbox overflows while events pile up undrained
    data = ServerData(channel_backlog=1024)
    manager = CallManager(data)
    client_ids = [f"c{i}" for i in range(40)]

    channels = dict(zip(client_ids, await asyncio.gather(*(open_client(manager, i) for i in client_ids))))
    assert_consistent(data)
    assert len(data.waiting) == 0

    # every client does one thing, in a shuffled order
    rng = random.Random(7)
    actions = []
    closed = set()
    for n, client_id in enumerate(client_ids):
        if n % 4 == 0:
            actions.append(manager.signal(client_id, "skip"))
        elif n % 4 == 1:
            actions.append(manager.channel_closed(client_id, channels[client_id]))
            closed.add(client_id)
        else:
            actions.append(manager.signal(client_id, "ready"))
    rng.shuffle(actions)
    await asyncio.gather(*actions)

    assert_consistent(data)
    assert len(data.waiting) <= 1
    assert closed.isdisjoint(session.client_id for session in data.sessions)

    survivors = [session.client_id for session in data.sessions]
    await asyncio.gather(*(manager.signal(client_id, "ready") for client_id in survivors))
    assert_consistent(data)

    history = {client_id: await drain(channels[client_id]) for client_id in survivors}
    for session in data.sessions:
        if not session.paired or session.client_id > session.partner_id:
            continue
        # only what happened since the current partnership formed
        initiators = []
        for client_id in (session.client_id, session.partner_id):
            packets = history[client_id]
            found = max(n for n, packet in enumerate(packets) if packet["type"] == "partner-found")
            initiators += [p["initiator"] for p in packets[found:] if p["type"] == "start-call"]
        assert sorted(initiators) == [False, True]
