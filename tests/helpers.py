"""Test helpers for driving the call manager without a transport."""

from call_manager import CallManager
from channel_directory import EventChannel


async def open_client(manager: CallManager, client_id: str) -> EventChannel:
    """Open a push channel for `client_id`, which also joins it."""
    channel = manager.new_channel(client_id)
    await manager.channel_opened(client_id, channel)
    return channel


async def drain(channel: EventChannel) -> list[dict]:
    """Every event queued on `channel` so far, as wire packets."""
    packets = []
    while True:
        event = await channel.next_event(timeout=0)
        if event is None:
            return packets
        packets.append(event.to_packet())


def types(packets: list[dict]) -> list[str]:
    return [packet["type"] for packet in packets]
