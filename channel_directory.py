"""
PairCall
Copyright (C) 2024 thiccaxe

This program is free software: you can redistribute it and/or modify
it under the terms of the GNU Affero General Public License as published
by the Free Software Foundation, either version 3 of the License, or
(at your option) any later version.

This program is distributed in the hope that it will be useful,
but WITHOUT ANY WARRANTY; without even the implied warranty of
MERCHANTABILITY or FITNESS FOR A PARTICULAR PURPOSE.  See the
GNU Affero General Public License for more details.

You should have received a copy of the GNU Affero General Public License
along with this program.  If not, see <https://www.gnu.org/licenses/>.
"""

import asyncio
import logging
from typing import Optional

from events import Event


class ChannelUnavailable(Exception): pass


class ChannelClosed(Exception): pass


class EventChannel:
    """
    Write-only delivery address for one client.

    Events are queued here and written out by whichever transport opened the channel, so delivering an event never
    waits on the network.
    """

    def __init__(self, client_id: str, backlog: int = 256):
        self.client_id = client_id
        self._outbox: asyncio.Queue[Event] = asyncio.Queue(maxsize=backlog)
        self._closed_event = asyncio.Event()

    @property
    def closed(self) -> bool:
        return self._closed_event.is_set()

    def deliver(self, event: Event) -> bool:
        if self.closed:
            return False
        try:
            self._outbox.put_nowait(event)
        except asyncio.QueueFull:
            # client is not reading; same as a failed write
            logging.warning(f"Outbox full for {self.client_id=}, closing channel")
            self.close()
            return False
        return True

    def close(self):
        self._closed_event.set()

    async def next_event(self, timeout: Optional[float] = None) -> Optional[Event]:
        """
        Wait for the next queued event.

        Returns None when `timeout` elapses first, raises ChannelClosed once the channel is closed.
        """
        if self.closed:
            raise ChannelClosed()
        if not self._outbox.empty():
            return self._outbox.get_nowait()

        get_task = asyncio.create_task(self._outbox.get())
        closed_wait_task = asyncio.create_task(self._closed_event.wait())
        done, pending = await asyncio.wait(
            [get_task, closed_wait_task],
            timeout=timeout,
            return_when=asyncio.FIRST_COMPLETED
        )
        for task in pending:
            task.cancel()
        await asyncio.gather(*pending, return_exceptions=True)

        if get_task in done:
            return get_task.result()
        if closed_wait_task in done:
            raise ChannelClosed()
        return None


class ChannelDirectory:
    """client id -> currently open EventChannel. At most one channel per id, the most recent one wins."""

    def __init__(self):
        self._channels: dict[str, EventChannel] = dict()

    def __len__(self):
        return len(self._channels)

    def __contains__(self, client_id: str):
        return client_id in self._channels

    def open(self, client_id: str, channel: EventChannel) -> Optional[EventChannel]:
        """Store `channel` for `client_id`, closing and returning the one it replaces (if any)."""
        previous = self._channels.get(client_id)
        self._channels[client_id] = channel
        if previous is not None and previous is not channel:
            logging.debug(f"New channel for {client_id=} replaces an open one")
            previous.close()
            return previous
        return None

    def is_current(self, client_id: str, channel: EventChannel) -> bool:
        return self._channels.get(client_id) is channel

    def close(self, client_id: str) -> Optional[EventChannel]:
        channel = self._channels.pop(client_id, None)
        if channel is not None:
            channel.close()
        return channel

    def lookup(self, client_id: str) -> EventChannel:
        channel = self._channels.get(client_id)
        if channel is None or channel.closed:
            raise ChannelUnavailable(client_id)
        return channel

    def send(self, client_id: str, event: Event) -> bool:
        """Best effort. Events for a client without a live channel are dropped."""
        try:
            channel = self.lookup(client_id)
        except ChannelUnavailable:
            logging.debug(f"Dropped {event.type} for {client_id=}: no open channel")
            return False
        return channel.deliver(event)

    def close_all(self):
        for client_id in list(self._channels):
            self.close(client_id)
