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
import collections
import dataclasses
from typing import Iterator, Optional

from channel_directory import ChannelDirectory


class SessionNotFound(Exception): pass


@dataclasses.dataclass
class ClientSession:
    client_id: str
    partner_id: Optional[str] = None
    ready: bool = False

    @property
    def paired(self) -> bool:
        return self.partner_id is not None

    def release(self):
        self.partner_id = None
        self.ready = False


class SessionRegistry:
    """client id -> ClientSession. No I/O here, the manager decides what gets emitted."""

    def __init__(self):
        self._sessions: dict[str, ClientSession] = dict()

    def __len__(self):
        return len(self._sessions)

    def __contains__(self, client_id: str):
        return client_id in self._sessions

    def __iter__(self) -> Iterator[ClientSession]:
        return iter(list(self._sessions.values()))

    def register(self, client_id: str) -> tuple[ClientSession, bool]:
        """Returns (session, created). An existing session is returned untouched."""
        session = self._sessions.get(client_id)
        if session is not None:
            return session, False
        session = ClientSession(client_id)
        self._sessions[client_id] = session
        return session, True

    def get(self, client_id: Optional[str]) -> Optional[ClientSession]:
        if client_id is None:
            return None
        return self._sessions.get(client_id)

    def require(self, client_id: str) -> ClientSession:
        session = self._sessions.get(client_id)
        if session is None:
            raise SessionNotFound(client_id)
        return session

    def remove(self, client_id: str) -> Optional[ClientSession]:
        return self._sessions.pop(client_id, None)


class WaitingQueue:
    """FIFO of client ids waiting for a partner, without duplicates."""

    def __init__(self):
        self._queue: collections.OrderedDict[str, None] = collections.OrderedDict()

    def __len__(self):
        return len(self._queue)

    def __contains__(self, client_id: str):
        return client_id in self._queue

    def __iter__(self) -> Iterator[str]:
        return iter(list(self._queue))

    def enqueue(self, client_id: str) -> bool:
        if client_id in self._queue:
            return False
        self._queue[client_id] = None
        return True

    def push_front(self, client_id: str):
        self._queue[client_id] = None
        self._queue.move_to_end(client_id, last=False)

    def pop_oldest(self) -> str:
        client_id, _ = self._queue.popitem(last=False)
        return client_id

    def discard(self, client_id: str) -> bool:
        if client_id not in self._queue:
            return False
        del self._queue[client_id]
        return True


class ServerData:

    def __init__(self, channel_backlog: int = 256):
        self.sessions = SessionRegistry()
        self.waiting = WaitingQueue()
        self.channels = ChannelDirectory()
        self.channel_backlog = channel_backlog

        self.shutdown_event = asyncio.Event()
