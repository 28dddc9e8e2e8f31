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
import uuid
from typing import Optional

from channel_directory import EventChannel
from events import Connected, PartnerDisconnected, PartnerFound, RelayedSignal, StartCall
from server_data import ClientSession, ServerData

"""
Matchmaking and signal relay.

Every change to sessions, the waiting queue or partnerships happens while holding `_lock`, and none of the locked
sections await anything besides the lock itself. Events are queued on the clients' channels from inside the locked
section, so each client sees them in the order the state changed.
"""

SIGNAL_OK = "ok"
SIGNAL_IGNORED = "ignored"

# signal type -> field of the payload that has to be present
RELAYED_SIGNALS = {
    "offer": "offer",
    "answer": "answer",
    "ice-candidate": "candidate",
}
SKIP_SIGNALS = ("next", "skip")
MAX_CLIENT_ID_LENGTH = 128


class MalformedSignal(Exception): pass


class CallManager:

    def __init__(self, data: ServerData):
        self._data = data
        self._lock = asyncio.Lock()

    @staticmethod
    def issue_client_id() -> str:
        return uuid.uuid4().hex

    def new_channel(self, client_id: str) -> EventChannel:
        return EventChannel(client_id, self._data.channel_backlog)

    def stats(self) -> dict:
        return {
            "clients": len(self._data.sessions),
            "waiting": len(self._data.waiting),
            "channels": len(self._data.channels),
        }

    # lifecycle

    async def channel_opened(self, client_id: str, channel: EventChannel):
        """A push channel opened. The first one for a client also joins it to the waiting queue."""
        async with self._lock:
            self._data.channels.open(client_id, channel)
            channel.deliver(Connected(client_id))
            logging.info(f"Channel opened for {client_id=}")
            self._join(client_id)

    async def channel_closed(self, client_id: str, channel: Optional[EventChannel] = None):
        """
        The transport lost the push channel. If `channel` is given and a newer channel has replaced it since, the
        session is kept.
        """
        async with self._lock:
            if channel is not None and not self._data.channels.is_current(client_id, channel):
                logging.debug(f"Ignoring close of a replaced channel for {client_id=}")
                return
            self._data.channels.close(client_id)
            logging.info(f"Channel closed for {client_id=}")
            self._remove(client_id)

    async def join(self, client_id: str) -> bool:
        async with self._lock:
            return self._join(client_id)

    async def remove(self, client_id: str) -> bool:
        async with self._lock:
            return self._remove(client_id)

    async def leave(self, client_id: str):
        async with self._lock:
            self._data.channels.close(client_id)
            if self._remove(client_id):
                logging.info(f"{client_id=} left")

    async def pair_all(self) -> int:
        async with self._lock:
            return self._pair_all()

    async def shutdown(self):
        async with self._lock:
            self._data.shutdown_event.set()
            self._data.channels.close_all()

    # signals

    async def signal(self, from_id: str, signal_type: str, payload=None) -> str:
        """
        Handle one signal from a client.

        Returns SIGNAL_OK or SIGNAL_IGNORED (unknown type or a signal that does not apply to the current state).
        Raises SessionNotFound for an unregistered sender and MalformedSignal for a relayed signal whose payload is
        not an object or lacks its required field. Other signal types do not read the payload.
        """
        if signal_type == "join":
            await self.join(from_id)
            return SIGNAL_OK
        if signal_type == "leave":
            await self.leave(from_id)
            return SIGNAL_OK
        if signal_type in RELAYED_SIGNALS:
            return await self._relay(from_id, signal_type, payload)

        async with self._lock:
            session = self._data.sessions.require(from_id)
            if signal_type == "ready":
                return self._ready(session)
            if signal_type in SKIP_SIGNALS:
                return self._skip(session)

        logging.debug(f"Ignoring unknown signal {signal_type!r} from {from_id=}")
        return SIGNAL_IGNORED

    async def _relay(self, from_id: str, signal_type: str, payload) -> str:
        session = self._data.sessions.require(from_id)
        if not isinstance(payload, dict):
            raise MalformedSignal(f"{signal_type} payload must be an object")
        field = RELAYED_SIGNALS[signal_type]
        if payload.get(field) is None:
            raise MalformedSignal(f"{signal_type} requires {field!r}")

        # forwarding does not touch pairing state, only the partner id is read
        partner = self._data.sessions.get(session.partner_id)
        if partner is None or partner.partner_id != from_id:
            if session.paired:
                async with self._lock:
                    self._partner_of(session)
            logging.debug(f"Dropping {signal_type} from unpaired {from_id=}")
            return SIGNAL_IGNORED

        self._data.channels.send(partner.client_id, RelayedSignal(signal_type, payload, from_id))
        logging.debug(f"Relayed {signal_type} {from_id} -> {partner.client_id}")
        return SIGNAL_OK

    def _ready(self, session: ClientSession) -> str:
        partner = self._partner_of(session)
        if partner is None or session.ready:
            return SIGNAL_IGNORED

        session.ready = True
        if not partner.ready:
            logging.debug(f"{session.client_id} is ready, waiting on {partner.client_id}")
            return SIGNAL_OK

        # the partner was ready first, so it creates the offer
        self._data.channels.send(partner.client_id, StartCall(session.client_id, initiator=True))
        self._data.channels.send(session.client_id, StartCall(partner.client_id, initiator=False))
        logging.info(f"Starting call {partner.client_id} (initiator) <-> {session.client_id}")
        return SIGNAL_OK

    def _skip(self, session: ClientSession) -> str:
        partner = self._partner_of(session)
        if partner is None:
            return SIGNAL_IGNORED

        self._data.channels.send(partner.client_id, PartnerDisconnected())
        session.release()
        partner.release()
        self._data.waiting.enqueue(partner.client_id)
        self._data.waiting.enqueue(session.client_id)
        logging.info(f"{session.client_id} skipped {partner.client_id}")
        self._pair_all()
        return SIGNAL_OK

    # state mutations, called with the lock held

    def _join(self, client_id: str) -> bool:
        _, created = self._data.sessions.register(client_id)
        if not created:
            return False
        self._data.waiting.enqueue(client_id)
        logging.info(f"{client_id=} is waiting for a partner")
        self._pair_all()
        return True

    def _remove(self, client_id: str) -> bool:
        session = self._data.sessions.remove(client_id)
        self._data.waiting.discard(client_id)
        if session is None:
            return False

        partner = self._data.sessions.get(session.partner_id)
        if partner is not None and partner.partner_id == client_id:
            partner.release()
            self._data.waiting.enqueue(partner.client_id)
            self._data.channels.send(partner.client_id, PartnerDisconnected())
            logging.info(f"{partner.client_id} lost partner {client_id}")

        self._pair_all()
        return True

    def _pair_all(self) -> int:
        sessions = self._data.sessions
        waiting = self._data.waiting
        paired = 0
        while len(waiting) >= 2:
            first_id = waiting.pop_oldest()
            second_id = waiting.pop_oldest()
            first, second = sessions.get(first_id), sessions.get(second_id)

            usable = [s for s in (first, second) if s is not None and not s.paired]
            if len(usable) < 2:
                logging.warning(f"Dropped stale queue entries while pairing {first_id} and {second_id}")
                for survivor in reversed(usable):
                    waiting.push_front(survivor.client_id)
                continue

            first.partner_id, first.ready = second_id, False
            second.partner_id, second.ready = first_id, False
            self._data.channels.send(first_id, PartnerFound(second_id))
            self._data.channels.send(second_id, PartnerFound(first_id))
            logging.info(f"Paired {first_id} with {second_id}")
            paired += 1
        return paired

    # invariant repair

    def _is_symmetric(self, session: ClientSession) -> bool:
        partner = self._data.sessions.get(session.partner_id)
        return partner is not None and partner.partner_id == session.client_id

    def _partner_of(self, session: ClientSession) -> Optional[ClientSession]:
        """The session's partner, or None. A one-sided partnership is reset on both ends."""
        if not session.paired:
            return None
        partner = self._data.sessions.get(session.partner_id)
        if partner is not None and partner.partner_id == session.client_id:
            return partner

        logging.warning(f"Partner of {session.client_id} ({session.partner_id}) does not point back, resetting")
        self._reset(session)
        if partner is not None and not (partner.paired and self._is_symmetric(partner)):
            self._reset(partner)
        self._pair_all()
        return None

    def _reset(self, session: ClientSession):
        session.release()
        self._data.waiting.enqueue(session.client_id)

    async def check_invariants(self) -> list[str]:
        """
        Scan every session and the waiting queue, returning the ids that had to be repaired.

        Broken partnerships go back to idle, idle sessions are queued, and queue entries for paired or unknown
        clients are dropped.
        """
        async with self._lock:
            repaired = []
            for session in self._data.sessions:
                if session.paired and not self._is_symmetric(session):
                    self._reset(session)
                    repaired.append(session.client_id)
                elif not session.paired and self._data.waiting.enqueue(session.client_id):
                    repaired.append(session.client_id)
                elif session.paired and self._data.waiting.discard(session.client_id):
                    repaired.append(session.client_id)

            for client_id in self._data.waiting:
                if client_id not in self._data.sessions:
                    self._data.waiting.discard(client_id)
                    repaired.append(client_id)

            for client_id in repaired:
                logging.warning(f"Repaired inconsistent state for {client_id=}")
            self._pair_all()
            return repaired
