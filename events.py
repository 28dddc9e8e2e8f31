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

import dataclasses
from typing import ClassVar

"""
Outbound events. Every event becomes a flat json object with a "type" tag when written to a client.
"""


@dataclasses.dataclass(frozen=True)
class Event:
    type: ClassVar[str] = "event"

    def to_packet(self) -> dict:
        return {"type": self.type}


@dataclasses.dataclass(frozen=True)
class Connected(Event):
    type: ClassVar[str] = "connected"
    client_id: str

    def to_packet(self) -> dict:
        return {"type": self.type, "userId": self.client_id}


@dataclasses.dataclass(frozen=True)
class PartnerFound(Event):
    type: ClassVar[str] = "partner-found"
    partner_id: str

    def to_packet(self) -> dict:
        return {"type": self.type, "partnerId": self.partner_id}


@dataclasses.dataclass(frozen=True)
class StartCall(Event):
    type: ClassVar[str] = "start-call"
    partner_id: str
    initiator: bool

    def to_packet(self) -> dict:
        return {"type": self.type, "partnerId": self.partner_id, "initiator": self.initiator}


@dataclasses.dataclass(frozen=True)
class PartnerDisconnected(Event):
    type: ClassVar[str] = "partner-disconnected"


@dataclasses.dataclass(frozen=True)
class RelayedSignal(Event):
    """offer / answer / ice-candidate, forwarded verbatim and tagged with the sender"""
    signal_type: str
    payload: dict
    sender_id: str

    def to_packet(self) -> dict:
        packet = dict(self.payload)
        packet["type"] = self.signal_type
        packet["from"] = self.sender_id
        return packet


@dataclasses.dataclass(frozen=True)
class Heartbeat(Event):
    type: ClassVar[str] = "heartbeat"
