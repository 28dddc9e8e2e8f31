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
import json
import logging
from http import HTTPStatus
from typing import Optional
from urllib.parse import parse_qs, urlsplit

import websockets
from websockets.asyncio.server import ServerConnection, serve
from websockets.http11 import Request, Response

from call_manager import MAX_CLIENT_ID_LENGTH, CallManager, MalformedSignal
from channel_directory import ChannelClosed, EventChannel
from server_data import ServerData, SessionNotFound

WEBSOCKET_PATH = "/ws"


class WebsocketServer:
    """
    Push channel and signal transport over a single websocket.

    ws://host:port/ws?userId=<id>   (userId is optional, a new id is issued without it)

    client -> server: {"id": <request id>, "type": "ready" | "offer" | ..., "data": {...}}
    server -> client: {"id": <request id>, "type": "ack", "status": "ok" | "ignored"}
                      {"id": <request id>, "type": "error", "error": "session_not_found" | "malformed_signal"}
                      and every event queued on the client's channel
    """

    def __init__(self, config, data: ServerData, manager: CallManager):
        self._config = config
        self._data = data
        self._manager = manager
        self._websocket_server: Optional[serve] = None
        self._server = None

    @property
    def port(self) -> Optional[int]:
        if self._server is None:
            return None
        for sock in self._server.sockets:
            return sock.getsockname()[1]
        return None

    def process_request(self, connection: ServerConnection, request: Request) -> Optional[Response]:
        path = urlsplit(request.path).path
        if path == "/":
            health = {"message": "PairCall signaling relay is running", **self._manager.stats()}
            return connection.respond(HTTPStatus.OK, json.dumps(health) + "\n")
        if path != WEBSOCKET_PATH:
            return connection.respond(HTTPStatus.NOT_FOUND, "Not Found\n")
        return None

    @staticmethod
    def _requested_client_id(websocket: ServerConnection) -> Optional[str]:
        query = parse_qs(urlsplit(websocket.request.path).query)
        client_id = query.get("userId", [None])[0]
        if client_id and len(client_id) <= MAX_CLIENT_ID_LENGTH:
            return client_id
        return None

    async def handler(self, websocket: ServerConnection):
        client_id = self._requested_client_id(websocket) or self._manager.issue_client_id()
        channel = self._manager.new_channel(client_id)
        await self._manager.channel_opened(client_id, channel)

        pump_task = asyncio.create_task(self._pump(websocket, channel))
        shutdown_wait_task = asyncio.create_task(self._data.shutdown_event.wait())
        try:
            while True:
                recv_task = asyncio.create_task(websocket.recv())
                done, pending = await asyncio.wait(
                    [recv_task, pump_task, shutdown_wait_task],
                    return_when=asyncio.FIRST_COMPLETED
                )

                # channel replaced or closed, or shutdown
                if recv_task not in done:
                    recv_task.cancel()
                    break

                message = recv_task.result()
                if isinstance(message, str):
                    await self._parse_message(websocket, client_id, message)
        except websockets.exceptions.ConnectionClosed:
            logging.debug(f"Websocket connection closed for {client_id=}")
        finally:
            pump_task.cancel()
            shutdown_wait_task.cancel()
            await asyncio.gather(pump_task, shutdown_wait_task, return_exceptions=True)
            await self._manager.channel_closed(client_id, channel)

        await websocket.close()

    async def _pump(self, websocket: ServerConnection, channel: EventChannel):
        try:
            while True:
                event = await channel.next_event()
                await websocket.send(json.dumps(event.to_packet()))
        except ChannelClosed:
            logging.debug(f"Channel for {channel.client_id} closed")
        except websockets.exceptions.ConnectionClosed:
            logging.debug(f"Write to {channel.client_id} failed, connection closed")

    async def _parse_message(self, websocket: ServerConnection, client_id: str, message: str):
        try:
            packet = json.loads(message)
        except json.JSONDecodeError as e:
            logging.warning(f"WebSocket sent non-JSON data; details:")
            logging.exception(e)
            await self._send_error(websocket, None, "malformed_signal")
            return

        logging.debug(f"Received message: {packet}")
        if not isinstance(packet, dict) or not isinstance(packet.get("type"), str):
            logging.warning(f"Malformed packet - no type")
            await self._send_error(websocket, None, "malformed_signal")
            return
        await self._handle_packet(websocket, client_id, packet)

    async def _handle_packet(self, websocket: ServerConnection, client_id: str, packet: dict) -> None:
        request_id = packet.get("id")
        try:
            status = await self._manager.signal(client_id, packet["type"], packet.get("data"))
        except SessionNotFound:
            await self._send_error(websocket, request_id, "session_not_found")
            return
        except MalformedSignal as e:
            logging.warning(f"Rejected {packet['type']} from {client_id=}: {e}")
            await self._send_error(websocket, request_id, "malformed_signal", str(e))
            return

        await websocket.send(json.dumps({"id": request_id, "type": "ack", "status": status}))

    @staticmethod
    async def _send_error(websocket: ServerConnection, request_id, error: str, detail: Optional[str] = None):
        packet = {"id": request_id, "type": "error", "error": error}
        if detail:
            packet["detail"] = detail
        await websocket.send(json.dumps(packet))

    async def __aenter__(self):
        logging.debug(f"Starting websocket server")
        self._websocket_server = serve(
            self.handler,
            self._config["server"]["host"],
            int(self._config["server"]["websocket_port"]),
            process_request=self.process_request,
        )
        self._server = await self._websocket_server.__aenter__()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        if self._websocket_server is not None:
            logging.debug(f"Stopping websocket server")
            return await self._websocket_server.__aexit__(exc_type, exc_val, exc_tb)
