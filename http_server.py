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

import json
import logging
from typing import Optional

from aiohttp import web

from call_manager import MAX_CLIENT_ID_LENGTH, CallManager, MalformedSignal
from channel_directory import ChannelClosed, EventChannel
from events import Event, Heartbeat
from server_data import ServerData, SessionNotFound

"""
Request/response transport for clients that cannot hold a websocket.

GET  /api/user-id                -> {"userId": ...}
GET  /api/events?userId=<id>     -> server-sent events, one json object per event
POST /api/signal                 <- {"userId": ..., "type": ..., "data": {...}}
GET  /api/ice-servers            -> {"iceServers": [...]}
"""


class HttpServer:

    def __init__(self, config, data: ServerData, manager: CallManager):
        self._config = config
        self._data = data
        self._manager = manager
        self._heartbeat_interval = float(self._config["events"]["heartbeat_interval"])
        self._runner: Optional[web.AppRunner] = None
        self._site: Optional[web.TCPSite] = None
        self.app = self.create_app()

    def create_app(self) -> web.Application:
        app = web.Application()
        app.router.add_get("/", self.health)
        app.router.add_get("/api/user-id", self.user_id)
        app.router.add_get("/api/events", self.events)
        app.router.add_post("/api/signal", self.signal)
        app.router.add_get("/api/ice-servers", self.ice_servers)
        return app

    @property
    def port(self) -> Optional[int]:
        if self._runner is None:
            return None
        for address in self._runner.addresses:
            return address[1]
        return None

    async def health(self, request: web.Request) -> web.Response:
        return web.json_response({"message": "PairCall signaling relay is running", **self._manager.stats()})

    async def user_id(self, request: web.Request) -> web.Response:
        return web.json_response({"userId": self._manager.issue_client_id()})

    async def ice_servers(self, request: web.Request) -> web.Response:
        return web.json_response({"iceServers": self._config["ice"]["servers"]})

    async def signal(self, request: web.Request) -> web.Response:
        try:
            body = await request.json()
        except json.JSONDecodeError:
            logging.warning(f"Signal request with non-JSON body")
            return web.json_response({"error": "malformed_signal", "detail": "body must be json"}, status=400)

        if not isinstance(body, dict) or not body.get("userId") or not isinstance(body.get("type"), str):
            return web.json_response(
                {"error": "malformed_signal", "detail": "userId and type are required"}, status=400
            )

        client_id, signal_type = str(body["userId"]), body["type"]
        if len(client_id) > MAX_CLIENT_ID_LENGTH:
            return web.json_response({"error": "malformed_signal", "detail": "userId is too long"}, status=400)
        try:
            status = await self._manager.signal(client_id, signal_type, body.get("data"))
        except SessionNotFound:
            return web.json_response({"error": "session_not_found"}, status=404)
        except MalformedSignal as e:
            logging.warning(f"Rejected {signal_type} from {client_id=}: {e}")
            return web.json_response({"error": "malformed_signal", "detail": str(e)}, status=400)

        return web.json_response({"status": status})

    async def events(self, request: web.Request) -> web.StreamResponse:
        client_id = request.query.get("userId")
        if not client_id:
            return web.json_response({"error": "userId is required"}, status=400)
        if len(client_id) > MAX_CLIENT_ID_LENGTH:
            return web.json_response({"error": "userId is too long"}, status=400)

        response = web.StreamResponse(headers={
            "Content-Type": "text/event-stream",
            "Cache-Control": "no-cache",
            "Connection": "keep-alive",
        })
        await response.prepare(request)

        channel = self._manager.new_channel(client_id)
        await self._manager.channel_opened(client_id, channel)
        try:
            await self._pump(response, channel)
        finally:
            await self._manager.channel_closed(client_id, channel)
        return response

    async def _pump(self, response: web.StreamResponse, channel: EventChannel):
        try:
            while not self._data.shutdown_event.is_set():
                event = await channel.next_event(timeout=self._heartbeat_interval)
                await self._write_event(response, event or Heartbeat())
        except ChannelClosed:
            logging.debug(f"Channel for {channel.client_id} closed")
        except ConnectionResetError:
            logging.debug(f"Write to {channel.client_id} failed, connection reset")

    @staticmethod
    async def _write_event(response: web.StreamResponse, event: Event):
        await response.write(f"data: {json.dumps(event.to_packet())}\n\n".encode())

    async def __aenter__(self):
        logging.debug(f"Starting http server")
        self._runner = web.AppRunner(self.app)
        await self._runner.setup()
        self._site = web.TCPSite(
            self._runner,
            self._config["server"]["host"],
            int(self._config["server"]["http_port"]),
        )
        await self._site.start()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        if self._runner is not None:
            logging.debug(f"Stopping http server")
            await self._runner.cleanup()
