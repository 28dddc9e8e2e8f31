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
import os

from call_manager import CallManager
from config import Config, ConfigurationLoadError
from http_server import HttpServer
from logger import setup_logging
from server_data import ServerData
from websocket_server import WebsocketServer


class PairCall:

    def __init__(self, config):
        self._config = config
        self._data = ServerData(channel_backlog=int(self._config["events"]["channel_backlog"]))
        self._manager = CallManager(self._data)
        self._websocket_server = WebsocketServer(self._config, self._data, self._manager)
        self._http_server = HttpServer(self._config, self._data, self._manager)

    async def begin(self):
        logging.info("Starting PairCall Server")
        logging.info("Starting PairCall Websocket Server")
        async with self._websocket_server:
            logging.info("Starting PairCall HTTP Server")
            async with self._http_server:
                try:
                    logging.info(f"Websocket on port {self._websocket_server.port}, HTTP on port {self._http_server.port}")
                    logging.info("Ctrl^C to quit")
                    await self._data.shutdown_event.wait()
                except asyncio.CancelledError:
                    logging.info("Cancelled ...")
                finally:
                    logging.info("Stopping Server ...")
                    await self._manager.shutdown()


async def main():
    logging.info("Starting pair call ...")

    config = Config(os.environ.get("PAIR_CALL_CONFIG", "./config.toml"))

    try:
        await config.initialize()

        pair_call = PairCall(config.config)
        await pair_call.begin()
    except ConfigurationLoadError:
        logging.error("Could not load configuration. Exiting")
        return


def run():
    setup_logging()
    try:
        asyncio.run(main())
    except KeyboardInterrupt:
        logging.info("Cancelled ...")


if __name__ == "__main__":
    run()
