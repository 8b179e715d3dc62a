from __future__ import annotations

import asyncio
import contextlib
import signal

from aiohttp import web

from dmcrm.backend.base import BackendConnection, ConnectionFactory
from dmcrm.backend.gateway import DiscordGatewayConnection
from dmcrm.backend.rest import DiscordRestClient
from dmcrm.change_feed import ChangeFeedListener
from dmcrm.config import Settings
from dmcrm.http_api import OperatorApi
from dmcrm.manager import SessionManager
from dmcrm.services.account_service import AccountService
from dmcrm.services.history_service import HistoryImporter
from dmcrm.services.logger_service import LoggerService
from dmcrm.services.message_service import MessageStore
from dmcrm.services.recorder_service import MessageRecorder
from dmcrm.storage import MessagePackStore


class CRMBotService:
    def __init__(self, settings: Settings, *, connection_factory: ConnectionFactory | None = None) -> None:
        self.settings = settings
        self.store = MessagePackStore(settings.store_path)
        self.logger = LoggerService(self.store, buffer_size=settings.log_buffer_size)
        self.messages = MessageStore(self.store)
        self.accounts = AccountService(self.store, self.messages, self.logger)
        self.recorder = MessageRecorder(self.messages, self.logger)
        self.importer = HistoryImporter(self.recorder, self.logger, page_size=settings.history_page_size)
        self.rest = DiscordRestClient(
            settings.discord_api_base,
            locale=settings.client_locale,
            timezone_name=settings.client_timezone,
        )
        self.manager = SessionManager(
            accounts=self.accounts,
            recorder=self.recorder,
            importer=self.importer,
            logger=self.logger,
            connection_factory=connection_factory or self._gateway_connection,
        )
        self.change_feed = ChangeFeedListener(self.accounts, self.manager, self.logger)
        self.api = OperatorApi(
            manager=self.manager,
            accounts=self.accounts,
            messages=self.messages,
            rest=self.rest,
            logger=self.logger,
        )
        self._autosave_task: asyncio.Task | None = None
        self._runner: web.AppRunner | None = None
        self._stop_event = asyncio.Event()

    def _gateway_connection(self, account_id: str, credential: str) -> BackendConnection:
        return DiscordGatewayConnection(account_id, credential, rest=self.rest, logger=self.logger)

    async def start(self, *, serve_http: bool = True) -> None:
        await self.store.load()
        self._autosave_task = asyncio.create_task(self.store.autosave_loop(), name="msgpack-autosave")
        self.logger.log("service.starting", store_path=str(self.settings.store_path))
        # subscribe before the initial load so no insert falls between the two
        self.change_feed.start()
        await self.manager.initialize()
        if serve_http:
            self._runner = web.AppRunner(self.api.build_app())
            await self._runner.setup()
            site = web.TCPSite(self._runner, self.settings.http_host, self.settings.http_port)
            await site.start()
            self.logger.log("service.http_listening", host=self.settings.http_host, port=self.settings.http_port)
        self.logger.log("service.running", active=self.manager.status()["totalBots"])

    async def shutdown(self) -> None:
        self.logger.log("service.stopping")
        await self.change_feed.stop()
        await self.manager.shutdown()
        if self._runner is not None:
            await self._runner.cleanup()
            self._runner = None
        if self._autosave_task is not None:
            self._autosave_task.cancel()
            await asyncio.gather(self._autosave_task, return_exceptions=True)
            self._autosave_task = None
        await self.store.save()

    def request_stop(self) -> None:
        self._stop_event.set()

    async def run(self) -> None:
        self._stop_event = asyncio.Event()
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGINT, signal.SIGTERM):
            with contextlib.suppress(NotImplementedError):
                loop.add_signal_handler(sig, self.request_stop)
        await self.start()
        try:
            await self._stop_event.wait()
        finally:
            await self.shutdown()


def main() -> None:
    settings = Settings.load()
    service = CRMBotService(settings)
    asyncio.run(service.run())
