#!/usr/bin/env python3
"""
Forum to TeamSpeak Sync Bot

Listens for private text commands, keeps mapped TeamSpeak server groups in
sync with forum groups and links TeamSpeak identities to forum accounts.
"""

import sys
import time
import asyncio
import logging
from typing import Optional, Set

from commands import CommandDispatcher
from config import Settings, load_settings
from errors import DirectoryUnavailable, StoreUnavailable
from forum_store import ForumStore
from group_map import GroupMapStore
from login import CredentialLinker, LoginRateLimiter
from scheduler import SyncScheduler
from sync import Reconciler
from teamspeak_client import ConnectionLost, TeamSpeakDirectory, TeamSpeakListener
from validate_config import missing_config


logger = logging.getLogger(__name__)

RECONNECT_DELAY_SECONDS = 1.0


class SyncBot:
    """Wires the components together and runs the event loop."""

    def __init__(self, settings: Settings, store=None, directory=None, listener=None):
        self.settings = settings
        self.store = store or ForumStore(settings)
        self.directory = directory or TeamSpeakDirectory(settings)
        self.listener = listener or TeamSpeakListener(settings)
        self.group_map = GroupMapStore(settings)
        self.limiter = LoginRateLimiter(settings.login_max_attempts, settings.login_error_timeout_ms)
        self.reconciler = Reconciler(settings, self.store, self.directory, self.group_map)
        self.linker = CredentialLinker(settings, self.store, self.reconciler, self.limiter)
        self.scheduler = SyncScheduler(self.reconciler, self.limiter, settings)
        self.dispatcher = CommandDispatcher(
            settings,
            self.listener.send_message,
            linker=self.linker,
            reconciler=self.reconciler,
            group_map=self.group_map,
            store=self.store,
            directory=self.directory,
            lifecycle=self,
        )
        self.start_time = time.time()
        self.connect_time: Optional[float] = None
        self._stopping: Optional[asyncio.Event] = None
        self._tasks: Set[asyncio.Task] = set()

    def reload_settings(self) -> Settings:
        """Re-read the environment. Connection settings apply on the next reconnect."""
        settings = load_settings(override=True)
        for holder in (self, self.reconciler, self.linker, self.scheduler, self.dispatcher, self.group_map):
            holder.settings = settings
        for client in (self.directory, self.listener):
            if getattr(client, "channel", None) is not None:
                client.channel.settings = settings
        self.group_map.path = settings.forum_group_map_file
        self.reconciler.sync_log.path = settings.sync_log_file
        self.reconciler.population_log.path = settings.population_log_file
        self.limiter.max_attempts = settings.login_max_attempts
        self.limiter.window_ms = settings.login_error_timeout_ms
        logging.getLogger().setLevel(settings.log_level)
        logger.info("Configuration reloaded")
        return settings

    async def stop(self):
        if self._stopping is not None:
            self._stopping.set()

    def _spawn(self, coro):
        task = asyncio.get_running_loop().create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    async def _handle_message(self, data):
        try:
            invoker = await self.listener.get_invoker(int(data["invokerid"]))
        except DirectoryUnavailable as e:
            logger.error(f"Could not look up message sender {data.get('invokername')}: {e}")
            return
        if invoker is None:
            return
        await self.dispatcher.dispatch(invoker, data.get("msg", ""))

    async def _reconnect(self):
        logger.warning("Disconnected, trying to reconnect...")
        while not self._stopping.is_set():
            try:
                await self.listener.connect()
            except DirectoryUnavailable as e:
                logger.debug(f"Reconnect failed: {e}")
                await asyncio.sleep(RECONNECT_DELAY_SECONDS)
                continue
            self.connect_time = time.time()
            logger.info("Reconnected to server")
            return

    async def _listen(self):
        loop = asyncio.get_running_loop()
        last_keepalive = loop.time()
        while not self._stopping.is_set():
            if not self.listener.connected:
                await self._reconnect()
                continue
            try:
                data = await self.listener.next_message()
                if loop.time() - last_keepalive >= self.listener.keepalive_seconds:
                    await self.listener.keepalive()
                    last_keepalive = loop.time()
            except ConnectionLost as e:
                logger.warning(f"Lost connection to TeamSpeak: {e}")
                continue
            if data is not None:
                self._spawn(self._handle_message(data))

    async def run(self):
        self._stopping = asyncio.Event()
        await asyncio.to_thread(self.store.connect)
        await self.directory.connect()
        await self.listener.connect()
        self.connect_time = time.time()
        logger.info("Bot started and connected to server")

        self.group_map.load()
        self.scheduler.start()
        try:
            await self._listen()
        finally:
            await self.shutdown()

    async def shutdown(self):
        await self.scheduler.stop()
        for task in list(self._tasks):
            task.cancel()
        if self._tasks:
            await asyncio.gather(*self._tasks, return_exceptions=True)
        await self.listener.close()
        await self.directory.close()
        await asyncio.to_thread(self.store.close)
        logger.info("Bot stopped")


def main():
    settings = load_settings()
    logging.basicConfig(
        level=settings.log_level,
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
    )

    missing = missing_config()
    if missing:
        logger.error(f"Missing required configuration: {', '.join(missing)}")
        sys.exit(1)

    async def serve():
        # asyncio primitives belong to the loop that runs the bot
        await SyncBot(settings).run()

    try:
        asyncio.run(serve())
    except KeyboardInterrupt:
        logger.info("Interrupted")
    except (DirectoryUnavailable, StoreUnavailable) as e:
        logger.error(f"Bot failed: {e}", exc_info=True)
        sys.exit(1)


if __name__ == "__main__":
    main()
