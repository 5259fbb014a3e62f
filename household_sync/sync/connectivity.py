"""Connectivity tracking for automatic network retries."""

import asyncio

import structlog


logger = structlog.get_logger(__name__)


class ConnectivityMonitor:
    """
    Online/offline flag that retries can wait on.

    Automatic network retries only fire while the monitor reports online;
    going offline parks them until connectivity is restored.
    """

    def __init__(self, online: bool = True):
        self._online = asyncio.Event()
        if online:
            self._online.set()

    @property
    def is_online(self) -> bool:
        return self._online.is_set()

    def set_online(self) -> None:
        if not self._online.is_set():
            logger.info("connectivity_restored")
        self._online.set()

    def set_offline(self) -> None:
        if self._online.is_set():
            logger.warning("connectivity_lost")
        self._online.clear()

    async def wait_until_online(self) -> None:
        await self._online.wait()
