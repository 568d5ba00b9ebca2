import asyncio
import logging
from typing import Any, Callable, Optional

from client import RemoteClient
from db import LocalStore, StorageError
from network_service import ConnectivityMonitor, platform_reports_online
from session_service import WorkoutSessionService
from settings_schema import SyncSettings
from sync_service import SyncOrchestrator

logger = logging.getLogger(__name__)


class OfflineContext:
    """Own the offline store, connectivity monitor and sync orchestrator.

    Build one instance at process start and hand it to every consumer.
    Nothing runs until :meth:`start` is awaited.
    """

    def __init__(
        self,
        settings: Optional[SyncSettings] = None,
        platform_status: Callable[[], bool] = platform_reports_online,
        http_session: Any = None,
    ) -> None:
        self.settings = settings or SyncSettings()
        self.store = LocalStore(self.settings.db_path)
        self.client = RemoteClient(
            self.settings.api_base_url,
            timeout=self.settings.request_timeout,
            token=self.settings.api_token,
            session=http_session,
        )
        self.monitor = ConnectivityMonitor(
            self.client,
            platform_status=platform_status,
            probe_timeout=self.settings.probe_timeout,
            check_interval=self.settings.connectivity_check_interval,
        )
        self.orchestrator = SyncOrchestrator(
            self.store,
            self.client,
            self.monitor,
            interval=self.settings.sync_interval,
            max_retries=self.settings.max_retries,
        )
        self.workouts = WorkoutSessionService(self.store, on_change=self._local_change)
        self.offline_enabled = False
        self._started = False
        self._pending: set = set()

    @property
    def started(self) -> bool:
        return self._started

    async def start(self, poll_connectivity: bool = True) -> None:
        """Open the store and start the background triggers.

        If the store cannot be opened the context keeps running in
        online-only mode with sync disabled.
        """
        if self._started:
            return
        try:
            await self.store.open()
            self.offline_enabled = True
        except StorageError as e:
            logger.error("Offline storage unavailable, running online-only: %s", e)
            self.offline_enabled = False
        if self.offline_enabled:
            self.orchestrator.start()
            if poll_connectivity:
                self.monitor.start()
        self._started = True

    async def stop(self) -> None:
        if not self._started:
            return
        await self.monitor.stop()
        await self.orchestrator.stop()
        if self._pending:
            await asyncio.gather(*self._pending, return_exceptions=True)
        self._started = False

    def _local_change(self) -> None:
        if not (self._started and self.offline_enabled and self.monitor.is_online):
            return
        task = asyncio.get_running_loop().create_task(self.orchestrator.sync())
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)

    async def __aenter__(self) -> "OfflineContext":
        await self.start()
        return self

    async def __aexit__(self, *exc: Any) -> None:
        await self.stop()
