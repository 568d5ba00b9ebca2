"""Network reachability tracking for the offline sync subsystem.

``ConnectivityMonitor`` is the single authority on whether the app is
online. Platform notifications arrive through :meth:`set_online`; an
optional background loop re-evaluates the platform status and the
``HEAD /health`` probe and feeds the same entry point.
"""

from __future__ import annotations

import asyncio
import logging
import socket
from typing import Callable, Optional

from client import RemoteClient
from events import EventChannel, Unsubscribe

logger = logging.getLogger(__name__)

PROBE_TIMEOUT = 5.0
WAIT_FOR_ONLINE_TIMEOUT = 30.0


def platform_reports_online() -> bool:
    """Return whether the host has a non-loopback route.

    Connecting a UDP socket sends no packets; it fails with ``OSError``
    when no interface can reach the address.
    """
    sock = socket.socket(socket.AF_INET, socket.SOCK_DGRAM)
    try:
        sock.connect(("192.0.2.1", 80))
        return not sock.getsockname()[0].startswith("127.")
    except OSError:
        return False
    finally:
        sock.close()


class ConnectivityMonitor:
    """Track online/offline transitions and probe real reachability."""

    def __init__(
        self,
        client: RemoteClient,
        platform_status: Callable[[], bool] = platform_reports_online,
        probe_timeout: float = PROBE_TIMEOUT,
        check_interval: float = 30.0,
    ) -> None:
        self.client = client
        self._platform_status = platform_status
        self.probe_timeout = probe_timeout
        self.check_interval = check_interval
        self._is_online = bool(platform_status())
        self._listeners: EventChannel[bool] = EventChannel("connectivity")
        self._task: Optional[asyncio.Task] = None

    @property
    def is_online(self) -> bool:
        return self._is_online

    def add_listener(self, callback: Callable[[bool], None]) -> Unsubscribe:
        return self._listeners.subscribe(callback)

    def remove_listener(self, callback: Callable[[bool], None]) -> None:
        self._listeners.unsubscribe(callback)

    def set_online(self, online: bool) -> None:
        """Record the platform status and notify listeners on a transition."""
        online = bool(online)
        if online == self._is_online:
            return
        self._is_online = online
        logger.info("Network: %s", "ONLINE" if online else "OFFLINE")
        self._listeners.publish(online)

    async def check_connectivity(self) -> bool:
        if not self._platform_status():
            return False
        return await asyncio.to_thread(self.client.health, self.probe_timeout)

    async def wait_for_online(self, timeout: float = WAIT_FOR_ONLINE_TIMEOUT) -> bool:
        """Wait up to ``timeout`` seconds for the next online transition."""
        if self._is_online:
            return True
        loop = asyncio.get_running_loop()
        came_online: asyncio.Future = loop.create_future()

        def listener(online: bool) -> None:
            if online and not came_online.done():
                came_online.set_result(True)

        unsubscribe = self.add_listener(listener)
        try:
            return await asyncio.wait_for(came_online, timeout)
        except asyncio.TimeoutError:
            return False
        finally:
            unsubscribe()

    def start(self) -> None:
        """Start polling the platform status and the health probe."""
        if self._task is not None:
            return
        self._task = asyncio.get_running_loop().create_task(self._monitor_loop())
        logger.info("ConnectivityMonitor started (interval=%.0fs)", self.check_interval)

    async def stop(self) -> None:
        task, self._task = self._task, None
        if task is None:
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass

    async def _monitor_loop(self) -> None:
        while True:
            await asyncio.sleep(self.check_interval)
            try:
                self.set_online(await self.check_connectivity())
            except Exception:
                logger.exception("Connectivity check failed")

    def close(self) -> None:
        self._listeners.clear()
