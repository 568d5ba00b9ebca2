import asyncio
import os
import sys
from types import SimpleNamespace

import pytest
import requests
from fastapi.testclient import TestClient

sys.path.append(os.path.dirname(os.path.dirname(__file__)))
sys.path.append(os.path.dirname(__file__))
from client import RemoteClient
from network_service import ConnectivityMonitor
from remote_stub import PlatformSwitch


class CountingClient:
    def __init__(self, healthy: bool = True) -> None:
        self.healthy = healthy
        self.calls = []

    def health(self, timeout: float = 5.0) -> bool:
        self.calls.append(timeout)
        return self.healthy


class RecordingSession:
    def __init__(self, status_code: int = 200, error: Exception = None) -> None:
        self.status_code = status_code
        self.error = error
        self.requests = []

    def request(self, method, url, **kwargs):
        self.requests.append((method, url, kwargs))
        if self.error is not None:
            raise self.error
        return SimpleNamespace(status_code=self.status_code)


def test_state_seeded_from_platform():
    assert ConnectivityMonitor(CountingClient(), PlatformSwitch(True)).is_online
    assert not ConnectivityMonitor(CountingClient(), PlatformSwitch(False)).is_online


def test_listeners_notified_on_transitions_only():
    monitor = ConnectivityMonitor(CountingClient(), PlatformSwitch(False))
    seen = []

    def broken(online):
        raise RuntimeError("listener bug")

    monitor.add_listener(broken)
    unsubscribe = monitor.add_listener(seen.append)
    monitor.set_online(False)
    monitor.set_online(True)
    monitor.set_online(True)
    monitor.set_online(False)
    assert seen == [True, False]

    unsubscribe()
    monitor.set_online(True)
    assert seen == [True, False]


@pytest.mark.asyncio
async def test_check_connectivity_skips_probe_when_platform_offline():
    client = CountingClient()
    monitor = ConnectivityMonitor(client, PlatformSwitch(False))
    assert await monitor.check_connectivity() is False
    assert client.calls == []


@pytest.mark.asyncio
async def test_check_connectivity_probes_health(stub):
    client = RemoteClient("http://testserver", session=TestClient(stub.app))
    monitor = ConnectivityMonitor(client, PlatformSwitch(True))
    assert await monitor.check_connectivity() is True
    stub.healthy = False
    assert await monitor.check_connectivity() is False
    assert stub.calls == [("HEAD", "/health"), ("HEAD", "/health")]


@pytest.mark.asyncio
async def test_probe_is_bounded_and_timeouts_mean_offline():
    session = RecordingSession(error=requests.Timeout("timed out"))
    client = RemoteClient("http://api.example", session=session)
    monitor = ConnectivityMonitor(client, PlatformSwitch(True))
    assert await monitor.check_connectivity() is False
    method, url, kwargs = session.requests[0]
    assert method == "HEAD"
    assert url == "http://api.example/health"
    assert kwargs["timeout"] == 5.0


@pytest.mark.asyncio
async def test_wait_for_online_immediate():
    monitor = ConnectivityMonitor(CountingClient(), PlatformSwitch(True))
    assert await monitor.wait_for_online(timeout=0.01) is True


@pytest.mark.asyncio
async def test_wait_for_online_resolves_on_transition():
    monitor = ConnectivityMonitor(CountingClient(), PlatformSwitch(False))
    asyncio.get_running_loop().call_later(0.05, monitor.set_online, True)
    assert await monitor.wait_for_online(timeout=2) is True
    assert len(monitor._listeners) == 0


@pytest.mark.asyncio
async def test_wait_for_online_times_out():
    monitor = ConnectivityMonitor(CountingClient(), PlatformSwitch(False))
    assert await monitor.wait_for_online(timeout=0.05) is False
    assert len(monitor._listeners) == 0
    assert not monitor.is_online


@pytest.mark.asyncio
async def test_monitor_loop_detects_restored_network():
    platform = PlatformSwitch(False)
    monitor = ConnectivityMonitor(CountingClient(), platform, check_interval=0.01)
    seen = []
    monitor.add_listener(seen.append)
    monitor.start()
    platform.online = True
    for _ in range(200):
        if monitor.is_online:
            break
        await asyncio.sleep(0.01)
    await monitor.stop()
    assert monitor.is_online
    assert seen == [True]
