import os
import sys

import pytest
from fastapi.testclient import TestClient

sys.path.append(os.path.dirname(os.path.dirname(__file__)))
sys.path.append(os.path.dirname(__file__))
from offline_context import OfflineContext
from remote_stub import PlatformSwitch, RemoteStub
from settings_schema import SyncSettings


@pytest.fixture
def stub():
    return RemoteStub()


@pytest.fixture
def platform():
    return PlatformSwitch(True)


@pytest.fixture
def settings(tmp_path):
    return SyncSettings(
        db_path=str(tmp_path / "offline.db"),
        api_base_url="http://testserver",
        sync_interval=60,
        connectivity_check_interval=60,
    )


@pytest.fixture
def context(settings, stub, platform):
    return OfflineContext(
        settings,
        platform_status=platform,
        http_session=TestClient(stub.app),
    )
