import os
from typing import Any, Dict

import keyring
import yaml

from settings_schema import SyncSettings, validate_settings

APP_VERSION = "1.0.0"


class YamlConfig:
    """Sync settings kept in a YAML file.

    With ``ENCRYPT_SETTINGS=1`` the API token lives in the OS keyring and
    the file only records that one is stored.
    """

    SENSITIVE_KEYS = {
        "api_token",
    }

    ENV_OVERRIDES = {
        "SYNC_API_URL": "api_base_url",
        "SYNC_DB_PATH": "db_path",
    }

    KEYRING_SERVICE = "liftsync"

    def __init__(self, path: str = "settings.yaml") -> None:
        self.path = path
        self.encrypt = os.environ.get("ENCRYPT_SETTINGS") == "1"

    def _read_secrets(self, data: Dict[str, Any]) -> None:
        for key in self.SENSITIVE_KEYS & set(data):
            secret = keyring.get_password(self.KEYRING_SERVICE, key)
            if secret is None:
                del data[key]
            else:
                data[key] = secret

    def _store_secrets(self, data: Dict[str, Any]) -> None:
        for key in self.SENSITIVE_KEYS & set(data):
            keyring.set_password(self.KEYRING_SERVICE, key, str(data[key]))
            data[key] = True

    def load(self) -> Dict[str, Any]:
        if not os.path.exists(self.path):
            return {}
        with open(self.path, "r", encoding="utf-8") as f:
            data = yaml.safe_load(f) or {}
        if self.encrypt:
            self._read_secrets(data)
        return data

    def save(self, data: Dict[str, Any]) -> None:
        out = {k: v for k, v in data.items() if v is not None}
        if self.encrypt:
            self._store_secrets(out)
        with open(self.path, "w", encoding="utf-8") as f:
            yaml.safe_dump(out, f)

    def settings(self) -> SyncSettings:
        """Return validated settings with environment overrides applied."""
        data = self.load()
        for env_key, key in self.ENV_OVERRIDES.items():
            value = os.environ.get(env_key)
            if value:
                data[key] = value
        return validate_settings(data)
