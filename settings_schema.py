from typing import Optional

from pydantic import BaseModel, ValidationError, field_validator


class SyncSettings(BaseModel):
    db_path: str = "offline.db"
    api_base_url: str = "http://localhost:8000"
    api_token: Optional[str] = None
    sync_interval: float = 30.0
    request_timeout: float = 15.0
    probe_timeout: float = 5.0
    connectivity_check_interval: float = 30.0
    max_retries: int = 3

    @field_validator(
        "sync_interval",
        "request_timeout",
        "probe_timeout",
        "connectivity_check_interval",
    )
    @classmethod
    def _positive(cls, value: float) -> float:
        if value <= 0:
            raise ValueError("must be positive")
        return value

    @field_validator("max_retries")
    @classmethod
    def _at_least_one(cls, value: int) -> int:
        if value < 1:
            raise ValueError("must be at least 1")
        return value


def validate_settings(data: dict) -> SyncSettings:
    try:
        return SyncSettings(**data)
    except ValidationError as e:
        raise ValueError(str(e))
