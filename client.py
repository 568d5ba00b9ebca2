import logging
import requests
from typing import Any, Dict, List, Optional

logger = logging.getLogger(__name__)


class RemoteError(Exception):
    """A remote call failed or returned a non-2xx status."""

    def __init__(self, message: str, status_code: Optional[int] = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class RemoteClient:
    """REST client for the workout service used by the sync subsystem.

    Every call is bounded by ``timeout`` seconds. Writes are keyed by
    client generated ids, so the service must treat a repeated identical
    request as an upsert.
    """

    QUEUE_METHODS = {
        "create": "POST",
        "update": "PATCH",
        "delete": "DELETE",
    }

    def __init__(
        self,
        base_url: str = "http://localhost:8000",
        timeout: float = 15.0,
        token: Optional[str] = None,
        session: Any = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.session = session if session is not None else requests.Session()
        self.headers = {"Content-Type": "application/json"}
        if token:
            self.headers["Authorization"] = f"Bearer {token}"

    def _request(
        self,
        method: str,
        path: str,
        json: Optional[Dict[str, Any]] = None,
        timeout: Optional[float] = None,
    ):
        url = f"{self.base_url}{path}"
        try:
            resp = self.session.request(
                method,
                url,
                json=json,
                headers=self.headers,
                timeout=timeout if timeout is not None else self.timeout,
            )
        except requests.RequestException as e:
            raise RemoteError(f"{method} {path} failed: {e}") from e
        if not 200 <= resp.status_code < 300:
            raise RemoteError(
                f"{method} {path} returned {resp.status_code}", resp.status_code
            )
        return resp

    def upsert_session(self, session_id: str, payload: Dict[str, Any]) -> None:
        self._request("PUT", f"/sessions/{session_id}", json=payload)

    def create_sets(self, session_id: str, sets: List[Dict[str, Any]]) -> None:
        self._request("POST", f"/sessions/{session_id}/sets", json={"sets": sets})

    def dispatch(
        self,
        operation_type: str,
        entity_type: str,
        entity_id: str,
        payload: Optional[Dict[str, Any]] = None,
    ) -> None:
        """Send one queued operation to its matching REST verb and path."""
        method = self.QUEUE_METHODS.get(operation_type)
        if method is None:
            raise ValueError(f"unknown operation type: {operation_type}")
        if operation_type == "create":
            path = f"/{entity_type}s"
        else:
            path = f"/{entity_type}s/{entity_id}"
        self._request(method, path, json=payload)

    def health(self, timeout: float = 5.0) -> bool:
        """Issue the bounded ``HEAD /health`` reachability probe."""
        try:
            self._request("HEAD", "/health", timeout=timeout)
        except RemoteError as e:
            logger.debug("Health probe failed: %s", e)
            return False
        return True
