# =============================================================================
# caseflow_core/offline/api_client.py
# HTTP client for the mobile sync endpoints
# =============================================================================
"""
BackendClient - replays SyncActions against the backend and downloads server
changes, translating HTTP outcomes into the sync error taxonomy:

    2xx                         success (server's canonical entity returned)
    409                         SyncConflictError (server copy attached)
    5xx, timeout, no connection SyncTransportError (retryable)
    other 4xx                   SyncRejectedError (permanent)
"""

from __future__ import annotations
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional
from urllib.parse import urlparse
import logging

import requests

from caseflow_core.errors import (
    ConfigurationError,
    SyncConflictError,
    SyncRejectedError,
    SyncTransportError,
)
from caseflow_core.offline.models import SyncAction, to_epoch_ms

logger = logging.getLogger(__name__)


@dataclass
class ReplayResult:
    """Outcome of a successful replay."""
    entity: Dict[str, Any] = field(default_factory=dict)
    status_code: int = 200


@dataclass
class DownloadResult:
    """Server changes since the last pull."""
    cases: List[Dict[str, Any]] = field(default_factory=list)
    deleted_case_ids: List[str] = field(default_factory=list)
    sync_timestamp: Optional[int] = None
    has_more: bool = False


class BackendClient:
    """
    requests-based client for the mobile sync API.

    Usage:
        client = BackendClient("https://crm.example.com", token_provider=sessions.current_token)
        result = client.replay(action, base_version=3)
    """

    REPLAY_ENDPOINT = "api/mobile/sync/actions"
    DOWNLOAD_ENDPOINT = "api/mobile/sync/download"
    HEALTH_ENDPOINT = "api/health"

    def __init__(
        self,
        base_url: str,
        timeout: float = 30,
        token_provider: Optional[Callable[[], Optional[str]]] = None,
        device_id: Optional[str] = None,
        session: Optional[requests.Session] = None,
    ):
        if not base_url:
            raise ConfigurationError("Backend base URL is required", config_key="api_base_url")
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.token_provider = token_provider
        self.device_id = device_id
        self.session = session or requests.Session()
        self.session.headers.update({"Accept": "application/json"})

    @property
    def host(self) -> Optional[str]:
        return urlparse(self.base_url).hostname

    @property
    def port(self) -> int:
        parsed = urlparse(self.base_url)
        return parsed.port or (443 if parsed.scheme == "https" else 80)

    def _headers(self) -> Dict[str, str]:
        headers = {}
        token = self.token_provider() if self.token_provider else None
        if token:
            headers["Authorization"] = f"Bearer {token}"
        if self.device_id:
            headers["X-Device-Id"] = self.device_id
        return headers

    def _make_request(
        self,
        endpoint: str,
        method: str = "GET",
        params: Optional[Dict] = None,
        data: Optional[Dict] = None,
    ) -> requests.Response:
        """
        Make an HTTP request, mapping transport failures to SyncTransportError.

        The caller decides how to treat non-2xx responses.
        """
        url = f"{self.base_url}/{endpoint}"
        try:
            return self.session.request(
                method=method,
                url=url,
                params=params,
                json=data,
                headers=self._headers(),
                timeout=self.timeout,
            )
        except requests.exceptions.Timeout as e:
            raise SyncTransportError(f"Request to {endpoint} timed out: {e}") from e
        except requests.exceptions.RequestException as e:
            raise SyncTransportError(f"Request to {endpoint} failed: {e}") from e

    @staticmethod
    def _json(response: requests.Response) -> Dict[str, Any]:
        try:
            body = response.json()
        except ValueError:
            return {}
        return body if isinstance(body, dict) else {}

    def _raise_for_status(self, response: requests.Response, action: Optional[SyncAction] = None) -> None:
        status = response.status_code
        if 200 <= status < 300:
            return

        body = self._json(response)
        error = body.get("error") if isinstance(body.get("error"), dict) else {}
        message = error.get("message") or body.get("message") or response.reason or f"HTTP {status}"

        if status == 409:
            details = error.get("details") or body.get("data") or {}
            server_data = details.get("serverData") or details.get("server_data") or details.get("entity")
            server_version = details.get("currentVersion", details.get("server_version"))
            if server_version is None and isinstance(server_data, dict):
                server_version = server_data.get("version")
            raise SyncConflictError(
                f"Version conflict: {message}",
                server_data=server_data,
                server_version=int(server_version) if server_version is not None else None,
                conflict_type=details.get("conflictType") or details.get("conflict_type"),
                details={"action_id": action.id} if action else None,
            )
        if status >= 500 or status in (408, 429):
            raise SyncTransportError(f"Server error {status}: {message}", status_code=status)
        raise SyncRejectedError(f"Rejected with {status}: {message}", status_code=status)

    # =========================================================================
    # SYNC ENDPOINTS
    # =========================================================================

    def replay(self, action: SyncAction, base_version: Optional[int] = None) -> ReplayResult:
        """
        Send one queued mutation to the server.

        Args:
            action: The SyncAction to replay
            base_version: Server version the local change was made against

        Returns:
            ReplayResult with the server's canonical entity
        """
        body = {
            "actionId": action.id,
            "actionType": action.action_type.value,
            "entityType": action.entity_type.value,
            "entityId": action.entity_id,
            "baseVersion": base_version,
            "data": action.payload,
            "queuedAt": action.created_at,
        }
        response = self._make_request(self.REPLAY_ENDPOINT, method="POST", data=body)
        self._raise_for_status(response, action)

        payload = self._json(response)
        data = payload.get("data") if isinstance(payload.get("data"), dict) else payload
        entity = data.get("entity") if isinstance(data.get("entity"), dict) else data
        logger.debug(f"Replayed {action.id} ({response.status_code})")
        return ReplayResult(entity=entity or {}, status_code=response.status_code)

    def download_changes(self, since: Optional[int] = None, batch_size: int = 50) -> DownloadResult:
        """Fetch cases changed on the server since `since` (epoch ms)."""
        params: Dict[str, Any] = {"batchSize": batch_size}
        if self.device_id:
            params["deviceId"] = self.device_id
        if since:
            params["since"] = since

        response = self._make_request(self.DOWNLOAD_ENDPOINT, params=params)
        self._raise_for_status(response)

        payload = self._json(response)
        if payload.get("success") is False:
            raise SyncRejectedError(f"Download failed: {payload.get('message')}", status_code=response.status_code)
        data = payload.get("data") if isinstance(payload.get("data"), dict) else payload

        return DownloadResult(
            cases=list(data.get("cases") or []),
            deleted_case_ids=list(data.get("deletedCaseIds") or []),
            sync_timestamp=to_epoch_ms(data.get("syncTimestamp")),
            has_more=bool(data.get("hasMore")),
        )

    def ping(self) -> bool:
        """Health check; False on any transport failure or non-2xx."""
        try:
            response = self._make_request(self.HEALTH_ENDPOINT)
        except SyncTransportError as e:
            logger.debug(f"Backend ping failed: {e}")
            return False
        return 200 <= response.status_code < 300

    def close(self) -> None:
        self.session.close()
