# =============================================================================
# tests/unit/test_api_client.py
# Unit Tests for BackendClient
# =============================================================================

import pytest
import requests
from unittest.mock import MagicMock

from caseflow_core.errors import (
    ConfigurationError,
    SyncConflictError,
    SyncRejectedError,
    SyncTransportError,
)
from caseflow_core.offline.api_client import BackendClient
from caseflow_core.offline.models import ActionStatus, ActionType, EntityType, SyncAction


def make_response(status_code=200, body=None, reason="OK"):
    response = MagicMock(spec=requests.Response)
    response.status_code = status_code
    response.reason = reason
    if body is None:
        response.json.side_effect = ValueError("no json")
    else:
        response.json.return_value = body
    return response


def make_action(**overrides):
    values = dict(
        id="sync_1",
        action_type=ActionType.UPDATE,
        entity_type=EntityType.CASE,
        entity_id="C1",
        action_data='{"id":"C1","notes":"gate locked"}',
        created_at=1_700_000_000_000,
        status=ActionStatus.PENDING,
    )
    values.update(overrides)
    return SyncAction(**values)


@pytest.fixture
def session():
    session = MagicMock(spec=requests.Session)
    session.headers = {}
    session.request.return_value = make_response(200, {"success": True, "data": {"entity": {"version": 2}}})
    return session


@pytest.fixture
def client(session):
    return BackendClient(
        "https://crm.example.com/",
        timeout=5,
        token_provider=lambda: "tok-123",
        device_id="device_1",
        session=session,
    )


class TestConstruction:

    def test_requires_base_url(self):
        with pytest.raises(ConfigurationError):
            BackendClient("")

    def test_host_and_port(self, client):
        assert client.base_url == "https://crm.example.com"
        assert client.host == "crm.example.com"
        assert client.port == 443

    def test_explicit_port(self, session):
        client = BackendClient("http://localhost:3000", session=session)
        assert client.port == 3000
        assert client.host == "localhost"


class TestReplay:

    def test_request_shape(self, client, session):
        result = client.replay(make_action(), base_version=3)

        kwargs = session.request.call_args.kwargs
        assert kwargs["method"] == "POST"
        assert kwargs["url"] == "https://crm.example.com/api/mobile/sync/actions"
        assert kwargs["timeout"] == 5
        assert kwargs["headers"]["Authorization"] == "Bearer tok-123"
        assert kwargs["headers"]["X-Device-Id"] == "device_1"
        assert kwargs["json"] == {
            "actionId": "sync_1",
            "actionType": "update",
            "entityType": "case",
            "entityId": "C1",
            "baseVersion": 3,
            "data": {"id": "C1", "notes": "gate locked"},
            "queuedAt": 1_700_000_000_000,
        }
        assert result.entity == {"version": 2}
        assert result.status_code == 200

    def test_no_token_no_auth_header(self, session):
        client = BackendClient("https://crm.example.com", token_provider=lambda: None, session=session)
        client.replay(make_action())
        assert "Authorization" not in session.request.call_args.kwargs["headers"]

    def test_flat_body_entity(self, client, session):
        session.request.return_value = make_response(201, {"id": "C1", "version": 5})
        assert client.replay(make_action()).entity == {"id": "C1", "version": 5}

    def test_empty_body(self, client, session):
        session.request.return_value = make_response(204)
        assert client.replay(make_action()).entity == {}

    def test_conflict(self, client, session):
        session.request.return_value = make_response(409, {
            "success": False,
            "error": {
                "message": "Case was modified",
                "details": {
                    "currentVersion": 4,
                    "serverData": {"id": "C1", "version": 4},
                    "conflictType": "version_mismatch",
                },
            },
        }, reason="Conflict")

        with pytest.raises(SyncConflictError) as exc_info:
            client.replay(make_action())

        error = exc_info.value
        assert error.server_version == 4
        assert error.server_data == {"id": "C1", "version": 4}
        assert error.conflict_type == "version_mismatch"
        assert "Case was modified" in error.message

    def test_conflict_version_from_snapshot(self, client, session):
        session.request.return_value = make_response(409, {"data": {"serverData": {"id": "C1", "version": 7}}})
        with pytest.raises(SyncConflictError) as exc_info:
            client.replay(make_action())
        assert exc_info.value.server_version == 7

    @pytest.mark.parametrize("status", [500, 502, 503, 408, 429])
    def test_retryable_statuses(self, client, session, status):
        session.request.return_value = make_response(status, {"message": "try later"})
        with pytest.raises(SyncTransportError) as exc_info:
            client.replay(make_action())
        assert exc_info.value.status_code == status

    @pytest.mark.parametrize("status", [400, 401, 403, 404, 422])
    def test_rejected_statuses(self, client, session, status):
        session.request.return_value = make_response(status, {"message": "bad"})
        with pytest.raises(SyncRejectedError) as exc_info:
            client.replay(make_action())
        assert exc_info.value.status_code == status

    def test_timeout_is_transport_error(self, client, session):
        session.request.side_effect = requests.exceptions.Timeout("read timed out")
        with pytest.raises(SyncTransportError):
            client.replay(make_action())

    def test_connection_error_is_transport_error(self, client, session):
        session.request.side_effect = requests.exceptions.ConnectionError("no route")
        with pytest.raises(SyncTransportError):
            client.replay(make_action())


class TestDownload:

    def test_download_changes(self, client, session):
        session.request.return_value = make_response(200, {
            "success": True,
            "data": {
                "cases": [{"id": "S1", "customerName": "Meera"}],
                "deletedCaseIds": ["OLD"],
                "syncTimestamp": "2024-01-01T00:00:00+00:00",
                "hasMore": True,
            },
        })

        result = client.download_changes(since=1_700_000_000_000, batch_size=25)

        kwargs = session.request.call_args.kwargs
        assert kwargs["method"] == "GET"
        assert kwargs["url"].endswith("/api/mobile/sync/download")
        assert kwargs["params"] == {"batchSize": 25, "deviceId": "device_1", "since": 1_700_000_000_000}
        assert result.cases == [{"id": "S1", "customerName": "Meera"}]
        assert result.deleted_case_ids == ["OLD"]
        assert result.sync_timestamp == 1_704_067_200_000
        assert result.has_more is True

    def test_first_download_has_no_since(self, client, session):
        session.request.return_value = make_response(200, {"data": {}})
        result = client.download_changes()
        assert "since" not in session.request.call_args.kwargs["params"]
        assert result.cases == []
        assert result.has_more is False

    def test_unsuccessful_payload_rejected(self, client, session):
        session.request.return_value = make_response(200, {"success": False, "message": "device revoked"})
        with pytest.raises(SyncRejectedError):
            client.download_changes()


class TestPing:

    def test_ping_ok(self, client, session):
        session.request.return_value = make_response(200, {"status": "ok"})
        assert client.ping() is True
        assert session.request.call_args.kwargs["url"].endswith("/api/health")

    def test_ping_server_error(self, client, session):
        session.request.return_value = make_response(503)
        assert client.ping() is False

    def test_ping_unreachable(self, client, session):
        session.request.side_effect = requests.exceptions.ConnectionError("down")
        assert client.ping() is False

    def test_close(self, client, session):
        client.close()
        session.close.assert_called_once()
