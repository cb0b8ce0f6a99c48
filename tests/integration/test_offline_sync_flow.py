# =============================================================================
# tests/integration/test_offline_sync_flow.py
# Integration Tests for the offline write -> queue -> replay -> resolve flow
# =============================================================================

import pytest
from unittest.mock import MagicMock, patch

from caseflow_core.errors import ConfigurationError, SyncConflictError, SyncTransportError
from caseflow_core.offline import (
    ActionStatus,
    ActionType,
    BackendClient,
    ConflictStatus,
    ConnectionMonitor,
    DownloadResult,
    EntityType,
    OfflineDataService,
    ReplayResult,
    ResolutionStrategy,
    SyncSettings,
    SyncStatus,
)


@pytest.fixture
def backend():
    client = MagicMock(spec=BackendClient)
    client.replay.return_value = ReplayResult(entity={})
    client.download_changes.return_value = DownloadResult()
    return client


@pytest.fixture
def monitor():
    """Starts forced offline so no test touches the real network"""
    monitor = ConnectionMonitor(backend_host="crm.example.com")
    monitor.force_offline()
    return monitor


@pytest.fixture
def service(backend, monitor, clock):
    settings = SyncSettings(db_path=":memory:", max_retries=2)
    service = OfflineDataService(settings, client=backend, monitor=monitor, clock=clock)
    service.open()
    yield service
    service.close()


def go_online(monitor):
    with patch.object(monitor, "_check_internet", return_value=True), \
            patch.object(monitor, "_check_backend", return_value=True):
        return monitor.set_online()


class TestOfflineCaseUpdate:
    """Edit while offline, replay on reconnect"""

    def test_status_update_replayed_after_reconnect(self, service, backend, monitor):
        repository, queue = service.repository, service.queue
        repository.apply_server_case({"id": "C1", "customerName": "Asha Patel", "status": "ASSIGNED", "version": 1})

        monitor.force_offline()
        repository.update_case_status("C1", "IN_PROGRESS")

        case = repository.get_case("C1")
        assert case.status == "IN_PROGRESS"
        assert case.sync_status == SyncStatus.PENDING
        actions = queue.actions_for(EntityType.CASE, "C1")
        assert len(actions) == 1
        assert actions[0].action_type == ActionType.UPDATE

        # Offline: nothing is attempted
        assert service.sync_now() is False
        backend.replay.assert_not_called()

        # Reconnecting triggers a sync cycle through the monitor callback
        backend.replay.return_value = ReplayResult(entity={"id": "C1", "version": 2})
        go_online(monitor)

        assert queue.get(actions[0].id).status == ActionStatus.COMPLETED
        case = repository.get_case("C1")
        assert case.sync_status == SyncStatus.SYNCED
        assert case.version == 2

    def test_locally_created_case_then_edits(self, service, backend, monitor, case_factory, submission_factory):
        go_online(monitor)
        service.repository.save_case(case_factory("C1"))
        service.repository.update_case("C1", notes="Landmark: blue gate")
        service.repository.save_form_submission(submission_factory("F1", "C1"))

        assert service.sync_now() is True

        assert service.queue.counts()["completed"] == 3
        assert service.repository.get_case("C1").sync_status == SyncStatus.SYNCED
        assert service.repository.get_form_submission("F1").sync_status == SyncStatus.SYNCED
        status = service.get_status()
        assert status["queue"]["pending"] == 0
        assert status["sync"]["total_synced"] == 3


class TestConflictFlow:
    """Server reports a newer version during replay"""

    @pytest.fixture
    def conflicted(self, service, backend, monitor):
        go_online(monitor)
        service.repository.apply_server_case({
            "id": "C2", "customerName": "Ravi Kumar", "status": "ASSIGNED", "version": 3,
        })
        service.repository.update_case("C2", notes="Applicant not at home")
        backend.replay.side_effect = SyncConflictError(
            "Version conflict",
            server_data={"id": "C2", "customerName": "Ravi Kumar", "status": "COMPLETED", "version": 5},
            server_version=5,
        )
        service.sync_now()
        backend.replay.side_effect = None
        backend.replay.return_value = ReplayResult(entity={"id": "C2", "version": 6})
        return service.conflicts.pending_conflicts()[0]

    def test_conflict_recorded_with_both_versions(self, service, conflicted):
        assert conflicted.status == ConflictStatus.PENDING
        assert conflicted.local_payload["version"] == 3
        assert conflicted.local_payload["notes"] == "Applicant not at home"
        assert conflicted.server_payload["version"] == 5

        action = service.queue.get(conflicted.sync_action_id)
        assert action.status == ActionStatus.CONFLICT
        assert action.status != ActionStatus.COMPLETED
        assert service.get_status()["pending_conflicts"] == 1

    def test_conflict_not_retried_by_later_cycles(self, service, backend, conflicted):
        service.sync_now()
        assert backend.replay.call_count == 1

    def test_local_wins_replays_on_server_version(self, service, backend, conflicted):
        service.conflicts.resolve(conflicted.id, ResolutionStrategy.LOCAL_WINS)
        service.sync_now()

        action, base_version = backend.replay.call_args[0]
        assert base_version == 5
        assert action.payload["version"] == 5
        assert action.payload["notes"] == "Applicant not at home"

        case = service.repository.get_case("C2")
        assert case.sync_status == SyncStatus.SYNCED
        assert case.version == 6

    def test_server_wins_discards_local_edit(self, service, backend, conflicted):
        service.conflicts.resolve(conflicted.id, ResolutionStrategy.SERVER_WINS)
        service.sync_now()

        assert backend.replay.call_count == 1
        case = service.repository.get_case("C2")
        assert case.status == "COMPLETED"
        assert case.notes is None
        assert case.version == 5
        assert case.sync_status == SyncStatus.SYNCED

    def test_merge_replays_merged_snapshot(self, service, backend, conflicted):
        merged = {**conflicted.server_payload, "notes": conflicted.local_payload["notes"]}
        service.conflicts.resolve(conflicted.id, ResolutionStrategy.MERGE, merged_data=merged)
        service.sync_now()

        action, base_version = backend.replay.call_args[0]
        assert base_version == 5
        assert action.payload["status"] == "COMPLETED"
        assert action.payload["notes"] == "Applicant not at home"
        assert service.repository.get_case("C2").sync_status == SyncStatus.SYNCED

    def test_server_wins_discards_edits_queued_behind_conflict(self, service, backend, conflicted):
        service.repository.update_case("C2", notes="Second visit scheduled")

        service.conflicts.resolve(conflicted.id, ResolutionStrategy.SERVER_WINS)
        service.sync_now()

        # Nothing stale is replayed over the server copy
        assert backend.replay.call_count == 1
        case = service.repository.get_case("C2")
        assert (case.status, case.notes, case.version) == ("COMPLETED", None, 5)
        assert case.sync_status == SyncStatus.SYNCED
        assert service.queue.pending_count == 0


class TestRetryExhaustion:

    def test_failed_action_can_be_retried_by_user(self, service, backend, monitor, case_factory):
        go_online(monitor)
        service.repository.save_case(case_factory("C3"))
        backend.replay.side_effect = SyncTransportError("HTTP 503", status_code=503)

        clock = service.store.clock
        for _ in range(3):
            service.sync_now()
            clock.advance(600_000)

        failed = service.queue.failed_actions()
        assert len(failed) == 1
        assert backend.replay.call_count == 3
        assert service.get_status()["unread_notifications"] == 1

        backend.replay.side_effect = None
        service.queue.retry_failed(failed[0].id)
        service.sync_now()

        assert service.repository.get_case("C3").sync_status == SyncStatus.SYNCED


class TestServiceLifecycle:

    def test_device_id_is_stable(self, tmp_path, backend, monitor):
        settings = SyncSettings(db_path=str(tmp_path / "caseflow.db"))

        with OfflineDataService(settings, client=backend, monitor=monitor) as first:
            device_id = first.device_id
        with OfflineDataService(settings, client=backend, monitor=monitor) as second:
            assert second.device_id == device_id

        assert device_id.startswith("device_")
        assert backend.device_id == device_id

    def test_local_only_service(self, case_factory):
        service = OfflineDataService(SyncSettings(db_path=":memory:")).open()
        try:
            service.repository.save_case(case_factory("C1"))
            assert service.sync_now() is False
            assert service.get_status()["queue"]["pending"] == 1
            with pytest.raises(ConfigurationError):
                service.open(start_sync=True)
        finally:
            service.close()

    def test_maintenance(self, service):
        service.cache.set("k", 1, ttl=1)
        service.store.clock.advance(10)
        result = service.maintenance(completed_older_than=service.store.clock())
        assert result["cache"] == 1
        assert result["completed_actions"] == 0
