# =============================================================================
# tests/conftest.py
# Pytest Configuration and Fixtures
# =============================================================================

import pytest
from unittest.mock import MagicMock

from caseflow_core.offline.api_client import BackendClient, DownloadResult, ReplayResult
from caseflow_core.offline.conflicts import ConflictResolver
from caseflow_core.offline.local_store import LocalStore
from caseflow_core.offline.metrics import MetricsRecorder
from caseflow_core.offline.models import Case, FormSubmission, GeoLocation
from caseflow_core.offline.notifications import NotificationCenter
from caseflow_core.offline.repository import OfflineRepository
from caseflow_core.offline.sync_processor import SyncProcessor
from caseflow_core.offline.sync_queue import SyncQueue


START_MS = 1_700_000_000_000


class FakeClock:
    """Deterministic epoch-ms clock"""

    def __init__(self, start: int = START_MS):
        self.now = start

    def __call__(self) -> int:
        return self.now

    def advance(self, ms: int) -> int:
        self.now += ms
        return self.now


# =============================================================================
# STORE FIXTURES
# =============================================================================

@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def store(clock):
    """Initialized in-memory local store"""
    store = LocalStore(":memory:", clock=clock)
    store.initialize()
    yield store
    store.close()


@pytest.fixture
def queue(store):
    return SyncQueue(store)


@pytest.fixture
def repository(store, queue):
    return OfflineRepository(store, queue)


@pytest.fixture
def notifications(store):
    return NotificationCenter(store)


@pytest.fixture
def metrics(store):
    return MetricsRecorder(store)


@pytest.fixture
def resolver(store, queue, repository, notifications):
    return ConflictResolver(store, queue, repository, notifications=notifications)


# =============================================================================
# MOCK FIXTURES
# =============================================================================

@pytest.fixture
def fake_backend():
    """Backend client double; every replay succeeds unless reconfigured"""
    client = MagicMock(spec=BackendClient)
    client.replay.return_value = ReplayResult(entity={})
    client.download_changes.return_value = DownloadResult()
    client.ping.return_value = True
    return client


@pytest.fixture
def processor(store, queue, repository, fake_backend, resolver, notifications, metrics):
    return SyncProcessor(
        store,
        queue,
        repository,
        fake_backend,
        resolver,
        notifications=notifications,
        metrics=metrics,
    )


# =============================================================================
# SAMPLE DATA
# =============================================================================

def make_case(case_id: str = "C1", **overrides) -> Case:
    values = dict(
        id=case_id,
        customer_name="Asha Patel",
        customer_phone="+91 98200 00000",
        address="12 MG Road, Pune",
        verification_type="RESIDENCE",
        product="Home Loan",
        client="HDFC",
        status="ASSIGNED",
        assigned_to="agent-7",
    )
    values.update(overrides)
    return Case(**values)


def make_submission(submission_id: str = "F1", case_id: str = "C1", **overrides) -> FormSubmission:
    values = dict(
        id=submission_id,
        case_id=case_id,
        form_type="RESIDENCE",
        form_data={"met_person": "Self", "house_status": "Owned", "floors": 2},
        location=GeoLocation(latitude=18.5204, longitude=73.8567, accuracy=12.5),
        device_info={"platform": "android", "model": "Pixel 7"},
        app_version="4.2.0",
    )
    values.update(overrides)
    return FormSubmission(**values)


@pytest.fixture
def case_factory():
    return make_case


@pytest.fixture
def submission_factory():
    return make_submission


@pytest.fixture
def saved_case(repository):
    """Case C1 saved locally, with its create action queued"""
    repository.save_case(make_case())
    return repository.get_case("C1")
