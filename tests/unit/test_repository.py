# =============================================================================
# tests/unit/test_repository.py
# Unit Tests for OfflineRepository
# =============================================================================

import pytest

from caseflow_core.errors import EntityNotFoundError, ValidationError
from caseflow_core.offline.models import (
    ActionStatus,
    ActionType,
    Attachment,
    EntityType,
    SyncStatus,
    UploadStatus,
)
from caseflow_core.offline.serialization import loads


def make_attachment(attachment_id="A1", case_id="C1", **overrides):
    values = dict(
        id=attachment_id,
        case_id=case_id,
        file_name="front_door.jpg",
        file_type="image/jpeg",
        file_path="/data/photos/front_door.jpg",
        file_size=204_800,
        metadata={"width": 1920, "height": 1080},
    )
    values.update(overrides)
    return Attachment(**values)


class TestCaseMutations:
    """Every case write is paired with a queued action"""

    def test_save_new_case_queues_create(self, repository, queue, case_factory, clock):
        action = repository.save_case(case_factory())

        assert action.action_type == ActionType.CREATE
        assert action.entity_type == EntityType.CASE
        assert action.entity_id == "C1"
        assert action.status == ActionStatus.PENDING

        case = repository.get_case("C1")
        assert case.sync_status == SyncStatus.PENDING
        assert case.created_at == clock.now
        assert case.last_modified == clock.now
        assert queue.get(action.id) is not None

    def test_action_payload_is_entity_snapshot(self, repository, case_factory):
        action = repository.save_case(case_factory(notes="gate locked"))
        payload = action.payload
        assert payload["id"] == "C1"
        assert payload["customer_name"] == "Asha Patel"
        assert payload["notes"] == "gate locked"
        assert payload["version"] == 1

    def test_saving_existing_case_queues_update(self, repository, saved_case, case_factory, clock):
        clock.advance(1_000)
        action = repository.save_case(case_factory(status="IN_PROGRESS", version=99))

        assert action.action_type == ActionType.UPDATE
        case = repository.get_case("C1")
        assert case.status == "IN_PROGRESS"
        # Local saves never invent a server version
        assert case.version == saved_case.version
        assert case.created_at == saved_case.created_at
        assert case.updated_at == clock.now

    def test_update_case_fields(self, repository, saved_case, queue):
        action = repository.update_case("C1", notes="Neighbour confirmed", priority=5)

        assert action.action_type == ActionType.UPDATE
        assert action.priority == 5
        assert repository.get_case("C1").notes == "Neighbour confirmed"
        assert len(queue.actions_for(EntityType.CASE, "C1")) == 2

    def test_update_case_status(self, repository, saved_case):
        action = repository.update_case_status("C1", "COMPLETED")
        assert action.payload["status"] == "COMPLETED"
        assert repository.get_case("C1").status == "COMPLETED"

    def test_update_rejects_unknown_fields(self, repository, saved_case):
        with pytest.raises(ValidationError):
            repository.update_case("C1", sync_status="synced")

    def test_update_rejects_empty_change(self, repository, saved_case):
        with pytest.raises(ValidationError):
            repository.update_case("C1")

    def test_update_missing_case(self, repository):
        with pytest.raises(EntityNotFoundError) as exc_info:
            repository.update_case("nope", notes="x")
        assert exc_info.value.code == "VALID_002"

    def test_update_cannot_blank_required_field(self, repository, saved_case, queue):
        with pytest.raises(ValidationError):
            repository.update_case("C1", customer_name="  ")
        assert len(queue.actions_for(EntityType.CASE, "C1")) == 1


class TestValidation:
    """Malformed mutations never reach the queue"""

    @pytest.mark.parametrize("overrides", [
        {"customer_name": ""},
        {"customer_name": None},
        {"id": ""},
        {"status": ""},
        {"version": -1},
    ])
    def test_invalid_case_rejected(self, repository, queue, case_factory, overrides):
        with pytest.raises(ValidationError):
            repository.save_case(case_factory(**overrides))
        assert queue.counts()["pending"] == 0
        assert repository.get_cases() == []

    def test_form_for_unknown_case_rejected(self, repository, queue, submission_factory):
        with pytest.raises(EntityNotFoundError):
            repository.save_form_submission(submission_factory(case_id="missing"))
        assert queue.counts()["pending"] == 0

    def test_form_data_must_be_mapping(self, repository, saved_case, submission_factory):
        with pytest.raises(ValidationError):
            repository.save_form_submission(submission_factory(form_data=["not", "a", "dict"]))

    def test_unserializable_form_data_rejected(self, repository, saved_case, submission_factory):
        with pytest.raises(ValidationError):
            repository.save_form_submission(submission_factory(form_data={"photo": object()}))
        assert repository.get_form_submission("F1") is None


class TestAtomicity:
    """Entity write and action insert commit together or not at all"""

    def test_enqueue_failure_rolls_back_entity(self, repository, case_factory, monkeypatch):
        def broken_enqueue(*args, **kwargs):
            raise RuntimeError("disk full")

        monkeypatch.setattr(repository.queue, "enqueue", broken_enqueue)

        with pytest.raises(RuntimeError):
            repository.save_case(case_factory())

        assert repository.get_case("C1", include_deleted=True) is None

    def test_enqueue_failure_rolls_back_update(self, repository, saved_case, monkeypatch):
        def broken_enqueue(*args, **kwargs):
            raise RuntimeError("disk full")

        monkeypatch.setattr(repository.queue, "enqueue", broken_enqueue)

        with pytest.raises(RuntimeError):
            repository.update_case("C1", notes="never stored")

        assert repository.get_case("C1").notes is None


class TestSoftDelete:

    def test_delete_hides_case_and_queues_delete(self, repository, saved_case, queue):
        action = repository.delete_case("C1")

        assert action.action_type == ActionType.DELETE
        assert action.payload == {"id": "C1", "version": 1}
        assert repository.get_case("C1") is None
        assert repository.get_cases() == []

        tombstone = repository.get_case("C1", include_deleted=True)
        assert tombstone.is_deleted
        assert tombstone.sync_status == SyncStatus.PENDING

    def test_delete_twice_fails(self, repository, saved_case):
        repository.delete_case("C1")
        with pytest.raises(EntityNotFoundError):
            repository.delete_case("C1")

    def test_save_over_deleted_case_refused(self, repository, saved_case, case_factory):
        repository.delete_case("C1")
        with pytest.raises(ValidationError):
            repository.save_case(case_factory())


class TestCaseQueries:

    def test_filters_and_order(self, repository, case_factory, clock):
        repository.save_case(case_factory("C1", status="ASSIGNED"))
        clock.advance(10)
        repository.save_case(case_factory("C2", status="IN_PROGRESS", assigned_to="agent-9"))
        clock.advance(10)
        repository.save_case(case_factory("C3", status="ASSIGNED"))

        assert [c.id for c in repository.get_cases()] == ["C3", "C2", "C1"]
        assert [c.id for c in repository.get_cases(status="ASSIGNED")] == ["C3", "C1"]
        assert [c.id for c in repository.get_cases(assigned_to="agent-9")] == ["C2"]
        assert [c.id for c in repository.get_cases(limit=1, offset=1)] == ["C2"]
        assert len(repository.get_cases(sync_status=SyncStatus.PENDING)) == 3
        assert repository.get_cases(sync_status="synced") == []


class TestServerInbound:
    """Server-originated writes are stored as synced and queue nothing"""

    def test_apply_server_case(self, repository, queue):
        written = repository.apply_server_case({
            "id": "S1",
            "customerName": "Meera Shah",
            "status": "ASSIGNED",
            "version": 4,
            "updatedAt": 1_700_000_500_000,
        })

        assert written is True
        case = repository.get_case("S1")
        assert case.sync_status == SyncStatus.SYNCED
        assert case.version == 4
        assert case.updated_at == 1_700_000_500_000
        assert queue.actions_for(EntityType.CASE, "S1") == []

    def test_pending_local_edits_not_overwritten(self, repository, saved_case):
        written = repository.apply_server_case({
            "id": "C1",
            "customerName": "Server Name",
            "status": "ASSIGNED",
            "version": 7,
        })

        assert written is False
        case = repository.get_case("C1")
        assert case.customer_name == "Asha Patel"
        assert case.version == 1

    def test_apply_server_delete(self, repository):
        repository.apply_server_case({"id": "S1", "customerName": "Meera", "status": "ASSIGNED"})

        assert repository.apply_server_delete("S1") is True
        assert repository.get_case("S1") is None
        assert repository.apply_server_delete("S1") is False

    def test_server_delete_skipped_with_pending_edits(self, repository, saved_case):
        assert repository.apply_server_delete("C1") is False
        assert repository.get_case("C1") is not None


class TestFormSubmissions:

    def test_save_and_read_back(self, repository, saved_case, submission_factory, queue, clock):
        action = repository.save_form_submission(submission_factory())

        assert action.action_type == ActionType.CREATE
        assert action.entity_type == EntityType.FORM_SUBMISSION
        assert action.payload["form_data"] == {"met_person": "Self", "house_status": "Owned", "floors": 2}
        assert action.payload["location"]["latitude"] == 18.5204

        form = repository.get_form_submission("F1")
        assert form.form_data["floors"] == 2
        assert form.location.longitude == 73.8567
        assert form.device_info == {"platform": "android", "model": "Pixel 7"}
        assert form.submission_time == clock.now
        assert form.sync_status == SyncStatus.PENDING

    def test_form_data_stored_canonically(self, repository, store, saved_case, submission_factory):
        repository.save_form_submission(submission_factory())
        raw = store.query_one("SELECT form_data FROM form_submissions WHERE id = 'F1'")["form_data"]
        assert raw == '{"floors":2,"house_status":"Owned","met_person":"Self"}'
        assert loads(raw) == {"met_person": "Self", "house_status": "Owned", "floors": 2}

    def test_submissions_are_immutable(self, repository, saved_case, submission_factory):
        repository.save_form_submission(submission_factory())
        with pytest.raises(ValidationError):
            repository.save_form_submission(submission_factory(form_data={"changed": True}))

    def test_not_allowed_on_deleted_case(self, repository, saved_case, submission_factory):
        repository.delete_case("C1")
        with pytest.raises(EntityNotFoundError):
            repository.save_form_submission(submission_factory())

    def test_listing_per_case(self, repository, saved_case, submission_factory, clock):
        repository.save_form_submission(submission_factory("F1"))
        clock.advance(5)
        repository.save_form_submission(submission_factory("F2"))

        assert [f.id for f in repository.get_form_submissions("C1")] == ["F2", "F1"]
        assert repository.get_form_submissions("C2") == []


class TestAttachments:

    def test_save_attachment_queues_create(self, repository, saved_case):
        action = repository.save_attachment(make_attachment())

        assert action.action_type == ActionType.CREATE
        assert action.entity_type == EntityType.ATTACHMENT
        assert action.payload["metadata"] == {"height": 1080, "width": 1920}

        attachment = repository.get_attachment("A1")
        assert attachment.upload_status == UploadStatus.PENDING
        assert attachment.upload_progress == 0.0

    def test_resaving_attachment_queues_update(self, repository, saved_case):
        repository.save_attachment(make_attachment())
        action = repository.save_attachment(make_attachment(thumbnail_path="/data/thumbs/front.jpg"))
        assert action.action_type == ActionType.UPDATE
        assert repository.get_attachment("A1").thumbnail_path == "/data/thumbs/front.jpg"

    def test_attachment_linked_to_form(self, repository, saved_case, submission_factory):
        repository.save_form_submission(submission_factory())
        repository.save_attachment(make_attachment(form_submission_id="F1"))
        assert repository.get_attachment("A1").form_submission_id == "F1"

    def test_unknown_form_rejected(self, repository, saved_case):
        with pytest.raises(EntityNotFoundError):
            repository.save_attachment(make_attachment(form_submission_id="F404"))

    def test_form_from_other_case_rejected(self, repository, saved_case, case_factory, submission_factory):
        repository.save_case(case_factory("C2"))
        repository.save_form_submission(submission_factory("F2", "C2"))
        with pytest.raises(ValidationError):
            repository.save_attachment(make_attachment(form_submission_id="F2"))

    @pytest.mark.parametrize("overrides", [
        {"file_path": ""},
        {"file_size": -1},
        {"upload_progress": 150},
    ])
    def test_invalid_attachment_rejected(self, repository, saved_case, queue, overrides):
        with pytest.raises(ValidationError):
            repository.save_attachment(make_attachment(**overrides))
        assert queue.actions_for(EntityType.ATTACHMENT, "A1") == []

    def test_upload_progress_does_not_queue(self, repository, saved_case, queue):
        repository.save_attachment(make_attachment())

        attachment = repository.update_attachment_upload("A1", UploadStatus.UPLOADING, 40)
        assert attachment.upload_status == UploadStatus.UPLOADING
        assert attachment.upload_progress == 40

        attachment = repository.update_attachment_upload("A1", "uploaded")
        assert attachment.upload_progress == 100
        assert len(queue.actions_for(EntityType.ATTACHMENT, "A1")) == 1

    def test_upload_progress_bounds(self, repository, saved_case):
        repository.save_attachment(make_attachment())
        with pytest.raises(ValidationError):
            repository.update_attachment_upload("A1", UploadStatus.UPLOADING, -5)

    def test_upload_unknown_attachment(self, repository):
        with pytest.raises(EntityNotFoundError):
            repository.update_attachment_upload("A404", UploadStatus.UPLOADING, 10)

    def test_delete_attachment(self, repository, saved_case):
        repository.save_attachment(make_attachment())
        action = repository.delete_attachment("A1")

        assert action.action_type == ActionType.DELETE
        assert repository.get_attachment("A1") is None
        assert repository.get_attachments("C1") == []
        assert repository.get_attachment("A1", include_deleted=True).deleted_at is not None


class TestPurge:

    def test_purge_removes_everything_for_case(self, repository, store, saved_case, submission_factory):
        repository.save_form_submission(submission_factory())
        repository.save_attachment(make_attachment(form_submission_id="F1"))

        removed = repository.purge_case("C1")

        # 3 actions + attachment + form + case
        assert removed == 6
        assert repository.get_case("C1", include_deleted=True) is None
        assert store.stats()["sync_actions"] == 0
        assert store.stats()["attachments"] == 0


class TestReconciliation:

    def test_mark_synced_waits_for_outstanding_actions(self, repository, store, queue, saved_case):
        repository.update_case("C1", notes="second edit")
        first, second = queue.actions_for(EntityType.CASE, "C1")

        queue.mark_completed(first.id)
        with store.transaction() as conn:
            assert repository.mark_synced(conn, EntityType.CASE, "C1") is False
        assert repository.get_case("C1").sync_status == SyncStatus.PENDING

        queue.mark_completed(second.id)
        with store.transaction() as conn:
            assert repository.mark_synced(conn, EntityType.CASE, "C1") is True
        assert repository.get_case("C1").sync_status == SyncStatus.SYNCED

    def test_reconcile_adopts_server_version(self, repository, store, saved_case):
        with store.transaction() as conn:
            repository.reconcile_case(conn, "C1", {"version": 2, "updatedAt": "2024-01-01T00:00:00Z"})

        case = repository.get_case("C1")
        assert case.version == 2
        assert case.updated_at == 1_704_067_200_000
        assert repository.base_version(EntityType.CASE, "C1") == 2
        assert repository.base_version(EntityType.ATTACHMENT, "A1") is None
