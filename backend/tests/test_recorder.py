"""Tests for the audit recorder's background and awaited write paths."""

from __future__ import annotations

from typing import TYPE_CHECKING

import pytest

from audit_engine.exceptions import ValidationError
from audit_engine.models.enums import AuditAction, AuditEntityType
from audit_engine.schemas.audit import AuditFilters
from audit_engine.services import audit as audit_service
from audit_engine.services import versions as version_service
from audit_engine.services.recorder import (
    AuditRecorder,
    MutationEvent,
    RecordOptions,
    RequestContext,
    describe_change,
)

if TYPE_CHECKING:
    from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

    from audit_engine.services.integrity import IntegrityHasher
    from audit_engine.services.registry import EntityRegistry

CONTRACT = AuditEntityType.CONTRACT


async def _trail(session: AsyncSession, entity_type: str, entity_id: str) -> list:
    result = await audit_service.get_audit_trail(session, entity_type, entity_id)
    return result.items


async def _versions(session: AsyncSession, entity_type: str, entity_id: str) -> list:
    result = await version_service.get_version_history(session, entity_type, entity_id, include_snapshot=True)
    return result.items


# ---------------------------------------------------------------------------
# notify_mutation
# ---------------------------------------------------------------------------


async def test_create_writes_audit_record_and_version(recorder: AuditRecorder, db_session: AsyncSession) -> None:
    recorder.notify_mutation(
        CONTRACT,
        "c1",
        AuditAction.CREATE,
        new_values={"title": "Lease", "value": 100},
        actor_id="u1",
        request_context=RequestContext(method="POST", path="/contracts", user_agent="pytest", ip_address="10.0.0.9"),
    )
    await recorder.drain()

    [record] = await _trail(db_session, CONTRACT, "c1")
    assert record.action == AuditAction.CREATE
    assert record.actor_id == "u1"
    assert record.ip_address == "10.0.0.9"
    assert record.user_agent == "pytest"
    assert record.metadata == {"method": "POST", "path": "/contracts", "user_agent": "pytest"}

    [version] = await _versions(db_session, CONTRACT, "c1")
    assert version.version_number == 1
    assert version.snapshot == {"title": "Lease", "value": 100}
    assert version.change_description == "Entity created"
    assert recorder.stats.completed == 2


async def test_update_description_lists_modified_fields(recorder: AuditRecorder, db_session: AsyncSession) -> None:
    recorder.notify_mutation(CONTRACT, "c1", AuditAction.CREATE, new_values={"title": "A", "value": 1})
    await recorder.drain()
    recorder.notify_mutation(
        CONTRACT,
        "c1",
        AuditAction.UPDATE,
        old_values={"title": "A", "value": 1},
        new_values={"title": "B", "value": 2},
    )
    await recorder.drain()

    versions = await _versions(db_session, CONTRACT, "c1")
    assert [v.version_number for v in versions] == [2, 1]
    assert versions[0].change_description == "Entity updated - Fields modified: title, value"


async def test_versions_follow_notification_order(recorder: AuditRecorder, db_session: AsyncSession) -> None:
    entity_ids = [f"c{n}" for n in range(10)]
    for entity_id in entity_ids:
        recorder.notify_mutation(CONTRACT, entity_id, AuditAction.CREATE, new_values={"name": "X"})
        recorder.notify_mutation(
            CONTRACT, entity_id, AuditAction.UPDATE, old_values={"name": "X"}, new_values={"name": "Y"}
        )
    await recorder.drain()

    for entity_id in entity_ids:
        versions = await _versions(db_session, CONTRACT, entity_id)
        assert [(v.version_number, v.snapshot) for v in versions] == [(2, {"name": "Y"}), (1, {"name": "X"})]
        trail = await _trail(db_session, CONTRACT, entity_id)
        assert [r.action for r in trail] == [AuditAction.UPDATE, AuditAction.CREATE]


async def test_non_string_entity_id_is_recorded_as_text(recorder: AuditRecorder, db_session: AsyncSession) -> None:
    recorder.notify_mutation(CONTRACT, 42, AuditAction.CREATE, new_values={"title": "A"})  # type: ignore[arg-type]
    await recorder.drain()

    assert recorder.stats.failed == 0
    [record] = await _trail(db_session, CONTRACT, "42")
    assert record.entity_id == "42"
    [version] = await _versions(db_session, CONTRACT, "42")
    assert version.entity_id == "42"


async def test_supplied_change_description_wins(recorder: AuditRecorder, db_session: AsyncSession) -> None:
    recorder.notify_mutation(
        CONTRACT,
        "c1",
        AuditAction.CREATE,
        new_values={"title": "A"},
        options=RecordOptions(change_description="Imported from legacy system"),
    )
    await recorder.drain()

    [version] = await _versions(db_session, CONTRACT, "c1")
    assert version.change_description == "Imported from legacy system"


async def test_delete_writes_no_version(recorder: AuditRecorder, db_session: AsyncSession) -> None:
    recorder.notify_mutation(CONTRACT, "c1", AuditAction.DELETE, old_values={"title": "A"})
    await recorder.drain()

    [record] = await _trail(db_session, CONTRACT, "c1")
    assert record.action == AuditAction.DELETE
    assert record.old_values == {"title": "A"}
    assert await _versions(db_session, CONTRACT, "c1") == []


async def test_action_derived_from_http_method(recorder: AuditRecorder, db_session: AsyncSession) -> None:
    recorder.notify_mutation(
        CONTRACT,
        "c1",
        None,
        old_values={"title": "A"},
        new_values={"title": "B"},
        request_context=RequestContext(method="PATCH"),
    )
    await recorder.drain()

    [record] = await _trail(db_session, CONTRACT, "c1")
    assert record.action == AuditAction.UPDATE


async def test_unmapped_method_records_nothing(recorder: AuditRecorder, db_session: AsyncSession) -> None:
    recorder.notify_mutation(CONTRACT, "c1", None, request_context=RequestContext(method="OPTIONS"))
    await recorder.drain()

    assert await _trail(db_session, CONTRACT, "c1") == []
    assert recorder.stats.enqueued == 0


async def test_uploaded_file_is_audited_without_versions(recorder: AuditRecorder, db_session: AsyncSession) -> None:
    recorder.notify_mutation(
        AuditEntityType.UPLOADED_FILE,
        "f1",
        None,
        new_values={"filename": "lease.pdf", "size": 2048},
        request_context=RequestContext(method="POST"),
    )
    await recorder.drain()

    [record] = await _trail(db_session, AuditEntityType.UPLOADED_FILE, "f1")
    assert record.action == AuditAction.UPLOAD
    assert await _versions(db_session, AuditEntityType.UPLOADED_FILE, "f1") == []


async def test_track_versions_override(recorder: AuditRecorder, db_session: AsyncSession) -> None:
    recorder.notify_mutation(
        CONTRACT, "c1", AuditAction.CREATE, new_values={"title": "A"}, options=RecordOptions(track_versions=False)
    )
    await recorder.drain()

    assert len(await _trail(db_session, CONTRACT, "c1")) == 1
    assert await _versions(db_session, CONTRACT, "c1") == []


async def test_sensitive_fields_are_redacted(recorder: AuditRecorder, db_session: AsyncSession) -> None:
    recorder.notify_mutation(
        AuditEntityType.USER,
        "u9",
        AuditAction.UPDATE,
        old_values={"email": "a@example.com", "password": "old-secret"},
        new_values={
            "email": "b@example.com",
            "Password": "new-secret",
            "profile": {"resetToken": "tok", "name": "Bea"},
            "password_hash": "bcrypt$...",
        },
    )
    await recorder.drain()

    [record] = await _trail(db_session, AuditEntityType.USER, "u9")
    assert record.old_values == {"email": "a@example.com"}
    assert record.new_values == {"email": "b@example.com", "profile": {"name": "Bea"}}

    [version] = await _versions(db_session, AuditEntityType.USER, "u9")
    assert version.snapshot == {"email": "b@example.com", "profile": {"name": "Bea"}}


async def test_redaction_does_not_mutate_caller_snapshot(recorder: AuditRecorder) -> None:
    snapshot = {"email": "a@example.com", "password": "secret"}
    recorder.notify_mutation(AuditEntityType.USER, "u9", AuditAction.CREATE, new_values=snapshot)
    await recorder.drain()
    assert snapshot == {"email": "a@example.com", "password": "secret"}


async def test_request_metadata_merges_with_caller_metadata(
    recorder: AuditRecorder, db_session: AsyncSession
) -> None:
    recorder.notify_mutation(
        CONTRACT,
        "c1",
        AuditAction.VIEW,
        request_context=RequestContext(method="GET", path="/contracts/c1", origin="https://app.example.com"),
        options=RecordOptions(metadata={"export": "pdf"}),
    )
    await recorder.drain()

    [record] = await _trail(db_session, CONTRACT, "c1")
    assert record.metadata == {
        "export": "pdf",
        "method": "GET",
        "origin": "https://app.example.com",
        "path": "/contracts/c1",
    }


# ---------------------------------------------------------------------------
# Failure isolation
# ---------------------------------------------------------------------------


async def test_invalid_action_does_not_raise(recorder: AuditRecorder) -> None:
    recorder.notify_mutation(CONTRACT, "c1", "EXPLODE", new_values={"title": "A"})
    assert recorder.stats.failed == 1
    assert recorder.pending == 0


async def test_write_failure_is_logged_not_raised(
    recorder: AuditRecorder, db_session: AsyncSession, caplog: pytest.LogCaptureFixture
) -> None:
    snapshot: dict = {"title": "A"}
    snapshot["self"] = snapshot

    recorder.notify_mutation(CONTRACT, "c1", AuditAction.CREATE, new_values=snapshot)
    await recorder.drain()

    assert recorder.stats.failed == 2
    assert recorder.stats.by_error == {"SerializationError": 2}
    assert "failed to write" in caplog.text
    assert await _trail(db_session, CONTRACT, "c1") == []


async def test_storage_outage_does_not_reach_caller(
    hasher: IntegrityHasher, registry: EntityRegistry
) -> None:
    def _unavailable() -> AsyncSession:
        raise ConnectionError("database unavailable")

    recorder = AuditRecorder(_unavailable, hasher, registry, worker_count=1)  # type: ignore[arg-type]
    recorder.start()
    try:
        recorder.notify_mutation(CONTRACT, "c1", AuditAction.CREATE, new_values={"title": "A"})
        await recorder.drain()
    finally:
        await recorder.stop()

    assert recorder.stats.failed == 2
    assert recorder.stats.by_error == {"ConnectionError": 2}


async def test_full_queue_drops_jobs(
    session_factory: async_sessionmaker[AsyncSession],
    hasher: IntegrityHasher,
    registry: EntityRegistry,
) -> None:
    recorder = AuditRecorder(session_factory, hasher, registry, queue_maxsize=1)

    recorder.notify_mutation(CONTRACT, "c1", AuditAction.CREATE, new_values={"title": "A"})

    assert recorder.pending == 1
    assert recorder.stats.enqueued == 1
    assert recorder.stats.dropped == 1


async def test_stop_drains_pending_jobs(
    session_factory: async_sessionmaker[AsyncSession],
    hasher: IntegrityHasher,
    registry: EntityRegistry,
    db_session: AsyncSession,
) -> None:
    recorder = AuditRecorder(session_factory, hasher, registry, worker_count=1)
    recorder.start()
    assert recorder.running
    recorder.notify_mutation(CONTRACT, "c1", AuditAction.CREATE, new_values={"title": "A"})

    await recorder.stop()

    assert not recorder.running
    assert len(await _trail(db_session, CONTRACT, "c1")) == 1


# ---------------------------------------------------------------------------
# Batch and awaited paths
# ---------------------------------------------------------------------------


async def test_log_batch_marks_each_record(recorder: AuditRecorder, db_session: AsyncSession) -> None:
    events = [
        MutationEvent(
            CONTRACT, f"c{n}", AuditAction.UPDATE, old_values={"status": "draft"}, new_values={"status": "active"}
        )
        for n in range(3)
    ]
    recorder.log_batch(events, actor_id="u1")
    await recorder.drain()

    result = await audit_service.query_audit_records(db_session, AuditFilters(actor_id="u1"))
    assert result.total == 3
    assert all(item.metadata["batch"] is True for item in result.items)
    assert all(item.metadata["batch_size"] == 3 for item in result.items)
    assert await _versions(db_session, CONTRACT, "c0") == []


async def test_record_now_returns_written_rows(recorder: AuditRecorder, db_session: AsyncSession) -> None:
    result = await recorder.record_now(db_session, CONTRACT, "c1", AuditAction.CREATE, new_values={"title": "A"})

    assert result.audit_record.action == "CREATE"
    assert result.version is not None
    assert result.version.version_number == 1
    assert recorder.hasher.verify_audit_record(result.audit_record)


async def test_record_now_propagates_errors(recorder: AuditRecorder, db_session: AsyncSession) -> None:
    with pytest.raises(ValidationError):
        await recorder.record_now(db_session, CONTRACT, "c1", AuditAction.UPDATE, new_values={"title": "A"})
    with pytest.raises(ValidationError):
        await recorder.record_now(db_session, CONTRACT, "c1", None)


def test_describe_change() -> None:
    assert describe_change(AuditAction.CREATE, None, {"a": 1}) == "Entity created"
    assert describe_change(AuditAction.UPDATE, {"a": 1}, {"a": 1}) == "Entity updated"
    assert (
        describe_change(AuditAction.UPDATE, {"terms": {"days": 1}}, {"terms": {"days": 2}})
        == "Entity updated - Fields modified: terms"
    )
    assert describe_change(AuditAction.UPLOAD, None, {"a": 1}, "custom") == "custom"
