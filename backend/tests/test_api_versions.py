"""Integration tests for the version history, comparison and rollback API."""

from __future__ import annotations

import uuid
from typing import TYPE_CHECKING

from audit_engine.models.enums import AuditAction

if TYPE_CHECKING:
    from httpx import AsyncClient
    from sqlalchemy.ext.asyncio import AsyncSession

    from audit_engine.services.recorder import AuditRecorder

ADMIN_HEADERS = {"X-User-Id": "admin-1", "X-Role": "admin"}
USER_HEADERS = {"X-User-Id": "user-1", "X-Role": "user"}


async def _seed_versions(recorder: AuditRecorder, session: AsyncSession) -> list[str]:
    snapshots = [
        {"title": "A", "value": 100},
        {"title": "B", "value": 200, "parties": ["acme"]},
    ]
    ids = []
    old = None
    for snapshot in snapshots:
        result = await recorder.record_now(
            session,
            "CONTRACT",
            "c1",
            AuditAction.UPDATE if old else AuditAction.CREATE,
            old_values=old,
            new_values=snapshot,
            actor_id="user-1",
        )
        assert result.version is not None
        ids.append(str(result.version.id))
        old = snapshot
    return ids


async def test_version_history(async_client: AsyncClient, recorder: AuditRecorder, db_session: AsyncSession) -> None:
    await _seed_versions(recorder, db_session)

    resp = await async_client.get("/audit/versions/CONTRACT/c1", headers=USER_HEADERS)
    assert resp.status_code == 200
    data = resp.json()
    assert data["total"] == 2
    assert [v["version_number"] for v in data["items"]] == [2, 1]
    assert data["items"][0]["snapshot"] is None
    assert data["items"][0]["change_description"] == "Entity updated - Fields modified: parties, title, value"


async def test_version_history_with_snapshots(
    async_client: AsyncClient, recorder: AuditRecorder, db_session: AsyncSession
) -> None:
    await _seed_versions(recorder, db_session)

    resp = await async_client.get(
        "/audit/versions/CONTRACT/c1", params={"include_snapshot": "true", "limit": 1}, headers=USER_HEADERS
    )
    data = resp.json()
    assert len(data["items"]) == 1
    assert data["items"][0]["snapshot"] == {"parties": ["acme"], "title": "B", "value": 200}


async def test_get_single_version(async_client: AsyncClient, recorder: AuditRecorder, db_session: AsyncSession) -> None:
    v1_id, _ = await _seed_versions(recorder, db_session)

    resp = await async_client.get(f"/audit/versions/{v1_id}", headers=USER_HEADERS)
    assert resp.status_code == 200
    data = resp.json()
    assert data["version_number"] == 1
    assert data["snapshot"] == {"title": "A", "value": 100}


async def test_get_version_not_found(async_client: AsyncClient) -> None:
    resp = await async_client.get(f"/audit/versions/{uuid.uuid4()}", headers=USER_HEADERS)
    assert resp.status_code == 404


async def test_compare_versions(async_client: AsyncClient, recorder: AuditRecorder, db_session: AsyncSession) -> None:
    v1_id, v2_id = await _seed_versions(recorder, db_session)

    resp = await async_client.get(f"/audit/versions/{v1_id}/compare/{v2_id}", headers=USER_HEADERS)
    assert resp.status_code == 200
    data = resp.json()
    assert data["total_changes"] == 3
    assert data["fields_changed"] == ["parties", "title", "value"]
    assert data["diff"]["changed"]["value"] == {"old": 100, "new": 200, "old_length": None, "new_length": None}
    assert data["diff"]["added"] == {"parties": ["acme"]}


async def test_compare_versions_of_different_entities(
    async_client: AsyncClient, recorder: AuditRecorder, db_session: AsyncSession
) -> None:
    v1_id, _ = await _seed_versions(recorder, db_session)
    other = await recorder.record_now(db_session, "CONTRACT", "c2", AuditAction.CREATE, new_values={"title": "X"})
    assert other.version is not None

    resp = await async_client.get(f"/audit/versions/{v1_id}/compare/{other.version.id}", headers=USER_HEADERS)
    assert resp.status_code == 400


async def test_verify_version(async_client: AsyncClient, recorder: AuditRecorder, db_session: AsyncSession) -> None:
    v1_id, _ = await _seed_versions(recorder, db_session)

    resp = await async_client.get(f"/audit/verify/version/{v1_id}", headers=ADMIN_HEADERS)
    assert resp.status_code == 200
    assert resp.json()["valid"] is True

    resp = await async_client.get(f"/audit/verify/version/{v1_id}", headers=USER_HEADERS)
    assert resp.status_code == 403


async def test_version_history_for_entity_named_verify(
    async_client: AsyncClient, recorder: AuditRecorder, db_session: AsyncSession
) -> None:
    await recorder.record_now(db_session, "TEMPLATE", "verify", AuditAction.CREATE, new_values={"name": "Verify"})

    resp = await async_client.get("/audit/versions/TEMPLATE/verify", headers=USER_HEADERS)
    assert resp.status_code == 200
    assert resp.json()["total"] == 1


async def test_rollback(async_client: AsyncClient, recorder: AuditRecorder, db_session: AsyncSession) -> None:
    v1_id, _ = await _seed_versions(recorder, db_session)

    resp = await async_client.post(
        f"/audit/rollback/{v1_id}", json={"reason": "Signed the wrong draft"}, headers=ADMIN_HEADERS
    )
    assert resp.status_code == 200
    data = resp.json()
    assert data["rolled_back_to"]["version_number"] == 1
    assert data["version"]["version_number"] == 3
    assert data["snapshot"] == {"title": "A", "value": 100}
    assert data["audit_record"]["action"] == "ROLLBACK"
    assert data["audit_record"]["actor_id"] == "admin-1"
    assert data["message"] == "Rolled back to version 1"

    resp = await async_client.get("/audit/trail/CONTRACT/c1", headers=USER_HEADERS)
    assert resp.json()["items"][0]["action"] == "ROLLBACK"


async def test_rollback_without_body(
    async_client: AsyncClient, recorder: AuditRecorder, db_session: AsyncSession
) -> None:
    v1_id, _ = await _seed_versions(recorder, db_session)

    resp = await async_client.post(f"/audit/rollback/{v1_id}", headers=ADMIN_HEADERS)
    assert resp.status_code == 200
    assert resp.json()["version"]["change_description"] == "Rollback to version 1"


async def test_rollback_requires_admin(
    async_client: AsyncClient, recorder: AuditRecorder, db_session: AsyncSession
) -> None:
    v1_id, _ = await _seed_versions(recorder, db_session)

    resp = await async_client.post(f"/audit/rollback/{v1_id}", headers=USER_HEADERS)
    assert resp.status_code == 403


async def test_rollback_unknown_version(async_client: AsyncClient) -> None:
    resp = await async_client.post(f"/audit/rollback/{uuid.uuid4()}", headers=ADMIN_HEADERS)
    assert resp.status_code == 404
