"""Write-path orchestrator between business operations and the two stores.

``notify_mutation`` is what business code calls after a mutation succeeds. It
never raises and never waits on storage: redacted snapshots are turned into
jobs for background worker tasks. Each entity is owned by one worker queue,
so its jobs are written in the order they were notified. A failed or
dropped job is logged and otherwise lost, leaving the business operation
unaffected.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
from collections.abc import Mapping
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

from audit_engine.exceptions import ConcurrentVersionConflict, ValidationError
from audit_engine.models.enums import VERSIONED_ACTIONS, AuditAction
from audit_engine.services.audit import build_audit_record
from audit_engine.services.registry import redact
from audit_engine.services.versions import DEFAULT_MAX_ATTEMPTS, create_entity_version, diff_snapshots

if TYPE_CHECKING:
    from collections.abc import Iterable, Sequence

    from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

    from audit_engine.models.audit import AuditRecord
    from audit_engine.models.version import EntityVersion
    from audit_engine.services.integrity import IntegrityHasher
    from audit_engine.services.registry import EntityRegistry

logger = logging.getLogger(__name__)

_BASE_DESCRIPTIONS = {
    AuditAction.CREATE: "Entity created",
    AuditAction.UPDATE: "Entity updated",
    AuditAction.UPLOAD: "Entity uploaded",
    AuditAction.ROLLBACK: "Entity rolled back",
}


# ---------------------------------------------------------------------------
# Call context
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class RequestContext:
    """HTTP details of the request that caused a mutation."""

    method: str | None = None
    path: str | None = None
    user_agent: str | None = None
    ip_address: str | None = None
    origin: str | None = None

    def as_metadata(self) -> dict[str, Any]:
        return {
            "method": self.method,
            "path": self.path,
            "user_agent": self.user_agent,
            "origin": self.origin,
        }


@dataclass(frozen=True)
class RecordOptions:
    """Per-call overrides for how a mutation is recorded."""

    track_versions: bool | None = None
    change_description: str | None = None
    metadata: Mapping[str, Any] | None = None


@dataclass(frozen=True)
class MutationEvent:
    """One entry of a batch reported through ``log_batch``."""

    entity_type: str
    entity_id: str
    action: AuditAction | str
    old_values: Mapping[str, Any] | None = None
    new_values: Mapping[str, Any] | None = None
    metadata: Mapping[str, Any] | None = None


@dataclass
class RecordResult:
    """What ``record_now`` wrote."""

    audit_record: AuditRecord
    version: EntityVersion | None = None


# ---------------------------------------------------------------------------
# Queue jobs
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class _AuditJob:
    entity_type: str
    entity_id: str
    action: AuditAction
    actor_id: str | None
    old_values: dict[str, Any] | None
    new_values: dict[str, Any] | None
    metadata: dict[str, Any]
    ip_address: str | None
    user_agent: str | None


@dataclass(frozen=True)
class _VersionJob:
    entity_type: str
    entity_id: str
    action: AuditAction
    actor_id: str | None
    old_values: dict[str, Any] | None
    snapshot: dict[str, Any]
    change_description: str | None


@dataclass
class RecorderStats:
    """Counters for the background write path."""

    enqueued: int = 0
    completed: int = 0
    failed: int = 0
    dropped: int = 0
    conflicts: int = 0
    by_error: dict[str, int] = field(default_factory=dict)


def describe_change(
    action: AuditAction,
    old_values: Mapping[str, Any] | None,
    new_values: Mapping[str, Any] | None,
    supplied: str | None = None,
) -> str:
    """Change description for a version: the supplied one, or derived from the action."""
    if supplied:
        return supplied
    base = _BASE_DESCRIPTIONS.get(action, "Entity modified")
    if action == AuditAction.UPDATE and old_values is not None and new_values is not None:
        diff = diff_snapshots(old_values, new_values)
        fields = sorted({path.split(".", 1)[0] for path in (*diff.added, *diff.removed, *diff.changed)})
        if fields:
            return f"{base} - Fields modified: {', '.join(fields)}"
    return base


class AuditRecorder:
    """Redacts, routes and dispatches audit and version writes."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        hasher: IntegrityHasher,
        registry: EntityRegistry,
        *,
        worker_count: int = 2,
        queue_maxsize: int = 10000,
        version_max_attempts: int = DEFAULT_MAX_ATTEMPTS,
        shutdown_timeout: float = 10.0,
    ) -> None:
        self._session_factory = session_factory
        self._hasher = hasher
        self._registry = registry
        self._worker_count = max(1, worker_count)
        # One queue per worker; jobs for the same entity always share a queue.
        per_queue = max(1, queue_maxsize // self._worker_count)
        self._queues: list[asyncio.Queue[_AuditJob | _VersionJob]] = [
            asyncio.Queue(maxsize=per_queue) for _ in range(self._worker_count)
        ]
        self._version_max_attempts = version_max_attempts
        self._shutdown_timeout = shutdown_timeout
        self._workers: list[asyncio.Task[None]] = []
        self.stats = RecorderStats()

    @property
    def hasher(self) -> IntegrityHasher:
        return self._hasher

    @property
    def registry(self) -> EntityRegistry:
        return self._registry

    @property
    def version_max_attempts(self) -> int:
        return self._version_max_attempts

    @property
    def pending(self) -> int:
        return sum(queue.qsize() for queue in self._queues)

    @property
    def running(self) -> bool:
        return any(not task.done() for task in self._workers)

    # -- lifecycle ---------------------------------------------------------

    def start(self) -> None:
        """Spawn the background workers on the running event loop."""
        if self.running:
            return
        self._workers = [
            asyncio.create_task(self._worker(n), name=f"audit-recorder-{n}") for n in range(self._worker_count)
        ]
        logger.info("Audit recorder started with %d workers", self._worker_count)

    async def drain(self) -> None:
        """Wait until every queued job has been processed."""
        await asyncio.gather(*(queue.join() for queue in self._queues))

    async def stop(self) -> None:
        """Drain pending jobs (bounded by the shutdown timeout) and stop the workers."""
        if self._workers:
            try:
                await asyncio.wait_for(self.drain(), timeout=self._shutdown_timeout)
            except TimeoutError:
                logger.warning("Audit recorder stopped with %d jobs still queued", self.pending)
        for task in self._workers:
            task.cancel()
        for task in self._workers:
            with contextlib.suppress(asyncio.CancelledError):
                await task
        self._workers = []
        logger.info(
            "Audit recorder stopped: completed=%d failed=%d dropped=%d",
            self.stats.completed,
            self.stats.failed,
            self.stats.dropped,
        )

    # -- fire-and-forget path ----------------------------------------------

    def notify_mutation(
        self,
        entity_type: str,
        entity_id: str,
        action: AuditAction | str | None,
        old_values: Mapping[str, Any] | None = None,
        new_values: Mapping[str, Any] | None = None,
        actor_id: str | None = None,
        request_context: RequestContext | None = None,
        options: RecordOptions | None = None,
    ) -> None:
        """Schedule the audit append and, when applicable, the version create.

        Never raises and never waits on storage.
        """
        try:
            audit_job, version_job = self._prepare(
                entity_type, entity_id, action, old_values, new_values, actor_id, request_context, options
            )
        except Exception:
            logger.exception("Could not prepare audit record for %s/%s", entity_type, entity_id)
            self.stats.failed += 1
            return
        if audit_job is None:
            return
        self._enqueue(audit_job)
        if version_job is not None:
            self._enqueue(version_job)

    def log_batch(
        self,
        events: Iterable[MutationEvent],
        *,
        actor_id: str | None = None,
        request_context: RequestContext | None = None,
    ) -> None:
        """Schedule one audit record per event of a bulk operation."""
        batch = list(events)
        for event in batch:
            metadata = {**(event.metadata or {}), "batch": True, "batch_size": len(batch)}
            self.notify_mutation(
                event.entity_type,
                event.entity_id,
                event.action,
                event.old_values,
                event.new_values,
                actor_id=actor_id,
                request_context=request_context,
                options=RecordOptions(track_versions=False, metadata=metadata),
            )

    def _queue_for(self, entity_type: str, entity_id: str) -> asyncio.Queue[_AuditJob | _VersionJob]:
        """Queue owning an entity, so its jobs are written in notification order."""
        return self._queues[hash((entity_type, entity_id)) % self._worker_count]

    def _enqueue(self, job: _AuditJob | _VersionJob) -> None:
        try:
            self._queue_for(job.entity_type, job.entity_id).put_nowait(job)
        except asyncio.QueueFull:
            self.stats.dropped += 1
            logger.warning(
                "Audit queue full, dropping %s for %s/%s", type(job).__name__, job.entity_type, job.entity_id
            )
            return
        self.stats.enqueued += 1

    async def _worker(self, number: int) -> None:
        queue = self._queues[number]
        while True:
            job = await queue.get()
            try:
                await self._execute(job)
                self.stats.completed += 1
            except ConcurrentVersionConflict:
                self.stats.failed += 1
                self.stats.conflicts += 1
                logger.critical("Version write lost for %s/%s: retry budget exhausted", job.entity_type, job.entity_id)
            except Exception as exc:
                self.stats.failed += 1
                name = type(exc).__name__
                self.stats.by_error[name] = self.stats.by_error.get(name, 0) + 1
                logger.exception(
                    "Audit worker %d failed to write %s for %s/%s",
                    number,
                    type(job).__name__,
                    job.entity_type,
                    job.entity_id,
                )
            finally:
                queue.task_done()

    async def _execute(self, job: _AuditJob | _VersionJob) -> None:
        async with self._session_factory() as session:
            if isinstance(job, _AuditJob):
                await self._write_audit(session, job)
            else:
                await self._write_version(session, job)

    # -- awaited path ------------------------------------------------------

    async def record_now(
        self,
        session: AsyncSession,
        entity_type: str,
        entity_id: str,
        action: AuditAction | str | None,
        old_values: Mapping[str, Any] | None = None,
        new_values: Mapping[str, Any] | None = None,
        actor_id: str | None = None,
        request_context: RequestContext | None = None,
        options: RecordOptions | None = None,
    ) -> RecordResult:
        """Write the audit record (and version) in the caller's session. Errors propagate.

        When a version is written, the audit record is committed in the same
        transaction: a version conflict leaves neither row behind.
        """
        audit_job, version_job = self._prepare(
            entity_type, entity_id, action, old_values, new_values, actor_id, request_context, options
        )
        if audit_job is None:
            raise ValidationError("action is required")

        if version_job is None:
            record = await self._write_audit(session, audit_job)
            return RecordResult(audit_record=record)

        record = self._build_audit(audit_job)
        version = await self._write_version(session, version_job, companions=(record,))
        return RecordResult(audit_record=record, version=version)

    # -- shared ------------------------------------------------------------

    def _prepare(
        self,
        entity_type: str,
        entity_id: str,
        action: AuditAction | str | None,
        old_values: Mapping[str, Any] | None,
        new_values: Mapping[str, Any] | None,
        actor_id: str | None,
        request_context: RequestContext | None,
        options: RecordOptions | None,
    ) -> tuple[_AuditJob | None, _VersionJob | None]:
        if entity_id is not None:
            entity_id = str(entity_id)
        config = self._registry.get(entity_type)
        context = request_context or RequestContext()
        opts = options or RecordOptions()

        if action:
            try:
                resolved: AuditAction | None = AuditAction(action)
            except ValueError:
                raise ValidationError(f"Unknown audit action: {action}") from None
        else:
            resolved = config.resolve_action(context.method)
        if resolved is None:
            logger.warning("No audit action for %s/%s (method=%s)", entity_type, entity_id, context.method)
            return None, None

        fields = self._registry.redacted_fields_for(entity_type)
        old = redact(old_values, fields)
        new = redact(new_values, fields)
        metadata = {**context.as_metadata(), **(opts.metadata or {})}

        audit_job = _AuditJob(
            entity_type=entity_type,
            entity_id=entity_id,
            action=resolved,
            actor_id=actor_id,
            old_values=old,
            new_values=new,
            metadata=metadata,
            ip_address=context.ip_address,
            user_agent=context.user_agent,
        )

        track = config.track_versions if opts.track_versions is None else opts.track_versions
        version_job = None
        if track and resolved in VERSIONED_ACTIONS and new is not None:
            version_job = _VersionJob(
                entity_type=entity_type,
                entity_id=entity_id,
                action=resolved,
                actor_id=actor_id,
                old_values=old,
                snapshot=new,
                change_description=opts.change_description,
            )
        return audit_job, version_job

    async def _write_audit(self, session: AsyncSession, job: _AuditJob) -> AuditRecord:
        record = self._build_audit(job)
        session.add(record)
        await session.commit()
        return record

    def _build_audit(self, job: _AuditJob) -> AuditRecord:
        return build_audit_record(
            self._hasher,
            entity_type=job.entity_type,
            entity_id=job.entity_id,
            action=job.action,
            actor_id=job.actor_id,
            old_values=job.old_values,
            new_values=job.new_values,
            metadata=job.metadata,
            ip_address=job.ip_address,
            user_agent=job.user_agent,
        )

    async def _write_version(
        self, session: AsyncSession, job: _VersionJob, companions: Sequence[AuditRecord] = ()
    ) -> EntityVersion:
        return await create_entity_version(
            session,
            self._hasher,
            entity_type=job.entity_type,
            entity_id=job.entity_id,
            snapshot=job.snapshot,
            actor_id=job.actor_id,
            change_description=describe_change(job.action, job.old_values, job.snapshot, job.change_description),
            max_attempts=self._version_max_attempts,
            companions=companions,
        )
