"""Worker process for the periodic audit integrity sweep.

Runs an asyncio loop that re-verifies the digests of every audit record
written in a trailing window and reports tampered records at error level.
"""

from __future__ import annotations

import asyncio
import logging
from datetime import UTC, datetime, timedelta
from typing import TYPE_CHECKING

from audit_engine.components import load_integrity_key
from audit_engine.config import get_settings
from audit_engine.db import get_session_factory
from audit_engine.services.audit import verify_audit_records
from audit_engine.services.integrity import IntegrityHasher

if TYPE_CHECKING:
    from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

    from audit_engine.schemas.audit import BulkVerifyResponse

logger = logging.getLogger(__name__)


async def run_integrity_sweep(
    session_factory: async_sessionmaker[AsyncSession],
    hasher: IntegrityHasher,
    *,
    window_hours: int,
    max_records: int,
    now: datetime | None = None,
) -> BulkVerifyResponse:
    """Verify the audit records written in the last ``window_hours``."""
    end = now or datetime.now(UTC)
    start = end - timedelta(hours=window_hours)
    async with session_factory() as session:
        result = await verify_audit_records(
            session, hasher, start_date=start, end_date=end, max_records=max_records
        )
    summary = result.summary
    logger.info(
        "Integrity sweep %s..%s: checked=%d valid=%d invalid=%d truncated=%s",
        start.isoformat(),
        end.isoformat(),
        summary.total_checked,
        summary.valid,
        summary.invalid,
        summary.truncated,
    )
    return result


async def run_sweep_loop() -> None:
    """Main worker loop that sweeps the trailing window once per interval."""
    settings = get_settings()
    hasher = IntegrityHasher(load_integrity_key(settings))
    session_factory = get_session_factory()

    logger.info("Integrity sweep worker started")
    while True:
        try:
            await run_integrity_sweep(
                session_factory,
                hasher,
                window_hours=settings.integrity_sweep_window_hours,
                max_records=settings.verify_max_records,
            )
        except Exception:
            logger.exception("Integrity sweep failed")

        await asyncio.sleep(settings.integrity_sweep_interval_seconds)


def main() -> None:
    """Entry point for the worker process."""
    settings = get_settings()
    logging.basicConfig(level=settings.log_level, format="%(asctime)s %(name)s %(levelname)s %(message)s")
    asyncio.run(run_sweep_loop())


if __name__ == "__main__":
    main()
