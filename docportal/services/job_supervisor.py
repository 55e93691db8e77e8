"""Background supervisor for stuck ingestion jobs."""

from __future__ import annotations

import asyncio
from datetime import timedelta

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from docportal.config import settings
from docportal.database import get_session_maker
from docportal.logger import get_logger
from docportal.models import ACTIVE_STATUSES, Job, utcnow
from docportal.services.errors import JobErrorCode
from docportal.services.jobs import JobStateMachine

logger = get_logger(__name__)


async def fail_stale_jobs(
    sessionmaker: async_sessionmaker[AsyncSession] | None = None,
    *,
    stale_after: timedelta | None = None,
) -> int:
    """Fail jobs that sat in received/queued/processing without progress for too long."""
    cutoff = utcnow() - (stale_after or timedelta(minutes=settings.stale_job_minutes))
    session_factory = sessionmaker or get_session_maker()
    async with session_factory() as session:
        result = await session.execute(
            select(Job).where(Job.status.in_(ACTIVE_STATUSES)).where(Job.updated_at < cutoff).with_for_update()
        )
        stale_jobs = result.scalars().all()

        machine = JobStateMachine(session)
        for job in stale_jobs:
            machine.fail(job, JobErrorCode.TIMEOUT, "Processing timed out. Please retry the upload.")

        if stale_jobs:
            await session.commit()
        return len(stale_jobs)


async def run_job_supervisor(stop_event: asyncio.Event) -> None:
    """Run periodic checks until stop_event is set."""
    while not stop_event.is_set():
        try:
            count = await fail_stale_jobs()
            if count:
                logger.warning("Failed stale ingestion jobs", count=count)
        except Exception:
            logger.exception("Failed to sweep stale ingestion jobs")

        try:
            await asyncio.wait_for(stop_event.wait(), timeout=settings.job_supervisor_interval_seconds)
        except TimeoutError:
            continue
