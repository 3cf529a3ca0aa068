"""Huey queue definitions and enqueue helpers."""

from __future__ import annotations

import logging

from huey import SqliteHuey, crontab

from omnigen.core.settings import PATHS
from omnigen.db.session import session_scope
from omnigen.services import repository
from omnigen.services.config_store import load_config
from omnigen.services.pipeline import execute_job

logger = logging.getLogger(__name__)

huey = SqliteHuey("omnigen", filename=str(PATHS.queue_path))


@huey.task(retries=0)
def run_job_task(job_id: str) -> None:
    execute_job(job_id)


@huey.periodic_task(crontab(minute="*"))
def stale_job_watchdog() -> list[str]:
    return fail_stale_jobs()


def fail_stale_jobs() -> list[str]:
    config = load_config()
    with session_scope() as db:
        return repository.fail_stale_jobs(db, config.pipeline.stale_job_after_s)


def enqueue_job(job_id: str) -> None:
    logger.info("enqueueing job %s", job_id)
    run_job_task(job_id)
