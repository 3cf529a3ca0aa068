"""FastAPI application entrypoint."""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from omnigen.api import router
from omnigen.core.logging_config import setup_logging
from omnigen.core.settings import APP_VERSION, PATHS
from omnigen.db.base import Base
from omnigen.db.session import SessionLocal, engine
from omnigen.models import Job, JobEvent  # noqa: F401
from omnigen.services import repository
from omnigen.services.config_store import load_config, save_config
from omnigen.workers.queue import enqueue_job

logger = logging.getLogger(__name__)


def create_app() -> FastAPI:
    @asynccontextmanager
    async def lifespan(_: FastAPI):
        PATHS.ensure()

        Base.metadata.create_all(bind=engine)

        # Ensure config file exists with defaults.
        config = load_config()
        if not PATHS.config_path.exists():
            save_config(config)
        setup_logging(config.logging)

        with SessionLocal() as db:
            repository.fail_stale_jobs(db, config.pipeline.stale_job_after_s)
            pending_ids = repository.list_pending_jobs(db)
            db.commit()

        for job_id in pending_ids:
            enqueue_job(job_id)
        if pending_ids:
            logger.info("re-enqueued %d pending job(s)", len(pending_ids))

        yield

    app = FastAPI(title="Omnigen", version=APP_VERSION, lifespan=lifespan)

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.include_router(router)

    return app


app = create_app()
