"""Tests for the periodic maintenance pass."""

import asyncio
import os
import time
from pathlib import Path

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from print_lifecycle.models import Base
from print_lifecycle.models.print_job import PrintJob
from print_lifecycle.models.user import User
from print_lifecycle.services.durable_storage import LocalDurableStorage
from print_lifecycle.services.executor import PrintExecutor
from print_lifecycle.services.maintenance import MaintenanceRunner
from print_lifecycle.services.migration import CloudMigrationWorker, object_id_for
from print_lifecycle.services.scheduler import PrintScheduler
from print_lifecycle.services.staging import StagingStore
from print_lifecycle.states import (
    PAYMENT_COMPLETED,
    STATUS_CANCELLED,
    STATUS_COMPLETED,
    STATUS_IN_QUEUE,
    STATUS_PAID,
)


def _make_db():
    """Return a SessionLocal factory bound to a fresh in-memory SQLite DB."""
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(engine)
    return sessionmaker(bind=engine, expire_on_commit=False)


def _add_user(SessionLocal) -> int:
    s = SessionLocal()
    user = User(name="Dev")
    s.add(user)
    s.commit()
    user_id = user.id
    s.close()
    return user_id


def _add_job(SessionLocal, owner_id: int, **fields) -> str:
    s = SessionLocal()
    job = PrintJob(owner_id=owner_id, document_name="doc.pdf", **fields)
    s.add(job)
    s.commit()
    job_id = job.id
    s.close()
    return job_id


def _fetch(SessionLocal, job_id: str) -> PrintJob:
    s = SessionLocal()
    job = s.get(PrintJob, job_id)
    s.close()
    return job


class NoopExecutor(PrintExecutor):
    async def execute(self, job):
        return None


@pytest.fixture
def staging(tmp_path: Path) -> StagingStore:
    return StagingStore(base_dir=str(tmp_path / "uploads"), max_bytes=1024 * 1024)


@pytest.fixture
def storage(tmp_path: Path) -> LocalDurableStorage:
    return LocalDurableStorage(str(tmp_path / "durable"))


@pytest.mark.asyncio
async def test_run_once_sweeps_expired_staged_files(staging, storage):
    SessionLocal = _make_db()
    old = staging.stage(1, b"x", "old.pdf")
    past = time.time() - 3 * 3600
    os.utime(old, (past, past))
    runner = MaintenanceRunner(SessionLocal, staging, storage, retention_seconds=3600)

    report = await runner.run_once()

    assert report.staged_removed == 1
    assert not old.exists()


@pytest.mark.asyncio
async def test_durable_copies_of_finished_jobs_are_removed(tmp_path, staging, storage):
    """Completed and cancelled jobs lose their durable copy; kept ones do not."""
    SessionLocal = _make_db()
    user_id = _add_user(SessionLocal)
    src = tmp_path / "src.pdf"
    src.write_bytes(b"%PDF")

    job_ids = {}
    for label, status, delete_after in (
        ("done", STATUS_COMPLETED, True),
        ("cancelled", STATUS_CANCELLED, True),
        ("keep", STATUS_COMPLETED, False),
        ("queued", STATUS_IN_QUEUE, True),
    ):
        job_id = _add_job(
            SessionLocal,
            user_id,
            status=status,
            delete_after_print=delete_after,
            uploaded_to_durable_storage=True,
            payment_status=PAYMENT_COMPLETED,
        )
        stored = await storage.upload(src, "f", object_id_for(job_id))
        s = SessionLocal()
        job = s.get(PrintJob, job_id)
        job.storage_url = stored.url
        job.storage_object_id = stored.object_id
        s.commit()
        s.close()
        job_ids[label] = job_id

    runner = MaintenanceRunner(SessionLocal, staging, storage, retention_seconds=3600)
    removed = await runner.cleanup_durable()

    assert removed == 2
    for label in ("done", "cancelled"):
        job = _fetch(SessionLocal, job_ids[label])
        assert job.durable_deleted is True
        assert job.storage_url is not None
        assert storage.resolve(object_id_for(job.id)) is None
    for label in ("keep", "queued"):
        assert storage.resolve(object_id_for(job_ids[label])) is not None

    assert await runner.cleanup_durable() == 0


@pytest.mark.asyncio
async def test_stalled_migration_is_retried_and_queued(staging, storage):
    SessionLocal = _make_db()
    user_id = _add_user(SessionLocal)
    staged = staging.stage(user_id, b"%PDF-1.4", "late.pdf")
    job_id = _add_job(
        SessionLocal,
        user_id,
        status=STATUS_PAID,
        payment_status=PAYMENT_COMPLETED,
        staging_path=str(staged),
        migration_attempts=1,
    )
    scheduler = PrintScheduler(
        SessionLocal,
        executor=NoopExecutor(),
        max_concurrent=1,
        retry_attempts=1,
        retry_delay=0.01,
        job_timeout=1.0,
    )
    runner = MaintenanceRunner(
        SessionLocal,
        staging,
        storage,
        migration=CloudMigrationWorker(storage, staging, folder="f"),
        scheduler=scheduler,
        retention_seconds=3600,
        migration_retry_limit=3,
    )

    report = await runner.run_once()

    assert report.migrations_retried == 1
    assert report.migrated == [job_id]
    assert _fetch(SessionLocal, job_id).status == STATUS_IN_QUEUE
    assert scheduler.status().waiting == [job_id]


@pytest.mark.asyncio
async def test_migration_retry_limit_is_respected(staging, storage):
    """Jobs that used up their automatic attempts wait for an explicit retry."""
    SessionLocal = _make_db()
    user_id = _add_user(SessionLocal)
    staged = staging.stage(user_id, b"%PDF-1.4", "late.pdf")
    job_id = _add_job(
        SessionLocal,
        user_id,
        status=STATUS_PAID,
        payment_status=PAYMENT_COMPLETED,
        staging_path=str(staged),
        migration_attempts=3,
    )
    runner = MaintenanceRunner(
        SessionLocal,
        staging,
        storage,
        migration=CloudMigrationWorker(storage, staging, folder="f"),
        retention_seconds=3600,
        migration_retry_limit=3,
    )

    report = await runner.run_once()

    assert report.migrations_retried == 0
    assert _fetch(SessionLocal, job_id).status == STATUS_PAID


@pytest.mark.asyncio
async def test_start_and_stop_background_task(staging, storage):
    SessionLocal = _make_db()
    runner = MaintenanceRunner(
        SessionLocal, staging, storage, interval_seconds=0.01, retention_seconds=3600
    )

    await runner.start()
    await asyncio.sleep(0.05)
    await runner.stop()

    assert runner._task.done()
