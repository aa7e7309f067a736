"""Tests for the service lifespan wiring."""

import logging
from pathlib import Path

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from print_lifecycle.config import settings
from print_lifecycle.main import lifespan
from print_lifecycle.models import Base
from print_lifecycle.models.user import User
from print_lifecycle.services import staging as staging_module
from print_lifecycle.services.durable_storage import LocalDurableStorage


def _make_db():
    """Return a SessionLocal factory bound to a fresh in-memory SQLite DB."""
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(engine)
    return sessionmaker(bind=engine, expire_on_commit=False)


@pytest.fixture
def isolated_settings(tmp_path: Path, monkeypatch):
    monkeypatch.setattr(settings, "staging_dir", str(tmp_path / "uploads"))
    monkeypatch.setattr(settings, "durable_path", str(tmp_path / "durable"))
    monkeypatch.setattr(settings, "durable_backend", "local")
    monkeypatch.setattr(staging_module, "_staging", None)
    root = logging.getLogger()
    saved_handlers, saved_level = list(root.handlers), root.level
    yield tmp_path
    root.handlers[:] = saved_handlers
    root.setLevel(saved_level)


@pytest.mark.asyncio
async def test_lifespan_starts_and_stops_background_work(isolated_settings):
    """Entering the lifespan starts the scheduler; leaving it stops everything."""
    SessionLocal = _make_db()
    s = SessionLocal()
    user = User(name="Lena")
    s.add(user)
    s.commit()
    user_id = user.id
    s.close()

    async with lifespan(SessionLocal) as lifecycle:
        assert lifecycle.scheduler.running
        assert isinstance(lifecycle.storage, LocalDurableStorage)
        assert "in_app" in lifecycle.dispatcher.channel_names

        staged = lifecycle.upload(user_id, b"plain text pretending to be a doc", "memo.docx")
        assert staged.path.parent.resolve() == (isolated_settings / "uploads").resolve()
        assert staged.page_count == 1

    assert not lifecycle.scheduler.running
