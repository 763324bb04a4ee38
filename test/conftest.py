"""
Pytest configuration and fixtures for the extension kernel tests
"""

import json
import os
import sys
from collections.abc import AsyncGenerator
from pathlib import Path

import pytest
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import NullPool

sys.path.insert(0, os.path.abspath(os.path.join(os.path.dirname(__file__), "..")))  # noqa: PTH100, PTH118, PTH119, PTH120

import cms_kernel.database as database_module  # noqa: E402
import cms_kernel.scheduler as scheduler_module  # noqa: E402
from cms_kernel.config import settings  # noqa: E402
from cms_kernel.database import Base  # noqa: E402
from cms_kernel.extensions.runtime import clear_plugin_entry_cache  # noqa: E402
from cms_kernel.services.domain_events import reset_domain_event_names  # noqa: E402


# ══════════════════════════════════════════════════════════════════════════════
# Database
# ══════════════════════════════════════════════════════════════════════════════


@pytest.fixture(scope="function")
def test_engine(tmp_path, monkeypatch):
    """
    A file-backed SQLite database per test. NullPool hands out a fresh
    connection every time, so the same database works from the pytest event
    loop and from TestClient's loop.
    """
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'kernel.db'}", poolclass=NullPool)
    session_factory = async_sessionmaker(engine, class_=AsyncSession, autoflush=False, expire_on_commit=False)

    monkeypatch.setattr(database_module, "engine", engine)
    monkeypatch.setattr(database_module, "AsyncSessionLocal", session_factory)
    monkeypatch.setattr(scheduler_module, "AsyncSessionLocal", session_factory)
    yield engine


@pytest.fixture(scope="function")
async def db_session(test_engine) -> AsyncGenerator[AsyncSession, None]:
    """Provide a session on freshly created tables."""
    import cms_kernel.models  # noqa: F401

    async with test_engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    async with database_module.AsyncSessionLocal() as session:
        yield session

    await test_engine.dispose()


# ══════════════════════════════════════════════════════════════════════════════
# Extension directories and global state
# ══════════════════════════════════════════════════════════════════════════════


@pytest.fixture(autouse=True)
def isolated_extensions(tmp_path, monkeypatch):
    """Point discovery at empty temp directories and reset process-wide registries."""
    plugins_dir = tmp_path / "plugins"
    themes_dir = tmp_path / "themes"
    plugins_dir.mkdir()
    themes_dir.mkdir()

    monkeypatch.setattr(settings, "plugins_path", str(plugins_dir))
    monkeypatch.setattr(settings, "themes_path", str(themes_dir))
    monkeypatch.setattr(settings, "scheduler_enabled", False)
    monkeypatch.setattr(settings, "analytics_queue_autodrain", True)
    monkeypatch.setattr(settings, "domain_event_queue_autodrain", True)
    reset_domain_event_names()
    clear_plugin_entry_cache()
    yield {"plugins": plugins_dir, "themes": themes_dir}
    reset_domain_event_names()
    clear_plugin_entry_cache()


@pytest.fixture
def plugins_dir(isolated_extensions) -> Path:
    return isolated_extensions["plugins"]


@pytest.fixture
def themes_dir(isolated_extensions) -> Path:
    return isolated_extensions["themes"]


@pytest.fixture
def make_plugin(plugins_dir):
    """Write ``plugins/{id}/plugin.json`` (and optionally ``plugin.py``)."""

    def _make(plugin_id: str, source: str | None = None, **manifest) -> Path:
        directory = plugins_dir / plugin_id
        directory.mkdir(parents=True, exist_ok=True)
        data = {"id": plugin_id, "name": manifest.pop("name", plugin_id.replace("-", " ").title()), **manifest}
        (directory / "plugin.json").write_text(json.dumps(data), encoding="utf-8")
        if source is not None:
            (directory / "plugin.py").write_text(source, encoding="utf-8")
        return directory

    return _make


@pytest.fixture
def make_theme(themes_dir):
    """Write ``themes/{id}/theme.json`` plus the given templates and assets."""

    def _make(
        theme_id: str,
        template_files: dict[str, str] | None = None,
        asset_files: dict[str, str] | None = None,
        root: Path | None = None,
        **manifest,
    ) -> Path:
        directory = (root or themes_dir) / theme_id
        directory.mkdir(parents=True, exist_ok=True)
        data = {"id": theme_id, "name": manifest.pop("name", theme_id.replace("-", " ").title()), **manifest}
        (directory / "theme.json").write_text(json.dumps(data), encoding="utf-8")
        for name, content in (template_files or {}).items():
            (directory / "templates").mkdir(exist_ok=True)
            (directory / "templates" / name).write_text(content, encoding="utf-8")
        for name, content in (asset_files or {}).items():
            (directory / "assets").mkdir(exist_ok=True)
            (directory / "assets" / name).write_text(content, encoding="utf-8")
        return directory

    return _make


# ══════════════════════════════════════════════════════════════════════════════
# HTTP
# ══════════════════════════════════════════════════════════════════════════════


@pytest.fixture
def client(test_engine):
    """TestClient with the lifespan running, so tables exist on the test database."""
    from fastapi.testclient import TestClient

    from main import app

    with TestClient(app) as test_client:
        yield test_client


@pytest.fixture
def admin_headers():
    from cms_kernel.auth import create_access_token

    token = create_access_token({"sub": "admin-1", "role": "admin"})
    return {"Authorization": f"Bearer {token}"}


@pytest.fixture
def user_headers():
    from cms_kernel.auth import create_access_token

    token = create_access_token({"sub": "user-1", "role": "user"})
    return {"Authorization": f"Bearer {token}"}
