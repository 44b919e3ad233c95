"""Pytest configuration and fixtures for lifecycle-hooks tests.

Async tests run through a small ``pytest_pyfunc_call`` hook built on
``asyncio.run`` so no async plugin is needed.
"""

import asyncio
import inspect

import pytest

from lifecycle_hooks import config as lh_config
from lifecycle_hooks import hook_sources


@pytest.fixture(autouse=True)
def isolated_settings(tmp_path, monkeypatch):
    """Point engine settings and user-level hooks at an empty temp dir."""
    config_dir = tmp_path / ".lifecycle_hooks"
    monkeypatch.setattr(lh_config, "CONFIG_DIR", str(config_dir))
    monkeypatch.setattr(lh_config, "CONFIG_FILE", str(config_dir / "hooks.cfg"))
    monkeypatch.setattr(
        hook_sources, "GLOBAL_HOOKS_FILE", str(config_dir / "hooks.json")
    )
    monkeypatch.delenv(lh_config.MODEL_ENV_VAR, raising=False)
    yield config_dir


@pytest.fixture
def project_dir(tmp_path):
    """An empty project directory used as the event cwd."""
    path = tmp_path / "project"
    path.mkdir()
    return path


def pytest_pyfunc_call(pyfuncitem: pytest.Item) -> bool | None:
    """Run ``async def`` tests with asyncio.run."""
    test_func = pyfuncitem.obj
    if inspect.iscoroutinefunction(test_func):
        kwargs = {
            name: pyfuncitem.funcargs[name] for name in pyfuncitem._fixtureinfo.argnames
        }
        asyncio.run(test_func(**kwargs))
        return True
    return None
