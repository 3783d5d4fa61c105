"""Shared fixtures: settings rooted in ``tmp_path`` and an empty fake cluster."""

from pathlib import Path

import pytest

from db_restore.config.models import RestoreSettings
from fakes import FakeCluster


@pytest.fixture
def settings(tmp_path: Path) -> RestoreSettings:
    backup_root = tmp_path / "backups"
    backup_root.mkdir()
    return RestoreSettings(
        admin_url="postgresql://postgres@/postgres?host=/var/run/postgresql",
        backup_root=backup_root,
        data_dir=tmp_path / "data",
        role_default_password="secret",
        ready_interval=0.01,
        ready_timeout=1.0,
    )


@pytest.fixture
def cluster() -> FakeCluster:
    return FakeCluster()
