"""Shared test fixtures."""

from __future__ import annotations

import os
from collections.abc import Iterator
from pathlib import Path

import pytest

from dualpath.jobs.repository import JobStore


@pytest.fixture(autouse=True)
def _isolated_env(monkeypatch, tmp_path: Path) -> None:
    """Keep DUALPATH_* variables from the developer shell out of tests."""
    for name in list(os.environ):
        if name.startswith("DUALPATH_"):
            monkeypatch.delenv(name, raising=False)
    monkeypatch.setenv("DUALPATH_DB_PATH", str(tmp_path / "env.db"))


@pytest.fixture()
def store(tmp_path: Path) -> Iterator[JobStore]:
    job_store = JobStore(tmp_path / "jobs.db")
    job_store.init_schema()
    try:
        yield job_store
    finally:
        job_store.close()
