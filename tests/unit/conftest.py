"""Shared unit-test fixtures."""

from __future__ import annotations

from collections.abc import Iterator
from pathlib import Path

import pytest
import structlog
from fakes import Harness, build_harness


@pytest.fixture
def harness(tmp_path: Path) -> Harness:
    """In-memory repositories wired into an orchestrator with a fixed clock."""
    return build_harness(tmp_path)


@pytest.fixture(autouse=True)
def clear_log_context() -> Iterator[None]:
    """Keep the bound applicant id from leaking between tests."""
    structlog.contextvars.clear_contextvars()
    yield
    structlog.contextvars.clear_contextvars()
