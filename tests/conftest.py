"""Global test fixtures for homespun."""

from __future__ import annotations

import logging
from collections.abc import Iterator
from pathlib import Path

import pytest
import structlog

from homespun.logger import HANDLER_NAME, QUIET_LOGGERS
from tests.helpers import FakeHarness


@pytest.fixture(autouse=True)
def _restore_logging() -> Iterator[None]:
    """Undo whatever ``setup_logging`` a test (or the CLI) installed."""
    root = logging.getLogger()
    level = root.level
    quiet = {name: logging.getLogger(name).level for name in QUIET_LOGGERS}
    yield
    for handler in [h for h in root.handlers if h.get_name() == HANDLER_NAME]:
        root.removeHandler(handler)
    root.setLevel(level)
    for name, value in quiet.items():
        logging.getLogger(name).setLevel(value)
    structlog.contextvars.clear_contextvars()
    structlog.reset_defaults()


@pytest.fixture
def workdir(tmp_path: Path) -> Path:
    """Provide a temporary working directory for agent instances."""
    return tmp_path


@pytest.fixture
def harness() -> FakeHarness:
    return FakeHarness()
