"""Shared pytest fixtures for buildcontrol tests."""

from __future__ import annotations

import logging

import pytest
import structlog

from buildcontrol.logging import set_run_id
from buildcontrol.redaction import clear_secrets


@pytest.fixture(autouse=True)
def reset_process_state() -> None:
    """Reset registered secrets and logging configuration before each test."""
    clear_secrets()

    root = logging.getLogger()
    root.handlers.clear()

    structlog.reset_defaults()
    structlog.contextvars.clear_contextvars()
    set_run_id(None)
