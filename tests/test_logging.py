"""Tests for the package logger and its configurable log directory."""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Iterator
from unittest.mock import Mock

import pytest

import pharmastore
from pharmastore import core_logic


@pytest.fixture
def restore_log_directory() -> Iterator[None]:
    """Put the package log file back where it was after the test."""

    original = pharmastore.current_log_file()
    try:
        yield
    finally:
        pharmastore.set_log_directory(original.parent if original else pharmastore.LOG_DIR)


def test_package_logger_has_file_and_console_handlers():
    """The package logger writes INFO to a file and WARNING to stderr."""

    levels = sorted(handler.level for handler in pharmastore.log.handlers)

    assert pharmastore.current_log_file() is not None
    assert levels == [logging.INFO, logging.WARNING]


def test_set_log_directory_moves_the_log_file(tmp_path, restore_log_directory):
    """Records logged after the move land in the new directory."""

    target = pharmastore.set_log_directory(tmp_path / "logs")
    pharmastore.log.info("written to the relocated log")
    for handler in pharmastore.log.handlers:
        handler.flush()

    assert target == (tmp_path / "logs" / pharmastore.LOG_FILE_NAME).resolve()
    assert pharmastore.current_log_file() == target
    assert "written to the relocated log" in target.read_text(encoding="utf-8")


def test_set_log_directory_is_a_no_op_for_the_active_directory(tmp_path, restore_log_directory):
    """Moving to the current directory keeps the existing handler."""

    pharmastore.set_log_directory(tmp_path)
    handlers_before = list(pharmastore.log.handlers)

    assert pharmastore.set_log_directory(tmp_path) == pharmastore.current_log_file()
    assert pharmastore.log.handlers == handlers_before


def test_set_log_directory_keeps_previous_file_when_target_is_unusable(tmp_path, restore_log_directory):
    """A directory that cannot be created leaves logging unchanged."""

    blocker = tmp_path / "not_a_directory"
    blocker.write_text("", encoding="utf-8")
    active = pharmastore.current_log_file()

    assert pharmastore.set_log_directory(blocker / "logs") == active
    assert pharmastore.current_log_file() == active


def test_load_runtime_context_applies_configured_log_dir(config_factory, monkeypatch):
    """A LogDir entry in config.ini relocates the log before loading data."""

    bundle = config_factory()
    text = bundle.config_path.read_text(encoding="utf-8").replace("[System]\n", "[System]\nLogDir = logs\n", 1)
    bundle.config_path.write_text(text, encoding="utf-8")
    mover = Mock()
    monkeypatch.setattr(core_logic, "set_log_directory", mover)

    core_logic.load_runtime_context(bundle.config_path)

    mover.assert_called_once_with((bundle.directory / "logs").resolve())


def test_load_runtime_context_leaves_log_alone_without_log_dir(config_file: Path, monkeypatch):
    """Without LogDir the default log location is kept."""

    mover = Mock()
    monkeypatch.setattr(core_logic, "set_log_directory", mover)

    core_logic.load_runtime_context(config_file)

    mover.assert_not_called()
