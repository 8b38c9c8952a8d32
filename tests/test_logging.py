"""Tests for the package logger set up on import."""

from __future__ import annotations

import logging

import coldstore_erp


def test_log_dir_defaults_under_project(monkeypatch):
    """Without an override the settlement log lives in <project>/.logs."""

    monkeypatch.delenv(coldstore_erp.LOG_DIR_ENV, raising=False)

    assert coldstore_erp._resolve_log_dir() == coldstore_erp.PROJECT_ROOT / ".logs"


def test_log_dir_honours_environment_override(monkeypatch, tmp_path):
    """COLDSTORE_LOG_DIR relocates the settlement log."""

    monkeypatch.setenv(coldstore_erp.LOG_DIR_ENV, f"  {tmp_path}  ")

    assert coldstore_erp._resolve_log_dir() == tmp_path


def test_package_logger_is_configured_once():
    """Repeated configuration keeps the original handlers."""

    handlers = list(coldstore_erp.log.handlers)

    assert coldstore_erp._configure_logging() is coldstore_erp.log
    assert coldstore_erp.log.handlers == handlers
    assert coldstore_erp.log.level == logging.INFO
    assert coldstore_erp.LOG_FILE.name == "settlement.log"
