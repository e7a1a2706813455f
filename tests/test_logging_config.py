"""Tests for logging setup."""

import logging
import os

import pytest

from memctx.logging_config import OPS_LOG_FILENAME, configure_ops_log, configure_quiet_mode

QUIET_ENV = ("HF_HUB_DISABLE_PROGRESS_BARS", "HF_HUB_DISABLE_TELEMETRY",
             "TRANSFORMERS_VERBOSITY", "TOKENIZERS_PARALLELISM")


@pytest.fixture
def restore_levels():
    names = ("memctx", "urllib3", "sentence_transformers")
    saved = {name: logging.getLogger(name).level for name in names}
    yield
    for name, level in saved.items():
        logging.getLogger(name).setLevel(level)


def test_ops_log_records_memctx_messages(tmp_path, restore_levels):
    handler = configure_ops_log(tmp_path / "store")
    try:
        logging.getLogger("memctx.context").warning("keyword fallback for %r", "auth")
        logging.getLogger("elsewhere").warning("not ours")
        handler.flush()
    finally:
        logging.getLogger("memctx").removeHandler(handler)
        handler.close()
    text = (tmp_path / "store" / OPS_LOG_FILENAME).read_text()
    assert "WARNING memctx.context keyword fallback for 'auth'" in text
    assert "not ours" not in text


def test_ops_log_lets_info_through(tmp_path, restore_levels):
    logging.getLogger("memctx").setLevel(logging.WARNING)
    handler = configure_ops_log(tmp_path)
    try:
        assert logging.getLogger("memctx").level == logging.INFO
    finally:
        logging.getLogger("memctx").removeHandler(handler)
        handler.close()


def test_quiet_mode_mutes_libraries(monkeypatch, restore_levels):
    for name in QUIET_ENV:
        monkeypatch.delenv(name, raising=False)
    configure_quiet_mode()
    assert os.environ["TRANSFORMERS_VERBOSITY"] == "error"
    assert logging.getLogger("urllib3").level == logging.ERROR
    assert logging.getLogger("sentence_transformers").level == logging.ERROR


def test_quiet_mode_off_changes_nothing(monkeypatch, restore_levels):
    monkeypatch.delenv("TRANSFORMERS_VERBOSITY", raising=False)
    logging.getLogger("urllib3").setLevel(logging.NOTSET)
    configure_quiet_mode(quiet=False)
    assert "TRANSFORMERS_VERBOSITY" not in os.environ
    assert logging.getLogger("urllib3").level == logging.NOTSET
