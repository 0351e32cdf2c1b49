"""Tests for logging setup."""

import json
import logging
from pathlib import Path

import pytest

from civic_pipeline.logging_config import METRICS_LOGGER, PACKAGE_LOGGER, get_logger, setup_logging


@pytest.fixture
def restore_loggers():
    names = (PACKAGE_LOGGER, METRICS_LOGGER, "httpx", "httpcore")
    saved = {
        name: (logging.getLogger(name).handlers[:], logging.getLogger(name).level, logging.getLogger(name).propagate)
        for name in names
    }
    yield
    for name, (handlers, level, propagate) in saved.items():
        logger = logging.getLogger(name)
        for handler in logger.handlers:
            if handler not in handlers:
                handler.close()
        logger.handlers[:] = handlers
        logger.setLevel(level)
        logger.propagate = propagate


def test_relative_log_file_goes_under_log_dir(tmp_path, restore_loggers):
    log_path = setup_logging(log_file=Path("run.log"), log_dir=tmp_path / "logs", console=False)

    get_logger("pipeline").warning("source failed")

    assert log_path == tmp_path / "logs" / "run.log"
    content = log_path.read_text(encoding="utf-8")
    assert "civic_pipeline.pipeline - WARNING - source failed" in content
    assert len(logging.getLogger(PACKAGE_LOGGER).handlers) == 1


def test_metrics_file_receives_bare_json(tmp_path, restore_loggers):
    log_path = setup_logging(log_dir=tmp_path, console=False, metrics_file=tmp_path / "metrics.jsonl")

    get_logger("metrics").info(json.dumps({"region_id": "california"}))

    lines = (tmp_path / "metrics.jsonl").read_text(encoding="utf-8").splitlines()
    assert [json.loads(line) for line in lines] == [{"region_id": "california"}]
    assert "california" not in log_path.read_text(encoding="utf-8")


def test_setup_is_repeatable_and_quiets_httpx(tmp_path, restore_loggers):
    setup_logging(log_dir=tmp_path, console=True)
    setup_logging(log_dir=tmp_path, console=True, level=logging.DEBUG)

    assert len(logging.getLogger(PACKAGE_LOGGER).handlers) == 2
    assert logging.getLogger("httpx").level == logging.WARNING
